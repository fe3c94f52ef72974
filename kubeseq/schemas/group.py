"""
Resource group schemas - the static definition of what to apply.

A ResourceGroup is an ordered batch of manifest documents applied together,
optionally followed by a readiness wait. ReadinessPredicate describes what
"ready" means for the group.

Both are pure data: construction-time validation only.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from kubeseq.errors import ConfigurationError


class FailurePolicy(str, Enum):
    """What the sequencer does after a group fails."""
    ABORT = "abort"
    WARN_AND_CONTINUE = "warn_and_continue"


class PredicateKind(str, Enum):
    """Readiness predicate kinds."""
    PODS_READY = "pods_ready"
    DEPLOYMENT_ROLLED_OUT = "deployment_rolled_out"
    JOB_COMPLETE = "job_complete"
    PVC_BOUND = "pvc_bound"


@dataclass(frozen=True)
class ReadinessPredicate:
    """
    A readiness condition for a resource group.

    Attributes:
        kind: Which predicate to evaluate
        namespace: Namespace the watched objects live in
        timeout_seconds: Positive wait bound; exceeding it is a timeout, not an error
        label_selector: Pod label selector (PODS_READY)
        name: Deployment or Job name (DEPLOYMENT_ROLLED_OUT, JOB_COMPLETE)
        names: PersistentVolumeClaim names (PVC_BOUND)
    """
    kind: PredicateKind
    namespace: str
    timeout_seconds: int
    label_selector: Optional[str] = None
    name: Optional[str] = None
    names: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not isinstance(self.kind, PredicateKind):
            raise ConfigurationError(f"Unknown readiness kind: {self.kind!r}")
        if not self.namespace:
            raise ConfigurationError(f"{self.kind.value}: namespace is required")
        if isinstance(self.timeout_seconds, bool) or not isinstance(self.timeout_seconds, int):
            raise ConfigurationError(
                f"{self.kind.value}: timeout_seconds must be an integer, got {self.timeout_seconds!r}"
            )
        if self.timeout_seconds <= 0:
            raise ConfigurationError(
                f"{self.kind.value}: timeout_seconds must be positive, got {self.timeout_seconds}"
            )

        if self.kind == PredicateKind.PODS_READY:
            if not self.label_selector:
                raise ConfigurationError("pods_ready: label_selector is required")
        elif self.kind in (PredicateKind.DEPLOYMENT_ROLLED_OUT, PredicateKind.JOB_COMPLETE):
            if not self.name:
                raise ConfigurationError(f"{self.kind.value}: name is required")
        elif self.kind == PredicateKind.PVC_BOUND:
            if not self.names or not all(self.names):
                raise ConfigurationError("pvc_bound: names must be a non-empty list of claim names")

    @classmethod
    def pods_ready(cls, label_selector: str, namespace: str, timeout_seconds: int) -> "ReadinessPredicate":
        return cls(PredicateKind.PODS_READY, namespace, timeout_seconds, label_selector=label_selector)

    @classmethod
    def deployment_rolled_out(cls, name: str, namespace: str, timeout_seconds: int) -> "ReadinessPredicate":
        return cls(PredicateKind.DEPLOYMENT_ROLLED_OUT, namespace, timeout_seconds, name=name)

    @classmethod
    def job_complete(cls, name: str, namespace: str, timeout_seconds: int) -> "ReadinessPredicate":
        return cls(PredicateKind.JOB_COMPLETE, namespace, timeout_seconds, name=name)

    @classmethod
    def pvc_bound(cls, names, namespace: str, timeout_seconds: int) -> "ReadinessPredicate":
        return cls(PredicateKind.PVC_BOUND, namespace, timeout_seconds, names=tuple(names))

    def describe(self) -> str:
        """Short human-readable description for log lines."""
        if self.kind == PredicateKind.PODS_READY:
            target = self.label_selector
        elif self.kind == PredicateKind.PVC_BOUND:
            target = ",".join(self.names)
        else:
            target = self.name
        return f"{self.kind.value}({target}, ns={self.namespace})"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "kind": self.kind.value,
            "namespace": self.namespace,
            "timeout_seconds": self.timeout_seconds,
        }
        if self.label_selector is not None:
            result["label_selector"] = self.label_selector
        if self.name is not None:
            result["name"] = self.name
        if self.names:
            result["names"] = list(self.names)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_namespace: Optional[str] = None) -> "ReadinessPredicate":
        """
        Deserialize from a plan mapping.

        Raises:
            ConfigurationError: On unknown kind or missing fields
        """
        if not isinstance(data, dict):
            raise ConfigurationError(f"readiness must be a mapping, got {type(data).__name__}")
        raw_kind = data.get("kind")
        try:
            kind = PredicateKind(str(raw_kind).lower())
        except ValueError:
            valid = ", ".join(k.value for k in PredicateKind)
            raise ConfigurationError(f"Unknown readiness kind '{raw_kind}' (expected one of: {valid})")
        if "timeout_seconds" not in data:
            raise ConfigurationError(f"{kind.value}: timeout_seconds is required")

        names = data.get("names") or ()
        if isinstance(names, str):
            names = (names,)

        return cls(
            kind=kind,
            namespace=data.get("namespace") or default_namespace or "",
            timeout_seconds=data["timeout_seconds"],
            label_selector=data.get("label_selector"),
            name=data.get("name"),
            names=tuple(names),
        )


def document_ref(document: Any) -> str:
    """Return 'Kind/name' for a manifest document, for messages."""
    if not isinstance(document, dict):
        return "<invalid>"
    metadata = document.get("metadata") or {}
    return f"{document.get('kind', '?')}/{metadata.get('name', '?')}"


def _check_document(group_name: str, index: int, document: Any) -> None:
    """Check the minimum structure needed to address a document."""
    if not isinstance(document, dict):
        raise ConfigurationError(
            f"Group '{group_name}': resource #{index} is not a mapping ({type(document).__name__})"
        )
    missing = []
    if not document.get("apiVersion"):
        missing.append("apiVersion")
    if not document.get("kind"):
        missing.append("kind")
    metadata = document.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        missing.append("metadata.name")
    if missing:
        raise ConfigurationError(
            f"Group '{group_name}': resource #{index} is missing required fields: {', '.join(missing)}"
        )


@dataclass(frozen=True)
class ResourceGroup:
    """
    A named, ordered unit of declarative resources applied together.

    Attributes:
        name: Group identifier (e.g. "storage", "database")
        resources: Ordered manifest documents; content is opaque to kubeseq
        readiness_check: Optional predicate; None means fire-and-forget
        on_failure: Failure policy (default ABORT)
        namespace: Default namespace for namespaced documents without one
    """
    name: str
    resources: tuple[dict[str, Any], ...]
    readiness_check: Optional[ReadinessPredicate] = None
    on_failure: FailurePolicy = FailurePolicy.ABORT
    namespace: Optional[str] = None

    def __post_init__(self):
        if not self.name or not str(self.name).strip():
            raise ConfigurationError("Resource group name must be non-empty")
        if not self.resources:
            raise ConfigurationError(f"Group '{self.name}': resources must be non-empty")
        if not isinstance(self.resources, tuple):
            object.__setattr__(self, "resources", tuple(self.resources))
        if not isinstance(self.on_failure, FailurePolicy):
            raise ConfigurationError(f"Group '{self.name}': unknown failure policy {self.on_failure!r}")
        for index, document in enumerate(self.resources):
            _check_document(self.name, index, document)

    @property
    def resource_refs(self) -> list[str]:
        return [document_ref(d) for d in self.resources]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output (documents by reference only)."""
        return {
            "name": self.name,
            "resources": self.resource_refs,
            "readiness_check": self.readiness_check.to_dict() if self.readiness_check else None,
            "on_failure": self.on_failure.value,
            "namespace": self.namespace,
        }
