"""
Plan loading.

A plan is a YAML file naming an ordered list of resource groups. Each group
points at manifest files or directories; their documents are parsed with
yaml.safe_load_all and handed to the sequencer as opaque mappings.

Plan file layout:
    plan:
      name: webapp
      namespace: production
    groups:
      - name: storage
        manifests: [manifests/01-storage/]
        on_failure: warn_and_continue
        readiness:
          kind: pvc_bound
          names: [postgres-pvc]
          timeout_seconds: 60
    validation:
      deployments: [postgres-deployment]
"""

import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from kubeseq.errors import ConfigurationError
from kubeseq.schemas import FailurePolicy, ReadinessPredicate, ResourceGroup


MANIFEST_SUFFIXES = (".yaml", ".yml")

GROUP_KEYS = {"name", "manifests", "on_failure", "readiness", "namespace"}


@dataclass(frozen=True)
class ConnectivityCheck:
    """
    A command run inside a running pod of an app to prove a dependency answers.

    Attributes:
        name: Label used in the report (e.g. "Backend health endpoint")
        app: `app=` label value of the pod to exec into
        command: argv to run; a string is split shell-style
        expect: Optional substring the command's stdout must contain
    """
    name: str
    app: str
    command: tuple[str, ...]
    expect: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any, index: int) -> "ConnectivityCheck":
        where = f"validation.connectivity[{index}]"
        if not isinstance(data, dict):
            raise ConfigurationError(f"{where} must be a mapping")
        unknown = sorted(set(data) - {"name", "app", "command", "expect"})
        if unknown:
            raise ConfigurationError(f"Unknown keys in {where}: {', '.join(unknown)}")
        app = data.get("app")
        if not isinstance(app, str) or not app:
            raise ConfigurationError(f"{where}.app must be a non-empty string")
        command = data.get("command")
        if isinstance(command, str):
            command = shlex.split(command)
        if not isinstance(command, list) or not command or not all(isinstance(c, str) for c in command):
            raise ConfigurationError(f"{where}.command must be a non-empty list of strings")
        expect = data.get("expect")
        if expect is not None and not isinstance(expect, str):
            raise ConfigurationError(f"{where}.expect must be a string")
        name = data.get("name") or f"{app} connectivity"
        return cls(name=str(name), app=app, command=tuple(command), expect=expect)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "app": self.app, "command": list(self.command), "expect": self.expect}


@dataclass(frozen=True)
class ValidationProfile:
    """
    Named objects `kubeseq validate` expects to find.

    Every name field is a tuple of object names in the plan namespace, except
    namespaces and persistent_volumes (cluster-scoped). apps are `app=` label
    values whose pods are health-checked; non_root_apps are apps whose pods
    must run as a non-root user. connectivity holds in-pod commands run by
    the full validation.
    """
    namespaces: tuple[str, ...] = ()
    persistent_volumes: tuple[str, ...] = ()
    persistent_volume_claims: tuple[str, ...] = ()
    deployments: tuple[str, ...] = ()
    services: tuple[str, ...] = ()
    apps: tuple[str, ...] = ()
    ingresses: tuple[str, ...] = ()
    hpas: tuple[str, ...] = ()
    jobs: tuple[str, ...] = ()
    cronjobs: tuple[str, ...] = ()
    secrets: tuple[str, ...] = ()
    non_root_apps: tuple[str, ...] = ()
    connectivity: tuple[ConnectivityCheck, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ValidationProfile":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigurationError("validation must be a mapping")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown validation keys: {', '.join(unknown)}")
        values: dict[str, Any] = {}
        for key, value in data.items():
            if value is None:
                value = []
            if key == "connectivity":
                if not isinstance(value, list):
                    raise ConfigurationError("validation.connectivity must be a list")
                values[key] = tuple(ConnectivityCheck.from_dict(item, i) for i, item in enumerate(value))
                continue
            if isinstance(value, str):
                value = [value]
            if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
                raise ConfigurationError(f"validation.{key} must be a list of names")
            values[key] = tuple(value)
        return cls(**values)

    def to_dict(self) -> dict[str, list[Any]]:
        data: dict[str, list[Any]] = {f.name: list(getattr(self, f.name)) for f in fields(self)}
        data["connectivity"] = [check.to_dict() for check in self.connectivity]
        return data


@dataclass(frozen=True)
class Plan:
    """
    A loaded plan.

    Attributes:
        name: Plan name
        namespace: Default namespace for groups and predicates
        groups: Ordered resource groups
        validation: Expectations for the validator
        source: Path the plan was loaded from
    """
    name: str
    namespace: str
    groups: tuple[ResourceGroup, ...]
    validation: ValidationProfile = field(default_factory=ValidationProfile)
    source: Optional[Path] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "source": str(self.source) if self.source else None,
            "groups": [g.to_dict() for g in self.groups],
            "validation": self.validation.to_dict(),
        }


def _manifest_files(entry: str, base_dir: Path) -> list[Path]:
    path = Path(entry).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    if path.is_dir():
        files = sorted(p for p in path.iterdir() if p.is_file() and p.suffix in MANIFEST_SUFFIXES)
        if not files:
            raise ConfigurationError(f"No manifest files (*.yaml, *.yml) in {path}")
        return files
    if path.is_file():
        return [path]
    raise ConfigurationError(f"Manifest path not found: {path}")


def load_manifests(path: Path) -> list[dict[str, Any]]:
    """
    Parse every non-empty YAML document in a manifest file.

    Raises:
        ConfigurationError: On YAML syntax errors or non-mapping documents
    """
    try:
        with open(path, "r") as f:
            documents = [d for d in yaml.safe_load_all(f) if d is not None]
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}")

    for index, document in enumerate(documents):
        if not isinstance(document, dict):
            raise ConfigurationError(f"{path}: document #{index} is not a mapping")
    return documents


def _load_group(data: Any, index: int, base_dir: Path, plan_namespace: str) -> ResourceGroup:
    if not isinstance(data, dict):
        raise ConfigurationError(f"groups[{index}] must be a mapping")
    unknown = sorted(set(data) - GROUP_KEYS)
    if unknown:
        raise ConfigurationError(f"groups[{index}]: unknown keys: {', '.join(unknown)}")

    name = data.get("name")
    if not name or not isinstance(name, str):
        raise ConfigurationError(f"groups[{index}]: name is required")

    entries = data.get("manifests")
    if isinstance(entries, str):
        entries = [entries]
    if not entries or not isinstance(entries, list):
        raise ConfigurationError(f"Group '{name}': manifests must list at least one file or directory")

    documents: list[dict[str, Any]] = []
    for entry in entries:
        for manifest in _manifest_files(str(entry), base_dir):
            documents.extend(load_manifests(manifest))
    if not documents:
        raise ConfigurationError(f"Group '{name}': manifests contain no documents")

    raw_policy = data.get("on_failure", FailurePolicy.ABORT.value)
    try:
        on_failure = FailurePolicy(str(raw_policy).lower())
    except ValueError:
        valid = ", ".join(p.value for p in FailurePolicy)
        raise ConfigurationError(f"Group '{name}': unknown on_failure '{raw_policy}' (expected one of: {valid})")

    namespace = data.get("namespace") or plan_namespace

    readiness = None
    if data.get("readiness") is not None:
        try:
            readiness = ReadinessPredicate.from_dict(data["readiness"], default_namespace=namespace)
        except ConfigurationError as e:
            raise ConfigurationError(f"Group '{name}': {e}") from e

    return ResourceGroup(
        name=name,
        resources=tuple(documents),
        readiness_check=readiness,
        on_failure=on_failure,
        namespace=namespace,
    )


def load_plan(path: Union[str, Path], default_namespace: str = "default") -> Plan:
    """
    Load a plan file.

    Args:
        path: Plan YAML path; manifest paths resolve relative to its directory
        default_namespace: Namespace used when the plan declares none

    Returns:
        Plan

    Raises:
        ConfigurationError: On any malformed input
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Plan file not found: {path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML syntax in {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")

    header = data.get("plan") or {}
    if not isinstance(header, dict):
        raise ConfigurationError("plan must be a mapping")
    name = header.get("name") or path.stem
    namespace = header.get("namespace") or default_namespace

    raw_groups = data.get("groups")
    if not raw_groups or not isinstance(raw_groups, list):
        raise ConfigurationError(f"{path}: groups must be a non-empty list")

    base_dir = path.parent
    groups = tuple(_load_group(g, i, base_dir, namespace) for i, g in enumerate(raw_groups))

    seen: set[str] = set()
    for group in groups:
        if group.name in seen:
            raise ConfigurationError(f"Duplicate group name: {group.name}")
        seen.add(group.name)

    return Plan(
        name=name,
        namespace=namespace,
        groups=groups,
        validation=ValidationProfile.from_dict(data.get("validation")),
        source=path,
    )
