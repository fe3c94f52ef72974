"""
Cluster client protocol and typed status records.

The cluster API is an external collaborator. ClusterClient is the seam the
sequencer, readiness evaluator, validator and cleaner talk to; concrete
clients translate API failures into kubeseq's error taxonomy:
- TransportError for transient communication failures (retried)
- ApplyError for rejected documents (not retried)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class PodStatus:
    """
    Status fields of a Pod relevant to readiness and health checks.

    Attributes:
        name: Pod name
        phase: Pending, Running, Succeeded, Failed or Unknown
        containers_ready: True when every container reports ready
        container_count: Number of container statuses reported
        restart_count: Highest restart count across containers
        run_as_user: Pod-level securityContext.runAsUser, if set
        waiting_reasons: Reasons of waiting containers (e.g. CrashLoopBackOff)
    """
    name: str
    phase: str
    containers_ready: bool
    container_count: int = 0
    restart_count: int = 0
    run_as_user: Optional[int] = None
    waiting_reasons: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ready(self) -> bool:
        return self.phase == "Running" and self.container_count > 0 and self.containers_ready


@dataclass(frozen=True)
class DeploymentStatus:
    """
    Replica counters of a Deployment.

    spec_replicas is the desired count (API default 1 when unset);
    status counters default to 0 when the controller has not reported them.
    When generation is known, the rollout only counts once the controller has
    observed it; until then the counters describe the previous spec.
    """
    name: str
    spec_replicas: int
    ready_replicas: int = 0
    updated_replicas: int = 0
    available_replicas: int = 0
    generation: Optional[int] = None
    observed_generation: Optional[int] = None

    @property
    def observed(self) -> bool:
        if self.generation is None:
            return True
        return (self.observed_generation or 0) >= self.generation

    @property
    def rolled_out(self) -> bool:
        return (
            self.observed
            and self.ready_replicas == self.spec_replicas
            and self.updated_replicas == self.spec_replicas
        )


@dataclass(frozen=True)
class JobStatus:
    """
    Terminal conditions of a Job.

    Attributes:
        name: Job name
        complete: Condition "Complete" is True
        failed: Condition "Failed" is True
        failure_reason: Reason/message of the Failed condition, if any
        succeeded: Number of succeeded pods
        failed_pods: Number of failed pods
    """
    name: str
    complete: bool = False
    failed: bool = False
    failure_reason: Optional[str] = None
    succeeded: int = 0
    failed_pods: int = 0


@dataclass(frozen=True)
class PVCStatus:
    """Phase of a PersistentVolumeClaim (Pending, Bound or Lost)."""
    name: str
    phase: str

    @property
    def bound(self) -> bool:
        return self.phase == "Bound"


@dataclass(frozen=True)
class ExecResult:
    """
    Outcome of a command run inside a pod container.

    returncode is None when the command did not finish in time.
    """
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


class ClusterClient(ABC):
    """
    Abstract base class for cluster API clients.

    Clients apply and delete manifest documents and return typed status
    records for the resource kinds readiness predicates watch. Reads return
    None when the object does not exist.
    """

    @abstractmethod
    def check_access(self) -> str:
        """
        Verify the API server is reachable.

        Returns:
            A short description of the server (e.g. its version)

        Raises:
            TransportError: If the API cannot be reached
        """
        pass

    @abstractmethod
    def apply(self, document: dict[str, Any], namespace: Optional[str] = None) -> dict[str, Any]:
        """
        Idempotently upsert a manifest document.

        Args:
            document: The manifest document
            namespace: Namespace for namespaced kinds without metadata.namespace

        Returns:
            The object as stored by the API server

        Raises:
            TransportError: On transient communication failure
            ApplyError: If the API rejects the document
        """
        pass

    @abstractmethod
    def delete(
        self,
        document: dict[str, Any],
        namespace: Optional[str] = None,
        grace_period_seconds: Optional[int] = None,
    ) -> bool:
        """
        Delete the object a manifest document describes.

        Dependents (ReplicaSets, Pods) are deleted in the foreground, so the
        object stays readable until they are gone.

        Args:
            document: The manifest document
            namespace: Namespace for namespaced kinds without metadata.namespace
            grace_period_seconds: Override the pod termination grace period (0 = immediate)

        Returns:
            True if deleted, False if it did not exist

        Raises:
            TransportError: On transient communication failure
            ApplyError: If the API refuses the deletion
        """
        pass

    @abstractmethod
    def remove_finalizers(self, document: dict[str, Any], namespace: Optional[str] = None) -> bool:
        """
        Clear metadata.finalizers so a terminating object can go away.

        Returns:
            True if patched, False if the object does not exist
        """
        pass

    @abstractmethod
    def exec_in_pod(self, name: str, namespace: str, command: list[str]) -> ExecResult:
        """
        Run a command in a pod's default container.

        Raises:
            TransportError: If the exec session cannot be established
        """
        pass

    @abstractmethod
    def list_pods(self, namespace: str, label_selector: str) -> list[PodStatus]:
        """List pods matching a label selector."""
        pass

    @abstractmethod
    def read_deployment(self, name: str, namespace: str) -> Optional[DeploymentStatus]:
        """Read a Deployment's replica status."""
        pass

    @abstractmethod
    def read_job(self, name: str, namespace: str) -> Optional[JobStatus]:
        """Read a Job's terminal conditions."""
        pass

    @abstractmethod
    def read_pvc(self, name: str, namespace: str) -> Optional[PVCStatus]:
        """Read a PersistentVolumeClaim's phase."""
        pass

    @abstractmethod
    def read_object(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        """Read any object as a plain dictionary."""
        pass

    @abstractmethod
    def list_objects(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind as plain dictionaries."""
        pass


def get_nested_field(data: Any, field_path: str) -> Optional[Any]:
    """
    Get nested field from dictionary using dot notation.

    List indices are supported as numeric parts
    (e.g. "status.loadBalancer.ingress.0.ip").

    Returns:
        Field value if found, None otherwise
    """
    current = data
    for part in field_path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current
