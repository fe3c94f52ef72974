"""
Validator - read-only checks of a deployed plan.

Checks are driven by the plan's ValidationProfile and recorded in a
ValidationReport as PASS / WARN / FAIL entries. Nothing here mutates the
cluster.

Modes:
- full: every check, including in-pod connectivity commands
- quick: deployments, services and pod health
- report: object counts per kind plus pod and networking detail
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from kubeseq.cluster.base import ClusterClient, get_nested_field
from kubeseq.errors import KubeseqError, TransportError
from kubeseq.plan import ValidationProfile
from kubeseq.schemas import CheckSeverity, ValidationReport

logger = logging.getLogger(__name__)

PASS = CheckSeverity.PASS
WARN = CheckSeverity.WARN
FAIL = CheckSeverity.FAIL

# (label, apiVersion, kind) listed by `status` and counted by `report`
OBJECT_KINDS = (
    ("Namespaces", "v1", "Namespace"),
    ("PersistentVolumes", "v1", "PersistentVolume"),
    ("PersistentVolumeClaims", "v1", "PersistentVolumeClaim"),
    ("Deployments", "apps/v1", "Deployment"),
    ("Services", "v1", "Service"),
    ("Ingresses", "networking.k8s.io/v1", "Ingress"),
    ("HorizontalPodAutoscalers", "autoscaling/v2", "HorizontalPodAutoscaler"),
    ("Jobs", "batch/v1", "Job"),
    ("CronJobs", "batch/v1", "CronJob"),
    ("Pods", "v1", "Pod"),
    ("ConfigMaps", "v1", "ConfigMap"),
    ("Secrets", "v1", "Secret"),
    ("NetworkPolicies", "networking.k8s.io/v1", "NetworkPolicy"),
    ("ServiceAccounts", "v1", "ServiceAccount"),
)

MAX_ACCEPTABLE_RESTARTS = 3


def _condition_status(obj: dict[str, Any], condition_type: str) -> Optional[str]:
    for cond in get_nested_field(obj, "status.conditions") or []:
        if cond.get("type") == condition_type:
            return cond.get("status")
    return None


def _summarize(kind: str, obj: dict[str, Any]) -> str:
    """One-line summary of an object for status listings."""
    name = get_nested_field(obj, "metadata.name") or "?"
    if kind in ("Pod", "PersistentVolume", "PersistentVolumeClaim", "Namespace"):
        return f"{name} ({get_nested_field(obj, 'status.phase') or 'Unknown'})"
    if kind == "Deployment":
        desired = get_nested_field(obj, "spec.replicas")
        desired = 1 if desired is None else desired
        ready = get_nested_field(obj, "status.readyReplicas") or 0
        return f"{name} ({ready}/{desired} ready)"
    if kind == "Service":
        return f"{name} ({get_nested_field(obj, 'spec.type') or 'ClusterIP'}: {get_nested_field(obj, 'spec.clusterIP') or '-'})"
    if kind == "Ingress":
        hosts = ",".join(r.get("host", "*") for r in get_nested_field(obj, "spec.rules") or [])
        return f"{name}: {hosts or '*'} -> {_ingress_address(obj) or 'pending'}"
    if kind == "Job":
        if _condition_status(obj, "Complete") == "True":
            state = "Complete"
        elif _condition_status(obj, "Failed") == "True":
            state = "Failed"
        else:
            state = "Running"
        return f"{name} ({state})"
    if kind == "CronJob":
        return f"{name} ({get_nested_field(obj, 'spec.schedule') or '?'})"
    return name


def _ingress_address(obj: dict[str, Any]) -> Optional[str]:
    return (
        get_nested_field(obj, "status.loadBalancer.ingress.0.ip")
        or get_nested_field(obj, "status.loadBalancer.ingress.0.hostname")
    )


@dataclass
class ClusterReport:
    """Detailed cluster report: object counts plus pod and networking detail."""
    namespace: str
    server_version: Optional[str] = None
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    counts: dict[str, int] = field(default_factory=dict)
    services: list[str] = field(default_factory=list)
    ingresses: list[str] = field(default_factory=list)
    pods: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "server_version": self.server_version,
            "generated_at": self.generated_at.isoformat(),
            "counts": dict(self.counts),
            "services": list(self.services),
            "ingresses": list(self.ingresses),
            "pods": list(self.pods),
        }


class Validator:
    """
    Read-only deployment checks.

    Args:
        client: Cluster client used for reads
        profile: Names of objects expected to exist
        namespace: Namespace of the namespaced objects
    """

    def __init__(self, client: ClusterClient, profile: ValidationProfile, namespace: str):
        self.client = client
        self.profile = profile
        self.namespace = namespace

    # =========================================================================
    # Modes
    # =========================================================================

    def full(self) -> ValidationReport:
        """Run every check."""
        report = ValidationReport()
        if not self.check_prerequisites(report):
            return report
        for check in (
            self.validate_namespaces,
            self.validate_storage,
            self.validate_deployments,
            self.validate_services,
            self.validate_pod_health,
            self.validate_ingress,
            self.validate_hpa,
            self.validate_jobs,
            self.validate_connectivity,
            self.validate_security,
        ):
            self._guarded(check, report)
        return report

    def quick(self) -> ValidationReport:
        """Deployments, services and pod health only."""
        report = ValidationReport()
        if not self.check_prerequisites(report):
            return report
        for check in (self.validate_deployments, self.validate_services, self.validate_pod_health):
            self._guarded(check, report)
        return report

    def report(self) -> ClusterReport:
        """
        Build the detailed cluster report.

        Raises:
            TransportError: If the cluster cannot be reached
        """
        cluster_report = ClusterReport(namespace=self.namespace)
        cluster_report.server_version = self.client.check_access()
        for label, api_version, kind in OBJECT_KINDS:
            items = self.client.list_objects(api_version, kind, namespace=self.namespace)
            cluster_report.counts[label] = len(items)
            if kind == "Service":
                cluster_report.services = [_summarize(kind, o) for o in items]
            elif kind == "Ingress":
                cluster_report.ingresses = [_summarize(kind, o) for o in items]
            elif kind == "Pod":
                cluster_report.pods = [self._pod_line(o) for o in items]
        return cluster_report

    def status(self) -> dict[str, list[str]]:
        """
        List objects per kind in the plan namespace.

        Returns:
            Mapping of kind label -> object summaries (empty list if none)
        """
        listing: dict[str, list[str]] = {}
        for label, api_version, kind in OBJECT_KINDS:
            if kind in ("ConfigMap", "Secret", "ServiceAccount"):
                continue
            items = self.client.list_objects(api_version, kind, namespace=self.namespace)
            if kind == "Namespace":
                wanted = set(self.profile.namespaces) or {self.namespace}
                items = [o for o in items if get_nested_field(o, "metadata.name") in wanted]
            listing[label] = [_summarize(kind, o) for o in items]
        return listing

    # =========================================================================
    # Checks
    # =========================================================================

    def _guarded(self, check: Callable[[ValidationReport], None], report: ValidationReport) -> None:
        try:
            check(report)
        except KubeseqError as e:
            category = check.__name__.replace("validate_", "").replace("_", " ")
            logger.warning(f"Check {check.__name__} aborted: {e}")
            report.record(category, FAIL, f"Could not complete {category} checks: {e}")

    def check_prerequisites(self, report: ValidationReport) -> bool:
        """Record whether the cluster is reachable."""
        try:
            version = self.client.check_access()
        except TransportError as e:
            report.record("prerequisites", FAIL, f"Cannot connect to Kubernetes cluster: {e}")
            return False
        report.record("prerequisites", PASS, f"Kubernetes cluster is accessible ({version})")
        return True

    def validate_namespaces(self, report: ValidationReport) -> None:
        for ns in self.profile.namespaces:
            if self.client.read_object("v1", "Namespace", ns) is not None:
                report.record("namespaces", PASS, f"Namespace {ns} exists")
            else:
                report.record("namespaces", FAIL, f"Namespace {ns} does not exist")

    def validate_storage(self, report: ValidationReport) -> None:
        for pv in self.profile.persistent_volumes:
            obj = self.client.read_object("v1", "PersistentVolume", pv)
            phase = get_nested_field(obj, "status.phase") if obj else None
            if phase == "Bound":
                report.record("storage", PASS, f"PV {pv} is bound")
            elif phase == "Available":
                report.record("storage", WARN, f"PV {pv} is available but not bound")
            else:
                report.record("storage", FAIL, f"PV {pv} is not available (status: {phase or 'missing'})")

        for claim in self.profile.persistent_volume_claims:
            pvc = self.client.read_pvc(claim, self.namespace)
            if pvc is not None and pvc.bound:
                report.record("storage", PASS, f"PVC {claim} is bound")
            else:
                phase = pvc.phase if pvc is not None else "missing"
                report.record("storage", FAIL, f"PVC {claim} is not bound (status: {phase})")

    def validate_deployments(self, report: ValidationReport) -> None:
        for name in self.profile.deployments:
            deployment = self.client.read_deployment(name, self.namespace)
            if deployment is None:
                report.record("deployments", FAIL, f"Deployment {name} does not exist")
                continue
            ready, desired = deployment.ready_replicas, deployment.spec_replicas
            if ready == desired and ready > 0:
                report.record("deployments", PASS, f"Deployment {name} is ready ({ready}/{desired} replicas)")
            else:
                report.record("deployments", FAIL, f"Deployment {name} is not ready ({ready}/{desired} replicas)")

    def validate_services(self, report: ValidationReport) -> None:
        for name in self.profile.services:
            endpoints = self.client.read_object("v1", "Endpoints", name, self.namespace)
            count = 0
            for subset in (endpoints or {}).get("subsets") or []:
                count += len(subset.get("addresses") or [])
            if count > 0:
                report.record("services", PASS, f"Service {name} has {count} endpoints")
            else:
                report.record("services", FAIL, f"Service {name} has no endpoints")

    def validate_pod_health(self, report: ValidationReport) -> None:
        for app in self.profile.apps:
            pods = self.client.list_pods(self.namespace, f"app={app}")
            running = sum(1 for p in pods if p.phase == "Running")
            if pods and running == len(pods):
                report.record("pods", PASS, f"All {app} pods are running ({running}/{len(pods)})")
            else:
                report.record("pods", FAIL, f"{app} pods not all running ({running}/{len(pods)})")

            restarts = max((p.restart_count for p in pods), default=0)
            if restarts == 0:
                report.record("pods", PASS, f"{app} pods have no restarts")
            elif restarts < MAX_ACCEPTABLE_RESTARTS:
                report.record("pods", WARN, f"{app} pods have {restarts} restarts (acceptable)")
            else:
                report.record("pods", FAIL, f"{app} pods have {restarts} restarts (too many)")

    def validate_ingress(self, report: ValidationReport) -> None:
        for name in self.profile.ingresses:
            obj = self.client.read_object("networking.k8s.io/v1", "Ingress", name, self.namespace)
            if obj is None:
                report.record("ingress", FAIL, f"Ingress {name} does not exist")
                continue
            report.record("ingress", PASS, f"Ingress {name} exists")
            address = _ingress_address(obj)
            if address:
                report.record("ingress", PASS, f"Ingress {name} has external IP/hostname: {address}")
            else:
                report.record("ingress", WARN, f"Ingress {name} external IP/hostname not yet assigned")

    def validate_hpa(self, report: ValidationReport) -> None:
        for name in self.profile.hpas:
            obj = self.client.read_object("autoscaling/v2", "HorizontalPodAutoscaler", name, self.namespace)
            if obj is None:
                report.record("autoscaling", FAIL, f"HPA {name} does not exist")
                continue
            current = get_nested_field(obj, "status.currentReplicas") or 0
            minimum = get_nested_field(obj, "spec.minReplicas")
            minimum = 1 if minimum is None else minimum
            if current >= minimum:
                report.record("autoscaling", PASS, f"HPA {name} is active ({current} replicas, min: {minimum})")
            else:
                report.record(
                    "autoscaling", WARN, f"HPA {name} may not be fully active ({current} replicas, min: {minimum})"
                )

    def validate_jobs(self, report: ValidationReport) -> None:
        for name in self.profile.jobs:
            job = self.client.read_job(name, self.namespace)
            if job is not None and job.complete:
                report.record("jobs", PASS, f"Job {name} completed successfully")
            elif job is not None and job.failed:
                report.record("jobs", FAIL, f"Job {name} failed")
            else:
                report.record("jobs", WARN, f"Job {name} status unclear")

        for name in self.profile.cronjobs:
            obj = self.client.read_object("batch/v1", "CronJob", name, self.namespace)
            if obj is None:
                report.record("jobs", FAIL, f"CronJob {name} does not exist")
                continue
            report.record("jobs", PASS, f"CronJob {name} exists")
            last_schedule = get_nested_field(obj, "status.lastScheduleTime")
            if last_schedule:
                report.record("jobs", PASS, f"CronJob {name} was last scheduled at: {last_schedule}")
            else:
                report.record("jobs", WARN, f"CronJob {name} has not been scheduled yet")

    def validate_connectivity(self, report: ValidationReport) -> None:
        for check in self.profile.connectivity:
            pods = [p for p in self.client.list_pods(self.namespace, f"app={check.app}") if p.phase == "Running"]
            if not pods:
                report.record("connectivity", WARN, f"No running {check.app} pod to test {check.name}")
                continue
            result = self.client.exec_in_pod(pods[0].name, self.namespace, list(check.command))
            if result.returncode is None:
                report.record("connectivity", FAIL, f"{check.name} timed out in pod {pods[0].name}")
            elif not result.succeeded:
                report.record("connectivity", FAIL, f"{check.name} is not accessible (exit code {result.returncode})")
            elif check.expect is not None and check.expect not in result.stdout:
                report.record("connectivity", FAIL, f"{check.name} did not answer {check.expect!r}")
            else:
                report.record("connectivity", PASS, f"{check.name} is accessible")

    def validate_security(self, report: ValidationReport) -> None:
        policies = self.client.list_objects("networking.k8s.io/v1", "NetworkPolicy", namespace=self.namespace)
        if policies:
            report.record("security", PASS, f"Network policies are configured ({len(policies)} policies)")
        else:
            report.record("security", WARN, "No network policies found")

        for name in self.profile.secrets:
            if self.client.read_object("v1", "Secret", name, self.namespace) is not None:
                report.record("security", PASS, f"Secret {name} exists")
            else:
                report.record("security", FAIL, f"Secret {name} does not exist")

        for app in self.profile.non_root_apps:
            pods = self.client.list_pods(self.namespace, f"app={app}")
            if any(p.run_as_user == 0 for p in pods):
                report.record("security", WARN, f"Some {app} pods may be running as root")
            else:
                report.record("security", PASS, f"{app} pods are not running as root")

    @staticmethod
    def _pod_line(obj: dict[str, Any]) -> str:
        name = get_nested_field(obj, "metadata.name") or "?"
        phase = get_nested_field(obj, "status.phase") or "Unknown"
        statuses = get_nested_field(obj, "status.containerStatuses") or []
        ready = sum(1 for s in statuses if s.get("ready"))
        restarts = sum(s.get("restartCount") or 0 for s in statuses)
        return f"{name}: {phase} ({ready}/{len(statuses)} ready, {restarts} restarts)"
