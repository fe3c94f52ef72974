"""
Cleanup - delete a plan's resources in reverse order.

Groups are walked last to first and documents within a group last to first,
so dependents (network policies, ingress, workloads) go before what they
depend on (config, storage, namespaces). Absent objects are not an error.

After each group the cleaner waits (bounded) for the deleted objects to
disappear, so a PVC is not deleted while the pods mounting it still
terminate. `check` reports what is left over and `force` clears finalizers
and deletes with no grace period for objects stuck terminating.
"""

import logging
import time
from typing import Any, Callable, Optional

from kubeseq.cluster.base import ClusterClient
from kubeseq.errors import PermanentError, TransientError
from kubeseq.plan import Plan
from kubeseq.readiness import ReadinessEvaluator, ReadinessState
from kubeseq.schemas import CheckSeverity, ResourceGroup, ValidationReport, document_ref
from kubeseq.utils import retry_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_DELETION_TIMEOUT = 120.0


def _plan_namespaces(plan: Plan) -> list[str]:
    namespaces: list[str] = []
    for ns in [plan.namespace] + [g.namespace for g in plan.groups]:
        if ns and ns not in namespaces:
            namespaces.append(ns)
    return namespaces


def _pod_document(pod: dict[str, Any], namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": pod["metadata"]["name"], "namespace": namespace},
    }


class Cleaner:
    """
    Deletes every object a plan describes.

    Args:
        client: Cluster client used for deletes
        evaluator: Poller used to wait for deletions (built from client if omitted)
        delete_attempts: Attempts per object on transport errors
        backoff_seconds: Initial backoff between attempts
        deletion_timeout_seconds: Per-group wait for deleted objects to disappear (0 = don't wait)
        sleep: Sleep function used for backoff (injectable for tests)
    """

    def __init__(
        self,
        client: ClusterClient,
        evaluator: Optional[ReadinessEvaluator] = None,
        delete_attempts: int = 3,
        backoff_seconds: float = 1.0,
        deletion_timeout_seconds: float = DEFAULT_DELETION_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.evaluator = evaluator or ReadinessEvaluator(client, sleep=sleep)
        self.delete_attempts = delete_attempts
        self.backoff_seconds = backoff_seconds
        self.deletion_timeout_seconds = deletion_timeout_seconds
        self.sleep = sleep

    def _retry(self, func: Callable[[], Any]) -> Any:
        return retry_with_backoff(
            func,
            max_attempts=self.delete_attempts,
            backoff_seconds=self.backoff_seconds,
            logger=logger,
            sleep=self.sleep,
        )

    def _read(self, document: dict[str, Any], namespace: Optional[str]) -> Optional[dict[str, Any]]:
        metadata = document["metadata"]
        return self.client.read_object(
            document["apiVersion"],
            document["kind"],
            metadata["name"],
            metadata.get("namespace") or namespace,
        )

    def run(self, plan: Plan) -> ValidationReport:
        """
        Delete the plan's objects.

        Returns:
            ValidationReport with one entry per object:
            PASS deleted, WARN not found, FAIL API error; plus a WARN per
            group whose objects were still present when the wait ran out
        """
        report = ValidationReport()
        for group in reversed(plan.groups):
            logger.info(f"Removing group {group.name}", extra={"event": "cleanup_group", "group": group.name})
            deleted_documents = []
            for document in reversed(group.resources):
                ref = document_ref(document)
                try:
                    deleted = self._retry(lambda doc=document: self.client.delete(doc, namespace=group.namespace))
                except (TransientError, PermanentError) as e:
                    logger.error(f"Failed to delete {ref}: {e}", extra={"event": "delete_failed", "group": group.name})
                    report.record(group.name, CheckSeverity.FAIL, f"Failed to delete {ref}: {e}")
                    continue

                if deleted:
                    deleted_documents.append(document)
                    report.record(group.name, CheckSeverity.PASS, f"Deleted {ref}")
                else:
                    report.record(group.name, CheckSeverity.WARN, f"{ref} not found")

            self._wait_for_deletion(group, deleted_documents, report)
        return report

    def _wait_for_deletion(
        self,
        group: ResourceGroup,
        documents: list[dict[str, Any]],
        report: ValidationReport,
    ) -> None:
        if not documents or self.deletion_timeout_seconds <= 0:
            return

        def remaining():
            left = [document_ref(d) for d in documents if self._read(d, group.namespace) is not None]
            if left:
                return None, f"{len(left)} remaining: {', '.join(left)}"
            return ReadinessState.READY, None

        result = self.evaluator.poll(
            remaining,
            self.deletion_timeout_seconds,
            description=f"deletion of group {group.name}",
        )
        if result.ready:
            logger.info(
                f"Group {group.name} resources are gone",
                extra={"event": "cleanup_group_gone", "group": group.name,
                       "metadata": {"elapsed_seconds": result.elapsed_seconds}},
            )
            return
        logger.warning(
            f"Group {group.name} resources still present: {result.detail}",
            extra={"event": "cleanup_wait_timeout", "group": group.name},
        )
        report.record(
            group.name,
            CheckSeverity.WARN,
            f"Still present after {self.deletion_timeout_seconds:.0f}s: {result.detail}",
        )

    def check(self, plan: Plan) -> ValidationReport:
        """
        Report what is left of the plan in the cluster.

        Objects still present are WARN; objects with a deletionTimestamp are
        reported as stuck terminating together with their finalizers. Pods
        left in the plan's namespaces are counted.
        """
        report = ValidationReport()
        for group in reversed(plan.groups):
            for document in reversed(group.resources):
                obj = self._read(document, group.namespace)
                if obj is None:
                    continue
                ref = document_ref(document)
                metadata = obj.get("metadata") or {}
                if metadata.get("deletionTimestamp"):
                    finalizers = ", ".join(metadata.get("finalizers") or []) or "none"
                    report.record(
                        "remaining", CheckSeverity.WARN, f"{ref} is stuck terminating (finalizers: {finalizers})"
                    )
                else:
                    report.record("remaining", CheckSeverity.WARN, f"{ref} still exists")

        for ns in _plan_namespaces(plan):
            pods = self.client.list_objects("v1", "Pod", namespace=ns)
            if pods:
                report.record("remaining", CheckSeverity.WARN, f"{len(pods)} pod(s) remain in namespace {ns}")

        if not report.checks:
            report.record("remaining", CheckSeverity.PASS, "No remaining resources detected")
        return report

    def force(self, plan: Plan) -> ValidationReport:
        """
        Force-remove whatever the plan left behind.

        Pods in the plan's namespaces are deleted with a zero grace period,
        then every remaining plan object (reverse order) has its finalizers
        cleared and is deleted with a zero grace period.
        """
        report = ValidationReport()
        for ns in _plan_namespaces(plan):
            for pod in self.client.list_objects("v1", "Pod", namespace=ns):
                self._force_delete(_pod_document(pod, ns), ns, "pods", report)

        for group in reversed(plan.groups):
            for document in reversed(group.resources):
                try:
                    present = self._retry(lambda doc=document: self._read(doc, group.namespace)) is not None
                except (TransientError, PermanentError) as e:
                    report.record(group.name, CheckSeverity.FAIL, f"Failed to read {document_ref(document)}: {e}")
                    continue
                if present:
                    self._force_delete(document, group.namespace, group.name, report)
        return report

    def _force_delete(
        self,
        document: dict[str, Any],
        namespace: Optional[str],
        category: str,
        report: ValidationReport,
    ) -> None:
        ref = document_ref(document)
        try:
            self._retry(lambda: self.client.remove_finalizers(document, namespace=namespace))
            self._retry(lambda: self.client.delete(document, namespace=namespace, grace_period_seconds=0))
        except (TransientError, PermanentError) as e:
            logger.error(f"Failed to force delete {ref}: {e}", extra={"event": "force_delete_failed"})
            report.record(category, CheckSeverity.FAIL, f"Failed to force delete {ref}: {e}")
            return
        logger.info(f"Force deleted {ref}", extra={"event": "force_deleted", "metadata": {"ref": ref}})
        report.record(category, CheckSeverity.PASS, f"Force deleted {ref}")
