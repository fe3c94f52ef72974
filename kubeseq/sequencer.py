"""
Sequencer - ordered group application.

The Sequencer implements:
- Preflight validation of all groups before any apply
- Per-document apply with bounded retry on transport errors
- Readiness waits through the ReadinessEvaluator
- Failure policies (abort / warn_and_continue)
- Cooperative cancellation via CancelToken

Execution flow:
1. Create SequenceRun when execution starts
2. For each group, in input order:
   a. Stop (CANCELLED) if cancellation was requested
   b. Apply every document (upsert), retrying TransportError with backoff
   c. Any apply error -> FAILED_APPLY, then honour the group's policy
   d. No readiness check -> APPLIED_NO_CHECK
   e. Wait: READY -> APPLIED_READY, TIMEOUT -> APPLIED_TIMEOUT (non-fatal),
      PREDICATE_FAILED -> FAILED_APPLY (subject to policy)
   f. Record GroupResult
3. Finalize the run (COMPLETED, ABORTED or CANCELLED)

Groups run strictly one at a time; a group never starts before the previous
group's outcome is recorded. Nothing is rolled back on failure.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from kubeseq.cluster.base import ClusterClient
from kubeseq.errors import (
    ConfigurationError,
    PermanentError,
    PredicateFailure,
    RunCancelled,
    TransientError,
)
from kubeseq.readiness import ReadinessEvaluator, ReadinessState
from kubeseq.schemas import (
    FailurePolicy,
    GroupOutcome,
    GroupResult,
    ResourceGroup,
    RunStatus,
    SequenceRun,
    document_ref,
)
from kubeseq.utils import retry_with_backoff

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _error_info(error: Exception) -> dict[str, Any]:
    return {"type": type(error).__name__, "message": str(error)}


class CancelToken:
    """
    Thread-safe cancellation flag.

    Set from a signal handler or another thread; the sequencer and readiness
    evaluator check it between steps. In-flight API calls are not interrupted.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class Sequencer:
    """
    Applies resource groups in order.

    Usage:
        client = KubernetesClusterClient.from_config(cfg)
        sequencer = Sequencer(client, ReadinessEvaluator(client))
        run = sequencer.run(plan.groups, plan_name=plan.name)

    Args:
        client: Cluster client used for apply
        evaluator: Readiness evaluator (defaults to one on the same client)
        apply_attempts: Attempts per document on transport errors
        apply_backoff_seconds: Initial backoff between attempts (doubles each retry)
        sleep: Sleep function used for backoff (injectable for tests)
    """

    def __init__(
        self,
        client: ClusterClient,
        evaluator: Optional[ReadinessEvaluator] = None,
        apply_attempts: int = 3,
        apply_backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if apply_attempts < 1:
            raise ValueError(f"apply_attempts must be >= 1, got {apply_attempts}")
        self.client = client
        self.evaluator = evaluator or ReadinessEvaluator(client)
        self.apply_attempts = apply_attempts
        self.apply_backoff_seconds = apply_backoff_seconds
        self.sleep = sleep

    def preflight(self, groups: Iterable[ResourceGroup]) -> None:
        """
        Validate static input before anything is applied.

        Raises:
            ConfigurationError: On duplicate group names or malformed predicates
        """
        seen: set[str] = set()
        for group in groups:
            if group.name in seen:
                raise ConfigurationError(f"Duplicate group name: {group.name}")
            seen.add(group.name)
            if group.readiness_check is not None:
                try:
                    self.evaluator.validate(group.readiness_check)
                except ConfigurationError as e:
                    raise ConfigurationError(f"Group '{group.name}': {e}") from e

    def run(
        self,
        groups: Iterable[ResourceGroup],
        plan_name: str = "",
        cancel: Optional[CancelToken] = None,
    ) -> SequenceRun:
        """
        Apply groups in order and return the finalized run record.

        Args:
            groups: Ordered resource groups
            plan_name: Name recorded on the run
            cancel: Optional cancellation token

        Returns:
            Finalized SequenceRun

        Raises:
            ConfigurationError: If preflight validation fails (nothing applied)
        """
        groups = tuple(groups)
        self.preflight(groups)

        run = SequenceRun(groups=groups, plan_name=plan_name)
        logger.info(
            f"Starting run {run.run_id} ({len(groups)} groups)",
            extra={"event": "run_started", "metadata": {"run_id": run.run_id, "plan": plan_name}},
        )

        for group in groups:
            if cancel is not None and cancel.cancelled:
                return self._finish(run, RunStatus.CANCELLED)

            try:
                result = self._execute_group(group, cancel)
            except RunCancelled:
                # In-flight group is not recorded
                logger.warning(
                    f"Cancelled during group {group.name}",
                    extra={"event": "run_cancelled", "group": group.name},
                )
                return self._finish(run, RunStatus.CANCELLED)

            run.record(result)
            self._log_result(result)

            if result.outcome == GroupOutcome.FAILED_APPLY and group.on_failure == FailurePolicy.ABORT:
                return self._finish(run, RunStatus.ABORTED)

        return self._finish(run, RunStatus.COMPLETED)

    def _finish(self, run: SequenceRun, status: RunStatus) -> SequenceRun:
        run.finalize(status)
        logger.info(
            f"Run {run.run_id} {status.value}: "
            f"{run.passed} passed, {run.warned} warnings, {run.failed} failed",
            extra={"event": "run_finished", "metadata": run.to_dict()["summary"]},
        )
        return run

    def _execute_group(self, group: ResourceGroup, cancel: Optional[CancelToken]) -> GroupResult:
        started_at = _utcnow()
        logger.info(
            f"Applying group {group.name} ({len(group.resources)} resources)",
            extra={"event": "group_started", "group": group.name},
        )

        try:
            errors = self._apply_documents(group)
            if errors:
                failed_refs = [ref for ref, _ in errors]
                first = errors[0][1]
                return GroupResult(
                    group=group.name,
                    outcome=GroupOutcome.FAILED_APPLY,
                    started_at=started_at,
                    completed_at=_utcnow(),
                    error={
                        "type": type(first).__name__,
                        "message": "; ".join(f"{ref}: {err}" for ref, err in errors),
                        "resources": failed_refs,
                    },
                )

            if group.readiness_check is None:
                return GroupResult(
                    group=group.name,
                    outcome=GroupOutcome.APPLIED_NO_CHECK,
                    started_at=started_at,
                    completed_at=_utcnow(),
                )

            readiness = self.evaluator.wait(group.readiness_check, cancel=cancel)

            if readiness.state == ReadinessState.READY:
                outcome, error = GroupOutcome.APPLIED_READY, None
            elif readiness.state == ReadinessState.TIMEOUT:
                outcome, error = GroupOutcome.APPLIED_TIMEOUT, None
            else:
                outcome = GroupOutcome.FAILED_APPLY
                try:
                    readiness.raise_for_state()
                except PredicateFailure as e:
                    error = _error_info(e)

            return GroupResult(
                group=group.name,
                outcome=outcome,
                started_at=started_at,
                completed_at=_utcnow(),
                readiness=readiness.state.value,
                error=error,
                detail=readiness.detail,
            )

        except (RunCancelled, ConfigurationError):
            raise
        except Exception as e:
            logger.exception(
                f"Unexpected error in group {group.name}",
                extra={"event": "group_error", "group": group.name},
            )
            return GroupResult(
                group=group.name,
                outcome=GroupOutcome.FAILED_APPLY,
                started_at=started_at,
                completed_at=_utcnow(),
                error=_error_info(e),
            )

    def _apply_documents(self, group: ResourceGroup) -> list[tuple[str, Exception]]:
        """Apply every document; return (ref, error) for those that failed."""
        errors: list[tuple[str, Exception]] = []
        for document in group.resources:
            ref = document_ref(document)
            try:
                retry_with_backoff(
                    lambda doc=document: self.client.apply(doc, namespace=group.namespace),
                    max_attempts=self.apply_attempts,
                    backoff_seconds=self.apply_backoff_seconds,
                    logger=logger,
                    sleep=self.sleep,
                )
                logger.debug(f"Applied {ref}", extra={"event": "resource_applied", "group": group.name})
            except (TransientError, PermanentError) as e:
                logger.error(
                    f"Failed to apply {ref}: {e}",
                    extra={"event": "apply_failed", "group": group.name, "metadata": _error_info(e)},
                )
                errors.append((ref, e))
        return errors

    def _log_result(self, result: GroupResult) -> None:
        extra = {"event": "group_finished", "group": result.group, "metadata": result.to_dict()}
        if result.severity == "pass":
            logger.info(f"PASS {result.group}: {result.outcome.value}", extra=extra)
        elif result.severity == "warn":
            logger.warning(
                f"WARN {result.group}: not ready before timeout ({result.detail or 'no detail'})",
                extra=extra,
            )
        else:
            message = result.error.get("message") if result.error else result.outcome.value
            logger.error(f"FAIL {result.group}: {message}", extra=extra)
