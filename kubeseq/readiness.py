"""
Readiness predicate evaluation.

The evaluator polls the cluster at a fixed interval until a group's
ReadinessPredicate is satisfied or its timeout elapses. Polling is pull-based
and bounded: a predicate that can never be satisfied (e.g. a selector matching
zero pods) ends in TIMEOUT, never a hang.

States:
- READY: predicate satisfied
- TIMEOUT: not satisfied within timeout_seconds (non-fatal for the caller)
- PREDICATE_FAILED: terminal failure observed (a Job reported Failed)
"""

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from kubeseq.cluster.base import ClusterClient
from kubeseq.errors import (
    ConfigurationError,
    PredicateFailure,
    ReadinessTimeoutError,
    RunCancelled,
    TransportError,
)
from kubeseq.schemas.group import PredicateKind, ReadinessPredicate

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0

# Label selector grammar
_NAME = r"[A-Za-z0-9](?:[-A-Za-z0-9_.]*[A-Za-z0-9])?"
_DNS_LABEL = r"[a-z0-9](?:[-a-z0-9]*[a-z0-9])?"
_KEY = rf"(?:{_DNS_LABEL}(?:\.{_DNS_LABEL})*/)?{_NAME}"
_EQUALITY_RE = re.compile(rf"^\s*{_KEY}\s*(?:==|!=|=)\s*(?:{_NAME})?\s*$")
_SET_RE = re.compile(rf"^\s*{_KEY}\s+(?:in|notin)\s*\(\s*{_NAME}(?:\s*,\s*{_NAME})*\s*\)\s*$")
_EXISTS_RE = re.compile(rf"^\s*!?\s*{_KEY}\s*$")


def _split_requirements(selector: str) -> list[str]:
    """Split a selector on commas that are not inside parentheses."""
    parts = []
    depth = 0
    current = []
    for char in selector:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise ConfigurationError(f"Unbalanced parentheses in label selector: {selector!r}")
        if char == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    if depth != 0:
        raise ConfigurationError(f"Unbalanced parentheses in label selector: {selector!r}")
    parts.append("".join(current))
    return parts


def validate_label_selector(selector: str) -> None:
    """
    Check a label selector against the Kubernetes selector grammar.

    Raises:
        ConfigurationError: If the selector is empty or malformed
    """
    if not selector or not selector.strip():
        raise ConfigurationError("Label selector must be non-empty")
    for requirement in _split_requirements(selector):
        if not (
            _EQUALITY_RE.match(requirement)
            or _SET_RE.match(requirement)
            or _EXISTS_RE.match(requirement)
        ):
            raise ConfigurationError(
                f"Malformed label selector {selector!r}: invalid requirement {requirement.strip()!r}"
            )


class ReadinessState(str, Enum):
    """Terminal state of a readiness wait."""
    READY = "ready"
    TIMEOUT = "timeout"
    PREDICATE_FAILED = "predicate_failed"


@dataclass(frozen=True)
class ReadinessResult:
    """
    Result of waiting on a predicate.

    Attributes:
        state: READY, TIMEOUT or PREDICATE_FAILED
        elapsed_seconds: Time spent waiting
        detail: Last observation (e.g. "1/2 pods ready") or the failure reason
    """
    state: ReadinessState
    elapsed_seconds: float
    detail: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.state == ReadinessState.READY

    def raise_for_state(self) -> None:
        """
        Raise if the wait did not end READY.

        Raises:
            ReadinessTimeoutError: On TIMEOUT
            PredicateFailure: On PREDICATE_FAILED
        """
        if self.state == ReadinessState.TIMEOUT:
            raise ReadinessTimeoutError(
                f"Not ready after {self.elapsed_seconds:.0f}s: {self.detail or 'no detail'}"
            )
        if self.state == ReadinessState.PREDICATE_FAILED:
            raise PredicateFailure(self.detail or "readiness predicate failed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "detail": self.detail,
        }


class ReadinessEvaluator:
    """
    Polls the cluster until a predicate holds or times out.

    Args:
        client: Cluster client used for reads
        poll_interval: Seconds between polls
        clock: Monotonic clock (injectable for tests)
        sleep: Sleep function (injectable for tests)
    """

    def __init__(
        self,
        client: ClusterClient,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")
        self.client = client
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep

    def validate(self, predicate: ReadinessPredicate) -> None:
        """
        Setup checks that must fail before any wait begins.

        Raises:
            ConfigurationError: On a malformed label selector
        """
        if predicate.kind == PredicateKind.PODS_READY:
            validate_label_selector(predicate.label_selector)

    def wait(self, predicate: ReadinessPredicate, cancel=None) -> ReadinessResult:
        """
        Block until the predicate is satisfied, fails, or times out.

        Args:
            predicate: What to wait for
            cancel: Optional token with a `cancelled` attribute, checked every tick

        Returns:
            ReadinessResult

        Raises:
            ConfigurationError: On setup errors
            RunCancelled: If cancellation is observed
        """
        self.validate(predicate)

        logger.debug(
            f"Waiting for {predicate.describe()} (timeout {predicate.timeout_seconds}s)",
            extra={"event": "readiness_wait", "metadata": predicate.to_dict()},
        )
        return self.poll(
            lambda: self._evaluate(predicate),
            predicate.timeout_seconds,
            description=predicate.describe(),
            cancel=cancel,
        )

    def poll(
        self,
        condition: Callable[[], tuple[Optional[ReadinessState], Optional[str]]],
        timeout_seconds: float,
        description: str = "condition",
        cancel=None,
    ) -> ReadinessResult:
        """
        Call `condition` every poll interval until it reports a state.

        `condition` returns (state, detail), with state None while pending.
        Transport errors count as pending; the last detail is kept for the
        TIMEOUT result.
        """
        start = self.clock()
        deadline = start + timeout_seconds
        detail: Optional[str] = None

        while True:
            if cancel is not None and cancel.cancelled:
                raise RunCancelled(f"Cancelled while waiting for {description}")

            try:
                state, detail = condition()
            except TransportError as e:
                # Unreachable API is retried until the deadline
                logger.debug(f"Poll for {description} failed, retrying: {e}")
                state, detail = None, f"API unavailable: {e}"

            now = self.clock()
            if state is not None:
                return ReadinessResult(state, now - start, detail)
            if now >= deadline:
                return ReadinessResult(ReadinessState.TIMEOUT, now - start, detail)

            self.sleep(min(self.poll_interval, deadline - now))

    def check(self, predicate: ReadinessPredicate) -> tuple[Optional[ReadinessState], Optional[str]]:
        """Evaluate the predicate once. Returns (state or None if pending, detail)."""
        self.validate(predicate)
        return self._evaluate(predicate)

    def _evaluate(self, predicate: ReadinessPredicate) -> tuple[Optional[ReadinessState], Optional[str]]:
        if predicate.kind == PredicateKind.PODS_READY:
            return self._pods_ready(predicate)
        if predicate.kind == PredicateKind.DEPLOYMENT_ROLLED_OUT:
            return self._deployment_rolled_out(predicate)
        if predicate.kind == PredicateKind.JOB_COMPLETE:
            return self._job_complete(predicate)
        if predicate.kind == PredicateKind.PVC_BOUND:
            return self._pvc_bound(predicate)
        raise ConfigurationError(f"Unsupported readiness kind: {predicate.kind}")

    def _pods_ready(self, predicate: ReadinessPredicate):
        pods = self.client.list_pods(predicate.namespace, predicate.label_selector)
        if not pods:
            return None, f"no pods match {predicate.label_selector}"
        ready = sum(1 for p in pods if p.ready)
        detail = f"{ready}/{len(pods)} pods ready"
        if ready == len(pods):
            return ReadinessState.READY, detail
        return None, detail

    def _deployment_rolled_out(self, predicate: ReadinessPredicate):
        deployment = self.client.read_deployment(predicate.name, predicate.namespace)
        if deployment is None:
            return None, f"deployment {predicate.name} not found"
        if not deployment.observed:
            return None, (
                f"generation {deployment.generation} not yet observed "
                f"(observed {deployment.observed_generation or 0})"
            )
        detail = (
            f"{deployment.ready_replicas}/{deployment.spec_replicas} ready, "
            f"{deployment.updated_replicas} updated"
        )
        if deployment.rolled_out:
            return ReadinessState.READY, detail
        return None, detail

    def _job_complete(self, predicate: ReadinessPredicate):
        job = self.client.read_job(predicate.name, predicate.namespace)
        if job is None:
            return None, f"job {predicate.name} not found"
        if job.failed:
            return ReadinessState.PREDICATE_FAILED, f"job {predicate.name} failed: {job.failure_reason or 'unknown reason'}"
        if job.complete:
            return ReadinessState.READY, f"job {predicate.name} complete"
        return None, f"job {predicate.name} running ({job.succeeded} succeeded)"

    def _pvc_bound(self, predicate: ReadinessPredicate):
        pending = []
        for name in predicate.names:
            pvc = self.client.read_pvc(name, predicate.namespace)
            if pvc is None:
                pending.append(f"{name}=missing")
            elif not pvc.bound:
                pending.append(f"{name}={pvc.phase}")
        if pending:
            return None, "unbound: " + ", ".join(pending)
        return ReadinessState.READY, f"{len(predicate.names)} claim(s) bound"
