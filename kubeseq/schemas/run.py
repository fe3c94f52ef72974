"""
Run schemas - the runtime record of one sequencer invocation.

SequenceRun is created when a run starts, appended to as each group
completes, and finalized (read-only) once the sequence ends, aborts
or is cancelled. GroupResult tracks the outcome of a single group.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .group import ResourceGroup


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class GroupOutcome(str, Enum):
    """Outcome of one group."""
    APPLIED_READY = "applied_ready"
    APPLIED_TIMEOUT = "applied_timeout"
    APPLIED_NO_CHECK = "applied_no_check"
    FAILED_APPLY = "failed_apply"

    @property
    def severity(self) -> str:
        if self == GroupOutcome.FAILED_APPLY:
            return "fail"
        if self == GroupOutcome.APPLIED_TIMEOUT:
            return "warn"
        return "pass"


class RunStatus(str, Enum):
    """Lifecycle status of a run."""
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class GroupResult:
    """
    The outcome of applying a single group.

    Attributes:
        group: Group name
        outcome: Classified outcome
        started_at: When the apply began
        completed_at: When the outcome was decided
        readiness: Readiness state reached ("ready", "timeout", "predicate_failed"), if checked
        error: Error details ({"type", "message"}) if the group failed
        detail: Free-form detail (e.g. why a predicate failed)
    """
    group: str
    outcome: GroupOutcome
    started_at: datetime
    completed_at: datetime
    readiness: Optional[str] = None
    error: Optional[dict[str, Any]] = None
    detail: Optional[str] = None

    def __post_init__(self):
        if self.outcome == GroupOutcome.FAILED_APPLY and self.error is None:
            raise ValueError("failed_apply results must carry error details")
        if self.completed_at < self.started_at:
            raise ValueError("completed_at must not precede started_at")

    @property
    def severity(self) -> str:
        return self.outcome.severity

    @property
    def duration_ms(self) -> int:
        delta = self.completed_at - self.started_at
        return int(delta.total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "group": self.group,
            "outcome": self.outcome.value,
            "severity": self.severity,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_ms": self.duration_ms,
        }
        if self.readiness is not None:
            result["readiness"] = self.readiness
        if self.error is not None:
            result["error"] = self.error
        if self.detail is not None:
            result["detail"] = self.detail
        return result


@dataclass
class SequenceRun:
    """
    A record of one sequencer invocation.

    Attributes:
        groups: Ordered input groups (immutable)
        plan_name: Name of the plan the groups came from
        run_id: Unique identifier of this run
        status: running, completed, aborted or cancelled
        started_at: When the run started
        completed_at: When the run was finalized (None while running)
    """
    groups: tuple[ResourceGroup, ...]
    plan_name: str = ""
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    _results: dict[str, GroupResult] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        self.groups = tuple(self.groups)

    @property
    def finalized(self) -> bool:
        return self.status != RunStatus.RUNNING

    @property
    def results(self) -> Mapping[str, GroupResult]:
        """Group name -> result, in execution order. Read-only view."""
        return MappingProxyType(self._results)

    @property
    def outcomes(self) -> dict[str, GroupOutcome]:
        return {name: r.outcome for name, r in self._results.items()}

    def record(self, result: GroupResult) -> None:
        """
        Append the result of an attempted group.

        Raises:
            RuntimeError: If the run is already finalized
            ValueError: If the group is unknown or already recorded
        """
        if self.finalized:
            raise RuntimeError(f"Run {self.run_id} is finalized ({self.status.value})")
        if result.group not in {g.name for g in self.groups}:
            raise ValueError(f"Unknown group: {result.group}")
        if result.group in self._results:
            raise ValueError(f"Group already recorded: {result.group}")
        self._results[result.group] = result

    def finalize(self, status: RunStatus) -> None:
        """Seal the run with a terminal status."""
        if status == RunStatus.RUNNING:
            raise ValueError("Cannot finalize a run as running")
        if self.finalized:
            raise RuntimeError(f"Run {self.run_id} is already finalized ({self.status.value})")
        self.status = status
        self.completed_at = _utcnow()

    def _count(self, severity: str) -> int:
        return sum(1 for r in self._results.values() if r.severity == severity)

    @property
    def passed(self) -> int:
        return self._count("pass")

    @property
    def warned(self) -> int:
        return self._count("warn")

    @property
    def failed(self) -> int:
        return self._count("fail")

    @property
    def succeeded(self) -> bool:
        """True when the run went through every group without an abort or cancel."""
        return self.status == RunStatus.COMPLETED

    @property
    def duration_ms(self) -> Optional[int]:
        if self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "plan": self.plan_name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "groups": [g.name for g in self.groups],
            "results": [r.to_dict() for r in self._results.values()],
            "summary": {
                "passed": self.passed,
                "warnings": self.warned,
                "failed": self.failed,
                "attempted": len(self._results),
                "total": len(self.groups),
            },
        }
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
            result["duration_ms"] = self.duration_ms
        return result
