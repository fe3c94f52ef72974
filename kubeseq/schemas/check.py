"""
Check schemas - read-only validation results.

A ValidationReport accumulates CheckResults by value; the pass/warn/fail
tallies are derived from the recorded checks instead of kept as counters.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class CheckSeverity(str, Enum):
    """Severity of a single check."""
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass(frozen=True)
class CheckResult:
    """
    One validation check.

    Attributes:
        category: Area being checked (e.g. "storage", "deployments")
        severity: pass, warn or fail
        message: Human-readable result line
    """
    category: str
    severity: CheckSeverity
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "severity": self.severity.value,
            "message": self.message,
        }


@dataclass
class ValidationReport:
    """Ordered collection of check results."""
    checks: list[CheckResult] = field(default_factory=list)

    def record(self, category: str, severity: CheckSeverity, message: str) -> CheckResult:
        check = CheckResult(category=category, severity=severity, message=message)
        self.checks.append(check)
        return check

    def _count(self, severity: CheckSeverity) -> int:
        return sum(1 for c in self.checks if c.severity == severity)

    @property
    def passed(self) -> int:
        return self._count(CheckSeverity.PASS)

    @property
    def failed(self) -> int:
        return self._count(CheckSeverity.FAIL)

    @property
    def warnings(self) -> int:
        return self._count(CheckSeverity.WARN)

    @property
    def total(self) -> int:
        return len(self.checks)

    @property
    def healthy(self) -> bool:
        """True when no check failed (warnings allowed)."""
        return self.failed == 0

    def by_category(self) -> dict[str, list[CheckResult]]:
        grouped: dict[str, list[CheckResult]] = {}
        for check in self.checks:
            grouped.setdefault(check.category, []).append(check)
        return grouped

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "checks": [c.to_dict() for c in self.checks],
            "summary": {
                "passed": self.passed,
                "failed": self.failed,
                "warnings": self.warnings,
                "total": self.total,
            },
        }
