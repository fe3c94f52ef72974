"""
kubeseq.schemas - Schema definitions for the sequencing layer.

This module defines the core data structures for kubeseq:

ResourceGroup -> SequenceRun -> GroupResult

Lifecycle:
1. ResourceGroup: Static definition of manifests, readiness check and failure policy
2. SequenceRun: Runtime record created when a run starts
3. GroupResult: Outcome of one group, appended in execution order

ValidationReport/CheckResult carry the read-only checks of `validate`,
`status` and `cleanup`.
"""

from .group import (
    FailurePolicy,
    PredicateKind,
    ReadinessPredicate,
    ResourceGroup,
    document_ref,
)
from .run import (
    GroupOutcome,
    GroupResult,
    RunStatus,
    SequenceRun,
)
from .check import (
    CheckResult,
    CheckSeverity,
    ValidationReport,
)

__all__ = [
    # Groups
    "FailurePolicy",
    "PredicateKind",
    "ReadinessPredicate",
    "ResourceGroup",
    "document_ref",
    # Runs
    "GroupOutcome",
    "GroupResult",
    "RunStatus",
    "SequenceRun",
    # Checks
    "CheckResult",
    "CheckSeverity",
    "ValidationReport",
]
