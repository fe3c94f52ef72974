"""
Error classes for kubeseq.

These error types enable retry classification at the sequencer boundary:
- TransientError: Safe to retry (API unreachable, throttling, 5xx responses)
- PermanentError: Do not retry (rejected manifests, failed Jobs)

Cluster clients raise these errors to signal retry behavior.
The sequencer catches at the group boundary for retry/backoff and
outcome recording.

Error handling contract:
- Errors are exceptions until the group boundary
- The sequencer converts them into GroupResult entries
- ConfigurationError is the only error that escapes a run
"""

from typing import Optional


class KubeseqError(Exception):
    """Base exception for kubeseq."""
    pass


class ConfigurationError(KubeseqError):
    """
    Malformed static input.

    Examples:
    - Empty group name or empty resource list
    - Invalid label selector syntax
    - Missing required field in a plan or predicate

    Fatal. Surfaced before any apply begins and never retried.
    """
    pass


class TransientError(KubeseqError):
    """
    Transient error - safe to retry.

    The sequencer retries operations that raise TransientError
    according to its bounded apply retry policy.
    """
    pass


class PermanentError(KubeseqError):
    """
    Permanent error - do not retry.

    The sequencer immediately fails the group without retry
    when PermanentError is raised.
    """
    pass


class TransportError(TransientError):
    """
    Transient API communication failure.

    Examples:
    - Connection refused or reset
    - Request timeout (408) or throttling (429)
    - API server unavailable (5xx)
    """

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class ApplyError(PermanentError):
    """
    The cluster API rejected a resource document.

    Examples:
    - Schema validation failure (422)
    - Forbidden (403)
    - Unknown resource kind (CRD not installed)
    """

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class PredicateFailure(PermanentError):
    """A readiness predicate reached a terminal failed state (e.g. Job Failed)."""
    pass


class ReadinessTimeoutError(KubeseqError):
    """
    Readiness was not reached within the predicate timeout.

    Non-fatal: the sequencer records APPLIED_TIMEOUT and continues.
    Raised only by ReadinessResult.raise_for_state().
    """
    pass


class RunCancelled(KubeseqError):
    """The run was cancelled by an external signal."""
    pass
