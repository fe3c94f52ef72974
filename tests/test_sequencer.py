"""Tests for the Sequencer.

Tests cover:
- Strict group ordering (apply, wait, record, next)
- Outcome classification (ready, timeout, no check, failed apply)
- Failure policies (abort, warn_and_continue)
- Bounded apply retries on transport errors
- Preflight validation before any apply
- Cancellation before and during a group
"""

import pytest

from kubeseq.cluster.base import JobStatus
from kubeseq.errors import ApplyError, ConfigurationError, PredicateFailure, TransportError
from kubeseq.schemas import (
    FailurePolicy,
    GroupOutcome,
    ReadinessPredicate,
    ResourceGroup,
    RunStatus,
)
from kubeseq.sequencer import CancelToken, Sequencer

from conftest import make_document


def _group(name, *documents, readiness=None, on_failure=FailurePolicy.ABORT):
    if not documents:
        documents = (make_document("ConfigMap", f"{name}-config"),)
    return ResourceGroup(name=name, resources=documents, readiness_check=readiness, on_failure=on_failure)


def _pods_ready(selector, timeout=10):
    return ReadinessPredicate.pods_ready(selector, "default", timeout)


class TestOutcomes:
    def test_no_check_then_timeout_is_non_fatal(self, sequencer, cluster, clock):
        """A readiness timeout is recorded, not raised, even under ABORT."""
        storage = _group("storage", make_document("PersistentVolume", "postgres-pv"))
        database = _group(
            "database",
            make_document("Deployment", "postgres", api_version="apps/v1"),
            readiness=_pods_ready("app=postgres", timeout=10),
        )

        run = sequencer.run([storage, database])

        assert run.status == RunStatus.COMPLETED
        assert run.outcomes == {
            "storage": GroupOutcome.APPLIED_NO_CHECK,
            "database": GroupOutcome.APPLIED_TIMEOUT,
        }
        assert run.results["database"].readiness == "timeout"
        assert clock.now == 10

    def test_ready(self, sequencer, cluster):
        cluster.on_apply["Deployment/postgres"] = lambda: cluster.add_pod("postgres-0", {"app": "postgres"})
        group = _group(
            "database",
            make_document("Deployment", "postgres", api_version="apps/v1"),
            readiness=_pods_ready("app=postgres"),
        )

        run = sequencer.run([group])
        result = run.results["database"]
        assert result.outcome == GroupOutcome.APPLIED_READY
        assert result.readiness == "ready"
        assert result.detail == "1/1 pods ready"
        assert run.succeeded

    def test_failed_job_is_failed_apply(self, sequencer, cluster):
        cluster.jobs[("default", "migrate")] = JobStatus("migrate", failed=True, failure_reason="DeadlineExceeded")
        migration = _group(
            "migration",
            make_document("Job", "migrate", api_version="batch/v1"),
            readiness=ReadinessPredicate.job_complete("migrate", "default", 600),
        )
        backend = _group("backend")

        run = sequencer.run([migration, backend])

        result = run.results["migration"]
        assert result.outcome == GroupOutcome.FAILED_APPLY
        assert result.readiness == "predicate_failed"
        assert result.error["type"] == PredicateFailure.__name__
        assert "DeadlineExceeded" in result.error["message"]
        assert run.status == RunStatus.ABORTED
        assert "ConfigMap/backend-config" not in cluster.applied

    def test_unexpected_error_is_captured(self, sequencer, cluster):
        cluster.apply_errors["ConfigMap/a-config"] = [RuntimeError("boom")]
        run = sequencer.run([_group("a", on_failure=FailurePolicy.WARN_AND_CONTINUE), _group("b")])

        assert run.results["a"].outcome == GroupOutcome.FAILED_APPLY
        assert run.results["a"].error == {"type": "RuntimeError", "message": "boom"}
        assert run.results["b"].outcome == GroupOutcome.APPLIED_NO_CHECK


class TestFailurePolicy:
    def test_abort_stops_run(self, sequencer, cluster):
        cluster.apply_errors["ConfigMap/a-config"] = [ApplyError("admission webhook denied", status=403)]

        run = sequencer.run([_group("a"), _group("b")])

        assert run.status == RunStatus.ABORTED
        assert list(run.results) == ["a"]
        result = run.results["a"]
        assert result.outcome == GroupOutcome.FAILED_APPLY
        assert result.error["type"] == "ApplyError"
        assert result.error["resources"] == ["ConfigMap/a-config"]
        assert cluster.applied == ["ConfigMap/a-config"]

    def test_warn_and_continue(self, sequencer, cluster):
        cluster.apply_errors["ConfigMap/a-config"] = [ApplyError("invalid", status=422)]

        run = sequencer.run([
            _group("a", on_failure=FailurePolicy.WARN_AND_CONTINUE),
            _group("b"),
        ])

        assert run.status == RunStatus.COMPLETED
        assert run.outcomes == {"a": GroupOutcome.FAILED_APPLY, "b": GroupOutcome.APPLIED_NO_CHECK}
        assert run.failed == 1

    def test_remaining_documents_still_applied(self, sequencer, cluster):
        """A rejected document does not stop the rest of its group."""
        cluster.apply_errors["Secret/bad"] = [ApplyError("invalid", status=422)]
        group = _group(
            "config",
            make_document("ConfigMap", "first"),
            make_document("Secret", "bad"),
            make_document("ConfigMap", "last"),
        )

        run = sequencer.run([group])

        assert cluster.applied == ["ConfigMap/first", "Secret/bad", "ConfigMap/last"]
        assert ("ConfigMap", "default", "last") in cluster.objects
        assert run.results["config"].error["resources"] == ["Secret/bad"]
        assert "Secret/bad: invalid" in run.results["config"].error["message"]


class TestRetries:
    def test_transport_errors_retried_with_backoff(self, sequencer, cluster, clock):
        cluster.apply_errors["ConfigMap/a-config"] = [
            TransportError("unavailable", status=503),
            TransportError("throttled", status=429),
        ]

        run = sequencer.run([_group("a")])

        assert run.results["a"].outcome == GroupOutcome.APPLIED_NO_CHECK
        assert cluster.applied == ["ConfigMap/a-config"] * 3
        assert clock.sleeps == [1.0, 2.0]

    def test_retries_are_bounded(self, sequencer, cluster, clock):
        cluster.apply_errors["ConfigMap/a-config"] = [TransportError("connection refused")] * 5

        run = sequencer.run([_group("a")])

        result = run.results["a"]
        assert result.outcome == GroupOutcome.FAILED_APPLY
        assert result.error["type"] == "TransportError"
        assert cluster.applied == ["ConfigMap/a-config"] * 3
        assert clock.sleeps == [1.0, 2.0]

    def test_apply_error_not_retried(self, sequencer, cluster, clock):
        cluster.apply_errors["ConfigMap/a-config"] = [ApplyError("invalid", status=422)]
        sequencer.run([_group("a")])
        assert cluster.applied == ["ConfigMap/a-config"]
        assert clock.sleeps == []


class TestPreflight:
    def test_duplicate_names_rejected_before_apply(self, sequencer, cluster):
        with pytest.raises(ConfigurationError, match="Duplicate group name: a"):
            sequencer.run([_group("a"), _group("b"), _group("a")])
        assert cluster.calls == []

    def test_bad_selector_in_later_group_rejected_before_apply(self, sequencer, cluster):
        groups = [_group("a"), _group("db", readiness=_pods_ready("app in (postgres"))]
        with pytest.raises(ConfigurationError, match="Group 'db': "):
            sequencer.run(groups)
        assert cluster.calls == []

    def test_apply_attempts_must_be_positive(self, cluster):
        with pytest.raises(ValueError):
            Sequencer(cluster, apply_attempts=0)


class TestOrdering:
    def test_next_group_starts_after_readiness(self, sequencer, cluster):
        cluster.on_apply["Deployment/postgres"] = lambda: cluster.add_pod("postgres-0", {"app": "postgres"})
        database = _group(
            "database",
            make_document("Deployment", "postgres", api_version="apps/v1"),
            readiness=_pods_ready("app=postgres"),
        )
        backend = _group("backend", make_document("Deployment", "backend", api_version="apps/v1"))

        sequencer.run([database, backend])

        assert cluster.calls == [
            ("apply", "Deployment/postgres"),
            ("read", "pods[app=postgres]"),
            ("apply", "Deployment/backend"),
        ]

    def test_results_never_exceed_groups(self, sequencer):
        groups = [_group(name) for name in ("a", "b", "c")]
        run = sequencer.run(groups)
        assert list(run.results) == ["a", "b", "c"]
        assert len(run.results) <= len(run.groups)

    def test_rerun_is_idempotent(self, sequencer, cluster):
        groups = [_group("a"), _group("b", make_document("Service", "web"))]
        first = sequencer.run(groups)
        snapshot = dict(cluster.objects)
        second = sequencer.run(groups)

        assert first.outcomes == second.outcomes
        assert cluster.objects == snapshot
        assert first.run_id != second.run_id


class TestCancellation:
    def test_cancel_before_group(self, sequencer, cluster):
        token = CancelToken()
        cluster.on_apply["ConfigMap/a-config"] = token.cancel

        run = sequencer.run([_group("a"), _group("b")], cancel=token)

        assert run.status == RunStatus.CANCELLED
        assert list(run.results) == ["a"]
        assert "ConfigMap/b-config" not in cluster.applied

    def test_cancel_during_wait(self, sequencer, cluster, clock):
        token = CancelToken()
        clock.at(4, token.cancel)
        groups = [
            _group("storage"),
            _group("database", readiness=_pods_ready("app=postgres", timeout=300)),
            _group("backend"),
        ]

        run = sequencer.run(groups, cancel=token)

        assert run.status == RunStatus.CANCELLED
        assert list(run.results) == ["storage"]
        assert run.finalized
        assert "ConfigMap/backend-config" not in cluster.applied

    def test_already_cancelled(self, sequencer, cluster):
        token = CancelToken()
        token.cancel()
        run = sequencer.run([_group("a")], cancel=token)
        assert run.status == RunStatus.CANCELLED
        assert cluster.calls == []
