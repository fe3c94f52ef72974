"""Tests for readiness evaluation.

Tests cover:
- Label selector grammar
- Each predicate kind (ready, pending, failed)
- Bounded waits ending in TIMEOUT
- Transport errors during polling
- Cancellation between polls
"""

import pytest

from kubeseq.cluster.base import DeploymentStatus, JobStatus, PVCStatus
from kubeseq.errors import (
    ConfigurationError,
    PredicateFailure,
    ReadinessTimeoutError,
    RunCancelled,
)
from kubeseq.readiness import (
    ReadinessEvaluator,
    ReadinessResult,
    ReadinessState,
    validate_label_selector,
)
from kubeseq.schemas import ReadinessPredicate
from kubeseq.sequencer import CancelToken


NS = "production"


class TestLabelSelector:
    """Selector syntax is checked before any wait."""

    @pytest.mark.parametrize("selector", [
        "app=postgres",
        "app==postgres",
        "tier!=frontend",
        "app=postgres,tier=db",
        "app.kubernetes.io/name=redis",
        "env in (production, staging)",
        "env notin (dev)",
        "canary",
        "!canary",
        "app in (a,b),tier=db",
    ])
    def test_valid(self, selector):
        validate_label_selector(selector)

    @pytest.mark.parametrize("selector", [
        "",
        "   ",
        "=postgres",
        "app postgres",
        "app in (a",
        "app in ()",
        ",app=postgres",
        "app=post gres",
    ])
    def test_invalid(self, selector):
        with pytest.raises(ConfigurationError):
            validate_label_selector(selector)

    def test_wait_rejects_malformed_selector_before_polling(self, evaluator, cluster):
        predicate = ReadinessPredicate.pods_ready("app in (a", NS, 30)
        with pytest.raises(ConfigurationError, match="Unbalanced"):
            evaluator.wait(predicate)
        assert cluster.calls == []


class TestPodsReady:
    def test_ready_immediately(self, evaluator, cluster, clock):
        cluster.add_pod("postgres-0", {"app": "postgres"}, namespace=NS)
        result = evaluator.wait(ReadinessPredicate.pods_ready("app=postgres", NS, 300))
        assert result.state == ReadinessState.READY
        assert result.elapsed_seconds == 0
        assert result.detail == "1/1 pods ready"
        assert clock.sleeps == []

    def test_zero_pods_times_out(self, evaluator, cluster, clock):
        """A selector that matches nothing is pending, never vacuously ready."""
        result = evaluator.wait(ReadinessPredicate.pods_ready("app=missing", NS, 10))
        assert result.state == ReadinessState.TIMEOUT
        assert result.elapsed_seconds == 10
        assert result.detail == "no pods match app=missing"
        assert clock.sleeps == [2.0, 2.0, 2.0, 2.0, 2.0]

    def test_partial_readiness_is_pending(self, evaluator, cluster, clock):
        cluster.add_pod("redis-0", {"app": "redis"}, namespace=NS)
        cluster.add_pod("redis-1", {"app": "redis"}, namespace=NS, ready=False)
        clock.at(6, lambda: cluster.add_pod("redis-1", {"app": "redis"}, namespace=NS))

        result = evaluator.wait(ReadinessPredicate.pods_ready("app=redis", NS, 180))
        assert result.ready
        assert result.elapsed_seconds == 6

    def test_final_sleep_is_clamped_to_deadline(self, evaluator, clock):
        result = evaluator.wait(ReadinessPredicate.pods_ready("app=missing", NS, 5))
        assert result.state == ReadinessState.TIMEOUT
        assert clock.sleeps == [2.0, 2.0, 1.0]
        assert clock.now == 5

    def test_other_namespace_ignored(self, evaluator, cluster):
        cluster.add_pod("postgres-0", {"app": "postgres"}, namespace="staging")
        state, detail = evaluator.check(ReadinessPredicate.pods_ready("app=postgres", NS, 30))
        assert state is None
        assert "no pods match" in detail


class TestDeploymentRolledOut:
    def test_rolled_out(self, evaluator, cluster):
        cluster.deployments[(NS, "backend")] = DeploymentStatus(
            "backend", spec_replicas=3, ready_replicas=3, updated_replicas=3, available_replicas=3
        )
        state, detail = evaluator.check(ReadinessPredicate.deployment_rolled_out("backend", NS, 300))
        assert state == ReadinessState.READY
        assert detail == "3/3 ready, 3 updated"

    def test_rollout_in_progress(self, evaluator, cluster):
        cluster.deployments[(NS, "backend")] = DeploymentStatus(
            "backend", spec_replicas=3, ready_replicas=3, updated_replicas=1
        )
        state, _ = evaluator.check(ReadinessPredicate.deployment_rolled_out("backend", NS, 300))
        assert state is None

    def test_missing_deployment_is_pending(self, evaluator):
        state, detail = evaluator.check(ReadinessPredicate.deployment_rolled_out("backend", NS, 300))
        assert state is None
        assert detail == "deployment backend not found"

    def test_waits_for_new_generation_to_be_observed(self, evaluator, cluster, clock):
        # Right after an apply the counters still describe the previous pod template
        cluster.deployments[(NS, "backend")] = DeploymentStatus(
            "backend", spec_replicas=2, ready_replicas=2, updated_replicas=2,
            generation=3, observed_generation=2,
        )
        clock.at(4, lambda: cluster.deployments.update({
            (NS, "backend"): DeploymentStatus(
                "backend", spec_replicas=2, ready_replicas=2, updated_replicas=2,
                generation=3, observed_generation=3,
            ),
        }))

        result = evaluator.wait(ReadinessPredicate.deployment_rolled_out("backend", NS, 300))
        assert result.ready
        assert result.elapsed_seconds == 4

    def test_stale_generation_detail(self, evaluator, cluster):
        cluster.deployments[(NS, "backend")] = DeploymentStatus(
            "backend", spec_replicas=2, ready_replicas=2, updated_replicas=2, generation=5,
        )
        state, detail = evaluator.check(ReadinessPredicate.deployment_rolled_out("backend", NS, 300))
        assert state is None
        assert detail == "generation 5 not yet observed (observed 0)"


class TestJobComplete:
    def test_complete(self, evaluator, cluster):
        cluster.jobs[(NS, "migrate")] = JobStatus("migrate", complete=True, succeeded=1)
        result = evaluator.wait(ReadinessPredicate.job_complete("migrate", NS, 600))
        assert result.ready

    def test_failed_job_ends_wait_early(self, evaluator, cluster, clock):
        cluster.jobs[(NS, "migrate")] = JobStatus("migrate")
        clock.at(4, lambda: cluster.jobs.update({
            (NS, "migrate"): JobStatus("migrate", failed=True, failure_reason="BackoffLimitExceeded", failed_pods=4),
        }))

        result = evaluator.wait(ReadinessPredicate.job_complete("migrate", NS, 600))
        assert result.state == ReadinessState.PREDICATE_FAILED
        assert result.elapsed_seconds == 4
        assert "BackoffLimitExceeded" in result.detail

    def test_running_job_detail(self, evaluator, cluster):
        cluster.jobs[(NS, "migrate")] = JobStatus("migrate", succeeded=0)
        state, detail = evaluator.check(ReadinessPredicate.job_complete("migrate", NS, 600))
        assert state is None
        assert detail == "job migrate running (0 succeeded)"


class TestPVCBound:
    def test_all_claims_bound(self, evaluator, cluster, clock):
        cluster.pvcs[(NS, "postgres-pvc")] = PVCStatus("postgres-pvc", "Bound")
        cluster.pvcs[(NS, "redis-pvc")] = PVCStatus("redis-pvc", "Pending")
        clock.at(2, lambda: cluster.pvcs.update({(NS, "redis-pvc"): PVCStatus("redis-pvc", "Bound")}))

        result = evaluator.wait(ReadinessPredicate.pvc_bound(["postgres-pvc", "redis-pvc"], NS, 60))
        assert result.ready
        assert result.detail == "2 claim(s) bound"
        assert result.elapsed_seconds == 2

    def test_pending_detail_names_claims(self, evaluator, cluster):
        cluster.pvcs[(NS, "postgres-pvc")] = PVCStatus("postgres-pvc", "Pending")
        state, detail = evaluator.check(ReadinessPredicate.pvc_bound(["postgres-pvc", "redis-pvc"], NS, 60))
        assert state is None
        assert detail == "unbound: postgres-pvc=Pending, redis-pvc=missing"


class TestPolling:
    def test_transport_errors_are_retried(self, evaluator, cluster, clock):
        cluster.add_pod("postgres-0", {"app": "postgres"}, namespace=NS)
        cluster.read_errors = 2

        result = evaluator.wait(ReadinessPredicate.pods_ready("app=postgres", NS, 60))
        assert result.ready
        assert result.elapsed_seconds == 4

    def test_unreachable_api_times_out(self, evaluator, cluster):
        cluster.read_errors = 100
        result = evaluator.wait(ReadinessPredicate.pods_ready("app=postgres", NS, 4))
        assert result.state == ReadinessState.TIMEOUT
        assert result.detail.startswith("API unavailable")

    def test_cancel_between_polls(self, evaluator, clock):
        token = CancelToken()
        clock.at(4, token.cancel)
        with pytest.raises(RunCancelled):
            evaluator.wait(ReadinessPredicate.pods_ready("app=missing", NS, 300), cancel=token)
        assert clock.now == 4

    def test_poll_arbitrary_condition(self, evaluator, clock):
        gone = []
        clock.at(6, lambda: gone.append(True))

        result = evaluator.poll(
            lambda: (ReadinessState.READY, "gone") if gone else (None, "still there"),
            timeout_seconds=30,
        )
        assert result.ready
        assert result.elapsed_seconds == 6
        assert clock.sleeps == [2.0, 2.0, 2.0]

    def test_poll_times_out_with_last_detail(self, evaluator, clock):
        result = evaluator.poll(lambda: (None, "2 remaining"), timeout_seconds=5)
        assert result.state == ReadinessState.TIMEOUT
        assert result.detail == "2 remaining"
        assert clock.sleeps == [2.0, 2.0, 1.0]

    def test_poll_interval_must_be_positive(self, cluster):
        with pytest.raises(ValueError):
            ReadinessEvaluator(cluster, poll_interval=0)


class TestReadinessResult:
    def test_raise_for_state_ready(self):
        ReadinessResult(ReadinessState.READY, 1.0).raise_for_state()

    def test_raise_for_state_timeout(self):
        result = ReadinessResult(ReadinessState.TIMEOUT, 60.0, "0/1 pods ready")
        with pytest.raises(ReadinessTimeoutError, match="Not ready after 60s: 0/1 pods ready"):
            result.raise_for_state()

    def test_raise_for_state_failed(self):
        result = ReadinessResult(ReadinessState.PREDICATE_FAILED, 3.0, "job migrate failed")
        with pytest.raises(PredicateFailure, match="job migrate failed"):
            result.raise_for_state()

    def test_to_dict(self):
        assert ReadinessResult(ReadinessState.READY, 1.23456, "ok").to_dict() == {
            "state": "ready",
            "elapsed_seconds": 1.235,
            "detail": "ok",
        }
