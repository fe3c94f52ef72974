"""Shared fixtures: an in-memory cluster and a controllable clock.

No test talks to a real API server or sleeps for real.
"""

import copy

import pytest

from kubeseq.cluster.base import ClusterClient, ExecResult, PodStatus
from kubeseq.errors import TransportError
from kubeseq.readiness import ReadinessEvaluator
from kubeseq.schemas.group import document_ref
from kubeseq.sequencer import Sequencer


CLUSTER_SCOPED = {"Namespace", "PersistentVolume"}


def make_document(kind="ConfigMap", name="demo", namespace=None, api_version="v1", **extra):
    metadata = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    document = {"apiVersion": api_version, "kind": kind, "metadata": metadata}
    document.update(extra)
    return document


class FakeClock:
    """Monotonic clock whose sleep advances time and fires scheduled events."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []
        self._events = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        due = [event for event in self._events if event[0] <= self.now]
        for event in due:
            self._events.remove(event)
            event[1]()

    def at(self, when, callback):
        """Run callback once the clock reaches `when`."""
        self._events.append((when, callback))


def _selector_matches(selector, labels):
    for requirement in selector.split(","):
        key, _, value = requirement.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


class FakeCluster(ClusterClient):
    """
    In-memory ClusterClient.

    Objects are stored by (kind, namespace, name). Status records for the
    readiness kinds are set directly by tests. An object stored with
    metadata.finalizers stays (terminating) after delete until
    remove_finalizers is called. Scripted errors are consumed
    in order, one per call.
    """

    def __init__(self):
        self.objects = {}
        self.calls = []
        self.apply_errors = {}
        self.delete_errors = {}
        self.on_apply = {}
        self.pods = {}
        self.deployments = {}
        self.jobs = {}
        self.pvcs = {}
        self.reachable = True
        self.read_errors = 0
        self.grace_periods = {}
        self.exec_results = {}

    # -- helpers ------------------------------------------------------------

    def _key(self, document, namespace):
        kind = document["kind"]
        if kind in CLUSTER_SCOPED:
            ns = None
        else:
            ns = document["metadata"].get("namespace") or namespace or "default"
        return (kind, ns, document["metadata"]["name"])

    @property
    def applied(self):
        return [ref for op, ref in self.calls if op == "apply"]

    @property
    def deleted(self):
        return [ref for op, ref in self.calls if op == "delete"]

    def add_pod(self, name, labels, namespace="default", phase="Running", ready=True,
                restarts=0, run_as_user=None):
        self.pods[(namespace, name)] = (
            dict(labels),
            PodStatus(
                name=name,
                phase=phase,
                containers_ready=ready,
                container_count=1,
                restart_count=restarts,
                run_as_user=run_as_user,
            ),
        )

    def add_object(self, document, namespace=None):
        key = self._key(document, namespace)
        stored = copy.deepcopy(document)
        if key[1]:
            stored["metadata"]["namespace"] = key[1]
        self.objects[key] = stored
        return stored

    def _status_read(self, ref):
        self.calls.append(("read", ref))
        if self.read_errors:
            self.read_errors -= 1
            raise TransportError("read timed out", status=503)

    # -- ClusterClient --------------------------------------------------------

    def check_access(self):
        if not self.reachable:
            raise TransportError("connection refused")
        return "v1.29.0"

    def apply(self, document, namespace=None):
        ref = document_ref(document)
        self.calls.append(("apply", ref))
        queue = self.apply_errors.get(ref)
        if queue:
            raise queue.pop(0)
        stored = self.add_object(document, namespace)
        callback = self.on_apply.get(ref)
        if callback is not None:
            callback()
        return stored

    def delete(self, document, namespace=None, grace_period_seconds=None):
        ref = document_ref(document)
        self.calls.append(("delete", ref))
        self.grace_periods[ref] = grace_period_seconds
        queue = self.delete_errors.get(ref)
        if queue:
            raise queue.pop(0)
        key = self._key(document, namespace)
        stored = self.objects.get(key)
        if stored is None:
            return False
        if stored["metadata"].get("finalizers"):
            # Terminating until the finalizers are cleared
            stored["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
        else:
            del self.objects[key]
        return True

    def remove_finalizers(self, document, namespace=None):
        self.calls.append(("unfinalize", document_ref(document)))
        key = self._key(document, namespace)
        stored = self.objects.get(key)
        if stored is None:
            return False
        stored["metadata"].pop("finalizers", None)
        if stored["metadata"].get("deletionTimestamp"):
            del self.objects[key]
        return True

    def exec_in_pod(self, name, namespace, command):
        self.calls.append(("exec", f"{name}: {' '.join(command)}"))
        result = self.exec_results.get((name, tuple(command)))
        if isinstance(result, Exception):
            raise result
        return result if result is not None else ExecResult(returncode=0)

    def list_pods(self, namespace, label_selector):
        self._status_read(f"pods[{label_selector}]")
        return [
            status
            for (ns, _), (labels, status) in self.pods.items()
            if ns == namespace and _selector_matches(label_selector, labels)
        ]

    def read_deployment(self, name, namespace):
        self._status_read(f"Deployment/{name}")
        return self.deployments.get((namespace, name))

    def read_job(self, name, namespace):
        self._status_read(f"Job/{name}")
        return self.jobs.get((namespace, name))

    def read_pvc(self, name, namespace):
        self._status_read(f"PersistentVolumeClaim/{name}")
        return self.pvcs.get((namespace, name))

    def read_object(self, api_version, kind, name, namespace=None):
        ns = None if kind in CLUSTER_SCOPED else (namespace or "default")
        return copy.deepcopy(self.objects.get((kind, ns, name)))

    def list_objects(self, api_version, kind, namespace=None, label_selector=None):
        return [
            copy.deepcopy(document)
            for (k, ns, _), document in self.objects.items()
            if k == kind and (k in CLUSTER_SCOPED or namespace is None or ns == namespace)
        ]


@pytest.fixture
def make_doc():
    return make_document


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def evaluator(cluster, clock):
    return ReadinessEvaluator(cluster, poll_interval=2.0, clock=clock, sleep=clock.sleep)


@pytest.fixture
def sequencer(cluster, evaluator, clock):
    return Sequencer(cluster, evaluator, apply_attempts=3, apply_backoff_seconds=1.0, sleep=clock.sleep)
