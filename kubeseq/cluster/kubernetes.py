"""
Kubernetes implementation of the cluster client.

Uses the official `kubernetes` package:
- Server-side apply through the dynamic client (any kind, including CRDs)
- Typed reads through CoreV1Api / AppsV1Api / BatchV1Api
- Commands in pods through kubernetes.stream (websocket exec)

API failures are translated into kubeseq's error taxonomy so the sequencer
can decide what to retry.
"""

import logging
from typing import Any, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from kubernetes.stream import stream

from kubeseq.cluster.base import (
    ClusterClient,
    DeploymentStatus,
    ExecResult,
    JobStatus,
    PodStatus,
    PVCStatus,
)
from kubeseq.errors import ApplyError, ConfigurationError, TransportError
from kubeseq.schemas.group import document_ref

logger = logging.getLogger(__name__)

# HTTP statuses worth retrying: request timeout, throttling, server errors
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def _is_retryable(status: Optional[int]) -> bool:
    if not status:
        # status 0 / None: no HTTP response at all
        return True
    return status in RETRYABLE_STATUSES or status >= 500


def _api_error(exc: ApiException, action: str, ref: str) -> Exception:
    """Map an ApiException to TransportError or ApplyError."""
    reason = exc.reason or "error"
    message = f"{action} {ref} failed: HTTP {exc.status} {reason}"
    if _is_retryable(exc.status):
        return TransportError(message, status=exc.status)
    return ApplyError(message, status=exc.status)


def load_api_client(
    kubeconfig: Optional[str] = None,
    context: Optional[str] = None,
) -> client.ApiClient:
    """
    Build an ApiClient.

    With no explicit kubeconfig or context, in-cluster configuration is tried
    first, then the default kubeconfig lookup.

    Raises:
        ConfigurationError: If no usable configuration is found
    """
    if kubeconfig is None and context is None:
        try:
            configuration = client.Configuration()
            config.load_incluster_config(client_configuration=configuration)
            logger.info("Loaded in-cluster Kubernetes configuration")
            return client.ApiClient(configuration)
        except config.ConfigException:
            pass

    try:
        api_client = config.new_client_from_config(config_file=kubeconfig, context=context)
    except (config.ConfigException, FileNotFoundError) as e:
        raise ConfigurationError(f"Cannot load Kubernetes configuration: {e}") from e
    logger.info(
        "Loaded kubeconfig",
        extra={"event": "kubeconfig_loaded", "metadata": {"kubeconfig": kubeconfig, "context": context}},
    )
    return api_client


def _container_waiting_reasons(statuses) -> tuple[str, ...]:
    reasons = []
    for cs in statuses:
        state = cs.state
        if state is not None and state.waiting is not None and state.waiting.reason:
            reasons.append(state.waiting.reason)
    return tuple(reasons)


def _pod_status(pod) -> PodStatus:
    statuses = (pod.status.container_statuses if pod.status else None) or []
    security = pod.spec.security_context if pod.spec else None
    return PodStatus(
        name=pod.metadata.name,
        phase=(pod.status.phase if pod.status else None) or "Unknown",
        containers_ready=all(bool(cs.ready) for cs in statuses),
        container_count=len(statuses),
        restart_count=max((cs.restart_count or 0 for cs in statuses), default=0),
        run_as_user=security.run_as_user if security is not None else None,
        waiting_reasons=_container_waiting_reasons(statuses),
    )


def _deployment_status(deployment) -> DeploymentStatus:
    spec_replicas = deployment.spec.replicas if deployment.spec else None
    status = deployment.status
    return DeploymentStatus(
        name=deployment.metadata.name,
        # API default when spec.replicas is unset
        spec_replicas=1 if spec_replicas is None else spec_replicas,
        ready_replicas=(status.ready_replicas if status else None) or 0,
        updated_replicas=(status.updated_replicas if status else None) or 0,
        available_replicas=(status.available_replicas if status else None) or 0,
        generation=getattr(deployment.metadata, "generation", None),
        observed_generation=getattr(status, "observed_generation", None),
    )


def _job_status(job) -> JobStatus:
    status = job.status
    complete = failed = False
    failure_reason = None
    for cond in (status.conditions if status else None) or []:
        if cond.status != "True":
            continue
        if cond.type == "Complete":
            complete = True
        elif cond.type == "Failed":
            failed = True
            failure_reason = cond.message or cond.reason
    return JobStatus(
        name=job.metadata.name,
        complete=complete,
        failed=failed,
        failure_reason=failure_reason,
        succeeded=(status.succeeded if status else None) or 0,
        failed_pods=(status.failed if status else None) or 0,
    )


class KubernetesClusterClient(ClusterClient):
    """
    ClusterClient backed by a Kubernetes API server.

    Every API call carries a request timeout, so a stalled server surfaces
    as a TransportError instead of blocking the caller.

    Args:
        api_client: Configured kubernetes ApiClient
        field_manager: Server-side apply field manager name
        default_namespace: Namespace used when neither the document nor the caller names one
        request_timeout: Seconds before an API request is abandoned
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        field_manager: str = "kubeseq",
        default_namespace: str = "default",
        request_timeout: float = 30.0,
    ):
        self.api_client = api_client
        self.field_manager = field_manager
        self.default_namespace = default_namespace
        self.request_timeout = request_timeout
        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)
        self.batch_v1 = client.BatchV1Api(api_client)
        self._dynamic: Optional[DynamicClient] = None
        self._exec_api: Optional[client.CoreV1Api] = None

    @classmethod
    def from_config(cls, cfg) -> "KubernetesClusterClient":
        """Create a client from a KubeseqConfig."""
        api_client = load_api_client(kubeconfig=cfg.kubeconfig, context=cfg.context)
        return cls(
            api_client,
            field_manager=cfg.field_manager,
            default_namespace=cfg.namespace,
            request_timeout=cfg.request_timeout_seconds,
        )

    @property
    def dynamic(self) -> DynamicClient:
        # Discovery hits the API server, so build on first use
        if self._dynamic is None:
            try:
                self._dynamic = DynamicClient(self.api_client)
            except ApiException as e:
                raise _api_error(e, "discover", "API resources")
            except urllib3.exceptions.HTTPError as e:
                raise TransportError(f"API discovery failed: {e}")
        return self._dynamic

    def _resource(self, api_version: str, kind: str):
        try:
            return self.dynamic.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError:
            raise ApplyError(f"Unknown resource kind {api_version}/{kind} (is the CRD installed?)")
        except ApiException as e:
            raise _api_error(e, "discover", f"{api_version}/{kind}")
        except urllib3.exceptions.HTTPError as e:
            raise TransportError(f"discover {api_version}/{kind} failed: {e}")

    def _namespace_for(self, resource, document: dict[str, Any], namespace: Optional[str]) -> Optional[str]:
        if not resource.namespaced:
            return None
        metadata = document.get("metadata") or {}
        return metadata.get("namespace") or namespace or self.default_namespace

    def check_access(self) -> str:
        try:
            info = client.VersionApi(self.api_client).get_code(_request_timeout=self.request_timeout)
        except ApiException as e:
            raise TransportError(f"Cluster API check failed: HTTP {e.status} {e.reason}", status=e.status)
        except urllib3.exceptions.HTTPError as e:
            raise TransportError(f"Cannot connect to Kubernetes cluster: {e}")
        return info.git_version

    def apply(self, document: dict[str, Any], namespace: Optional[str] = None) -> dict[str, Any]:
        ref = document_ref(document)
        resource = self._resource(document["apiVersion"], document["kind"])
        target_ns = self._namespace_for(resource, document, namespace)
        try:
            applied = self.dynamic.server_side_apply(
                resource,
                body=document,
                name=document["metadata"]["name"],
                namespace=target_ns,
                field_manager=self.field_manager,
                force_conflicts=True,
                _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            raise _api_error(e, "apply", ref)
        except urllib3.exceptions.HTTPError as e:
            raise TransportError(f"apply {ref} failed: {e}")
        logger.debug(
            f"Applied {ref}",
            extra={"event": "resource_applied", "metadata": {"ref": ref, "namespace": target_ns}},
        )
        return applied.to_dict()

    def delete(
        self,
        document: dict[str, Any],
        namespace: Optional[str] = None,
        grace_period_seconds: Optional[int] = None,
    ) -> bool:
        ref = document_ref(document)
        resource = self._resource(document["apiVersion"], document["kind"])
        target_ns = self._namespace_for(resource, document, namespace)
        options: dict[str, Any] = {
            "apiVersion": "v1",
            "kind": "DeleteOptions",
            "propagationPolicy": "Foreground",
        }
        if grace_period_seconds is not None:
            options["gracePeriodSeconds"] = grace_period_seconds
        try:
            self.dynamic.delete(
                resource,
                name=document["metadata"]["name"],
                namespace=target_ns,
                body=options,
                _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise _api_error(e, "delete", ref)
        except urllib3.exceptions.HTTPError as e:
            raise TransportError(f"delete {ref} failed: {e}")
        return True

    def remove_finalizers(self, document: dict[str, Any], namespace: Optional[str] = None) -> bool:
        ref = document_ref(document)
        resource = self._resource(document["apiVersion"], document["kind"])
        target_ns = self._namespace_for(resource, document, namespace)
        try:
            self.dynamic.patch(
                resource,
                body={"metadata": {"finalizers": None}},
                name=document["metadata"]["name"],
                namespace=target_ns,
                content_type="application/merge-patch+json",
                _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise _api_error(e, "patch finalizers of", ref)
        except urllib3.exceptions.HTTPError as e:
            raise TransportError(f"patch finalizers of {ref} failed: {e}")
        logger.info(
            f"Removed finalizers from {ref}",
            extra={"event": "finalizers_removed", "metadata": {"ref": ref, "namespace": target_ns}},
        )
        return True

    def _stream_api(self) -> client.CoreV1Api:
        # stream() swaps the ApiClient's request method for a websocket call,
        # so exec gets an ApiClient of its own
        if self._exec_api is None:
            self._exec_api = client.CoreV1Api(client.ApiClient(self.api_client.configuration))
        return self._exec_api

    def exec_in_pod(self, name: str, namespace: str, command: list[str]) -> ExecResult:
        try:
            resp = stream(
                self._stream_api().connect_get_namespaced_pod_exec,
                name,
                namespace,
                command=list(command),
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
                _request_timeout=self.request_timeout,
            )
        except ApiException as e:
            raise _api_error(e, "exec in", f"Pod/{name}")
        except urllib3.exceptions.HTTPError as e:
            raise TransportError(f"exec in Pod/{name} failed: {e}")
        try:
            resp.run_forever(timeout=self.request_timeout)
            stdout = resp.read_stdout(timeout=0)
            stderr = resp.read_stderr(timeout=0)
            # Still open means the command outlived the timeout
            returncode = None if resp.is_open() else resp.returncode
        finally:
            resp.close()
        logger.debug(
            f"Exec in Pod/{name} exited with {returncode}",
            extra={"event": "pod_exec", "metadata": {"pod": name, "command": list(command)}},
        )
        return ExecResult(returncode=returncode, stdout=stdout, stderr=stderr)

    def _read(self, fn, ref: str, **kwargs):
        try:
            return fn(_request_timeout=self.request_timeout, **kwargs)
        except ApiException as e:
            if e.status == 404:
                return None
            raise _api_error(e, "read", ref)
        except urllib3.exceptions.HTTPError as e:
            raise TransportError(f"read {ref} failed: {e}")

    def list_pods(self, namespace: str, label_selector: str) -> list[PodStatus]:
        pods = self._read(
            self.core_v1.list_namespaced_pod,
            f"pods[{label_selector}]",
            namespace=namespace,
            label_selector=label_selector,
        )
        if pods is None:
            return []
        return [_pod_status(p) for p in pods.items]

    def read_deployment(self, name: str, namespace: str) -> Optional[DeploymentStatus]:
        deployment = self._read(
            self.apps_v1.read_namespaced_deployment, f"Deployment/{name}", name=name, namespace=namespace
        )
        return _deployment_status(deployment) if deployment is not None else None

    def read_job(self, name: str, namespace: str) -> Optional[JobStatus]:
        job = self._read(self.batch_v1.read_namespaced_job, f"Job/{name}", name=name, namespace=namespace)
        return _job_status(job) if job is not None else None

    def read_pvc(self, name: str, namespace: str) -> Optional[PVCStatus]:
        pvc = self._read(
            self.core_v1.read_namespaced_persistent_volume_claim,
            f"PersistentVolumeClaim/{name}",
            name=name,
            namespace=namespace,
        )
        if pvc is None:
            return None
        return PVCStatus(name=name, phase=(pvc.status.phase if pvc.status else None) or "Pending")

    def read_object(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        try:
            resource = self._resource(api_version, kind)
        except ApplyError:
            # Kind not served by this cluster: nothing to read
            return None
        kwargs: dict[str, Any] = {"name": name}
        if resource.namespaced:
            kwargs["namespace"] = namespace or self.default_namespace
        obj = self._read(lambda **kw: self.dynamic.get(resource, **kw), f"{kind}/{name}", **kwargs)
        return obj.to_dict() if obj is not None else None

    def list_objects(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        try:
            resource = self._resource(api_version, kind)
        except ApplyError:
            return []
        kwargs: dict[str, Any] = {}
        if resource.namespaced and namespace:
            kwargs["namespace"] = namespace
        if label_selector:
            kwargs["label_selector"] = label_selector
        listing = self._read(lambda **kw: self.dynamic.get(resource, **kw), f"{kind}[]", **kwargs)
        if listing is None:
            return []
        return listing.to_dict().get("items") or []
