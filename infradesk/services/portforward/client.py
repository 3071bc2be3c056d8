"""
Kubernetes Client for Port Forwarding

Thin async wrapper over the official kubernetes client: resolves a Service to
a ready pod, opens port-forward streams to that pod, and checks whether a
pinned pod is still serving.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import portforward
import logging
import asyncio
from typing import Dict, Optional

from .errors import NoReadyBackend, TunnelError

logger = logging.getLogger(__name__)


def build_label_selector(selector: Dict[str, str]) -> str:
    """Format a Service spec.selector as a label selector string."""
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


def is_pod_ready(pod: client.V1Pod) -> bool:
    """A pod serves traffic when it is Running and its Ready condition is True."""
    if not pod.status or pod.status.phase != "Running":
        return False
    if not pod.status.conditions:
        return False

    for condition in pod.status.conditions:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


class KubernetesClient:
    """
    Cluster access used by the tunnel establisher.

    Loads in-cluster configuration when running inside a pod and falls back to
    kubeconfig (optionally a specific file and context) for desktop use.
    """

    def __init__(self, kubeconfig_path: str = "", context: str = ""):
        """Initialize Kubernetes client with in-cluster or kubeconfig."""
        try:
            # Try in-cluster config first (backend deployed inside the cluster)
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                # Fall back to kubeconfig (desktop use)
                config.load_kube_config(
                    config_file=kubeconfig_path or None,
                    context=context or None
                )
                logger.info(f"Loaded kubeconfig{f' (context: {context})' if context else ''}")
            except config.ConfigException as e:
                logger.error(f"Failed to load Kubernetes config: {e}")
                raise RuntimeError("Cannot load Kubernetes configuration") from e

        self.core_v1 = client.CoreV1Api()

    def _get_stream_client(self) -> client.CoreV1Api:
        """
        Create a fresh CoreV1Api client for stream operations.

        The kubernetes-python stream helpers temporarily patch the api client's
        request method to speak WebSocket. Using the shared self.core_v1 would
        let concurrent regular calls (list pods, read service) pick up the
        patched method, so every stream gets its own client.
        """
        return client.CoreV1Api()

    # =========================================================================
    # POD RESOLUTION
    # =========================================================================

    async def find_ready_pod(self, namespace: str, service_name: str) -> str:
        """
        Resolve a Service to the first running, ready pod behind it.

        Raises:
            NoReadyBackend: service missing, selector-less, or without ready pods
            TunnelError: any other API failure
        """
        try:
            service = await asyncio.to_thread(
                self.core_v1.read_namespaced_service,
                name=service_name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                raise NoReadyBackend(namespace, service_name, "service not found") from e
            raise TunnelError(f"failed to get service {namespace}/{service_name}: {e.reason}") from e

        selector = service.spec.selector if service.spec else None
        if not selector:
            raise NoReadyBackend(namespace, service_name, "service has no pod selector")

        try:
            pods = await asyncio.to_thread(
                self.core_v1.list_namespaced_pod,
                namespace=namespace,
                label_selector=build_label_selector(selector)
            )
        except ApiException as e:
            raise TunnelError(f"failed to list pods for {namespace}/{service_name}: {e.reason}") from e

        for pod in pods.items:
            if is_pod_ready(pod):
                logger.debug(f"[K8S] Service {namespace}/{service_name} -> pod {pod.metadata.name}")
                return pod.metadata.name

        raise NoReadyBackend(namespace, service_name)

    async def pod_is_ready(self, namespace: str, pod_name: str) -> bool:
        """Check a pinned pod. A deleted pod is simply not ready."""
        try:
            pod = await asyncio.to_thread(
                self.core_v1.read_namespaced_pod,
                name=pod_name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return is_pod_ready(pod)

    # =========================================================================
    # PORT FORWARD STREAMS
    # =========================================================================

    def open_port_forward(self, namespace: str, pod_name: str, remote_port: int):
        """
        Open one port-forward stream to a pod (blocking).

        Returns the kubernetes PortForward object; `.socket(remote_port)` is the
        local end of the stream and `.error(remote_port)` reports stream errors.
        Callers run this through asyncio.to_thread.
        """
        stream_client = self._get_stream_client()
        try:
            return portforward(
                stream_client.connect_get_namespaced_pod_portforward,
                pod_name,
                namespace,
                ports=str(remote_port)
            )
        except ApiException as e:
            raise TunnelError(f"port forward to {namespace}/{pod_name}:{remote_port} rejected: {e.reason}") from e
        except Exception as e:
            raise TunnelError(f"port forward to {namespace}/{pod_name}:{remote_port} failed: {e}") from e


# Global instance - lazily initialized
_k8s_client_instance: Optional[KubernetesClient] = None


def get_k8s_client(kubeconfig_path: str = "", context: str = "") -> KubernetesClient:
    """Get or create the global Kubernetes client instance."""
    global _k8s_client_instance
    if _k8s_client_instance is None:
        _k8s_client_instance = KubernetesClient(kubeconfig_path, context)
    return _k8s_client_instance
