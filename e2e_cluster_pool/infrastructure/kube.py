"""Kubernetes access to pool clusters.

Covers the per-cluster preparation steps that talk to the cluster itself
rather than to the Azure control plane:

- connect(): build an isolated Kubernetes API client from the cluster's
  admin kubeconfig
- ensure_debug_daemonset(): make sure the privileged debug DaemonSet runs
- extract_cluster_parameters(): wait for a ready node and read its facts

Each connect() call returns its own ApiClient built from a config dict, so
parallel tasks can hold clients to different clusters without touching the
global kubernetes client configuration.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import yaml
from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.config import new_client_from_config_dict

if TYPE_CHECKING:
    from e2e_cluster_pool.infrastructure.azure_client import AzureClusterClient

logger = logging.getLogger(__name__)

DEBUG_DAEMONSET_NAME = "debug"
DEBUG_DAEMONSET_NAMESPACE = "default"
NODE_IMAGE_VERSION_LABEL = "kubernetes.azure.com/node-image-version"


@dataclass
class KubeClient:
    """Kubernetes API handles bound to one cluster."""

    api_client: client.ApiClient
    core: client.CoreV1Api
    apps: client.AppsV1Api

    def close(self) -> None:
        self.api_client.close()


def connect(azure: AzureClusterClient, resource_group: str, cluster_name: str) -> KubeClient:
    """Create a Kubernetes client for a managed cluster.

    Args:
        azure: Control-plane client used to fetch the admin kubeconfig.
        resource_group: Resource group holding the cluster.
        cluster_name: Managed cluster name.

    Returns:
        KubeClient scoped to the cluster.
    """
    kubeconfig = azure.get_cluster_kubeconfig(resource_group, cluster_name)
    config_dict = yaml.safe_load(kubeconfig)
    api_client = new_client_from_config_dict(config_dict)
    return KubeClient(
        api_client=api_client,
        core=client.CoreV1Api(api_client),
        apps=client.AppsV1Api(api_client),
    )


def debug_daemonset_manifest(image: str) -> dict[str, Any]:
    labels = {"app": DEBUG_DAEMONSET_NAME}
    return {
        "apiVersion": "apps/v1",
        "kind": "DaemonSet",
        "metadata": {
            "name": DEBUG_DAEMONSET_NAME,
            "namespace": DEBUG_DAEMONSET_NAMESPACE,
            "labels": labels,
        },
        "spec": {
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "hostNetwork": True,
                    "hostPID": True,
                    "nodeSelector": {"kubernetes.io/os": "linux"},
                    "containers": [
                        {
                            "name": "debug",
                            "image": image,
                            "command": ["sleep", "infinity"],
                            "securityContext": {"privileged": True},
                            "volumeMounts": [{"name": "host", "mountPath": "/host"}],
                        }
                    ],
                    "volumes": [{"name": "host", "hostPath": {"path": "/"}}],
                },
            },
        },
    }


def ensure_debug_daemonset(kube: KubeClient, image: str | None = None) -> None:
    """Create the debug DaemonSet unless it already exists.

    Raises:
        ApiException: For any API error other than 409 Conflict.
    """
    if image is None:
        from e2e_cluster_pool.config import settings

        image = settings.debug_daemonset_image

    try:
        kube.apps.create_namespaced_daemon_set(
            namespace=DEBUG_DAEMONSET_NAMESPACE,
            body=debug_daemonset_manifest(image),
        )
        logger.info(f"created debug daemonset {DEBUG_DAEMONSET_NAME!r}")
    except ApiException as e:
        if e.status == 409:
            logger.debug(f"debug daemonset {DEBUG_DAEMONSET_NAME!r} already exists")
            return
        raise


def _is_ready(node: Any) -> bool:
    conditions = node.status.conditions if node.status else None
    for condition in conditions or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def _node_parameters(node: Any) -> dict[str, str]:
    info = node.status.node_info
    params = {
        "node_name": node.metadata.name,
        "os_image": info.os_image,
        "kernel_version": info.kernel_version,
        "kubelet_version": info.kubelet_version,
        "container_runtime_version": info.container_runtime_version,
        "architecture": info.architecture,
        "operating_system": info.operating_system,
    }
    labels = node.metadata.labels or {}
    if NODE_IMAGE_VERSION_LABEL in labels:
        params["node_image_version"] = labels[NODE_IMAGE_VERSION_LABEL]
    return params


def extract_cluster_parameters(
    kube: KubeClient,
    timeout: float | None = None,
    interval: float | None = None,
) -> dict[str, str]:
    """Wait for a ready node and return its facts.

    API errors while polling are retried until the deadline.

    Args:
        kube: Client for the cluster.
        timeout: Maximum seconds to wait for a ready node.
        interval: Seconds between polls.

    Returns:
        Mapping of node facts (OS image, kernel version, ...).

    Raises:
        TimeoutError: If no node becomes ready in time.
    """
    from e2e_cluster_pool.config import settings

    if timeout is None:
        timeout = settings.parameter_extraction_timeout_seconds
    if interval is None:
        interval = settings.parameter_extraction_interval_seconds

    deadline = time.time() + timeout
    last_error: Exception | None = None
    while True:
        try:
            nodes = kube.core.list_node()
            for node in nodes.items:
                if _is_ready(node):
                    return _node_parameters(node)
            logger.debug("no ready nodes yet, polling again...")
        except ApiException as e:
            last_error = e
            logger.debug(f"listing nodes failed, polling again: {e}")

        if time.time() >= deadline:
            break
        time.sleep(interval)

    message = f"no ready node found within {timeout}s"
    if last_error is not None:
        message += f" (last error: {last_error})"
    raise TimeoutError(message)
