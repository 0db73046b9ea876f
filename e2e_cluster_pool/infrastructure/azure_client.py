"""Azure control-plane access for the e2e cluster pool.

Provides a thin Python API over the Azure management SDK for the calls the
pool needs: resource groups, AKS managed clusters, virtual networks, and
generic resource listing.

Credentials follow the usual enterprise pattern:
    1. Service principal, if AZURE_CLIENT_ID + SECRET + TENANT_ID are set
    2. DefaultAzureCredential otherwise (CLI login, managed identity, etc.)

Example:
    from e2e_cluster_pool.infrastructure.azure_client import AzureClusterClient

    azure = AzureClusterClient(subscription_id="sub-123")
    cluster = azure.get_cluster("aks-e2e-tests", "e2e-test-cluster-abcde")

    poller = azure.begin_delete_cluster("aks-e2e-tests", cluster.name)
    azure.wait_for(poller, f"deletion of {cluster.name!r}")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.core.polling import LROPoller
from azure.identity import ClientSecretCredential, DefaultAzureCredential
from azure.mgmt.containerservice import ContainerServiceClient
from azure.mgmt.containerservice.models import ManagedCluster
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient

logger = logging.getLogger(__name__)

MANAGED_CLUSTER_RESOURCE_TYPE = "Microsoft.ContainerService/managedClusters"

__all__ = [
    "MANAGED_CLUSTER_RESOURCE_TYPE",
    "AzureClusterClient",
    "AzureOperationError",
    "ResourceNotFoundError",
]


class AzureOperationError(RuntimeError):
    """Raised when a control-plane call fails for a reason other than not-found."""

    def __init__(self, operation: str, resource: str, cause: Exception):
        super().__init__(f"failed to {operation} {resource!r}: {cause}")
        self.operation = operation
        self.resource = resource


def _default_subscription_id() -> str | None:
    """Get default subscription ID from config."""
    from e2e_cluster_pool.config import settings

    return settings.azure_subscription_id


def _get_credential():
    """Get Azure credential.

    Priority:
        1. Service principal (if AZURE_CLIENT_ID + SECRET + TENANT_ID set)
        2. DefaultAzureCredential (CLI login, managed identity, etc.)
    """
    from e2e_cluster_pool.config import settings

    if all(
        [
            settings.azure_client_id,
            settings.azure_client_secret,
            settings.azure_tenant_id,
        ]
    ):
        logger.info("Using service principal authentication for cluster operations")
        return ClientSecretCredential(
            tenant_id=settings.azure_tenant_id,
            client_id=settings.azure_client_id,
            client_secret=settings.azure_client_secret,
        )

    logger.info("Using DefaultAzureCredential for cluster operations")
    return DefaultAzureCredential()


@dataclass
class AzureClusterClient:
    """Control-plane client used by the cluster pool.

    Management clients are created on first use and reused afterwards, so
    one instance can be shared by parallel provisioning tasks.

    Args:
        subscription_id: Azure subscription ID. Auto-loaded from
            AZURE_SUBSCRIPTION_ID if not provided.
        credential: Optional Azure SDK credential. If None, a service
            principal or DefaultAzureCredential is used.
    """

    subscription_id: str | None = field(default_factory=_default_subscription_id)
    credential: Any = None

    def __post_init__(self) -> None:
        self._aks_client = None
        self._resource_client = None
        self._network_client = None

    def _get_credential(self):
        if self.credential is None:
            self.credential = _get_credential()
        return self.credential

    def _get_aks_client(self) -> ContainerServiceClient:
        """Lazy-load Azure ContainerServiceClient."""
        if self._aks_client is None:
            self._aks_client = ContainerServiceClient(self._get_credential(), self.subscription_id)
        return self._aks_client

    def _get_resource_client(self) -> ResourceManagementClient:
        """Lazy-load Azure ResourceManagementClient."""
        if self._resource_client is None:
            self._resource_client = ResourceManagementClient(
                self._get_credential(), self.subscription_id
            )
        return self._resource_client

    def _get_network_client(self) -> NetworkManagementClient:
        """Lazy-load Azure NetworkManagementClient."""
        if self._network_client is None:
            self._network_client = NetworkManagementClient(
                self._get_credential(), self.subscription_id
            )
        return self._network_client

    # =========================================================================
    # Resource groups
    # =========================================================================

    def resource_group_exists(self, name: str) -> bool:
        """Check whether a resource group exists.

        Raises:
            AzureOperationError: If the existence check itself fails.
        """
        try:
            return bool(self._get_resource_client().resource_groups.check_existence(name))
        except HttpResponseError as e:
            raise AzureOperationError("get RG", name, e) from e

    def ensure_resource_group(self, name: str, location: str) -> None:
        """Create the resource group if it does not already exist."""
        logger.info(f"ensuring resource group {name!r}...")
        if self.resource_group_exists(name):
            return
        try:
            self._get_resource_client().resource_groups.create_or_update(
                name, {"location": location}
            )
        except HttpResponseError as e:
            raise AzureOperationError("create RG", name, e) from e

    # =========================================================================
    # Managed clusters
    # =========================================================================

    def get_cluster(self, resource_group: str, name: str) -> ManagedCluster:
        """Fetch a managed cluster.

        Raises:
            ResourceNotFoundError: If the cluster does not exist.
            AzureOperationError: For any other failure.
        """
        try:
            return self._get_aks_client().managed_clusters.get(resource_group, name)
        except ResourceNotFoundError:
            raise
        except HttpResponseError as e:
            raise AzureOperationError("get aks cluster", name, e) from e

    def begin_create_cluster(
        self, resource_group: str, name: str, model: ManagedCluster
    ) -> LROPoller[ManagedCluster]:
        return self._get_aks_client().managed_clusters.begin_create_or_update(
            resource_group, name, model
        )

    def begin_delete_cluster(self, resource_group: str, name: str) -> LROPoller[None]:
        return self._get_aks_client().managed_clusters.begin_delete(resource_group, name)

    def get_cluster_kubeconfig(self, resource_group: str, name: str) -> bytes:
        """Get the admin kubeconfig of a managed cluster."""
        try:
            credentials = self._get_aks_client().managed_clusters.list_cluster_admin_credentials(
                resource_group, name
            )
        except HttpResponseError as e:
            raise AzureOperationError("get admin credentials of aks cluster", name, e) from e
        if not credentials.kubeconfigs:
            raise RuntimeError(f"aks cluster {name!r} returned no kubeconfigs")
        return credentials.kubeconfigs[0].value

    # =========================================================================
    # Listing
    # =========================================================================

    def list_resources(self, resource_group: str) -> Iterable[Any]:
        """Page through all resources in a resource group."""
        return self._get_resource_client().resources.list_by_resource_group(resource_group)

    def list_virtual_networks(self, resource_group: str) -> Iterable[Any]:
        """Page through all virtual networks in a resource group."""
        return self._get_network_client().virtual_networks.list(resource_group)

    # =========================================================================
    # Long-running operations
    # =========================================================================

    @staticmethod
    def wait_for(poller: LROPoller, what: str, timeout: float | None = None) -> Any:
        """Block until a long-running operation completes and return its result.

        Args:
            poller: Poller returned by a begin_* call.
            what: Description used in the timeout message.
            timeout: Seconds to wait. None waits until the operation finishes.

        Raises:
            TimeoutError: If the operation is still running after timeout.
            HttpResponseError: If the operation itself failed.
        """
        poller.wait(timeout)
        if not poller.done():
            raise TimeoutError(f"timed out after {timeout}s waiting for {what}")
        return poller.result()
