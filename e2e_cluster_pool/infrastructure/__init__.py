"""Infrastructure components for the e2e cluster pool.

This module provides:
- AzureClusterClient: Azure control-plane access (clusters, resource groups, vnets)
- KubeClient: Kubernetes API handles for one cluster
- ClusterPool: Pool inventory, repair, provisioning and selection
- ParameterCache: Per-cluster parameter cache shared across scenarios

Example:
    ```python
    from e2e_cluster_pool.infrastructure import AzureClusterClient, ClusterPool

    azure = AzureClusterClient(subscription_id="sub-123")
    pool = ClusterPool(azure=azure, resource_group="my-e2e-rg")
    pool.inventory()
    ```
"""

from e2e_cluster_pool.infrastructure.azure_client import (
    AzureClusterClient,
    AzureOperationError,
)
from e2e_cluster_pool.infrastructure.cluster_pool import (
    ClusterConsistencyError,
    ClusterCreationError,
    ClusterPool,
    ClusterPoolError,
    ClusterPreparationError,
    ClusterRecord,
    ClusterSelectionError,
    ParameterCache,
    PreparedCluster,
)
from e2e_cluster_pool.infrastructure.kube import KubeClient

__all__ = [
    "AzureClusterClient",
    "AzureOperationError",
    "ClusterConsistencyError",
    "ClusterCreationError",
    "ClusterPool",
    "ClusterPoolError",
    "ClusterPreparationError",
    "ClusterRecord",
    "ClusterSelectionError",
    "KubeClient",
    "ParameterCache",
    "PreparedCluster",
]
