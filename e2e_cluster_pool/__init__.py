"""E2E Cluster Pool: shared AKS clusters for end-to-end test scenarios.

This package provides:
- Scenario definitions with cluster selectors and mutators
- A cluster pool that inventories, repairs and provisions clusters
- Per-cluster preparation (subnet, Kubernetes client, debug DaemonSet,
  cached parameters)

Quick Start:
    ```python
    import random

    from e2e_cluster_pool import ClusterPool, Scenario

    scenarios = [
        Scenario(
            name="kubenet",
            cluster_selector=lambda c: c.network_profile.network_plugin == "kubenet",
        ),
    ]

    pool = ClusterPool()
    pool.setup(scenarios, random.Random())

    record = pool.choose(scenarios[0])
    print(record.subnet_id, record.parameters)
    ```
"""

__version__ = "0.1.0"

from e2e_cluster_pool.infrastructure import (
    AzureClusterClient,
    AzureOperationError,
    ClusterConsistencyError,
    ClusterCreationError,
    ClusterPool,
    ClusterPoolError,
    ClusterPreparationError,
    ClusterRecord,
    ClusterSelectionError,
    KubeClient,
    ParameterCache,
    PreparedCluster,
)
from e2e_cluster_pool.scenario import (
    Scenario,
    generate_cluster_name,
    get_base_cluster_model,
    get_new_cluster_model_for_scenario,
)

__all__ = [
    # Version
    "__version__",
    # Scenarios
    "Scenario",
    "generate_cluster_name",
    "get_base_cluster_model",
    "get_new_cluster_model_for_scenario",
    # Pool
    "ClusterPool",
    "ClusterRecord",
    "ParameterCache",
    "PreparedCluster",
    # Clients
    "AzureClusterClient",
    "KubeClient",
    # Errors
    "AzureOperationError",
    "ClusterPoolError",
    "ClusterCreationError",
    "ClusterPreparationError",
    "ClusterSelectionError",
    "ClusterConsistencyError",
]
