"""Scenario requirements and desired cluster models.

A Scenario names one end-to-end test case and says which pool clusters it
can run on. Clusters created for a scenario start from a common base model
that the scenario's mutator may adjust.

Example:
    from e2e_cluster_pool.scenario import Scenario

    def azure_cni(cluster):
        return cluster.network_profile.network_plugin == "azure"

    def use_azure_cni(cluster):
        cluster.network_profile.network_plugin = "azure"

    scenario = Scenario(
        name="ubuntu2204-azurecni",
        cluster_selector=azure_cni,
        cluster_mutator=use_azure_cni,
    )
"""

from __future__ import annotations

import random
import string
from dataclasses import dataclass
from typing import Callable, Optional

from azure.mgmt.containerservice.models import (
    ContainerServiceNetworkProfile,
    ManagedCluster,
    ManagedClusterAgentPoolProfile,
    ManagedClusterIdentity,
)

ClusterSelector = Callable[[ManagedCluster], bool]
ClusterMutator = Callable[[ManagedCluster], Optional[ManagedCluster]]


@dataclass(frozen=True)
class Scenario:
    """One e2e test case and its cluster requirements.

    Args:
        name: Scenario name, used in logs and errors.
        cluster_selector: Returns True for clusters the scenario can use.
        cluster_mutator: Adjusts the base model when a new cluster must be
            created for this scenario. It may modify the model in place or
            return a replacement.
    """

    name: str
    cluster_selector: ClusterSelector
    cluster_mutator: ClusterMutator | None = None


def generate_cluster_name(rng: random.Random, prefix: str | None = None) -> str:
    """Generate a pool cluster name with a random 5-letter suffix."""
    if prefix is None:
        from e2e_cluster_pool.config import settings

        prefix = settings.e2e_cluster_name_prefix
    suffix = "".join(rng.choice(string.ascii_lowercase) for _ in range(5))
    return f"{prefix}-{suffix}"


def get_base_cluster_model(cluster_name: str, location: str) -> ManagedCluster:
    """Base model for new pool clusters: one kubenet system pool of 2 nodes."""
    cluster = ManagedCluster(
        location=location,
        dns_prefix=cluster_name,
        agent_pool_profiles=[
            ManagedClusterAgentPoolProfile(
                name="nodepool1",
                count=2,
                vm_size="Standard_DS2_v2",
                max_pods=110,
                os_type="Linux",
                type="VirtualMachineScaleSets",
                mode="System",
                os_disk_size_gb=512,
            )
        ],
        network_profile=ContainerServiceNetworkProfile(network_plugin="kubenet"),
        identity=ManagedClusterIdentity(type="SystemAssigned"),
    )
    # name is read-only on the SDK model and is only set for local bookkeeping
    cluster.name = cluster_name
    return cluster


def get_new_cluster_model_for_scenario(
    cluster_name: str, location: str, scenario: Scenario
) -> ManagedCluster:
    model = get_base_cluster_model(cluster_name, location)
    if scenario.cluster_mutator is not None:
        mutated = scenario.cluster_mutator(model)
        if mutated is not None:
            model = mutated
            model.name = cluster_name
    return model
