"""Shared pool of AKS clusters for e2e scenarios.

Provisioning a cluster per test is slow, so scenarios share a pool of
long-lived clusters in one resource group. The pool:

- inventories existing clusters (skipping ones being deleted)
- creates one new cluster per scenario nothing in the pool can serve,
  all creations running in parallel
- for each scenario, picks the first viable cluster that is healthy (or
  can be recreated) and prepared for tests

Preparing a cluster means resolving its subnet ID, connecting a Kubernetes
client, ensuring the debug DaemonSet, and extracting its parameters. The
parameters are cached by cluster name for the lifetime of the run.

Example:
    import random

    from e2e_cluster_pool.infrastructure.cluster_pool import ClusterPool

    pool = ClusterPool()
    rng = random.Random()
    pool.setup(scenarios, rng)

    record = pool.choose(scenarios[0])
    record.kube.core.list_node()
"""

from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.mgmt.containerservice.models import ManagedCluster

from e2e_cluster_pool.infrastructure.azure_client import (
    MANAGED_CLUSTER_RESOURCE_TYPE,
    AzureClusterClient,
    AzureOperationError,
)
from e2e_cluster_pool.infrastructure.kube import (
    KubeClient,
    connect,
    ensure_debug_daemonset,
    extract_cluster_parameters,
)
from e2e_cluster_pool.scenario import (
    Scenario,
    generate_cluster_name,
    get_new_cluster_model_for_scenario,
)

logger = logging.getLogger(__name__)

AKS_SUBNET_NAME = "aks-subnet"

HealthCheck = Callable[[AzureClusterClient, ManagedCluster], bool]


class ClusterPoolError(Exception):
    """Base class for cluster pool errors."""


class ClusterPreparationError(ClusterPoolError):
    """Raised when one step of preparing a cluster for tests fails."""


class ClusterSelectionError(ClusterPoolError):
    """Raised when no viable cluster could be chosen for a scenario."""


class ClusterConsistencyError(ClusterPoolError):
    """Raised when a cluster is missing a field the control plane always sets."""


class ClusterCreationError(ClusterPoolError):
    """Aggregate of the failures from one parallel creation batch."""

    def __init__(self, errors: Sequence[Exception]):
        self.errors = list(errors)
        super().__init__(self._format())

    def _format(self) -> str:
        if len(self.errors) == 1:
            return str(self.errors[0])
        msg = "encountered multiple cluster creation errors:"
        for error in self.errors:
            msg += f"\n{error}"
        return msg


@dataclass(frozen=True)
class PreparedCluster:
    """Everything preparation produces for one cluster."""

    kube: KubeClient
    subnet_id: str
    parameters: dict[str, str]


@dataclass
class ClusterRecord:
    """One pool member.

    A record is prepared once kube, subnet_id and parameters are all set.
    They are only ever set together by mark_prepared().
    """

    cluster: ManagedCluster
    kube: KubeClient | None = None
    subnet_id: str | None = None
    parameters: dict[str, str] | None = None

    @property
    def name(self) -> str:
        return self.cluster.name

    @property
    def is_prepared(self) -> bool:
        return (
            self.kube is not None
            and self.subnet_id is not None
            and self.parameters is not None
        )

    def mark_prepared(self, prepared: PreparedCluster) -> None:
        self.kube = prepared.kube
        self.subnet_id = prepared.subnet_id
        self.parameters = prepared.parameters


class ParameterCache:
    """Thread-safe map of cluster name to extracted parameters.

    Extraction runs at most once per cluster name; concurrent misses on the
    same name wait for the first extraction instead of repeating it. Entries
    are never evicted.
    """

    def __init__(self) -> None:
        self._params: dict[str, dict[str, str]] = {}
        self._key_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def __contains__(self, cluster_name: str) -> bool:
        with self._lock:
            return cluster_name in self._params

    def __len__(self) -> int:
        with self._lock:
            return len(self._params)

    def get(self, cluster_name: str) -> dict[str, str] | None:
        with self._lock:
            return self._params.get(cluster_name)

    def get_or_extract(
        self, cluster_name: str, extract: Callable[[], dict[str, str]]
    ) -> dict[str, str]:
        """Return cached parameters, calling extract() on the first miss.

        A failed extraction caches nothing, so a later call retries it.
        """
        with self._lock:
            if cluster_name in self._params:
                return self._params[cluster_name]
            key_lock = self._key_locks.setdefault(cluster_name, threading.Lock())

        with key_lock:
            with self._lock:
                if cluster_name in self._params:
                    return self._params[cluster_name]
            params = extract()
            with self._lock:
                self._params[cluster_name] = params
            return params


# =========================================================================
# Inventory and matching
# =========================================================================


def _is_managed_cluster(resource: Any) -> bool:
    return (resource.type or "").lower() == MANAGED_CLUSTER_RESOURCE_TYPE.lower()


def list_clusters(azure: AzureClusterClient, resource_group: str) -> list[ClusterRecord]:
    """List the managed clusters of a resource group as unprepared records.

    Clusters that vanish between listing and fetching, and clusters being
    deleted, are skipped.

    Raises:
        AzureOperationError: If listing or fetching fails for another reason.
    """
    try:
        resources = [r for r in azure.list_resources(resource_group) if _is_managed_cluster(r)]
    except HttpResponseError as e:
        raise AzureOperationError("list resources in", resource_group, e) from e

    records = []
    for resource in resources:
        try:
            cluster = azure.get_cluster(resource_group, resource.name)
        except ResourceNotFoundError:
            logger.info(
                f"get aks cluster {resource.name!r} returned 404 Not Found, "
                "continuing to list clusters..."
            )
            continue

        if cluster.provisioning_state == "Deleting":
            continue
        if cluster.name is None:
            cluster.name = resource.name

        logger.info(f"found e2e cluster: {cluster.name!r}")
        records.append(ClusterRecord(cluster=cluster))

    return records


def get_viable_clusters(scenario: Scenario, records: Iterable[ClusterRecord]) -> list[ClusterRecord]:
    return [r for r in records if scenario.cluster_selector(r.cluster)]


def has_viable_cluster(scenario: Scenario, records: Iterable[ClusterRecord]) -> bool:
    return any(scenario.cluster_selector(r.cluster) for r in records)


# =========================================================================
# Health validation and lifecycle
# =========================================================================


def create_new_cluster(
    azure: AzureClusterClient,
    resource_group: str,
    cluster: ManagedCluster,
    timeout: float | None = None,
) -> ManagedCluster:
    """Create a cluster from a desired model and wait for it to finish."""
    name = cluster.name
    try:
        poller = azure.begin_create_cluster(resource_group, name, cluster)
    except HttpResponseError as e:
        raise AzureOperationError("begin creation of aks cluster", name, e) from e

    try:
        live = azure.wait_for(poller, f"creation of aks cluster {name!r}", timeout)
    except HttpResponseError as e:
        raise AzureOperationError("wait for creation of aks cluster", name, e) from e

    if live is None:
        raise ClusterPoolError(f"creation of aks cluster {name!r} returned no cluster model")
    if live.name is None:
        live.name = name
    return live


def delete_existing_cluster(
    azure: AzureClusterClient,
    resource_group: str,
    cluster_name: str,
    timeout: float | None = None,
) -> None:
    try:
        poller = azure.begin_delete_cluster(resource_group, cluster_name)
    except HttpResponseError as e:
        raise AzureOperationError("start deletion of aks cluster", cluster_name, e) from e

    try:
        azure.wait_for(poller, f"deletion of aks cluster {cluster_name!r}", timeout)
    except HttpResponseError as e:
        raise AzureOperationError("wait for deletion of aks cluster", cluster_name, e) from e


def validate_existing_cluster_state(
    azure: AzureClusterClient,
    resource_group: str,
    cluster: ManagedCluster,
    health_checks: Sequence[HealthCheck] = (),
    timeout: float | None = None,
) -> bool:
    """Check a candidate cluster, deleting it if it is in a bad state.

    Args:
        azure: Control-plane client.
        resource_group: Resource group holding the cluster.
        cluster: Candidate cluster model (from inventory or creation).
        health_checks: Extra checks run after the built-in ones; any False
            marks the cluster unhealthy.
        timeout: Deadline for the deletion, if one happens.

    Returns:
        True if the cluster needs to be recreated (it is gone, or it was
        unhealthy and has now been deleted), False if it is usable as-is.

    Raises:
        AzureOperationError: If a fetch or the deletion fails.
    """
    name = cluster.name
    try:
        live = azure.get_cluster(resource_group, name)
    except ResourceNotFoundError:
        logger.info(f"received ResourceNotFound error when trying to GET test cluster {name!r}")
        return True

    # The node resource group and provisioning state are only meaningful
    # if the cluster resource itself exists
    node_resource_group = live.node_resource_group or cluster.node_resource_group
    healthy = (
        node_resource_group is not None
        and azure.resource_group_exists(node_resource_group)
        and live.provisioning_state is not None
        and live.provisioning_state != "Failed"
        and all(check(azure, live) for check in health_checks)
    )
    if healthy:
        return False

    logger.info(f"deleting test cluster in bad state: {name!r}")
    delete_existing_cluster(azure, resource_group, name, timeout)
    return True


# =========================================================================
# Preparation
# =========================================================================


def get_cluster_subnet_id(azure: AzureClusterClient, node_resource_group: str) -> str:
    """Subnet ID of the cluster, from the first vnet in its node resource group."""
    try:
        for vnet in azure.list_virtual_networks(node_resource_group):
            if vnet is None or not vnet.id:
                raise ClusterPreparationError("aks vnet id was empty")
            return f"{vnet.id}/subnets/{AKS_SUBNET_NAME}"
    except HttpResponseError as e:
        raise AzureOperationError("list virtual networks in", node_resource_group, e) from e

    raise ClusterPreparationError(f"failed to find aks vnet in {node_resource_group!r}")


def get_cluster_parameters_with_cache(
    kube: KubeClient,
    cluster_name: str,
    param_cache: ParameterCache,
    extract_fn: Callable[[KubeClient], dict[str, str]] = extract_cluster_parameters,
) -> dict[str, str]:
    def extract() -> dict[str, str]:
        try:
            return extract_fn(kube)
        except Exception as e:
            raise ClusterPreparationError(
                f"unable to extract cluster parameters from {cluster_name!r}: {e}"
            ) from e

    return param_cache.get_or_extract(cluster_name, extract)


def prepare_cluster_for_tests(
    azure: AzureClusterClient,
    resource_group: str,
    cluster: ManagedCluster,
    param_cache: ParameterCache,
    connect_fn: Callable[[AzureClusterClient, str, str], KubeClient] = connect,
    ensure_debug_fn: Callable[[KubeClient], None] = ensure_debug_daemonset,
    extract_fn: Callable[[KubeClient], dict[str, str]] = extract_cluster_parameters,
) -> PreparedCluster:
    """Resolve everything a scenario needs from a live cluster.

    Nothing is written to any record here; the caller applies the result
    with ClusterRecord.mark_prepared() once every step has succeeded.

    Raises:
        ClusterConsistencyError: If the cluster has no node resource group.
        ClusterPreparationError: If any preparation step fails.
    """
    name = cluster.name
    if cluster.node_resource_group is None:
        raise ClusterConsistencyError(f"aks cluster {name!r} has no node resource group")

    try:
        subnet_id = get_cluster_subnet_id(azure, cluster.node_resource_group)
    except Exception as e:
        raise ClusterPreparationError(f"unable to get subnet ID of cluster {name!r}: {e}") from e

    try:
        kube = connect_fn(azure, resource_group, name)
    except Exception as e:
        raise ClusterPreparationError(
            f"unable to get kube client using cluster {name!r}: {e}"
        ) from e

    # The client is only handed out on success
    try:
        try:
            ensure_debug_fn(kube)
        except Exception as e:
            raise ClusterPreparationError(
                f"unable to ensure debug daemonset of cluster {name!r}: {e}"
            ) from e

        parameters = get_cluster_parameters_with_cache(kube, name, param_cache, extract_fn)
    except ClusterPreparationError:
        kube.close()
        raise

    return PreparedCluster(kube=kube, subnet_id=subnet_id, parameters=parameters)


# =========================================================================
# Pool
# =========================================================================


def _default_resource_group() -> str:
    from e2e_cluster_pool.config import settings

    return settings.e2e_resource_group


def _default_location() -> str:
    from e2e_cluster_pool.config import settings

    return settings.e2e_location


def _default_max_parallel_creations() -> int:
    from e2e_cluster_pool.config import settings

    return settings.max_parallel_creations


def _default_operation_timeout() -> float | None:
    from e2e_cluster_pool.config import settings

    return settings.operation_timeout_seconds


@dataclass
class ClusterPool:
    """The shared cluster pool of one test run.

    The pool owns its list of records. Only inventory() and
    create_missing_clusters() add records, and choose() replaces a record
    whose cluster had to be recreated. Readers work on a snapshot taken
    from the records property.

    Args:
        azure: Control-plane client (controls subscription and auth).
        resource_group: Resource group holding the pool clusters.
        location: Azure region for new clusters.
        param_cache: Cache of extracted parameters, shared by all scenarios.
        health_checks: Extra health checks, see validate_existing_cluster_state().
        connect_fn: Builds a Kubernetes client for a cluster.
        ensure_debug_fn: Ensures the debug DaemonSet on a cluster.
        extract_fn: Extracts parameters from a cluster.
        max_parallel_creations: Upper bound on concurrent cluster creations.
        operation_timeout: Deadline in seconds for each long-running
            operation. None waits indefinitely.
        log_fn: Optional logging function with signature log_fn(step, message).
    """

    azure: AzureClusterClient = field(default_factory=AzureClusterClient)
    resource_group: str = field(default_factory=_default_resource_group)
    location: str = field(default_factory=_default_location)
    param_cache: ParameterCache = field(default_factory=ParameterCache)
    health_checks: list[HealthCheck] = field(default_factory=list)
    connect_fn: Callable[[AzureClusterClient, str, str], KubeClient] = connect
    ensure_debug_fn: Callable[[KubeClient], None] = ensure_debug_daemonset
    extract_fn: Callable[[KubeClient], dict[str, str]] = extract_cluster_parameters
    max_parallel_creations: int = field(default_factory=_default_max_parallel_creations)
    operation_timeout: float | None = field(default_factory=_default_operation_timeout)
    log_fn: Any = None

    def __post_init__(self) -> None:
        self._records: list[ClusterRecord] = []
        self._lock = threading.Lock()

    def _log(self, step: str, message: str) -> None:
        """Log a message using the configured log function or the module logger."""
        if self.log_fn:
            self.log_fn(step, message)
        else:
            logger.info(f"[{step}] {message}")

    @property
    def records(self) -> tuple[ClusterRecord, ...]:
        """Snapshot of the current pool members."""
        with self._lock:
            return tuple(self._records)

    def add(self, records: Iterable[ClusterRecord]) -> None:
        with self._lock:
            self._records.extend(records)

    def _replace(self, old: ClusterRecord, new: ClusterRecord) -> None:
        """Swap a stale record for its replacement, closing the stale client."""
        with self._lock:
            for idx, record in enumerate(self._records):
                if record is old:
                    self._records[idx] = new
                    break
            else:
                self._records.append(new)
        if old.kube is not None:
            old.kube.close()

    # =========================================================================
    # Lifecycle steps
    # =========================================================================

    def setup(self, scenarios: Sequence[Scenario], rng: random.Random) -> None:
        """Ensure the resource group, inventory it, and create missing clusters."""
        self.azure.ensure_resource_group(self.resource_group, self.location)
        self.inventory()
        self.create_missing_clusters(scenarios, rng)

    def inventory(self) -> list[ClusterRecord]:
        """Replace the pool contents with the clusters found in the resource group."""
        self._log("INVENTORY", f"Listing clusters in {self.resource_group!r}...")
        records = list_clusters(self.azure, self.resource_group)
        with self._lock:
            self._records = list(records)
        self._log("INVENTORY", f"Found {len(records)} clusters")
        return records

    def validate(self, cluster: ManagedCluster) -> bool:
        """Return True if the cluster needs recreation (see validate_existing_cluster_state)."""
        return validate_existing_cluster_state(
            self.azure,
            self.resource_group,
            cluster,
            health_checks=self.health_checks,
            timeout=self.operation_timeout,
        )

    def create_cluster(self, cluster: ManagedCluster) -> ManagedCluster:
        return create_new_cluster(
            self.azure, self.resource_group, cluster, timeout=self.operation_timeout
        )

    def prepare(self, cluster: ManagedCluster) -> PreparedCluster:
        return prepare_cluster_for_tests(
            self.azure,
            self.resource_group,
            cluster,
            self.param_cache,
            connect_fn=self.connect_fn,
            ensure_debug_fn=self.ensure_debug_fn,
            extract_fn=self.extract_fn,
        )

    # =========================================================================
    # Provisioning
    # =========================================================================

    def create_missing_clusters(
        self, scenarios: Sequence[Scenario], rng: random.Random
    ) -> list[ClusterRecord]:
        """Create one cluster for each scenario nothing in the pool can serve.

        Creations run in parallel and each is followed by preparation. Every
        task runs to completion even if a sibling fails. A record joins the
        pool once its cluster is created; if its preparation then fails it
        stays unprepared and choose() retries preparation.

        Args:
            scenarios: All scenarios of the run.
            rng: Random source for new cluster names.

        Returns:
            Records added to the pool.

        Raises:
            ClusterCreationError: If any task failed, after all tasks finished.
        """
        existing = self.records
        queued: list[ClusterRecord] = []
        for scenario in scenarios:
            if has_viable_cluster(scenario, existing) or has_viable_cluster(scenario, queued):
                continue
            model = get_new_cluster_model_for_scenario(
                generate_cluster_name(rng), self.location, scenario
            )
            self._log("POOL", f"Queueing cluster {model.name!r} for scenario {scenario.name!r}")
            queued.append(ClusterRecord(cluster=model))

        if not queued:
            return []

        self._log("POOL", f"Creating {len(queued)} clusters in parallel...")
        created: list[ClusterRecord | None] = [None] * len(queued)
        failures: list[Exception | None] = [None] * len(queued)

        def create_worker(idx: int) -> None:
            desired = queued[idx].cluster
            self._log("POOL", f"  creating cluster {desired.name!r}...")
            record = ClusterRecord(cluster=self.create_cluster(desired))
            created[idx] = record
            record.mark_prepared(self.prepare(record.cluster))

        workers = min(len(queued), max(self.max_parallel_creations, 1))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(create_worker, i): i for i in range(len(queued))}
            for future in as_completed(futures):
                idx = futures[future]
                name = queued[idx].name
                error = future.exception()
                if error is not None:
                    self._log("POOL", f"  {name}: FAILED - {error}")
                    failures[idx] = error
                else:
                    self._log("POOL", f"  {name}: ready")

        new_records = [r for r in created if r is not None]
        self.add(new_records)

        errors = [e for e in failures if e is not None]
        if errors:
            raise ClusterCreationError(errors)
        return new_records

    # =========================================================================
    # Selection
    # =========================================================================

    def choose(self, scenario: Scenario) -> ClusterRecord:
        """Pick a prepared cluster for a scenario.

        Viable candidates are tried in pool order; the first one that is
        healthy (or successfully recreated) and prepared wins. Failures on a
        candidate are logged and the next candidate is tried.

        Raises:
            ClusterSelectionError: If no candidate could be used.
            ClusterConsistencyError: If the chosen cluster has no node
                resource group.
        """
        chosen: ClusterRecord | None = None

        for candidate in get_viable_clusters(scenario, self.records):
            name = candidate.name
            try:
                needs_recreate = self.validate(candidate.cluster)
            except Exception as e:
                self._log("CHOOSE", f"unable to validate state of viable cluster {name!r}: {e}")
                continue

            record = candidate
            if needs_recreate:
                self._log(
                    "CHOOSE",
                    f"viable cluster {name!r} is in a bad state, attempting to recreate...",
                )
                try:
                    live = self.create_cluster(candidate.cluster)
                except Exception as e:
                    self._log("CHOOSE", f"unable to recreate viable cluster {name!r}: {e}")
                    continue
                record = ClusterRecord(cluster=live)
                self._replace(candidate, record)

            if not record.is_prepared:
                try:
                    prepared = self.prepare(record.cluster)
                except ClusterConsistencyError:
                    raise
                except Exception as e:
                    self._log("CHOOSE", f"unable to prepare viable cluster for testing: {e}")
                    continue
                record.mark_prepared(prepared)

            chosen = record
            break

        if chosen is None:
            raise ClusterSelectionError(
                f"unable to successfully choose a cluster for scenario {scenario.name!r}"
            )

        if chosen.cluster.node_resource_group is None:
            raise ClusterConsistencyError(
                f"tried to choose a cluster without a node resource group: {chosen.name!r}"
            )

        return chosen
