"""DataCrunchCluster reconciler.

Network and load balancer handling are placeholders: the cluster gets an
empty network status, a single default failure domain and a synthesized
control plane endpoint. Deletion is best-effort and never blocks on the
cloud.
"""

from __future__ import annotations

from crunchplane.api.cluster import (
    CLUSTER_FINALIZER,
    APIEndpoint,
    Cluster,
    DataCrunchCluster,
    FailureDomain,
    NetworkStatus,
)
from crunchplane.api.conditions import (
    DATACRUNCH_CLIENT_FAILED,
    LOAD_BALANCER_READY,
    LOAD_BALANCER_RECONCILIATION_FAILED,
    NETWORK_INFRASTRUCTURE_READY,
    NETWORK_RECONCILIATION_FAILED,
    Clock,
    Severity,
    mark_false,
    mark_true,
    utcnow,
)
from crunchplane.api.meta import (
    ObjectKey,
    add_finalizer,
    has_finalizer,
    has_paused_annotation,
    owner_of_kind,
    remove_finalizer,
)
from crunchplane.cloud.interfaces import CloudClient
from crunchplane.core.exceptions import CloudError, CrunchplaneError, NotFoundError, ReconcileError
from crunchplane.observability.logger import BoundLogger, logger
from crunchplane.store import ObjectStore

from .base import REQUEUE_DELAY, ClientProvider, Patcher, Result, patch_after
from .events import RECONCILE_FAILED, EventRecorder

CONTROL_PLANE_PORT = 6443
DEFAULT_FAILURE_DOMAIN = "default"


def placeholder_endpoint(cluster_name: str) -> APIEndpoint:
    return APIEndpoint(host=f"cluster-{cluster_name}.datacrunch.local", port=CONTROL_PLANE_PORT)


class DataCrunchClusterReconciler:
    KIND = DataCrunchCluster.KIND

    def __init__(
        self,
        store: ObjectStore,
        clients: ClientProvider,
        *,
        recorder: EventRecorder | None = None,
        requeue_delay: float = REQUEUE_DELAY,
        now: Clock = utcnow,
    ) -> None:
        self._store = store
        self._clients = clients
        self._recorder = recorder or EventRecorder()
        self._requeue_delay = requeue_delay
        self._now = now
        self._log = logger.bind(controller="datacrunchcluster")

    async def reconcile(self, key: ObjectKey) -> Result:
        log = self._log.bind(namespace=key.namespace, name=key.name)

        try:
            infra_cluster = await self._store.get(DataCrunchCluster, key)
        except NotFoundError:
            return Result()

        cluster = await self._owner(log, infra_cluster)
        if cluster is not None:
            log = log.bind(cluster=cluster.metadata.name)

        if (cluster is not None and cluster.spec.paused) or has_paused_annotation(infra_cluster):
            log.info("DataCrunchCluster or linked Cluster is marked as paused, not reconciling")
            return Result()

        patcher = Patcher(self._store, infra_cluster)
        failed = True
        try:
            if infra_cluster.deleting:
                # The owner Cluster may already be gone.
                result = await self._reconcile_delete(log, infra_cluster)
            elif cluster is None:
                result = Result()
            else:
                result = await self._reconcile_normal(log, cluster, infra_cluster, patcher)
            failed = False
            return result
        finally:
            await patch_after(patcher, infra_cluster, log, failed=failed)

    async def _owner(self, log: BoundLogger, infra_cluster: DataCrunchCluster) -> Cluster | None:
        owner = owner_of_kind(infra_cluster, Cluster.KIND)
        if owner is None:
            log.info("Cluster controller has not yet set OwnerRef")
            return None
        try:
            return await self._store.get(Cluster, ObjectKey(infra_cluster.metadata.namespace, owner.name))
        except NotFoundError:
            log.info("Owner Cluster {cluster} does not exist", cluster=owner.name)
            return None

    # ─── Normal ───────────────────────────────────────────────────────

    async def _reconcile_normal(
        self,
        log: BoundLogger,
        cluster: Cluster,
        infra_cluster: DataCrunchCluster,
        patcher: Patcher[DataCrunchCluster],
    ) -> Result:
        log.info("Reconciling DataCrunchCluster")

        if not has_finalizer(infra_cluster, CLUSTER_FINALIZER):
            add_finalizer(infra_cluster, CLUSTER_FINALIZER)
            await patcher.persist(infra_cluster)
            return Result()

        try:
            client = await self._clients.client_for(infra_cluster)
        except CrunchplaneError as e:
            log.error("Failed to create DataCrunch client: {error}", error=e)
            self._recorder.warning(infra_cluster, RECONCILE_FAILED, f"failed to create DataCrunch client: {e}")
            mark_false(
                infra_cluster, NETWORK_INFRASTRUCTURE_READY, DATACRUNCH_CLIENT_FAILED,
                Severity.ERROR, str(e), now=self._now,
            )
            raise

        async with client:
            try:
                await self._reconcile_network(log, client, infra_cluster)
            except CloudError as e:
                log.error("Failed to reconcile network infrastructure: {error}", error=e)
                mark_false(
                    infra_cluster, NETWORK_INFRASTRUCTURE_READY, NETWORK_RECONCILIATION_FAILED,
                    Severity.ERROR, str(e), now=self._now,
                )
                raise ReconcileError(
                    f"network reconciliation failed: {e}", requeue_after=self._requeue_delay,
                ) from e

            try:
                await self._reconcile_load_balancer(log, client, cluster, infra_cluster)
            except CloudError as e:
                log.error("Failed to reconcile load balancer: {error}", error=e)
                mark_false(
                    infra_cluster, LOAD_BALANCER_READY, LOAD_BALANCER_RECONCILIATION_FAILED,
                    Severity.ERROR, str(e), now=self._now,
                )
                raise ReconcileError(
                    f"load balancer reconciliation failed: {e}", requeue_after=self._requeue_delay,
                ) from e

        infra_cluster.status.ready = True
        mark_true(infra_cluster, NETWORK_INFRASTRUCTURE_READY, now=self._now)
        mark_true(infra_cluster, LOAD_BALANCER_READY, now=self._now)

        log.info("Successfully reconciled DataCrunchCluster")
        return Result()

    async def _reconcile_network(
        self, log: BoundLogger, client: CloudClient, infra_cluster: DataCrunchCluster,
    ) -> None:
        # No VPC or subnet is provisioned; only status bookkeeping.
        status = infra_cluster.status
        if status.network is None:
            status.network = NetworkStatus()
        if status.failure_domains is None:
            status.failure_domains = {DEFAULT_FAILURE_DOMAIN: FailureDomain(control_plane=True)}
        log.debug("Network infrastructure reconciliation completed")

    async def _reconcile_load_balancer(
        self,
        log: BoundLogger,
        client: CloudClient,
        cluster: Cluster,
        infra_cluster: DataCrunchCluster,
    ) -> None:
        spec = infra_cluster.spec
        if not spec.control_plane_endpoint.is_zero:
            log.debug("Control plane endpoint already set: {endpoint}", endpoint=spec.control_plane_endpoint)
            return

        spec.control_plane_endpoint = placeholder_endpoint(cluster.metadata.name)
        log.info("Set control plane endpoint {endpoint}", endpoint=spec.control_plane_endpoint)

    # ─── Delete ───────────────────────────────────────────────────────

    async def _reconcile_delete(self, log: BoundLogger, infra_cluster: DataCrunchCluster) -> Result:
        log.info("Reconciling DataCrunchCluster delete")

        try:
            client: CloudClient | None = await self._clients.client_for(infra_cluster)
        except CrunchplaneError as e:
            log.error("Failed to create DataCrunch client during deletion: {error}", error=e)
            client = None

        lb = infra_cluster.status.load_balancer
        if client is not None:
            async with client:
                if lb is not None and lb.id:
                    try:
                        await client.delete_load_balancer(lb.id)
                    except CloudError as e:
                        # cluster cleanup is best-effort
                        log.error("Failed to delete load balancer {lb}: {error}", lb=lb.id, error=e)

        remove_finalizer(infra_cluster, CLUSTER_FINALIZER)
        log.info("Successfully reconciled DataCrunchCluster delete")
        return Result()


__all__ = ["DataCrunchClusterReconciler", "placeholder_endpoint"]
