"""DataCrunchMachine reconciler.

Maps one DataCrunchMachine onto one DataCrunch instance. Every pass runs
top to bottom and each step is idempotent:

1. a machine with ``failure_reason``/``failure_message`` set is left alone
2. the finalizer is added and persisted before anything else happens
3. wait for cluster infrastructure, then for bootstrap data
4. look the instance up by providerID; create it when there is none
5. persist the providerID as soon as an instance id is known
6. project the instance state onto the machine status

The providerID is the only link to the instance. It is written with a
conditional update right after creation, so a later pass always finds the
instance instead of creating another one. If the provider later reports
that instance as not found, a new one is created and the providerID keeps
its first value.

Deletion does not wait for the owner Machine, Cluster or DataCrunchCluster.
When the DataCrunchCluster is already gone the default credentials secret
in the machine's namespace is used.
"""

from __future__ import annotations

import base64

from crunchplane.api.cluster import Cluster, DataCrunchCluster
from crunchplane.api.conditions import (
    DATACRUNCH_CLIENT_FAILED,
    INSTANCE_CREATION_FAILED,
    INSTANCE_NOT_READY,
    INSTANCE_READY,
    INSTANCE_TERMINATED,
    WAITING_FOR_BOOTSTRAP_DATA,
    WAITING_FOR_CLUSTER_INFRASTRUCTURE,
    Clock,
    Severity,
    mark_false,
    mark_true,
    utcnow,
)
from crunchplane.api.machine import (
    MACHINE_FINALIZER,
    UPDATE_MACHINE_ERROR,
    AddressType,
    DataCrunchMachine,
    InstanceState,
    Machine,
    MachineAddress,
    parse_provider_id,
    provider_id_for,
)
from crunchplane.api.meta import (
    CLUSTER_NAME_LABEL,
    MACHINE_NAME_LABEL,
    ObjectKey,
    add_finalizer,
    has_finalizer,
    has_paused_annotation,
    owner_of_kind,
    remove_finalizer,
)
from crunchplane.api.secret import Secret
from crunchplane.cloud.interfaces import CloudClient
from crunchplane.cloud.types import Instance, InstanceSpec
from crunchplane.core.exceptions import (
    CloudError,
    CrunchplaneError,
    NotFoundError,
    ProviderIDError,
    ReconcileError,
)
from crunchplane.observability.logger import BoundLogger, logger
from crunchplane.store import ObjectStore

from .base import REQUEUE_DELAY, ClientProvider, Patcher, Result, patch_after
from .events import (
    INSTANCE_CREATED,
    INSTANCE_DELETED,
    INSTANCE_STARTED,
    RECONCILE_FAILED,
    EventRecorder,
)
from .events import INSTANCE_TERMINATED as TERMINATED_EVENT

DEFAULT_IMAGE = "ubuntu-22.04-cuda-12.1"
BOOTSTRAP_DATA_KEY = "value"
TERMINATED_MESSAGE = "Instance was terminated"


def machine_addresses(instance: Instance) -> list[MachineAddress]:
    """Hostname first, then internal and external IPs when present."""
    addresses = [MachineAddress(AddressType.HOSTNAME, instance.name)]
    if instance.private_ip:
        addresses.append(MachineAddress(AddressType.INTERNAL_IP, instance.private_ip))
    if instance.public_ip:
        addresses.append(MachineAddress(AddressType.EXTERNAL_IP, instance.public_ip))
    return addresses


def _instance_state(raw: str) -> InstanceState | str:
    try:
        return InstanceState(raw)
    except ValueError:
        return raw


class DataCrunchMachineReconciler:
    KIND = DataCrunchMachine.KIND

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
        self._log = logger.bind(controller="datacrunchmachine")

    async def reconcile(self, key: ObjectKey) -> Result:
        log = self._log.bind(namespace=key.namespace, name=key.name)

        try:
            dc_machine = await self._store.get(DataCrunchMachine, key)
        except NotFoundError:
            return Result()

        machine, cluster, infra_cluster = await self._related(log, dc_machine)
        if machine is not None:
            log = log.bind(machine=machine.metadata.name)
        if cluster is not None:
            log = log.bind(cluster=cluster.metadata.name)

        if (cluster is not None and cluster.spec.paused) or has_paused_annotation(dc_machine):
            log.info("DataCrunchMachine or linked Cluster is marked as paused, not reconciling")
            return Result()

        patcher = Patcher(self._store, dc_machine)
        failed = True
        try:
            if dc_machine.deleting:
                # Deletion must not wait on objects that may already be gone.
                result = await self._reconcile_delete(log, dc_machine, infra_cluster)
            elif machine is None or cluster is None or infra_cluster is None:
                result = Result()
            else:
                result = await self._reconcile_normal(
                    log, machine, dc_machine, cluster, infra_cluster, patcher,
                )
            failed = False
            return result
        finally:
            await patch_after(patcher, dc_machine, log, failed=failed)

    async def _related(
        self, log: BoundLogger, dc_machine: DataCrunchMachine,
    ) -> tuple[Machine | None, Cluster | None, DataCrunchCluster | None]:
        """Follow owner Machine, then Cluster, then DataCrunchCluster; None from the first missing link on."""
        namespace = dc_machine.metadata.namespace

        owner = owner_of_kind(dc_machine, Machine.KIND)
        if owner is None:
            log.info("Machine controller has not yet set OwnerRef")
            return None, None, None
        try:
            machine = await self._store.get(Machine, ObjectKey(namespace, owner.name))
        except NotFoundError:
            log.info("Owner Machine {machine} does not exist yet", machine=owner.name)
            return None, None, None

        cluster_name = machine.metadata.labels.get(CLUSTER_NAME_LABEL) or machine.spec.cluster_name
        if not cluster_name:
            log.info("Machine is missing the cluster label")
            return machine, None, None
        try:
            cluster = await self._store.get(Cluster, ObjectKey(namespace, cluster_name))
        except NotFoundError:
            log.info("Cluster {cluster} does not exist", cluster=cluster_name)
            return machine, None, None

        infra_ref = cluster.spec.infrastructure_ref
        if infra_ref is None:
            log.info("Cluster has no infrastructure reference yet")
            return machine, cluster, None
        try:
            infra_cluster = await self._store.get(DataCrunchCluster, ObjectKey(namespace, infra_ref.name))
        except NotFoundError:
            log.info("DataCrunchCluster {ref} is not available yet", ref=infra_ref.name)
            return machine, cluster, None
        return machine, cluster, infra_cluster

    # ─── Normal ───────────────────────────────────────────────────────

    async def _reconcile_normal(
        self,
        log: BoundLogger,
        machine: Machine,
        dc_machine: DataCrunchMachine,
        cluster: Cluster,
        infra_cluster: DataCrunchCluster,
        patcher: Patcher[DataCrunchMachine],
    ) -> Result:
        log.info("Reconciling DataCrunchMachine")

        # Terminal: never touch the cloud again for this machine.
        if dc_machine.status.failed:
            log.info(
                "Machine has failed ({reason}), skipping reconciliation",
                reason=dc_machine.status.failure_reason,
            )
            return Result()

        if not has_finalizer(dc_machine, MACHINE_FINALIZER):
            add_finalizer(dc_machine, MACHINE_FINALIZER)
            await patcher.persist(dc_machine)
            return Result()

        if not cluster.status.infrastructure_ready:
            log.info("Cluster infrastructure is not ready yet")
            mark_false(
                dc_machine, INSTANCE_READY, WAITING_FOR_CLUSTER_INFRASTRUCTURE,
                Severity.INFO, now=self._now,
            )
            return Result()

        if not machine.spec.bootstrap.data_secret_name:
            log.info("Bootstrap data secret reference is not yet available")
            mark_false(
                dc_machine, INSTANCE_READY, WAITING_FOR_BOOTSTRAP_DATA,
                Severity.INFO, now=self._now,
            )
            return Result()

        try:
            client = await self._clients.client_for(infra_cluster)
        except CrunchplaneError as e:
            log.error("Failed to create DataCrunch client: {error}", error=e)
            mark_false(
                dc_machine, INSTANCE_READY, DATACRUNCH_CLIENT_FAILED,
                Severity.ERROR, str(e), now=self._now,
            )
            raise

        async with client:
            try:
                instance = await self._find_instance(client, dc_machine)
            except CrunchplaneError as e:
                log.error("Failed to query for existing instance: {error}", error=e)
                raise

            if instance is None:
                if dc_machine.spec.provider_id is not None:
                    log.info(
                        "Recorded instance {provider_id} not found, creating a new one",
                        provider_id=dc_machine.spec.provider_id,
                    )
                try:
                    instance = await self._create_instance(client, machine, dc_machine, cluster)
                except CrunchplaneError as e:
                    log.error("Failed to create instance: {error}", error=e)
                    self._recorder.warning(dc_machine, RECONCILE_FAILED, f"failed to create instance: {e}")
                    mark_false(
                        dc_machine, INSTANCE_READY, INSTANCE_CREATION_FAILED,
                        Severity.ERROR, str(e), now=self._now,
                    )
                    raise

                log.info("Created new DataCrunch instance {instance_id}", instance_id=instance.id)
                mark_false(
                    dc_machine, INSTANCE_READY, INSTANCE_NOT_READY, Severity.INFO, now=self._now,
                )
                self._recorder.normal(
                    dc_machine, INSTANCE_CREATED, f"Created new DataCrunch instance {instance.id}",
                )

            if dc_machine.spec.provider_id is None:
                dc_machine.spec.provider_id = provider_id_for(instance.id)
                try:
                    await patcher.persist(dc_machine)
                except CrunchplaneError as e:
                    log.error(
                        "Failed to persist providerID for instance {instance_id}: {error}",
                        instance_id=instance.id, error=e,
                    )
                    raise

            return await self._project_state(log.bind(instance_id=instance.id), client, dc_machine, instance)

    async def _project_state(
        self,
        log: BoundLogger,
        client: CloudClient,
        dc_machine: DataCrunchMachine,
        instance: Instance,
    ) -> Result:
        status = dc_machine.status
        state = _instance_state(instance.state)
        status.instance_state = state

        match state:
            case InstanceState.RUNNING:
                log.info("DataCrunch instance is running")
                status.ready = True
                status.addresses = machine_addresses(instance)
                mark_true(dc_machine, INSTANCE_READY, now=self._now)
                log.info("Successfully reconciled DataCrunchMachine")
                return Result()

            case InstanceState.PENDING:
                log.info("DataCrunch instance is pending")
                status.ready = False
                mark_false(
                    dc_machine, INSTANCE_READY, INSTANCE_NOT_READY, Severity.INFO,
                    "Instance is pending", now=self._now,
                )
                return Result(requeue_after=self._requeue_delay)

            case InstanceState.STOPPED:
                log.info("DataCrunch instance is stopped, starting it")
                status.ready = False
                try:
                    await client.start_instance(instance.id)
                except CloudError as e:
                    log.error("Failed to start instance: {error}", error=e)
                    raise ReconcileError(
                        f"failed to start instance {instance.id}: {e}",
                        requeue_after=self._requeue_delay,
                    ) from e
                self._recorder.normal(dc_machine, INSTANCE_STARTED, f"Started DataCrunch instance {instance.id}")
                return Result(requeue_after=self._requeue_delay)

            case InstanceState.TERMINATED:
                log.info("DataCrunch instance is terminated")
                status.ready = False
                status.failure_reason = UPDATE_MACHINE_ERROR
                status.failure_message = TERMINATED_MESSAGE
                mark_false(
                    dc_machine, INSTANCE_READY, INSTANCE_TERMINATED, Severity.ERROR,
                    TERMINATED_MESSAGE, now=self._now,
                )
                self._recorder.warning(
                    dc_machine, TERMINATED_EVENT, f"DataCrunch instance {instance.id} was terminated",
                )
                return Result()

            case _:
                log.info("DataCrunch instance is in unknown state {state}", state=instance.state)
                status.ready = False
                mark_false(
                    dc_machine, INSTANCE_READY, INSTANCE_NOT_READY, Severity.WARNING,
                    f"Instance is in unknown state: {instance.state}", now=self._now,
                )
                return Result(requeue_after=self._requeue_delay)

    # ─── Delete ───────────────────────────────────────────────────────

    async def _reconcile_delete(
        self,
        log: BoundLogger,
        dc_machine: DataCrunchMachine,
        infra_cluster: DataCrunchCluster | None,
    ) -> Result:
        log.info("Reconciling DataCrunchMachine delete")

        client: CloudClient | None
        try:
            if infra_cluster is None:
                client = await self._clients.client_in(dc_machine.metadata.namespace)
            else:
                client = await self._clients.client_for(infra_cluster)
        except CrunchplaneError as e:
            # Without credentials the instance can never be found; do not block deletion.
            log.error("Failed to create DataCrunch client during deletion: {error}", error=e)
            client = None

        if client is not None:
            async with client:
                await self._delete_instance(log, client, dc_machine)

        remove_finalizer(dc_machine, MACHINE_FINALIZER)
        log.info("Successfully reconciled DataCrunchMachine delete")
        return Result()

    async def _delete_instance(
        self, log: BoundLogger, client: CloudClient, dc_machine: DataCrunchMachine,
    ) -> None:
        try:
            instance = await self._find_instance(client, dc_machine)
        except ProviderIDError as e:
            log.error("Cannot identify instance to delete: {error}", error=e)
            return
        except CloudError as e:
            # The instance may still exist; keep the finalizer.
            log.error("Failed to find instance during deletion: {error}", error=e)
            raise ReconcileError(
                f"failed to look up instance for deletion: {e}", requeue_after=self._requeue_delay,
            ) from e

        if instance is None:
            return

        log.info("Deleting DataCrunch instance {instance_id}", instance_id=instance.id)
        try:
            await client.delete_instance(instance.id)
        except CloudError as e:
            if not e.not_found:
                log.error("Failed to delete instance {instance_id}: {error}", instance_id=instance.id, error=e)
                raise ReconcileError(
                    f"failed to delete instance {instance.id}: {e}", requeue_after=self._requeue_delay,
                ) from e
            log.info("Instance {instance_id} already gone", instance_id=instance.id)
            return
        self._recorder.normal(dc_machine, INSTANCE_DELETED, f"Deleted DataCrunch instance {instance.id}")

    # ─── Cloud helpers ────────────────────────────────────────────────

    async def _find_instance(self, client: CloudClient, dc_machine: DataCrunchMachine) -> Instance | None:
        """Look the instance up by providerID.

        Returns None when no providerID is recorded or the provider reports
        the instance as not found.

        Raises:
            ProviderIDError: The recorded providerID is malformed.
            CloudError: Any lookup failure other than not found.
        """
        provider_id = dc_machine.spec.provider_id
        if provider_id is None:
            return None

        instance_id = parse_provider_id(provider_id)
        try:
            return await client.get_instance(instance_id)
        except CloudError as e:
            if e.not_found:
                return None
            raise

    async def _create_instance(
        self,
        client: CloudClient,
        machine: Machine,
        dc_machine: DataCrunchMachine,
        cluster: Cluster,
    ) -> Instance:
        user_data = await self._bootstrap_data(machine)
        spec = dc_machine.spec

        tags = dict(spec.additional_tags)
        tags[CLUSTER_NAME_LABEL] = cluster.metadata.name
        tags[MACHINE_NAME_LABEL] = machine.metadata.name

        instance_spec = InstanceSpec(
            name=dc_machine.metadata.name,
            instance_type=spec.instance_type,
            image_id=spec.image or DEFAULT_IMAGE,
            ssh_key_name=spec.ssh_key_name,
            user_data=user_data,
            metadata=dict(spec.additional_metadata),
            tags=tags,
            public_ip=bool(spec.public_ip),
            root_volume_size=spec.root_volume.size if spec.root_volume and spec.root_volume.size else None,
            spot=spec.spot is not None,
            spot_max_price=spec.spot.max_price if spec.spot else None,
        )
        return await client.create_instance(instance_spec)

    async def _bootstrap_data(self, machine: Machine) -> str:
        """Base64-encoded bootstrap data from the Machine's data secret."""
        secret_name = machine.spec.bootstrap.data_secret_name
        if not secret_name:
            raise ReconcileError("linked Machine's bootstrap.data_secret_name is not set")

        key = ObjectKey(machine.metadata.namespace, secret_name)
        try:
            secret = await self._store.get(Secret, key)
        except NotFoundError as e:
            raise ReconcileError(
                f"failed to retrieve bootstrap data secret {key} for Machine {machine.key}",
            ) from e

        value = secret.data.get(BOOTSTRAP_DATA_KEY)
        if value is None:
            raise ReconcileError(f"bootstrap data secret {key} has no {BOOTSTRAP_DATA_KEY!r} key")
        return base64.b64encode(value).decode()


__all__ = [
    "DEFAULT_IMAGE",
    "DataCrunchMachineReconciler",
    "machine_addresses",
]
