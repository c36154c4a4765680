from __future__ import annotations

import base64

import pytest

from crunchplane.api.cluster import Cluster, DataCrunchCluster
from crunchplane.api.conditions import (
    INSTANCE_READY,
    ConditionStatus,
    Severity,
    get_condition,
)
from crunchplane.api.machine import (
    MACHINE_FINALIZER,
    AddressType,
    DataCrunchMachine,
    InstanceState,
    Machine,
    MachineAddress,
)
from crunchplane.api.meta import (
    CLUSTER_NAME_LABEL,
    MACHINE_NAME_LABEL,
    PAUSED_ANNOTATION,
    ObjectKey,
)
from crunchplane.api.secret import Secret
from crunchplane.controllers.base import Result
from crunchplane.controllers.events import INSTANCE_CREATED, INSTANCE_DELETED, INSTANCE_TERMINATED
from crunchplane.core.exceptions import (
    CloudError,
    ConflictError,
    CredentialsError,
    ErrorKind,
    NotFoundError,
    ReconcileError,
)

from tests.fakes import NAMESPACE, Env

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


async def provisioned(env: Env) -> DataCrunchMachine:
    """Reconcile until the instance exists: finalizer pass, then create pass."""
    await env.machines.reconcile(env.machine_key)
    await env.machines.reconcile(env.machine_key)
    return await env.dc_machine()


def instance_ready(dc_machine: DataCrunchMachine):
    condition = get_condition(dc_machine, INSTANCE_READY)
    assert condition is not None
    return condition


# ─── Finalizer ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_first_pass_only_adds_finalizer(env: Env):
    result = await env.machines.reconcile(env.machine_key)

    assert result == Result()
    dc_machine = await env.dc_machine()
    assert dc_machine.metadata.finalizers == [MACHINE_FINALIZER]
    assert env.cloud.calls == []
    assert env.credentials_seen == []


@pytest.mark.asyncio
async def test_missing_object_is_ignored(env: Env):
    result = await env.machines.reconcile(ObjectKey(NAMESPACE, "nope"))
    assert result == Result()
    assert env.cloud.calls == []


# ─── Scenarios ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_pending_instance_requeues(env: Env):
    await env.machines.reconcile(env.machine_key)
    result = await env.machines.reconcile(env.machine_key)

    assert result.requeue_after == 30
    dc_machine = await env.dc_machine()
    assert dc_machine.status.ready is False
    assert dc_machine.status.instance_state is InstanceState.PENDING
    assert dc_machine.spec.provider_id == "datacrunch://inst-1"

    condition = instance_ready(dc_machine)
    assert condition.status is ConditionStatus.FALSE
    assert condition.severity is Severity.INFO
    assert condition.reason == "InstanceNotReady"
    assert condition.message == "Instance is pending"

    assert [e.reason for e in env.recorder.for_object(dc_machine)] == [INSTANCE_CREATED]


@pytest.mark.asyncio
async def test_create_request_carries_defaults_tags_and_bootstrap(env: Env):
    await env.edit(DataCrunchMachine, env.machine_key, spec__image="")
    await provisioned(env)

    (spec,) = env.cloud.specs
    assert spec.name == "worker-0-dc"
    assert spec.instance_type == "1xH100"
    assert spec.image_id == "ubuntu-22.04-cuda-12.1"
    assert spec.tags[CLUSTER_NAME_LABEL] == "demo"
    assert spec.tags[MACHINE_NAME_LABEL] == "worker-0"
    assert base64.b64decode(spec.user_data) == b"#!/bin/sh\necho hi\n"
    assert spec.public_ip is False
    assert spec.spot is False


@pytest.mark.asyncio
async def test_running_instance_becomes_ready(env: Env):
    await provisioned(env)
    env.cloud.set_state("inst-1", "running", private_ip="10.0.1.100", public_ip="192.168.1.100")

    result = await env.machines.reconcile(env.machine_key)

    assert result == Result()
    dc_machine = await env.dc_machine()
    assert dc_machine.status.ready is True
    assert dc_machine.status.instance_state is InstanceState.RUNNING
    assert dc_machine.status.addresses == [
        MachineAddress(AddressType.HOSTNAME, "worker-0-dc"),
        MachineAddress(AddressType.INTERNAL_IP, "10.0.1.100"),
        MachineAddress(AddressType.EXTERNAL_IP, "192.168.1.100"),
    ]
    assert instance_ready(dc_machine).status is ConditionStatus.TRUE
    assert env.cloud.create_count == 1


@pytest.mark.asyncio
async def test_addresses_skip_empty_external_ip(env: Env):
    await provisioned(env)
    env.cloud.set_state("inst-1", "running", private_ip="10.0.0.5", public_ip="")

    await env.machines.reconcile(env.machine_key)

    dc_machine = await env.dc_machine()
    assert dc_machine.status.addresses == [
        MachineAddress(AddressType.HOSTNAME, "worker-0-dc"),
        MachineAddress(AddressType.INTERNAL_IP, "10.0.0.5"),
    ]


@pytest.mark.asyncio
async def test_terminated_instance_latches_failure(env: Env):
    await provisioned(env)
    env.cloud.set_state("inst-1", "terminated")

    result = await env.machines.reconcile(env.machine_key)

    assert result == Result()
    dc_machine = await env.dc_machine()
    assert dc_machine.status.failure_reason == "UpdateError"
    assert dc_machine.status.failure_message == "Instance was terminated"
    condition = instance_ready(dc_machine)
    assert condition.status is ConditionStatus.FALSE
    assert condition.severity is Severity.ERROR
    assert condition.reason == "InstanceTerminated"
    assert [e.reason for e in env.recorder.for_object(dc_machine)][-1] == INSTANCE_TERMINATED


@pytest.mark.asyncio
async def test_terminal_latch_blocks_cloud_calls(env: Env):
    await provisioned(env)
    env.cloud.set_state("inst-1", "terminated")
    await env.machines.reconcile(env.machine_key)

    env.cloud.set_state("inst-1", "running", private_ip="10.0.0.5")
    env.cloud.calls.clear()
    for _ in range(3):
        assert await env.machines.reconcile(env.machine_key) == Result()

    dc_machine = await env.dc_machine()
    assert env.cloud.calls == []
    assert dc_machine.status.failure_reason == "UpdateError"
    assert dc_machine.status.ready is False


@pytest.mark.asyncio
async def test_delete_with_failing_lookup_keeps_finalizer(env: Env):
    await provisioned(env)
    await env.store.delete(DataCrunchMachine, env.machine_key)
    env.cloud.fail("get_instance")

    with pytest.raises(ReconcileError) as exc_info:
        await env.machines.reconcile(env.machine_key)

    assert exc_info.value.requeue_after == 30
    dc_machine = await env.dc_machine()
    assert dc_machine.deleting
    assert MACHINE_FINALIZER in dc_machine.metadata.finalizers
    assert "delete_instance" not in env.cloud.calls


# ─── Idempotence & at-most-one create ────────────────────────────────


@pytest.mark.asyncio
async def test_converged_machine_is_stable(env: Env):
    await provisioned(env)
    env.cloud.set_state("inst-1", "running", private_ip="10.0.0.5", public_ip="1.2.3.4")
    await env.machines.reconcile(env.machine_key)
    converged = await env.dc_machine()

    for _ in range(3):
        await env.machines.reconcile(env.machine_key)

    after = await env.dc_machine()
    assert after == converged
    assert after.metadata.resource_version == converged.metadata.resource_version
    assert env.cloud.create_count == 1
    assert set(env.cloud.calls) == {"create_instance", "get_instance"}


@pytest.mark.asyncio
async def test_repeated_reconciles_create_one_instance(env: Env):
    await env.machines.reconcile(env.machine_key)
    for _ in range(5):
        await env.machines.reconcile(env.machine_key)
    assert env.cloud.create_count == 1
    assert list(env.cloud.instances) == ["inst-1"]


@pytest.mark.asyncio
async def test_provider_id_persisted_even_when_later_step_fails(env: Env):
    env.cloud.initial_state = "stopped"
    env.cloud.fail("start_instance")
    await env.machines.reconcile(env.machine_key)

    with pytest.raises(ReconcileError) as exc_info:
        await env.machines.reconcile(env.machine_key)
    assert exc_info.value.requeue_after == 30

    assert (await env.dc_machine()).spec.provider_id == "datacrunch://inst-1"

    with pytest.raises(ReconcileError):
        await env.machines.reconcile(env.machine_key)
    assert env.cloud.create_count == 1


# ─── Lookup ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_not_found_lookup_means_no_instance(env: Env):
    dc_machine = await env.dc_machine()
    dc_machine.spec.provider_id = "datacrunch://gone"
    assert await env.machines._find_instance(env.cloud, dc_machine) is None


@pytest.mark.asyncio
async def test_lookup_without_provider_id_skips_cloud(env: Env):
    dc_machine = await env.dc_machine()
    assert await env.machines._find_instance(env.cloud, dc_machine) is None
    assert env.cloud.calls == []


@pytest.mark.asyncio
async def test_other_lookup_errors_propagate(env: Env):
    await provisioned(env)
    env.cloud.fail("get_instance", ErrorKind.PERMANENT, status=403)

    with pytest.raises(CloudError) as exc_info:
        await env.machines.reconcile(env.machine_key)
    assert exc_info.value.status == 403
    assert env.cloud.create_count == 1


@pytest.mark.asyncio
async def test_vanished_instance_is_recreated_and_provider_id_kept(env: Env):
    await provisioned(env)
    env.cloud.instances.clear()

    result = await env.machines.reconcile(env.machine_key)

    assert result == Result(requeue_after=30)
    dc_machine = await env.dc_machine()
    assert env.cloud.create_count == 2
    assert list(env.cloud.instances) == ["inst-2"]
    assert dc_machine.spec.provider_id == "datacrunch://inst-1"
    assert not dc_machine.status.failed
    assert dc_machine.status.instance_state is InstanceState.PENDING
    assert instance_ready(dc_machine).reason == "InstanceNotReady"
    created = [e for e in env.recorder.for_object(dc_machine) if e.reason == INSTANCE_CREATED]
    assert len(created) == 2


# ─── Gates ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_waits_for_cluster_infrastructure(env: Env):
    await env.edit(Cluster, ObjectKey(NAMESPACE, "demo"), status__infrastructure_ready=False)
    await env.machines.reconcile(env.machine_key)

    result = await env.machines.reconcile(env.machine_key)

    assert result == Result()
    condition = instance_ready(await env.dc_machine())
    assert condition.reason == "WaitingForClusterInfrastructure"
    assert condition.severity is Severity.INFO
    assert env.cloud.calls == []


@pytest.mark.asyncio
async def test_waits_for_bootstrap_data(env: Env):
    machine = await env.store.get(Machine, ObjectKey(NAMESPACE, "worker-0"))
    machine.spec.bootstrap.data_secret_name = None
    await env.store.update(machine)
    await env.machines.reconcile(env.machine_key)

    result = await env.machines.reconcile(env.machine_key)

    assert result == Result()
    condition = instance_ready(await env.dc_machine())
    assert condition.reason == "WaitingForBootstrapData"
    assert env.cloud.calls == []


@pytest.mark.asyncio
async def test_missing_credentials_marks_client_failure(env: Env):
    await env.store.delete(Secret, ObjectKey(NAMESPACE, "datacrunch-credentials"))
    await env.machines.reconcile(env.machine_key)

    with pytest.raises(CredentialsError):
        await env.machines.reconcile(env.machine_key)

    condition = instance_ready(await env.dc_machine())
    assert condition.reason == "DataCrunchClientFailed"
    assert condition.severity is Severity.ERROR
    assert env.cloud.calls == []


@pytest.mark.asyncio
async def test_missing_bootstrap_secret_fails_creation(env: Env):
    await env.store.delete(Secret, ObjectKey(NAMESPACE, "worker-0-bootstrap"))
    await env.machines.reconcile(env.machine_key)

    with pytest.raises(ReconcileError, match="bootstrap data secret"):
        await env.machines.reconcile(env.machine_key)

    dc_machine = await env.dc_machine()
    assert instance_ready(dc_machine).reason == "InstanceCreationFailed"
    assert dc_machine.spec.provider_id is None
    assert env.cloud.create_count == 0


@pytest.mark.asyncio
async def test_create_failure_marks_condition(env: Env):
    env.cloud.fail("create_instance", ErrorKind.PERMANENT, status=400)
    await env.machines.reconcile(env.machine_key)

    with pytest.raises(CloudError):
        await env.machines.reconcile(env.machine_key)

    dc_machine = await env.dc_machine()
    condition = instance_ready(dc_machine)
    assert condition.reason == "InstanceCreationFailed"
    assert condition.severity is Severity.ERROR
    assert "create_instance failed" in condition.message
    assert dc_machine.spec.provider_id is None


# ─── Other states ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_stopped_instance_is_started(env: Env):
    await provisioned(env)
    env.cloud.set_state("inst-1", "stopped")

    result = await env.machines.reconcile(env.machine_key)

    assert result.requeue_after == 30
    assert env.cloud.calls[-1] == "start_instance"
    assert (await env.dc_machine()).status.instance_state is InstanceState.STOPPED


@pytest.mark.asyncio
@pytest.mark.parametrize(("state", "expected"), [
    ("shutting-down", InstanceState.SHUTTING_DOWN),
    ("hibernating", "hibernating"),
])
async def test_unrecognized_states_warn_and_requeue(env: Env, state: str, expected: object):
    await provisioned(env)
    env.cloud.set_state("inst-1", state)

    result = await env.machines.reconcile(env.machine_key)

    assert result.requeue_after == 30
    dc_machine = await env.dc_machine()
    assert dc_machine.status.instance_state == expected
    condition = instance_ready(dc_machine)
    assert condition.severity is Severity.WARNING
    assert condition.message == f"Instance is in unknown state: {state}"


# ─── Pre-steps ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_paused_cluster_is_skipped(env: Env):
    await env.edit(Cluster, ObjectKey(NAMESPACE, "demo"), spec__paused=True)
    assert await env.machines.reconcile(env.machine_key) == Result()
    assert (await env.dc_machine()).metadata.finalizers == []


@pytest.mark.asyncio
async def test_paused_annotation_is_skipped(env: Env):
    await env.edit(DataCrunchMachine, env.machine_key, metadata__annotations={PAUSED_ANNOTATION: "true"})
    assert await env.machines.reconcile(env.machine_key) == Result()
    assert (await env.dc_machine()).metadata.finalizers == []


@pytest.mark.asyncio
async def test_machine_without_owner_is_skipped(env: Env):
    await env.edit(DataCrunchMachine, env.machine_key, metadata__owner_references=[])
    assert await env.machines.reconcile(env.machine_key) == Result()
    assert (await env.dc_machine()).metadata.finalizers == []


@pytest.mark.asyncio
async def test_machine_without_cluster_label_is_skipped(env: Env):
    machine = await env.store.get(Machine, ObjectKey(NAMESPACE, "worker-0"))
    machine.metadata.labels.clear()
    machine.spec.cluster_name = ""
    await env.store.update(machine)
    assert await env.machines.reconcile(env.machine_key) == Result()
    assert (await env.dc_machine()).metadata.finalizers == []


# ─── Delete ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_delete_removes_instance_then_finalizer(env: Env):
    dc_machine = await provisioned(env)
    await env.store.delete(DataCrunchMachine, env.machine_key)

    result = await env.machines.reconcile(env.machine_key)

    assert result == Result()
    assert env.cloud.instances == {}
    assert INSTANCE_DELETED in [e.reason for e in env.recorder.for_object(dc_machine)]
    with pytest.raises(NotFoundError):
        await env.dc_machine()


@pytest.mark.asyncio
async def test_delete_failure_blocks_finalizer_removal(env: Env):
    await provisioned(env)
    await env.store.delete(DataCrunchMachine, env.machine_key)
    env.cloud.fail("delete_instance")

    with pytest.raises(ReconcileError) as exc_info:
        await env.machines.reconcile(env.machine_key)

    assert exc_info.value.requeue_after == 30
    assert MACHINE_FINALIZER in (await env.dc_machine()).metadata.finalizers


@pytest.mark.asyncio
async def test_delete_without_credentials_still_removes_finalizer(env: Env):
    await provisioned(env)
    await env.store.delete(Secret, ObjectKey(NAMESPACE, "datacrunch-credentials"))
    await env.store.delete(DataCrunchMachine, env.machine_key)

    assert await env.machines.reconcile(env.machine_key) == Result()
    with pytest.raises(NotFoundError):
        await env.dc_machine()


@pytest.mark.asyncio
async def test_delete_of_already_gone_instance_removes_finalizer(env: Env):
    await provisioned(env)
    env.cloud.instances.clear()
    await env.store.delete(DataCrunchMachine, env.machine_key)

    assert await env.machines.reconcile(env.machine_key) == Result()
    assert "delete_instance" not in env.cloud.calls
    with pytest.raises(NotFoundError):
        await env.dc_machine()


# ─── Patch step ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_patch_conflict_propagates(env: Env, monkeypatch: pytest.MonkeyPatch):
    await provisioned(env)
    env.cloud.set_state("inst-1", "running")

    async def conflicting_update(obj):
        raise ConflictError(obj.KIND, obj.metadata.namespace, obj.metadata.name, 1, 2)

    monkeypatch.setattr(env.store, "update", conflicting_update)
    with pytest.raises(ConflictError):
        await env.machines.reconcile(env.machine_key)


@pytest.mark.asyncio
async def test_branch_error_wins_over_patch_error(env: Env, monkeypatch: pytest.MonkeyPatch):
    await provisioned(env)
    env.cloud.set_state("inst-1", "stopped")
    env.cloud.fail("start_instance")

    async def conflicting_update(obj):
        raise ConflictError(obj.KIND, obj.metadata.namespace, obj.metadata.name, 1, 2)

    monkeypatch.setattr(env.store, "update", conflicting_update)
    with pytest.raises(ReconcileError):
        await env.machines.reconcile(env.machine_key)


# ─── Delete without related objects ──────────────────────────────────


@pytest.mark.asyncio
async def test_delete_after_infra_cluster_is_gone(env: Env):
    await env.clusters.reconcile(env.cluster_key)
    await provisioned(env)
    await env.store.delete(DataCrunchCluster, env.cluster_key)
    await env.clusters.reconcile(env.cluster_key)
    with pytest.raises(NotFoundError):
        await env.dc_cluster()

    await env.store.delete(DataCrunchMachine, env.machine_key)
    assert await env.machines.reconcile(env.machine_key) == Result()

    assert env.cloud.instances == {}
    assert env.credentials_seen[-1].client_id == "cid"
    with pytest.raises(NotFoundError):
        await env.dc_machine()


@pytest.mark.asyncio
async def test_delete_after_owner_machine_is_gone(env: Env):
    await provisioned(env)
    await env.store.delete(Machine, ObjectKey(NAMESPACE, "worker-0"))
    await env.store.delete(DataCrunchMachine, env.machine_key)

    assert await env.machines.reconcile(env.machine_key) == Result()

    assert "delete_instance" in env.cloud.calls
    assert env.cloud.instances == {}
    with pytest.raises(NotFoundError):
        await env.dc_machine()


@pytest.mark.asyncio
async def test_delete_without_related_objects_or_credentials(env: Env):
    await provisioned(env)
    await env.store.delete(Machine, ObjectKey(NAMESPACE, "worker-0"))
    await env.store.delete(Secret, ObjectKey(NAMESPACE, "datacrunch-credentials"))
    await env.store.delete(DataCrunchMachine, env.machine_key)

    assert await env.machines.reconcile(env.machine_key) == Result()
    with pytest.raises(NotFoundError):
        await env.dc_machine()


@pytest.mark.asyncio
async def test_missing_infra_cluster_blocks_normal_reconcile(env: Env):
    await env.store.delete(DataCrunchCluster, env.cluster_key)

    assert await env.machines.reconcile(env.machine_key) == Result()
    assert (await env.dc_machine()).metadata.finalizers == []
    assert env.cloud.calls == []
