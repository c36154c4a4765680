from __future__ import annotations

import pytest

from crunchplane.api.cluster import (
    CLUSTER_FINALIZER,
    APIEndpoint,
    Cluster,
    DataCrunchCluster,
    FailureDomain,
    LoadBalancerStatus,
    NetworkStatus,
)
from crunchplane.api.conditions import (
    LOAD_BALANCER_READY,
    NETWORK_INFRASTRUCTURE_READY,
    ConditionStatus,
    Severity,
    get_condition,
    is_true,
)
from crunchplane.api.meta import ObjectKey, ObjectMeta
from crunchplane.api.secret import Secret
from crunchplane.controllers.base import Result
from crunchplane.controllers.cluster import placeholder_endpoint
from crunchplane.controllers.events import RECONCILE_FAILED, EventType
from crunchplane.core.exceptions import CredentialsError, NotFoundError

from tests.fakes import NAMESPACE, Env

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


async def with_finalizer(env: Env) -> None:
    await env.clusters.reconcile(env.cluster_key)


@pytest.mark.asyncio
async def test_first_pass_only_adds_finalizer(env: Env):
    assert await env.clusters.reconcile(env.cluster_key) == Result()

    dc_cluster = await env.dc_cluster()
    assert dc_cluster.metadata.finalizers == [CLUSTER_FINALIZER]
    assert dc_cluster.status.ready is False
    assert env.credentials_seen == []


@pytest.mark.asyncio
async def test_reconcile_sets_placeholders_and_ready(env: Env):
    await with_finalizer(env)

    assert await env.clusters.reconcile(env.cluster_key) == Result()

    dc_cluster = await env.dc_cluster()
    assert dc_cluster.status.ready is True
    assert dc_cluster.status.network == NetworkStatus()
    assert dc_cluster.status.failure_domains == {"default": FailureDomain(control_plane=True)}
    assert dc_cluster.spec.control_plane_endpoint == APIEndpoint("cluster-demo.datacrunch.local", 6443)
    assert is_true(dc_cluster, NETWORK_INFRASTRUCTURE_READY)
    assert is_true(dc_cluster, LOAD_BALANCER_READY)
    # placeholders only, nothing is provisioned
    assert env.cloud.calls == []
    assert env.cloud.closed == 1


@pytest.mark.asyncio
async def test_existing_endpoint_is_kept(env: Env):
    endpoint = APIEndpoint("api.example.com", 443)
    await env.edit(DataCrunchCluster, env.cluster_key, spec__control_plane_endpoint=endpoint)
    await with_finalizer(env)

    await env.clusters.reconcile(env.cluster_key)

    assert (await env.dc_cluster()).spec.control_plane_endpoint == endpoint


@pytest.mark.asyncio
async def test_converged_cluster_is_stable(env: Env):
    await with_finalizer(env)
    await env.clusters.reconcile(env.cluster_key)
    converged = await env.dc_cluster()

    await env.clusters.reconcile(env.cluster_key)

    after = await env.dc_cluster()
    assert after.metadata.resource_version == converged.metadata.resource_version


def test_placeholder_endpoint():
    assert str(placeholder_endpoint("prod")) == "cluster-prod.datacrunch.local:6443"


# ─── Credentials ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_missing_credentials_marks_network_condition(env: Env):
    await env.store.delete(Secret, ObjectKey(NAMESPACE, "datacrunch-credentials"))
    await with_finalizer(env)

    with pytest.raises(CredentialsError):
        await env.clusters.reconcile(env.cluster_key)

    dc_cluster = await env.dc_cluster()
    condition = get_condition(dc_cluster, NETWORK_INFRASTRUCTURE_READY)
    assert condition is not None
    assert condition.status is ConditionStatus.FALSE
    assert condition.severity is Severity.ERROR
    assert condition.reason == "DataCrunchClientFailed"
    assert dc_cluster.status.ready is False

    (event,) = env.recorder.for_object(dc_cluster)
    assert event.type is EventType.WARNING
    assert event.reason == RECONCILE_FAILED


@pytest.mark.asyncio
async def test_credentials_ref_is_honored(env: Env):
    await env.store.create(Secret(
        metadata=ObjectMeta(name="team-creds", namespace=NAMESPACE),
        data={"clientID": b"team", "clientSecret": b"s3cret", "apiURL": b"https://dc.example/v1"},
    ))
    await env.edit(DataCrunchCluster, env.cluster_key, spec__credentials_ref="team-creds")
    await with_finalizer(env)

    await env.clusters.reconcile(env.cluster_key)

    (credentials,) = env.credentials_seen
    assert credentials.client_id == "team"
    assert credentials.client_secret == "s3cret"
    assert credentials.api_url == "https://dc.example/v1"


# ─── Pre-steps ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_paused_cluster_is_skipped(env: Env):
    await env.edit(Cluster, ObjectKey(NAMESPACE, "demo"), spec__paused=True)
    assert await env.clusters.reconcile(env.cluster_key) == Result()
    assert (await env.dc_cluster()).metadata.finalizers == []


@pytest.mark.asyncio
async def test_cluster_without_owner_is_skipped(env: Env):
    await env.edit(DataCrunchCluster, env.cluster_key, metadata__owner_references=[])
    assert await env.clusters.reconcile(env.cluster_key) == Result()
    assert (await env.dc_cluster()).metadata.finalizers == []


@pytest.mark.asyncio
async def test_missing_owner_cluster_is_skipped(env: Env):
    await env.store.delete(Cluster, ObjectKey(NAMESPACE, "demo"))
    assert await env.clusters.reconcile(env.cluster_key) == Result()
    assert (await env.dc_cluster()).metadata.finalizers == []


@pytest.mark.asyncio
async def test_missing_object_is_ignored(env: Env):
    assert await env.clusters.reconcile(ObjectKey(NAMESPACE, "nope")) == Result()


# ─── Delete ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_delete_removes_finalizer(env: Env):
    await with_finalizer(env)
    await env.clusters.reconcile(env.cluster_key)
    await env.store.delete(DataCrunchCluster, env.cluster_key)

    assert await env.clusters.reconcile(env.cluster_key) == Result()

    assert "delete_load_balancer" not in env.cloud.calls
    with pytest.raises(NotFoundError):
        await env.dc_cluster()


@pytest.mark.asyncio
async def test_delete_load_balancer_failure_does_not_block(env: Env):
    await with_finalizer(env)
    await env.edit(DataCrunchCluster, env.cluster_key, status__load_balancer=LoadBalancerStatus(id="lb-1"))
    await env.store.delete(DataCrunchCluster, env.cluster_key)

    assert await env.clusters.reconcile(env.cluster_key) == Result()

    assert env.cloud.calls == ["delete_load_balancer"]
    with pytest.raises(NotFoundError):
        await env.dc_cluster()


@pytest.mark.asyncio
async def test_delete_without_credentials_removes_finalizer(env: Env):
    await with_finalizer(env)
    await env.store.delete(Secret, ObjectKey(NAMESPACE, "datacrunch-credentials"))
    await env.store.delete(DataCrunchCluster, env.cluster_key)

    assert await env.clusters.reconcile(env.cluster_key) == Result()
    with pytest.raises(NotFoundError):
        await env.dc_cluster()


@pytest.mark.asyncio
async def test_delete_proceeds_when_owner_cluster_is_gone(env: Env):
    await with_finalizer(env)
    await env.store.delete(Cluster, ObjectKey(NAMESPACE, "demo"))
    await env.store.delete(DataCrunchCluster, env.cluster_key)

    assert await env.clusters.reconcile(env.cluster_key) == Result()
    with pytest.raises(NotFoundError):
        await env.dc_cluster()


@pytest.mark.asyncio
async def test_delete_proceeds_without_owner_reference(env: Env):
    await with_finalizer(env)
    await env.edit(DataCrunchCluster, env.cluster_key, metadata__owner_references=[])
    await env.store.delete(DataCrunchCluster, env.cluster_key)

    assert await env.clusters.reconcile(env.cluster_key) == Result()
    with pytest.raises(NotFoundError):
        await env.dc_cluster()
