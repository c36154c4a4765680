"""Pieces shared by the reconcilers.

- ``Result``: what a reconcile asks of the dispatcher
- ``Patcher``: persists the object at the end of a reconcile
- ``ClientProvider``: resolves credentials and builds a cloud client
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Protocol

from crunchplane.api.cluster import DataCrunchCluster
from crunchplane.api.meta import ObjectKey, Resource
from crunchplane.cloud.config import DEFAULT_REQUEST_TIMEOUT, Credentials
from crunchplane.cloud.datacrunch import DataCrunchClient
from crunchplane.cloud.interfaces import ClientFactory, CloudClient
from crunchplane.config import DEFAULT_CREDENTIALS_SECRET
from crunchplane.observability.logger import BoundLogger
from crunchplane.store import ObjectStore

from .credentials import resolve_credentials

# Poll interval for cloud states that produce no change event of their own.
REQUEUE_DELAY = 30.0


@dataclass(frozen=True, slots=True)
class Result:
    """Outcome of a successful reconcile.

    ``requeue_after`` asks for another invocation after that many seconds;
    None means "wait for the next change".
    """

    requeue_after: float | None = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


class Reconciler(Protocol):
    KIND: str

    async def reconcile(self, key: ObjectKey) -> Result: ...


def default_client_factory(timeout: float = DEFAULT_REQUEST_TIMEOUT) -> ClientFactory:
    def factory(credentials: Credentials) -> CloudClient:
        return DataCrunchClient(credentials, timeout=timeout)

    return factory


class ClientProvider:
    """Builds a cloud client for a DataCrunchCluster from its credentials secret.

    The secret is ``spec.credentials_ref`` when set, otherwise
    ``default_secret``, always read from the cluster's namespace.
    """

    def __init__(
        self,
        store: ObjectStore,
        factory: ClientFactory | None = None,
        *,
        default_secret: str = DEFAULT_CREDENTIALS_SECRET,
    ) -> None:
        self._store = store
        self._factory = factory or default_client_factory()
        self._default_secret = default_secret

    async def client_for(self, infra_cluster: DataCrunchCluster) -> CloudClient:
        return await self.client_in(infra_cluster.metadata.namespace, infra_cluster.spec.credentials_ref)

    async def client_in(self, namespace: str, credentials_ref: str | None = None) -> CloudClient:
        """Client for ``credentials_ref``, or the default secret, in ``namespace``."""
        secret_name = credentials_ref or self._default_secret
        credentials = await resolve_credentials(self._store, namespace, secret_name)
        return self._factory(credentials)


class Patcher[R: Resource]:
    """Snapshot an object and write it back only if it changed.

    Mirrors a deferred patch: call ``patch`` in a ``finally`` block after
    the reconcile branch ran.
    """

    def __init__(self, store: ObjectStore, obj: R) -> None:
        self._store = store
        self._before = copy.deepcopy(obj)

    def changed(self, obj: R) -> bool:
        return obj != self._before

    async def patch(self, obj: R) -> None:
        if not self.changed(obj):
            return
        await self._store.update(obj)
        self._before = copy.deepcopy(obj)

    async def persist(self, obj: R) -> None:
        """Write now instead of at the end, e.g. for the finalizer or providerID."""
        await self._store.update(obj)
        self._before = copy.deepcopy(obj)


async def patch_after(
    patcher: Patcher, obj: Resource, log: BoundLogger, *, failed: bool,
) -> None:
    """Run the end-of-reconcile patch.

    When the branch already failed, a patch failure is only logged so the
    branch error is the one that propagates.
    """
    if not failed:
        await patcher.patch(obj)
        return
    try:
        await patcher.patch(obj)
    except Exception as e:
        log.error("Failed to patch {kind} after error: {error}", kind=obj.KIND, error=e)


__all__ = [
    "REQUEUE_DELAY",
    "ClientProvider",
    "Patcher",
    "Reconciler",
    "Result",
    "default_client_factory",
    "patch_after",
]
