"""Declarative object store.

``ObjectStore`` is the boundary reconcilers read and persist through.
``InMemoryStore`` implements it in-process with the semantics the
reconcilers depend on:

- every write bumps ``metadata.resource_version``; ``update`` is
  conditional on the caller holding the current version
- deleting an object that still carries finalizers only stamps
  ``deletion_timestamp``; the object disappears once an update removes
  its last finalizer
- reads and writes copy, so callers never share state with the store
- subscribers are notified of every change
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol

from crunchplane.api.meta import ObjectKey, Resource
from crunchplane.core.exceptions import AlreadyExistsError, ConflictError, NotFoundError
from crunchplane.observability.logger import logger


class ChangeType(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True, slots=True)
class Change:
    type: ChangeType
    kind: str
    key: ObjectKey
    obj: Resource


type Listener = Callable[[Change], None]
type Unsubscribe = Callable[[], None]


class ObjectStore(Protocol):
    async def get[R: Resource](self, cls: type[R], key: ObjectKey) -> R: ...

    async def list[R: Resource](
        self,
        cls: type[R],
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> list[R]: ...

    async def create[R: Resource](self, obj: R) -> R: ...

    async def update[R: Resource](self, obj: R) -> R: ...

    async def delete(self, cls: type[Resource], key: ObjectKey) -> None: ...

    def subscribe(self, listener: Listener) -> Unsubscribe: ...


def _matches(obj: Resource, namespace: str | None, labels: Mapping[str, str] | None) -> bool:
    if namespace is not None and obj.metadata.namespace != namespace:
        return False
    if labels:
        own = obj.metadata.labels
        return all(own.get(k) == v for k, v in labels.items())
    return True


class InMemoryStore:
    """Process-local ``ObjectStore``.

    All methods complete without suspending, so each one is atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self, *, clock: Callable[[], datetime] = lambda: datetime.now(UTC)) -> None:
        self._objects: dict[tuple[str, ObjectKey], Resource] = {}
        self._version = 0
        self._listeners: list[Listener] = []
        self._clock = clock
        self._log = logger.bind(component="store")

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def _notify(self, type: ChangeType, obj: Resource) -> None:
        change = Change(type, obj.KIND, obj.key, copy.deepcopy(obj))
        for listener in list(self._listeners):
            listener(change)

    def _current(self, kind: str, key: ObjectKey) -> Resource:
        try:
            return self._objects[(kind, key)]
        except KeyError:
            raise NotFoundError(kind, key.namespace, key.name) from None

    # ─── Reads ────────────────────────────────────────────────────────

    async def get[R: Resource](self, cls: type[R], key: ObjectKey) -> R:
        obj = self._current(cls.KIND, key)
        return copy.deepcopy(obj)  # type: ignore[return-value]

    async def list[R: Resource](
        self,
        cls: type[R],
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> list[R]:
        return [
            copy.deepcopy(obj)  # type: ignore[misc]
            for (kind, key), obj in sorted(self._objects.items(), key=lambda kv: kv[0][1])
            if kind == cls.KIND and _matches(obj, namespace, labels)
        ]

    # ─── Writes ───────────────────────────────────────────────────────

    async def create[R: Resource](self, obj: R) -> R:
        index = (obj.KIND, obj.key)
        if index in self._objects:
            raise AlreadyExistsError(obj.KIND, obj.metadata.namespace, obj.metadata.name)

        stored = copy.deepcopy(obj)
        stored.metadata.resource_version = self._next_version()
        stored.metadata.deletion_timestamp = None
        self._objects[index] = stored
        obj.metadata.resource_version = stored.metadata.resource_version

        self._log.debug("Created {kind} {key}", kind=obj.KIND, key=obj.key)
        self._notify(ChangeType.ADDED, stored)
        return copy.deepcopy(stored)

    async def update[R: Resource](self, obj: R) -> R:
        """Replace the stored object if ``obj`` carries its current resource version.

        The caller's ``resource_version`` is advanced in place on success so
        that consecutive updates of the same copy keep working.

        Raises:
            NotFoundError: The object does not exist.
            ConflictError: The object was modified since ``obj`` was read.
        """
        current = self._current(obj.KIND, obj.key)
        expected = obj.metadata.resource_version
        actual = current.metadata.resource_version
        if expected != actual:
            raise ConflictError(obj.KIND, obj.metadata.namespace, obj.metadata.name, expected, actual)

        stored = copy.deepcopy(obj)
        # deletion is requested through delete(), never through update()
        stored.metadata.deletion_timestamp = current.metadata.deletion_timestamp
        stored.metadata.resource_version = self._next_version()
        obj.metadata.resource_version = stored.metadata.resource_version

        if stored.deleting and not stored.metadata.finalizers:
            del self._objects[(obj.KIND, obj.key)]
            self._log.debug("Last finalizer removed, erased {kind} {key}", kind=obj.KIND, key=obj.key)
            self._notify(ChangeType.DELETED, stored)
            return copy.deepcopy(stored)

        self._objects[(obj.KIND, obj.key)] = stored
        self._notify(ChangeType.MODIFIED, stored)
        return copy.deepcopy(stored)

    async def delete(self, cls: type[Resource], key: ObjectKey) -> None:
        """Request deletion. Objects with finalizers linger until those are removed."""
        current = self._current(cls.KIND, key)

        if current.metadata.finalizers:
            if current.metadata.deletion_timestamp is None:
                current.metadata.deletion_timestamp = self._clock()
                current.metadata.resource_version = self._next_version()
                self._log.debug(
                    "Marked {kind} {key} for deletion, waiting on {finalizers}",
                    kind=cls.KIND, key=key, finalizers=current.metadata.finalizers,
                )
                self._notify(ChangeType.MODIFIED, current)
            return

        del self._objects[(cls.KIND, key)]
        self._log.debug("Deleted {kind} {key}", kind=cls.KIND, key=key)
        self._notify(ChangeType.DELETED, current)

    # ─── Watch ────────────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


__all__ = [
    "Change",
    "ChangeType",
    "InMemoryStore",
    "Listener",
    "ObjectStore",
    "Unsubscribe",
]
