"""Object metadata shared by every declarative resource.

Mirrors the subset of Kubernetes ``ObjectMeta`` the reconcilers rely on:
labels and annotations for lookups and pausing, finalizers for cleanup
obligations, owner references for resolving parents, a deletion timestamp
marking objects being deleted, and a resource version used as the token
for conditional writes.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar

API_GROUP = "infrastructure.cluster.x-k8s.io"
CLUSTER_API_GROUP = "cluster.x-k8s.io"

CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
MACHINE_NAME_LABEL = "cluster.x-k8s.io/machine-name"
WATCH_LABEL = "cluster.x-k8s.io/watch-filter"
PAUSED_ANNOTATION = "cluster.x-k8s.io/paused"


@dataclass(frozen=True, slots=True, order=True)
class ObjectKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, slots=True)
class OwnerReference:
    kind: str
    name: str
    uid: str = ""
    controller: bool = False


@dataclass(frozen=True, slots=True)
class ObjectReference:
    kind: str
    name: str
    namespace: str = ""


@dataclass(slots=True)
class ObjectMeta:
    name: str
    namespace: str = "default"
    uid: str = field(default_factory=lambda: uuid.uuid4().hex)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    owner_references: list[OwnerReference] = field(default_factory=list)
    deletion_timestamp: datetime | None = None
    resource_version: int = 0

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.namespace, self.name)


@dataclass(slots=True)
class Resource:
    """Base class of every stored object. Subclasses set ``KIND``."""

    KIND: ClassVar[str] = ""

    metadata: ObjectMeta

    @property
    def key(self) -> ObjectKey:
        return self.metadata.key

    @property
    def deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None


# =============================================================================
# Finalizers, owners, pausing
# =============================================================================


def has_finalizer(obj: Resource, finalizer: str) -> bool:
    return finalizer in obj.metadata.finalizers


def add_finalizer(obj: Resource, finalizer: str) -> bool:
    """Add ``finalizer``; returns True when the object changed."""
    if finalizer in obj.metadata.finalizers:
        return False
    obj.metadata.finalizers.append(finalizer)
    return True


def remove_finalizer(obj: Resource, finalizer: str) -> bool:
    """Remove ``finalizer``; returns True when the object changed."""
    if finalizer not in obj.metadata.finalizers:
        return False
    obj.metadata.finalizers = [f for f in obj.metadata.finalizers if f != finalizer]
    return True


def owner_of_kind(obj: Resource, kind: str) -> OwnerReference | None:
    for ref in obj.metadata.owner_references:
        if ref.kind == kind:
            return ref
    return None


def has_paused_annotation(obj: Resource) -> bool:
    return PAUSED_ANNOTATION in obj.metadata.annotations
