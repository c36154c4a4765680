"""DataCrunch API request and response types.

The create payload is described by TypedDicts. Every response is decoded
into a frozen dataclass by a ``from_response`` constructor that checks required
fields and value types, so API drift fails at the decode boundary instead
of at some later field access.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, NotRequired, TypedDict

# =============================================================================
# Wire Types
# =============================================================================


class OSVolumeParams(TypedDict):
    name: str
    size: int


class InstanceCreateParams(TypedDict):
    hostname: str
    instance_type: str
    image: str
    ssh_key: str
    user_data: str
    metadata: dict[str, str]
    tags: dict[str, str]
    public_ip: bool
    is_spot: bool
    spot_max_price: NotRequired[str]
    os_volume: NotRequired[OSVolumeParams]


# =============================================================================
# Decoding
# =============================================================================


class SchemaError(ValueError):
    """Raised when a response does not match the expected schema."""


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise SchemaError(f"{what}: expected an object, got {type(data).__name__}")
    return data


def _required[T](data: Mapping[str, Any], key: str, kind: type[T]) -> T:
    value = data.get(key)
    if value is None:
        raise SchemaError(f"missing required field {key!r}")
    if not isinstance(value, kind):
        raise SchemaError(f"field {key!r}: expected {kind.__name__}, got {type(value).__name__}")
    return value


def _optional[T](data: Mapping[str, Any], key: str, kind: type[T], default: T) -> T:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise SchemaError(f"field {key!r}: expected {kind.__name__}, got {type(value).__name__}")
    return value


def _identifier(data: Mapping[str, Any], key: str = "id") -> str:
    # ids come back as strings or integers depending on the endpoint
    value = data.get(key)
    match value:
        case str() if value:
            return value
        case int() if not isinstance(value, bool):
            return str(value)
        case None | "":
            raise SchemaError(f"missing required field {key!r}")
        case _:
            raise SchemaError(f"field {key!r}: expected str or int, got {type(value).__name__}")


def items(data: Any, key: str) -> list[Any]:
    """Unwrap a list response that may or may not be enveloped under ``key``."""
    match data:
        case None:
            return []
        case list():
            return data
        case {**envelope} if key in envelope:
            inner = envelope[key]
            if inner is None:
                return []
            if not isinstance(inner, list):
                raise SchemaError(f"field {key!r}: expected a list, got {type(inner).__name__}")
            return inner
        case _:
            raise SchemaError(f"expected a list or an object with {key!r}")


def created_id(data: Any) -> str:
    """Extract the new resource id from a creation response.

    The API answers either with a JSON object carrying ``id`` or with the
    bare id as (optionally quoted) text.
    """
    match data:
        case str() as text:
            text = text.strip().strip('"')
            if not text:
                raise SchemaError("empty creation response")
            return text
        case {**obj}:
            return _identifier(obj)
        case _:
            raise SchemaError(f"unexpected creation response: {data!r}")


# =============================================================================
# Domain Types
# =============================================================================


@dataclass(frozen=True, slots=True)
class Instance:
    """A DataCrunch instance as observed from the API. Never persisted."""

    id: str
    name: str
    state: str
    instance_type: str = ""
    image_id: str = ""
    public_ip: str = ""
    private_ip: str = ""
    ssh_key_name: str = ""
    created_at: str = ""
    region: str = ""

    @classmethod
    def from_response(cls, data: Any) -> Instance:
        obj = _mapping(data, "instance")
        return cls(
            id=_identifier(obj),
            name=_required(obj, "hostname", str),
            state=_required(obj, "status", str),
            instance_type=_optional(obj, "instance_type", str, ""),
            image_id=_optional(obj, "image", str, ""),
            public_ip=_optional(obj, "public_ip", str, ""),
            private_ip=_optional(obj, "private_ip", str, ""),
            ssh_key_name=_optional(obj, "ssh_key", str, ""),
            created_at=_optional(obj, "created_at", str, ""),
            region=_optional(obj, "location", str, ""),
        )


@dataclass(frozen=True, slots=True)
class Image:
    id: str
    name: str
    description: str = ""
    os_type: str = ""
    created_at: str = ""

    @classmethod
    def from_response(cls, data: Any) -> Image:
        obj = _mapping(data, "image")
        return cls(
            id=_identifier(obj),
            name=_required(obj, "name", str),
            description=_optional(obj, "description", str, ""),
            os_type=_optional(obj, "os_type", str, ""),
            created_at=_optional(obj, "created_at", str, ""),
        )


@dataclass(frozen=True, slots=True)
class SSHKey:
    id: str
    name: str
    public_key: str = ""
    created_at: str = ""

    @classmethod
    def from_response(cls, data: Any) -> SSHKey:
        obj = _mapping(data, "ssh key")
        return cls(
            id=_identifier(obj),
            name=_required(obj, "name", str),
            public_key=_optional(obj, "public_key", str, ""),
            created_at=_optional(obj, "created_at", str, ""),
        )


@dataclass(frozen=True, slots=True)
class InstanceSpec:
    """Everything needed to create one instance."""

    name: str
    instance_type: str
    image_id: str
    ssh_key_name: str = ""
    user_data: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)
    public_ip: bool = False
    root_volume_size: int | None = None
    spot: bool = False
    spot_max_price: str | None = None

    def to_params(self) -> InstanceCreateParams:
        params: InstanceCreateParams = {
            "hostname": self.name,
            "instance_type": self.instance_type,
            "image": self.image_id,
            "ssh_key": self.ssh_key_name,
            "user_data": self.user_data,
            "metadata": dict(self.metadata),
            "tags": dict(self.tags),
            "public_ip": self.public_ip,
            "is_spot": self.spot,
        }
        if self.spot and self.spot_max_price:
            params["spot_max_price"] = self.spot_max_price
        if self.root_volume_size:
            params["os_volume"] = {"name": f"{self.name}-os", "size": self.root_volume_size}
        return params


@dataclass(frozen=True, slots=True)
class LoadBalancerSpec:
    name: str
    type: str = ""
    health_check_path: str = ""
    targets: tuple[str, ...] = ()
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LoadBalancer:
    id: str
    name: str
    dns_name: str = ""
    state: str = ""
    type: str = ""
    targets: tuple[str, ...] = ()


__all__ = [
    "Image",
    "Instance",
    "InstanceCreateParams",
    "InstanceSpec",
    "LoadBalancer",
    "LoadBalancerSpec",
    "SSHKey",
    "SchemaError",
    "created_id",
    "items",
]
