"""Machine-level resources.

``DataCrunchMachine`` maps one declared machine onto one cloud instance.
``Machine`` is the generic workload object that owns it and supplies the
bootstrap (first-boot) data secret.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import ClassVar

from crunchplane.core.exceptions import ProviderIDError

from .conditions import Condition
from .meta import API_GROUP, ObjectReference, Resource

MACHINE_FINALIZER = f"datacrunchmachine.{API_GROUP}"

PROVIDER_ID_SCHEME = "datacrunch"

# Value of ``failure_reason`` once an instance is gone for good.
UPDATE_MACHINE_ERROR = "UpdateError"


def provider_id_for(instance_id: str) -> str:
    return f"{PROVIDER_ID_SCHEME}://{instance_id}"


def parse_provider_id(provider_id: str) -> str:
    """Return the instance id of a ``datacrunch://<instance-id>`` provider ID.

    Raises:
        ProviderIDError: Wrong scheme, or no instance id.
    """
    scheme, sep, instance_id = provider_id.partition("://")
    if not sep:
        raise ProviderIDError(provider_id, "expected <scheme>://<instance-id>")
    if scheme != PROVIDER_ID_SCHEME:
        raise ProviderIDError(provider_id, f"unexpected scheme {scheme!r}")
    if not instance_id or "/" in instance_id:
        raise ProviderIDError(provider_id, "missing or invalid instance id")
    return instance_id


class InstanceState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"


class AddressType(StrEnum):
    HOSTNAME = "Hostname"
    INTERNAL_IP = "InternalIP"
    EXTERNAL_IP = "ExternalIP"


@dataclass(frozen=True, slots=True)
class MachineAddress:
    type: AddressType
    address: str


@dataclass(slots=True)
class Volume:
    size: int = 0
    type: str = ""
    encrypted: bool | None = None
    iops: int | None = None


@dataclass(slots=True)
class NetworkInterface:
    subnet_id: str = ""
    device_index: int | None = None
    associate_public_ip_address: bool | None = None
    delete_on_termination: bool | None = None
    secondary_private_ip_address_count: int | None = None
    security_group_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SpotOptions:
    # None means the on-demand price is the ceiling
    max_price: str | None = None


@dataclass(slots=True)
class DataCrunchMachineSpec:
    instance_type: str
    image: str = ""
    ssh_key_name: str = ""
    provider_id: str | None = None
    additional_metadata: dict[str, str] = field(default_factory=dict)
    additional_tags: dict[str, str] = field(default_factory=dict)
    root_volume: Volume | None = None
    network_interfaces: list[NetworkInterface] = field(default_factory=list)
    public_ip: bool | None = None
    spot: SpotOptions | None = None

    def __post_init__(self) -> None:
        if not self.instance_type:
            raise ValueError("instance_type is required")


@dataclass(slots=True)
class DataCrunchMachineStatus:
    ready: bool = False
    addresses: list[MachineAddress] = field(default_factory=list)
    # A raw string when the provider reports a state outside InstanceState.
    instance_state: InstanceState | str | None = None
    conditions: list[Condition] = field(default_factory=list)
    failure_reason: str | None = None
    failure_message: str | None = None
    interruption_reason: str | None = None

    @property
    def failed(self) -> bool:
        return self.failure_reason is not None or self.failure_message is not None


@dataclass(slots=True)
class DataCrunchMachine(Resource):
    KIND: ClassVar[str] = "DataCrunchMachine"

    spec: DataCrunchMachineSpec
    status: DataCrunchMachineStatus = field(default_factory=DataCrunchMachineStatus)

    @property
    def conditions(self) -> list[Condition]:
        return self.status.conditions


# =============================================================================
# Owning workload machine
# =============================================================================


@dataclass(slots=True)
class Bootstrap:
    data_secret_name: str | None = None


@dataclass(slots=True)
class MachineSpec:
    cluster_name: str = ""
    bootstrap: Bootstrap = field(default_factory=Bootstrap)
    infrastructure_ref: ObjectReference | None = None


@dataclass(slots=True)
class Machine(Resource):
    KIND: ClassVar[str] = "Machine"

    spec: MachineSpec = field(default_factory=MachineSpec)
