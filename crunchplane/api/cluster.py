"""Cluster-level resources.

``DataCrunchCluster`` is the infrastructure object this project reconciles;
``Cluster`` is the generic parent object owned by the cluster lifecycle
machinery, read here only to resolve ownership, pausing and readiness.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar

from .conditions import Condition
from .meta import API_GROUP, ObjectReference, Resource

CLUSTER_FINALIZER = f"datacrunchcluster.{API_GROUP}"


@dataclass(slots=True)
class APIEndpoint:
    host: str = ""
    port: int = 0

    @property
    def is_zero(self) -> bool:
        return not self.host and self.port == 0

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(slots=True)
class LoadBalancerSpec:
    """Control plane load balancer settings. Load balancers are not provisioned yet."""

    enabled: bool | None = None
    type: str = ""
    health_check_path: str = ""


@dataclass(slots=True)
class VPCSpec:
    id: str = ""
    cidr_block: str = ""
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class SubnetSpec:
    id: str = ""
    cidr_block: str = ""
    availability_zone: str = ""
    is_public: bool = False
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class NetworkSpec:
    vpc: VPCSpec | None = None
    subnets: list[SubnetSpec] = field(default_factory=list)


@dataclass(slots=True)
class DataCrunchClusterSpec:
    region: str = ""
    control_plane_endpoint: APIEndpoint = field(default_factory=APIEndpoint)
    control_plane_load_balancer: LoadBalancerSpec | None = None
    network: NetworkSpec | None = None
    # Name of the secret holding clientID / clientSecret / apiURL.
    credentials_ref: str | None = None


@dataclass(slots=True)
class VPCStatus:
    id: str = ""
    cidr_block: str = ""
    state: str = ""


@dataclass(slots=True)
class SubnetStatus:
    id: str = ""
    cidr_block: str = ""
    availability_zone: str = ""
    state: str = ""


@dataclass(slots=True)
class NetworkStatus:
    vpc: VPCStatus | None = None
    subnets: list[SubnetStatus] = field(default_factory=list)


@dataclass(slots=True)
class LoadBalancerStatus:
    id: str = ""
    dns_name: str = ""
    state: str = ""


@dataclass(slots=True)
class FailureDomain:
    control_plane: bool = False
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class DataCrunchClusterStatus:
    ready: bool = False
    conditions: list[Condition] = field(default_factory=list)
    failure_domains: dict[str, FailureDomain] | None = None
    network: NetworkStatus | None = None
    load_balancer: LoadBalancerStatus | None = None


@dataclass(slots=True)
class DataCrunchCluster(Resource):
    KIND: ClassVar[str] = "DataCrunchCluster"

    spec: DataCrunchClusterSpec = field(default_factory=DataCrunchClusterSpec)
    status: DataCrunchClusterStatus = field(default_factory=DataCrunchClusterStatus)

    @property
    def conditions(self) -> list[Condition]:
        return self.status.conditions


# =============================================================================
# Parent cluster
# =============================================================================


@dataclass(slots=True)
class ClusterSpec:
    paused: bool = False
    infrastructure_ref: ObjectReference | None = None


@dataclass(slots=True)
class ClusterStatus:
    infrastructure_ready: bool = False


@dataclass(slots=True)
class Cluster(Resource):
    KIND: ClassVar[str] = "Cluster"

    spec: ClusterSpec = field(default_factory=ClusterSpec)
    status: ClusterStatus = field(default_factory=ClusterStatus)
