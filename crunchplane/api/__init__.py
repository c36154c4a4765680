"""Declarative resources reconciled (or read) by crunchplane."""

from .cluster import (
    CLUSTER_FINALIZER,
    APIEndpoint,
    Cluster,
    ClusterSpec,
    ClusterStatus,
    DataCrunchCluster,
    DataCrunchClusterSpec,
    DataCrunchClusterStatus,
    FailureDomain,
    LoadBalancerSpec,
    LoadBalancerStatus,
    NetworkSpec,
    NetworkStatus,
    SubnetSpec,
    SubnetStatus,
    VPCSpec,
    VPCStatus,
)
from .conditions import Condition, ConditionStatus, Severity
from .machine import (
    MACHINE_FINALIZER,
    PROVIDER_ID_SCHEME,
    AddressType,
    Bootstrap,
    DataCrunchMachine,
    DataCrunchMachineSpec,
    DataCrunchMachineStatus,
    InstanceState,
    Machine,
    MachineAddress,
    MachineSpec,
    NetworkInterface,
    SpotOptions,
    Volume,
)
from .meta import (
    CLUSTER_NAME_LABEL,
    MACHINE_NAME_LABEL,
    PAUSED_ANNOTATION,
    WATCH_LABEL,
    ObjectKey,
    ObjectMeta,
    ObjectReference,
    OwnerReference,
    Resource,
)
from .secret import Secret

__all__ = [
    "APIEndpoint",
    "AddressType",
    "Bootstrap",
    "CLUSTER_FINALIZER",
    "CLUSTER_NAME_LABEL",
    "Cluster",
    "ClusterSpec",
    "ClusterStatus",
    "Condition",
    "ConditionStatus",
    "DataCrunchCluster",
    "DataCrunchClusterSpec",
    "DataCrunchClusterStatus",
    "DataCrunchMachine",
    "DataCrunchMachineSpec",
    "DataCrunchMachineStatus",
    "FailureDomain",
    "InstanceState",
    "LoadBalancerSpec",
    "LoadBalancerStatus",
    "MACHINE_FINALIZER",
    "MACHINE_NAME_LABEL",
    "Machine",
    "MachineAddress",
    "MachineSpec",
    "NetworkInterface",
    "NetworkSpec",
    "NetworkStatus",
    "ObjectKey",
    "ObjectMeta",
    "ObjectReference",
    "OwnerReference",
    "PAUSED_ANNOTATION",
    "PROVIDER_ID_SCHEME",
    "Resource",
    "Secret",
    "Severity",
    "SpotOptions",
    "SubnetSpec",
    "SubnetStatus",
    "VPCSpec",
    "VPCStatus",
    "Volume",
    "WATCH_LABEL",
]
