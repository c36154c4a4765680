"""Status conditions.

A condition is a typed, timestamped boolean-with-reason record. Each
object keeps at most one condition per type, in insertion order;
``last_transition_time`` only moves when the status flips.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Protocol


class ConditionStatus(StrEnum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Severity(StrEnum):
    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"
    NONE = ""


# Condition types for DataCrunchCluster
NETWORK_INFRASTRUCTURE_READY = "NetworkInfrastructureReady"
LOAD_BALANCER_READY = "LoadBalancerReady"

# Condition types for DataCrunchMachine
INSTANCE_READY = "InstanceReady"

# Reasons for DataCrunchCluster
DATACRUNCH_CLIENT_FAILED = "DataCrunchClientFailed"
NETWORK_RECONCILIATION_FAILED = "NetworkReconciliationFailed"
LOAD_BALANCER_RECONCILIATION_FAILED = "LoadBalancerReconciliationFailed"

# Reasons for DataCrunchMachine
WAITING_FOR_CLUSTER_INFRASTRUCTURE = "WaitingForClusterInfrastructure"
WAITING_FOR_BOOTSTRAP_DATA = "WaitingForBootstrapData"
INSTANCE_CREATION_FAILED = "InstanceCreationFailed"
INSTANCE_NOT_READY = "InstanceNotReady"
INSTANCE_TERMINATED = "InstanceTerminated"


@dataclass(frozen=True, slots=True)
class Condition:
    type: str
    status: ConditionStatus
    severity: Severity = Severity.NONE
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = None


class HasConditions(Protocol):
    @property
    def conditions(self) -> list[Condition]: ...


type Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def get_condition(obj: HasConditions, type: str) -> Condition | None:
    for condition in obj.conditions:
        if condition.type == type:
            return condition
    return None


def is_true(obj: HasConditions, type: str) -> bool:
    condition = get_condition(obj, type)
    return condition is not None and condition.status is ConditionStatus.TRUE


def set_condition(obj: HasConditions, condition: Condition, *, now: Clock = utcnow) -> None:
    """Insert or replace the condition of the same type, keeping its position."""
    conditions = obj.conditions
    for i, existing in enumerate(conditions):
        if existing.type != condition.type:
            continue
        if existing.status == condition.status and existing.last_transition_time is not None:
            condition = replace(condition, last_transition_time=existing.last_transition_time)
        elif condition.last_transition_time is None:
            condition = replace(condition, last_transition_time=now())
        conditions[i] = condition
        return
    if condition.last_transition_time is None:
        condition = replace(condition, last_transition_time=now())
    conditions.append(condition)


def mark_true(obj: HasConditions, type: str, *, now: Clock = utcnow) -> None:
    set_condition(obj, Condition(type=type, status=ConditionStatus.TRUE), now=now)


def mark_false(
    obj: HasConditions,
    type: str,
    reason: str,
    severity: Severity,
    message: str = "",
    *,
    now: Clock = utcnow,
) -> None:
    set_condition(
        obj,
        Condition(
            type=type,
            status=ConditionStatus.FALSE,
            severity=severity,
            reason=reason,
            message=message,
        ),
        now=now,
    )
