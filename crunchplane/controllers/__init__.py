"""Reconcilers for DataCrunchCluster and DataCrunchMachine."""

from .base import REQUEUE_DELAY, ClientProvider, Reconciler, Result, default_client_factory
from .cluster import DataCrunchClusterReconciler
from .credentials import resolve_credentials
from .events import Event, EventRecorder, EventType
from .machine import DataCrunchMachineReconciler

__all__ = [
    "REQUEUE_DELAY",
    "ClientProvider",
    "DataCrunchClusterReconciler",
    "DataCrunchMachineReconciler",
    "Event",
    "EventRecorder",
    "EventType",
    "Reconciler",
    "Result",
    "default_client_factory",
    "resolve_credentials",
]
