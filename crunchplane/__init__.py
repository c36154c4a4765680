"""crunchplane - reconcile DataCrunch GPU instances from declarative objects.

Example:

    from crunchplane import InMemoryStore, Manager, ManagerConfig

    store = InMemoryStore()
    async with Manager(store, ManagerConfig(machine_concurrency=4)):
        await store.create(cluster)
        await store.create(machine)
"""

from crunchplane.config import ManagerConfig, resolve_config
from crunchplane.controllers import (
    ClientProvider,
    DataCrunchClusterReconciler,
    DataCrunchMachineReconciler,
    EventRecorder,
    Result,
)
from crunchplane.core.exceptions import (
    CloudError,
    ConfigurationError,
    ConflictError,
    CredentialsError,
    CrunchplaneError,
    ErrorKind,
    ReconcileError,
)
from crunchplane.manager import Manager
from crunchplane.store import InMemoryStore, ObjectStore

__version__ = "0.1.0"

__all__ = [
    "ClientProvider",
    "CloudError",
    "ConfigurationError",
    "ConflictError",
    "CredentialsError",
    "CrunchplaneError",
    "DataCrunchClusterReconciler",
    "DataCrunchMachineReconciler",
    "ErrorKind",
    "EventRecorder",
    "InMemoryStore",
    "Manager",
    "ManagerConfig",
    "ObjectStore",
    "ReconcileError",
    "Result",
    "__version__",
    "resolve_config",
]
