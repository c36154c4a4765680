"""DataCrunch cloud access: the client protocol, its REST implementation and wire types."""

from .config import DATACRUNCH_API_BASE, Credentials
from .datacrunch import DataCrunchClient
from .interfaces import ClientFactory, CloudClient
from .types import Image, Instance, InstanceSpec, LoadBalancer, LoadBalancerSpec, SchemaError, SSHKey

__all__ = [
    "DATACRUNCH_API_BASE",
    "ClientFactory",
    "CloudClient",
    "Credentials",
    "DataCrunchClient",
    "Image",
    "Instance",
    "InstanceSpec",
    "LoadBalancer",
    "LoadBalancerSpec",
    "SSHKey",
    "SchemaError",
]
