"""The reconcilers' view of a cloud backend.

Any object satisfying ``CloudClient`` can stand in for ``DataCrunchClient``;
tests use in-memory stubs. Failures are reported as
``crunchplane.core.exceptions.CloudError``.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .config import Credentials
    from .types import Image, Instance, InstanceSpec, LoadBalancer, LoadBalancerSpec, SSHKey


@runtime_checkable
class CloudClient(Protocol):
    async def __aenter__(self) -> CloudClient: ...
    async def __aexit__(self, *_: Any) -> None: ...

    # Instances
    async def create_instance(self, spec: InstanceSpec) -> Instance: ...
    async def get_instance(self, instance_id: str) -> Instance: ...
    async def delete_instance(self, instance_id: str) -> None: ...
    async def start_instance(self, instance_id: str) -> None: ...
    async def stop_instance(self, instance_id: str) -> None: ...

    # Images
    async def list_images(self) -> list[Image]: ...
    async def get_image(self, image_id: str) -> Image: ...

    # SSH keys
    async def list_ssh_keys(self) -> list[SSHKey]: ...
    async def create_ssh_key(self, name: str, public_key: str) -> SSHKey: ...
    async def delete_ssh_key(self, key_id: str) -> None: ...

    # Load balancers
    async def create_load_balancer(self, spec: LoadBalancerSpec) -> LoadBalancer: ...
    async def get_load_balancer(self, lb_id: str) -> LoadBalancer: ...
    async def delete_load_balancer(self, lb_id: str) -> None: ...
    async def update_load_balancer_targets(self, lb_id: str, targets: list[str]) -> None: ...


type ClientFactory = Callable[[Credentials], CloudClient]

__all__ = ["ClientFactory", "CloudClient"]
