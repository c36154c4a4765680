"""Async HTTP client for the DataCrunch API.

Authenticates lazily with the OAuth2 client-credentials grant and decodes
every response into the typed schemas of ``crunchplane.cloud.types``.
All failures surface as ``CloudError`` tagged with the operation name and
an ``ErrorKind``.

Example:
    async with DataCrunchClient(Credentials("id", "secret")) as client:
        instance = await client.get_instance("0b5c...")
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any, Literal

from crunchplane.api.machine import InstanceState
from crunchplane.core.exceptions import CloudError, ErrorKind, kind_for_status
from crunchplane.infra.http import AuthError, HttpClient, HttpError, OAuth2Auth
from crunchplane.observability.logger import logger

from .config import DEFAULT_REQUEST_TIMEOUT, Credentials
from .types import (
    Image,
    Instance,
    InstanceSpec,
    LoadBalancer,
    LoadBalancerSpec,
    SchemaError,
    SSHKey,
    created_id,
    items,
)

TOKEN_PATH = "/oauth/token"


class DataCrunchClient:
    """DataCrunch REST client.

    One instance per reconcile: it owns an aiohttp session that is closed
    on ``__aexit__``. Each request is bounded by ``timeout`` seconds, and
    cancelling the awaiting task aborts the request in flight.
    """

    def __init__(
        self,
        credentials: Credentials,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        auth: OAuth2Auth | None = None,
    ) -> None:
        self._credentials = credentials
        self._auth = auth or OAuth2Auth(
            credentials.client_id,
            credentials.client_secret,
            credentials.api_url.rstrip("/") + TOKEN_PATH,
        )
        self._http = HttpClient(
            credentials.api_url,
            self._auth,
            timeout=timeout,
            default_headers={"Content-Type": "application/json"},
        )
        self._log = logger.bind(component="datacrunch")

    async def __aenter__(self) -> DataCrunchClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        format: Literal["json", "text"] = "json",
    ) -> Any:
        try:
            return await self._http.request(method, path, json=json, format=format)
        except AuthError as e:
            kind = kind_for_status(e.status)
            # a missing token endpoint says nothing about the resource asked for
            if kind is ErrorKind.NOT_FOUND:
                kind = ErrorKind.PERMANENT
            raise CloudError(
                operation,
                kind,
                status=e.status,
                detail=f"authentication failed: {e.body[:200]}",
            ) from e
        except HttpError as e:
            self._log.warning(
                "API error {method} {path}: {status}",
                method=method, path=path, status=e.status, operation=operation,
            )
            raise CloudError(operation, kind_for_status(e.status), status=e.status, detail=e.body[:500]) from e

    @staticmethod
    def _decode[T](operation: str, decoder: Callable[[Any], T], data: Any) -> T:
        try:
            return decoder(data)
        except SchemaError as e:
            raise CloudError(operation, ErrorKind.PERMANENT, detail=f"unexpected response: {e}") from e

    # =========================================================================
    # Instances
    # =========================================================================

    async def create_instance(self, spec: InstanceSpec) -> Instance:
        """Create an instance and return its details.

        The API answers with the new id only. If the follow-up read fails,
        a minimal pending ``Instance`` is returned so the caller can still
        record the id.
        """
        operation = "create_instance"
        text = await self._request(
            operation, "POST", "/instances", json=dict(spec.to_params()), format="text",
        )
        self._log.debug("create_instance response: {text}", text=text[:200])

        body: Any = text
        if text.lstrip().startswith(("{", "[")):
            try:
                body = json.loads(text)
            except ValueError as e:
                raise CloudError(operation, ErrorKind.PERMANENT, detail=f"invalid JSON: {e}") from e
        instance_id = self._decode(operation, created_id, body)

        try:
            return await self.get_instance(instance_id)
        except CloudError as e:
            self._log.warning(
                "Created instance {instance_id} but could not read it back: {error}",
                instance_id=instance_id, error=e,
            )
            return Instance(id=instance_id, name=spec.name, state=InstanceState.PENDING)

    async def get_instance(self, instance_id: str) -> Instance:
        """Fetch one instance. Raises CloudError(kind=NOT_FOUND) if it does not exist."""
        operation = "get_instance"
        try:
            data = await self._request(operation, "GET", f"/instances/{instance_id}")
        except CloudError as e:
            if e.not_found:
                raise CloudError(
                    operation, ErrorKind.NOT_FOUND, status=e.status,
                    detail=f"instance not found: {instance_id}",
                ) from e
            raise
        return self._decode(operation, Instance.from_response, data)

    async def list_instances(self) -> list[Instance]:
        operation = "list_instances"
        data = await self._request(operation, "GET", "/instances")
        raw = self._decode(operation, lambda d: items(d, "instances"), data)
        return [self._decode(operation, Instance.from_response, i) for i in raw]

    async def delete_instance(self, instance_id: str) -> None:
        await self._request("delete_instance", "DELETE", f"/instances/{instance_id}")

    async def start_instance(self, instance_id: str) -> None:
        await self._request("start_instance", "POST", f"/instances/{instance_id}/start")

    async def stop_instance(self, instance_id: str) -> None:
        await self._request("stop_instance", "POST", f"/instances/{instance_id}/stop")

    # =========================================================================
    # Images
    # =========================================================================

    async def list_images(self) -> list[Image]:
        operation = "list_images"
        data = await self._request(operation, "GET", "/images")
        raw = self._decode(operation, lambda d: items(d, "images"), data)
        return [self._decode(operation, Image.from_response, i) for i in raw]

    async def get_image(self, image_id: str) -> Image:
        operation = "get_image"
        try:
            data = await self._request(operation, "GET", f"/images/{image_id}")
        except CloudError as e:
            if e.not_found:
                raise CloudError(
                    operation, ErrorKind.NOT_FOUND, status=e.status,
                    detail=f"image not found: {image_id}",
                ) from e
            raise
        return self._decode(operation, Image.from_response, data)

    # =========================================================================
    # SSH Keys
    # =========================================================================

    async def list_ssh_keys(self) -> list[SSHKey]:
        operation = "list_ssh_keys"
        data = await self._request(operation, "GET", "/ssh-keys")
        raw = self._decode(operation, lambda d: items(d, "ssh_keys"), data)
        return [self._decode(operation, SSHKey.from_response, k) for k in raw]

    async def create_ssh_key(self, name: str, public_key: str) -> SSHKey:
        operation = "create_ssh_key"
        data = await self._request(
            operation, "POST", "/ssh-keys", json={"name": name, "public_key": public_key},
        )
        match data:
            case {**obj} if "name" in obj:
                return self._decode(operation, SSHKey.from_response, obj)
            case _:
                key_id = self._decode(operation, created_id, data)
                return SSHKey(id=key_id, name=name, public_key=public_key)

    async def delete_ssh_key(self, key_id: str) -> None:
        await self._request("delete_ssh_key", "DELETE", f"/ssh-keys/{key_id}")

    # =========================================================================
    # Load Balancers
    # =========================================================================
    # DataCrunch has no native load balancer API. These always fail with 501.

    @staticmethod
    def _unimplemented(operation: str, what: str) -> CloudError:
        return CloudError(
            operation, ErrorKind.PERMANENT, status=501,
            detail=f"load balancer {what} not yet implemented",
        )

    async def create_load_balancer(self, spec: LoadBalancerSpec) -> LoadBalancer:
        raise self._unimplemented("create_load_balancer", "creation")

    async def get_load_balancer(self, lb_id: str) -> LoadBalancer:
        raise self._unimplemented("get_load_balancer", "retrieval")

    async def delete_load_balancer(self, lb_id: str) -> None:
        raise self._unimplemented("delete_load_balancer", "deletion")

    async def update_load_balancer_targets(self, lb_id: str, targets: list[str]) -> None:
        raise self._unimplemented("update_load_balancer_targets", "target update")


__all__ = ["DataCrunchClient", "TOKEN_PATH"]
