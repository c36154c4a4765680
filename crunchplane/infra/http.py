from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol, overload, runtime_checkable

import aiohttp

from crunchplane.observability.logger import logger

# ─── Errors ──────────────────────────────────────────────────────────


@dataclass(slots=True, eq=False)
class HttpError(Exception):
    status: int
    body: str

    def __str__(self) -> str:
        if self.status == 0:
            return f"request failed: {self.body}"
        return f"HTTP {self.status}: {self.body}"


@dataclass(slots=True, eq=False)
class AuthError(HttpError):
    """Token endpoint rejected the credentials or returned garbage."""

    def __str__(self) -> str:
        return f"authentication failed: {HttpError.__str__(self)}"


# ─── Auth ────────────────────────────────────────────────────────────


@runtime_checkable
class Auth(Protocol):
    async def headers(self, session: aiohttp.ClientSession) -> dict[str, str]: ...
    async def on_401(self) -> None: ...


class OAuth2Auth:
    """Client-credentials grant with a lazily refreshed bearer token.

    The token is fetched on first use and again only once it is past the
    expiry recorded from ``expires_in``. There is no background refresh.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()
        self._log = logger.bind(component="http")

    @property
    def token_valid(self) -> bool:
        return bool(self._token) and self._clock() < self._expires_at

    async def _fetch_token(self, session: aiohttp.ClientSession) -> tuple[str, float]:
        self._log.debug("Fetching OAuth2 token")
        payload = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        try:
            async with session.post(self._token_url, json=payload) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    self._log.error(
                        "OAuth2 token fetch failed: status={status} body={body}",
                        status=resp.status, body=body[:200],
                    )
                    raise AuthError(status=resp.status, body=body)
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as e:
            raise AuthError(status=0, body=str(e) or type(e).__name__) from e
        except ValueError as e:
            raise AuthError(status=200, body=f"invalid token response: {e}") from e

        match data:
            case {"access_token": str(token), **rest} if token:
                expires_in = rest.get("expires_in", 0)
                if not isinstance(expires_in, int | float):
                    raise AuthError(status=200, body=f"invalid expires_in: {expires_in!r}")
                return token, float(expires_in)
            case _:
                raise AuthError(status=200, body="token response is missing access_token")

    async def headers(self, session: aiohttp.ClientSession) -> dict[str, str]:
        async with self._lock:
            if not self.token_valid:
                token, expires_in = await self._fetch_token(session)
                self._token = token
                self._expires_at = self._clock() + expires_in
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }

    async def on_401(self) -> None:
        async with self._lock:
            self._token = None
            self._expires_at = 0.0


# ─── Client ──────────────────────────────────────────────────────────


class HttpClient:
    def __init__(
        self,
        base_url: str,
        auth: Auth | None = None,
        *,
        timeout: float = 30,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._default_headers = default_headers or {}
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    @property
    def base_url(self) -> str:
        return self._base_url

    def url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _build_headers(self, session: aiohttp.ClientSession) -> dict[str, str]:
        headers = dict(self._default_headers)
        if self._auth:
            headers.update(await self._auth.headers(session))
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["json", "text"] = "json",
    ) -> tuple[int, Any]:
        session = await self._ensure_session()
        headers = await self._build_headers(session)
        self._log.debug("{method} {path}", method=method, path=path)

        try:
            async with session.request(
                method, self.url(path), headers=headers, json=json, params=params
            ) as resp:
                if resp.status == 401 and self._auth:
                    self._log.debug("401 received, refreshing auth and retrying")
                    await self._auth.on_401()
                    retry_headers = await self._build_headers(session)
                    async with session.request(
                        method,
                        self.url(path),
                        headers=retry_headers,
                        json=json,
                        params=params,
                    ) as retry_resp:
                        return await self._parse(retry_resp, format)

                return await self._parse(resp, format)
        except aiohttp.ClientResponseError as e:
            raise HttpError(status=e.status, body=e.message) from e
        except (aiohttp.ClientError, TimeoutError) as e:
            raise HttpError(status=0, body=str(e) or type(e).__name__) from e

    async def _parse(
        self, resp: aiohttp.ClientResponse, format: Literal["json", "text"]
    ) -> tuple[int, Any]:
        if resp.status >= 400:
            body = await resp.text()
            self._log.warning(
                "HTTP {status} from {url}: {body}",
                status=resp.status, url=str(resp.url), body=body[:500],
            )
            raise HttpError(status=resp.status, body=body)
        match format:
            case "json":
                body = await resp.read()
                if not body:
                    return resp.status, None
                try:
                    return resp.status, await resp.json(content_type=None)
                except ValueError as e:
                    raise HttpError(status=resp.status, body=f"invalid JSON: {e}") from e
            case "text":
                return resp.status, await resp.text()

    @overload
    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["json"] = "json",
    ) -> Any: ...

    @overload
    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["text"],
    ) -> str: ...

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["json", "text"] = "json",
    ) -> Any:
        _, data = await self._send(method, path, json=json, params=params, format=format)
        return data

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def close(self) -> None:
        if self._session and not self._session.closed:
            self._log.debug("Closing HTTP session")
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> HttpClient:
        await self._ensure_session()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
