from __future__ import annotations
import json
from typing import Any, Mapping, Protocol

import httpx
from yarl import URL

from .errors import TransportError
from .models import HTTPResponse

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
    "User-Agent": "oobpoll/0.1",
}


class HTTPCapability(Protocol):
    """What the session layer needs from an HTTP client."""

    async def get(self, url: str, headers: Mapping[str, str] | None = None) -> HTTPResponse: ...

    async def post(self, url: str, body: Any, headers: Mapping[str, str] | None = None) -> HTTPResponse: ...


class HttpxTransport:
    """HTTPCapability backed by ``httpx.AsyncClient``.

    A transport may be shared by any number of sessions; it holds no session
    state. Every httpx failure, timeouts included, surfaces as TransportError.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, *, timeout_s: float = 10.0):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), follow_redirects=False)

    @classmethod
    def from_settings(cls, settings) -> "HttpxTransport":
        return cls(timeout_s=settings.TIMEOUT_S)

    async def get(self, url: str, headers: Mapping[str, str] | None = None) -> HTTPResponse:
        return await self._send("GET", url, headers=headers)

    async def post(self, url: str, body: Any, headers: Mapping[str, str] | None = None) -> HTTPResponse:
        content = body if isinstance(body, (str, bytes)) else json.dumps(body)
        return await self._send("POST", url, headers=headers, content=content)

    async def _send(self, method: str, url: str, headers: Mapping[str, str] | None = None, **kwargs) -> HTTPResponse:
        merged = {**DEFAULT_HEADERS, **(headers or {})}
        host = URL(url).host or url
        try:
            r = await self.client.request(method, url, headers=merged, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {host} timed out") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {host} failed: {e}") from e
        return HTTPResponse(status=r.status_code, body=r.text)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
