from __future__ import annotations
import asyncio
import json
import logging
from dataclasses import dataclass
from pydantic import ValidationError
from yarl import URL
from .errors import DeregistrationFailed, RegistrationFailed, TransportError
from .http_client import HTTPCapability
from .models import PollResult

logger = logging.getLogger(__name__)

@dataclass
class SessionRegistrar:
    """HTTP exchanges with the collaborator server for one session."""
    http: HTTPCapability
    base: str
    token: str | None = None
    timeout_s: float | None = 10.0

    def _url(self, path: str) -> str:
        return f"{self.base.rstrip('/')}/{path}"

    async def _bounded(self, call, what: str):
        try:
            return await asyncio.wait_for(call, self.timeout_s)
        except asyncio.TimeoutError as e:
            raise TransportError(f"{what} timed out after {self.timeout_s}s") from e

    def _headers(self) -> dict[str, str]:
        return {"Authorization": self.token} if self.token else {}

    async def register(self, public_key_pem: str, secret_key: str, correlation_id: str) -> None:
        # PEM goes out with its newlines; the server parses it structurally
        body = {"public-key": public_key_pem, "secret-key": secret_key, "correlation-id": correlation_id}
        r = await self._bounded(self.http.post(self._url("register"), body, self._headers()), "register")
        if r.status != 200:
            logger.warning("register %s rejected with status %s", correlation_id, r.status)
            raise RegistrationFailed(r.status)
        logger.info("registered %s at %s", correlation_id, URL(self.base).host)

    async def poll(self, correlation_id: str, secret_key: str) -> PollResult:
        url = URL(self._url("poll")).with_query({"id": correlation_id, "secret": secret_key})
        r = await self._bounded(self.http.get(str(url), self._headers()), "poll")
        if r.status != 200:
            raise TransportError(f"poll returned status {r.status}", status=r.status)
        try:
            data = r.json()
            return PollResult.model_validate(data if isinstance(data, dict) else {})
        except (json.JSONDecodeError, ValidationError) as e:
            raise TransportError(f"malformed poll response: {e}", status=r.status) from e

    async def deregister(self, correlation_id: str, secret_key: str) -> None:
        body = {"correlationID": correlation_id, "secretKey": secret_key}
        r = await self._bounded(self.http.post(self._url("deregister"), body, self._headers()), "deregister")
        if r.status != 200:
            raise DeregistrationFailed(f"deregister returned status {r.status}", status=r.status)
        logger.info("deregistered %s", correlation_id)
