from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError
from yarl import URL

from .config import Settings
from .decryptor import MessageDecryptor
from .errors import (
    DecryptionFailed,
    InvalidState,
    KeyGenerationFailed,
    NotRegistered,
    OOBPollError,
    RegistrationFailed,
    TransportError,
)
from .http_client import HTTPCapability, HttpxTransport
from .identity import CorrelationIdentity
from .keys import KeyExchangeManager
from .models import Interaction, SessionInfo, SessionState
from .registrar import SessionRegistrar

logger = logging.getLogger(__name__)

Callback = Callable[[Interaction], Union[None, Awaitable[None]]]
Transform = Callable[[Interaction], Any]
ErrorHook = Callable[[Exception], None]
StateHook = Callable[[SessionState, SessionState], None]


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class PollingEngine:
    """Lifecycle of one collaborator session: register, poll, deliver, tear down.

    States move forward only: IDLE -> POLLING -> IDLE ... -> CLOSED. Polling
    is driven by a ticker task that starts at most one poll cycle per tick;
    a tick that lands while a cycle is still running is skipped.

    ``callback`` receives every decoded Interaction, after ``transform`` (if
    any) has been applied. A transform returning None drops the record. Both
    may be plain functions or coroutines.
    """

    def __init__(
        self,
        callback: Callback,
        *,
        settings: Settings | None = None,
        http: HTTPCapability | None = None,
        transform: Transform | None = None,
        on_error: ErrorHook | None = None,
        on_state_change: StateHook | None = None,
    ):
        self.settings = settings or Settings()
        self.callback = callback
        self.transform = transform
        self.on_error = on_error
        self.on_state_change = on_state_change
        self._http = http
        self._owns_http = http is None
        self.state = SessionState.IDLE
        self.keys = KeyExchangeManager(self.settings.KEY_SIZE)
        self.decryptor = MessageDecryptor(self.keys)
        self.identity: CorrelationIdentity | None = None
        self.registrar: SessionRegistrar | None = None
        self.registered = False
        self._ticker: Optional[asyncio.Task] = None
        self._cycle: Optional[asyncio.Task] = None
        self.cycles = 0
        self.skipped_ticks = 0

    # -- lifecycle -----------------------------------------------------------

    async def start(self, session_info: SessionInfo | None = None) -> None:
        """Register (or re-attach to) the session and begin polling."""
        if self.state is not SessionState.IDLE:
            raise InvalidState(self.state, "start")
        if self._http is None:
            self._http = HttpxTransport.from_settings(self.settings)
        if session_info is not None:
            self._attach(session_info)
        elif not self.registered:
            await self._register()
        self._set_state(SessionState.POLLING)
        self._ticker = asyncio.create_task(self._tick_loop())

    async def poll_once(self) -> int:
        """Run one poll cycle now; returns the number of interactions delivered.

        Returns 0 without polling when another cycle is already in flight.
        """
        if self.state is not SessionState.POLLING:
            raise InvalidState(self.state, "poll")
        if self._cycle_running():
            return 0
        self._cycle = asyncio.create_task(self._run_cycle())
        return await self._cycle

    async def stop(self) -> None:
        if self.state is not SessionState.POLLING:
            return
        ticker, self._ticker = self._ticker, None
        self._set_state(SessionState.IDLE)
        if ticker is None:
            return
        ticker.cancel()
        if ticker is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await ticker

    async def close(self, deregister: bool = True) -> None:
        """Release the server-side registration and enter CLOSED.

        ``deregister=False`` leaves the registration in place so the session
        can later be re-attached from its SessionInfo.
        """
        if self.state is SessionState.CLOSED:
            return
        if self.state is SessionState.POLLING:
            raise InvalidState(self.state, "close")
        cycle = self._cycle
        if cycle is not None and not cycle.done() and cycle is not asyncio.current_task():
            await asyncio.wait({cycle})
        if deregister and self.registered and self.registrar and self.identity:
            try:
                await self.registrar.deregister(self.identity.correlation_id, self.identity.secret_key)
            except TransportError as e:
                self._report(e, "deregister failed")
        if self._owns_http and isinstance(self._http, HttpxTransport):
            await self._http.aclose()
        self._set_state(SessionState.CLOSED)

    async def __aenter__(self) -> "PollingEngine":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()
        await self.close()

    # -- session ----------------------------------------------------------------

    def session_info(self, include_private_key: bool = False) -> SessionInfo:
        if not self.registered or self.identity is None or self.registrar is None:
            raise NotRegistered("session is not registered")
        kp = self.keys.key_pair
        return SessionInfo(
            server_url=self.registrar.base,
            token=self.registrar.token or "",
            correlation_id=self.identity.correlation_id,
            secret_key=self.identity.secret_key,
            public_key_pem=self.keys.encode_public_key(kp),
            private_key_pem=self.keys.export_private_key(kp) if include_private_key else None,
        )

    def derive_url(self, nonce_length: int | None = None) -> str:
        if self.identity is None:
            raise NotRegistered("no correlation id yet")
        return self.identity.derive_url(nonce_length)

    def probe_url(self, nonce_length: int | None = None, scheme: str = "http") -> str:
        if self.identity is None:
            raise NotRegistered("no correlation id yet")
        return self.identity.probe_url(nonce_length, scheme)

    async def _register(self) -> None:
        s = self.settings
        kp = self.keys.ensure()
        if self.identity is None:
            self.identity = CorrelationIdentity(s.SERVER_URL, s.NONCE_LENGTH)
            self.identity.generate(s.CORRELATION_ID_LENGTH, s.SECRET_KEY_LENGTH)
        if self.registrar is None:
            self.registrar = SessionRegistrar(self._http, s.SERVER_URL, s.TOKEN or str(uuid.uuid4()), s.TIMEOUT_S)
        pem = self.keys.encode_public_key(kp)
        cid, secret = self.identity.correlation_id, self.identity.secret_key
        try:
            await self.registrar.register(pem, secret, cid)
        except TransportError as e:
            base = URL(self.registrar.base)
            if s.DISABLE_HTTP_FALLBACK or base.scheme != "https":
                raise RegistrationFailed(e.status, f"registration failed: {e}") from e
            logger.warning("https registration failed (%s), retrying over http", e)
            self.registrar.base = str(base.with_scheme("http"))
            try:
                await self.registrar.register(pem, secret, cid)
            except RegistrationFailed:
                self.registrar.base = str(base)
                raise
            except TransportError as e2:
                self.registrar.base = str(base)
                raise RegistrationFailed(e2.status, f"registration failed: {e2}") from e2
            self.identity.server_url = self.registrar.base
        self.registered = True

    def _attach(self, info: SessionInfo) -> None:
        if info.private_key_pem:
            if self.keys.key_pair is None:
                self.keys.load_private_key(info.private_key_pem)
        elif self.keys.key_pair is None:
            raise KeyGenerationFailed("re-attaching requires the session private key")
        if self.keys.encode_public_key() != info.public_key_pem:
            raise KeyGenerationFailed("session info public key does not match the private key")
        self.identity = CorrelationIdentity(info.server_url, self.settings.NONCE_LENGTH)
        self.identity.adopt(info.correlation_id, info.secret_key)
        self.registrar = SessionRegistrar(self._http, info.server_url, info.token or None, self.settings.TIMEOUT_S)
        self.registered = True
        logger.info("re-attached to session %s", info.correlation_id)

    # -- polling ----------------------------------------------------------------

    def _cycle_running(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    async def _tick_loop(self) -> None:
        interval = self.settings.POLL_INTERVAL_MS / 1000
        while True:
            await asyncio.sleep(interval)
            if self._cycle_running():
                self.skipped_ticks += 1
                logger.debug("poll cycle still running, skipping tick")
                continue
            self._cycle = asyncio.create_task(self._run_cycle())
            self._cycle.add_done_callback(self._cycle_done)

    def _cycle_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            logger.error("poll cycle failed", exc_info=err)
            self._notify_error(err)

    async def _run_cycle(self) -> int:
        # a cycle scheduled before stop() must not poll
        if self.state is not SessionState.POLLING:
            return 0
        self.cycles += 1
        kp = self.keys.key_pair
        try:
            result = await self.registrar.poll(self.identity.correlation_id, self.identity.secret_key)
        except TransportError as e:
            self._report(e, "poll failed")
            return 0
        delivered = 0
        for item in self.decryptor.decrypt_batch(result, kp):
            if isinstance(item, DecryptionFailed):
                self._report(item, "dropping interaction")
                continue
            delivered += await self._deliver(item)
        for text in result.extra:
            delivered += await self._deliver(text)
        if delivered:
            logger.info("delivered %d interaction(s) for %s", delivered, self.identity.correlation_id)
        return delivered

    async def _deliver(self, text: str) -> int:
        try:
            interaction = Interaction.from_text(text)
        except (json.JSONDecodeError, ValidationError) as e:
            err = DecryptionFailed(f"payload is not a JSON object: {e}")
            err.__cause__ = e
            self._report(err, "dropping interaction")
            return 0
        try:
            if self.transform is not None:
                interaction = await _maybe_await(self.transform(interaction))
                if interaction is None:
                    return 0
            await _maybe_await(self.callback(interaction))
        except Exception as e:
            logger.exception("interaction handler raised")
            self._notify_error(e)
            return 0
        return 1

    # -- hooks ------------------------------------------------------------------

    def _set_state(self, new: SessionState) -> None:
        old, self.state = self.state, new
        logger.debug("state %s -> %s", old.name, new.name)
        if self.on_state_change is not None and old is not new:
            try:
                self.on_state_change(old, new)
            except Exception:
                logger.exception("state change hook raised")

    def _report(self, err: OOBPollError, msg: str) -> None:
        logger.warning("%s: %s", msg, err)
        self._notify_error(err)

    def _notify_error(self, err: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(err)
        except Exception:
            logger.exception("error hook raised")
