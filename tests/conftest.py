"""Shared fixtures: an in-memory collaborator server speaking the wire protocol."""

import asyncio
import json
import os
from urllib.parse import parse_qs, urlsplit

import pytest
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from oobpoll.config import Settings
from oobpoll.decryptor import seal, wrap_key
from oobpoll.errors import TransportError
from oobpoll.models import HTTPResponse


class FakeServer:
    """HTTPCapability that behaves like a collaborator server."""

    def __init__(self):
        self.requests = []
        self.sessions = {}
        self.pending = []
        self.extra = []
        self.register_status = 200
        self.deregister_status = 200
        self.poll_status = 200
        self.poll_delay = 0.0
        self.fail_polls = 0
        self.fail_scheme = None
        self.in_flight = 0
        self.max_in_flight = 0

    def paths(self, method=None):
        return [r["path"] for r in self.requests if method is None or r["method"] == method]

    def queue(self, *interactions):
        self.pending.extend((False, json.dumps(i)) for i in interactions)

    def queue_text(self, text):
        self.pending.append((False, text))

    def queue_raw(self, envelope):
        self.pending.append((True, envelope))

    async def post(self, url, body, headers=None):
        parts = urlsplit(url)
        self.requests.append({"method": "POST", "url": url, "path": parts.path, "body": body, "headers": dict(headers or {})})
        if self.fail_scheme and parts.scheme == self.fail_scheme:
            raise TransportError(f"POST {parts.hostname} failed: connection refused")
        if parts.path == "/register":
            if self.register_status == 200:
                self.sessions[body["correlation-id"]] = {
                    "secret": body["secret-key"],
                    "public_key": load_pem_public_key(body["public-key"].encode()),
                }
            return HTTPResponse(self.register_status, "{}")
        if parts.path == "/deregister":
            return HTTPResponse(self.deregister_status, "{}")
        return HTTPResponse(404, "")

    async def get(self, url, headers=None):
        parts = urlsplit(url)
        self.requests.append({"method": "GET", "url": url, "path": parts.path, "headers": dict(headers or {})})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.poll_delay:
                await asyncio.sleep(self.poll_delay)
            if self.fail_polls:
                self.fail_polls -= 1
                raise TransportError("GET timed out")
            if self.poll_status != 200:
                return HTTPResponse(self.poll_status, "")
            q = parse_qs(parts.query)
            session = self.sessions[q["id"][0]]
            assert q["secret"][0] == session["secret"]
            aes_key = os.urandom(32)
            data = [text if raw else seal(text, aes_key) for raw, text in self.pending]
            self.pending = []
            body = {"data": data, "aes_key": wrap_key(aes_key, session["public_key"]), "extra": self.extra}
            self.extra = []
            return HTTPResponse(200, json.dumps(body))
        finally:
            self.in_flight -= 1


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def settings():
    return Settings(SERVER_URL="https://x.test", POLL_INTERVAL_MS=100, TOKEN="tok-123")
