"""Tests for the register/poll/deregister exchanges and the httpx transport."""

import asyncio
import json
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from oobpoll.config import Settings
from oobpoll.errors import DeregistrationFailed, RegistrationFailed, TransportError
from oobpoll.http_client import HttpxTransport
from oobpoll.keys import KeyExchangeManager
from oobpoll.models import HTTPResponse, PollResult
from oobpoll.registrar import SessionRegistrar


class Recorder:
    def __init__(self, status=200, body="{}"):
        self.status = status
        self.body = body
        self.calls = []

    async def get(self, url, headers=None):
        self.calls.append(("GET", url, None, dict(headers or {})))
        return HTTPResponse(self.status, self.body)

    async def post(self, url, body, headers=None):
        self.calls.append(("POST", url, body, dict(headers or {})))
        return HTTPResponse(self.status, self.body)


@pytest.fixture(scope="module")
def pem():
    m = KeyExchangeManager()
    m.generate()
    return m.encode_public_key()


@pytest.mark.asyncio
async def test_register_body_and_url(pem):
    http = Recorder()
    reg = SessionRegistrar(http, "https://x.test/", token="tok")
    await reg.register(pem, "secret", "cid")
    method, url, body, headers = http.calls[0]
    assert method == "POST"
    assert url == "https://x.test/register"
    assert body == {"public-key": pem, "secret-key": "secret", "correlation-id": "cid"}
    assert "\n" in body["public-key"]
    assert headers["Authorization"] == "tok"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [201, 400, 409, 500])
async def test_register_non_200(pem, status):
    reg = SessionRegistrar(Recorder(status=status), "https://x.test")
    with pytest.raises(RegistrationFailed) as exc:
        await reg.register(pem, "secret", "cid")
    assert exc.value.status == status


@pytest.mark.asyncio
async def test_register_transport_error_propagates(pem):
    class Broken(Recorder):
        async def post(self, url, body, headers=None):
            raise TransportError("boom")

    with pytest.raises(TransportError):
        await SessionRegistrar(Broken(), "https://x.test").register(pem, "s", "c")


@pytest.mark.asyncio
async def test_poll_query_and_parse():
    http = Recorder(body=json.dumps({"data": ["a", "b"], "aes_key": "k", "extra": None}))
    reg = SessionRegistrar(http, "https://x.test", token="tok")
    res = await reg.poll("cid", "sec")
    method, url, _, headers = http.calls[0]
    parts = urlsplit(url)
    assert method == "GET" and parts.path == "/poll"
    assert parse_qs(parts.query) == {"id": ["cid"], "secret": ["sec"]}
    assert headers == {"Authorization": "tok"}
    assert res == PollResult(data=["a", "b"], aes_key="k")


@pytest.mark.asyncio
async def test_poll_without_token_sends_no_authorization():
    http = Recorder(body=json.dumps({"aes_key": "k"}))
    res = await SessionRegistrar(http, "https://x.test").poll("cid", "sec")
    assert "Authorization" not in http.calls[0][3]
    assert res.data == []


@pytest.mark.asyncio
async def test_poll_errors():
    with pytest.raises(TransportError) as exc:
        await SessionRegistrar(Recorder(status=401), "https://x.test").poll("c", "s")
    assert exc.value.status == 401
    with pytest.raises(TransportError):
        await SessionRegistrar(Recorder(body="not json"), "https://x.test").poll("c", "s")
    with pytest.raises(TransportError):
        await SessionRegistrar(Recorder(body='{"data": 5}'), "https://x.test").poll("c", "s")


@pytest.mark.asyncio
async def test_deregister():
    http = Recorder()
    await SessionRegistrar(http, "https://x.test").deregister("cid", "sec")
    method, url, body, _ = http.calls[0]
    assert (method, url) == ("POST", "https://x.test/deregister")
    assert body == {"correlationID": "cid", "secretKey": "sec"}
    with pytest.raises(DeregistrationFailed) as exc:
        await SessionRegistrar(Recorder(status=404), "https://x.test").deregister("cid", "sec")
    assert isinstance(exc.value, TransportError)


class TestHttpxTransport:
    @pytest.mark.asyncio
    async def test_post_sends_json(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["body"] = json.loads(request.content)
            seen["headers"] = request.headers
            return httpx.Response(200, json={"ok": True})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with HttpxTransport(client) as t:
            r = await t.post("https://x.test/register", {"public-key": "a\nb"}, {"Authorization": "tok"})
        assert r.status == 200 and r.json() == {"ok": True}
        assert seen["body"] == {"public-key": "a\nb"}
        assert seen["headers"]["content-type"] == "application/json"
        assert seen["headers"]["authorization"] == "tok"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_timeout_is_transport_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        t = HttpxTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(TransportError, match="timed out"):
            await t.get("https://x.test/poll")

    @pytest.mark.asyncio
    async def test_connect_error_is_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        t = HttpxTransport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(TransportError):
            await t.get("https://x.test/poll")

    @pytest.mark.asyncio
    async def test_non_200_is_returned_not_raised(self):
        t = HttpxTransport(httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))))
        r = await t.get("https://x.test/poll")
        assert r.status == 503

    def test_from_settings_uses_timeout(self):
        t = HttpxTransport.from_settings(Settings(TIMEOUT_S=3))
        assert t.client.timeout.read == 3


@pytest.mark.asyncio
async def test_hanging_transport_is_bounded(pem):
    class Hanging(Recorder):
        async def get(self, url, headers=None):
            await asyncio.sleep(3600)

        async def post(self, url, body, headers=None):
            await asyncio.sleep(3600)

    reg = SessionRegistrar(Hanging(), "https://x.test", timeout_s=0.05)
    with pytest.raises(TransportError, match="poll timed out"):
        await reg.poll("cid", "sec")
    with pytest.raises(TransportError, match="register timed out"):
        await reg.register(pem, "sec", "cid")
    with pytest.raises(TransportError, match="deregister timed out"):
        await reg.deregister("cid", "sec")
