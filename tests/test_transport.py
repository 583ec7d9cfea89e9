from __future__ import annotations

import asyncio
import json
import ssl

import httpx
import pytest
import trustme

from chatstream.config import ChatSettings
from chatstream.errors import InvalidResponseError
from chatstream.pinning import TrustValidator
from chatstream.session import ChatSession
from chatstream.tokenizer import APPROXIMATE_COUNTER
from chatstream.transport import (
    TLS_COMPLETE_EVENT,
    HttpxTransport,
    presented_chain,
    tls_trust_trace,
)

URL = "https://chat.example.test/"
PIN = b"\x30\x82pinned"
OTHER = b"\x30\x82other"
ROOT = b"\x30\x82root"


class FakeSSLObject:
    def __init__(self, chain: list[bytes]) -> None:
        self._chain = chain

    def get_unverified_chain(self) -> list[bytes]:
        return list(self._chain)


class VerifyingSSLObject(FakeSSLObject):
    def __init__(self, chain: list[bytes], verified: list[bytes]) -> None:
        super().__init__(chain)
        self._verified = verified

    def get_verified_chain(self) -> list[bytes]:
        return list(self._verified)


class WrappedSSLObject:
    """Public wrapper whose chain accessors live on ``_sslobj`` only."""

    def __init__(self, inner) -> None:
        self._sslobj = inner


class LegacySSLObject:
    """SSL object from an interpreter without get_unverified_chain."""

    def __init__(self, leaf: bytes | None) -> None:
        self._leaf = leaf

    def getpeercert(self, binary_form: bool = False):
        return self._leaf


class FakeNetworkStream:
    def __init__(self, ssl_object) -> None:
        self._ssl_object = ssl_object
        self.closed = False

    def get_extra_info(self, info: str):
        if info == "ssl_object":
            return self._ssl_object
        return None

    async def aclose(self) -> None:
        self.closed = True


def _transport(handler) -> HttpxTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpxTransport(client=client)


class TestPresentedChain:
    def test_full_chain(self):
        assert presented_chain(FakeSSLObject([OTHER, PIN])) == [OTHER, PIN]

    def test_verified_chain_adds_root(self):
        ssl_object = VerifyingSSLObject([OTHER, PIN], [OTHER, PIN, ROOT])
        assert presented_chain(ssl_object) == [OTHER, PIN, ROOT]

    def test_private_chain_accessors(self):
        ssl_object = WrappedSSLObject(VerifyingSSLObject([OTHER], [OTHER, ROOT]))
        assert presented_chain(ssl_object) == [OTHER, ROOT]

    def test_leaf_fallback(self):
        assert presented_chain(LegacySSLObject(OTHER)) == [OTHER]

    def test_leaf_fallback_without_certificate(self):
        assert presented_chain(LegacySSLObject(None)) == []


class TestTrustTrace:
    @pytest.mark.asyncio
    async def test_trusted_chain_passes(self):
        trace = tls_trust_trace(TrustValidator([PIN]), "chat.example.test")
        stream = FakeNetworkStream(FakeSSLObject([OTHER, PIN]))
        await trace(TLS_COMPLETE_EVENT, {"return_value": stream})
        assert not stream.closed

    @pytest.mark.asyncio
    async def test_rejected_chain_aborts_connection(self):
        trace = tls_trust_trace(TrustValidator([PIN]), "chat.example.test")
        stream = FakeNetworkStream(FakeSSLObject([OTHER]))
        with pytest.raises(httpx.ConnectError):
            await trace(TLS_COMPLETE_EVENT, {"return_value": stream})
        assert stream.closed

    @pytest.mark.asyncio
    async def test_missing_ssl_object_is_rejected(self):
        trace = tls_trust_trace(TrustValidator([PIN]), "chat.example.test")
        stream = FakeNetworkStream(None)
        with pytest.raises(httpx.ConnectError):
            await trace(TLS_COMPLETE_EVENT, {"return_value": stream})

    @pytest.mark.asyncio
    async def test_other_events_are_ignored(self):
        calls: list = []
        trace = tls_trust_trace(lambda chain: calls.append(chain), "chat.example.test")
        await trace("connection.connect_tcp.complete", {"return_value": None})
        await trace("http11.send_request_headers.started", {})
        assert calls == []


class TestHttpxTransport:
    @pytest.mark.asyncio
    async def test_posts_json_and_streams_lines(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="data: Hel\ndata: lo\n\ndata: !\n")

        payload = {"msg": [{"role": "user", "content": "hi"}], "limit": 10}
        async with _transport(handler) as transport:
            async with transport.stream(URL, payload) as response:
                assert response.status_code == 200
                assert response.is_success
                lines = [line async for line in response.lines]

        assert lines == ["data: Hel", "data: lo", "", "data: !"]
        (request,) = seen
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == payload

    @pytest.mark.asyncio
    async def test_error_status_is_returned_not_raised(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": {"message": "rate limited"}})

        async with _transport(handler) as transport:
            async with transport.stream(URL, {"msg": []}) as response:
                assert response.status_code == 429
                assert not response.is_success

    @pytest.mark.asyncio
    async def test_extra_headers_are_sent(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="")

        async with _transport(handler) as transport:
            async with transport.stream(URL, {"msg": []}, headers={"X-Client": "test"}):
                pass
        assert seen[0].headers["X-Client"] == "test"

    @pytest.mark.asyncio
    async def test_trust_hook_is_attached_as_trace(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="")

        async with _transport(handler) as transport:
            async with transport.stream(URL, {"msg": []}, trust=TrustValidator([PIN])):
                pass
        assert callable(seen[0].extensions["trace"])

    @pytest.mark.asyncio
    async def test_protocol_error_before_response_is_invalid_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.RemoteProtocolError("illegal status line", request=request)

        async with _transport(handler) as transport:
            with pytest.raises(InvalidResponseError):
                async with transport.stream(URL, {"msg": []}):
                    pass

    @pytest.mark.asyncio
    async def test_connect_error_propagates(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _transport(handler) as transport:
            with pytest.raises(httpx.ConnectError):
                async with transport.stream(URL, {"msg": []}):
                    pass

    @pytest.mark.asyncio
    async def test_borrowed_client_is_not_closed(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200))
        )
        transport = HttpxTransport(client=client)
        await transport.aclose()
        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_is_closed(self):
        transport = HttpxTransport(timeout=5)
        await transport.aclose()
        assert transport._client.is_closed


def _der(pem: bytes) -> bytes:
    return ssl.PEM_cert_to_DER_cert(pem.decode("ascii"))


@pytest.fixture
async def tls_server():
    """Local HTTPS server answering every request with one ``data: hi`` line."""
    ca = trustme.CA()
    cert = ca.issue_cert("127.0.0.1")
    server_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    cert.configure_cert(server_context)
    client_context = ssl.create_default_context()
    ca.configure_trust(client_context)

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            length = 0
            for header in head.decode("latin-1").split("\r\n"):
                name, _, value = header.partition(":")
                if name.strip().lower() == "content-length":
                    length = int(value)
            await reader.readexactly(length)
            writer.write(
                b"HTTP/1.1 200 OK\r\nContent-Length: 9\r\nConnection: close\r\n\r\n"
                b"data: hi\n"
            )
            await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError, ssl.SSLError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0, ssl=server_context)
    port = server.sockets[0].getsockname()[1]
    yield {
        "url": f"https://127.0.0.1:{port}/",
        "root": _der(ca.cert_pem.bytes()),
        "leaf": _der(cert.cert_chain_pems[0].bytes()),
        "context": client_context,
    }
    server.close()
    await server.wait_closed()


class TestRealHandshake:
    async def _lines(self, server, pins: list[bytes]) -> list[str]:
        async with HttpxTransport(verify=server["context"]) as transport:
            async with transport.stream(
                server["url"], {"msg": []}, trust=TrustValidator(pins)
            ) as response:
                return [line async for line in response.lines]

    @pytest.mark.asyncio
    async def test_pinned_root_is_trusted(self, tls_server):
        assert await self._lines(tls_server, [tls_server["root"]]) == ["data: hi"]

    @pytest.mark.asyncio
    async def test_pinned_leaf_is_trusted(self, tls_server):
        assert await self._lines(tls_server, [tls_server["leaf"]]) == ["data: hi"]

    @pytest.mark.asyncio
    async def test_unrelated_pin_is_rejected(self, tls_server):
        with pytest.raises(httpx.ConnectError):
            await self._lines(tls_server, [PIN])

    @pytest.mark.asyncio
    async def test_session_over_pinned_connection(self, tls_server):
        transport = HttpxTransport(verify=tls_server["context"])
        chat = ChatSession(
            transport,
            settings=ChatSettings(url=tls_server["url"]),
            token_counter=APPROXIMATE_COUNTER,
            trust_validator=TrustValidator([tls_server["root"]]),
        )
        try:
            deltas = [delta async for delta in chat.send_message("Hi")]
        finally:
            await transport.aclose()
        assert deltas == ["hi"]
        assert len(chat.history) == 2
