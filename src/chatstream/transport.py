"""HTTP transport for the chat endpoint.

A transport performs one POST and hands back the status code plus the body as
an async sequence of lines (terminators stripped). Sessions depend only on the
``Transport`` protocol so tests can substitute an in-memory fake.
"""

from __future__ import annotations

import logging
import ssl
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol
from collections.abc import AsyncIterator, Callable, Mapping, Sequence

import httpx

from .errors import InvalidResponseError
from .pinning import TrustDecision

logger = logging.getLogger(__name__)

TrustHook = Callable[[Sequence[bytes]], TrustDecision]

# httpcore trace event fired once per new TLS connection, after the handshake
TLS_COMPLETE_EVENT = "connection.start_tls.complete"


@dataclass
class TransportResponse:
    status_code: int
    lines: AsyncIterator[str]

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


class Transport(Protocol):
    def stream(
        self,
        url: str,
        payload: Mapping[str, Any],
        *,
        headers: Mapping[str, str] | None = None,
        trust: TrustHook | None = None,
    ) -> AbstractAsyncContextManager[TransportResponse]:
        """Open one exchange. Leaving the context terminates it."""
        ...


def _der_chain(ssl_object: ssl.SSLObject, method: str) -> list[bytes] | None:
    # Public on SSLObject from Python 3.13, private on the wrapped _sslobj before
    get_chain = getattr(ssl_object, method, None)
    if get_chain is None:
        get_chain = getattr(getattr(ssl_object, "_sslobj", None), method, None)
    if get_chain is None:
        return None
    chain: list[bytes] = []
    for cert in get_chain() or []:
        if isinstance(cert, bytes):
            chain.append(cert)
        else:
            chain.append(ssl.PEM_cert_to_DER_cert(cert.public_bytes()))
    return chain


def presented_chain(ssl_object: ssl.SSLObject) -> list[bytes]:
    """DER certificates of the connection, leaf first.

    Combines what the peer sent with the chain the handshake verified, so a
    pinned trust anchor the server never sends still matches. Falls back to the
    leaf alone when neither chain is exposed.
    """
    chain: list[bytes] = []
    for method in ("get_unverified_chain", "get_verified_chain"):
        for cert in _der_chain(ssl_object, method) or []:
            if cert not in chain:
                chain.append(cert)
    if not chain:
        leaf = ssl_object.getpeercert(binary_form=True)
        if leaf:
            chain.append(leaf)
    return chain


def tls_trust_trace(trust: TrustHook, host: str) -> Callable[[str, dict], Any]:
    """Build an httpx ``trace`` extension that vets each new TLS connection.

    A rejected chain closes the connection and raises ``httpx.ConnectError``
    before the request is written.
    """

    async def trace(event_name: str, info: dict) -> None:
        if event_name != TLS_COMPLETE_EVENT:
            return
        stream = info.get("return_value")
        ssl_object = stream.get_extra_info("ssl_object") if stream is not None else None
        chain = presented_chain(ssl_object) if ssl_object is not None else []
        if trust(chain):
            logger.debug("Pinned certificate matched for %s", host)
            return
        if stream is not None:
            await stream.aclose()
        raise httpx.ConnectError(f"Certificate chain for {host} rejected by pin set")

    return trace


class HttpxTransport:
    """Transport backed by ``httpx.AsyncClient``.

    Usage:
        async with HttpxTransport(timeout=30) as transport:
            async with transport.stream(url, payload, trust=validator) as response:
                async for line in response.lines:
                    ...
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
        verify: ssl.SSLContext | bool = True,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout), verify=verify
        )

    @asynccontextmanager
    async def stream(
        self,
        url: str,
        payload: Mapping[str, Any],
        *,
        headers: Mapping[str, str] | None = None,
        trust: TrustHook | None = None,
    ) -> AsyncIterator[TransportResponse]:
        request_headers = {"Content-Type": "application/json"}
        if headers:
            request_headers.update(headers)
        extensions = {}
        if trust is not None:
            extensions["trace"] = tls_trust_trace(trust, httpx.URL(url).host)

        opened = False
        try:
            async with self._client.stream(
                "POST",
                url,
                json=dict(payload),
                headers=request_headers,
                extensions=extensions,
            ) as response:
                opened = True
                logger.debug("POST %s -> %d", url, response.status_code)
                yield TransportResponse(response.status_code, response.aiter_lines())
        except (httpx.RemoteProtocolError, httpx.DecodingError) as exc:
            if opened:
                raise
            raise InvalidResponseError(f"Malformed HTTP response from {url}: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
