"""Incremental decoding of a ``data: `` line stream into text deltas."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from collections.abc import AsyncIterable, AsyncIterator

from .errors import DecodeError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "


class ExchangeStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class StreamEvent:
    """One text delta, numbered in wire order within its exchange."""

    index: int
    text: str


@dataclass(frozen=True)
class ExchangeResult:
    text: str
    status: ExchangeStatus
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is ExchangeStatus.SUCCESS


class StreamDecoder:
    """Decodes the line stream of a single exchange.

    Lines starting with ``data: `` carry a delta; every other line (blank
    separators, comments, keep-alives) is ignored. ``result`` stays None until
    the stream ends, then records either the full text or the partial text with
    the failure reason.
    """

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._lines_seen = 0
        self.result: ExchangeResult | None = None

    @property
    def text(self) -> str:
        return "".join(self._parts)

    async def decode(self, lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
        if self.result is not None:
            raise RuntimeError("StreamDecoder instances decode a single exchange")
        try:
            async for line in lines:
                self._lines_seen += 1
                if not line.startswith(DATA_PREFIX):
                    continue
                delta = line[len(DATA_PREFIX):]
                self._parts.append(delta)
                yield StreamEvent(index=len(self._parts) - 1, text=delta)
        except GeneratorExit:
            self._fail("stream closed by consumer")
            raise
        except asyncio.CancelledError:
            self._fail("cancelled")
            raise
        except Exception as exc:
            self._fail(str(exc) or type(exc).__name__)
            raise

        self.result = ExchangeResult(self.text, ExchangeStatus.SUCCESS)
        logger.debug(
            "Stream ended after %d lines, %d deltas", self._lines_seen, len(self._parts)
        )

    def _fail(self, reason: str) -> None:
        self.result = ExchangeResult(self.text, ExchangeStatus.FAILED, reason)
        logger.debug("Stream failed after %d deltas: %s", len(self._parts), reason)


def parse_error_envelope(body: str) -> str:
    """Extract the message from an ``{"error": {"message": ...}}`` body."""
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"Error body is not JSON: {exc}") from exc
    try:
        message = data["error"]["message"]
    except (KeyError, TypeError) as exc:
        raise DecodeError("Error body has no error.message field") from exc
    if not isinstance(message, str):
        raise DecodeError("error.message is not a string")
    return message


async def read_error_reason(lines: AsyncIterable[str]) -> str:
    """Drain a non-success body and derive the failure reason from it."""
    body = "".join([line async for line in lines])
    try:
        return parse_error_envelope(body)
    except DecodeError:
        logger.debug("Error body is not a JSON error envelope, using raw text")
        return body
