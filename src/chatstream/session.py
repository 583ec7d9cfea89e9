from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Any
from collections.abc import AsyncIterator, Iterable, Mapping

from .config import ChatSettings
from .decoder import ExchangeResult, ExchangeStatus, StreamDecoder, read_error_reason
from .errors import (
    BadStatusError,
    ExchangeBusyError,
    ExchangeCancelledError,
    InvalidResponseError,
)
from .history import ConversationHistory, PromptBuild
from .pinning import TrustValidator
from .tokenizer import Message, TokenCounter, default_token_counter
from .transport import HttpxTransport, Transport

logger = logging.getLogger(__name__)


class ChatSession:
    """Stateful conversation with a streaming text-generation endpoint.

    History is committed only after a response stream ends cleanly; a failed,
    cancelled or abandoned exchange leaves it untouched. One exchange may be in
    flight at a time.

    Usage:
        async with ChatSession(settings=ChatSettings.from_env()) as chat:
            async for delta in chat.send_message("Hello!"):
                print(delta, end="")
    """

    def __init__(
        self,
        transport: Transport | None = None,
        *,
        settings: ChatSettings | None = None,
        token_counter: TokenCounter | None = None,
        trust_validator: TrustValidator | None = None,
    ) -> None:
        self._settings = settings or ChatSettings()
        if trust_validator is None:
            trust_validator = TrustValidator.from_resources(self._settings.pin_names)
        self._trust = trust_validator
        self._counter = token_counter or default_token_counter(self._settings.encoding)
        self._history = ConversationHistory(self._counter, self._settings.token_budget)

        self._owns_transport = transport is None
        self._transport = transport or HttpxTransport(timeout=self._settings.timeout_s)

        self._lock = asyncio.Lock()
        self._cancel_event: asyncio.Event | None = None
        self._last_result: ExchangeResult | None = None
        self._last_prompt: PromptBuild | None = None

    async def send_message(
        self,
        text: str,
        system_text: str | None = None,
        limit: int | None = None,
        budget: int | None = None,
    ) -> AsyncIterator[str]:
        """Send one user message and yield the response deltas as they arrive.

        Raises PromptOverflowError, BadStatusError, InvalidResponseError,
        ExchangeCancelledError, ExchangeBusyError or the transport's own
        connection errors.

        Leaving the ``async for`` early with ``break`` does not end the
        exchange: the session stays busy until the generator is closed. Wrap
        the call in ``contextlib.aclosing`` to abandon it promptly without
        committing.
        """
        if self._lock.locked():
            raise ExchangeBusyError("An exchange is already in flight on this session")
        if system_text is None:
            system_text = self._settings.system_text

        async with self._lock:
            cancelled = asyncio.Event()
            self._cancel_event = cancelled
            self._last_result = None
            try:
                prompt = self._history.build_prompt(text, system_text, budget)
                self._last_prompt = prompt
                if prompt.dropped:
                    logger.info(
                        "Dropped %d history messages to fit %d token budget",
                        prompt.dropped,
                        prompt.budget,
                    )

                decoder = StreamDecoder()
                async with self._transport.stream(
                    self._settings.url,
                    self._request_body(prompt, limit),
                    trust=self._trust,
                ) as response:
                    if not isinstance(response.status_code, int):
                        raise InvalidResponseError(
                            f"Transport returned status {response.status_code!r}"
                        )
                    if not response.is_success:
                        reason = await read_error_reason(response.lines)
                        self._last_result = ExchangeResult(
                            "", ExchangeStatus.FAILED, reason
                        )
                        logger.warning(
                            "Exchange failed with status %d: %s",
                            response.status_code,
                            reason,
                        )
                        raise BadStatusError(response.status_code, reason)

                    try:
                        async with aclosing(
                            self._watch_cancel(response.lines, cancelled)
                        ) as lines, aclosing(decoder.decode(lines)) as events:
                            async for event in events:
                                yield event.text
                    finally:
                        self._last_result = decoder.result

                result = decoder.result
                if result is not None and result.succeeded:
                    self._history.append(text, result.text)
                    logger.info(
                        "Committed turn, history holds %d messages", len(self._history)
                    )
            finally:
                self._cancel_event = None

    async def _watch_cancel(
        self, lines: AsyncIterator[str], cancelled: asyncio.Event
    ) -> AsyncIterator[str]:
        # Each pending read races the exchange's cancel event
        iterator = aiter(lines)
        waiter = asyncio.create_task(cancelled.wait())
        try:
            while True:
                if cancelled.is_set():
                    raise self._cancelled()
                pending = asyncio.create_task(_next_line(iterator))
                try:
                    await asyncio.wait(
                        {pending, waiter}, return_when=asyncio.FIRST_COMPLETED
                    )
                except asyncio.CancelledError:
                    pending.cancel()
                    raise
                if not pending.done():
                    pending.cancel()
                    await asyncio.gather(pending, return_exceptions=True)
                    raise self._cancelled()
                line = pending.result()
                if line is None:
                    if cancelled.is_set():
                        raise self._cancelled()
                    return
                yield line
        finally:
            waiter.cancel()

    @staticmethod
    def _cancelled() -> ExchangeCancelledError:
        logger.warning("Exchange cancelled, history left unchanged")
        return ExchangeCancelledError("Exchange cancelled")

    @staticmethod
    def _request_body(prompt: PromptBuild, limit: int | None) -> dict[str, Any]:
        body: dict[str, Any] = {"msg": prompt.to_payload()}
        if limit is not None:
            body["limit"] = limit
        return body

    def cancel(self) -> None:
        """Terminate the in-flight exchange, if any. History is not updated.

        Safe to call from any task. The exchange stops at the pending line
        read, or at the next one if the consumer is busy elsewhere; the
        consumer sees ExchangeCancelledError. A cancel issued while waiting
        for the response headers takes effect before the first line.
        """
        if self._cancel_event is not None:
            self._cancel_event.set()

    def clear_history(self) -> None:
        self._ensure_idle()
        self._history.clear()

    def replace_history(self, messages: Iterable[Message | Mapping[str, str]]) -> None:
        self._ensure_idle()
        self._history.replace(messages)

    def _ensure_idle(self) -> None:
        if self._lock.locked():
            raise ExchangeBusyError("Cannot change history while an exchange is in flight")

    @property
    def history(self) -> list[Message]:
        return self._history.messages

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def last_result(self) -> ExchangeResult | None:
        return self._last_result

    @property
    def last_prompt(self) -> PromptBuild | None:
        return self._last_prompt

    @property
    def settings(self) -> ChatSettings:
        return self._settings

    @property
    def token_budget(self) -> int:
        return self._history.budget

    @token_budget.setter
    def token_budget(self, value: int) -> None:
        self._history.budget = value

    async def aclose(self) -> None:
        if self._owns_transport:
            await self._transport.aclose()

    async def __aenter__(self) -> ChatSession:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


async def _next_line(iterator: AsyncIterator[str]) -> str | None:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return None
