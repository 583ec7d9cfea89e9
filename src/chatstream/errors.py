"""Exception hierarchy raised across the chat session boundary."""

from __future__ import annotations


class ChatStreamError(Exception):
    """Base class for chatstream errors."""


class PromptOverflowError(ChatStreamError, OverflowError):
    """System and user messages alone exceed the token budget."""

    def __init__(self, token_count: int, budget: int) -> None:
        self.token_count = token_count
        self.budget = budget
        super().__init__(
            f"Prompt needs {token_count} tokens with empty history, "
            f"budget is {budget}"
        )


class InvalidResponseError(ChatStreamError):
    """The transport returned something that is not a valid HTTP response."""


class BadStatusError(ChatStreamError):
    """The endpoint answered with a non-2xx status."""

    def __init__(self, status: int, reason: str) -> None:
        self.status = status
        self.reason = reason
        super().__init__(f"Bad Response: {status}. {reason}")


class DecodeError(ChatStreamError):
    """An error body did not match the {"error": {"message": ...}} envelope."""


class ExchangeCancelledError(ChatStreamError):
    """The in-flight exchange was cancelled before the stream ended."""


class ExchangeBusyError(ChatStreamError):
    """Another exchange is already in flight on this session."""


class PinningConfigError(ChatStreamError):
    """No pinned certificate could be loaded."""
