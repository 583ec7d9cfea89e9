"""chatstream: token-budgeted chat sessions over a pinned, streamed HTTP endpoint."""

from .config import ChatSettings, DEFAULT_SYSTEM_TEXT, DEFAULT_URL
from .decoder import (
    DATA_PREFIX,
    ExchangeResult,
    ExchangeStatus,
    StreamDecoder,
    StreamEvent,
    read_error_reason,
)
from .errors import (
    BadStatusError,
    ChatStreamError,
    DecodeError,
    ExchangeBusyError,
    ExchangeCancelledError,
    InvalidResponseError,
    PinningConfigError,
    PromptOverflowError,
)
from .history import ConversationHistory, PromptBuild, DEFAULT_TOKEN_BUDGET
from .pinning import TrustDecision, TrustValidator
from .session import ChatSession
from .tokenizer import (
    Message,
    Role,
    TokenCounter,
    APPROXIMATE_COUNTER,
    approximate_token_count,
    default_token_counter,
    tiktoken_counter,
)
from .transport import HttpxTransport, Transport, TransportResponse

__all__ = [
    "ChatSession",
    "ChatSettings",
    "DEFAULT_SYSTEM_TEXT",
    "DEFAULT_URL",
    "ConversationHistory",
    "PromptBuild",
    "DEFAULT_TOKEN_BUDGET",
    "StreamDecoder",
    "StreamEvent",
    "ExchangeResult",
    "ExchangeStatus",
    "DATA_PREFIX",
    "read_error_reason",
    "TrustValidator",
    "TrustDecision",
    "Transport",
    "TransportResponse",
    "HttpxTransport",
    "Message",
    "Role",
    "TokenCounter",
    "APPROXIMATE_COUNTER",
    "approximate_token_count",
    "default_token_counter",
    "tiktoken_counter",
    "ChatStreamError",
    "PromptOverflowError",
    "InvalidResponseError",
    "BadStatusError",
    "DecodeError",
    "ExchangeCancelledError",
    "ExchangeBusyError",
    "PinningConfigError",
]

__version__ = "0.1.0"
