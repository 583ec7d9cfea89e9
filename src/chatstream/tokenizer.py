from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Protocol
from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)

# GPT-3 byte-pair encoding used by the remote model
DEFAULT_ENCODING = "r50k_base"


class Role(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def __post_init__(self) -> None:
        # Accept plain strings ("user") as well as Role members
        object.__setattr__(self, "role", Role(self.role))

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(Role.ASSISTANT, content)

    @classmethod
    def from_dict(cls, data: Mapping[str, str]) -> Message:
        return cls(Role(data["role"]), data["content"])

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class TokenCountFn(Protocol):
    def __call__(self, text: str) -> int: ...


def approximate_token_count(text: str) -> int:
    """Estimate tokens as len(text) // 4. No dependencies required."""
    return max(len(text) // 4, 1)


def messages_to_text(messages: Sequence[Message]) -> str:
    """Join message contents into the single string the encoder sees."""
    return "\n".join(msg.content for msg in messages)


@dataclass(frozen=True)
class TokenCounter:
    count_fn: TokenCountFn
    name: str

    def count(self, text: str) -> int:
        return self.count_fn(text)

    def count_messages(self, messages: Sequence[Message]) -> int:
        return self.count_fn(messages_to_text(messages))


APPROXIMATE_COUNTER = TokenCounter(
    count_fn=approximate_token_count, name="approximate"
)


def tiktoken_counter(encoding_name: str = DEFAULT_ENCODING) -> TokenCounter:
    """Counter backed by a tiktoken encoding. The encoding object is immutable
    and safe to share between sessions."""
    import tiktoken

    encoding = tiktoken.get_encoding(encoding_name)

    def count_fn(text: str) -> int:
        return len(encoding.encode(text, disallowed_special=()))

    return TokenCounter(count_fn=count_fn, name=f"tiktoken/{encoding.name}")


def default_token_counter(encoding_name: str = DEFAULT_ENCODING) -> TokenCounter:
    try:
        return tiktoken_counter(encoding_name)
    except Exception:
        logger.warning(
            "Could not load tiktoken encoding %r, using approximate counter",
            encoding_name,
            exc_info=True,
        )
        return APPROXIMATE_COUNTER
