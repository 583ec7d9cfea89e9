from __future__ import annotations

import os
from dataclasses import dataclass, replace
from collections.abc import Mapping

from .history import DEFAULT_TOKEN_BUDGET
from .pinning import DEFAULT_PIN_NAMES
from .tokenizer import DEFAULT_ENCODING

DEFAULT_URL = "https://streamingwords-53f47dwjva-uc.a.run.app"
DEFAULT_SYSTEM_TEXT = "You're a helpful assistant"

ENV_PREFIX = "CHATSTREAM_"


@dataclass(frozen=True)
class ChatSettings:
    """Connection and prompt settings for a ChatSession.

    url: endpoint receiving the POST
    token_budget: maximum prompt size in tokens (system + history + user)
    timeout_s: transport timeout for connect and each read
    pin_names: bundled DER certificates (without .der) the server chain must hit
    system_text: system message used when send_message is not given one
    encoding: tiktoken encoding name used for budget accounting
    """

    url: str = DEFAULT_URL
    token_budget: int = DEFAULT_TOKEN_BUDGET
    timeout_s: float = 60.0
    pin_names: tuple[str, ...] = DEFAULT_PIN_NAMES
    system_text: str = DEFAULT_SYSTEM_TEXT
    encoding: str = DEFAULT_ENCODING

    def __post_init__(self) -> None:
        if self.token_budget <= 0:
            raise ValueError(
                f"token_budget must be positive, got {self.token_budget}"
            )
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be positive, got {self.timeout_s}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ChatSettings:
        """Defaults overridden by CHATSTREAM_* environment variables."""
        if environ is None:
            environ = os.environ
        overrides: dict = {}

        if url := environ.get(f"{ENV_PREFIX}URL"):
            overrides["url"] = url
        if raw := environ.get(f"{ENV_PREFIX}TOKEN_BUDGET"):
            overrides["token_budget"] = _parse(raw, int, "TOKEN_BUDGET")
        if raw := environ.get(f"{ENV_PREFIX}TIMEOUT_S"):
            overrides["timeout_s"] = _parse(raw, float, "TIMEOUT_S")
        if raw := environ.get(f"{ENV_PREFIX}PIN_NAMES"):
            names = tuple(n.strip() for n in raw.split(",") if n.strip())
            if names:
                overrides["pin_names"] = names
        if text := environ.get(f"{ENV_PREFIX}SYSTEM_TEXT"):
            overrides["system_text"] = text
        if encoding := environ.get(f"{ENV_PREFIX}ENCODING"):
            overrides["encoding"] = encoding

        return cls(**overrides)

    def with_overrides(self, **changes) -> ChatSettings:
        return replace(self, **changes)


def _parse(raw: str, kind: type, name: str):
    try:
        return kind(raw)
    except ValueError:
        raise ValueError(
            f"{ENV_PREFIX}{name} must be a {kind.__name__}, got {raw!r}"
        ) from None
