from __future__ import annotations

import logging
from dataclasses import dataclass
from collections.abc import Iterable, Iterator, Mapping

from .errors import PromptOverflowError
from .tokenizer import Message, TokenCounter

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_BUDGET = 4096


@dataclass(frozen=True)
class PromptBuild:
    """The messages sent for one exchange and their token accounting."""

    messages: tuple[Message, ...]
    token_count: int
    budget: int
    dropped: int

    @property
    def utilization_pct(self) -> float:
        if self.budget == 0:
            return 0.0
        return (self.token_count / self.budget) * 100

    def to_payload(self) -> list[dict[str, str]]:
        return [msg.to_dict() for msg in self.messages]


class ConversationHistory:
    """Ordered prior turns, trimmed from the front to fit a token budget.

    Usage:
        history = ConversationHistory(APPROXIMATE_COUNTER)
        prompt = history.build_prompt("Hello!", "You're a helpful assistant")
        ...  # send prompt.messages, then on success:
        history.append("Hello!", "Hi there.")
    """

    def __init__(
        self, counter: TokenCounter, budget: int = DEFAULT_TOKEN_BUDGET
    ) -> None:
        if budget <= 0:
            raise ValueError(f"Token budget must be positive, got {budget}")
        self._counter = counter
        self._budget = budget
        self._messages: list[Message] = []

    def build_prompt(
        self, user_text: str, system_text: str, budget: int | None = None
    ) -> PromptBuild:
        """Return [system] + history + [user] within budget.

        Drops the oldest history entries (from the stored history, not just the
        returned prompt) until the prompt fits. Raises PromptOverflowError,
        leaving history as it was, when the system and user messages alone do
        not fit.
        """
        if budget is None:
            budget = self._budget
        system = Message.system(system_text)
        user = Message.user(user_text)

        bare_count = self._counter.count_messages((system, user))
        if bare_count > budget:
            raise PromptOverflowError(bare_count, budget)

        dropped = 0
        while True:
            candidate = (system, *self._messages, user)
            token_count = self._counter.count_messages(candidate)
            if token_count <= budget:
                break
            if not self._messages:
                raise PromptOverflowError(token_count, budget)
            oldest = self._messages.pop(0)
            dropped += 1
            logger.debug(
                "Prompt at %d tokens exceeds budget %d, dropped oldest %s message",
                token_count,
                budget,
                oldest.role.value,
            )

        return PromptBuild(
            messages=candidate,
            token_count=token_count,
            budget=budget,
            dropped=dropped,
        )

    def append(self, user_text: str, assistant_text: str) -> None:
        self._messages.append(Message.user(user_text))
        self._messages.append(Message.assistant(assistant_text))

    def clear(self) -> None:
        self._messages = []

    def replace(self, messages: Iterable[Message | Mapping[str, str]]) -> None:
        # Convert everything first so a bad entry leaves history untouched
        self._messages = [
            msg if isinstance(msg, Message) else Message.from_dict(msg)
            for msg in messages
        ]

    def token_count(self) -> int:
        if not self._messages:
            return 0
        return self._counter.count_messages(self._messages)

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def budget(self) -> int:
        return self._budget

    @budget.setter
    def budget(self, value: int) -> None:
        if value <= 0:
            raise ValueError(f"Token budget must be positive, got {value}")
        self._budget = value

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))
