import math
from collections.abc import Sequence

from reveal_chat.constants import (
    CHARS_PER_TOKEN,
    MESSAGE_TOKEN_OVERHEAD,
    MODEL_COST_PER_1K_TOKENS,
)
from reveal_chat.models import ContextMessage


class TokenEstimator:
    def __init__(
        self,
        chars_per_token: int = CHARS_PER_TOKEN,
        message_overhead: int = MESSAGE_TOKEN_OVERHEAD,
    ):
        self.chars_per_token = max(1, chars_per_token)
        self.message_overhead = max(0, message_overhead)

    def estimate_text(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def estimate_message(self, message: ContextMessage) -> int:
        return self.estimate_text(message.content) + self.message_overhead

    def estimate_messages(self, messages: Sequence[ContextMessage]) -> int:
        return sum(self.estimate_message(m) for m in messages)

    def trim_to_budget(
        self, messages: Sequence[ContextMessage], budget: int
    ) -> list[ContextMessage]:
        # Newest messages win; leading system messages are pinned.
        if not messages:
            return []
        pinned = []
        rest = list(messages)
        while rest and rest[0].role.value == "system":
            pinned.append(rest.pop(0))
        used = self.estimate_messages(pinned)
        kept: list[ContextMessage] = []
        for message in reversed(rest):
            cost = self.estimate_message(message)
            if kept and used + cost > budget:
                break
            kept.append(message)
            used += cost
        kept.reverse()
        return pinned + kept

    def estimate_cost_cents(
        self, messages: Sequence[ContextMessage], model: str
    ) -> int:
        total = sum(self.estimate_text(m.content) for m in messages)
        per_1k = MODEL_COST_PER_1K_TOKENS.get(
            model, MODEL_COST_PER_1K_TOKENS["gpt-3.5-turbo"]
        )
        return math.ceil((total / 1000) * per_1k * 100)
