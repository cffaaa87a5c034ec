from __future__ import annotations

import math
from dataclasses import replace
from typing import Callable, Sequence

from sahay.sessions import Message

CHARS_PER_TOKEN = 4
SHORT_CONVERSATION_MESSAGES = 3
TRUNCATION_SUFFIX = " ...[truncated]"

TokenEstimator = Callable[[str], int]


def estimate_tokens(text: str) -> int:
    """Cheap deterministic estimate: ~4 characters per token."""
    return int(math.ceil(len(text or "") / CHARS_PER_TOKEN))


class ContextBudgeter:
    """
    Fits a conversation into a token budget before each generation call.

    System messages are always kept. The conversational tail is kept newest-first
    while it fits the budget; everything older than the first message that does
    not fit is dropped. The newest non-system message is always kept, even alone
    over budget, unless `truncate_oversized` is set, in which case it is cut to fit.
    """

    def __init__(self, estimator: TokenEstimator | None = None, *, truncate_oversized: bool = False):
        self.estimator = estimator or estimate_tokens
        self.truncate_oversized = bool(truncate_oversized)

    def cost(self, message: Message) -> int:
        return int(self.estimator(message.content or ""))

    def _truncate_to_budget(self, message: Message, budget_tokens: int) -> Message:
        budget_chars = max(0, int(budget_tokens) * CHARS_PER_TOKEN)
        keep = max(0, budget_chars - len(TRUNCATION_SUFFIX))
        return replace(message, content=(message.content[:keep] + TRUNCATION_SUFFIX).strip())

    def prune(self, messages: Sequence[Message], budget_tokens: int) -> list[Message]:
        msgs = list(messages)
        if len(msgs) <= SHORT_CONVERSATION_MESSAGES:
            return msgs

        budget = max(0, int(budget_tokens))
        system_msgs = [m for m in msgs if m.role == "system"]
        conversational = [m for m in msgs if m.role != "system"]

        kept_rev: list[Message] = []
        used = 0
        for m in reversed(conversational):
            c = self.cost(m)
            if not kept_rev and c > budget:
                kept_rev.append(self._truncate_to_budget(m, budget) if self.truncate_oversized else m)
                break
            if used + c > budget:
                break
            kept_rev.append(m)
            used += c

        return system_msgs + list(reversed(kept_rev))
