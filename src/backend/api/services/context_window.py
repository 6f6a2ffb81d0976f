"""
Context window policy for conversation history.

Token counts here are a deterministic character-based approximation, not a
tokenizer: (characters + per-message overhead) / CHARS_PER_TOKEN, rounded up.
Estimation is pure and performs no I/O.
"""

from __future__ import annotations

import math

from collections.abc import Sequence

from core.constants import (
    CHARS_PER_TOKEN,
    MESSAGE_TOKEN_OVERHEAD,
    SYSTEM_PROMPT_TOKEN_BUFFER,
    USER_MESSAGE_TOKEN_OVERHEAD,
)
from models.conversation_models import Message, MessageRole
from utils.logger import logger


class ContextWindowPolicy:
    """Decides which historical messages fit in a token budget."""

    def __init__(
        self,
        chars_per_token: int = CHARS_PER_TOKEN,
        user_overhead: int = USER_MESSAGE_TOKEN_OVERHEAD,
        other_overhead: int = MESSAGE_TOKEN_OVERHEAD,
        reserved_tokens: int = SYSTEM_PROMPT_TOKEN_BUFFER,
    ) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token
        self.user_overhead = user_overhead
        self.other_overhead = other_overhead
        self.reserved_tokens = reserved_tokens

    def _overhead(self, message: Message) -> int:
        return self.user_overhead if message.role == MessageRole.USER else self.other_overhead

    def estimate_tokens(self, messages: Sequence[Message]) -> int:
        """Estimate tokens for a set of messages. Pure and deterministic."""
        if not messages:
            return 0
        total_chars = sum(len(m.content or "") + self._overhead(m) for m in messages)
        return math.ceil(total_chars / self.chars_per_token)

    def trim(self, messages: Sequence[Message], max_tokens: int) -> list[Message]:
        """Keep the newest messages that fit in max_tokens minus the reserved buffer.

        Walks newest-first and stops at the first message that would overflow;
        that message and everything older is dropped whole. The result is
        returned oldest-first.
        """
        budget = max_tokens - self.reserved_tokens
        kept: list[Message] = []
        used = 0

        for message in sorted(messages, key=lambda m: m.timestamp, reverse=True):
            cost = self.estimate_tokens([message])
            if used + cost > budget:
                break
            kept.append(message)
            used += cost

        kept.reverse()
        if len(kept) < len(messages):
            logger.info(f"Trimmed context from {len(messages)} to {len(kept)} messages ({used}/{budget} tokens)")
        return kept

    def exceeds_limit(self, messages: Sequence[Message], max_tokens: int) -> bool:
        tokens = self.estimate_tokens(messages)
        if tokens > max_tokens:
            logger.warning(f"Conversation history exceeds token limit: {tokens} > {max_tokens}")
            return True
        return False

    def summarize(self, messages: Sequence[Message]) -> str:
        """Describe a run of messages in one line.

        Placeholder until a summarization agent is wired in; it only reports
        the size and time span of what was dropped.
        """
        if not messages:
            return ""

        ordered = sorted(messages, key=lambda m: m.timestamp)
        span = ordered[-1].timestamp - ordered[0].timestamp
        if span.days >= 1:
            return f"[Earlier conversation with {len(messages)} messages spanning {span.days} days]"
        hours = math.floor(span.total_seconds() / 3600)
        return f"[Earlier conversation with {len(messages)} messages over {hours} hours]"
