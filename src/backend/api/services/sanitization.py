"""User input sanitization and prompt-injection detection."""

from __future__ import annotations

from core.constants import (
    CONTROL_CHARACTERS_PATTERN,
    MESSAGE_HARD_LIMIT,
    PROMPT_INJECTION_PATTERNS,
    TITLE_ELLIPSIS,
    TITLE_MAX_LENGTH,
)
from utils.logger import logger


class MessageSanitizer:
    """Cleans user-supplied text before it is stored or sent to the agent.

    Detection is advisory: callers log and count a match but still process
    the message.
    """

    def __init__(
        self,
        hard_limit: int = MESSAGE_HARD_LIMIT,
        injection_patterns: tuple[str, ...] = PROMPT_INJECTION_PATTERNS,
    ) -> None:
        self.hard_limit = hard_limit
        self._patterns = tuple(p.lower() for p in injection_patterns)

    def sanitize(self, text: str | None) -> str:
        """Trim, cap at the hard limit, then strip control characters."""
        if not text:
            return ""

        cleaned = text.strip()
        if len(cleaned) > self.hard_limit:
            logger.warning(f"Message truncated from {len(cleaned)} to {self.hard_limit} characters")
            cleaned = cleaned[: self.hard_limit]

        return CONTROL_CHARACTERS_PATTERN.sub("", cleaned)

    def detect_prompt_injection(self, text: str | None) -> str | None:
        """Return the first known injection phrase found in text, if any."""
        if not text:
            return None

        lowered = text.lower()
        for pattern in self._patterns:
            if pattern in lowered:
                return pattern
        return None

    def sanitize_title(self, title: str | None, max_length: int = TITLE_MAX_LENGTH) -> str:
        """Sanitize a title and shorten it to max_length with an ellipsis."""
        cleaned = " ".join(self.sanitize(title).split())
        return truncate_title(cleaned, max_length)


def truncate_title(text: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - len(TITLE_ELLIPSIS)] + TITLE_ELLIPSIS
