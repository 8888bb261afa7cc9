"""
Token counter utility using tiktoken.

Provides token counts for context budget decisions. Budgets are compared
against provider-advertised context sizes, so counts come from a real BPE
encoding rather than character length whenever the encoding can be loaded.
"""

import math
from typing import Iterable

import structlog
import tiktoken

from .llm.base import ChatMessage, ImagePart, TextPart

logger = structlog.get_logger()

# cl100k_base is used by gpt-4 / gpt-3.5 and is a reasonable approximation
# for other chat models
DEFAULT_ENCODING = "cl100k_base"

MESSAGE_OVERHEAD_TOKENS = 4
REPLY_PRIMING_TOKENS = 2
IMAGE_TOKENS = 765  # one high-detail image
FALLBACK_CHARS_PER_TOKEN = 4


class TokenCounter:
    """Token counting utility."""

    def __init__(self, encoding_name: str = DEFAULT_ENCODING):
        self.encoding_name = encoding_name
        try:
            self.encoding = tiktoken.get_encoding(encoding_name)
        except Exception as e:
            logger.error(
                "Failed to load tiktoken encoding, using character estimate",
                encoding=encoding_name,
                error=str(e),
            )
            self.encoding = None

    @property
    def estimated(self) -> bool:
        """True when counts come from text length instead of the BPE encoding."""
        return self.encoding is None

    def count_tokens(self, text: str) -> int:
        """Count tokens in a single text string."""
        if not text:
            return 0
        if self.encoding is None:
            return math.ceil(len(text) / FALLBACK_CHARS_PER_TOKEN)
        return len(self.encoding.encode(text, disallowed_special=()))

    def count_message_tokens(self, messages: Iterable[ChatMessage]) -> int:
        """Count tokens for a list of chat messages, including per-message overhead."""
        total = 0
        count = 0
        for msg in messages:
            count += 1
            total += MESSAGE_OVERHEAD_TOKENS + self.count_tokens(msg.role)

            if isinstance(msg.content, list):
                for part in msg.content:
                    if isinstance(part, ImagePart):
                        total += IMAGE_TOKENS
                    elif isinstance(part, TextPart):
                        total += self.count_tokens(part.text)
            elif msg.content:
                total += self.count_tokens(msg.content)

            if msg.name:
                total += self.count_tokens(msg.name)
            for tc in msg.tool_calls or []:
                total += self.count_tokens(tc.name) + self.count_tokens(tc.arguments)

        if count:
            total += REPLY_PRIMING_TOKENS
        return total

    def truncate_to_limit(self, text: str, max_tokens: int) -> str:
        """Cut ``text`` to at most ``max_tokens`` tokens.

        The cut falls on a token boundary; trailing tokens that would leave a
        partial multi-byte character are dropped.
        """
        if not text or max_tokens <= 0:
            return ""

        if self.encoding is None:
            return text[: max_tokens * FALLBACK_CHARS_PER_TOKEN]

        tokens = self.encoding.encode(text, disallowed_special=())
        if len(tokens) <= max_tokens:
            return text

        end = max_tokens
        while end > 0:
            raw = self.encoding.decode_bytes(tokens[:end])
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError:
                end -= 1
        return ""


_token_counter: TokenCounter | None = None


def get_token_counter() -> TokenCounter:
    """Get the shared token counter, creating it on first use."""
    global _token_counter
    if _token_counter is None:
        _token_counter = TokenCounter()
    return _token_counter

