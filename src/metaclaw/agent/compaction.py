"""
Context window management - keeps session history inside the model's budget.

Two mechanisms run in order on every turn:

- Compression: once history reaches ``compression_threshold`` of the context
  limit, everything but the most recent messages is summarized by the LLM
  into a single leading summary message. A previous summary is folded into
  the new one, so history never carries two summaries.
- Pruning: if history still does not fit, the oldest messages are dropped
  until it is back under ``prune_target`` of the limit. The leading summary
  is never pruned, and tool results whose originating tool call was dropped
  go with it.

Both mechanisms mutate the history list in place.
"""

from dataclasses import dataclass

import structlog

from ..llm.base import BaseLLM, ChatMessage
from ..tokens import TokenCounter, get_token_counter

logger = structlog.get_logger()

MIN_CONTEXT_LIMIT = 1024
MIN_MESSAGES_TO_COMPRESS = 5
MIN_KEEP_RECENT = 4

PRUNE_TARGET_BOUNDS = (0.72, 0.95)

SUMMARY_PREFIX = "[Earlier conversation summary: "
SUMMARY_SUFFIX = "]"


@dataclass
class CompactionConfig:
    """Budget settings for one session's context window."""

    context_window: int = 128_000
    cap: int | None = None
    compression_threshold: float = 0.8
    keep_recent_messages: int = 20
    prune_target: float = 0.85
    min_retained_messages: int = 4
    enabled: bool = True

    @property
    def context_limit(self) -> int:
        limit = self.context_window
        if self.cap:
            limit = min(limit, self.cap)
        return max(MIN_CONTEXT_LIMIT, limit)

    @property
    def keep_recent(self) -> int:
        """Messages kept verbatim by compression.

        A configured cap usually means a small window, so the count scales
        with the limit instead of always keeping the configured number.
        """
        if not self.cap:
            return self.keep_recent_messages
        scaled = min(self.keep_recent_messages, self.context_limit // 1000)
        return max(MIN_KEEP_RECENT, scaled)

    @property
    def effective_prune_target(self) -> float:
        low, high = PRUNE_TARGET_BOUNDS
        return max(low, min(high, self.prune_target))


@dataclass
class CompactionResult:
    """What ``ContextWindowManager.apply`` did to the history."""

    tokens_before: int
    tokens_after: int
    compressed: bool = False
    pruned: int = 0
    summary: str = ""

    @property
    def changed(self) -> bool:
        return self.compressed or self.pruned > 0


def summary_message(summary: str) -> ChatMessage:
    return ChatMessage(role="assistant", content=f"{SUMMARY_PREFIX}{summary}{SUMMARY_SUFFIX}")


def is_summary_message(message: ChatMessage) -> bool:
    return (
        message.role == "assistant"
        and not message.tool_calls
        and isinstance(message.content, str)
        and message.content.startswith(SUMMARY_PREFIX)
    )


class ContextWindowManager:
    """Applies compression and pruning to a session history."""

    def __init__(
        self,
        llm: BaseLLM,
        config: CompactionConfig | None = None,
        counter: TokenCounter | None = None,
    ):
        self.llm = llm
        self.config = config or CompactionConfig(context_window=llm.context_window)
        self.counter = counter or get_token_counter()

    def estimate(self, history: list[ChatMessage]) -> int:
        return self.counter.count_message_tokens(history)

    async def apply(self, history: list[ChatMessage]) -> CompactionResult:
        """Compress, then prune, ``history`` in place."""
        tokens = self.estimate(history)
        result = CompactionResult(tokens_before=tokens, tokens_after=tokens)
        if not self.config.enabled or not history:
            return result

        limit = self.config.context_limit

        if tokens >= limit * self.config.compression_threshold:
            summary = await self._compress(history)
            if summary is not None:
                result.compressed = True
                result.summary = summary
                tokens = self.estimate(history)

        if tokens >= limit:
            result.pruned = self._prune(history)
            tokens = self.estimate(history)

        result.tokens_after = tokens
        if result.changed:
            logger.info(
                "Context window adjusted",
                compressed=result.compressed,
                pruned=result.pruned,
                tokens_before=result.tokens_before,
                tokens_after=result.tokens_after,
                limit=limit,
            )
        return result

    def _split_point(self, history: list[ChatMessage]) -> int:
        split = max(0, len(history) - self.config.keep_recent)
        # Tool results stay with the assistant message that issued the call
        while 0 < split < len(history) and history[split].role == "tool":
            split -= 1
        return split

    async def _compress(self, history: list[ChatMessage]) -> str | None:
        split = self._split_point(history)
        to_compress = history[:split]
        if len(to_compress) < MIN_MESSAGES_TO_COMPRESS:
            return None

        try:
            summary = (await self.llm.summarize(to_compress)).strip()
        except Exception as e:
            logger.warning(
                "History compression failed, keeping history as is",
                error=str(e),
                messages=len(to_compress),
            )
            return None

        if not summary:
            logger.warning("History compression returned an empty summary")
            return None

        history[:] = [summary_message(summary)] + history[split:]
        logger.debug("History compressed", summarized=len(to_compress), kept=len(history) - 1)
        return summary

    def _prune(self, history: list[ChatMessage]) -> int:
        target = self.config.context_limit * self.config.effective_prune_target
        start = 1 if history and is_summary_message(history[0]) else 0
        dropped = 0

        while (
            len(history) > self.config.min_retained_messages
            and len(history) > start
            and self.estimate(history) >= target
        ):
            del history[start]
            dropped += 1
            dropped += self._drop_orphaned_tool_results(history, start)

        return dropped

    @staticmethod
    def _drop_orphaned_tool_results(history: list[ChatMessage], start: int) -> int:
        dropped = 0
        while len(history) > start and history[start].role == "tool":
            del history[start]
            dropped += 1
        return dropped
