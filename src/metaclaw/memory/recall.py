"""
Recall context - turns recall hits into a compact prompt section.

Recalled entries are rendered in two tiers (critical: full detail, related:
one line each) under a raw token ceiling, then condensed by the LLM into a
dense digest when the rendering does not fit the compressed ceiling. When
summarization fails a local heuristic is used instead; this path never raises.
"""

import re
from dataclasses import dataclass

import structlog

from ..llm.base import BaseLLM, ChatMessage
from ..tokens import TokenCounter, get_token_counter
from .vector import RecalledEntry

logger = structlog.get_logger()

RAW_BUDGET_RATIO = 0.06
RAW_BUDGET_BOUNDS = (300, 4000)
COMPRESSED_BUDGET_RATIO = 0.02
COMPRESSED_BUDGET_BOUNDS = (150, 1200)

AUTONOMOUS_CUE_MESSAGES = 6
AUTONOMOUS_CUE_CHARS = 600

COMPRESS_SYSTEM_PROMPT = (
    "You compress recalled long-term memories into a dense digest for an AI "
    "agent's context window. Preserve exact numbers, dates, file paths, IDs, "
    "names and decisions verbatim. Drop adjectives, filler and repetition. "
    "Output terse bullet points only, under {max_tokens} tokens."
)

_TAG_PATTERN = re.compile(r"<[^>]+>")
_TIER_HEADER_PATTERN = re.compile(r"^\[(critical|related)[^\]]*\]\s*$", re.IGNORECASE)


@dataclass
class RecallBudget:
    """Token ceilings for the rendered and the compressed recall section."""

    raw_tokens: int
    compressed_tokens: int


def _clamp(value: float, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return int(max(low, min(high, value)))


def recall_budgets(context_limit: int) -> RecallBudget:
    return RecallBudget(
        raw_tokens=_clamp(context_limit * RAW_BUDGET_RATIO, RAW_BUDGET_BOUNDS),
        compressed_tokens=_clamp(context_limit * COMPRESSED_BUDGET_RATIO, COMPRESSED_BUDGET_BOUNDS),
    )


def render_recalled(
    recalled: list[RecalledEntry],
    raw_tokens: int,
    critical_count: int = 3,
    per_entry_chars: int = 600,
    counter: TokenCounter | None = None,
) -> str:
    """Render recall hits as a two-tier text block bounded by ``raw_tokens``."""
    if not recalled:
        return ""
    counter = counter or get_token_counter()

    critical = recalled[:critical_count]
    related = recalled[critical_count:]
    lines: list[str] = []

    if critical:
        lines.append("[critical memories]")
        for hit in critical:
            meta = hit.entry.metadata
            text = hit.entry.text
            if len(text) > per_entry_chars:
                text = text[:per_entry_chars].rstrip() + "…"
            lines.append(
                f"- ({meta.role or 'note'}/{meta.type}, {meta.timestamp[:10]}, "
                f"salience={meta.salience:.2f}, score={hit.combined_score:.2f}) {text}"
            )

    if related:
        lines.append("[related memories]")
        for hit in related:
            snippet = " ".join(hit.entry.text.split())[:160]
            lines.append(f"- {hit.entry.metadata.timestamp[:10]}: {snippet}")

    return counter.truncate_to_limit("\n".join(lines), raw_tokens)


def heuristic_compress(
    text: str,
    max_tokens: int,
    counter: TokenCounter | None = None,
) -> str:
    """Local fallback: strip tags and tier headers, keep the top lines, hard-truncate."""
    counter = counter or get_token_counter()
    kept: list[str] = []
    used = 0

    for line in text.splitlines():
        line = _TAG_PATTERN.sub("", line).strip()
        if not line or _TIER_HEADER_PATTERN.match(line):
            continue
        cost = counter.count_tokens(line) + 1
        if used + cost > max_tokens:
            if not kept:
                kept.append(counter.truncate_to_limit(line, max_tokens))
            break
        kept.append(line)
        used += cost

    return counter.truncate_to_limit("\n".join(kept), max_tokens)


async def compress_recalled(
    llm: BaseLLM,
    rendered: str,
    max_tokens: int,
    model: str | None = None,
    counter: TokenCounter | None = None,
) -> str:
    """Fit ``rendered`` under ``max_tokens``, summarizing with the LLM if needed."""
    counter = counter or get_token_counter()
    if not rendered or counter.count_tokens(rendered) <= max_tokens:
        return rendered

    try:
        digest = await llm.summarize_memory(
            rendered,
            model=model,
            system_prompt=COMPRESS_SYSTEM_PROMPT.format(max_tokens=max_tokens),
        )
    except Exception as e:
        logger.warning("Recall compression failed, using heuristic", error=str(e))
        return heuristic_compress(rendered, max_tokens, counter)

    digest = digest.strip()
    if not digest:
        return heuristic_compress(rendered, max_tokens, counter)
    return counter.truncate_to_limit(digest, max_tokens)


def build_autonomous_cue(history: list[ChatMessage]) -> str:
    """Digest of the latest tool-driven activity, used as a recall cue."""
    parts: list[str] = []
    for message in reversed(history[-AUTONOMOUS_CUE_MESSAGES:]):
        if message.role == "user":
            break
        if message.role == "assistant" and message.tool_calls:
            parts.append("calls: " + ", ".join(tc.name for tc in message.tool_calls))
        elif message.role == "tool":
            text = " ".join(message.text.split())[:200]
            parts.append(f"{message.name or 'tool'}: {text}")
        elif message.role == "assistant" and message.text:
            parts.append(" ".join(message.text.split())[:200])

    parts.reverse()
    return " | ".join(parts)[:AUTONOMOUS_CUE_CHARS]


def build_cues(user_text: str, history: list[ChatMessage]) -> list[str]:
    """The literal user message plus recent autonomous context."""
    cues = [user_text.strip()]
    autonomous = build_autonomous_cue(history[:-1] if history else history)
    if autonomous:
        cues.append(autonomous)
    return [c for c in cues if c]
