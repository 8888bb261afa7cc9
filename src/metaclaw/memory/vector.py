"""
Vector Memory - semantic long-term memory for a session.

Every entry is a short text fragment with its embedding and metadata. The
conversation is fed in automatically (``auto_add``) and by explicit saves
(``add``); ``human_like_recall`` retrieves fragments for a turn.

Recall is modelled loosely on human memory:

- Cue-driven retrieval: several cues (the user's message plus recent
  autonomous context) are matched, and an entry counts by its best cue.
- Salience: errors, todos and other important events are easier to recall.
- Accessibility: memories recalled often become easier to recall again.
- Recency decay and deduplication keep results relevant and diverse.
"""

import asyncio
import json
import math
import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Literal

import structlog

from ..llm.base import ChatMessage, Embedder
from .chunking import CHUNK_MAX_CHARS, CHUNK_TARGET_CHARS, split_text_for_memory

logger = structlog.get_logger()

MAX_CUES = 6
MIN_AUTO_TEXT_CHARS = 10

IMPORTANT_HINTS = (
    "important",
    "remember",
    "todo",
    "deadline",
    "urgent",
    "must",
    "required",
    "error",
    "failed",
    "exception",
)
_ERROR_PATTERN = re.compile(r"error|fail|exception|timeout")
_REFERENCE_PATTERN = re.compile(r"([a-zA-Z]:\\|/|\.py\b|\.ts\b|\.js\b|\.json\b|https?://)")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = mag_a = mag_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        mag_a += x * x
        mag_b += y * y
    if mag_a == 0 or mag_b == 0:
        return 0.0
    return dot / (math.sqrt(mag_a) * math.sqrt(mag_b))


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class MemoryMetadata:
    """Metadata stored with every memory entry."""

    timestamp: str = field(default_factory=lambda: _now().isoformat())
    role: str | None = None
    type: Literal["auto", "manual"] = "manual"
    salience: float = 0.5
    recall_count: int = 0
    last_recalled_at: str | None = None
    session_id: str | None = None
    category: str | None = None

    @property
    def created_at(self) -> datetime:
        return _parse_time(self.timestamp) or datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class MemoryEntry:
    """One stored memory fragment."""

    id: str
    text: str
    embedding: list[float]
    metadata: MemoryMetadata

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemoryEntry":
        known = MemoryMetadata.__dataclass_fields__
        meta = {k: v for k, v in data.get("metadata", {}).items() if k in known}
        return cls(
            id=data["id"],
            text=data["text"],
            embedding=list(data.get("embedding", [])),
            metadata=MemoryMetadata(**meta),
        )


@dataclass
class RecallOptions:
    """Knobs for ``human_like_recall``. The defaults are policy, not invariants."""

    limit: int = 6
    min_similarity: float = 0.55
    decay_rate: float = 0.05  # per day
    dedupe_threshold: float = 0.90
    salience_weight: float = 0.25
    recall_weight: float = 0.08
    recency_floor: float = 0.5  # recency can at most halve a score
    recent_recall_penalty: float = 0.85
    recent_recall_window: float = 30.0  # seconds
    mark_as_recalled: bool = True


@dataclass
class RecalledEntry:
    """A recall hit with its scores."""

    entry: MemoryEntry
    similarity: float
    combined_score: float


def calculate_salience(message: ChatMessage, text: str) -> float:
    """Heuristic importance of an automatically saved message."""
    salience = 0.1

    if message.role == "tool":
        salience += 0.25
    elif message.role == "user":
        salience += 0.2
    elif message.role == "assistant":
        salience += 0.15

    normalized = text.lower()
    if any(hint in normalized for hint in IMPORTANT_HINTS):
        salience += 0.25
    if _ERROR_PATTERN.search(normalized):
        salience += 0.2
    if _REFERENCE_PATTERN.search(text):
        salience += 0.1
    if 200 <= len(text) <= 2000:
        salience += 0.1

    return clamp01(salience)


def extract_text_for_memory(message: ChatMessage) -> str:
    """Plain text of a message for memory, images stripped."""
    parts: list[str] = []

    if message.role == "tool" and message.name:
        parts.append(f"[tool:{message.name}]")

    text = message.text
    if text:
        parts.append(text)

    if message.role == "assistant" and message.tool_calls:
        parts.append(", ".join(
            f"call:{tc.name}({tc.arguments[:200]})" for tc in message.tool_calls
        ))

    return " | ".join(parts)


class VectorMemory:
    """Embedded memory entries persisted to ``<workspace>/memory/vectors.json``.

    Safe for concurrent use from several tasks: mutations and saves happen
    under an internal lock, embedding calls happen outside it.
    """

    def __init__(
        self,
        workspace_dir: str | Path,
        embedder: Embedder,
        session_id: str | None = None,
        chunk_target: int = CHUNK_TARGET_CHARS,
        max_entry_chars: int = CHUNK_MAX_CHARS,
    ):
        self.file_path = Path(workspace_dir) / "memory" / "vectors.json"
        self.embedder = embedder
        self.session_id = session_id
        self.chunk_target = chunk_target
        self.max_entry_chars = max_entry_chars
        self._entries: list[MemoryEntry] = []
        self._lock = asyncio.Lock()
        self._load()

    def update_embedder(self, embedder: Embedder) -> None:
        self.embedder = embedder

    def _load(self) -> None:
        if not self.file_path.exists():
            return
        try:
            raw = json.loads(self.file_path.read_text(encoding="utf-8"))
            self._entries = [MemoryEntry.from_dict(item) for item in raw]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            backup = self.file_path.with_suffix(".json.corrupt")
            self.file_path.replace(backup)
            logger.warning(
                "Vector memory file unreadable, moved aside",
                path=str(self.file_path),
                backup=str(backup),
                error=str(e),
            )
            self._entries = []

    def _save(self) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.file_path.with_suffix(".json.tmp")
        tmp_path.write_text(
            json.dumps([e.to_dict() for e in self._entries], ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        tmp_path.replace(self.file_path)

    async def _store_chunks(self, chunks: list[str], base: MemoryMetadata) -> list[str]:
        """Embed and store chunks; timestamps step by a microsecond to keep chunk order."""
        embeddings = [await self.embedder.embed(chunk) for chunk in chunks]
        start = base.created_at
        ids: list[str] = []

        async with self._lock:
            for offset, (chunk, embedding) in enumerate(zip(chunks, embeddings)):
                meta = MemoryMetadata(**asdict(base))
                meta.timestamp = (start + timedelta(microseconds=offset)).isoformat()
                entry = MemoryEntry(
                    id=uuid.uuid4().hex,
                    text=chunk,
                    embedding=embedding,
                    metadata=meta,
                )
                self._entries.append(entry)
                ids.append(entry.id)
            self._save()

        return ids

    def _chunk(self, text: str) -> list[str]:
        # Split only past the entry ceiling; shorter text stays one entry
        if len(text) <= self.max_entry_chars:
            return [text] if text.strip() else []
        return split_text_for_memory(text, self.chunk_target, self.max_entry_chars)

    async def add(self, text: str, metadata: dict[str, Any] | None = None) -> str:
        """Embed and store ``text``; returns the id of the first stored entry.

        Text longer than the entry ceiling is stored as several chunks.
        """
        meta = MemoryMetadata(session_id=self.session_id)
        for key, value in (metadata or {}).items():
            if key in MemoryMetadata.__dataclass_fields__ and value is not None:
                setattr(meta, key, value)
        meta.salience = clamp01(float(meta.salience))

        chunks = self._chunk(text)
        if not chunks:
            raise ValueError("Cannot store empty memory text")

        ids = await self._store_chunks(chunks, meta)
        logger.debug("Memory added", entries=len(ids), type=meta.type)
        return ids[0]

    async def auto_add(self, message: ChatMessage) -> list[str]:
        """Save a conversation message to memory. Skips empty or trivial text."""
        text = extract_text_for_memory(message)
        if len(text.strip()) < MIN_AUTO_TEXT_CHARS:
            return []

        chunks = self._chunk(text)
        if not chunks:
            return []

        ids: list[str] = []
        base_time = _now()
        for index, chunk in enumerate(chunks):
            meta = MemoryMetadata(
                timestamp=(base_time + timedelta(microseconds=index)).isoformat(),
                role=message.role,
                type="auto",
                salience=calculate_salience(message, chunk),
                session_id=self.session_id,
            )
            ids.extend(await self._store_chunks([chunk], meta))
        return ids

    async def search(self, query: str, limit: int = 10) -> list[RecalledEntry]:
        """Plain cosine ranking against one query. Does not touch recall metadata."""
        entries = self.entries_snapshot()
        if not entries:
            return []
        query_embedding = await self.embedder.embed(query)
        scored = []
        for entry in entries:
            score = cosine_similarity(query_embedding, entry.embedding)
            scored.append(RecalledEntry(entry=entry, similarity=score, combined_score=score))
        scored.sort(key=lambda r: r.similarity, reverse=True)
        return scored[:limit]

    async def human_like_recall(
        self,
        cues: list[str],
        options: RecallOptions | None = None,
    ) -> list[RecalledEntry]:
        """Recall entries matching any of ``cues``, best first.

        Unless ``options.mark_as_recalled`` is False, every returned entry gets
        its ``recall_count`` incremented and ``last_recalled_at`` set.
        """
        options = options or RecallOptions()
        entries = self.entries_snapshot()
        if not entries:
            return []

        normalized = [c.strip() for c in cues if c and c.strip()][:MAX_CUES]
        if not normalized:
            return []

        cue_embeddings = await asyncio.gather(*(self.embedder.embed(c) for c in normalized))
        now = _now()

        candidates: list[RecalledEntry] = []
        for entry in entries:
            similarity = max(cosine_similarity(e, entry.embedding) for e in cue_embeddings)
            if similarity < options.min_similarity:
                continue

            meta = entry.metadata
            days_old = max(0.0, (now - meta.created_at).total_seconds() / 86400)
            recency = options.recency_floor + (1 - options.recency_floor) * math.exp(
                -options.decay_rate * days_old
            )
            salience_boost = 1 + options.salience_weight * clamp01(meta.salience or 0)
            recall_boost = 1 + options.recall_weight * math.log2((meta.recall_count or 0) + 1)

            penalty = 1.0
            last_recalled = _parse_time(meta.last_recalled_at)
            if last_recalled and (now - last_recalled).total_seconds() < options.recent_recall_window:
                penalty = options.recent_recall_penalty

            candidates.append(RecalledEntry(
                entry=entry,
                similarity=similarity,
                combined_score=similarity * recency * salience_boost * recall_boost * penalty,
            ))

        candidates.sort(
            key=lambda r: (r.combined_score, r.entry.metadata.created_at),
            reverse=True,
        )

        selected: list[RecalledEntry] = []
        for candidate in candidates:
            if len(selected) >= options.limit:
                break
            duplicate = any(
                cosine_similarity(s.entry.embedding, candidate.entry.embedding)
                >= options.dedupe_threshold
                for s in selected
            )
            if not duplicate:
                selected.append(candidate)

        if options.mark_as_recalled and selected:
            await self._touch_recalled([r.entry.id for r in selected], now)

        return selected

    async def smart_recall(
        self,
        query: str,
        options: RecallOptions | None = None,
    ) -> list[RecalledEntry]:
        return await self.human_like_recall([query], options)

    async def _touch_recalled(self, ids: list[str], when: datetime) -> None:
        wanted = set(ids)
        stamp = when.isoformat()
        async with self._lock:
            for entry in self._entries:
                if entry.id in wanted:
                    entry.metadata.recall_count = (entry.metadata.recall_count or 0) + 1
                    entry.metadata.last_recalled_at = stamp
            self._save()

    async def delete(self, entry_id: str) -> bool:
        async with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.id != entry_id]
            if len(self._entries) == before:
                return False
            self._save()
            return True

    def get(self, entry_id: str) -> MemoryEntry | None:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def entries_snapshot(self) -> list[MemoryEntry]:
        return list(self._entries)

    def list_entries(self, limit: int = 50) -> list[MemoryEntry]:
        """Newest entries first."""
        ordered = sorted(self._entries, key=lambda e: e.metadata.created_at, reverse=True)
        return ordered[:limit]

    def count(self) -> int:
        return len(self._entries)

    async def clear(self) -> None:
        async with self._lock:
            self._entries = []
            if self.file_path.exists():
                self.file_path.unlink()
        logger.info("Vector memory cleared", session_id=self.session_id)
