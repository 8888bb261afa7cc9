"""
Tests for vector memory storage and human-like recall.
"""

import json

import pytest

from metaclaw.llm.base import ChatMessage, ToolCall
from metaclaw.memory.vector import (
    RecallOptions,
    VectorMemory,
    calculate_salience,
    cosine_similarity,
    extract_text_for_memory,
)

from conftest import KeywordEmbedder


@pytest.fixture
def memory(tmp_path, embedder):
    return VectorMemory(tmp_path, embedder, session_id="session-a")


def test_cosine_similarity():
    """Test cosine similarity edge cases."""
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([0, 0], [1, 1]) == 0.0


@pytest.mark.asyncio
async def test_recall_ranks_relevant_memory_first(memory):
    """Test multi-cue retrieval ranking."""
    await memory.add(
        "Deploy pipeline failed with timeout while publishing release",
        {"timestamp": "2026-01-01T00:00:00+00:00", "role": "tool", "type": "auto", "salience": 0.95},
    )
    await memory.add(
        "User likes coffee in the morning",
        {"timestamp": "2026-02-20T00:00:00+00:00", "role": "user", "type": "auto", "salience": 0.2},
    )

    recalled = await memory.human_like_recall(
        ["deploy timeout", "pipeline release error"],
        RecallOptions(limit=2, min_similarity=0.1, decay_rate=0.01),
    )

    assert recalled
    assert "Deploy pipeline failed" in recalled[0].entry.text
    assert all("coffee" not in r.entry.text for r in recalled)


@pytest.mark.asyncio
async def test_recall_updates_metadata_by_default(memory):
    """Test that recall marks entries unless told not to."""
    entry_id = await memory.add(
        "Remember budget threshold for hosting costs",
        {"role": "assistant", "type": "manual", "salience": 0.8},
    )

    await memory.human_like_recall(["budget reminder"], RecallOptions(limit=1, min_similarity=0.1))
    touched = memory.get(entry_id)
    assert touched.metadata.recall_count == 1
    assert touched.metadata.last_recalled_at

    await memory.human_like_recall(
        ["budget reminder"],
        RecallOptions(limit=1, min_similarity=0.1, mark_as_recalled=False),
    )
    assert memory.get(entry_id).metadata.recall_count == 1


@pytest.mark.asyncio
async def test_recall_uses_best_cue(memory):
    """Test that an entry matching only one cue is still found."""
    await memory.add("Coffee order: oat flat white")

    recalled = await memory.human_like_recall(["deploy release", "coffee"])

    assert len(recalled) == 1
    assert recalled[0].similarity > 0.9


@pytest.mark.asyncio
async def test_recall_filters_by_min_similarity(memory):
    """Test that unrelated entries are not recalled."""
    await memory.add("User likes coffee in the morning")

    assert await memory.human_like_recall(["deploy timeout"]) == []


@pytest.mark.asyncio
async def test_recall_empty_inputs(memory):
    """Test recall with no entries or blank cues."""
    assert await memory.human_like_recall(["anything"]) == []
    await memory.add("Deploy notes")
    assert await memory.human_like_recall(["", "   "]) == []


@pytest.mark.asyncio
async def test_recall_prefers_salient_memories(memory):
    """Test the salience boost."""
    await memory.add("release checklist for deploy", {"salience": 0.1})
    await memory.add("release checklist for deploy!", {"salience": 0.9})

    recalled = await memory.human_like_recall(
        ["deploy"], RecallOptions(dedupe_threshold=1.01, mark_as_recalled=False)
    )

    assert len(recalled) == 2
    assert recalled[0].entry.metadata.salience == 0.9
    assert recalled[0].combined_score > recalled[1].combined_score


@pytest.mark.asyncio
async def test_recall_prefers_recent_memories(memory):
    """Test recency decay with equal salience."""
    await memory.add("old deploy notes", {"timestamp": "2020-01-01T00:00:00+00:00"})
    await memory.add("new deploy notes")

    recalled = await memory.human_like_recall(
        ["deploy"], RecallOptions(dedupe_threshold=1.01, mark_as_recalled=False)
    )

    assert [r.entry.text for r in recalled] == ["new deploy notes", "old deploy notes"]


@pytest.mark.asyncio
async def test_recency_floor_bounds_decay(memory):
    """Test that a very old memory keeps at least the floor share of its score."""
    await memory.add("ancient deploy notes", {"timestamp": "2000-01-01T00:00:00+00:00", "salience": 0})

    options = RecallOptions(recency_floor=0.5, salience_weight=0, mark_as_recalled=False)
    recalled = await memory.human_like_recall(["deploy"], options)

    assert recalled[0].combined_score == pytest.approx(recalled[0].similarity * 0.5, rel=1e-3)


@pytest.mark.asyncio
async def test_recall_deduplicates_near_identical_entries(memory):
    """Test that near-duplicates are returned once."""
    await memory.add("deploy pipeline notes")
    await memory.add("deploy pipeline notes")

    recalled = await memory.human_like_recall(["deploy"])

    assert len(recalled) == 1


@pytest.mark.asyncio
async def test_recently_recalled_entries_are_penalized(memory):
    """Test the short-window penalty on repeated recall."""
    await memory.add("deploy pipeline notes", {"salience": 0.5})
    options = RecallOptions(recall_weight=0.08)

    first = await memory.human_like_recall(["deploy"], options)
    second = await memory.human_like_recall(["deploy"], options)

    # one prior recall: boost 1 + 0.08 * log2(2), penalty 0.85
    expected = first[0].combined_score * 1.08 * 0.85
    assert second[0].combined_score == pytest.approx(expected, rel=1e-3)


@pytest.mark.asyncio
async def test_recall_respects_limit(memory):
    """Test the result limit."""
    for word in ("deploy", "error", "budget", "coffee"):
        await memory.add(f"{word} deploy")

    recalled = await memory.human_like_recall(
        ["deploy"], RecallOptions(limit=2, min_similarity=0.1, dedupe_threshold=1.01)
    )

    assert len(recalled) == 2


@pytest.mark.asyncio
async def test_smart_recall_is_single_cue(memory):
    """Test smart_recall."""
    await memory.add("deploy pipeline notes")

    recalled = await memory.smart_recall("release")

    assert recalled[0].entry.text == "deploy pipeline notes"


@pytest.mark.asyncio
async def test_search_does_not_touch_metadata(memory):
    """Test that plain search leaves recall counts alone."""
    entry_id = await memory.add("deploy pipeline notes")
    await memory.add("coffee notes")

    results = await memory.search("deploy", limit=1)

    assert len(results) == 1
    assert results[0].entry.id == entry_id
    assert memory.get(entry_id).metadata.recall_count == 0


@pytest.mark.asyncio
async def test_auto_add_keeps_entries_within_max(memory):
    """Test that long messages are chunked in order."""
    text = "x" * 9000

    ids = await memory.auto_add(ChatMessage(role="user", content=text))

    assert len(ids) == 6
    entries = [memory.get(i) for i in ids]
    assert all(len(e.text) <= memory.max_entry_chars for e in entries)
    assert all(e.metadata.role == "user" and e.metadata.type == "auto" for e in entries)
    assert "".join(e.text for e in entries) == text
    assert memory.list_entries(1)[0].id == ids[-1]


@pytest.mark.asyncio
async def test_add_and_auto_add_chunk_alike(memory):
    """Test that text between the chunk target and the ceiling stays whole."""
    text = " ".join(["deploy notes for the release train."] * 40)
    assert memory.chunk_target < len(text) <= memory.max_entry_chars

    saved = await memory.add(text)
    auto = await memory.auto_add(ChatMessage(role="user", content=text))

    assert len(auto) == 1
    assert memory.get(saved).text == text
    assert memory.get(auto[0]).text == text
    assert memory.count() == 2


@pytest.mark.asyncio
async def test_auto_add_skips_trivial_text(memory):
    """Test that short messages are not stored."""
    assert await memory.auto_add(ChatMessage(role="user", content="ok")) == []
    assert await memory.auto_add(ChatMessage(role="assistant", content="")) == []
    assert memory.count() == 0


@pytest.mark.asyncio
async def test_add_rejects_empty_text(memory):
    """Test that empty text is refused."""
    with pytest.raises(ValueError):
        await memory.add("   ")


@pytest.mark.asyncio
async def test_add_clamps_salience_and_tags_session(memory):
    """Test metadata defaults on add."""
    entry_id = await memory.add("important budget", {"salience": 3, "unknown": "dropped"})

    entry = memory.get(entry_id)
    assert entry.metadata.salience == 1.0
    assert entry.metadata.session_id == "session-a"
    assert entry.metadata.type == "manual"


@pytest.mark.asyncio
async def test_entries_persist_across_instances(tmp_path, memory):
    """Test that entries reload from disk."""
    entry_id = await memory.add("deploy pipeline notes")

    reloaded = VectorMemory(tmp_path, KeywordEmbedder())

    assert reloaded.count() == 1
    assert reloaded.get(entry_id).text == "deploy pipeline notes"
    data = json.loads(memory.file_path.read_text())
    assert data[0]["metadata"]["session_id"] == "session-a"


def test_corrupt_file_is_moved_aside(tmp_path, embedder):
    """Test that an unreadable store starts empty and keeps a backup."""
    path = tmp_path / "memory" / "vectors.json"
    path.parent.mkdir(parents=True)
    path.write_text("{not json")

    memory = VectorMemory(tmp_path, embedder)

    assert memory.count() == 0
    assert not path.exists()
    assert (tmp_path / "memory" / "vectors.json.corrupt").read_text() == "{not json"


@pytest.mark.asyncio
async def test_delete_and_clear(memory):
    """Test deletion."""
    first = await memory.add("deploy notes")
    await memory.add("coffee notes")

    assert await memory.delete(first) is True
    assert await memory.delete(first) is False
    assert memory.get(first) is None
    assert memory.count() == 1

    await memory.clear()
    assert memory.count() == 0
    assert not memory.file_path.exists()


@pytest.mark.asyncio
async def test_update_embedder(memory):
    """Test swapping the embedder."""
    replacement = KeywordEmbedder()
    memory.update_embedder(replacement)

    await memory.add("deploy notes")

    assert replacement.calls == ["deploy notes"]


def test_calculate_salience():
    """Test the salience heuristic."""
    urgent = ChatMessage(role="user", content="Remember: the deploy failed with an error in /srv/app.py")
    plain = ChatMessage(role="assistant", content="Sounds good")

    assert calculate_salience(urgent, urgent.text) == pytest.approx(0.85)
    assert calculate_salience(plain, plain.text) == pytest.approx(0.25)
    assert calculate_salience(urgent, urgent.text * 40) <= 1.0


def test_extract_text_for_memory():
    """Test memory text for tool traffic."""
    result = ChatMessage(role="tool", content="42 rows", name="query", tool_call_id="c1")
    call = ChatMessage(
        role="assistant",
        content="Checking",
        tool_calls=[ToolCall(id="c1", name="query", arguments='{"sql": "select 1"}')],
    )

    assert extract_text_for_memory(result) == "[tool:query] | 42 rows"
    assert extract_text_for_memory(call) == 'Checking | call:query({"sql": "select 1"})'
