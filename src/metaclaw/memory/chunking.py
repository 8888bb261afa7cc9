"""
Split long text into memory-sized chunks.

Chunks break at sentence boundaries first and word boundaries second.
Inside a chunk, pieces keep the spacing of the source: a space where the
input had whitespace, nothing where it had none (full-width sentence
endings, cut words), so the chunks read back as the input with its
whitespace normalized.
"""

import re

CHUNK_TARGET_CHARS = 1200
CHUNK_MAX_CHARS = 1600

# Latin terminators only count when followed by whitespace ("3.14" stays whole);
# full-width terminators end a sentence on their own.
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+|(?<=[。．！？])\s*|\n+")


def _normalize(text: str) -> str:
    return " ".join(text.split())


def _pack_words(text: str, max_chars: int) -> list[tuple[str, str]]:
    """Greedy word packing; each piece comes with the separator before it."""
    pieces: list[tuple[str, str]] = []
    current = ""
    joiner = ""

    for word in text.split():
        word_joiner = " "
        while len(word) > max_chars:
            if current:
                pieces.append((current, joiner))
                current = ""
            pieces.append((word[:max_chars], word_joiner))
            word = word[max_chars:]
            word_joiner = ""
        if not word:
            continue

        if not current:
            current, joiner = word, word_joiner
        elif len(current) + 1 + len(word) <= max_chars:
            current += f" {word}"
        else:
            pieces.append((current, joiner))
            current, joiner = word, " "

    if current:
        pieces.append((current, joiner))
    return pieces


def split_by_word_boundary(text: str, max_chars: int) -> list[str]:
    """Pack words greedily into pieces of at most ``max_chars``.

    A single word longer than ``max_chars`` is the one case that gets cut.
    """
    return [piece for piece, _ in _pack_words(text, max_chars)]


def _sentence_units(text: str, max_chars: int) -> list[tuple[str, str]]:
    segments: list[tuple[str, str]] = []
    pos = 0
    gap = ""
    for match in _SENTENCE_BREAK.finditer(text):
        segments.append((gap, text[pos:match.start()]))
        gap = match.group()
        pos = match.end()
    segments.append((gap, text[pos:]))

    units: list[tuple[str, str]] = []
    spaced = False
    for gap, raw in segments:
        spaced = spaced or bool(gap) or raw[:1].isspace()
        unit = _normalize(raw)
        if not unit:
            continue
        joiner = " " if spaced else ""
        spaced = False
        if len(unit) <= max_chars:
            units.append((unit, joiner))
            continue
        for index, (piece, piece_joiner) in enumerate(_pack_words(unit, max_chars)):
            units.append((piece, joiner if index == 0 else piece_joiner))
    return units


def split_text_for_memory(
    text: str,
    target_chars: int = CHUNK_TARGET_CHARS,
    max_chars: int = CHUNK_MAX_CHARS,
) -> list[str]:
    """Split ``text`` into chunks no longer than ``max_chars``.

    Sentences are packed into a chunk until it reaches ``target_chars`` or the
    next sentence would push it past ``max_chars``.
    """
    if target_chars > max_chars:
        target_chars = max_chars

    normalized = _normalize(text)
    if not normalized:
        return []
    if len(normalized) <= target_chars:
        return [normalized]

    chunks: list[str] = []
    current = ""

    for unit, joiner in _sentence_units(text, max_chars):
        if not current:
            current = unit
        elif len(current) >= target_chars:
            chunks.append(current)
            current = unit
        elif len(current) + len(joiner) + len(unit) <= max_chars:
            current += joiner + unit
        else:
            chunks.append(current)
            current = unit

    if current:
        chunks.append(current)
    return chunks
