"""
kbchat - Chunker
=================
Splits knowledge-item text into bounded, overlapping, boundary-aware
chunks.

Algorithm
---------
1. Empty input → no chunks.  Input no longer than ``max_length`` →
   a single chunk with no overlap.
2. Cut the text into *units* that are exact, contiguous slices of the
   input, trying separators in priority order and descending a level
   only for a unit that is still longer than ``max_length``:
       paragraphs (blank line)  → if ``preserve_paragraphs``
       sentences  (``.!?`` + whitespace) → if ``preserve_sentences``
       words      (whitespace)
       fixed-width character slices (last resort)
   Separators stay attached to the unit they end, so the units joined
   back together are the original text, character for character.
3. Greedily pack consecutive units into bodies of at most
   ``max_length`` characters.
4. Every chunk after the first is prefixed with the last
   ``overlap_length`` characters of the chunk before it.

Consequences
------------
* Stripping ``min(overlap_length, len(previous_chunk))`` leading
  characters from each chunk after the first and concatenating
  reconstructs the input exactly.
* ``len(chunk) <= max_length + overlap_length`` for every chunk.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, model_validator

from kbchat.config.settings import settings
from kbchat.src.utils.logger import get_logger

logger = get_logger(__name__)

_PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t]*\n\s*")
_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+")
_WORD_GAP_RE = re.compile(r"\s+")


class ChunkingOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_length: int = Field(default_factory=lambda: settings.CHUNK_MAX_LENGTH, gt=0)
    overlap_length: int = Field(default_factory=lambda: settings.CHUNK_OVERLAP, ge=0)
    preserve_paragraphs: bool = Field(default_factory=lambda: settings.PRESERVE_PARAGRAPHS)
    preserve_sentences: bool = Field(default_factory=lambda: settings.PRESERVE_SENTENCES)

    @model_validator(mode="after")
    def _overlap_below_max(self) -> "ChunkingOptions":
        if self.overlap_length >= self.max_length:
            raise ValueError(f"overlap_length ({self.overlap_length}) must be smaller than max_length ({self.max_length})")
        return self


def chunk_text(text: str, options: ChunkingOptions | None = None) -> list[str]:
    """
    Split *text* into ordered chunks.

    Args:
        text:    Raw (already cleaned) knowledge text.
        options: Size and boundary options; defaults come from settings.

    Returns:
        Ordered chunks covering the whole input.
    """
    opts = options or ChunkingOptions()

    if not text or not text.strip():
        return []
    if len(text) <= opts.max_length:
        return [text]

    levels: list[re.Pattern[str]] = []
    if opts.preserve_paragraphs:
        levels.append(_PARAGRAPH_BREAK_RE)
    if opts.preserve_sentences:
        levels.append(_SENTENCE_END_RE)
    levels.append(_WORD_GAP_RE)

    units = _split_units(text, levels, opts.max_length)
    bodies = _pack(units, opts.max_length)
    chunks = _apply_overlap(bodies, opts.overlap_length)

    logger.debug("[CHUNKER] %d chars → %d unit(s) → %d chunk(s) (max=%d, overlap=%d).", len(text), len(units), len(chunks), opts.max_length, opts.overlap_length)
    return chunks


def overlap_prefix_length(previous_chunk: str, overlap_length: int) -> int:
    """Length of the overlap prefix carried by the chunk after *previous_chunk*."""
    return min(overlap_length, len(previous_chunk))


def validate_chunk_size(chunks: list[str], max_length: int, overlap_length: int) -> list[int]:
    """
    Flag chunks longer than ``max_length + overlap_length``.

    Non-fatal: offending chunks are logged and their indexes returned,
    ingestion carries on regardless.
    """
    limit = max_length + overlap_length
    oversized = [i for i, chunk in enumerate(chunks) if len(chunk) > limit]
    for i in oversized:
        logger.warning("[CHUNKER] Chunk %d is %d chars (limit %d).", i, len(chunks[i]), limit)
    return oversized

# ── Internals ──────────────────────────────────────────────────────────


def _split_after(text: str, pattern: re.Pattern[str]) -> list[str]:
    """Split *text* after every match of *pattern*, keeping the separator."""
    pieces: list[str] = []
    start = 0
    for match in pattern.finditer(text):
        end = match.end()
        if end > start:
            pieces.append(text[start:end])
            start = end
    if start < len(text):
        pieces.append(text[start:])
    return pieces


def _split_units(text: str, levels: list[re.Pattern[str]], max_length: int) -> list[str]:
    if len(text) <= max_length:
        return [text]

    if not levels:
        return [text[i : i + max_length] for i in range(0, len(text), max_length)]

    pieces = _split_after(text, levels[0])
    if len(pieces) <= 1:
        return _split_units(text, levels[1:], max_length)

    units: list[str] = []
    for piece in pieces:
        if len(piece) > max_length:
            units.extend(_split_units(piece, levels[1:], max_length))
        else:
            units.append(piece)
    return units


def _pack(units: list[str], max_length: int) -> list[str]:
    bodies: list[str] = []
    current = ""
    for unit in units:
        if current and len(current) + len(unit) > max_length:
            bodies.append(current)
            current = unit
        else:
            current += unit
    if current:
        bodies.append(current)
    return bodies


def _apply_overlap(bodies: list[str], overlap_length: int) -> list[str]:
    chunks: list[str] = []
    for body in bodies:
        if chunks and overlap_length > 0:
            previous = chunks[-1]
            body = previous[-overlap_length:] + body
        chunks.append(body)
    return chunks
