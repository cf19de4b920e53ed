"""
Assemble per-chunk transcripts into a single document.
Handles overlap deduplication at chunk boundaries.
"""

import logging
import math
import re
from difflib import SequenceMatcher
from typing import Optional

from transcriber.core.constants import (
    PARAGRAPH_DELIMITER, WORDS_PER_SECOND, ALIGN_WINDOW_SLACK, MIN_ALIGN_TOKENS,
)
from transcriber.core.error_codes import InvalidInput
from transcriber.core.modes import get_mode_config
from transcriber.core.models import ChunkDescriptor

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\S+")
_PUNCT_RE = re.compile(r"[^\w']+")


def alignment_window(overlap_sec: float) -> int:
    """Number of tokens to compare on each side of a boundary."""
    return math.ceil(overlap_sec * WORDS_PER_SECOND * ALIGN_WINDOW_SLACK)


def _tokens(words: list[str], tag: str) -> list[str]:
    # Case/punctuation-insensitive; bare punctuation gets a unique token so it never matches
    out = []
    for i, word in enumerate(words):
        token = _PUNCT_RE.sub('', word.lower())
        out.append(token or f"\x00{tag}{i}")
    return out


def find_overlap_boundary(text_a: str, text_b: str, window: int) -> Optional[tuple[int, int]]:
    """
    Locate the longest common token run between the tail of text_a and the
    head of text_b. Returns character offsets (cut_a, keep_b) such that
    text_a[:cut_a] + text_b[keep_b:] drops the duplicated span, or None
    when no run of at least MIN_ALIGN_TOKENS is found.
    """
    spans_a = list(_WORD_RE.finditer(text_a))
    spans_b = list(_WORD_RE.finditer(text_b))
    tail_len = min(window, len(spans_a) // 2)
    head_len = min(window, len(spans_b) // 2)
    if tail_len < MIN_ALIGN_TOKENS or head_len < MIN_ALIGN_TOKENS:
        return None

    offset_a = len(spans_a) - tail_len
    tail = _tokens([m.group() for m in spans_a[offset_a:]], 'a')
    head = _tokens([m.group() for m in spans_b[:head_len]], 'b')

    matcher = SequenceMatcher(None, tail, head, autojunk=False)
    match = matcher.find_longest_match(0, len(tail), 0, len(head))
    if match.size < MIN_ALIGN_TOKENS:
        return None

    logger.debug("Aligned %d tokens at boundary (tail pos %d, head pos %d)",
                 match.size, match.a, match.b)
    return spans_a[offset_a + match.a].start(), spans_b[match.b].start()


def dedupe_overlap(text_a: str, text_b: str, window: int) -> str:
    """
    Join two consecutive transcripts whose audio overlapped.
    Falls back to a paragraph break when the boundary cannot be aligned,
    which may leave a short repeated phrase but never drops words.
    """
    if not text_a.strip() or not text_b.strip():
        return (text_a.strip() + PARAGRAPH_DELIMITER + text_b.strip()).strip()

    boundary = find_overlap_boundary(text_a, text_b, window)
    if boundary is None:
        logger.debug("No confident alignment; concatenating with paragraph break")
        return text_a.rstrip() + PARAGRAPH_DELIMITER + text_b.lstrip()

    cut_a, keep_b = boundary
    return text_a[:cut_a].rstrip() + ' ' + text_b[keep_b:].lstrip()


def normalize_whitespace(text: str) -> str:
    """Collapse whitespace inside paragraphs; keep single blank lines between them."""
    paragraphs = re.split(r"\n\s*\n", text)
    cleaned = [re.sub(r"\s+", ' ', p).strip() for p in paragraphs]
    return PARAGRAPH_DELIMITER.join(p for p in cleaned if p)


def join_subchunk_transcripts(texts: list[str]) -> str:
    """Sub-chunks of one split chunk read as continuous speech."""
    return ' '.join(t.strip() for t in texts if t and t.strip())


def assemble_transcript(chunks: list[ChunkDescriptor], transcripts: list[str], mode: str) -> str:
    """
    Merge chunk transcripts in ascending chunk index order.
    Non-overlap modes join with a paragraph break; overlap modes align and
    drop the text produced twice by the shared audio.
    """
    if len(chunks) != len(transcripts):
        raise InvalidInput(f"Got {len(transcripts)} transcripts for {len(chunks)} chunks")
    if not chunks:
        return ""

    mode_config = get_mode_config(mode)
    ordered = sorted(zip(chunks, transcripts), key=lambda pair: pair[0].index)

    if not mode_config.has_overlap:
        return normalize_whitespace(PARAGRAPH_DELIMITER.join(
            (text or '').strip() for _, text in ordered))

    result = ordered[0][1] or ''
    for (prev_chunk, _), (_, text) in zip(ordered, ordered[1:]):
        text = text or ''
        if prev_chunk.has_overlap:
            if prev_chunk.overlap_start_time is not None:
                overlap_sec = prev_chunk.duration - prev_chunk.overlap_start_time
            else:
                overlap_sec = mode_config.overlap_duration
            result = dedupe_overlap(result, text, alignment_window(overlap_sec))
        else:
            result = result.rstrip() + PARAGRAPH_DELIMITER + text.lstrip()

    return normalize_whitespace(result)
