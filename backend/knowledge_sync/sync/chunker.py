"""Default segmentation policy for source versions.

Text is cut on paragraph boundaries, oversized paragraphs are cut on
sentences and then by length, and neighbouring pieces are packed into
chunks that respect a token budget with a small trailing overlap.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from functools import partial
from typing import Callable, Iterator, Sequence

from knowledge_sync.core.config import Settings

_SEGMENT_RE = re.compile(r"\n\s*\n", re.MULTILINE)
_SENTENCE_RE = re.compile(r"[^.!?\n]+[.!?]?", re.MULTILINE)


@dataclass(slots=True)
class TextPiece:
    """A chunk of a version's text prior to persistence."""

    text: str
    char_start: int
    char_end: int
    token_count: int


@dataclass(slots=True)
class _Segment:
    text: str
    start: int
    end: int


Segmenter = Callable[[str], list[TextPiece]]


def segment_text(
    text: str,
    target_tokens: int = 200,
    max_tokens: int = 320,
    min_tokens: int = 80,
    overlap_tokens: int = 40,
) -> list[TextPiece]:
    """Split text into ordered pieces respecting token budgets."""
    if not text.strip():
        return []

    expanded: list[_Segment] = []
    for segment in _iter_segments(text):
        expanded.extend(_shrink_segment(segment, max_tokens))

    pieces: list[TextPiece] = []
    current: list[_Segment] = []
    current_tokens = 0

    for segment in expanded:
        seg_tokens = count_tokens(segment.text)
        if not current:
            current.append(segment)
            current_tokens = seg_tokens
            continue

        if current_tokens + seg_tokens <= target_tokens:
            current.append(segment)
            current_tokens += seg_tokens
            continue

        if current_tokens < min_tokens and current_tokens + seg_tokens <= max_tokens:
            current.append(segment)
            current_tokens += seg_tokens
        else:
            pieces.append(_finalize(text, current))
            current = _apply_overlap(current, overlap_tokens)
            current.append(segment)
            current_tokens = sum(count_tokens(seg.text) for seg in current)

    if current:
        pieces.append(_finalize(text, current))

    return pieces


def segmenter_from_settings(settings: Settings) -> Segmenter:
    return partial(
        segment_text,
        target_tokens=settings.chunk_target_tokens,
        max_tokens=settings.chunk_max_tokens,
        min_tokens=settings.chunk_min_tokens,
        overlap_tokens=settings.chunk_overlap_tokens,
    )


def count_tokens(text: str) -> int:
    return max(1, len(text.split()))


def _iter_segments(text: str) -> Iterator[_Segment]:
    last_index = 0
    for match in _SEGMENT_RE.finditer(text):
        segment = _trim_segment(text, last_index, match.start())
        if segment:
            yield segment
        last_index = match.end()
    if last_index < len(text):
        segment = _trim_segment(text, last_index, len(text))
        if segment:
            yield segment


def _trim_segment(text: str, start: int, end: int) -> _Segment | None:
    seg_start = start
    seg_end = end
    while seg_start < seg_end and text[seg_start].isspace():
        seg_start += 1
    while seg_end > seg_start and text[seg_end - 1].isspace():
        seg_end -= 1
    if seg_start >= seg_end:
        return None
    return _Segment(text=text[seg_start:seg_end], start=seg_start, end=seg_end)


def _shrink_segment(segment: _Segment, max_tokens: int) -> list[_Segment]:
    if count_tokens(segment.text) <= max_tokens:
        return [segment]
    sentences = list(_sentence_segments(segment))
    if len(sentences) > 1:
        shrunk: list[_Segment] = []
        for sentence in sentences:
            shrunk.extend(_shrink_segment(sentence, max_tokens))
        return shrunk
    return _split_by_words(segment, max_tokens)


def _sentence_segments(segment: _Segment) -> Iterator[_Segment]:
    for match in _SENTENCE_RE.finditer(segment.text):
        sentence = match.group().strip()
        if not sentence:
            continue
        rel_start = match.start() + match.group().find(sentence)
        start = segment.start + rel_start
        yield _Segment(text=sentence, start=start, end=start + len(sentence))


def _split_by_words(segment: _Segment, max_tokens: int) -> list[_Segment]:
    words = list(re.finditer(r"\S+", segment.text))
    pieces = max(1, math.ceil(len(words) / max_tokens))
    step = max(1, math.ceil(len(words) / pieces))
    segments: list[_Segment] = []
    for offset in range(0, len(words), step):
        group = words[offset : offset + step]
        rel_start = group[0].start()
        rel_end = group[-1].end()
        segments.append(
            _Segment(
                text=segment.text[rel_start:rel_end],
                start=segment.start + rel_start,
                end=segment.start + rel_end,
            )
        )
    return segments


def _finalize(text: str, segments: Sequence[_Segment]) -> TextPiece:
    start = segments[0].start
    end = segments[-1].end
    piece_text = text[start:end]
    return TextPiece(text=piece_text, char_start=start, char_end=end, token_count=count_tokens(piece_text))


def _apply_overlap(segments: Sequence[_Segment], overlap_tokens: int) -> list[_Segment]:
    if not segments or overlap_tokens <= 0:
        return []
    retained: list[_Segment] = []
    budget = 0
    # The first segment stays behind so a chunk is never repeated whole.
    for segment in reversed(segments[1:]):
        seg_tokens = count_tokens(segment.text)
        if budget + seg_tokens > overlap_tokens:
            break
        retained.append(segment)
        budget += seg_tokens
    return list(reversed(retained))


__all__ = ["TextPiece", "Segmenter", "segment_text", "segmenter_from_settings", "count_tokens"]
