from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Tuple

from gflite.errors import EmptyInputError

_WORD_REGEX = re.compile(r"\S+")
_PARAGRAPH_BREAK_REGEX = re.compile(r"\n[^\S\n]*\n")
_SENTENCE_END_REGEX = re.compile(r"[.!?…]+[\"'”’)\]]*$")
_ABBREVIATION_END_RE = re.compile(
    r"\b(?:Mr|Mrs|Ms|Dr|Prof|Rev|Sr|Jr|St|Gen|Lt|Col|Sgt|Capt|Adm|Cmdr|vs|etc)\.$",
    re.IGNORECASE,
)

BOUNDARY_WHITESPACE = 0
BOUNDARY_SENTENCE = 1
BOUNDARY_PARAGRAPH = 2

# Fraction of the ideal chunk length a cut may drift to reach a stronger boundary.
SPLIT_TOLERANCE = 0.25


@dataclass(frozen=True)
class Chunk:
    ordinal: int
    text: str

    @property
    def characters(self) -> int:
        return len(self.text)

    def as_dict(self) -> Dict[str, object]:
        return {"ordinal": self.ordinal, "text": self.text}


@dataclass(frozen=True)
class _Gap:
    index: int
    position: int
    strength: int


def _boundary_strength(word: str, whitespace: str) -> int:
    if _PARAGRAPH_BREAK_REGEX.search(whitespace):
        return BOUNDARY_PARAGRAPH
    if _SENTENCE_END_REGEX.search(word) and not _ABBREVIATION_END_RE.search(word):
        return BOUNDARY_SENTENCE
    return BOUNDARY_WHITESPACE


def _scan(document: str) -> Tuple[List[Tuple[int, int]], List[_Gap]]:
    words = [(match.start(), match.end()) for match in _WORD_REGEX.finditer(document)]
    gaps: List[_Gap] = []
    for index in range(len(words) - 1):
        start, end = words[index]
        next_start = words[index + 1][0]
        strength = _boundary_strength(document[start:end], document[end:next_start])
        gaps.append(_Gap(index=index, position=end, strength=strength))
    return words, gaps


def _pick_gap(
    gaps: List[_Gap],
    *,
    lower: int,
    upper: int,
    ideal: float,
    window: float,
) -> _Gap:
    candidates = gaps[lower : upper + 1]
    in_window = [gap for gap in candidates if abs(gap.position - ideal) <= window]
    if in_window:
        return min(in_window, key=lambda gap: (-gap.strength, abs(gap.position - ideal), gap.index))
    return min(candidates, key=lambda gap: (abs(gap.position - ideal), gap.index))


def split(document: str, target_count: int) -> List[Chunk]:
    """Split ``document`` into at most ``target_count`` ordered chunks.

    Cuts are placed near equal-length positions, preferring paragraph breaks,
    then sentence ends, then any whitespace. Each chunk is an exact slice of
    the document without the whitespace around the cut.
    """

    if target_count < 1:
        raise ValueError(f"target_count must be at least 1, got {target_count}")
    words, gaps = _scan(document)
    if not words:
        raise EmptyInputError("input contains no text to synthesize")

    count = min(target_count, len(words))
    first_start = words[0][0]
    last_end = words[-1][1]
    if count == 1:
        return [Chunk(ordinal=0, text=document[first_start:last_end])]

    span = last_end - first_start
    ideal_length = span / count
    window = ideal_length * SPLIT_TOLERANCE

    cuts: List[_Gap] = []
    previous = -1
    for k in range(1, count):
        remaining = count - 1 - k
        lower = previous + 1
        upper = len(gaps) - 1 - remaining
        ideal = first_start + ideal_length * k
        gap = _pick_gap(gaps, lower=lower, upper=upper, ideal=ideal, window=window)
        cuts.append(gap)
        previous = gap.index

    chunks: List[Chunk] = []
    start_word = 0
    for ordinal, gap in enumerate(cuts):
        start = words[start_word][0]
        end = words[gap.index][1]
        chunks.append(Chunk(ordinal=ordinal, text=document[start:end]))
        start_word = gap.index + 1
    chunks.append(Chunk(ordinal=len(cuts), text=document[words[start_word][0] : last_end]))
    return chunks
