from __future__ import annotations

import pytest

from gflite.chunking import (
    BOUNDARY_PARAGRAPH,
    BOUNDARY_SENTENCE,
    BOUNDARY_WHITESPACE,
    _boundary_strength,
    split,
)
from gflite.errors import EmptyInputError

SAMPLE = (
    "The quick brown fox jumps over the lazy dog. It was a sunny day.\n\n"
    "Meanwhile, the cat slept on the warm windowsill! Nobody noticed.\n\n"
    "Later that evening the fox returned home, tired but happy. The end."
)


def _words(text):
    return " ".join(text.split())


def test_chunks_reconstruct_document():
    chunks = split(SAMPLE, 4)

    assert 1 <= len(chunks) <= 4
    assert [chunk.ordinal for chunk in chunks] == list(range(len(chunks)))
    assert _words(" ".join(chunk.text for chunk in chunks)) == _words(SAMPLE)
    for chunk in chunks:
        assert chunk.text
        assert chunk.text == chunk.text.strip()
        assert chunk.text in SAMPLE


def test_split_is_deterministic():
    assert split(SAMPLE, 5) == split(SAMPLE, 5)


def test_prefers_paragraph_breaks():
    document = (
        "First paragraph sentence one. Sentence two here.\n\n"
        "Second paragraph sentence one. Sentence two here."
    )

    chunks = split(document, 2)

    assert [chunk.text for chunk in chunks] == [
        "First paragraph sentence one. Sentence two here.",
        "Second paragraph sentence one. Sentence two here.",
    ]


def test_prefers_sentence_ends_over_plain_whitespace():
    chunks = split("Alpha beta gamma. Delta epsilon zeta eta.", 2)

    assert [chunk.text for chunk in chunks] == ["Alpha beta gamma.", "Delta epsilon zeta eta."]


def test_abbreviations_are_not_sentence_ends():
    assert _boundary_strength("Dr.", " ") == BOUNDARY_WHITESPACE
    assert _boundary_strength("etc.", " ") == BOUNDARY_WHITESPACE
    assert _boundary_strength("today.", " ") == BOUNDARY_SENTENCE
    assert _boundary_strength('"Stop!"', " ") == BOUNDARY_SENTENCE
    assert _boundary_strength("word", "\n  \n") == BOUNDARY_PARAGRAPH


def test_returns_fewer_chunks_for_short_input():
    chunks = split("  just three words  ", 6)

    assert [chunk.text for chunk in chunks] == ["just", "three", "words"]


def test_single_chunk_strips_outer_whitespace():
    chunks = split("\n  Hello there, world.\n", 1)

    assert [chunk.text for chunk in chunks] == ["Hello there, world."]


def test_near_equal_sizes():
    document = " ".join(f"word{index:03d}" for index in range(120))

    chunks = split(document, 6)

    assert len(chunks) == 6
    sizes = [chunk.characters for chunk in chunks]
    assert max(sizes) - min(sizes) <= 16


@pytest.mark.parametrize("document", ["", "   ", "\n\n\t"])
def test_empty_input_is_rejected(document):
    with pytest.raises(EmptyInputError):
        split(document, 3)


def test_target_count_must_be_positive():
    with pytest.raises(ValueError):
        split(SAMPLE, 0)
