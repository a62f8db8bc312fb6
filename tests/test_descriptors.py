from __future__ import annotations

from decimal import Decimal

import pytest

from gflite.chunking import Chunk, split
from gflite.descriptors import build


def test_build_wraps_each_chunk_in_order():
    chunks = split("One two. Three four. Five six.", 3)

    descriptors = build(chunks, 60, "1.5")

    assert [descriptor.ordinal for descriptor in descriptors] == [0, 1, 2]
    assert [descriptor.payload for descriptor in descriptors] == chunks
    assert all(descriptor.timeout == 60.0 for descriptor in descriptors)
    assert all(descriptor.bid == Decimal("1.5") for descriptor in descriptors)
    assert descriptors[2].name == "subtask2"
    assert descriptors[0].as_dict()["bid"] == "1.5"


@pytest.mark.parametrize("timeout", [0, -5])
def test_timeout_must_be_positive(timeout):
    with pytest.raises(ValueError):
        build([Chunk(0, "text")], timeout, "1")


@pytest.mark.parametrize("bid", ["0", "-1", "abc", "NaN"])
def test_bid_must_be_positive_number(bid):
    with pytest.raises(ValueError):
        build([Chunk(0, "text")], 10, bid)


def test_ordinals_must_be_contiguous():
    with pytest.raises(ValueError):
        build([Chunk(0, "a"), Chunk(2, "b")], 10, "1")
