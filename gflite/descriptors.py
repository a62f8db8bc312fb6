from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Union

from gflite.chunking import Chunk


@dataclass(frozen=True)
class SubtaskDescriptor:
    ordinal: int
    payload: Chunk
    timeout: float
    bid: Decimal

    @property
    def name(self) -> str:
        return f"subtask{self.ordinal}"

    def as_dict(self) -> Dict[str, object]:
        return {
            "ordinal": self.ordinal,
            "name": self.name,
            "text": self.payload.text,
            "timeout": self.timeout,
            "bid": str(self.bid),
        }


def build(
    chunks: Iterable[Chunk],
    per_subtask_timeout: float,
    bid: Union[Decimal, str, float],
) -> List[SubtaskDescriptor]:
    """Wrap each chunk in a descriptor carrying its timeout and bid."""

    timeout = float(per_subtask_timeout)
    if not timeout > 0:
        raise ValueError(f"subtask timeout must be positive, got {per_subtask_timeout}")
    try:
        bid_value = bid if isinstance(bid, Decimal) else Decimal(str(bid))
    except InvalidOperation as exc:
        raise ValueError(f"bid must be a decimal number, got {bid}") from exc
    if not bid_value.is_finite() or bid_value <= 0:
        raise ValueError(f"bid must be positive, got {bid}")

    descriptors: List[SubtaskDescriptor] = []
    for expected, chunk in enumerate(chunks):
        if chunk.ordinal != expected:
            raise ValueError(f"chunk ordinals must be contiguous from 0; found {chunk.ordinal} at position {expected}")
        descriptors.append(
            SubtaskDescriptor(ordinal=chunk.ordinal, payload=chunk, timeout=timeout, bid=bid_value)
        )
    return descriptors
