from __future__ import annotations

from datetime import datetime
from typing import Union

TIMEOUT_FORMAT = "%H:%M:%S"
MAX_TIMEOUT_SECONDS = 24 * 60 * 60 - 1


def parse_timeout(value: Union[str, int, float]) -> float:
    """Parse an ``HH:MM:SS`` timeout into seconds.

    Plain numbers are accepted as seconds so config files may use either form.
    Zero and values of a day or more are rejected.
    """

    if isinstance(value, bool):
        raise ValueError(f"Failed parsing Timeout from '{value}'")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        try:
            parsed = datetime.strptime(text, TIMEOUT_FORMAT)
        except ValueError as exc:
            raise ValueError(f"Failed parsing Timeout from '{text}' with error: {exc}") from exc
        seconds = float(parsed.hour * 3600 + parsed.minute * 60 + parsed.second)
    if seconds <= 0:
        raise ValueError("Timeout of '00:00:00' is not allowed")
    if seconds > MAX_TIMEOUT_SECONDS:
        raise ValueError(f"Timeout of {seconds:g}s is out of range")
    return seconds


def format_timeout(seconds: float) -> str:
    total = int(round(seconds))
    if total <= 0:
        raise ValueError("Timeout of '00:00:00' is not allowed")
    total = min(total, MAX_TIMEOUT_SECONDS)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
