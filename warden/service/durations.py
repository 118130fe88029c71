from __future__ import annotations

import re

from warden.logging import get_logger

logger = get_logger(__name__)

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
}

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)


def parse_duration(value: str | int) -> int:
    """Parse a human-readable duration such as ``"2h"`` or ``"30d"`` into seconds.

    A bare integer (or digit string) is taken as seconds. Zero, negative, and
    unknown unit suffixes are rejected with ``ValueError``.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, int):
        seconds = value
    else:
        if not isinstance(value, str):
            raise ValueError(f"invalid duration: {value!r}")
        match = _DURATION_RE.match(value)
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        amount, unit = match.groups()
        seconds = int(amount) * _UNIT_SECONDS[(unit or "s").lower()]
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return seconds


def parse_duration_or_default(value: str | int | None, default: int, *, setting: str) -> int:
    """Lenient variant for the request path: never raises.

    An unparseable value degrades to ``default`` and emits a diagnostic.
    """
    if value is None:
        return default
    try:
        return parse_duration(value)
    except ValueError:
        logger.warning(
            "duration_unparseable_using_default",
            setting=setting,
            value=str(value),
            default_seconds=default,
        )
        return default
