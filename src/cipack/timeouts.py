# timeouts.py
from __future__ import annotations

import re
from typing import Optional, Union

from .errors import ValidationError

Timeout = Union[str, int, float, None]

_TIMEOUT_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600}

# exit code used for a unit killed by its timeout
TIMEOUT_EXIT_CODE = 124


def parse_timeout(value: Timeout) -> Optional[float]:
    """
    Parse a timeout into seconds.

    Accepts "30s", "5m", "2h", a bare number string (seconds) or a number.
    None means no timeout.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid timeout: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        m = _TIMEOUT_RE.match(str(value))
        if not m:
            raise ValidationError(f"Invalid timeout: {value!r} (expected e.g. '30s', '5m', '2h')")
        seconds = float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
    if seconds <= 0:
        raise ValidationError(f"Timeout must be positive, got {value!r}")
    return seconds


def format_timeout(seconds: Optional[float]) -> str:
    if seconds is None:
        return "none"
    s = int(seconds)
    if s >= 3600 and s % 3600 == 0:
        return f"{s // 3600}h"
    if s >= 60 and s % 60 == 0:
        return f"{s // 60}m"
    return f"{seconds:g}s"


def resolve_timeout(*candidates: Timeout) -> Optional[float]:
    """First non-None candidate wins (pass step, job, workflow in that order)."""
    for c in candidates:
        if c is not None:
            return parse_timeout(c)
    return None
