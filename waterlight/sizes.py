"""Resource size parsing and formatting."""

from __future__ import annotations

import logging
import re
from typing import Optional, Union

logger = logging.getLogger(__name__)

UNLIMITED = "max"

_UNITS = {
    "": 1,
    "B": 1,
    "K": 1024,
    "KB": 1024,
    "M": 1024 ** 2,
    "MB": 1024 ** 2,
    "G": 1024 ** 3,
    "GB": 1024 ** 3,
    "T": 1024 ** 4,
    "TB": 1024 ** 4,
}

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([A-Za-z]*)\s*$")


def parse_size(value: Union[str, int, None]) -> Optional[int]:
    """
    Parse "128M", "1g", "4096" into bytes.

    "max" (any case) and None mean unlimited and return None. A suffix that is
    not a known unit is ignored and the digits are taken as raw bytes.
    """
    if value is None:
        return None
    if isinstance(value, int):
        return value

    text = str(value).strip()
    if text.lower() == UNLIMITED:
        return None

    match = _SIZE_RE.match(text)
    if not match:
        raise ValueError(f"Invalid size: {value!r}")

    number, unit = int(match.group(1)), match.group(2).upper()
    if unit not in _UNITS:
        logger.warning(f"Unrecognized size unit '{unit}' in {value!r}; using {number} bytes")
        return number
    return number * _UNITS[unit]


def parse_count(value: Union[str, int, None]) -> Optional[int]:
    """Parse a plain integer limit such as cpu.weight or pids.max."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lower() == UNLIMITED:
        return None
    return int(text)


def to_control_value(value: Optional[int]) -> str:
    """Render a limit the way cgroup control files expect it."""
    return UNLIMITED if value is None else str(value)


def format_size(value: Optional[int]) -> str:
    """Human-readable IEC rendering: 134217728 -> "128M"."""
    if value is None:
        return "unlimited"
    for unit in ("T", "G", "M", "K"):
        factor = _UNITS[unit]
        if value >= factor and value % factor == 0:
            return f"{value // factor}{unit}"
    if value >= 1024:
        return f"{value / 1024:.1f}K"
    return f"{value}B"


_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$", re.IGNORECASE)


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """Parse "90", "30s", "5m", "2h" into seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
