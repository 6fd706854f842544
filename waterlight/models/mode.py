"""System chirality (sigma) mode."""

from __future__ import annotations

from enum import IntEnum
from typing import Union

_ALIASES = {
    "0": 0, "matter": 0, "production": 0, "prod": 0,
    "1": 1, "antimatter": 1, "development": 1, "dev": 1,
}


class Mode(IntEnum):
    """Persisted mode bit: 0=matter/production, 1=antimatter/development."""
    PRODUCTION = 0
    DEVELOPMENT = 1

    @property
    def label(self) -> str:
        """Lower-case name, accepted back by parse()."""
        return "production" if self is Mode.PRODUCTION else "development"

    @property
    def title(self) -> str:
        return "MATTER/PRODUCTION" if self is Mode.PRODUCTION else "ANTIMATTER/DEVELOPMENT"

    @property
    def opposite(self) -> Mode:
        return Mode(1 - int(self))

    @classmethod
    def parse(cls, value: Union[str, int, "Mode"]) -> Mode:
        if isinstance(value, Mode):
            return value
        if isinstance(value, bool):
            return cls(int(value))
        if isinstance(value, int):
            if value in (0, 1):
                return cls(value)
            raise ValueError(f"Invalid mode: {value!r}")
        key = str(value).strip().lower()
        if key not in _ALIASES:
            raise ValueError(f"Invalid mode: {value!r}")
        return cls(_ALIASES[key])
