"""Data model for the counters table."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

BUILTIN_COUNTERS = ("deaths", "swears", "screams", "bits")

# Counters cleared by a bare reset command
RESETTABLE_COUNTERS = ("deaths", "swears", "screams")


@dataclass
class Counter:
    """Per-broadcaster counter record."""

    user_id: str
    deaths: int = 0
    swears: int = 0
    screams: int = 0
    bits: int = 0
    custom_counters: dict[str, int] = field(default_factory=dict)
    stream_started: datetime | None = None
    last_notified_stream_id: str | None = None
    last_updated: datetime | None = None

    def get(self, name: str) -> int:
        name = name.lower()
        if name in BUILTIN_COUNTERS:
            return getattr(self, name)
        return self.custom_counters.get(name, 0)

    def set(self, name: str, value: int) -> None:
        """Write a counter value, floored at zero."""
        name = name.lower()
        value = max(0, value)
        if name in BUILTIN_COUNTERS:
            setattr(self, name, value)
        else:
            self.custom_counters[name] = value
