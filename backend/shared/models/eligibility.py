"""Bot identity decisions: eligibility results and per-broadcaster monitoring state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class BotEligibilityResult:
    """Whether the shared bot may post in a channel. *reason* is diagnostic only."""

    use_bot: bool
    bot_user_id: str | None = None
    reason: str = ""


@dataclass
class MonitoringState:
    """Last known bot identity decision for a broadcaster."""

    use_bot: bool
    bot_user_id: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class BotStatus:
    connected: bool
    reason: str
    use_bot: bool = False
    sender_id: str | None = None
