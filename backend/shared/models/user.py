"""Data models for users and the shared bot account."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class NotificationSettings:
    """Per-broadcaster milestone notification preferences."""

    chat_enabled: bool = False
    external_enabled: bool = False
    # counter name -> thresholds, e.g. {"deaths": [10, 50, 100]}
    thresholds: dict[str, list[int]] = field(default_factory=dict)


@dataclass
class User:
    """Broadcaster account record."""

    user_id: str
    username: str = ""
    display_name: str | None = None
    access_token: str = ""
    refresh_token: str = ""
    token_expiry: datetime | None = None
    is_active: bool = True
    notification_settings: NotificationSettings | None = None
    webhook_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class BotCredentials:
    """OAuth token record for the shared bot account."""

    username: str
    user_id: str | None = None
    access_token: str = ""
    refresh_token: str = ""
    token_expiry: datetime | None = None
    updated_at: datetime | None = None
