"""Core modules for the Twitch bot."""

from .config import BotSettings, get_settings
from .guards import CooldownTracker, actor_level, has_permission, resolve_magnitude
from .logging import setup_logging
from .monitoring import MonitoringRegistry

__all__ = [
    "BotSettings",
    "CooldownTracker",
    "MonitoringRegistry",
    "actor_level",
    "get_settings",
    "has_permission",
    "resolve_magnitude",
    "setup_logging",
]
