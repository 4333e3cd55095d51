"""Shared data models for the Tallybot backend."""

from .command_config import (
    DEFAULT_CHAT_COMMANDS,
    ChatCommandConfiguration,
    ChatCommandContext,
    ChatCommandDefinition,
    CommandAction,
    PermissionLevel,
)
from .counter import Counter
from .eligibility import BotEligibilityResult, BotStatus, MonitoringState
from .user import BotCredentials, NotificationSettings, User

__all__ = [
    "DEFAULT_CHAT_COMMANDS",
    "BotCredentials",
    "BotEligibilityResult",
    "BotStatus",
    "ChatCommandConfiguration",
    "ChatCommandContext",
    "ChatCommandDefinition",
    "CommandAction",
    "Counter",
    "MonitoringState",
    "NotificationSettings",
    "PermissionLevel",
    "User",
]
