"""Data models for chat_command_configs: per-channel counter commands."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Hard ceiling for the "!death+ 5" style explicit amount
MAX_INCREMENT_CEILING = 10


class PermissionLevel(enum.IntEnum):
    """Ordered permission ladder (higher value = higher privilege)."""

    EVERYONE = 0
    SUBSCRIBER = 1
    MODERATOR = 2
    BROADCASTER = 3

    @classmethod
    def parse(cls, value: Any) -> PermissionLevel:
        """Map stored strings to a level. Unknown values mean everyone."""
        if isinstance(value, PermissionLevel):
            return value
        name = str(value or "").strip().upper()
        # Legacy rows used "mod"
        if name == "MOD":
            return cls.MODERATOR
        try:
            return cls[name]
        except KeyError:
            if name:
                logger.debug(f"Unknown permission '{value}', treating as everyone")
            return cls.EVERYONE


class CommandAction(str, enum.Enum):
    INCREMENT = "increment"
    DECREMENT = "decrement"
    RESET = "reset"
    REPLY = "reply"

    @classmethod
    def parse(cls, value: Any) -> CommandAction:
        """Map stored strings to an action. Anything unknown is a plain reply."""
        if isinstance(value, CommandAction):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.REPLY


@dataclass
class ChatCommandDefinition:
    """One configured chat command."""

    action: CommandAction = CommandAction.REPLY
    counter: str | None = None  # 'deaths' | 'swears' | 'screams' | 'bits' | custom, comma-separated
    permission: PermissionLevel = PermissionLevel.EVERYONE
    cooldown: int = 0  # seconds, 0 = no cooldown
    response: str = ""
    increment_by: int = 0
    decrement_by: int = 0
    milestones: list[int] = field(default_factory=list)
    enabled: bool = True

    @property
    def targets(self) -> list[str]:
        """Counter names this command acts on."""
        if not self.counter:
            return []
        return [part.strip().lower() for part in self.counter.split(",") if part.strip()]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatCommandDefinition:
        """Build from stored JSON. Missing or malformed fields fall back to defaults."""
        raw_milestones = data.get("milestones")
        milestones = []
        if isinstance(raw_milestones, list):
            for value in raw_milestones:
                if isinstance(value, bool):
                    continue
                try:
                    milestones.append(int(value))
                except (TypeError, ValueError):
                    continue

        counter = data.get("counter")
        response = data.get("response")

        return cls(
            action=CommandAction.parse(data.get("action")),
            counter=counter if isinstance(counter, str) and counter.strip() else None,
            permission=PermissionLevel.parse(data.get("permission")),
            cooldown=_to_int(data.get("cooldown")),
            response=response if isinstance(response, str) else "",
            increment_by=_to_int(data.get("increment_by", data.get("incrementBy"))),
            decrement_by=_to_int(data.get("decrement_by", data.get("decrementBy"))),
            milestones=milestones,
            enabled=_to_bool(data.get("enabled"), default=True),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "counter": self.counter,
            "permission": self.permission.name.lower(),
            "cooldown": self.cooldown,
            "response": self.response,
            "increment_by": self.increment_by,
            "decrement_by": self.decrement_by,
            "milestones": list(self.milestones),
            "enabled": self.enabled,
        }


@dataclass
class ChatCommandConfiguration:
    """All commands configured for a channel, keyed by lower-cased trigger."""

    commands: dict[str, ChatCommandDefinition] = field(default_factory=dict)
    max_increment_amount: int = 1

    @property
    def effective_max_increment(self) -> int:
        return max(1, min(self.max_increment_amount, MAX_INCREMENT_CEILING))

    def find(self, trigger: str) -> ChatCommandDefinition | None:
        """Return the enabled command for *trigger*, or None."""
        definition = self.commands.get(trigger.strip().lower())
        if definition is None or not definition.enabled:
            return None
        return definition

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatCommandConfiguration:
        commands: dict[str, ChatCommandDefinition] = {}
        raw_commands = data.get("commands") or {}
        if isinstance(raw_commands, dict):
            for name, raw in raw_commands.items():
                if not isinstance(raw, dict):
                    logger.warning(f"Skipping malformed chat command '{name}'")
                    continue
                try:
                    definition = ChatCommandDefinition.from_dict(raw)
                except (TypeError, ValueError, AttributeError) as e:
                    logger.warning(f"Skipping malformed chat command '{name}': {e}")
                    continue
                commands[str(name).strip().lower()] = definition
        return cls(
            commands=commands,
            max_increment_amount=_to_int(
                data.get("max_increment_amount", data.get("maxIncrementAmount")), default=1
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "commands": {name: d.to_dict() for name, d in self.commands.items()},
            "max_increment_amount": self.max_increment_amount,
        }


@dataclass
class ChatCommandContext:
    """One inbound chat message, built per event and never stored."""

    user_id: str  # broadcaster (tenant) id
    message: str
    is_moderator: bool = False
    is_broadcaster: bool = False
    is_subscriber: bool = False
    message_id: str | None = None
    chatter_name: str | None = None


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


def _to_bool(value: Any, default: bool) -> bool:
    """Strict flag parsing: only real booleans, 0/1 and the usual words count."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    if value is not None:
        logger.debug(f"Unrecognized flag value {value!r}, using {default}")
    return default


def _counter_commands(
    counter: str, label: str, short: str | None
) -> dict[str, ChatCommandDefinition]:
    increment = ChatCommandDefinition(
        action=CommandAction.INCREMENT,
        counter=counter,
        permission=PermissionLevel.MODERATOR,
        response=f"{label} count: $(count)",
    )
    decrement = ChatCommandDefinition(
        action=CommandAction.DECREMENT,
        counter=counter,
        permission=PermissionLevel.MODERATOR,
        response=f"{label} count: $(count)",
    )
    singular = counter.rstrip("s")
    commands = {
        f"!{counter}": ChatCommandDefinition(
            action=CommandAction.REPLY,
            counter=counter,
            cooldown=5,
            response=f"{label} count: $(count)",
        ),
        f"!{singular}+": increment,
        f"!{singular}-": decrement,
    }
    if short:
        commands[f"!{short}+"] = increment
        commands[f"!{short}-"] = decrement
    return commands


# Defaults every channel gets; stored commands with the same trigger win
DEFAULT_CHAT_COMMANDS: dict[str, ChatCommandDefinition] = {
    **_counter_commands("deaths", "Death", "d"),
    **_counter_commands("swears", "Swear", "sw"),
    **_counter_commands("screams", "Scream", "sc"),
    "!resetcounters": ChatCommandDefinition(
        action=CommandAction.RESET,
        permission=PermissionLevel.MODERATOR,
        response="Counters have been reset.",
    ),
}
