"""asyncpg repositories backing the bot services."""

from .bot_credentials import BotCredentialRepository
from .command_config import ChatCommandConfigRepository
from .counters import CounterRepository
from .users import UserRepository

__all__ = [
    "BotCredentialRepository",
    "ChatCommandConfigRepository",
    "CounterRepository",
    "UserRepository",
]
