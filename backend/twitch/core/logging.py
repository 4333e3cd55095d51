import logging
import os

from rich.console import Console
from rich.logging import RichHandler

_PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_DATE_FORMAT = "[%Y-%m-%d %H:%M:%S]"

# logger name -> (level when LOG_LEVEL=DEBUG, level otherwise)
_LIBRARY_LEVELS: dict[str, tuple[int, int]] = {
    "twitchio": (logging.DEBUG, logging.INFO),
    "twitchio.http": (logging.DEBUG, logging.WARNING),
    "httpx": (logging.INFO, logging.WARNING),
    "aiohttp": (logging.INFO, logging.WARNING),
    "redis": (logging.INFO, logging.WARNING),
    "asyncpg": (logging.WARNING, logging.WARNING),
    "asyncio": (logging.ERROR, logging.ERROR),
}


def _rich_handler() -> RichHandler:
    handler = RichHandler(
        console=Console(force_terminal=True, width=120),
        show_time=True,
        show_level=True,
        show_path=False,
        # chat text and usernames end up in messages; never interpret them as markup
        markup=False,
        rich_tracebacks=True,
        tracebacks_show_locals=False,
        tracebacks_width=120,
    )
    handler.setFormatter(logging.Formatter(fmt="%(name)s: %(message)s", datefmt=_DATE_FORMAT))
    return handler


def setup_logging(log_level: str | None = None) -> None:
    """Route all logging through rich, falling back to plain stderr output."""
    name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, name, logging.INFO)

    try:
        logging.basicConfig(level=level, format="%(message)s", handlers=[_rich_handler()], force=True)
    except Exception as e:
        logging.basicConfig(level=level, format=_PLAIN_FORMAT, datefmt="%Y-%m-%d %H:%M:%S", force=True)
        logging.getLogger("Bot").warning(f"Failed to setup Rich logging: {e}, using standard logging")

    debug = level == logging.DEBUG
    for logger_name, (debug_level, normal_level) in _LIBRARY_LEVELS.items():
        logging.getLogger(logger_name).setLevel(debug_level if debug else normal_level)

    logging.getLogger("Bot").debug(f"Logging configured at {logging.getLevelName(level)}")
