"""Helpers for logging user-controlled values."""

from __future__ import annotations

from typing import Any

_MAX_LOG_VALUE = 200


def sanitize(value: Any) -> str:
    """Strip line breaks so chat text and ids cannot forge log lines."""
    if value is None:
        return ""
    text = str(value).replace("\r", "").replace("\n", " ")
    if len(text) > _MAX_LOG_VALUE:
        text = text[:_MAX_LOG_VALUE] + "..."
    return text
