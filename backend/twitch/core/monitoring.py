"""Process-wide record of which identity posts in each broadcaster's chat."""

from __future__ import annotations

import threading

from shared.models import MonitoringState


def _normalize(broadcaster_id: str | None) -> str:
    return (broadcaster_id or "").strip().lower()


class MonitoringRegistry:
    """Thread-safe map of broadcaster id -> MonitoringState.

    Keys are case-insensitive. Blank ids are ignored on write and never found
    on read. One instance is created at startup and passed to every consumer.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, MonitoringState] = {}

    def set_state(self, broadcaster_id: str | None, state: MonitoringState) -> None:
        key = _normalize(broadcaster_id)
        if not key:
            return
        with self._lock:
            self._states[key] = state

    def try_get_state(self, broadcaster_id: str | None) -> tuple[bool, MonitoringState | None]:
        key = _normalize(broadcaster_id)
        if not key:
            return False, None
        with self._lock:
            state = self._states.get(key)
        return state is not None, state

    def remove(self, broadcaster_id: str | None) -> None:
        key = _normalize(broadcaster_id)
        if not key:
            return
        with self._lock:
            self._states.pop(key, None)

    def get_broadcasters_using_bot(self) -> set[str]:
        with self._lock:
            return {key for key, state in self._states.items() if state.use_bot}

    def get_all_states(self) -> dict[str, MonitoringState]:
        with self._lock:
            return dict(self._states)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)
