"""
Settings sources for the managers.

Keys passed to `changed` callbacks use the GSettings spelling
(`daily-limit-seconds`), whichever backend is in use.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from .config import DEFAULT_CONFIG

log = logging.getLogger(__name__)

ChangedCallback = Callable[[Optional[str]], None]


class ScreenTimeLimitSettings(Protocol):
    enabled: bool
    daily_limit_seconds: int
    grayscale: bool

    def connect_changed(self, callback: ChangedCallback) -> int: ...

    def disconnect(self, handler_id: int) -> None: ...


@dataclass(frozen=True)
class BreakTypeSettings:
    interval_seconds: int
    duration_seconds: int
    delay_seconds: int
    notify: bool = True
    notify_upcoming: bool = True
    notify_overdue: bool = True
    countdown: bool = True
    play_sound: bool = False
    fade_screen: bool = True
    lock_screen: bool = False

    @classmethod
    def from_config(cls, data):
        return cls(
            interval_seconds=int(data["interval_seconds"]),
            duration_seconds=int(data["duration_seconds"]),
            delay_seconds=int(data["delay_seconds"]),
            notify=bool(data.get("notify", True)),
            notify_upcoming=bool(data.get("notify_upcoming", True)),
            notify_overdue=bool(data.get("notify_overdue", True)),
            countdown=bool(data.get("countdown", True)),
            play_sound=bool(data.get("play_sound", False)),
            fade_screen=bool(data.get("fade_screen", True)),
            lock_screen=bool(data.get("lock_screen", False)),
        )


class BreakReminderSettings(Protocol):
    selected_breaks: List[str]

    def get_break_type(self, break_type: str) -> BreakTypeSettings: ...

    def connect_changed(self, callback: ChangedCallback) -> int: ...

    def disconnect(self, handler_id: int) -> None: ...


class _ConfigSection:
    """One section of the JSON config file, with change callbacks."""

    section = None

    def __init__(self, config):
        self._data = self._merged(config)
        self._callbacks = {}
        self._next_handler_id = 1

    def _merged(self, config):
        return {**DEFAULT_CONFIG[self.section], **config.get(self.section, {})}

    def connect_changed(self, callback):
        handler_id = self._next_handler_id
        self._next_handler_id += 1
        self._callbacks[handler_id] = callback
        return handler_id

    def disconnect(self, handler_id):
        self._callbacks.pop(handler_id, None)

    def reload(self, config):
        """Take over a freshly loaded config and report the changed keys."""
        new_data = self._merged(config)
        changed = [key for key in new_data if new_data[key] != self._data.get(key)]
        self._data = new_data

        for key in changed:
            log.info(f"Einstellung geändert: {self.section}.{key}")
            for callback in list(self._callbacks.values()):
                callback(key.replace("_", "-"))


class FileScreenTimeLimitSettings(_ConfigSection):
    section = "screen_time_limits"

    @property
    def enabled(self):
        return bool(self._data["enabled"])

    @property
    def daily_limit_seconds(self):
        return max(0, int(self._data["daily_limit_seconds"]))

    @property
    def grayscale(self):
        return bool(self._data["grayscale"])


class FileBreakReminderSettings(_ConfigSection):
    section = "break_reminders"

    def _merged(self, config):
        data = super()._merged(config)
        # Per-type blocks are merged key by key, so partial blocks keep defaults.
        for break_type, defaults in DEFAULT_CONFIG[self.section].items():
            if isinstance(defaults, dict):
                data[break_type] = {**defaults, **data.get(break_type, {})}
        return data

    @property
    def selected_breaks(self):
        return list(self._data["selected_breaks"])

    def get_break_type(self, break_type):
        return BreakTypeSettings.from_config(self._data[break_type])
