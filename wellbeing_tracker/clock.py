"""
Clock abstraction used by the state machines.

The default implementation is `session.GLibClock`; the tests drive the state
machines with a simulated clock instead.
"""

from typing import Callable, Protocol

# Same values as the GLib constants, so GLib can be used directly.
PRIORITY_DEFAULT = 0
SOURCE_REMOVE = False
SOURCE_CONTINUE = True


class Clock(Protocol):
    """Real/monotonic time plus timeout scheduling, in seconds."""

    def get_real_time_secs(self) -> float:
        """Wall clock time in seconds since the Unix epoch."""
        ...

    def get_monotonic_time_secs(self) -> float:
        ...

    def timeout_add_seconds(self, priority: int, seconds: int, callback: Callable[[], bool]) -> int:
        """Call `callback` after `seconds`; it returns SOURCE_CONTINUE to repeat."""
        ...

    def source_remove(self, source_id: int) -> None:
        ...

    def time_change_notify(self, callback: Callable[[], bool]) -> int:
        """
        Call `callback` whenever the real clock jumps relative to the
        monotonic clock. Returns a source ID for `source_remove()`.
        """
        ...
