"""
Break reminders.

Tracks active/idle time through the session idle monitor and signals when the
user should take a break, according to the enabled break types.
"""

import logging
import math
from enum import Enum, IntEnum

from .clock import PRIORITY_DEFAULT, SOURCE_REMOVE
from .signals import SignalEmitter

log = logging.getLogger(__name__)

MIN_BREAK_LENGTH_SECONDS = 10

# Each break type needs its own settings block with type-specific defaults,
# so only these are accepted from `selected_breaks`.
SUPPORTED_BREAK_TYPES = (
    "eyesight",
    "movement",
)


class _IdleState(Enum):
    ACTIVE = 1
    IDLE = 2


class BreakState(IntEnum):
    DISABLED = 0  # break reminders are disabled
    ACTIVE = 1  # user is active, no break is needed yet
    IDLE = 2  # user is idle, but no break is needed
    IN_BREAK = 3  # a break is needed and the user is taking it
    BREAK_DUE = 4  # a break is needed but the user is still active


class BreakManager(SignalEmitter):
    """
    Signals:
     - `notify::state`, `notify::next-break-due-time`, `notify::last-break-end-time`
     - `break-due`, `break-finished`, `take-break`
    """

    def __init__(self, clock, idle_monitor, settings):
        super().__init__()
        self._clock = clock
        self._idle_monitor = idle_monitor
        self._settings = settings

        self._state = BreakState.DISABLED
        self._break_last_end = {}  # break type → wall clock time, in seconds
        self._current_break_type = None
        self._current_break_start_time = 0
        self._break_due_time = 0
        self._idle_state = _IdleState.ACTIVE
        self._idle_start_time = 0
        self._idle_watch_id = 0
        self._active_watch_id = 0
        self._timer_id = 0

        self._settings_changed_id = self._settings.connect_changed(self._on_settings_changed)

        # Start tracking timings
        self._update_settings()

    def _on_settings_changed(self, key):
        was_running = self._state != BreakState.DISABLED
        if self._update_settings() and was_running:
            self._update_state(self.get_current_time())

    def _update_settings(self):
        # Load settings for each enabled type of break
        selected_breaks = self._settings.selected_breaks

        if not selected_breaks:
            self._stop_state_machine()
            return False

        current_time = self.get_current_time()

        for break_type in selected_breaks:
            if break_type not in SUPPORTED_BREAK_TYPES:
                log.warning(f"Unbekannter Pausentyp '{break_type}' wird ignoriert.")

        for break_type in SUPPORTED_BREAK_TYPES:
            if break_type in selected_breaks and break_type not in self._break_last_end:
                # Enabling a previously disabled break
                self._break_last_end[break_type] = current_time
            elif break_type not in selected_breaks and break_type in self._break_last_end:
                # Disabling a previously enabled break
                del self._break_last_end[break_type]

        self.notify("next-break-due-time")

        if self._state == BreakState.DISABLED:
            self._start_state_machine()

        return True

    def _start_state_machine(self):
        log.info("Pausenerinnerungen aktiviert.")

        self._idle_watch_id = self._idle_monitor.add_idle_watch(
            MIN_BREAK_LENGTH_SECONDS * 1000, self._on_idle_watch)

        self._state = BreakState.ACTIVE
        self._current_break_type = None
        self._current_break_start_time = 0
        self._idle_state = _IdleState.ACTIVE
        self._idle_start_time = 0

        self.freeze_notify()
        self.notify("state")
        self._update_state(self.get_current_time())
        self.thaw_notify()

    def _stop_state_machine(self):
        if self._state == BreakState.DISABLED:
            return

        log.info("Pausenerinnerungen deaktiviert.")

        if self._idle_watch_id != 0:
            self._idle_monitor.remove_watch(self._idle_watch_id)
        self._idle_watch_id = 0

        if self._active_watch_id != 0:
            self._idle_monitor.remove_watch(self._active_watch_id)
        self._active_watch_id = 0

        if self._timer_id != 0:
            self._clock.source_remove(self._timer_id)
        self._timer_id = 0

        self._break_last_end = {}

        self._state = BreakState.DISABLED
        self._current_break_type = None
        self._current_break_start_time = 0
        self._idle_state = _IdleState.ACTIVE
        self._idle_start_time = 0

        self.notify("state")

    def shutdown(self):
        if self._settings_changed_id != 0:
            self._settings.disconnect(self._settings_changed_id)
        self._settings_changed_id = 0

        self._stop_state_machine()

    def _on_idle_watch(self, *args):
        assert self._state != BreakState.DISABLED, "Idle received when manager is disabled"

        current_time = self.get_current_time()

        log.debug(f"Benutzer inaktiv bei {current_time}s")

        # Start watching to see if the user becomes active again.
        if self._active_watch_id == 0:
            self._active_watch_id = self._idle_monitor.add_user_active_watch(self._on_user_active_watch)

        self._idle_state = _IdleState.IDLE
        # The idle watch has already waited MIN_BREAK_LENGTH_SECONDS.
        self._idle_start_time = current_time - MIN_BREAK_LENGTH_SECONDS
        self._update_state(current_time)

    def _on_user_active_watch(self, *args):
        assert self._state != BreakState.DISABLED, "Active received when manager is disabled"

        current_time = self.get_current_time()

        log.debug(f"Benutzer wieder aktiv bei {current_time}s")

        # The active watch is one-shot; the idle watch stays installed.
        self._idle_monitor.remove_watch(self._active_watch_id)
        self._active_watch_id = 0

        self._idle_state = _IdleState.ACTIVE
        self._update_state(current_time)

    def get_current_time(self):
        """Get the current real time, in seconds since the Unix epoch."""
        return self._clock.get_real_time_secs()

    def _update_state(self, current_time):
        if self._idle_state == _IdleState.IDLE:
            self._update_state_idle(current_time)
        else:
            self._update_state_active(current_time)

    def _update_state_idle(self, current_time):
        # What kind of break are we due, if any?
        due_break_type, next_due_time = self.get_next_break_due(current_time)
        in_break = False
        due_break_start_time = 0

        if due_break_type is not None and next_due_time <= current_time:
            duration = self._settings.get_break_type(due_break_type).duration_seconds

            if next_due_time + duration <= current_time:
                # The break has been finished.
                if self._state == BreakState.IN_BREAK:
                    self.emit("break-finished")
            else:
                # Schedule an update to announce the end of the break.
                in_break = True
                due_break_start_time = next_due_time
                self._schedule_update_state(next_due_time + duration - current_time)
        elif next_due_time != 0:
            # Idle, but no break is due. The idle time is applied to the break
            # end times when the user becomes active again; until then, wake up
            # for the start of the next scheduled break.
            assert next_due_time > current_time, f"next_due_time ({next_due_time}) should be greater than current_time ({current_time})"
            self._schedule_update_state(next_due_time - current_time)

        new_state = BreakState.IN_BREAK if in_break else BreakState.IDLE
        if self._state != new_state:
            log.debug(f"Pausenstatus: {self._state.name} → {new_state.name}")
            self._state = new_state
            self._current_break_type = due_break_type
            self._current_break_start_time = due_break_start_time
            self.notify("state")

    def _update_state_active(self, current_time):
        idle_time_seconds = current_time - self._idle_start_time
        emit_break_due = False

        self.freeze_notify()

        # Reset every break type whose duration is covered by the idle time, so
        # a break taken early (or unplanned) counts and the user isn't pestered
        # shortly after getting back.
        if self._idle_start_time > 0:
            log.debug(f"Benutzer war {idle_time_seconds}s inaktiv")

            for break_type in self._break_last_end:
                duration = self._settings.get_break_type(break_type).duration_seconds
                if idle_time_seconds >= duration:
                    self._break_last_end[break_type] = current_time

            self.notify("next-break-due-time")
            self.notify("last-break-end-time")

        self._idle_start_time = 0

        # Are any breaks due now?
        due_break_type, next_due_time = self.get_next_break_due(current_time)
        is_break_due = due_break_type is not None and next_due_time <= current_time

        log.debug(f"Nächste Pause fällig: {next_due_time}s, jetzt: {current_time}s, Typ: {due_break_type}")

        if is_break_due:
            # Notify that a break is due if we haven't done so already.
            if self._state != BreakState.BREAK_DUE:
                self._state = BreakState.BREAK_DUE
                self._current_break_type = due_break_type
                self._current_break_start_time = next_due_time
                self._break_due_time = current_time
                self.notify("state")
                emit_break_due = True
        else:
            if next_due_time != 0:
                assert next_due_time > current_time, f"next_due_time ({next_due_time}) should be greater than current_time ({current_time})"
                self._schedule_update_state(next_due_time - current_time)

            if self._state != BreakState.ACTIVE:
                log.debug(f"Pausenstatus: {self._state.name} → ACTIVE")
                self._state = BreakState.ACTIVE
                self._current_break_type = None
                self._current_break_start_time = 0
                self.notify("state")

        self.thaw_notify()
        if emit_break_due:
            self.emit("break-due")

    def _schedule_update_state(self, timeout_secs):
        if self._timer_id != 0:
            self._clock.source_remove(self._timer_id)

        # Round up to avoid spinning
        timeout_seconds = math.ceil(timeout_secs)

        log.debug(f"Nächste Pausenaktualisierung in {timeout_seconds}s")

        self._timer_id = self._clock.timeout_add_seconds(
            PRIORITY_DEFAULT, timeout_seconds, self._on_scheduled_update)

    def _on_scheduled_update(self):
        self._timer_id = 0
        self._update_state(self.get_current_time())
        return SOURCE_REMOVE

    def get_next_break_due(self, current_time):
        """
        Return `(break_type, due_time)` for the break which is due now or
        will be due next.

        If a break is due, `due_time` is when it became due and `break_type`
        is the due type with the longest duration. `(None, 0)` means no break
        types are enabled.
        """
        max_duration = 0
        max_duration_type = None
        next_due_time = 0

        for break_type, last_end in self._break_last_end.items():
            break_type_settings = self._settings.get_break_type(break_type)

            would_be_due_at = last_end + break_type_settings.interval_seconds

            if would_be_due_at <= current_time:
                next_due_time = would_be_due_at

                # Of the break types which are now due, which has the longest
                # duration?
                if max_duration == 0 or break_type_settings.duration_seconds > max_duration:
                    max_duration = break_type_settings.duration_seconds
                    max_duration_type = break_type
            elif next_due_time == 0 or next_due_time > would_be_due_at:
                # Not due yet; track the earliest upcoming one.
                next_due_time = would_be_due_at
                max_duration_type = break_type

        return max_duration_type, next_due_time

    def get_next_break_due_time(self, current_time):
        _, next_due_time = self.get_next_break_due(current_time)
        return next_due_time

    @property
    def state(self):
        return self._state

    @property
    def current_break_type(self):
        """Break type which is currently due or in progress, or None."""
        return self._current_break_type

    @property
    def current_break_start_time(self):
        """
        Start time of the break in progress, or 0. If the user was idle before
        the break started, this lies within the idle period.
        """
        if self._state != BreakState.IN_BREAK:
            return 0
        return self._current_break_start_time

    @property
    def break_due_time(self):
        """When the current break became due, or 0 if no break is due."""
        if self._state != BreakState.BREAK_DUE:
            return 0
        return self._break_due_time

    @property
    def last_break_end_time(self):
        if self._state == BreakState.IN_BREAK:
            return 0
        return max([0, *self._break_last_end.values()])

    @property
    def next_break_due_time(self):
        return self.get_next_break_due_time(self.get_current_time())

    def delay_break(self):
        """Delay the upcoming, due or in-progress break."""
        if self._state == BreakState.DISABLED:
            return

        current_time = self.get_current_time()

        log.info("Pause verschoben.")

        # Delay every due break type, so another one doesn't become due
        # straight away.
        for break_type, last_end in self._break_last_end.items():
            break_type_settings = self._settings.get_break_type(break_type)
            if last_end + break_type_settings.interval_seconds <= current_time:
                self._break_last_end[break_type] = last_end + break_type_settings.delay_seconds

        self.freeze_notify()
        self.notify("next-break-due-time")
        self.notify("last-break-end-time")
        self._update_state(current_time)
        self.thaw_notify()

    def skip_break(self):
        """Skip the upcoming, due or in-progress break."""
        if self._state == BreakState.DISABLED:
            return

        current_time = self.get_current_time()

        log.info("Pause übersprungen.")

        for break_type, last_end in self._break_last_end.items():
            if last_end + self._settings.get_break_type(break_type).interval_seconds <= current_time:
                self._break_last_end[break_type] = current_time

        self.freeze_notify()
        self.notify("next-break-due-time")
        self.notify("last-break-end-time")
        self._update_state(current_time)
        self.thaw_notify()

    def take_break(self):
        """
        The user wants to take a break now, even though they are still active.
        Only the dispatcher can act on this, by trying to make them idle.
        """
        self.emit("take-break")

    def _break_type_setting(self, break_type, name, default):
        if break_type not in self._break_last_end:
            return default
        return getattr(self._settings.get_break_type(break_type), name)

    def break_type_should_notify(self, break_type):
        return self._break_type_setting(break_type, "notify", False)

    def break_type_should_notify_upcoming(self, break_type):
        return self._break_type_setting(break_type, "notify_upcoming", False)

    def break_type_should_notify_overdue(self, break_type):
        return self._break_type_setting(break_type, "notify_overdue", False)

    def break_type_should_countdown(self, break_type):
        return self._break_type_setting(break_type, "countdown", False)

    def break_type_should_play_sound(self, break_type):
        return self._break_type_setting(break_type, "play_sound", False)

    def break_type_should_fade_screen(self, break_type):
        return self._break_type_setting(break_type, "fade_screen", False)

    def break_type_should_lock_screen(self, break_type):
        return self._break_type_setting(break_type, "lock_screen", False)

    def get_duration_for_break_type(self, break_type):
        return self._break_type_setting(break_type, "duration_seconds", 0)
