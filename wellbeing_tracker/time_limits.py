"""
Daily screen time limits.

Active/inactive time is based on the total time the user account has spent
logged in to at least one active session and not idle (locked is a subset of
idle). This is the `active` state of the logind user object, combined with
its `IdleHint` property; every other state, or `IdleHint` being true, counts
as inactive.

All times are handled as wall/real clock time rather than monotonic time,
because time has to keep counting while the process or the computer is
suspended. If the real clock is adjusted (for example by an NTP sync), all
stored times are shifted by the offset the real clock moved relative to the
monotonic clock. See `_on_time_change()`.
"""

import logging
import math
from datetime import datetime, time, timedelta
from enum import IntEnum

from .clock import PRIORITY_DEFAULT, SOURCE_CONTINUE, SOURCE_REMOVE
from .history import Cancellable, HistoryParseError, StateTransition, UserState, filter_old_transitions
from .signals import SignalEmitter

log = logging.getLogger(__name__)

DAY_START_HOUR = 3


class TimeLimitsState(IntEnum):
    DISABLED = 0  # screen time limits are disabled
    ACTIVE = 1  # enabled, but the limit has not been hit yet
    LIMIT_REACHED = 2


class TimeLimitsManager(SignalEmitter):
    """
    Tracks total active/inactive time for the user and signals when they
    reach their daily limit for actively using the computer.

    Signals:
     - `notify::state`, `notify::daily-limit-time`, `notify::grayscale-enabled`
     - `daily-limit-reached`, emitted on every entry into LIMIT_REACHED
    """

    def __init__(self, history_file, clock, login_user_factory, settings, timezone=None):
        super().__init__()
        self._history_file = history_file
        self._clock = clock
        self._login_user_factory = login_user_factory
        self._settings = settings
        self._timezone = timezone  # None means the local time zone

        self._state = TimeLimitsState.DISABLED
        self._user_state = UserState.INACTIVE
        self._transitions = []
        self._cancellable = None
        self._login_user = None
        self._login_user_changed_id = 0
        self._last_state_change_time_secs = 0
        self._daily_limit_reached_at_secs = 0
        self._timer_id = 0
        self._time_change_id = 0
        self._clock_offset_secs = 0

        self._settings_changed_id = self._settings.connect_changed(self._on_settings_changed)

        # Start tracking timings
        self._update_settings()

    def _on_settings_changed(self, key):
        self.freeze_notify()
        if key == "daily-limit-seconds":
            self.notify("daily-limit-time")
        elif key == "grayscale":
            self.notify("grayscale-enabled")
        self._update_settings()
        self.thaw_notify()

    def _update_settings(self):
        if not self._settings.enabled:
            self._stop_state_machine()
            return False

        if self._state == TimeLimitsState.DISABLED:
            self._start_state_machine()
        else:
            self._update_state()

        return True

    def _start_state_machine(self):
        log.info("Bildschirmzeit-Limits aktiviert.")

        # Start off active: we run inside the user's session, so by the time
        # this is reached the user should be active.
        self._user_state = UserState.ACTIVE
        self._transitions = []
        self._state = TimeLimitsState.ACTIVE
        self._cancellable = Cancellable()

        self.freeze_notify()
        self.notify("state")
        self.notify("daily-limit-time")

        try:
            self._load_transitions()

            # Add a fake transition to show the startup.
            if not self._transitions or self._user_state != UserState.ACTIVE:
                self._add_transition(UserState.INACTIVE, UserState.ACTIVE, self.get_current_time(),
                                     recalculate_state=False)

            # Start listening for clock change notifications.
            self._clock_offset_secs = self._get_clock_offset()
            try:
                self._time_change_id = self._clock.time_change_notify(self._on_time_change)
            except (NotImplementedError, OSError) as e:
                log.warning(f"Änderungen der Systemuhr können nicht verfolgt werden: {e}")
                self._time_change_id = 0

            # Start listening for changes to the user's state.
            try:
                self._login_user = self._login_user_factory()
                self._login_user_changed_id = self._login_user.connect_properties_changed(
                    self._on_login_user_changed)
            except Exception as e:
                log.warning(f"Benutzerstatus von logind nicht verfügbar: {e}")
                self._login_user = None
                self._login_user_changed_id = 0

            self._update_user_state(store_updates=False)
            self._update_state()
        finally:
            self.thaw_notify()

    def _stop_state_machine(self):
        if self._state == TimeLimitsState.DISABLED:
            return

        log.info("Bildschirmzeit-Limits deaktiviert.")

        if self._time_change_id != 0:
            self._clock.source_remove(self._time_change_id)
        self._time_change_id = 0
        self._clock_offset_secs = 0

        self._cancel_scheduled_update()

        if self._login_user is not None:
            self._login_user.disconnect(self._login_user_changed_id)
        self._login_user = None
        self._login_user_changed_id = 0

        self._state = TimeLimitsState.DISABLED
        self._last_state_change_time_secs = 0
        self._daily_limit_reached_at_secs = 0

        self.freeze_notify()
        self.notify("state")
        self.notify("daily-limit-time")

        # Add a fake transition to show the shutdown.
        if self._user_state != UserState.INACTIVE:
            self._add_transition(UserState.ACTIVE, UserState.INACTIVE, self.get_current_time())

        # Pending asynchronous writes are superseded by this final one.
        self._cancellable.cancel()
        self._cancellable = None
        self._store_transitions()

        self.thaw_notify()

    def shutdown(self):
        """Shut down the state machine and write out the history file."""
        if self._settings_changed_id != 0:
            self._settings.disconnect(self._settings_changed_id)
        self._settings_changed_id = 0

        self._stop_state_machine()

    def get_current_time(self):
        """Get the current real time, in seconds since the Unix epoch."""
        return self._clock.get_real_time_secs()

    def _get_clock_offset(self):
        return self._clock.get_real_time_secs() - self._clock.get_monotonic_time_secs()

    def _on_time_change(self):
        new_clock_offset_secs = self._get_clock_offset()
        old_clock_offset_secs = self._clock_offset_secs

        log.debug(f"Systemuhr geändert, alter Offset {old_clock_offset_secs}s, neuer Offset {new_clock_offset_secs}s")

        if new_clock_offset_secs == old_clock_offset_secs:
            return SOURCE_CONTINUE

        self._adjust_all_times(new_clock_offset_secs - old_clock_offset_secs)
        self._clock_offset_secs = new_clock_offset_secs

        self._store_transitions_async()

        self.freeze_notify()
        self.notify("daily-limit-time")
        self._update_state()
        self.thaw_notify()

        return SOURCE_CONTINUE

    def _adjust_all_times(self, offset_secs):
        """
        Adjust all stored real/wall clock times by +`offset_secs`.

        Used when the real clock changes with respect to the monotonic clock.
        At that point all stored times have a constant offset to the new real
        time, which would break the daily usage calculations.

        If the clock offset changes while we are not running (for example,
        while another user is logged in), nothing can be done about it: the
        erroneous old entries are skipped until they expire.
        """
        assert self._state != TimeLimitsState.DISABLED, "Time limits should not be disabled when adjusting times"

        log.debug(f"Verschiebe alle Zeiten um {offset_secs}s")

        for transition in self._transitions:
            transition.wall_time_secs += offset_secs

        if self._last_state_change_time_secs != 0:
            self._last_state_change_time_secs += offset_secs

        if self._daily_limit_reached_at_secs != 0:
            self._daily_limit_reached_at_secs += offset_secs

        self._clock_offset_secs += offset_secs

    def _calculate_user_state_from_login_user(self):
        if self._login_user.state == "active" and not self._login_user.idle_hint:
            return UserState.ACTIVE
        return UserState.INACTIVE

    def _on_login_user_changed(self, *args):
        self._update_user_state(store_updates=True)

    def _update_user_state(self, store_updates):
        if self._login_user is None:
            return

        old_state = self._user_state
        new_state = self._calculate_user_state_from_login_user()

        if old_state == new_state:
            return

        self._add_transition(old_state, new_state, self.get_current_time())
        if store_updates:
            self._store_transitions_async()

    def _add_transition(self, old_state, new_state, wall_time_secs, recalculate_state=True):
        self._transitions.append(StateTransition(old_state, new_state, wall_time_secs))
        self._user_state = new_state

        log.debug(f"Benutzerstatus geändert von {old_state.name} zu {new_state.name} bei {wall_time_secs}s")

        # This potentially changed the limit time and timeout calculations.
        if recalculate_state and self._state != TimeLimitsState.DISABLED:
            self.freeze_notify()
            self.notify("daily-limit-time")
            self._update_state()
            self.thaw_notify()

    def _load_transitions(self):
        try:
            transitions = self._history_file.load(self.get_current_time())
        except (HistoryParseError, OSError) as e:
            # Warn on failure, but carry on with an empty history.
            log.warning(f"Bildschirmzeit-Verlauf konnte nicht geladen werden: {e}")
            return

        self._transitions = transitions
        if transitions:
            self._user_state = transitions[-1].new_state

    def _prune_transitions(self):
        self._transitions = filter_old_transitions(self._transitions, self.get_current_time())

    def _store_transitions(self):
        self._prune_transitions()
        self._history_file.store(self._transitions)

    def _store_transitions_async(self):
        self._prune_transitions()
        self._history_file.store_async(self._transitions, self._cancellable)

    def _get_start_of_today_secs(self, now_secs):
        """
        Get the Unix timestamps for the start of today and the start of
        tomorrow.

        The day starts at 03:00 rather than midnight, so that a day boundary
        never falls into an hour which is skipped or repeated by a daylight
        saving change.
        """
        now = datetime.fromtimestamp(now_secs, tz=self._timezone)
        today = now.date()
        if now.hour < DAY_START_HOUR:
            today -= timedelta(days=1)

        day_start = time(DAY_START_HOUR, tzinfo=self._timezone)
        start_of_today = datetime.combine(today, day_start)
        start_of_tomorrow = datetime.combine(today + timedelta(days=1), day_start)
        return start_of_today.timestamp(), start_of_tomorrow.timestamp()

    def _iter_active_periods_today(self, now_secs, start_of_today_secs):
        """Yield (start, end) wall times of each active period today."""
        first_idx = next((i for i, t in enumerate(self._transitions)
                          if t.wall_time_secs >= start_of_today_secs), None)

        # In case the first transition today is active → inactive, or there is none.
        active_start_secs = start_of_today_secs

        if first_idx is not None:
            for transition in self._transitions[first_idx:]:
                if transition.new_state == UserState.ACTIVE:
                    active_start_secs = transition.wall_time_secs
                elif transition.old_state == UserState.ACTIVE:
                    yield active_start_secs, transition.wall_time_secs

        if self._transitions and self._transitions[-1].new_state == UserState.ACTIVE:
            yield active_start_secs, now_secs

    def _calculate_active_time_today_secs(self, now_secs, start_of_today_secs):
        """
        Work out how much time the user has spent at the screen today, in
        real clock seconds.

        If the system clock changes, this is inaccurate until the transitions
        catch up, but it never returns a negative number.
        """
        active_time_today_secs = sum(
            max(end - start, 0) for start, end in self._iter_active_periods_today(now_secs, start_of_today_secs))

        assert active_time_today_secs >= 0, "Active time today should be non-negative even if system clock has changed"

        return active_time_today_secs

    def _calculate_limit_reached_time_secs(self, now_secs, start_of_today_secs, daily_limit_secs):
        """Find the instant today's active time crossed `daily_limit_secs`."""
        total_secs = 0
        for start, end in self._iter_active_periods_today(now_secs, start_of_today_secs):
            duration = max(end - start, 0)
            if duration > 0 and total_secs + duration >= daily_limit_secs:
                return start + (daily_limit_secs - total_secs)
            total_secs += duration

        # Only reached with a zero limit and no usage.
        return now_secs - (total_secs - daily_limit_secs)

    def _update_state(self):
        assert self._state != TimeLimitsState.DISABLED, "Time limits should not be disabled when updating timer"

        now_secs = self.get_current_time()
        start_of_today_secs, start_of_tomorrow_secs = self._get_start_of_today_secs(now_secs)
        new_state = self._state

        # Is it a new day since we last updated the state? If so, reset the
        # time limit.
        if start_of_today_secs > self._last_state_change_time_secs:
            new_state = TimeLimitsState.ACTIVE

        active_time_today_secs = self._calculate_active_time_today_secs(now_secs, start_of_today_secs)
        daily_limit_secs = self._settings.daily_limit_seconds

        log.debug(f"Aktive Zeit heute: {active_time_today_secs}s, Tageslimit {daily_limit_secs}s")

        if active_time_today_secs >= daily_limit_secs:
            new_state = TimeLimitsState.LIMIT_REACHED

            # Schedule an update for when the limit will be reset again.
            self._schedule_update_state(start_of_tomorrow_secs - now_secs)
        elif self._user_state == UserState.ACTIVE:
            new_state = TimeLimitsState.ACTIVE

            # Schedule an update for when we expect the limit to be reached.
            self._schedule_update_state(daily_limit_secs - active_time_today_secs)
        else:
            # User is inactive, so nothing changes until they become active again.
            new_state = TimeLimitsState.ACTIVE
            self._cancel_scheduled_update()

        if new_state == self._state:
            return

        log.info(f"Bildschirmzeit-Status: {self._state.name} → {new_state.name}")

        self._state = new_state
        self._last_state_change_time_secs = now_secs

        if new_state == TimeLimitsState.LIMIT_REACHED:
            self._daily_limit_reached_at_secs = self._calculate_limit_reached_time_secs(
                now_secs, start_of_today_secs, daily_limit_secs)
        else:
            self._daily_limit_reached_at_secs = 0

        self.freeze_notify()
        self.notify("state")
        self.notify("daily-limit-time")
        if new_state == TimeLimitsState.LIMIT_REACHED:
            self.emit("daily-limit-reached")
        self.thaw_notify()

    def _cancel_scheduled_update(self):
        if self._timer_id != 0:
            self._clock.source_remove(self._timer_id)
        self._timer_id = 0

    def _schedule_update_state(self, timeout_secs):
        self._cancel_scheduled_update()

        # Round up to avoid spinning
        timeout_seconds = math.ceil(timeout_secs)

        log.debug(f"Nächste Statusaktualisierung in {timeout_seconds}s")

        self._timer_id = self._clock.timeout_add_seconds(
            PRIORITY_DEFAULT, timeout_seconds, self._on_scheduled_update)

    def _on_scheduled_update(self):
        self._timer_id = 0
        log.debug("Geplante Statusaktualisierung")

        self.freeze_notify()
        self.notify("daily-limit-time")
        self._update_state()
        self.thaw_notify()

        return SOURCE_REMOVE

    @property
    def state(self):
        return self._state

    @property
    def user_state(self):
        return self._user_state

    @property
    def daily_limit_time(self):
        """
        The time the daily limit will be reached, in real time seconds.

        If the user is active and below the limit, this is in the future. If
        the limit has been reached, it is the time when that happened. If the
        user is inactive and below the limit, or limits are disabled, it is 0.
        """
        if self._state == TimeLimitsState.DISABLED:
            return 0

        if self._state == TimeLimitsState.LIMIT_REACHED:
            assert self._daily_limit_reached_at_secs > 0, "Daily limit reached-at unexpectedly low"
            return self._daily_limit_reached_at_secs

        if self._user_state != UserState.ACTIVE:
            return 0

        now_secs = self.get_current_time()
        start_of_today_secs, _ = self._get_start_of_today_secs(now_secs)
        active_time_today_secs = self._calculate_active_time_today_secs(now_secs, start_of_today_secs)
        return now_secs + (self._settings.daily_limit_seconds - active_time_today_secs)

    @property
    def grayscale_enabled(self):
        return self._settings.grayscale
