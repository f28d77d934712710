"""
Glue which turns the state-based output of the managers into desktop
notifications, taking the user's preferences into account.

Notifications are sent through the application object, which has to provide
`send_notification_message(notification_id, title, body, actions=())` and
`withdraw_notification(notification_id)`; taking a break early also needs
`lock_screen()`.
"""

import logging
import math

from .breaks import BreakState
from .clock import PRIORITY_DEFAULT, SOURCE_REMOVE
from .time_limits import TimeLimitsState

log = logging.getLogger(__name__)

LIMIT_UPCOMING_NOTIFICATION_TIME_SECONDS = 10 * 60  # notify the user 10min before their limit is reached
BREAK_UPCOMING_NOTIFICATION_TIME_SECONDS = 2 * 60
BREAK_OVERDUE_TIME_SECONDS = 60  # time after a break is due when the user is told it's overdue

TIME_LIMITS_NOTIFICATION_ID = "screen-time-limit"
BREAK_NOTIFICATION_ID = "break-reminder"

BREAK_ACTIONS = [
    ("Verschieben", "app.delay-break"),
    ("Überspringen", "app.skip-break"),
    ("Pause machen", "app.take-break"),
]


def format_duration(seconds):
    seconds = int(math.ceil(seconds))
    if seconds < 60:
        return "1 Sekunde" if seconds == 1 else f"{seconds} Sekunden"
    minutes = seconds // 60
    return "1 Minute" if minutes == 1 else f"{minutes} Minuten"


class _ScheduledUpdates:
    """Single pending wake-up on the given clock."""

    def __init__(self, clock, callback):
        self._clock = clock
        self._callback = callback
        self._timer_id = 0

    def schedule(self, timeout_secs):
        self.cancel()
        # Round up to avoid spinning
        timeout_seconds = math.ceil(timeout_secs)
        self._timer_id = self._clock.timeout_add_seconds(PRIORITY_DEFAULT, timeout_seconds, self._on_timeout)

    def cancel(self):
        if self._timer_id != 0:
            self._clock.source_remove(self._timer_id)
        self._timer_id = 0

    def _on_timeout(self):
        self._timer_id = 0
        self._callback()
        return SOURCE_REMOVE


class TimeLimitsNotifier:
    def __init__(self, manager, clock, app):
        self._manager = manager
        self._app = app
        self._timer = _ScheduledUpdates(clock, self._update_state)
        self._handler_ids = [
            manager.connect("notify::state", self._on_state_changed),
            manager.connect("notify::daily-limit-time", self._on_state_changed),
        ]

        self._previous_state = None
        self._update_state()
        self._previous_state = manager.state

    def destroy(self):
        self._timer.cancel()
        for handler_id in self._handler_ids:
            self._manager.disconnect(handler_id)
        self._handler_ids = []

    def _on_state_changed(self, manager):
        self._update_state()
        self._previous_state = self._manager.state

    def _update_state(self):
        state = self._manager.state

        log.debug(f"Bildschirmzeit-Benachrichtigung: Status {state.name}")

        if state == TimeLimitsState.DISABLED:
            if self._previous_state != TimeLimitsState.DISABLED:
                self._timer.cancel()
                self._app.withdraw_notification(TIME_LIMITS_NOTIFICATION_ID)
        elif state == TimeLimitsState.ACTIVE:
            limit_due_time = self._manager.daily_limit_time
            if limit_due_time == 0:
                # User inactive; the manager notifies again once they're back.
                self._timer.cancel()
                return

            remaining_secs = limit_due_time - self._manager.get_current_time()
            log.debug(f"Noch {remaining_secs}s bis zum Bildschirmzeit-Limit")

            if remaining_secs > LIMIT_UPCOMING_NOTIFICATION_TIME_SECONDS:
                self._timer.schedule(remaining_secs - LIMIT_UPCOMING_NOTIFICATION_TIME_SECONDS)
            elif math.ceil(remaining_secs) == LIMIT_UPCOMING_NOTIFICATION_TIME_SECONDS:
                self._timer.cancel()
                self._app.send_notification_message(
                    TIME_LIMITS_NOTIFICATION_ID,
                    f"Bildschirmzeit-Limit in {format_duration(LIMIT_UPCOMING_NOTIFICATION_TIME_SECONDS)}",
                    "Dein Bildschirmzeit-Limit ist bald erreicht.")
        elif state == TimeLimitsState.LIMIT_REACHED:
            self._timer.cancel()
            if self._previous_state != TimeLimitsState.LIMIT_REACHED:
                self._app.send_notification_message(
                    TIME_LIMITS_NOTIFICATION_ID,
                    "Bildschirmzeit-Limit erreicht",
                    "Es ist Zeit, den Computer nicht mehr zu benutzen.")


class BreakNotifier:
    def __init__(self, manager, clock, app):
        self._manager = manager
        self._app = app
        self._timer = _ScheduledUpdates(clock, self._update_state)
        self._handler_ids = [
            manager.connect("notify::state", self._on_state_changed),
            manager.connect("notify::next-break-due-time", self._on_state_changed),
            manager.connect("break-due", self._on_break_due),
            manager.connect("break-finished", self._on_break_finished),
            manager.connect("take-break", self._on_take_break),
        ]
        self._overdue_notified = False
        self._upcoming_notified_for = 0
        self._previous_state = None

        self._update_state()

    def destroy(self):
        self._timer.cancel()
        for handler_id in self._handler_ids:
            self._manager.disconnect(handler_id)
        self._handler_ids = []

    def _on_state_changed(self, manager):
        self._update_state()

    def _on_break_due(self, manager):
        break_type = manager.current_break_type
        self._overdue_notified = False
        if not manager.break_type_should_notify(break_type):
            return

        duration = format_duration(manager.get_duration_for_break_type(break_type))
        if break_type == "eyesight":
            body = f"Schau für {duration} in die Ferne."
        else:
            body = f"Steh auf und beweg dich für {duration}."

        self._app.send_notification_message(
            BREAK_NOTIFICATION_ID, "Zeit für eine Pause", body, BREAK_ACTIONS)

    def _on_break_finished(self, manager):
        if manager.break_type_should_notify(manager.current_break_type):
            self._app.send_notification_message(
                BREAK_NOTIFICATION_ID, "Pause beendet", "Gut gemacht!")

    def _on_take_break(self, manager):
        break_type = manager.current_break_type
        if break_type is None:
            break_type, _ = manager.get_next_break_due(manager.get_current_time())

        log.info(f"Pause wird vorgezogen (Typ: {break_type}).")
        self._app.withdraw_notification(BREAK_NOTIFICATION_ID)
        if manager.break_type_should_lock_screen(break_type):
            self._app.lock_screen()

    def _update_state(self):
        state = self._manager.state
        current_time = self._manager.get_current_time()
        previous_state, self._previous_state = self._previous_state, state

        if state in (BreakState.DISABLED, BreakState.IDLE):
            self._timer.cancel()
            if state == BreakState.DISABLED and previous_state != BreakState.DISABLED:
                self._app.withdraw_notification(BREAK_NOTIFICATION_ID)
        elif state == BreakState.ACTIVE:
            self._overdue_notified = False
            break_type, due_time = self._manager.get_next_break_due(current_time)
            if break_type is None or not self._manager.break_type_should_notify_upcoming(break_type):
                self._timer.cancel()
                return

            upcoming_at = due_time - BREAK_UPCOMING_NOTIFICATION_TIME_SECONDS
            if upcoming_at > current_time:
                self._timer.schedule(upcoming_at - current_time)
            elif due_time > current_time and self._upcoming_notified_for != due_time:
                self._timer.cancel()
                self._upcoming_notified_for = due_time
                self._app.send_notification_message(
                    BREAK_NOTIFICATION_ID,
                    f"Pause in {format_duration(due_time - current_time)}",
                    "Bald ist es Zeit für eine Pause.",
                    BREAK_ACTIONS)
        elif state == BreakState.BREAK_DUE:
            break_type = self._manager.current_break_type
            if self._overdue_notified or not self._manager.break_type_should_notify_overdue(break_type):
                self._timer.cancel()
                return

            due_since = current_time - self._manager.break_due_time
            if due_since < BREAK_OVERDUE_TIME_SECONDS:
                self._timer.schedule(BREAK_OVERDUE_TIME_SECONDS - due_since)
            else:
                self._overdue_notified = True
                self._app.send_notification_message(
                    BREAK_NOTIFICATION_ID, "Pause überfällig",
                    f"Deine Pause ist seit {format_duration(due_since)} fällig.",
                    BREAK_ACTIONS)
        elif state == BreakState.IN_BREAK:
            self._timer.cancel()
