import logging
import os
import signal
import sys

import gi
gi.require_version('Gio', '2.0')
gi.require_version('GLib', '2.0')

from gi.repository import GLib, Gio

from .breaks import BreakManager
from .config import APP_ID, CONFIG_DIR, CONFIG_FILE, HISTORY_FILE, LOG_FILE, load_config
from .history import HistoryFile
from .notifications import BreakNotifier, TimeLimitsNotifier
from .session import GLibClock, IdleMonitor, LoginUser, ScreenSaver, create_settings, watch_config_file
from .time_limits import TimeLimitsManager

log = logging.getLogger(__name__)


# --- Logging ---
def setup_logging():
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    debug = os.environ.get("WELLBEING_TRACKER_DEBUG") == "1"
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(LOG_FILE),
            logging.StreamHandler()
        ]
    )


# ========== Application ==========
class WellbeingTrackerApp(Gio.Application):
    def __init__(self):
        super().__init__(
            application_id=APP_ID,
            flags=Gio.ApplicationFlags.FLAGS_NONE,
        )
        self.time_limits_manager = None
        self.break_manager = None
        self._notifiers = []
        self._config_monitor = None
        self._screen_saver = None

    def do_startup(self):
        Gio.Application.do_startup(self)

        # No windows; keep running until told to quit.
        self.hold()

        config = load_config()
        screen_time_settings, break_settings, file_sections = create_settings(config)
        if file_sections:
            self._config_monitor = watch_config_file(file_sections, CONFIG_FILE)

        clock = GLibClock()
        self.time_limits_manager = TimeLimitsManager(
            HistoryFile(HISTORY_FILE), clock, LoginUser, screen_time_settings)
        self.time_limits_manager.connect("daily-limit-reached", self._on_daily_limit_reached)
        self.break_manager = BreakManager(clock, IdleMonitor(), break_settings)

        self._notifiers = [
            TimeLimitsNotifier(self.time_limits_manager, clock, self),
            BreakNotifier(self.break_manager, clock, self),
        ]

        for name, callback in (("delay-break", self._on_delay_break),
                               ("skip-break", self._on_skip_break),
                               ("take-break", self._on_take_break)):
            action = Gio.SimpleAction.new(name, None)
            action.connect("activate", callback)
            self.add_action(action)

        for signum in (signal.SIGINT, signal.SIGTERM):
            GLib.unix_signal_add(GLib.PRIORITY_DEFAULT, signum, self._on_quit_signal)

        log.info("Wellbeing Tracker gestartet.")

    def do_activate(self):
        log.debug("Bereits aktiv.")

    def do_shutdown(self):
        for notifier in self._notifiers:
            notifier.destroy()
        self._notifiers = []

        if self.break_manager:
            self.break_manager.shutdown()
        if self.time_limits_manager:
            # Writes the final history synchronously.
            self.time_limits_manager.shutdown()

        if self._config_monitor:
            self._config_monitor.cancel()

        log.info("Wellbeing Tracker beendet.")
        Gio.Application.do_shutdown(self)

    def _on_quit_signal(self):
        self.quit()
        return GLib.SOURCE_REMOVE

    def _on_daily_limit_reached(self, manager):
        log.info("Tägliches Bildschirmzeit-Limit erreicht.")

    def _on_delay_break(self, action, param):
        self.break_manager.delay_break()

    def _on_skip_break(self, action, param):
        self.break_manager.skip_break()

    def _on_take_break(self, action, param):
        self.break_manager.take_break()

    def lock_screen(self):
        if self._screen_saver is None:
            self._screen_saver = ScreenSaver()
        self._screen_saver.lock()

    def send_notification_message(self, notification_id, title, body, actions=()):
        notification = Gio.Notification.new(title)
        notification.set_body(body)
        for label, action_name in actions:
            notification.add_button(label, action_name)
        if actions:
            notification.set_priority(Gio.NotificationPriority.HIGH)
        self.send_notification(notification_id, notification)


# ========== Entry Point ==========
def main():
    setup_logging()
    app = WellbeingTrackerApp()
    return app.run(sys.argv)


if __name__ == "__main__":
    sys.exit(main())
