"""
PyGObject adapters connecting the state machines to the running session:
the GLib main loop, logind, the Mutter idle monitor and GSettings.
"""

import errno
import logging
import os
import time

import gi
gi.require_version('Gio', '2.0')
gi.require_version('GLib', '2.0')

from gi.repository import GLib, Gio

from .config import CONFIG_FILE, load_config
from .settings import BreakTypeSettings, FileBreakReminderSettings, FileScreenTimeLimitSettings

log = logging.getLogger(__name__)

SCREEN_TIME_LIMITS_SCHEMA = "org.gnome.desktop.screen-time-limits"
BREAK_REMINDERS_SCHEMA = "org.gnome.desktop.break-reminders"

# Far enough in the future that the timer never expires on its own; it only
# exists to be cancelled by clock changes.
_TIMERFD_NEVER_SECS = float(2 ** 40)


# ========== Clock ==========
class GLibClock:
    """Clock backed by the GLib main loop."""

    def __init__(self):
        self._time_change_fds = {}  # source ID → timerfd

    def get_real_time_secs(self):
        return GLib.get_real_time() / GLib.USEC_PER_SEC

    def get_monotonic_time_secs(self):
        return GLib.get_monotonic_time() / GLib.USEC_PER_SEC

    def timeout_add_seconds(self, priority, seconds, callback):
        return GLib.timeout_add_seconds(seconds, callback, priority=priority)

    def source_remove(self, source_id):
        fd = self._time_change_fds.pop(source_id, None)
        if fd is not None:
            os.close(fd)
        GLib.source_remove(source_id)

    def time_change_notify(self, callback):
        if not hasattr(os, "timerfd_create"):
            raise NotImplementedError("os.timerfd_create() ist nicht verfügbar")

        fd = os.timerfd_create(time.CLOCK_REALTIME, flags=os.TFD_NONBLOCK | os.TFD_CLOEXEC)
        try:
            self._arm_timerfd(fd)
        except OSError:
            os.close(fd)
            raise

        def on_ready(unused_fd, condition):
            try:
                os.read(fd, 8)
            except BlockingIOError:
                return GLib.SOURCE_CONTINUE
            except OSError as e:
                if e.errno != errno.ECANCELED:
                    raise
                # A clock change disarms the timer.
                self._arm_timerfd(fd)
                log.debug("Systemuhr wurde verstellt.")

                if callback():
                    return GLib.SOURCE_CONTINUE

                self._time_change_fds.pop(source_id, None)
                os.close(fd)
                return GLib.SOURCE_REMOVE

            return GLib.SOURCE_CONTINUE

        source_id = GLib.io_add_watch(fd, GLib.PRIORITY_DEFAULT, GLib.IOCondition.IN, on_ready)
        self._time_change_fds[source_id] = fd
        return source_id

    @staticmethod
    def _arm_timerfd(fd):
        os.timerfd_settime(fd, flags=os.TFD_TIMER_ABSTIME | os.TFD_TIMER_CANCEL_ON_SET,
                           initial=_TIMERFD_NEVER_SECS)


# ========== logind ==========
class LoginUser:
    """The logind object for the user running this process."""

    def __init__(self, bus=None):
        if bus is None:
            bus = Gio.bus_get_sync(Gio.BusType.SYSTEM, None)
        self._proxy = Gio.DBusProxy.new_sync(
            bus,
            Gio.DBusProxyFlags.NONE,
            None,
            "org.freedesktop.login1",
            "/org/freedesktop/login1/user/self",
            "org.freedesktop.login1.User",
            None,
        )
        log.info("logind D-Bus Verbindung hergestellt.")

    @property
    def state(self):
        value = self._proxy.get_cached_property("State")
        return value.unpack() if value is not None else ""

    @property
    def idle_hint(self):
        value = self._proxy.get_cached_property("IdleHint")
        return value.unpack() if value is not None else False

    def connect_properties_changed(self, callback):
        return self._proxy.connect("g-properties-changed", callback)

    def disconnect(self, handler_id):
        self._proxy.disconnect(handler_id)


# ========== Idle Monitor ==========
class IdleMonitor:
    """Uses org.gnome.Mutter.IdleMonitor over D-Bus for Wayland-compatible idle detection."""

    def __init__(self):
        self._bus = None
        self._proxy = None
        self._signal_id = 0
        self._watches = {}  # watch ID → callback
        self._connect()

    def _connect(self):
        try:
            self._bus = Gio.bus_get_sync(Gio.BusType.SESSION, None)
            self._proxy = Gio.DBusProxy.new_sync(
                self._bus,
                Gio.DBusProxyFlags.NONE,
                None,
                "org.gnome.Mutter.IdleMonitor",
                "/org/gnome/Mutter/IdleMonitor/Core",
                "org.gnome.Mutter.IdleMonitor",
                None,
            )
            self._signal_id = self._proxy.connect("g-signal", self._on_signal)
            log.info("IdleMonitor D-Bus Verbindung hergestellt.")
        except GLib.Error as e:
            log.error(f"IdleMonitor D-Bus Verbindung fehlgeschlagen: {e}")
            self._proxy = None

    def _call(self, method, parameters):
        """Returns the watch ID from the call, or 0 on error."""
        if not self._proxy:
            self._connect()
            if not self._proxy:
                return 0
        try:
            result = self._proxy.call_sync(
                method,
                parameters,
                Gio.DBusCallFlags.NONE,
                1000,
                None,
            )
            return result.unpack()[0]
        except GLib.Error as e:
            log.warning(f"{method} fehlgeschlagen: {e}")
            return 0

    def add_idle_watch(self, interval_ms, callback):
        watch_id = self._call("AddIdleWatch", GLib.Variant("(t)", (interval_ms,)))
        if watch_id != 0:
            self._watches[watch_id] = callback
        return watch_id

    def add_user_active_watch(self, callback):
        watch_id = self._call("AddUserActiveWatch", None)
        if watch_id != 0:
            self._watches[watch_id] = callback
        return watch_id

    def remove_watch(self, watch_id):
        self._watches.pop(watch_id, None)
        if not self._proxy:
            return
        try:
            self._proxy.call_sync(
                "RemoveWatch",
                GLib.Variant("(u)", (watch_id,)),
                Gio.DBusCallFlags.NONE,
                1000,
                None,
            )
        except GLib.Error as e:
            log.warning(f"RemoveWatch fehlgeschlagen: {e}")

    def _on_signal(self, proxy, sender_name, signal_name, parameters):
        if signal_name != "WatchFired":
            return
        (watch_id,) = parameters.unpack()
        callback = self._watches.get(watch_id)
        if callback is not None:
            callback(watch_id)


# ========== Screen Saver ==========
class ScreenSaver:
    """Locks the session through org.gnome.ScreenSaver."""

    def __init__(self):
        self._proxy = None
        self._connect()

    def _connect(self):
        try:
            bus = Gio.bus_get_sync(Gio.BusType.SESSION, None)
            self._proxy = Gio.DBusProxy.new_sync(
                bus,
                Gio.DBusProxyFlags.DO_NOT_LOAD_PROPERTIES,
                None,
                "org.gnome.ScreenSaver",
                "/org/gnome/ScreenSaver",
                "org.gnome.ScreenSaver",
                None,
            )
        except GLib.Error as e:
            log.error(f"ScreenSaver D-Bus Verbindung fehlgeschlagen: {e}")
            self._proxy = None

    def lock(self):
        if not self._proxy:
            self._connect()
            if not self._proxy:
                return False
        try:
            self._proxy.call_sync(
                "Lock",
                None,
                Gio.DBusCallFlags.NONE,
                1000,
                None,
            )
            log.info("Bildschirm gesperrt.")
            return True
        except GLib.Error as e:
            log.warning(f"Lock fehlgeschlagen: {e}")
            return False


# ========== GSettings ==========
def schema_installed(schema_id):
    source = Gio.SettingsSchemaSource.get_default()
    return source is not None and source.lookup(schema_id, True) is not None


class _GSettingsSource:
    def __init__(self, settings):
        self._settings = settings

    def connect_changed(self, callback):
        return self._settings.connect("changed", lambda settings, key: callback(key))

    def disconnect(self, handler_id):
        self._settings.disconnect(handler_id)


class GSettingsScreenTimeLimitSettings(_GSettingsSource):
    def __init__(self):
        super().__init__(Gio.Settings.new(SCREEN_TIME_LIMITS_SCHEMA))

    @property
    def enabled(self):
        return self._settings.get_boolean("enabled")

    @property
    def daily_limit_seconds(self):
        return self._settings.get_uint("daily-limit-seconds")

    @property
    def grayscale(self):
        return self._settings.get_boolean("grayscale")


class GSettingsBreakReminderSettings(_GSettingsSource):
    """
    `org.gnome.desktop.break-reminders`, plus one relocatable child schema
    per break type below its path. Changes to a child are reported with the
    child's key.
    """

    def __init__(self):
        super().__init__(Gio.Settings.new(BREAK_REMINDERS_SCHEMA))
        self._children = {}
        self._callbacks = {}
        self._next_handler_id = 1

    def connect_changed(self, callback):
        handler_id = self._next_handler_id
        self._next_handler_id += 1
        self._callbacks[handler_id] = (callback, super().connect_changed(callback))
        return handler_id

    def disconnect(self, handler_id):
        entry = self._callbacks.pop(handler_id, None)
        if entry is not None:
            super().disconnect(entry[1])

    def _on_child_changed(self, settings, key):
        for callback, _ in list(self._callbacks.values()):
            callback(key)

    def _child(self, break_type):
        child = self._children.get(break_type)
        if child is None:
            path = self._settings.props.path
            child = Gio.Settings.new_with_path(f"{BREAK_REMINDERS_SCHEMA}.{break_type}",
                                               f"{path}{break_type}/")
            child.connect("changed", self._on_child_changed)
            self._children[break_type] = child
        return child

    @property
    def selected_breaks(self):
        return list(self._settings.get_strv("selected-breaks"))

    def get_break_type(self, break_type):
        child = self._child(break_type)
        return BreakTypeSettings(
            interval_seconds=child.get_uint("interval-seconds"),
            duration_seconds=child.get_uint("duration-seconds"),
            delay_seconds=child.get_uint("delay-seconds"),
            notify=child.get_boolean("notify"),
            notify_upcoming=child.get_boolean("notify-upcoming"),
            notify_overdue=child.get_boolean("notify-overdue"),
            countdown=child.get_boolean("countdown"),
            play_sound=child.get_boolean("play-sound"),
            fade_screen=child.get_boolean("fade-screen"),
            lock_screen=child.get_boolean("lock-screen"),
        )


# ========== Settings selection ==========
def _use_gsettings(backend, schema_id):
    if backend == "file":
        return False
    if schema_installed(schema_id):
        return True
    if backend == "gsettings":
        log.error(f"GSettings-Schema {schema_id} ist nicht installiert, verwende die Konfigurationsdatei.")
    return False


def create_settings(config):
    """
    Returns `(screen_time_limit_settings, break_reminder_settings,
    file_sections)`; `file_sections` are the sources backed by the config file,
    to be passed to `watch_config_file()`.
    """
    backend = config.get("settings_backend", "auto")
    file_sections = []

    if _use_gsettings(backend, SCREEN_TIME_LIMITS_SCHEMA):
        screen_time_limit_settings = GSettingsScreenTimeLimitSettings()
    else:
        screen_time_limit_settings = FileScreenTimeLimitSettings(config)
        file_sections.append(screen_time_limit_settings)

    if _use_gsettings(backend, BREAK_REMINDERS_SCHEMA):
        break_reminder_settings = GSettingsBreakReminderSettings()
    else:
        break_reminder_settings = FileBreakReminderSettings(config)
        file_sections.append(break_reminder_settings)

    log.info(f"Einstellungen: Bildschirmzeit über {type(screen_time_limit_settings).__name__}, "
             f"Pausen über {type(break_reminder_settings).__name__}")
    return screen_time_limit_settings, break_reminder_settings, file_sections


def watch_config_file(file_sections, path=CONFIG_FILE):
    """
    Reload `file_sections` whenever the config file changes. The returned
    monitor has to be kept alive by the caller.
    """
    monitor = Gio.File.new_for_path(str(path)).monitor_file(Gio.FileMonitorFlags.NONE, None)

    def on_changed(monitor, file, other_file, event_type):
        if event_type not in (Gio.FileMonitorEvent.CHANGES_DONE_HINT,
                              Gio.FileMonitorEvent.CREATED,
                              Gio.FileMonitorEvent.DELETED):
            return
        log.info("Konfigurationsdatei geändert, lade neu.")
        config = load_config(path)
        for section in file_sections:
            section.reload(config)

    monitor.connect("changed", on_changed)
    return monitor
