import copy
import json
import logging
import os
from pathlib import Path

log = logging.getLogger(__name__)

# --- Constants ---
APP_ID = "io.github.wellbeing_tracker.WellbeingTracker"
CONFIG_DIR = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")) / "wellbeing-tracker"
CONFIG_FILE = CONFIG_DIR / "config.json"
LOG_FILE = CONFIG_DIR / "wellbeing-tracker.log"
DATA_DIR = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share")) / "wellbeing-tracker"
HISTORY_FILE = DATA_DIR / "session-active-history.json"

SETTINGS_BACKENDS = ("auto", "gsettings", "file")

# --- Default Config ---
DEFAULT_CONFIG = {
    "settings_backend": "auto",
    "screen_time_limits": {
        "enabled": False,
        "daily_limit_seconds": 8 * 60 * 60,
        "grayscale": True,
    },
    "break_reminders": {
        "selected_breaks": [],
        "eyesight": {
            "interval_seconds": 20 * 60,
            "duration_seconds": 20,
            "delay_seconds": 5 * 60,
            "notify": True,
            "notify_upcoming": False,
            "notify_overdue": True,
            "countdown": True,
            "play_sound": False,
            "fade_screen": True,
            "lock_screen": False,
        },
        "movement": {
            "interval_seconds": 30 * 60,
            "duration_seconds": 5 * 60,
            "delay_seconds": 5 * 60,
            "notify": True,
            "notify_upcoming": True,
            "notify_overdue": True,
            "countdown": True,
            "play_sound": True,
            "fade_screen": True,
            "lock_screen": False,
        },
    },
}


def load_config(path=CONFIG_FILE):
    if path.exists():
        try:
            with open(path, "r") as f:
                cfg = json.load(f)
            if not isinstance(cfg, dict):
                raise ValueError("Konfiguration ist kein JSON-Objekt")
            merged = {**copy.deepcopy(DEFAULT_CONFIG), **cfg}
            if merged["settings_backend"] not in SETTINGS_BACKENDS:
                log.warning(f"Unbekanntes settings_backend '{merged['settings_backend']}', verwende 'auto'.")
                merged["settings_backend"] = "auto"
            return merged
        except Exception as e:
            log.error(f"Fehler beim Laden der Konfiguration: {e}")
    return copy.deepcopy(DEFAULT_CONFIG)


def save_config(config, path=CONFIG_FILE):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(config, f, indent=2)
    log.info("Konfiguration gespeichert.")
