"""Screen time limits and break reminders for the GNOME session."""

__version__ = "1.0.0"
