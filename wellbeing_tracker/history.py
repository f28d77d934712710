"""
Persistent history of user activity transitions.

The history file is a top-level JSON array. Each element is an object with
exactly these members:
 - `oldState`: integer value from `UserState`
 - `newState`: integer value from `UserState`, different from `oldState`
 - `wallTimeSecs`: seconds since the Unix epoch at which the transition
   happened; never lower than the previous element's

The use of wall/real time means the contents become invalid if the system
real time clock changes relative to the monotonic clock while nothing is
running to adjust them.
"""

import itertools
import json
import logging
import math
import os
import threading
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path

log = logging.getLogger(__name__)

HISTORY_THRESHOLD_SECONDS = 14 * 7 * 24 * 60 * 60  # maximum time history entries are kept


class UserState(IntEnum):
    # Stored in the history file, so the values must never change.
    INACTIVE = 0
    ACTIVE = 1


class HistoryParseError(ValueError):
    pass


@dataclass
class StateTransition:
    old_state: UserState
    new_state: UserState
    wall_time_secs: float

    def to_json(self):
        return {
            "oldState": int(self.old_state),
            "newState": int(self.new_state),
            "wallTimeSecs": self.wall_time_secs,
        }


def _keep_transition(transition, idx, count, now_secs):
    # Always drop future entries (even if that removes all history): they can
    # only come from file corruption or the clock offset changing while we
    # were not running. Otherwise keep the last entry as a starting point.
    return (transition.wall_time_secs <= now_secs and
            (transition.wall_time_secs >= now_secs - HISTORY_THRESHOLD_SECONDS or idx == count - 1))


def filter_old_transitions(transitions, now_secs):
    """Return the transitions which are still within the retention window."""
    count = len(transitions)
    return [t for i, t in enumerate(transitions) if _keep_transition(t, i, count, now_secs)]


def _parse_state(value):
    # bool is an int subclass, but `true` is not a valid state
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    try:
        return UserState(value)
    except ValueError:
        return None


def _parse_wall_time(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        return None
    return value if math.isfinite(value) else None


def parse_history(contents, source="history"):
    """
    Parse and validate the JSON text of a history file.

    Raises HistoryParseError if anything is malformed; nothing is returned
    partially.
    """
    try:
        history = json.loads(contents)
    except (ValueError, RecursionError) as e:
        raise HistoryParseError(f"{source} is not valid JSON: {e}") from e

    if not isinstance(history, list):
        raise HistoryParseError(f"{source} does not contain an array")

    transitions = []
    previous_wall_time_secs = 0

    for i, entry in enumerate(history):
        if not isinstance(entry, dict):
            raise HistoryParseError(f"Malformed entry (index {i}) in {source}")

        old_state = _parse_state(entry.get("oldState"))
        new_state = _parse_state(entry.get("newState"))
        wall_time_secs = _parse_wall_time(entry.get("wallTimeSecs"))

        if (old_state is None or
                new_state is None or
                old_state == new_state or
                wall_time_secs is None or
                wall_time_secs < previous_wall_time_secs):
            raise HistoryParseError(f"Malformed entry (index {i}) in {source}")

        transitions.append(StateTransition(old_state, new_state, wall_time_secs))
        previous_wall_time_secs = wall_time_secs

    return transitions


class Cancellable:
    """Cancellation token for pending asynchronous history writes."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    def is_cancelled(self):
        return self._event.is_set()


class HistoryFile:
    def __init__(self, path):
        self.path = Path(path)
        self._write_lock = threading.Lock()
        # Snapshots are numbered as they are taken; an older one is never
        # written over a newer one.
        self._generations = itertools.count(1)
        self._written_generation = 0

    def load(self, now_secs):
        """
        Load the transitions, dropping entries outside the retention window
        relative to `now_secs`.

        A missing file is an empty history. Raises HistoryParseError for a
        malformed file.
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                contents = f.read()
        except FileNotFoundError:
            return []
        except UnicodeDecodeError as e:
            raise HistoryParseError(f"{self.path} is not valid UTF-8") from e

        transitions = parse_history(contents, str(self.path))
        return filter_old_transitions(transitions, now_secs)

    def store(self, transitions):
        """
        Write the transitions out, replacing the file atomically. An empty
        history deletes the file. Returns False if writing failed.
        """
        contents = self._serialize(transitions)
        generation = next(self._generations)
        with self._write_lock:
            return self._write(contents, generation)

    def store_async(self, transitions, cancellable):
        """
        Like store(), but write on a worker thread. The write is skipped if
        `cancellable` is cancelled before it starts.
        """
        contents = self._serialize(transitions)
        generation = next(self._generations)
        thread = threading.Thread(
            target=self._write_cancellable, args=(contents, generation, cancellable), daemon=True)
        thread.start()
        return thread

    @staticmethod
    def _serialize(transitions):
        if not transitions:
            return None
        return json.dumps([t.to_json() for t in transitions])

    def _write_cancellable(self, contents, generation, cancellable):
        with self._write_lock:
            if cancellable is not None and cancellable.is_cancelled():
                log.debug(f"Schreiben von '{self.path}' abgebrochen.")
                return
            if generation < self._written_generation:
                log.debug(f"Veralteter Stand für '{self.path}' wird nicht geschrieben.")
                return
            self._write(contents, generation)

    def _write(self, contents, generation):
        self._written_generation = generation
        log.debug(f"Speichere Bildschirmzeit-Verlauf nach '{self.path}'")

        try:
            if contents is None:
                self.path.unlink(missing_ok=True)
                return True

            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with open(fd, "w", encoding="utf-8") as f:
                f.write(contents)
            tmp_path.replace(self.path)
            return True
        except OSError as e:
            log.error(f"Bildschirmzeit-Verlauf konnte nicht gespeichert werden: {e}")
            return False
