import logging

log = logging.getLogger(__name__)


class SignalEmitter:
    """
    Minimal signal/property-notification mixin for the managers.

    Handlers are called synchronously in connection order. `notify()` calls
    made between `freeze_notify()` and `thaw_notify()` are collected and
    emitted once, when the outermost thaw happens.
    """

    def __init__(self):
        self._handlers = {}
        self._next_handler_id = 1
        self._freeze_count = 0
        self._pending_notifies = []

    def connect(self, name, callback):
        handler_id = self._next_handler_id
        self._next_handler_id += 1
        self._handlers[handler_id] = (name, callback)
        return handler_id

    def disconnect(self, handler_id):
        self._handlers.pop(handler_id, None)

    def emit(self, name, *args):
        for handler_id, (handler_name, callback) in list(self._handlers.items()):
            if handler_name != name or handler_id not in self._handlers:
                continue
            try:
                callback(self, *args)
            except Exception:
                log.exception(f"Fehler im Signal-Handler für '{name}'")

    def notify(self, property_name):
        if self._freeze_count > 0:
            if property_name not in self._pending_notifies:
                self._pending_notifies.append(property_name)
            return
        self.emit(f"notify::{property_name}")

    def freeze_notify(self):
        self._freeze_count += 1

    def thaw_notify(self):
        assert self._freeze_count > 0, "thaw_notify() without freeze_notify()"
        self._freeze_count -= 1
        if self._freeze_count > 0:
            return

        pending, self._pending_notifies = self._pending_notifies, []
        for property_name in pending:
            self.emit(f"notify::{property_name}")
