import logging
import typing
from collections.abc import Callable

EventName = typing.Literal["data", "error", "disconnected"]
EVENT_NAMES: tuple[str, ...] = typing.get_args(EventName)

Listener = Callable[..., typing.Any]

log = logging.getLogger("iot_serial.events")


class EventTable:
    """Ordered listener lists per event name. Emitting walks a snapshot, so
    listeners may add or remove listeners (themselves included) while an
    event is being delivered; a faulty listener is logged and skipped."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {
            name: [] for name in EVENT_NAMES
        }

    def on(self, event: str, callback: Listener) -> None:
        self._table(event).append(callback)

    def off(self, event: str, callback: Listener) -> None:
        listeners = self._table(event)
        if callback in listeners:
            listeners.remove(callback)

    def count(self, event: str) -> int:
        return len(self._table(event))

    def emit(self, event: str, *args: typing.Any) -> None:
        listeners = self._table(event)
        for callback in list(listeners):
            if callback not in listeners:
                continue  # removed by an earlier listener
            try:
                callback(*args)
            except Exception:
                log.exception("Listener %r for %r failed", callback, event)

    def _table(self, event: str) -> list[Listener]:
        try:
            return self._listeners[event]
        except KeyError:
            known = ", ".join(EVENT_NAMES)
            message = f"Unknown event {event!r} (known: {known})"
            raise ValueError(message) from None
