import logging
from collections import defaultdict
from typing import Callable, DefaultDict, List

from .notifiers import EVENT_TITLES, get_notifier

TRANSFER_STARTED = "transferStarted"
TRANSFER_COMPLETE = "transferComplete"
TRANSFER_FAILED = "transferFailed"
ITEM_MOVED = "itemMoved"

Listener = Callable[[str, str], None]


class EventEmitter:
    """Dispatches named lifecycle events to registered listeners.

    Listeners are called synchronously in registration order. A failing
    listener is logged and never interrupts the run or the other listeners.
    """

    def __init__(self):
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)

    def add_listener(self, event: str, listener: Listener) -> None:
        if event not in EVENT_TITLES:
            raise ValueError(f"Unknown event: {event}")
        self._listeners[event].append(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, payload: str) -> None:
        logging.debug(f"Event {event}: {payload}")
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(event, payload)
            except Exception as e:
                logging.error(f"Listener for '{event}' failed on '{payload}': {e}", exc_info=True)


def setup_listeners(emitter: EventEmitter, settings) -> EventEmitter:
    """Registers the post-processing hook and every enabled push channel.

    Args:
        emitter: The emitter to wire up.
        settings: The effective `Settings` of the run.
    """
    if settings.post_processors.strip():
        hook = get_notifier("hook", {"post_processors": settings.post_processors})
        emitter.add_listener(TRANSFER_COMPLETE, hook)
        logging.debug("Registered post-processing hook for transferComplete.")

    for channel, options in settings.notifications.items():
        try:
            notifier = get_notifier(channel, options)
        except ValueError as e:
            logging.warning(f"Skipping notifications: {e}")
            continue
        events = [e.strip() for e in options.get("events", "").split(",") if e.strip()]
        for event in events:
            if event not in EVENT_TITLES:
                logging.warning(f"Ignoring unknown event '{event}' for {channel} notifications.")
                continue
            emitter.add_listener(event, notifier)
        logging.debug(f"Registered {channel} notifications for: {', '.join(events) or 'no events'}")
    return emitter
