"""In-process realtime bus.

Listeners (websocket fan-out, dashboards) subscribe to an event type and are
called synchronously on publish. A failing listener is logged and skipped;
publishing never raises to the webhook path.
"""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], None]

_lock = threading.Lock()
_listeners: dict[str, list[Listener]] = defaultdict(list)


def subscribe(event_type: str, listener: Listener) -> Callable[[], None]:
    """Register ``listener``; returns a callable that unsubscribes it."""
    with _lock:
        _listeners[event_type].append(listener)

    def _unsubscribe() -> None:
        with _lock:
            if listener in _listeners[event_type]:
                _listeners[event_type].remove(listener)

    return _unsubscribe


def publish(event_type: str, data: dict[str, Any]) -> int:
    """Deliver to every listener; returns how many succeeded."""
    with _lock:
        listeners = list(_listeners.get(event_type, ()))
    message = {"type": event_type, "data": data}
    delivered = 0
    for listener in listeners:
        try:
            listener(message)
            delivered += 1
        except Exception:  # noqa: BLE001
            logger.exception("Realtime listener failed for %s", event_type)
    return delivered


def reset() -> None:
    with _lock:
        _listeners.clear()
