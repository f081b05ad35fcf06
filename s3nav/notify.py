from __future__ import annotations
"""Keyed change notifications for the presentation layer."""
import logging
import threading
from typing import Callable, Hashable

LOGGER = logging.getLogger(__name__)

Callback = Callable[[object], None]
ANY = object()


class Notifier:
    """Delivers payloads to callbacks subscribed by key.

    Subscribing with :data:`ANY` receives every publication.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[Hashable, list[Callback]] = {}

    def subscribe(self, key: Hashable, callback: Callback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(key, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(key, None)

        return unsubscribe

    def publish(self, key: Hashable, payload: object) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(key, ())) + list(self._subscribers.get(ANY, ()))
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                LOGGER.exception("Subscriber for %r failed", key)
