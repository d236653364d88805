"""Notification channels.

A Notification is a named, typed channel with any number of subscribers. Emitting a notification calls each
subscriber, in subscription order, with the notification payload.
"""

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Notification(Generic[T]):
    """A channel delivering payloads of type T to its subscribers."""

    def __init__(self, name: str):
        self.name = name
        self._subscribers: list[Callable[..., None]] = []

    def __repr__(self):
        return f"Notification(name={self.name!r}, subscribers={len(self._subscribers)})"

    def subscribe(self, callback: Callable[..., None]) -> Callable[..., None]:
        """Add a subscriber. The callback is returned, so this can be used as a decorator."""
        self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: Callable[..., None]) -> None:
        """Remove a subscriber. Removing a callback that is not subscribed is a no-op."""
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def unsubscribe_all(self) -> None:
        """Remove all subscribers."""
        self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, *payload: T) -> None:
        """Deliver a payload to all subscribers.

        An exception raised by a subscriber is logged; it does not keep the payload from the other subscribers.
        """
        # Subscribers may unsubscribe while being notified.
        for callback in list(self._subscribers):
            try:
                callback(*payload)
            except Exception:
                logger.exception("Subscriber %r of the %r notification raised an exception.", callback, self.name)
