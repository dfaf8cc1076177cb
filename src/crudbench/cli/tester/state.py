"""Replace-only state container with snapshot subscriptions."""

import logging
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

logger = logging.getLogger("crudbench.state")

T = TypeVar("T", bound=BaseModel)


class StateContainer(Generic[T]):
    """Owns one frozen snapshot; every change publishes a new one.

    Listeners receive the new snapshot synchronously. Holders of an older
    snapshot keep seeing the old values.
    """

    def __init__(self, initial: T):
        self._snapshot: T = initial
        self._listeners: list[Callable[[T], None]] = []

    @property
    def snapshot(self) -> T:
        return self._snapshot

    def replace(self, **changes: Any) -> T:
        new = self._snapshot.model_copy(update=changes)
        if new == self._snapshot:
            return self._snapshot

        self._snapshot = new
        for listener in list(self._listeners):
            try:
                listener(new)
            except Exception:
                logger.exception("State listener failed")
        return new

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Callable[[T], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)
