import logging
from typing import Any, Callable, List

from modelsync.core.types import StoreEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[StoreEvent, Any], None]


class Subscribable:
    """
    Explicit change notification for stores.

    Subscribers are called synchronously with (event, rendered) after every
    state change, where rendered is the store's render() output at that
    moment. Callers adapt this to their UI layer.
    """

    def _init_subscribers(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            self.unsubscribe(callback)

        return unsubscribe

    def unsubscribe(self, callback: Subscriber) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _render_for_subscribers(self) -> Any:
        return self.render()

    def _notify(self, event: StoreEvent) -> None:
        if not self._subscribers:
            return

        try:
            rendered = self._render_for_subscribers()
        except Exception as e:
            logger.exception("Error rendering %r for event %s: %s", self, event.value, e)
            return

        # Copy, a subscriber may unsubscribe itself
        for callback in list(self._subscribers):
            try:
                callback(event, rendered)
            except Exception as e:
                logger.exception(
                    "Error in subscriber %r for event %s on %r: %s",
                    callback,
                    event.value,
                    self,
                    e,
                )
