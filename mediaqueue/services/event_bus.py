"""
A small publish/subscribe channel for progress events.

Pipelines only publish structured `ProgressEvent`s. What happens with them
(console logging, error files, a UI, a history store) is decided by whoever
subscribes, and a subscriber that fails never affects the pipeline or the
other subscribers.
"""
import threading
from typing import Callable, List

from loguru import logger

from ..domain.models import ProgressEvent

Subscriber = Callable[[ProgressEvent], None]


class ProgressBus:
    """
    Fans every published event out to all current subscribers, in subscription order.

    Events are delivered synchronously on the publishing thread, so events of one
    job arrive in the order its pipeline produced them.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Registers `callback` for every future event.

        Returns:
            A function that removes the subscription again.
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: ProgressEvent):
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.exception(f"Progress subscriber {callback!r} failed on {event.stage.value} for {event.job_id}: {e}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)
