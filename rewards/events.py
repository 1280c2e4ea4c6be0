"""Fire-and-forget ledger notifications.

Events are put on a bounded queue after the ledger transaction has committed
and delivered to subscribers by a worker thread. A full queue drops the event
and a failing subscriber is logged; neither ever reaches the caller of a
ledger operation.
"""

import queue
import threading
from typing import Callable, Optional

from .errors import NotificationDeliveryError
from .logging_config import get_logger
from .models import LedgerEvent

logger = get_logger(__name__)

Subscriber = Callable[[LedgerEvent], None]

_STOP = object()


class EventEmitter:
    def __init__(self, maxsize: int = 1000):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._subscribers: list[Subscriber] = []
        self._worker: Optional[threading.Thread] = None
        self.dropped = 0

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def emit(self, event: LedgerEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning("event_dropped", event_type=event.type, reason="queue_full")
            return False
        return True

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._worker = threading.Thread(target=self._run, name="ledger-events", daemon=True)
        self._worker.start()
        logger.info("event_emitter_started", subscribers=len(self._subscribers))

    def stop(self, timeout: float = 5.0) -> None:
        if not self.running:
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("event_emitter_stop_timed_out", queued=self._queue.qsize())
            self._worker = None
            return
        self._worker.join(timeout)
        self._worker = None
        logger.info("event_emitter_stopped", dropped=self.dropped)

    def flush(self) -> None:
        """Block until every queued event has been handed to the subscribers."""
        if self.running:
            self._queue.join()
        else:
            self.process_pending()

    def process_pending(self) -> int:
        """Deliver queued events on the calling thread. Returns how many were delivered."""
        delivered = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            try:
                if item is not _STOP:
                    self._deliver(item)
                    delivered += 1
            finally:
                self._queue.task_done()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, event: LedgerEvent) -> None:
        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except NotificationDeliveryError as exc:
                logger.warning("notification_delivery_failed", event_type=event.type, error=str(exc))
            except Exception as exc:
                logger.exception("notification_subscriber_crashed", event_type=event.type, error=str(exc))
