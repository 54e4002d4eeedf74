"""
Retry scheduler.

Re-publishes events whose delivery failed transiently once their backoff has
elapsed. Two mechanisms cooperate:

- schedule(): an in-process timer per record that re-publishes the event when
  the delay expires. Timers are a latency optimization only; they are lost on
  restart and are not guaranteed to fire after stop().
- sweep(): reads RETRYING records with next_retry_at <= now from the record
  store and re-publishes them. This is the durable mechanism. It runs when the
  pipeline starts and periodically while it runs.

Re-publishing the same event twice is harmless: the worker's dedup check skips
any copy whose record is no longer due.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from shared.models import DeliveryRecord, DeliveryStatus, utcnow
from pipeline.queue import NotificationQueue
from pipeline.record_store import DeliveryRecordStore

logger = logging.getLogger("retry_scheduler")


# Signature of threading.Timer: (interval_seconds, function) -> object with start()/cancel()
TimerFactory = Callable[[float, Callable[[], None]], Any]


class RetryScheduler:
    """
    Deferred re-publish of RETRYING records onto the queue.

    Example:
        scheduler = RetryScheduler(queue, store)
        scheduler.schedule(record, timedelta(minutes=5))
        ...
        scheduler.sweep()          # on start and periodically
        scheduler.cancel_all()     # on stop
    """

    def __init__(
        self,
        queue: NotificationQueue,
        store: DeliveryRecordStore,
        timer_factory: TimerFactory = threading.Timer,
        clock: Callable[[], datetime] = utcnow,
        requeue_grace: timedelta = timedelta(minutes=1),
    ):
        """
        Args:
            queue: Where retries are re-published
            store: Source of truth for RETRYING records
            timer_factory: Creates timers; threading.Timer by default
            clock: Source of "now", injectable for tests
            requeue_grace: A sweep skips events re-published more recently
                than this, so a backlog does not collect duplicates
        """
        self.queue = queue
        self.store = store
        self.timer_factory = timer_factory
        self.clock = clock
        self.requeue_grace = requeue_grace

        self._lock = threading.Lock()
        self._timers: dict[str, Any] = {}
        self._last_published: dict[str, datetime] = {}

    def schedule(self, record: DeliveryRecord, delay: timedelta) -> None:
        """Arrange a re-publish of the record's event after `delay`."""
        event_id = record.event_id
        seconds = max(delay.total_seconds(), 0.0)

        timer = self.timer_factory(seconds, lambda: self._on_timer(event_id))
        if hasattr(timer, "daemon"):
            timer.daemon = True

        with self._lock:
            previous = self._timers.pop(event_id, None)
            self._timers[event_id] = timer
        if previous is not None:
            previous.cancel()

        timer.start()
        logger.info(
            f"Scheduled retry {record.attempt_count}/{self.store.policy.max_attempts} "
            f"for {event_id} in {seconds / 60:.0f} minutes"
        )

    def _on_timer(self, event_id: str) -> None:
        with self._lock:
            self._timers.pop(event_id, None)
        self.republish(event_id)

    def republish(self, event_id: str) -> bool:
        """
        Put a RETRYING record's event back on the queue.

        Returns False when the record is gone or no longer RETRYING, or when
        the queue rejected the publish (the sweep will pick it up later).
        """
        record = self.store.get_by_event_id(event_id)
        if record is None or record.status != DeliveryStatus.RETRYING:
            logger.debug(f"Skipping re-publish of {event_id}: no longer retrying")
            return False

        result = self.queue.push(record.to_event())
        if not result.accepted:
            logger.error(f"Failed to re-publish {event_id}: {result.error}")
            return False

        with self._lock:
            self._last_published[event_id] = self.clock()
        logger.info(f"Notification {event_id} queued for retry")
        return True

    def sweep(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """
        Re-publish due RETRYING records from the record store.

        Records with a live timer, or re-published within requeue_grace, are
        left alone. Returns the number of events re-published.
        """
        now = now or self.clock()
        due = self.store.find_due_for_retry(now=now, limit=limit)

        republished = 0
        for record in due:
            with self._lock:
                if record.event_id in self._timers:
                    continue
                last = self._last_published.get(record.event_id)
            if last is not None and now - last < self.requeue_grace:
                continue
            if self.republish(record.event_id):
                republished += 1

        if republished:
            logger.info(f"Retry sweep re-published {republished} of {len(due)} due records")
        self._forget_stale(now)
        return republished

    def _forget_stale(self, now: datetime) -> None:
        with self._lock:
            stale = [
                event_id for event_id, published in self._last_published.items()
                if now - published >= self.requeue_grace
            ]
            for event_id in stale:
                del self._last_published[event_id]

    def cancel_all(self) -> int:
        """Cancel every pending timer. Returns how many were cancelled."""
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            logger.info(f"Cancelled {len(timers)} pending retry timers")
        return len(timers)

    def pending_count(self) -> int:
        """Number of timers that have not fired yet."""
        with self._lock:
            return len(self._timers)
