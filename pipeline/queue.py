"""
Notification event queue.

The queue absorbs the rate mismatch between event producers (registration,
login, KYC updates) and the notification worker, and lets producers keep
publishing while the worker is down.

Design decisions:
- Entries are stored serialized (JSON), the way they would sit in Redis
- push() never blocks and never raises into the caller: problems are logged
  and reported through a PublishResult
- pop_batch() is atomic per entry, so concurrent workers never receive the
  same entry twice
- FIFO in publish order; retries are re-published at the tail
"""

import logging
import threading
from collections import deque
from typing import Optional

from pydantic import ValidationError

from shared.errors import QueueUnavailable
from shared.models import Event, PublishResult

logger = logging.getLogger("notification_queue")


class NotificationQueue:
    """
    Queue contract used by producers, the worker and the retry scheduler.

    Subclasses implement _append(), _pop() and the size/purge operations;
    push() and pop_batch() add the publish and decode rules on top.
    """

    def _append(self, raw: str) -> None:
        raise NotImplementedError

    def _pop(self) -> Optional[str]:
        raise NotImplementedError

    def length(self) -> int:
        """Current backlog size."""
        raise NotImplementedError

    def clear(self) -> int:
        """Remove every entry. Irreversible. Returns the number removed."""
        raise NotImplementedError

    def push(self, event: Event) -> PublishResult:
        """
        Append an event to the tail.

        Never raises: a rejected publish is logged and returned as
        PublishResult(accepted=False) so the caller decides what to do.
        """
        try:
            self._append(event.to_json())
        except QueueUnavailable as e:
            logger.error(f"Failed to publish {event}: {e}")
            return PublishResult(accepted=False, event_id=event.event_id, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error publishing {event}")
            return PublishResult(
                accepted=False,
                event_id=event.event_id,
                error=f"Queue unavailable: {e}",
            )

        logger.info(f"Published: {event}")
        return PublishResult(accepted=True, event_id=event.event_id)

    def pop_batch(self, max_n: int) -> list[Event]:
        """
        Remove up to max_n entries from the head, in publish order.

        Returns an empty list when the queue is idle. Entries that cannot be
        decoded are logged and discarded; they still count towards max_n.
        """
        events, _ = self.pop_entries(max_n)
        return events

    def pop_entries(self, max_n: int) -> tuple[list[Event], int]:
        """
        Like pop_batch(), but also report how many entries were discarded.

        The queue shrinks by len(events) + discarded.
        """
        events: list[Event] = []
        discarded = 0
        for _ in range(max(max_n, 0)):
            raw = self._pop()
            if raw is None:
                break
            try:
                events.append(Event.from_json(raw))
            except ValidationError as e:
                discarded += 1
                logger.error(f"Discarding malformed queue entry ({e.error_count()} errors): {raw[:200]}")
        return events, discarded


class InMemoryQueue(NotificationQueue):
    """
    Thread-safe in-process queue.

    Bounded by max_length; a full queue rejects publishes with
    QueueUnavailable rather than blocking the producer.
    """

    def __init__(self, max_length: int = 10_000):
        self.max_length = max_length
        self._entries: deque[str] = deque()
        self._lock = threading.Lock()
        self._closed = False

    def _append(self, raw: str) -> None:
        with self._lock:
            if self._closed:
                raise QueueUnavailable("Queue is closed")
            if len(self._entries) >= self.max_length:
                raise QueueUnavailable(f"Queue is full ({self.max_length} entries)")
            self._entries.append(raw)

    def _pop(self) -> Optional[str]:
        with self._lock:
            if not self._entries:
                return None
            return self._entries.popleft()

    def length(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
        logger.warning(f"Notification queue cleared. Removed {removed} entries")
        return removed

    def close(self) -> None:
        """Stop accepting publishes (simulates an unreachable broker)."""
        with self._lock:
            self._closed = True

    def reopen(self) -> None:
        with self._lock:
            self._closed = False

    def push_raw(self, raw: str) -> None:
        """Append an already-serialized entry (for tooling and tests)."""
        self._append(raw)
