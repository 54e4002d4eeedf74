"""
Notification worker.

Each tick dequeues a bounded batch from the queue and drives every event
through the delivery state machine:

    1. create_if_absent on the record store (idempotency guard)
    2. render subject/body for the event type
    3. re-check the record, then invoke the channel sender
    4. update the record; schedule a retry for transient failures

Design decisions:
- Events in a batch are processed sequentially, in dequeue order, to bound the
  load on the channel sender
- A failing event never aborts the rest of the batch
- Retried events re-enter at the tail of the queue, so FIFO order across
  retries is not preserved. That is accepted behavior.
- The worker holds no locks of its own; the queue and the record store are
  the synchronization points shared with other worker processes
"""

import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from shared.channels import ChannelSender
from shared.errors import ChannelError, TemplateError, classify_error
from shared.models import DeliveryRecord, DeliveryStatus, Event, utcnow
from shared.templates import TemplateRenderer
from pipeline.queue import NotificationQueue
from pipeline.record_store import DeliveryRecordStore
from pipeline.retry import RetryScheduler

logger = logging.getLogger("notification_worker")


DEFAULT_BATCH_SIZE = 5


class ProcessOutcome(str, Enum):
    """What happened to one dequeued event."""
    SENT = "sent"
    RETRYING = "retrying"
    FAILED = "failed"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    ERROR = "error"  # Store/infrastructure problem; the event stays in its last state


@dataclass
class TickResult:
    """
    Summary of one poll tick.

    dequeued counts every entry removed from the queue, including the
    malformed ones counted in discarded.
    """
    dequeued: int = 0
    discarded: int = 0
    outcomes: list[ProcessOutcome] = field(default_factory=list)

    def count(self, outcome: ProcessOutcome) -> int:
        return sum(1 for o in self.outcomes if o == outcome)


class WorkerStats:
    """
    Rolling counters for the operational status.

    Keeps lifetime totals plus a time-windowed log of recent outcomes.
    """

    def __init__(self, window: timedelta = timedelta(hours=1), clock: Callable[[], datetime] = utcnow):
        self.window = window
        self.clock = clock
        self.ticks = 0
        self.totals: Counter = Counter()
        self._recent: deque[tuple[datetime, ProcessOutcome]] = deque()
        self._lock = threading.Lock()

    def record(self, outcome: ProcessOutcome) -> None:
        with self._lock:
            self.totals[outcome.value] += 1
            self._recent.append((self.clock(), outcome))
            self._trim()

    def record_tick(self) -> None:
        with self._lock:
            self.ticks += 1

    def _trim(self) -> None:
        cutoff = self.clock() - self.window
        while self._recent and self._recent[0][0] < cutoff:
            self._recent.popleft()

    def recent(self) -> dict[str, int]:
        """Outcome counts within the window."""
        with self._lock:
            self._trim()
            counts = Counter(outcome.value for _, outcome in self._recent)
        return {outcome.value: counts.get(outcome.value, 0) for outcome in ProcessOutcome}

    def snapshot(self) -> dict:
        with self._lock:
            totals = {outcome.value: self.totals.get(outcome.value, 0) for outcome in ProcessOutcome}
            ticks = self.ticks
        return {
            "ticks": ticks,
            "totals": totals,
            "recent": self.recent(),
            "window_seconds": int(self.window.total_seconds()),
        }


class NotificationWorker:
    """
    Consumes the notification queue.

    Example:
        worker = NotificationWorker(queue, store, TemplateRenderer(), EmailChannel(), scheduler)
        result = worker.tick()
        print(result.count(ProcessOutcome.SENT))
    """

    def __init__(
        self,
        queue: NotificationQueue,
        store: DeliveryRecordStore,
        renderer: TemplateRenderer,
        sender: ChannelSender,
        scheduler: RetryScheduler,
        max_batch_size: int = DEFAULT_BATCH_SIZE,
        stats: Optional[WorkerStats] = None,
    ):
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self.queue = queue
        self.store = store
        self.renderer = renderer
        self.sender = sender
        self.scheduler = scheduler
        self.max_batch_size = max_batch_size
        self.stats = stats or WorkerStats(clock=store.clock)

    # =========================================================================
    # Polling
    # =========================================================================

    def tick(self) -> TickResult:
        """Dequeue up to max_batch_size events and process them in order."""
        events, discarded = self.queue.pop_entries(self.max_batch_size)
        self.stats.record_tick()
        result = TickResult(dequeued=len(events) + discarded, discarded=discarded)
        if not events:
            return result

        logger.info(f"Processing {len(events)} notifications from queue")
        for event in events:
            try:
                outcome = self.process_event(event)
            except Exception:
                # Store or infrastructure failure; keep going with the batch
                logger.exception(f"Unexpected error processing {event}")
                outcome = ProcessOutcome.ERROR
            self.stats.record(outcome)
            result.outcomes.append(outcome)
        return result

    # =========================================================================
    # Single event
    # =========================================================================

    def process_event(self, event: Event) -> ProcessOutcome:
        """Drive one event through render, send and record update."""
        logger.info(f"Processing {event.type} notification {event.event_id} for user {event.user_id}")

        record, already_processed = self.store.create_if_absent(event)
        if already_processed:
            logger.info(
                f"Notification {event.event_id} already processed "
                f"({record.status.value}), skipping"
            )
            return ProcessOutcome.SKIPPED_DUPLICATE

        # Render
        try:
            message = self.renderer.render(record.type, record.payload)
        except TemplateError as e:
            logger.error(
                f"[PRODUCER DEFECT] Cannot render {record.type} for event {event.event_id}: {e}"
            )
            self.store.mark_failed(record.id, f"TemplateError: {e}", should_retry=False)
            return ProcessOutcome.FAILED
        record = self.store.set_content(record.id, message.subject, message.body)

        # Another worker may have advanced the record while we rendered
        if not self._still_ours(record):
            logger.info(f"Notification {event.event_id} advanced by another worker, skipping send")
            return ProcessOutcome.SKIPPED_DUPLICATE

        # Send
        try:
            ack = self.sender.send(record.destination, message.subject, message.body)
        except Exception as e:
            return self._handle_send_failure(record, e)

        self.store.mark_sent(record.id, ack)
        logger.info(f"Notification sent: {record.type} to {record.destination} ({ack.message_id})")
        return ProcessOutcome.SENT

    def _still_ours(self, seen: DeliveryRecord) -> bool:
        current = self.store.get(seen.id)
        if current is None:
            return False
        return (
            current.status in (DeliveryStatus.PENDING, DeliveryStatus.RETRYING)
            and current.status == seen.status
            and current.attempt_count == seen.attempt_count
        )

    def _handle_send_failure(self, record: DeliveryRecord, error: Exception) -> ProcessOutcome:
        retryable = classify_error(error)
        kind = type(error).__name__
        if not isinstance(error, ChannelError):
            logger.warning(f"Unclassified sender error for {record.event_id} treated as "
                           f"{'retryable' if retryable else 'permanent'}: {error!r}")

        updated = self.store.mark_failed(record.id, f"{kind}: {error}", should_retry=retryable)

        if updated.status == DeliveryStatus.SENT:
            # Delivered by another worker while this send was failing
            return ProcessOutcome.SKIPPED_DUPLICATE

        if updated.status == DeliveryStatus.RETRYING:
            delay = updated.next_retry_at - self.store.clock()
            self.scheduler.schedule(updated, delay)
            logger.warning(
                f"Failed to send {record.event_id} ({kind}); "
                f"retry {updated.attempt_count}/{self.store.policy.max_attempts} scheduled"
            )
            return ProcessOutcome.RETRYING

        if retryable:
            logger.error(
                f"Giving up on {record.event_id} after {updated.attempt_count} retries: {error}"
            )
        else:
            logger.error(f"Permanent failure for {record.event_id} ({kind}): {error}")
        return ProcessOutcome.FAILED
