"""
Delivery record store.

One record per event_id. The store is the dedup ledger the worker checks
before sending, the place operators look up delivery status, and the durable
index of RETRYING records that the retry sweep recovers after a restart.

Design decisions:
- All state transitions live here, so the state machine is enforced in one place
- A re-entrant lock makes every operation atomic; create_if_absent is the
  uniqueness-constrained insert that multiple workers rely on
- Callers get copies of records, never the stored instances
- Optional JSON file persistence (rewritten after every mutation, reloaded on
  construction) stands in for the database in a real deployment
"""

import json
import logging
import threading
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from shared.errors import RecordNotFound, RetryNotAllowed
from shared.models import (
    DeliveryRecord,
    DeliveryStatus,
    Event,
    SendReceipt,
    canonical_type,
    utcnow,
)
from pipeline.backoff import RetryPolicy

logger = logging.getLogger("delivery_records")


class DeliveryRecordStore:
    """
    Ledger of delivery records with the delivery state machine.

        PENDING  --send ok-------------------------> SENT (terminal)
        PENDING  --transient failure, budget left--> RETRYING (attempt_count += 1)
        PENDING  --permanent / template failure----> FAILED
        RETRYING --same rules on the next attempt--> SENT | RETRYING | FAILED

    FAILED becomes terminal once attempt_count reaches max_attempts.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the store.

        Args:
            path: JSON file to persist records to. None keeps them in memory.
            policy: Retry budget and backoff schedule
            clock: Source of "now", injectable for tests
        """
        self.path = Path(path) if path is not None else None
        self.policy = policy or RetryPolicy()
        self.clock = clock

        self._lock = threading.RLock()
        self._records: dict[str, DeliveryRecord] = {}
        self._by_event_id: dict[str, str] = {}

        if self.path is not None:
            self._load()

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load(self) -> None:
        if not self.path.exists():
            return
        with open(self.path, "r") as f:
            data = json.load(f)
        for item in data:
            record = DeliveryRecord.model_validate(item)
            self._records[record.id] = record
            self._by_event_id[record.event_id] = record.id
        logger.info(f"Loaded {len(self._records)} delivery records from {self.path}")

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump([r.model_dump(mode="json") for r in self._records.values()], f)
        tmp_path.replace(self.path)

    # =========================================================================
    # Lookups
    # =========================================================================

    def get(self, record_id: str) -> Optional[DeliveryRecord]:
        """Get a record by its id."""
        with self._lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record else None

    def get_by_event_id(self, event_id: str) -> Optional[DeliveryRecord]:
        """Get the record for an event (the dedup key)."""
        with self._lock:
            record_id = self._by_event_id.get(event_id)
            return self.get(record_id) if record_id else None

    def _require(self, record_id: str) -> DeliveryRecord:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFound(f"Delivery record not found: {record_id}")
        return record

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # =========================================================================
    # State machine
    # =========================================================================

    def create_if_absent(self, event: Event) -> tuple[DeliveryRecord, bool]:
        """
        Create a PENDING record for an event unless one exists.

        Returns:
            (record, already_processed). already_processed is False for a new
            record and for a RETRYING record whose backoff has elapsed; those
            are the only two cases in which the caller should attempt a send.
        """
        with self._lock:
            existing_id = self._by_event_id.get(event.event_id)
            if existing_id is not None:
                existing = self._records[existing_id]
                already_processed = not existing.is_due(self.clock())
                return existing.model_copy(deep=True), already_processed

            now = self.clock()
            record = DeliveryRecord(
                event_id=event.event_id,
                type=canonical_type(event.type),
                user_id=event.user_id,
                destination=event.destination,
                payload=dict(event.payload),
                created_at=now,
                updated_at=now,
            )
            self._records[record.id] = record
            self._by_event_id[record.event_id] = record.id
            self._save()
            logger.debug(f"Created delivery record {record.id} for event {event.event_id}")
            return record.model_copy(deep=True), False

    def set_content(self, record_id: str, subject: str, body: str) -> DeliveryRecord:
        """Store the rendered subject and body."""
        with self._lock:
            record = self._require(record_id)
            if not record.is_terminal(self.policy.max_attempts):
                record.subject = subject
                record.body = body
                record.updated_at = self.clock()
                self._save()
            return record.model_copy(deep=True)

    def mark_sent(self, record_id: str, ack: SendReceipt) -> DeliveryRecord:
        """PENDING|RETRYING -> SENT. No-op for any other state."""
        with self._lock:
            record = self._require(record_id)
            if record.status not in (DeliveryStatus.PENDING, DeliveryStatus.RETRYING):
                logger.debug(f"mark_sent ignored for {record.event_id} in state {record.status.value}")
                return record.model_copy(deep=True)

            now = self.clock()
            record.status = DeliveryStatus.SENT
            record.sent_at = now
            record.next_retry_at = None
            record.last_error = None
            record.message_id = ack.message_id
            record.provider_response = ack.provider_response
            record.updated_at = now
            self._save()
            return record.model_copy(deep=True)

    def mark_failed(self, record_id: str, error: str, should_retry: bool) -> DeliveryRecord:
        """
        Record a failed attempt.

        With should_retry and budget left the record moves to RETRYING,
        attempt_count is incremented and next_retry_at follows the backoff
        schedule. Otherwise the record becomes FAILED. Terminal records are
        left untouched.
        """
        with self._lock:
            record = self._require(record_id)
            if record.is_terminal(self.policy.max_attempts):
                logger.debug(f"mark_failed ignored for terminal record {record.event_id}")
                return record.model_copy(deep=True)

            now = self.clock()
            record.last_error = error
            record.failed_at = now
            record.updated_at = now

            if should_retry and self.policy.has_budget(record.attempt_count):
                record.attempt_count += 1
                record.status = DeliveryStatus.RETRYING
                record.next_retry_at = now + self.policy.delay_for_attempt(record.attempt_count)
            else:
                record.status = DeliveryStatus.FAILED
                record.next_retry_at = None

            self._save()
            return record.model_copy(deep=True)

    def find_due_for_retry(self, now: Optional[datetime] = None, limit: int = 5) -> list[DeliveryRecord]:
        """RETRYING records with next_retry_at <= now, oldest due first."""
        now = now or self.clock()
        with self._lock:
            due = [r for r in self._records.values() if r.is_due(now)]
            due.sort(key=lambda r: (r.next_retry_at, r.created_at))
            return [r.model_copy(deep=True) for r in due[:limit]]

    def force_retry(self, event_id: str, now: Optional[datetime] = None) -> DeliveryRecord:
        """
        Make a record due for retry immediately (administrative).

        RETRYING records keep their attempt_count. FAILED records with budget
        left move to RETRYING and consume one attempt.

        Raises:
            RecordNotFound: No record for the event
            RetryNotAllowed: Record is SENT, terminally FAILED, or still PENDING
        """
        now = now or self.clock()
        with self._lock:
            record_id = self._by_event_id.get(event_id)
            if record_id is None:
                raise RecordNotFound(f"Delivery record not found for event: {event_id}")
            record = self._records[record_id]

            if record.is_terminal(self.policy.max_attempts):
                raise RetryNotAllowed(
                    f"Record for {event_id} is terminal "
                    f"({record.status.value}, {record.attempt_count} attempts)"
                )
            if record.status == DeliveryStatus.PENDING:
                raise RetryNotAllowed(f"Record for {event_id} is still being processed")

            if record.status == DeliveryStatus.FAILED:
                record.attempt_count += 1
                record.status = DeliveryStatus.RETRYING
            record.next_retry_at = now
            record.updated_at = now
            self._save()
            logger.info(f"Forced retry for {event_id} (attempt {record.attempt_count})")
            return record.model_copy(deep=True)

    # =========================================================================
    # Queries for the operational surface
    # =========================================================================

    def _since(self, since: Optional[datetime]) -> list[DeliveryRecord]:
        if since is None:
            return list(self._records.values())
        return [r for r in self._records.values() if r.created_at >= since]

    def list_for_user(
        self,
        user_id: str,
        status: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[DeliveryRecord], int]:
        """
        A user's delivery history, newest first.

        Returns:
            (page of records, total matching count)
        """
        with self._lock:
            matches = [r for r in self._records.values() if r.user_id == user_id]
            if status:
                matches = [r for r in matches if r.status.value == status.upper()]
            if type:
                matches = [r for r in matches if r.type == canonical_type(type)]
            matches.sort(key=lambda r: r.created_at, reverse=True)
            page = matches[offset:offset + limit]
            return [r.model_copy(deep=True) for r in page], len(matches)

    def count_by_status(self, since: Optional[datetime] = None) -> dict[str, int]:
        """Number of records per status, all statuses included."""
        with self._lock:
            counts = Counter(r.status.value for r in self._since(since))
        return {status.value: counts.get(status.value, 0) for status in DeliveryStatus}

    def count_by_type(self, since: Optional[datetime] = None) -> dict[str, int]:
        with self._lock:
            return dict(Counter(r.type for r in self._since(since)))

    def recent_failures(self, since: Optional[datetime] = None, limit: int = 10) -> list[DeliveryRecord]:
        """Most recent FAILED records."""
        with self._lock:
            failed = [r for r in self._since(since) if r.status == DeliveryStatus.FAILED]
            failed.sort(key=lambda r: r.failed_at or r.updated_at, reverse=True)
            return [r.model_copy(deep=True) for r in failed[:limit]]
