"""
Notification event pipeline.

Producers publish events onto the queue; the worker dequeues them in batches,
deduplicates against the delivery record store, renders and sends them, and
hands transient failures to the retry scheduler. The pipeline controller owns
the worker's lifecycle.
"""

from pipeline.backoff import RetryPolicy
from pipeline.controller import PipelineController
from pipeline.producers import NotificationPublisher, make_event_id
from pipeline.queue import InMemoryQueue, NotificationQueue
from pipeline.record_store import DeliveryRecordStore
from pipeline.retry import RetryScheduler
from pipeline.worker import NotificationWorker, ProcessOutcome

__all__ = [
    "RetryPolicy",
    "PipelineController",
    "NotificationPublisher",
    "make_event_id",
    "InMemoryQueue",
    "NotificationQueue",
    "DeliveryRecordStore",
    "RetryScheduler",
    "NotificationWorker",
    "ProcessOutcome",
]
