"""
Pipeline controller.

Owns the worker's start/stop lifecycle and the operational surface (status,
force-retry, clear-queue). Each controller is an independent instance built
from injected dependencies, so tests can run several side by side.

Lifecycle:
- start(): sweeps the record store for due retries, then runs the poll loop on
  a background thread (first tick immediately, then every process_interval)
- stop(): signals the loop, waits for the in-flight batch to finish, and
  cancels pending retry timers. The next start() sweep recovers those retries.
- repeated start()/stop() calls are logged no-ops
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from shared.channels import ChannelSender, EmailChannel
from shared.config import Settings, get_settings
from shared.models import DeliveryRecord, Event, PublishResult, utcnow
from shared.templates import TemplateRenderer
from pipeline.backoff import RetryPolicy
from pipeline.queue import InMemoryQueue, NotificationQueue
from pipeline.record_store import DeliveryRecordStore
from pipeline.retry import RetryScheduler, TimerFactory
from pipeline.worker import NotificationWorker, TickResult, WorkerStats

logger = logging.getLogger("pipeline_controller")


class PipelineController:
    """
    Start/stop and status for one notification pipeline.

    Example:
        controller = PipelineController.from_settings()
        controller.start()
        controller.publish(event)
        print(controller.status())
        controller.stop()
    """

    def __init__(
        self,
        queue: NotificationQueue,
        store: DeliveryRecordStore,
        renderer: TemplateRenderer,
        sender: ChannelSender,
        settings: Optional[Settings] = None,
        timer_factory: TimerFactory = threading.Timer,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            queue: Notification queue shared with producers
            store: Delivery record store (its retry policy is the one applied)
            renderer: Template renderer
            sender: Channel sender
            settings: Intervals, batch size and stats window
            timer_factory: Timer implementation for retry scheduling
            clock: Source of "now", injectable for tests
        """
        settings = settings or get_settings()
        self.settings = settings
        self.queue = queue
        self.store = store
        self.clock = clock

        self.process_interval = settings.process_interval
        self.sweep_interval = settings.retry_sweep_interval
        self.stats_window = timedelta(hours=settings.stats_window_hours)

        self.scheduler = RetryScheduler(
            queue=queue,
            store=store,
            timer_factory=timer_factory,
            clock=clock,
            requeue_grace=self.sweep_interval,
        )
        self.worker = NotificationWorker(
            queue=queue,
            store=store,
            renderer=renderer,
            sender=sender,
            scheduler=self.scheduler,
            max_batch_size=settings.max_batch_size,
            stats=WorkerStats(window=self.stats_window, clock=clock),
        )

        self._running = False
        self._lifecycle_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_sweep_at: Optional[datetime] = None
        self._last_tick_at: Optional[datetime] = None

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        sender: Optional[ChannelSender] = None,
    ) -> "PipelineController":
        """Build a controller with the default in-process queue and store."""
        settings = settings or get_settings()
        store = DeliveryRecordStore(
            path=settings.records_path,
            policy=RetryPolicy.from_settings(settings),
        )
        return cls(
            queue=InMemoryQueue(max_length=settings.queue_max_length),
            store=store,
            renderer=TemplateRenderer(),
            sender=sender or EmailChannel(from_addr=settings.email_from),
            settings=settings,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> bool:
        """Start the poll loop. Returns False if it was already running."""
        with self._lifecycle_lock:
            if self._running:
                logger.warning("Notification worker is already running")
                return False

            self._sweep(force=True)

            # Each run gets its own stop signal
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop_event,),
                name="notification-worker",
                daemon=True,
            )
            self._running = True
            self._thread.start()

        logger.info(
            f"Notification worker started (interval={self.settings.process_interval_ms}ms, "
            f"batch={self.worker.max_batch_size})"
        )
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop the poll loop after the in-flight batch completes.

        Returns False if it was not running, or if the batch did not finish
        within `timeout`. In the latter case the worker stays "running" until
        a later stop() sees the thread exit, so start() cannot launch a
        second poll loop next to it.
        """
        with self._lifecycle_lock:
            if not self._running:
                logger.warning("Notification worker is not running")
                return False

            self._stop_event.set()
            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)
                if thread.is_alive():
                    logger.warning(
                        f"Notification worker did not finish its batch within {timeout}s; "
                        "still stopping"
                    )
                    return False
            self._thread = None
            self._running = False
            self.scheduler.cancel_all()

        logger.info("Notification worker stopped")
        return True

    def _loop(self, stop_event: threading.Event) -> None:
        interval = self.process_interval.total_seconds()
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                # Never let a bad tick kill the worker thread
                logger.exception("Error processing notification queue")
            stop_event.wait(interval)

    # =========================================================================
    # Ticks and sweeps
    # =========================================================================

    def run_once(self) -> TickResult:
        """Run a single tick (and the retry sweep when it is due)."""
        with self._tick_lock:
            self._sweep()
            result = self.worker.tick()
            self._last_tick_at = self.clock()
            return result

    def _sweep(self, force: bool = False) -> int:
        now = self.clock()
        if not force and self._last_sweep_at is not None:
            if now - self._last_sweep_at < self.sweep_interval:
                return 0
        self._last_sweep_at = now
        try:
            return self.scheduler.sweep(now=now)
        except Exception:
            logger.exception("Retry sweep failed")
            return 0

    def sweep_now(self) -> int:
        """Run the durable retry sweep immediately."""
        with self._tick_lock:
            return self._sweep(force=True)

    # =========================================================================
    # Operations
    # =========================================================================

    def publish(self, event: Event) -> PublishResult:
        """Best-effort publish onto this pipeline's queue."""
        return self.queue.push(event)

    def force_retry(self, event_id: str) -> DeliveryRecord:
        """
        Make a RETRYING or non-terminal FAILED record due now and re-publish it.

        Raises:
            RecordNotFound, RetryNotAllowed
        """
        record = self.store.force_retry(event_id, now=self.clock())
        self.scheduler.republish(event_id)
        return record

    def clear_queue(self) -> int:
        """Purge the queue. Irreversible."""
        return self.queue.clear()

    def status(self) -> dict:
        """Operational status for health checks and alerting."""
        status = {
            "worker_status": "running" if self._running else "stopped",
            "process_interval_ms": self.settings.process_interval_ms,
            "max_batch_size": self.worker.max_batch_size,
            "max_attempts": self.store.policy.max_attempts,
            "pending_retry_timers": self.scheduler.pending_count(),
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "throughput": self.worker.stats.snapshot(),
        }
        try:
            status["queue_length"] = self.queue.length()
            status["status_counts"] = self.store.count_by_status(
                since=self.clock() - self.stats_window
            )
        except Exception as e:
            logger.error(f"Failed to collect worker status: {e}")
            status["error"] = str(e)
        return status
