"""
Tests for the pipeline controller.

Most tests call run_once() directly so that ticks are deterministic; the
lifecycle tests start the real background thread.
"""

import threading
from datetime import timedelta

import pytest

from shared.config import Settings
from shared.errors import PermanentChannelError, RecordNotFound, RetryNotAllowed
from shared.models import DeliveryStatus, SendReceipt
from pipeline.controller import PipelineController
from pipeline.simulation import ScriptedChannel


class BlockingChannel(ScriptedChannel):
    """Holds every send until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def send(self, to: str, subject: str, body: str) -> SendReceipt:
        self.entered.set()
        self.release.wait(timeout=5)
        return super().send(to, subject, body)


class TestLifecycle:
    """Tests for start/stop."""

    def test_start_and_stop_are_idempotent(self, controller: PipelineController):
        assert controller.is_running is False

        assert controller.start() is True
        assert controller.start() is False
        assert controller.is_running is True

        assert controller.stop(timeout=5) is True
        assert controller.stop(timeout=5) is False
        assert controller.is_running is False

    def test_restart_after_stop(self, controller: PipelineController):
        controller.start()
        controller.stop(timeout=5)

        assert controller.start() is True
        assert controller.status()["worker_status"] == "running"

    def test_start_sweeps_for_due_retries(self, controller: PipelineController, monkeypatch):
        calls = []
        original = controller.scheduler.sweep

        def counting_sweep(*args, **kwargs):
            calls.append(kwargs.get("now"))
            return original(*args, **kwargs)

        monkeypatch.setattr(controller.scheduler, "sweep", counting_sweep)

        controller.start()

        assert len(calls) >= 1

    def test_stop_waits_for_in_flight_batch(self, queue, store, renderer, timers, clock, make_event):
        channel = BlockingChannel()
        settings = Settings(_env_file=None, process_interval_ms=10, autostart_worker=False)
        controller = PipelineController(queue, store, renderer, channel, settings=settings,
                                        timer_factory=timers, clock=clock)
        queue.push(make_event("e1"))

        controller.start()
        assert channel.entered.wait(timeout=5)

        releaser = threading.Timer(0.2, channel.release.set)
        releaser.start()
        controller.stop(timeout=5)

        assert store.get_by_event_id("e1").status == DeliveryStatus.SENT
        assert controller.is_running is False

    def test_stop_timeout_keeps_single_poll_loop(self, queue, store, renderer, timers, clock, make_event):
        """A stop that times out mid-batch must not let start() launch a second loop."""
        channel = BlockingChannel()
        settings = Settings(_env_file=None, process_interval_ms=10, autostart_worker=False)
        controller = PipelineController(queue, store, renderer, channel, settings=settings,
                                        timer_factory=timers, clock=clock)
        queue.push(make_event("e1"))

        controller.start()
        assert channel.entered.wait(timeout=5)

        assert controller.stop(timeout=0.1) is False
        assert controller.is_running is True
        assert controller.start() is False

        channel.release.set()
        assert controller.stop(timeout=5) is True

        poll_threads = [t for t in threading.enumerate()
                        if t.name == "notification-worker" and t.is_alive()]
        assert poll_threads == []
        assert controller.is_running is False
        assert store.get_by_event_id("e1").status == DeliveryStatus.SENT

    def test_stop_cancels_retry_timers(self, controller, queue, channel, timers, make_event):
        channel.always_fail("t@b.com", ConnectionError("connection reset"))
        queue.push(make_event("e1", destination="t@b.com"))
        controller.run_once()
        assert controller.scheduler.pending_count() == 1

        controller.start()
        controller.stop(timeout=5)

        assert controller.scheduler.pending_count() == 0
        assert timers.pending() == []


class TestRunOnce:
    """Tests for single ticks."""

    def test_tick_processes_queue(self, controller, queue, store, make_event):
        queue.push(make_event("e1"))

        result = controller.run_once()

        assert result.dequeued == 1
        assert store.get_by_event_id("e1").status == DeliveryStatus.SENT
        assert controller.status()["last_tick_at"] is not None

    def test_sweep_delivers_retries_without_timers(self, controller, store, clock, make_event):
        """The durable sweep picks up a RETRYING record no timer knows about."""
        record, _ = store.create_if_absent(make_event("e1"))
        store.mark_failed(record.id, "TransientChannelError: timeout", should_retry=True)
        clock.advance(minutes=5)

        controller.run_once()

        record = store.get_by_event_id("e1")
        assert record.status == DeliveryStatus.SENT
        assert record.attempt_count == 1

    def test_sweep_now(self, controller, store, queue, clock, make_event):
        record, _ = store.create_if_absent(make_event("e1"))
        store.mark_failed(record.id, "timeout", should_retry=True)
        clock.advance(minutes=5)

        assert controller.sweep_now() == 1
        assert queue.length() == 1


class TestOperations:
    """Tests for the admin operations and status."""

    def test_status_shape(self, controller, queue, make_event):
        queue.push(make_event("e1"))

        status = controller.status()

        assert status["worker_status"] == "stopped"
        assert status["queue_length"] == 1
        assert status["process_interval_ms"] == 5000
        assert status["max_batch_size"] == 5
        assert status["max_attempts"] == 3
        assert status["status_counts"] == {"PENDING": 0, "SENT": 0, "RETRYING": 0, "FAILED": 0}
        assert status["throughput"]["ticks"] == 0

    def test_status_counts_recent_records(self, controller, queue, channel, make_event):
        channel.fail_next("x@b.com", PermanentChannelError("rejected"))
        queue.push(make_event("e1"))
        queue.push(make_event("e2", destination="x@b.com"))
        controller.run_once()

        counts = controller.status()["status_counts"]

        assert counts["SENT"] == 1
        assert counts["FAILED"] == 1

    def test_status_reports_backend_errors(self, controller, monkeypatch):
        def broken():
            raise ConnectionError("redis down")

        monkeypatch.setattr(controller.queue, "length", broken)

        status = controller.status()

        assert status["worker_status"] == "stopped"
        assert "redis down" in status["error"]

    def test_clear_queue(self, controller, queue, make_event):
        queue.push(make_event("e1"))
        queue.push(make_event("e2"))

        assert controller.clear_queue() == 2
        assert queue.length() == 0

    def test_publish(self, controller, queue, make_event):
        assert controller.publish(make_event("e1")).accepted is True
        assert queue.length() == 1

    def test_force_retry_failed_record(self, controller, store, channel, queue, make_event):
        channel.fail_next("a@b.com", PermanentChannelError("mailbox full"))
        queue.push(make_event("e1"))
        controller.run_once()
        assert store.get_by_event_id("e1").status == DeliveryStatus.FAILED

        record = controller.force_retry("e1")

        assert record.status == DeliveryStatus.RETRYING
        assert record.attempt_count == 1
        assert queue.length() == 1

        controller.run_once()
        assert store.get_by_event_id("e1").status == DeliveryStatus.SENT

    def test_force_retry_retrying_record_skips_backoff(self, controller, store, channel, queue,
                                                      clock, make_event):
        channel.fail_next("a@b.com", ConnectionError("connection reset"))
        queue.push(make_event("e1"))
        controller.run_once()

        record = controller.force_retry("e1")

        assert record.attempt_count == 1
        assert record.next_retry_at == clock()
        controller.run_once()
        assert store.get_by_event_id("e1").status == DeliveryStatus.SENT

    def test_force_retry_sent_record(self, controller, queue, make_event):
        queue.push(make_event("e1"))
        controller.run_once()

        with pytest.raises(RetryNotAllowed):
            controller.force_retry("e1")

    def test_force_retry_unknown(self, controller):
        with pytest.raises(RecordNotFound):
            controller.force_retry("missing")

    def test_from_settings(self, settings):
        controller = PipelineController.from_settings(settings)

        assert controller.worker.max_batch_size == 5
        assert controller.store.policy.backoff_minutes == (5, 15, 30)
        assert controller.process_interval == timedelta(seconds=5)
