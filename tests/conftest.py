"""
Shared pytest fixtures for the notification pipeline tests.

Every fixture builds fresh instances, so tests never share queue or record
state. Time is driven by a ManualClock and retry timers by ManualTimers, so
backoff delays of minutes are crossed by advancing the clock.
"""

from datetime import datetime, timezone

import pytest

from shared.channels import EmailChannel, SMSChannel
from shared.config import Settings
from shared.models import Event, UserAccount
from shared.templates import TemplateRenderer
from pipeline.backoff import RetryPolicy
from pipeline.controller import PipelineController
from pipeline.queue import InMemoryQueue
from pipeline.record_store import DeliveryRecordStore
from pipeline.retry import RetryScheduler
from pipeline.simulation import ManualClock, ManualTimers, ScriptedChannel
from pipeline.worker import NotificationWorker, WorkerStats


START = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# Time
# =============================================================================

@pytest.fixture
def clock() -> ManualClock:
    """Clock frozen at START until a test advances it."""
    return ManualClock(start=START)


@pytest.fixture
def timers(clock) -> ManualTimers:
    """Timer factory whose timers fire only via fire_due()."""
    return ManualTimers(clock)


# =============================================================================
# Channels
# =============================================================================

@pytest.fixture
def email_channel() -> EmailChannel:
    """Fresh EmailChannel for each test."""
    return EmailChannel(fail_rate=0.0)


@pytest.fixture
def sms_channel() -> SMSChannel:
    """Fresh SMSChannel for each test."""
    return SMSChannel(fail_rate=0.0)


@pytest.fixture
def channel() -> ScriptedChannel:
    """Email channel with per-destination scripted failures."""
    return ScriptedChannel()


# =============================================================================
# Pipeline components
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    """Default settings, independent of the environment."""
    return Settings(
        process_interval_ms=5000,
        max_batch_size=5,
        max_attempts=3,
        retry_backoff_minutes=[5, 15, 30],
        retry_sweep_interval_ms=60_000,
        queue_max_length=100,
        records_path=None,
        autostart_worker=False,
    )


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff_minutes=(5, 15, 30))


@pytest.fixture
def queue() -> InMemoryQueue:
    return InMemoryQueue(max_length=100)


@pytest.fixture
def store(policy, clock) -> DeliveryRecordStore:
    """In-memory record store on the manual clock."""
    return DeliveryRecordStore(policy=policy, clock=clock)


@pytest.fixture
def renderer() -> TemplateRenderer:
    return TemplateRenderer()


@pytest.fixture
def scheduler(queue, store, timers, clock) -> RetryScheduler:
    return RetryScheduler(queue=queue, store=store, timer_factory=timers, clock=clock)


@pytest.fixture
def worker(queue, store, renderer, channel, scheduler, clock) -> NotificationWorker:
    return NotificationWorker(
        queue=queue,
        store=store,
        renderer=renderer,
        sender=channel,
        scheduler=scheduler,
        max_batch_size=5,
        stats=WorkerStats(clock=clock),
    )


@pytest.fixture
def controller(queue, store, renderer, channel, settings, timers, clock):
    """Controller wired to the manual clock and timers; stopped after the test."""
    controller = PipelineController(
        queue=queue,
        store=store,
        renderer=renderer,
        sender=channel,
        settings=settings,
        timer_factory=timers,
        clock=clock,
    )
    yield controller
    if controller.is_running:
        controller.stop(timeout=5)


# =============================================================================
# Events and users
# =============================================================================

@pytest.fixture
def make_event():
    """
    Factory for transport events.

    Defaults to a renderable USER_REGISTRATION event for a@b.com.
    """
    def _make(
        event_id: str = "e1",
        event_type: str = "USER_REGISTRATION",
        destination: str = "a@b.com",
        user_id: str = "user-001",
        **payload,
    ) -> Event:
        payload.setdefault("full_name", "Asha Rao")
        if event_type in ("USER_REGISTRATION", "KYC_PENDING"):
            payload.setdefault("registration_date", START.isoformat())
        elif event_type == "LOGIN_ALERT":
            payload.setdefault("login_time", START.isoformat())
        elif event_type == "ACCOUNT_ACTIVATED":
            payload.setdefault("activation_date", START.isoformat())
        return Event(
            event_id=event_id,
            type=event_type,
            user_id=user_id,
            destination=destination,
            payload=payload,
        )
    return _make


@pytest.fixture
def user() -> UserAccount:
    """A freshly registered user awaiting KYC."""
    return UserAccount(
        id="user-001",
        email="asha@example.com",
        full_name="Asha Rao",
        phone="+919800000001",
        created_at=START,
    )
