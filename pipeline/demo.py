"""
Demonstration scripts for the notification pipeline.

Each function plays through one delivery scenario against an in-process
pipeline. Time is simulated, so retry backoffs of 5, 15 and 30 minutes run
instantly.
"""

from datetime import timedelta

from shared.config import Settings, configure_logging
from shared.errors import TransientChannelError
from shared.models import Event, utcnow
from shared.templates import TemplateRenderer
from pipeline.backoff import RetryPolicy
from pipeline.controller import PipelineController
from pipeline.queue import InMemoryQueue
from pipeline.record_store import DeliveryRecordStore
from pipeline.simulation import ManualClock, ManualTimers, ScriptedChannel


def _build_pipeline():
    clock = ManualClock(start=utcnow())
    timers = ManualTimers(clock)
    channel = ScriptedChannel()
    settings = Settings()
    store = DeliveryRecordStore(policy=RetryPolicy.from_settings(settings), clock=clock)
    controller = PipelineController(
        queue=InMemoryQueue(max_length=settings.queue_max_length),
        store=store,
        renderer=TemplateRenderer(),
        sender=channel,
        settings=settings,
        timer_factory=timers,
        clock=clock,
    )
    return controller, channel, clock, timers


def _event(event_id: str, event_type: str, destination: str, **payload) -> Event:
    payload.setdefault("full_name", "Asha Rao")
    return Event(
        event_id=event_id,
        type=event_type,
        user_id="user-001",
        destination=destination,
        payload=payload,
    )


def _banner(title: str) -> None:
    print("\n" + "=" * 70)
    print(f"PIPELINE DEMO: {title}")
    print("=" * 70 + "\n")


def _show(controller: PipelineController, event_id: str) -> None:
    record = controller.store.get_by_event_id(event_id)
    print(
        f"  record({event_id}): status={record.status.value} "
        f"attempt_count={record.attempt_count} next_retry_at={record.next_retry_at}"
    )


def run_delivery_demo():
    """An event is delivered on the first tick."""
    _banner("First-attempt delivery")
    controller, _, _, _ = _build_pipeline()

    controller.publish(_event("e1", "USER_REGISTRATION", "a@b.com", registration_date=utcnow()))
    controller.run_once()

    _show(controller, "e1")
    return controller.store.get_by_event_id("e1")


def run_retry_demo():
    """A transient failure is retried after 5 minutes and succeeds."""
    _banner("Transient failure, then retry")
    controller, channel, clock, timers = _build_pipeline()

    channel.fail_next("b@b.com", TransientChannelError("connection timeout"))
    controller.publish(_event("e2", "LOGIN_ALERT", "b@b.com", login_time=utcnow()))
    controller.run_once()
    _show(controller, "e2")

    print("\n... 5 minutes later ...\n")
    clock.advance(minutes=5)
    timers.fire_due()
    controller.run_once()
    _show(controller, "e2")
    return controller.store.get_by_event_id("e2")


def run_exhausted_retries_demo():
    """Every attempt fails; the record ends FAILED after 3 retries."""
    _banner("Retry budget exhausted")
    controller, channel, clock, timers = _build_pipeline()

    channel.always_fail("c@b.com", TransientChannelError("rate limit exceeded"))
    controller.publish(_event("e3", "KYC_VERIFIED", "c@b.com"))
    controller.run_once()
    _show(controller, "e3")

    for minutes in (5, 15, 30):
        print(f"\n... {minutes} minutes later ...\n")
        clock.advance(timedelta(minutes=minutes))
        timers.fire_due()
        controller.run_once()
        _show(controller, "e3")

    return controller.store.get_by_event_id("e3")


def run_duplicate_demo():
    """The same event published twice is sent once."""
    _banner("Duplicate publish")
    controller, channel, _, _ = _build_pipeline()

    event = _event("e4", "KYC_PENDING", "d@b.com", registration_date=utcnow())
    controller.publish(event)
    controller.publish(event)
    controller.run_once()

    _show(controller, "e4")
    print(f"  channel sends for d@b.com: {channel.call_count('d@b.com')}")
    return controller.store.get_by_event_id("e4")


def run_unknown_type_demo():
    """An unknown event type fails immediately without consuming retries."""
    _banner("Unknown event type")
    controller, _, _, _ = _build_pipeline()

    controller.publish(_event("e5", "UNKNOWN_TYPE", "e@b.com"))
    controller.run_once()

    _show(controller, "e5")
    return controller.store.get_by_event_id("e5")


DEMOS = {
    "delivery": run_delivery_demo,
    "retry": run_retry_demo,
    "exhausted": run_exhausted_retries_demo,
    "duplicate": run_duplicate_demo,
    "unknown-type": run_unknown_type_demo,
}


def run_all_demos():
    for demo in DEMOS.values():
        demo()


if __name__ == "__main__":
    configure_logging("INFO")
    run_all_demos()
