"""
Tests for event producers.

These tests verify publish-time validation, deterministic event ids and the
best-effort contract: a producer never sees an exception.
"""

from datetime import datetime, timezone

from shared.models import DeliveryStatus
from pipeline.producers import NotificationPublisher, make_event_id

LOGIN_TIME = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


class TestEventIds:

    def test_same_occurrence_same_id(self):
        first = make_event_id("LOGIN_ALERT", "u1", "2024-01-15T10:30:00")
        second = make_event_id("login_alert", "u1", "2024-01-15T10:30:00")

        assert first == second
        assert first.startswith("notif_")

    def test_different_occurrence_different_id(self):
        assert make_event_id("LOGIN_ALERT", "u1", "a") != make_event_id("LOGIN_ALERT", "u1", "b")
        assert make_event_id("LOGIN_ALERT", "u1", "a") != make_event_id("LOGIN_ALERT", "u2", "a")


class TestNotificationPublisher:
    """Tests for the typed business-event helpers."""

    def test_send_registration(self, queue, user):
        publisher = NotificationPublisher(queue)

        result = publisher.send_registration(user)

        assert result.accepted is True
        event = queue.pop_batch(1)[0]
        assert event.event_id == result.event_id
        assert event.type == "USER_REGISTRATION"
        assert event.user_id == "user-001"
        assert event.destination == "asha@example.com"
        assert event.payload["full_name"] == "Asha Rao"

    def test_republishing_same_occurrence_reuses_event_id(self, queue, user):
        publisher = NotificationPublisher(queue)

        first = publisher.send_login_alert(user, ip_address="10.0.0.1", login_time=LOGIN_TIME)
        second = publisher.send_login_alert(user, ip_address="10.0.0.1", login_time=LOGIN_TIME)

        assert first.event_id == second.event_id
        assert queue.length() == 2

    def test_kyc_verified(self, queue, user):
        result = NotificationPublisher(queue).send_kyc_status_update(user, "verified")

        assert result.accepted is True
        assert queue.pop_batch(1)[0].type == "KYC_VERIFIED"

    def test_kyc_rejected_requires_reason(self, queue, user):
        result = NotificationPublisher(queue).send_kyc_status_update(user, "REJECTED")

        assert result.accepted is False
        assert queue.length() == 0

    def test_kyc_rejected_with_reason(self, queue, user):
        result = NotificationPublisher(queue).send_kyc_status_update(user, "REJECTED", reason="Blurry photo")

        assert result.accepted is True
        assert queue.pop_batch(1)[0].payload["reason"] == "Blurry photo"

    def test_unsupported_kyc_status(self, queue, user):
        result = NotificationPublisher(queue).send_kyc_status_update(user, "ON_HOLD")

        assert result.accepted is False
        assert "ON_HOLD" in result.error

    def test_other_business_events(self, queue, user):
        publisher = NotificationPublisher(queue)

        assert publisher.send_kyc_pending(user)
        assert publisher.send_account_activated(user)
        assert publisher.send_security_alert(user, "PASSWORD_CHANGED", {"ip": "10.0.0.1"})

        types = [e.type for e in queue.pop_batch(5)]
        assert types == ["KYC_PENDING", "ACCOUNT_ACTIVATED", "SECURITY_ALERT"]

    def test_unavailable_queue_is_reported_not_raised(self, queue, user):
        queue.close()

        result = NotificationPublisher(queue).send_registration(user)

        assert result.accepted is False
        assert result.error


class TestPublishRaw:
    """Tests for validating untyped payloads at publish time."""

    def test_valid_payload_published(self, queue):
        result = NotificationPublisher(queue).publish_raw(
            "login_alert", "u1", "a@b.com",
            {"full_name": "Asha", "login_time": LOGIN_TIME.isoformat()},
            occurrence_key="k1",
        )

        assert result.accepted is True
        assert result.event_id == make_event_id("LOGIN_ALERT", "u1", "k1")
        assert queue.length() == 1

    def test_unknown_type_rejected(self, queue):
        result = NotificationPublisher(queue).publish_raw(
            "UNKNOWN_TYPE", "u1", "a@b.com", {"full_name": "Asha"}, occurrence_key="k1",
        )

        assert result.accepted is False
        assert queue.length() == 0

    def test_missing_field_rejected(self, queue):
        result = NotificationPublisher(queue).publish_raw(
            "ACCOUNT_ACTIVATED", "u1", "a@b.com", {"full_name": "Asha"}, occurrence_key="k1",
        )

        assert result.accepted is False
        assert "ACCOUNT_ACTIVATED" in result.error


class TestPublishToDelivery:
    """A producer and a worker sharing one queue."""

    def test_published_event_is_delivered(self, queue, worker, store, channel, user):
        result = NotificationPublisher(queue).send_registration(user)

        worker.tick()

        record = store.get_by_event_id(result.event_id)
        assert record.status == DeliveryStatus.SENT
        assert "Asha Rao" in record.body
        assert channel.call_count("asha@example.com") == 1
