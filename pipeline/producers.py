"""
Event producers.

Upstream services (auth, accounts, KYC review) publish notification events
through NotificationPublisher. Publishing is best-effort: every call returns a
PublishResult and never raises, so a notification problem can never fail the
business operation that triggered it. Callers that ignore a rejection do so
explicitly.

Event ids are deterministic: the same business occurrence (same type, user
and occurrence key) always produces the same event_id, which is what makes a
re-publish idempotent downstream.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import NAMESPACE_URL, uuid5

from pydantic import BaseModel, ValidationError

from shared.models import (
    AccountActivatedData,
    Event,
    KycPendingData,
    KycRejectedData,
    KycVerifiedData,
    LoginAlertData,
    PublishResult,
    RegistrationData,
    SecurityAlertData,
    UserAccount,
    canonical_type,
    parse_notification_data,
    utcnow,
)
from pipeline.queue import NotificationQueue

logger = logging.getLogger("event_producer")


EVENT_ID_NAMESPACE = uuid5(NAMESPACE_URL, "urn:fintech-bank:notification-events")


def make_event_id(event_type: str, user_id: str, occurrence_key: str) -> str:
    """Deterministic event id for one business occurrence."""
    name = f"{canonical_type(event_type)}:{user_id}:{occurrence_key}"
    return f"notif_{uuid5(EVENT_ID_NAMESPACE, name).hex}"


class NotificationPublisher:
    """
    Producer-side helper for publishing typed notification events.

    Example:
        publisher = NotificationPublisher(queue)
        result = publisher.send_registration(user)
        if not result.accepted:
            ...  # the caller chooses whether to care
    """

    def __init__(self, queue: NotificationQueue, source: str = "auth-service"):
        self.queue = queue
        self.source = source

    def publish(
        self,
        data: BaseModel,
        user_id: str,
        destination: str,
        occurrence_key: str,
        event_id: Optional[str] = None,
    ) -> PublishResult:
        """
        Publish a typed payload.

        Args:
            data: One of the NotificationData variants
            user_id: Recipient user id
            destination: Email address or phone number
            occurrence_key: Identifies this business occurrence (e.g. a timestamp)
            event_id: Explicit id; derived from the occurrence when omitted
        """
        event_id = event_id or make_event_id(data.type, user_id, occurrence_key)
        try:
            event = Event.from_data(data, event_id=event_id, user_id=user_id, destination=destination)
        except ValidationError as e:
            logger.error(f"[{self.source}] Rejected invalid {data.type} event for user {user_id}: {e}")
            return PublishResult(accepted=False, event_id=event_id, error=str(e))

        result = self.queue.push(event)
        if result.accepted:
            logger.info(f"[{self.source}] Notification event published: {event.type} for user {user_id}")
        else:
            logger.error(f"[{self.source}] Failed to publish {event.type} for user {user_id}: {result.error}")
        return result

    def publish_raw(self, event_type: str, user_id: str, destination: str,
                    payload: dict, occurrence_key: str) -> PublishResult:
        """
        Validate an untyped payload against its variant, then publish it.

        Invalid payloads and unknown types are rejected here, at publish time.
        """
        try:
            data = parse_notification_data(event_type, payload)
        except ValidationError as e:
            logger.error(f"[{self.source}] Rejected {event_type} payload for user {user_id}: {e}")
            return PublishResult(
                accepted=False,
                event_id=make_event_id(event_type, user_id, occurrence_key),
                error=f"Invalid {canonical_type(event_type)} payload: {e.error_count()} error(s)",
            )
        return self.publish(data, user_id, destination, occurrence_key)

    # =========================================================================
    # Business events
    # =========================================================================

    def send_registration(self, user: UserAccount) -> PublishResult:
        """Welcome email after account registration."""
        data = RegistrationData(full_name=user.full_name, registration_date=user.created_at)
        return self.publish(data, user.id, user.email, occurrence_key=user.created_at.isoformat())

    def send_login_alert(
        self,
        user: UserAccount,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
        device_type: str = "unknown",
        login_time: Optional[datetime] = None,
    ) -> PublishResult:
        """Security notice for a new login."""
        login_time = login_time or utcnow()
        data = LoginAlertData(
            full_name=user.full_name,
            login_time=login_time,
            ip_address=ip_address,
            user_agent=user_agent,
            device_type=device_type,
        )
        return self.publish(data, user.id, user.email, occurrence_key=login_time.isoformat())

    def send_kyc_pending(self, user: UserAccount, reminder_key: str = "initial") -> PublishResult:
        """Reminder to complete KYC verification."""
        data = KycPendingData(full_name=user.full_name, registration_date=user.created_at)
        return self.publish(data, user.id, user.email, occurrence_key=reminder_key)

    def send_kyc_status_update(self, user: UserAccount, new_status: str, reason: str = "") -> PublishResult:
        """KYC review outcome: VERIFIED or REJECTED."""
        new_status = canonical_type(new_status)
        if new_status == "VERIFIED":
            data = KycVerifiedData(full_name=user.full_name, reason=reason)
        elif new_status == "REJECTED":
            try:
                data = KycRejectedData(full_name=user.full_name, reason=reason)
            except ValidationError as e:
                logger.error(f"[{self.source}] KYC rejection for {user.id} needs a reason")
                return PublishResult(accepted=False, error=str(e))
        else:
            logger.error(f"[{self.source}] Unsupported KYC status {new_status!r} for user {user.id}")
            return PublishResult(accepted=False, error=f"Unsupported KYC status: {new_status}")
        return self.publish(data, user.id, user.email, occurrence_key=new_status)

    def send_account_activated(self, user: UserAccount, activation_date: Optional[datetime] = None) -> PublishResult:
        """Account activation notice."""
        activation_date = activation_date or utcnow()
        data = AccountActivatedData(full_name=user.full_name, activation_date=activation_date)
        return self.publish(data, user.id, user.email, occurrence_key=activation_date.isoformat())

    def send_security_alert(
        self,
        user: UserAccount,
        alert_type: str,
        details: Optional[dict[str, str]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> PublishResult:
        """Generic security alert (password change, new device, ...)."""
        occurred_at = occurred_at or utcnow()
        data = SecurityAlertData(full_name=user.full_name, alert_type=alert_type, details=details or {})
        return self.publish(
            data, user.id, user.email,
            occurrence_key=f"{alert_type}:{occurred_at.isoformat()}",
        )
