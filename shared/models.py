"""
Domain models for the notification pipeline.

Design decisions:
- Using Pydantic for validation and serialization
- The queue carries a transport-level Event with an opaque payload dict, so it
  stays decoupled from template details
- What a producer may put in that payload is defined by a tagged union keyed by
  event type; each variant declares exactly the fields its template needs
- DeliveryRecord is the persistent ledger entry, one per event_id
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class EventType(str, Enum):
    """
    Business events that produce a user-facing notification.
    Values are the canonical (upper-case) type names used on the queue.
    """
    USER_REGISTRATION = "USER_REGISTRATION"
    LOGIN_ALERT = "LOGIN_ALERT"
    KYC_PENDING = "KYC_PENDING"
    KYC_VERIFIED = "KYC_VERIFIED"
    KYC_REJECTED = "KYC_REJECTED"
    ACCOUNT_ACTIVATED = "ACCOUNT_ACTIVATED"
    SECURITY_ALERT = "SECURITY_ALERT"


class DeliveryStatus(str, Enum):
    """Delivery record lifecycle states."""
    PENDING = "PENDING"       # Record created, send not finished yet
    SENT = "SENT"             # Delivered (terminal)
    RETRYING = "RETRYING"     # Transient failure, waiting for next_retry_at
    FAILED = "FAILED"         # Gave up; terminal once the retry budget is spent


def canonical_type(event_type: str) -> str:
    """Normalize an event type name: 'kyc_pending ' -> 'KYC_PENDING'."""
    return str(event_type).strip().upper()


# =============================================================================
# Users (the recipients of notifications)
# =============================================================================

class UserAccount(BaseModel):
    """
    The slice of a user account that producers need to publish events.

    Owned by the auth/account services; the pipeline only ever sees the
    values copied into an event.
    """
    id: str = Field(..., description="Unique user identifier")
    email: str = Field(..., description="Primary email address")
    full_name: str = Field(..., description="Display name used in greetings")
    phone: Optional[str] = Field(default=None, description="Phone number for SMS")
    kyc_status: str = Field(default="PENDING")
    account_status: str = Field(default="INACTIVE")
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Typed payloads (tagged union keyed by event type)
# =============================================================================

class _NotificationData(BaseModel):
    """Fields every template uses."""
    model_config = ConfigDict(extra="ignore")

    full_name: str = Field(..., min_length=1)


class RegistrationData(_NotificationData):
    type: Literal["USER_REGISTRATION"] = "USER_REGISTRATION"
    registration_date: datetime


class LoginAlertData(_NotificationData):
    type: Literal["LOGIN_ALERT"] = "LOGIN_ALERT"
    login_time: datetime
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    device_type: str = "unknown"


class KycPendingData(_NotificationData):
    type: Literal["KYC_PENDING"] = "KYC_PENDING"
    registration_date: datetime


class KycVerifiedData(_NotificationData):
    type: Literal["KYC_VERIFIED"] = "KYC_VERIFIED"
    reason: str = ""


class KycRejectedData(_NotificationData):
    type: Literal["KYC_REJECTED"] = "KYC_REJECTED"
    reason: str = Field(..., min_length=1)


class AccountActivatedData(_NotificationData):
    type: Literal["ACCOUNT_ACTIVATED"] = "ACCOUNT_ACTIVATED"
    activation_date: datetime


class SecurityAlertData(_NotificationData):
    type: Literal["SECURITY_ALERT"] = "SECURITY_ALERT"
    alert_type: str
    details: dict[str, str] = Field(default_factory=dict)


NotificationData = Annotated[
    Union[
        RegistrationData,
        LoginAlertData,
        KycPendingData,
        KycVerifiedData,
        KycRejectedData,
        AccountActivatedData,
        SecurityAlertData,
    ],
    Field(discriminator="type"),
]

notification_data_adapter: TypeAdapter = TypeAdapter(NotificationData)


def parse_notification_data(event_type: str, payload: dict[str, Any]):
    """
    Validate an opaque payload against the variant for its event type.

    Raises pydantic.ValidationError for an unknown type or a payload that
    does not match the variant.
    """
    return notification_data_adapter.validate_python(
        {**payload, "type": canonical_type(event_type)}
    )


# =============================================================================
# Transport event
# =============================================================================

class Event(BaseModel):
    """
    A notification request as it travels through the queue.

    event_id is the dedup key: assigned deterministically by the producer
    and reused verbatim on every re-publish. Producers may send it as "id"
    and the creation time as "timestamp".
    """
    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("event_id", "id"),
    )
    type: str = Field(..., min_length=1)
    user_id: str = Field(default="")
    destination: str = Field(..., description="Email address or phone number")
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("created_at", "timestamp"),
    )

    @classmethod
    def from_data(
        cls,
        data: BaseModel,
        event_id: str,
        user_id: str,
        destination: str,
    ) -> "Event":
        """Build a transport event from a typed payload variant."""
        return cls(
            event_id=event_id,
            type=canonical_type(data.type),
            user_id=user_id,
            destination=destination,
            payload=data.model_dump(mode="json", exclude={"type"}),
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "Event":
        return cls.model_validate_json(raw)

    def __str__(self) -> str:
        return f"Event({self.type}, id={self.event_id}, user={self.user_id})"


# =============================================================================
# Delivery record
# =============================================================================

class DeliveryRecord(BaseModel):
    """
    Persistent delivery history of one event.

    Invariants (enforced by the record store):
    - at most one record per event_id
    - attempt_count only grows and never exceeds max_attempts
    - SENT, and FAILED with attempt_count == max_attempts, are terminal
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    event_id: str
    type: str
    user_id: str = ""
    destination: str
    payload: dict[str, Any] = Field(default_factory=dict)

    subject: str = ""
    body: str = ""

    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt_count: int = Field(default=0, ge=0)
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None

    message_id: Optional[str] = None
    provider_response: Optional[str] = None

    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_terminal(self, max_attempts: int) -> bool:
        """True when no further transition is permitted."""
        if self.status == DeliveryStatus.SENT:
            return True
        return self.status == DeliveryStatus.FAILED and self.attempt_count >= max_attempts

    def is_due(self, now: datetime) -> bool:
        """True for a RETRYING record whose backoff has elapsed."""
        return (
            self.status == DeliveryStatus.RETRYING
            and self.next_retry_at is not None
            and self.next_retry_at <= now
        )

    def to_event(self) -> Event:
        """Reconstruct the transport event for a re-publish."""
        return Event(
            event_id=self.event_id,
            type=self.type,
            user_id=self.user_id,
            destination=self.destination,
            payload=dict(self.payload),
            created_at=self.created_at,
        )


# =============================================================================
# Results exchanged with producers and channel senders
# =============================================================================

class PublishResult(BaseModel):
    """
    Outcome of a best-effort publish.

    Producers get this back instead of an exception; ignoring a rejection is
    an explicit choice at the call site.
    """
    accepted: bool
    event_id: Optional[str] = None
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.accepted


class SendReceipt(BaseModel):
    """Acknowledgement returned by a channel sender on success."""
    message_id: str
    provider_response: Optional[str] = None
