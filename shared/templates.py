"""
Notification message templates.

This module renders the subject and body for every event type. Templates use
Python's string formatting with {variable} placeholders; the variables are the
fields of the typed payload for that event type.

Design decisions:
- Templates are plain text, keyed by canonical event type
- The payload is validated against its tagged-union variant before rendering,
  so a malformed payload fails here rather than producing a half-filled message
- Every failure is a TemplateError: unknown type, invalid payload, or a
  placeholder the payload cannot fill. None of these are retryable.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from shared.errors import TemplateError
from shared.models import EventType, canonical_type, parse_notification_data


BANK_NAME = "FinTech Bank"


@dataclass(frozen=True)
class RenderedMessage:
    """A rendered notification ready for a channel sender."""
    subject: str
    body: str


@dataclass
class NotificationTemplate:
    """A subject/body pair for one event type."""
    event_type: EventType
    subject: str
    body: str

    def render(self, **kwargs) -> RenderedMessage:
        """
        Render the template with provided variables.

        Raises:
            TemplateError: If a placeholder has no matching variable
        """
        try:
            return RenderedMessage(
                subject=self.subject.format(**kwargs),
                body=self.body.format(**kwargs),
            )
        except (KeyError, IndexError, ValueError) as e:
            raise TemplateError(
                f"Template {self.event_type.value} could not be rendered: {e!r}",
                event_type=self.event_type.value,
            ) from e


# =============================================================================
# Template Definitions
# =============================================================================

TEMPLATES: dict[EventType, NotificationTemplate] = {

    # -------------------------------------------------------------------------
    # Account lifecycle
    # -------------------------------------------------------------------------

    EventType.USER_REGISTRATION: NotificationTemplate(
        event_type=EventType.USER_REGISTRATION,
        subject="Welcome to {bank_name} - Account Created Successfully",
        body="""Hi {full_name},

Congratulations! Your {bank_name} account has been created successfully.

Registration Date: {registration_date}
Status: KYC Verification Pending

Next steps:
  1. Complete KYC verification by submitting your identity documents
  2. Your account will be activated after KYC approval
  3. Access all banking services once activated

Your account stays INACTIVE until KYC verification is completed.
""",
    ),

    EventType.ACCOUNT_ACTIVATED: NotificationTemplate(
        event_type=EventType.ACCOUNT_ACTIVATED,
        subject="Your {bank_name} Account Is Now Active",
        body="""Hi {full_name},

Your account was activated on {activation_date}. All banking services are now available to you.

Thanks for banking with us!
""",
    ),

    # -------------------------------------------------------------------------
    # Security
    # -------------------------------------------------------------------------

    EventType.LOGIN_ALERT: NotificationTemplate(
        event_type=EventType.LOGIN_ALERT,
        subject="{bank_name} Security Alert - New Login Detected",
        body="""Hi {full_name},

We detected a new login to your account.

Time: {login_time}
IP Address: {ip_address}
Device: {device_type}
Browser: {user_agent}

If this was you, no action is needed. If you don't recognise this activity,
change your password immediately and contact support.
""",
    ),

    EventType.SECURITY_ALERT: NotificationTemplate(
        event_type=EventType.SECURITY_ALERT,
        subject="{bank_name} Security Alert - {alert_type}",
        body="""Hi {full_name},

We noticed security-relevant activity on your account: {alert_type}.

{details_list}

If you don't recognise this activity, contact support immediately.
""",
    ),

    # -------------------------------------------------------------------------
    # KYC
    # -------------------------------------------------------------------------

    EventType.KYC_PENDING: NotificationTemplate(
        event_type=EventType.KYC_PENDING,
        subject="Action Required - Complete Your KYC Verification",
        body="""Hi {full_name},

You registered on {registration_date}, but your identity verification is still pending.

Please submit your KYC documents so we can activate your account.
""",
    ),

    EventType.KYC_VERIFIED: NotificationTemplate(
        event_type=EventType.KYC_VERIFIED,
        subject="KYC Verified - Your {bank_name} Account Is Ready",
        body="""Hi {full_name},

Your identity documents have been verified. {reason}

You can now use all {bank_name} services.
""",
    ),

    EventType.KYC_REJECTED: NotificationTemplate(
        event_type=EventType.KYC_REJECTED,
        subject="KYC Verification Unsuccessful",
        body="""Hi {full_name},

We could not verify your identity documents.

Reason: {reason}

Please review the reason above and submit your documents again.
""",
    ),
}


# =============================================================================
# Context helpers
# =============================================================================

def format_date(value: datetime) -> str:
    return value.strftime("%d %b %Y")


def format_datetime(value: datetime) -> str:
    return value.strftime("%d %b %Y %H:%M %Z").strip()


def format_details(details: dict[str, Any]) -> str:
    """Format key/value details as an indented list for the message body."""
    return "\n".join(f"  - {key}: {value}" for key, value in details.items())


def build_context(data) -> dict[str, Any]:
    """Turn a validated payload variant into template variables."""
    context: dict[str, Any] = {"bank_name": BANK_NAME}
    for name, value in data.model_dump(exclude={"type"}).items():
        if isinstance(value, datetime):
            value = format_datetime(value) if name.endswith("_time") else format_date(value)
        context[name] = value
    if "details" in context:
        context["details_list"] = format_details(context["details"])
    return context


# =============================================================================
# Renderer
# =============================================================================

def get_template(event_type: str) -> Optional[NotificationTemplate]:
    """Get a template by (possibly non-canonical) event type name."""
    try:
        return TEMPLATES.get(EventType(canonical_type(event_type)))
    except ValueError:
        return None


class TemplateRenderer:
    """
    Pure function object: (event type, payload) -> (subject, body).

    The worker depends on this narrow contract only, so any renderer with a
    compatible render() method can be injected.
    """

    def __init__(self, templates: Optional[dict[EventType, NotificationTemplate]] = None):
        self.templates = templates if templates is not None else TEMPLATES

    def render(self, event_type: str, payload: dict[str, Any]) -> RenderedMessage:
        """
        Render the notification for an event.

        Raises:
            TemplateError: Unknown type, invalid payload, or unfillable placeholder
        """
        key = canonical_type(event_type)
        try:
            template = self.templates.get(EventType(key))
        except ValueError:
            template = None
        if template is None:
            raise TemplateError(f"Template not found for type: {key}", event_type=key)

        try:
            data = parse_notification_data(key, payload)
        except ValidationError as e:
            raise TemplateError(
                f"Malformed payload for {key}: {e.error_count()} validation error(s)",
                event_type=key,
            ) from e

        return template.render(**build_context(data))

    def supported_types(self) -> list[str]:
        return sorted(t.value for t in self.templates)


def render_notification(event_type: str, payload: dict[str, Any]) -> RenderedMessage:
    """Render with the default template set."""
    return TemplateRenderer().render(event_type, payload)
