"""
Shared building blocks for the notification pipeline.

This package contains the pieces every pipeline component depends on:
- Domain models (Event, DeliveryRecord, typed payloads)
- Error taxonomy and failure classification
- Settings and logging setup
- Notification templates
- Channel senders (Email, SMS)
"""

from shared.models import (
    DeliveryRecord,
    DeliveryStatus,
    Event,
    EventType,
    PublishResult,
    SendReceipt,
    UserAccount,
)
from shared.channels import ChannelSender, EmailChannel, SMSChannel
from shared.errors import (
    PermanentChannelError,
    TemplateError,
    TransientChannelError,
)
from shared.templates import TemplateRenderer

__all__ = [
    "DeliveryRecord",
    "DeliveryStatus",
    "Event",
    "EventType",
    "PublishResult",
    "SendReceipt",
    "UserAccount",
    "ChannelSender",
    "EmailChannel",
    "SMSChannel",
    "PermanentChannelError",
    "TemplateError",
    "TransientChannelError",
    "TemplateRenderer",
]
