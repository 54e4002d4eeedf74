"""
Channel senders for the notification pipeline.

A channel sender performs the actual outbound send. The worker only relies on
the narrow contract of ChannelSender.send():

    send(to, subject, body) -> SendReceipt        on success
    raises TransientChannelError                  network / timeout / rate limit
    raises PermanentChannelError                  invalid destination / rejected

The concrete transports here are mock implementations that log the output.
In a real deployment they would wrap SMTP, SendGrid, Twilio, AWS SNS, etc.

Design decisions:
- All sends are logged for visibility
- Channels track sent messages for test assertions
- Transient failures can be simulated with fail_rate
- Destinations are validated up front; a bad address is a permanent failure
"""

import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from shared.errors import PermanentChannelError, TransientChannelError
from shared.models import SendReceipt, utcnow

logger = logging.getLogger("notifications")


EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 -]{6,18}[0-9]$")


class ChannelType(str, Enum):
    """Supported notification channels."""
    EMAIL = "email"
    SMS = "sms"


@dataclass
class SentMessage:
    """
    A message accepted by a channel.

    Captures what was sent for debugging and testing.
    """
    channel: ChannelType
    recipient: str
    subject: Optional[str]  # Email only
    body: str
    message_id: str
    timestamp: datetime = field(default_factory=utcnow)

    def __str__(self) -> str:
        if self.channel == ChannelType.EMAIL:
            return f"EMAIL to {self.recipient}: {self.subject}"
        return f"SMS to {self.recipient}: {self.body[:50]}..."


class ChannelSender:
    """
    Base class for channel senders.

    Subclasses implement _deliver(); send() handles validation, failure
    simulation and bookkeeping.
    """

    channel_type: ChannelType

    def __init__(self, fail_rate: float = 0.0):
        """
        Args:
            fail_rate: Probability of a simulated transient failure (0.0 to 1.0)
        """
        if not 0.0 <= fail_rate <= 1.0:
            raise ValueError(f"fail_rate must be between 0 and 1, got {fail_rate}")
        self.fail_rate = fail_rate
        self.sent_messages: list[SentMessage] = []

    def validate_destination(self, to: str) -> None:
        raise NotImplementedError

    def _deliver(self, to: str, subject: str, body: str, message_id: str) -> str:
        """Hand the message to the transport; returns the provider response."""
        raise NotImplementedError

    def send(self, to: str, subject: str, body: str) -> SendReceipt:
        """
        Send a message.

        Raises:
            PermanentChannelError: If the destination is invalid
            TransientChannelError: If the (simulated) provider is unavailable
        """
        self.validate_destination(to)

        if self.fail_rate and random.random() < self.fail_rate:
            logger.error(f"[{self.channel_type.value.upper()} FAILED] To: {to} | connection timeout")
            raise TransientChannelError(
                f"Simulated {self.channel_type.value} provider connection timeout",
            )

        message_id = f"<{uuid4()}@{self.channel_type.value}.mock>"
        provider_response = self._deliver(to, subject, body, message_id)
        self.sent_messages.append(SentMessage(
            channel=self.channel_type,
            recipient=to,
            subject=subject if self.channel_type == ChannelType.EMAIL else None,
            body=body,
            message_id=message_id,
        ))
        return SendReceipt(message_id=message_id, provider_response=provider_response)

    def get_sent_count(self) -> int:
        """Get the number of messages sent (for testing)."""
        return len(self.sent_messages)

    def clear_history(self):
        """Clear sent message history (useful between tests)."""
        self.sent_messages.clear()

    def find_message_to(self, recipient: str) -> Optional[SentMessage]:
        """Find a message sent to a specific recipient."""
        for msg in self.sent_messages:
            if msg.recipient == recipient:
                return msg
        return None


class EmailChannel(ChannelSender):
    """
    Mock email channel.

    Logs email sends and tracks them for test assertions.
    """

    channel_type = ChannelType.EMAIL

    def __init__(self, fail_rate: float = 0.0, from_addr: str = "notifications@fintech-bank.example"):
        super().__init__(fail_rate=fail_rate)
        self.from_addr = from_addr

    def validate_destination(self, to: str) -> None:
        if not to or not EMAIL_PATTERN.match(to):
            raise PermanentChannelError(f"Invalid email address: {to!r}")

    def _deliver(self, to: str, subject: str, body: str, message_id: str) -> str:
        logger.info(f"[EMAIL] From: {self.from_addr} | To: {to} | Subject: {subject}")
        logger.debug(f"[EMAIL BODY] {body}")
        return f"250 Message accepted {message_id}"


class SMSChannel(ChannelSender):
    """
    Mock SMS channel.

    SMS has no subject line, so only the body is sent.
    """

    # SMS typically have character limits
    MAX_LENGTH = 160

    channel_type = ChannelType.SMS

    def validate_destination(self, to: str) -> None:
        if not to or not PHONE_PATTERN.match(to):
            raise PermanentChannelError(f"Invalid phone number: {to!r}")

    def _deliver(self, to: str, subject: str, body: str, message_id: str) -> str:
        if len(body) > self.MAX_LENGTH:
            logger.warning(
                f"[SMS] Message length ({len(body)}) exceeds {self.MAX_LENGTH} chars, "
                "may be split into multiple messages"
            )
        logger.info(f"[SMS] To: {to} | Message: {body[:self.MAX_LENGTH]}")
        return "queued"
