"""
Error taxonomy for the notification pipeline.

Channel errors are split by whether another attempt could succeed:
- TransientChannelError: network, timeout, rate limiting. Retried up to max_attempts.
- PermanentChannelError: invalid destination, rejected by provider. Failed immediately.

TemplateError is raised for unknown event types and malformed payloads. It is a
producer-side defect, never retried.

A duplicate event is not an error at all: the worker reports it as a skip.
"""

from typing import Optional


class NotificationError(Exception):
    """Base class for all notification pipeline errors."""


class ChannelError(NotificationError):
    """A channel sender failed to deliver a message."""

    retryable = False

    def __init__(self, message: str, provider_response: Optional[str] = None):
        super().__init__(message)
        self.provider_response = provider_response


class TransientChannelError(ChannelError):
    """Network, timeout or rate-limit failure. Worth another attempt."""

    retryable = True


class PermanentChannelError(ChannelError):
    """Invalid destination or provider rejection. Retrying cannot help."""


class TemplateError(NotificationError):
    """No template for the event type, or the payload does not fit the template."""

    def __init__(self, message: str, event_type: Optional[str] = None):
        super().__init__(message)
        self.event_type = event_type


class QueueUnavailable(NotificationError):
    """The queue could not accept an event (full, closed, unreachable)."""


class RecordNotFound(NotificationError):
    """No delivery record exists for the given key."""


class RetryNotAllowed(NotificationError):
    """A forced retry was requested for a record that cannot be retried."""


# Substrings of error messages that indicate a transient transport problem
RETRYABLE_MARKERS = (
    "econnrefused",
    "enotfound",
    "etimeout",
    "network",
    "timeout",
    "connection",
    "rate limit",
)


def classify_error(error: BaseException) -> bool:
    """
    Decide whether a send failure is retryable.

    Typed channel errors carry their own classification. Python's
    ConnectionError and TimeoutError are transient. Anything else falls back
    to matching well-known markers in the error message.
    """
    if isinstance(error, ChannelError):
        return error.retryable
    if isinstance(error, TemplateError):
        return False
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)
