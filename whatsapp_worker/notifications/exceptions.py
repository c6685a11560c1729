"""
Custom exceptions for the notification dispatch system.
"""


class NotificationError(Exception):
    """Base exception for notification system errors."""
    pass


class ConfigurationError(NotificationError):
    """Raised when the dispatch worker is misconfigured."""
    pass


class ChannelError(NotificationError):
    """Base exception for channel-specific errors."""

    def __init__(self, message: str, channel: str, retryable: bool = False):
        super().__init__(message)
        self.channel = channel
        self.retryable = retryable


class GatewayError(ChannelError):
    """Raised when the WhatsApp gateway cannot be reached or answers garbage."""

    def __init__(self, message: str, status_code: int = None, retryable: bool = False):
        super().__init__(message, "whatsapp", retryable)
        self.status_code = status_code


class QueueError(NotificationError):
    """Raised when the notification queue cannot be read or written."""

    def __init__(self, message: str, notification_id: str = None):
        super().__init__(message)
        self.notification_id = notification_id


class InvalidRecipientError(NotificationError):
    """Raised when recipient information is invalid."""

    def __init__(self, message: str, recipient: str):
        super().__init__(message)
        self.recipient = recipient


class TemplateError(NotificationError):
    """Raised when the stored template set cannot be decoded."""
    pass
