"""
Data models for the notification dispatch system.
"""

from enum import Enum
from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from datetime import datetime, timezone


class DeliveryMethod(str, Enum):
    """Delivery channels a queued notification can be routed to."""
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    SMS = "sms"


class NotificationStatus(str, Enum):
    """Lifecycle status of a queued notification."""
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class ErrorReason(str, Enum):
    """Per-item failure taxonomy written to ``metadata.error_reason``."""
    NO_PHONE_NUMBER = "no_phone_number"
    INVALID_PHONE_NUMBER = "invalid_phone_number"
    API_ERROR = "api_error"
    PROCESSING_EXCEPTION = "processing_exception"


class GatewayState(str, Enum):
    """Connectivity of the WhatsApp gateway as reported in dispatch results."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


FALLBACK_REASON_DISCONNECTED = "whatsapp_disconnected"


@dataclass
class Notification:
    """A queued notification as read from ``system_notifications``."""
    id: str
    delivery_method: str
    status: str
    scheduled_for: datetime
    notification_type: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    recipient_id: Optional[str] = None
    recipient_type: Optional[str] = None
    title: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def phone_number(self) -> Optional[str]:
        return self.metadata.get('phone_number') or None

    @property
    def retry_count(self) -> int:
        try:
            return int(self.metadata.get('retry_count') or 0)
        except (TypeError, ValueError):
            return 0


@dataclass
class SendResult:
    """Outcome of one gateway send call."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayStatus:
    """Gateway status snapshot for operators."""
    connected: bool
    phone_number: Optional[str] = None
    timestamp: Optional[str] = None
    error: Optional[str] = None

    @property
    def api_status(self) -> str:
        return "online" if self.connected else "offline"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'connected': self.connected,
            'phoneNumber': self.phone_number,
            'timestamp': self.timestamp or datetime.now(timezone.utc).isoformat(),
            'apiStatus': self.api_status,
            'error': self.error,
        }


@dataclass
class FallbackResult:
    """Counters from a fallback conversion pass."""
    fetched: int = 0
    converted: int = 0
    failed: int = 0


@dataclass
class DispatchSummary:
    """Result of one dispatch invocation, serialized as the endpoint response."""
    success: bool
    whatsapp_status: Optional[GatewayState] = None
    processed: int = 0
    failed: int = 0
    total: int = 0
    message: Optional[str] = None
    fallback_processed: Optional[int] = None
    skipped: int = 0

    @property
    def success_rate(self) -> str:
        """Percentage of the batch that was sent, two decimals."""
        if self.total == 0:
            return "0"
        return f"{self.processed / self.total * 100:.2f}"

    def to_dict(self) -> Dict[str, Any]:
        """Shape the summary the way callers of the invocation endpoint expect it."""
        if self.whatsapp_status == GatewayState.DISCONNECTED:
            return {
                'success': self.success,
                'message': self.message,
                'whatsapp_status': self.whatsapp_status.value,
                'fallback_processed': self.fallback_processed or 0,
            }

        if self.total == 0:
            return {
                'success': self.success,
                'message': self.message or "No pending notifications",
                'processed': 0,
            }

        data = {
            'success': self.success,
            'processed': self.processed,
            'failed': self.failed,
            'total': self.total,
            'success_rate': self.success_rate,
            'whatsapp_status': GatewayState.CONNECTED.value,
        }
        if self.skipped:
            data['skipped'] = self.skipped
        return data
