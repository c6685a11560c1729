"""
SQLAlchemy table definitions for the notification queue and WhatsApp config store.

Timestamps are stored as naive UTC.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import Column, DateTime, Index, JSON, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def utc_now() -> datetime:
    """Return a UTC timestamp without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class SystemNotification(Base):
    """One queued outbound message."""

    __tablename__ = 'system_notifications'

    id = Column(String(36), primary_key=True, default=new_id)
    recipient_id = Column(String(64), nullable=True)
    recipient_type = Column(String(32), nullable=True)  # patient | psychologist
    notification_type = Column(String(64), nullable=False)
    title = Column(String(255), nullable=True)
    message = Column(Text, nullable=False, default='')
    delivery_method = Column(String(20), nullable=False, default='whatsapp')  # whatsapp | email | sms
    status = Column(String(20), nullable=False, default='pending')  # pending | processing | sent | failed
    scheduled_for = Column(DateTime, nullable=False, default=utc_now)
    sent_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    # "metadata" is reserved on declarative classes
    notification_metadata = Column('metadata', JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_system_notifications_dispatch', 'delivery_method', 'status', 'scheduled_for'),
        Index('ix_system_notifications_recipient', 'recipient_id'),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the row (for diagnostics)."""
        return {
            'id': self.id,
            'recipient_id': self.recipient_id,
            'recipient_type': self.recipient_type,
            'notification_type': self.notification_type,
            'title': self.title,
            'message': self.message,
            'delivery_method': self.delivery_method,
            'status': self.status,
            'scheduled_for': self.scheduled_for.isoformat() if self.scheduled_for else None,
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
            'metadata': self.notification_metadata,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class WhatsAppConfig(Base):
    """Key/value configuration store shared with the admin UI."""

    __tablename__ = 'whatsapp_config'

    id = Column(String(36), primary_key=True, default=new_id)
    config_key = Column(String(100), nullable=False, unique=True)
    config_value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
