"""
Notification dispatch system.

Reads queued WhatsApp notifications, normalizes recipients, renders
templates and sends through the WhatsApp gateway, re-routing to email
while the gateway is disconnected.
"""

from whatsapp_worker.notifications.dispatcher import MessagingGateway, NotificationDispatcher
from whatsapp_worker.notifications.fallback import FallbackConverter
from whatsapp_worker.notifications.queue import SqlAlchemyQueueRepository, QueueRepository, merge_metadata
from whatsapp_worker.notifications.templates import (
    DEFAULT_TEMPLATES, SqlTemplateStore, StaticTemplateStore, TemplateStore,
    render_template, resolve_template_key, resolve_message
)
from whatsapp_worker.notifications.phone import normalize_phone, is_valid_phone, display_phone, mask_phone
from whatsapp_worker.notifications.models import (
    Notification, NotificationStatus, DeliveryMethod, ErrorReason, GatewayState,
    GatewayStatus, SendResult, DispatchSummary, FallbackResult
)
from whatsapp_worker.notifications.exceptions import (
    NotificationError, ConfigurationError, ChannelError, GatewayError,
    QueueError, InvalidRecipientError, TemplateError
)

__all__ = [
    'NotificationDispatcher',
    'MessagingGateway',
    'FallbackConverter',
    'SqlAlchemyQueueRepository',
    'QueueRepository',
    'merge_metadata',
    'DEFAULT_TEMPLATES',
    'SqlTemplateStore',
    'StaticTemplateStore',
    'TemplateStore',
    'render_template',
    'resolve_template_key',
    'resolve_message',
    'normalize_phone',
    'is_valid_phone',
    'display_phone',
    'mask_phone',
    'Notification',
    'NotificationStatus',
    'DeliveryMethod',
    'ErrorReason',
    'GatewayState',
    'GatewayStatus',
    'SendResult',
    'DispatchSummary',
    'FallbackResult',
    'NotificationError',
    'ConfigurationError',
    'ChannelError',
    'GatewayError',
    'QueueError',
    'InvalidRecipientError',
    'TemplateError',
]
