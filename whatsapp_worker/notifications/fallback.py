"""
Re-routes queued WhatsApp notifications to another channel while the gateway is down.
"""

import logging

from whatsapp_worker.notifications.exceptions import QueueError
from whatsapp_worker.notifications.models import FallbackResult, FALLBACK_REASON_DISCONNECTED


logger = logging.getLogger(__name__)


class FallbackConverter:
    """
    Rewrites ``delivery_method`` on due notifications so the other channel's
    worker picks them up. Status stays ``pending``.
    """

    def __init__(self, queue, reason: str = FALLBACK_REASON_DISCONNECTED):
        self.queue = queue
        self.reason = reason

    def convert_to_fallback(self, method_from: str, method_to: str, limit: int = 10) -> FallbackResult:
        """
        Convert up to ``limit`` due notifications from ``method_from`` to ``method_to``.

        Each converted row gets ``metadata.original_method`` and
        ``metadata.fallback_reason``. A failure on one row is logged and the
        rest are still converted.

        Raises:
            QueueError: If the pending notifications cannot be fetched
        """
        notifications = self.queue.fetch_pending(method_from, limit)
        result = FallbackResult(fetched=len(notifications))

        if not notifications:
            return result

        logger.info(f"Converting {len(notifications)} {method_from} notifications to {method_to} fallback")

        for notification in notifications:
            try:
                self.queue.change_delivery_method(
                    notification.id,
                    method_to,
                    {
                        'original_method': method_from,
                        'fallback_reason': self.reason,
                    }
                )
                result.converted += 1
                logger.debug(f"Converted notification {notification.id} to {method_to} fallback")
            except QueueError as e:
                result.failed += 1
                logger.error(f"Error converting notification {notification.id}: {e}")

        return result
