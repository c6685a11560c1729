"""
Dispatch loop for queued WhatsApp notifications.

One call to :meth:`NotificationDispatcher.run` is one invocation of the
worker: check the gateway, fetch due notifications, send them one at a
time with a fixed delay in between, and write every outcome back to the
queue. Per-item failures never abort the batch.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from whatsapp_worker.notifications.exceptions import InvalidRecipientError, QueueError
from whatsapp_worker.notifications.fallback import FallbackConverter
from whatsapp_worker.notifications.models import (
    DeliveryMethod, DispatchSummary, ErrorReason, GatewayState, Notification, NotificationStatus, SendResult
)
from whatsapp_worker.notifications.phone import is_valid_phone, mask_phone, normalize_phone
from whatsapp_worker.notifications.templates import resolve_message


logger = logging.getLogger(__name__)


DISCONNECTED_MESSAGE = "WhatsApp not connected, notifications converted to email fallback"
NO_PENDING_MESSAGE = "No pending notifications"

OUTCOME_SENT = "sent"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


class MessagingGateway(Protocol):
    """What the dispatcher needs from a WhatsApp gateway."""

    def check_connected(self) -> bool:
        ...

    def send_message(self, phone_number: str, message: str) -> SendResult:
        ...


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _fallback_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}"


class NotificationDispatcher:
    """
    Orchestrates a dispatch pass.

    Collaborators are injected so the loop can run against fakes in tests:
    ``queue`` (see ``QueueRepository``), ``template_store`` (anything with
    ``load_templates()``), ``gateway`` (``check_connected()`` and
    ``send_message()``) and ``sleep`` for the inter-message delay.
    """

    def __init__(self,
                 queue,
                 template_store,
                 gateway: MessagingGateway,
                 fallback_converter: Optional[FallbackConverter] = None,
                 delivery_method: str = DeliveryMethod.WHATSAPP.value,
                 fallback_method: str = DeliveryMethod.EMAIL.value,
                 batch_limit: int = 50,
                 fallback_limit: int = 10,
                 inter_message_delay: float = 1.0,
                 claim_enabled: bool = True,
                 claim_lease_seconds: Optional[int] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.queue = queue
        self.template_store = template_store
        self.gateway = gateway
        self.fallback_converter = fallback_converter or FallbackConverter(queue)
        self.delivery_method = delivery_method
        self.fallback_method = fallback_method
        self.batch_limit = batch_limit
        self.fallback_limit = fallback_limit
        self.inter_message_delay = inter_message_delay
        self.claim_enabled = claim_enabled
        self.claim_lease_seconds = claim_lease_seconds
        self.sleep = sleep

    @classmethod
    def from_config(cls, dispatch_config, queue, template_store, gateway,
                    sleep: Callable[[float], None] = time.sleep) -> 'NotificationDispatcher':
        """Build a dispatcher from a ``DispatchConfig``."""
        return cls(
            queue=queue,
            template_store=template_store,
            gateway=gateway,
            delivery_method=dispatch_config.delivery_method,
            fallback_method=dispatch_config.fallback_method,
            batch_limit=dispatch_config.batch_limit,
            fallback_limit=dispatch_config.fallback_limit,
            inter_message_delay=dispatch_config.inter_message_delay_seconds,
            claim_enabled=dispatch_config.claim_enabled,
            claim_lease_seconds=dispatch_config.claim_lease_seconds,
            sleep=sleep,
        )

    def run(self) -> DispatchSummary:
        """
        Run one dispatch pass.

        Returns:
            DispatchSummary describing the pass

        Raises:
            QueueError: If the queue cannot be read. Everything that goes
                wrong with a single notification is recorded on that
                notification instead.
        """
        logger.info("Processing WhatsApp notifications...")

        if self.claim_enabled and self.claim_lease_seconds:
            self.queue.release_stale_claims(self.claim_lease_seconds)

        if not self.gateway.check_connected():
            return self._run_fallback()

        notifications = self.queue.fetch_pending(self.delivery_method, self.batch_limit)

        if not notifications:
            logger.info("No pending WhatsApp notifications")
            return DispatchSummary(
                success=True,
                whatsapp_status=GatewayState.CONNECTED,
                message=NO_PENDING_MESSAGE,
            )

        templates = self.template_store.load_templates()
        summary = DispatchSummary(
            success=True,
            whatsapp_status=GatewayState.CONNECTED,
            total=len(notifications),
        )

        logger.info(f"Processing {len(notifications)} pending WhatsApp notifications")

        last_index = len(notifications) - 1
        for index, notification in enumerate(notifications):
            outcome = self.process_notification(notification, templates)

            if outcome == OUTCOME_SENT:
                summary.processed += 1
            elif outcome == OUTCOME_FAILED:
                summary.failed += 1
            else:
                summary.skipped += 1
                continue

            # Fixed-rate limiting between gateway calls
            if index < last_index and self.inter_message_delay > 0:
                self.sleep(self.inter_message_delay)

        logger.info(
            f"Processing complete: {summary.processed} sent, {summary.failed} failed, "
            f"success rate {summary.success_rate}%"
        )

        return summary

    def process_notification(self, notification: Notification, templates: Mapping[str, str]) -> str:
        """
        Drive one notification to a terminal state.

        Returns:
            ``"sent"``, ``"failed"`` or ``"skipped"`` (claimed by another worker)
        """
        if self.claim_enabled:
            try:
                if not self.queue.claim(notification.id):
                    logger.info(f"Notification {notification.id} already claimed, skipping")
                    return OUTCOME_SKIPPED
            except QueueError as e:
                logger.error(f"Could not claim notification {notification.id}: {e}")
                return OUTCOME_SKIPPED

        raw_phone = notification.phone_number
        if not raw_phone:
            logger.warning(f"No phone number for notification {notification.id}")
            return self._mark_failed(notification, {'error_reason': ErrorReason.NO_PHONE_NUMBER.value})

        formatted_phone = normalize_phone(raw_phone)
        if not is_valid_phone(formatted_phone):
            logger.warning(f"Invalid phone number for notification {notification.id}: {mask_phone(raw_phone)}")
            return self._mark_failed(notification, {
                'error_reason': ErrorReason.INVALID_PHONE_NUMBER.value,
                'original_phone': raw_phone,
            })

        try:
            message = resolve_message(
                notification.notification_type,
                notification.message,
                notification.metadata,
                templates,
            )

            result = self.gateway.send_message(formatted_phone, message)

        except Exception as e:
            logger.error(f"Error processing notification {notification.id}: {e}", exc_info=True)
            return self._mark_failed(notification, {
                'error_reason': ErrorReason.PROCESSING_EXCEPTION.value,
                'error_message': str(e),
                'retry_count': notification.retry_count + 1,
            })

        if not result.success:
            logger.error(f"Failed to send notification {notification.id}: {result.error_message}")
            return self._mark_failed(notification, {
                'error_reason': ErrorReason.API_ERROR.value,
                'error_message': result.error_message,
                'retry_count': notification.retry_count + 1,
            })

        try:
            self.queue.update_status(notification.id, NotificationStatus.SENT, {
                'message_id': result.message_id or _fallback_message_id(),
                'formatted_phone': formatted_phone,
                'processing_time': _iso_now(),
            })
        except QueueError as e:
            # Already delivered, so it still counts as sent
            logger.error(f"Sent notification {notification.id} but could not record it: {e}")

        logger.info(f"Sent notification {notification.id} to {mask_phone(formatted_phone)}")
        return OUTCOME_SENT

    def schedule_reminder(self,
                          phone_number: str,
                          message: str,
                          delay_minutes: int = 0,
                          notification_type: str = "appointment_reminder",
                          recipient_id: Optional[str] = None,
                          recipient_type: Optional[str] = None,
                          metadata: Optional[Dict[str, Any]] = None) -> Notification:
        """
        Queue a WhatsApp message to go out ``delay_minutes`` from now.

        Raises:
            InvalidRecipientError: If the phone number is not an Argentine mobile
        """
        formatted_phone = normalize_phone(phone_number)
        if not is_valid_phone(formatted_phone):
            raise InvalidRecipientError(f"Invalid phone number: {mask_phone(phone_number)}", str(phone_number))

        scheduled_for = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(minutes=delay_minutes)
        notification_metadata = dict(metadata or {})
        notification_metadata.update({
            'phone_number': formatted_phone,
            'delay_minutes': delay_minutes,
            'scheduled_via': 'api',
        })

        notification = self.queue.enqueue(
            notification_type=notification_type,
            message=message,
            delivery_method=self.delivery_method,
            scheduled_for=scheduled_for,
            metadata=notification_metadata,
            recipient_id=recipient_id,
            recipient_type=recipient_type,
        )

        logger.info(
            f"Scheduled {notification_type} notification {notification.id} for "
            f"{mask_phone(formatted_phone)} in {delay_minutes} minutes"
        )
        return notification

    def _run_fallback(self) -> DispatchSummary:
        logger.warning("WhatsApp not connected, processing email fallbacks...")

        result = self.fallback_converter.convert_to_fallback(
            self.delivery_method, self.fallback_method, self.fallback_limit
        )

        return DispatchSummary(
            success=False,
            whatsapp_status=GatewayState.DISCONNECTED,
            message=DISCONNECTED_MESSAGE,
            fallback_processed=result.fetched,
        )

    def _mark_failed(self, notification: Notification, metadata_patch: Dict[str, Any]) -> str:
        try:
            self.queue.update_status(notification.id, NotificationStatus.FAILED, metadata_patch)
        except QueueError as e:
            logger.error(f"Could not record failure for notification {notification.id}: {e}")
        return OUTCOME_FAILED
