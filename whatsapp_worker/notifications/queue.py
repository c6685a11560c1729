"""
Notification queue repository backed by the ``system_notifications`` table.

All status transitions go through conditional UPDATEs so that two workers
polling the same queue never both send the same row.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from whatsapp_worker.models.db_models import SystemNotification, utc_now
from whatsapp_worker.notifications.exceptions import QueueError
from whatsapp_worker.notifications.models import Notification, NotificationStatus


logger = logging.getLogger(__name__)


def merge_metadata(existing: Optional[Mapping[str, Any]], patch: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Shallow-merge ``patch`` over ``existing``.

    Keys in ``patch`` win; keys only in ``existing`` are kept as they are.
    Neither argument is modified.
    """
    merged = dict(existing or {})
    merged.update(patch or {})
    return merged


class QueueRepository(Protocol):
    """Operations the dispatcher and fallback converter need from the queue."""

    def fetch_pending(self, delivery_method: str, limit: int) -> List[Notification]:
        ...

    def update_status(self, notification_id: str, status: NotificationStatus,
                      metadata_patch: Optional[Mapping[str, Any]] = None) -> None:
        ...

    def claim(self, notification_id: str) -> bool:
        ...

    def change_delivery_method(self, notification_id: str, delivery_method: str,
                               metadata_patch: Optional[Mapping[str, Any]] = None) -> None:
        ...


class SqlAlchemyQueueRepository:
    """Queue repository over any SQLAlchemy-supported database."""

    def __init__(self, session_factory: Callable, clock: Callable[[], datetime] = utc_now):
        """
        Args:
            session_factory: ``sessionmaker`` bound to the queue database
            clock: Returns the current naive UTC time
        """
        self.session_factory = session_factory
        self.clock = clock

    def fetch_pending(self, delivery_method: str, limit: int) -> List[Notification]:
        """
        Fetch due notifications for a delivery method.

        Returns rows with the given ``delivery_method``, status ``pending`` and
        ``scheduled_for <= now``, oldest first, at most ``limit`` of them.

        Raises:
            QueueError: If the queue cannot be read
        """
        now = self.clock()
        stmt = (
            select(SystemNotification)
            .where(
                SystemNotification.delivery_method == delivery_method,
                SystemNotification.status == NotificationStatus.PENDING.value,
                SystemNotification.scheduled_for <= now,
            )
            .order_by(SystemNotification.created_at.asc(), SystemNotification.id.asc())
            .limit(limit)
        )

        try:
            with self.session_factory() as session:
                rows = session.execute(stmt).scalars().all()
                return [self._to_notification(row) for row in rows]
        except SQLAlchemyError as e:
            raise QueueError(f"Failed to fetch pending {delivery_method} notifications: {e}")

    def get(self, notification_id: str) -> Optional[Notification]:
        """Load a single notification by id."""
        try:
            with self.session_factory() as session:
                row = session.get(SystemNotification, notification_id)
                return self._to_notification(row) if row else None
        except SQLAlchemyError as e:
            raise QueueError(f"Failed to load notification: {e}", notification_id)

    def update_status(self, notification_id: str, status: NotificationStatus,
                      metadata_patch: Optional[Mapping[str, Any]] = None) -> None:
        """
        Set a terminal status and merge ``metadata_patch`` into the row metadata.

        ``sent_at`` is stamped when the new status is ``sent``.

        Raises:
            QueueError: If the row does not exist or the write fails
        """
        status = NotificationStatus(status)

        def apply(row: SystemNotification):
            row.status = status.value
            row.notification_metadata = merge_metadata(row.notification_metadata, metadata_patch)
            if status == NotificationStatus.SENT:
                row.sent_at = self.clock()

        self._modify(notification_id, apply)

    def change_delivery_method(self, notification_id: str, delivery_method: str,
                               metadata_patch: Optional[Mapping[str, Any]] = None) -> None:
        """Re-route a notification to another channel without touching its status."""

        def apply(row: SystemNotification):
            row.delivery_method = delivery_method
            row.notification_metadata = merge_metadata(row.notification_metadata, metadata_patch)

        self._modify(notification_id, apply)

    def claim(self, notification_id: str) -> bool:
        """
        Move a row from ``pending`` to ``processing``.

        Returns:
            False when the row is no longer pending (another worker has it)
        """
        stmt = (
            update(SystemNotification)
            .where(
                SystemNotification.id == notification_id,
                SystemNotification.status == NotificationStatus.PENDING.value,
            )
            .values(status=NotificationStatus.PROCESSING.value, claimed_at=self.clock())
            .execution_options(synchronize_session=False)
        )

        try:
            with self.session_factory() as session:
                result = session.execute(stmt)
                session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise QueueError(f"Failed to claim notification: {e}", notification_id)

    def release_stale_claims(self, lease_seconds: int) -> int:
        """
        Return rows stuck in ``processing`` for longer than ``lease_seconds`` to ``pending``.

        A worker that dies between claim and final update leaves its row in
        ``processing``; releasing it lets a later pass send it.
        """
        cutoff = self.clock() - timedelta(seconds=lease_seconds)
        stmt = (
            update(SystemNotification)
            .where(
                SystemNotification.status == NotificationStatus.PROCESSING.value,
                SystemNotification.claimed_at <= cutoff,
            )
            .values(status=NotificationStatus.PENDING.value, claimed_at=None)
            .execution_options(synchronize_session=False)
        )

        try:
            with self.session_factory() as session:
                result = session.execute(stmt)
                session.commit()
        except SQLAlchemyError as e:
            raise QueueError(f"Failed to release stale claims: {e}")

        if result.rowcount:
            logger.warning(f"Released {result.rowcount} stale notification claims")
        return result.rowcount or 0

    def enqueue(self,
                notification_type: str,
                message: str,
                delivery_method: str = "whatsapp",
                scheduled_for: Optional[datetime] = None,
                metadata: Optional[Mapping[str, Any]] = None,
                recipient_id: Optional[str] = None,
                recipient_type: Optional[str] = None,
                title: Optional[str] = None) -> Notification:
        """Insert a pending notification and return it."""
        row = SystemNotification(
            notification_type=notification_type,
            message=message,
            delivery_method=delivery_method,
            status=NotificationStatus.PENDING.value,
            scheduled_for=scheduled_for or self.clock(),
            notification_metadata=dict(metadata or {}),
            recipient_id=recipient_id,
            recipient_type=recipient_type,
            title=title,
            created_at=self.clock(),
        )

        try:
            with self.session_factory() as session:
                session.add(row)
                session.commit()
                session.refresh(row)
                return self._to_notification(row)
        except SQLAlchemyError as e:
            raise QueueError(f"Failed to enqueue notification: {e}")

    def _modify(self, notification_id: str, apply: Callable[[SystemNotification], None]) -> None:
        try:
            with self.session_factory() as session:
                row = session.get(SystemNotification, notification_id)
                if row is None:
                    raise QueueError("Notification not found", notification_id)
                apply(row)
                session.commit()
        except SQLAlchemyError as e:
            raise QueueError(f"Failed to update notification: {e}", notification_id)

    @staticmethod
    def _to_notification(row: SystemNotification) -> Notification:
        return Notification(
            id=row.id,
            delivery_method=row.delivery_method,
            status=row.status,
            scheduled_for=row.scheduled_for,
            notification_type=row.notification_type,
            message=row.message or '',
            metadata=dict(row.notification_metadata or {}),
            recipient_id=row.recipient_id,
            recipient_type=row.recipient_type,
            title=row.title,
            sent_at=row.sent_at,
            created_at=row.created_at,
        )
