"""
Durable notification queue backed by SQLAlchemy.

Every operation opens its own session, so concurrent dispatch workers never share
one. Reads return immutable ``NotificationRecord`` snapshots rather than ORM rows.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID, uuid4

from sqlalchemy import delete, func, update
from sqlalchemy.future import select

from app.core.logging import logger
from app.models.base import as_naive_utc, utcnow
from app.models.notification import (
    TERMINAL_STATUSES,
    Notification,
    NotificationChannel,
    NotificationHistory,
    NotificationStatus,
)
from app.services.channels.base import NotificationRecord

# Record field name -> ORM attribute, where they differ
_COLUMN_ALIASES = {"metadata": "metadata_"}


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


class NotificationStore(Protocol):
    async def enqueue(self, **fields) -> UUID: ...

    async def fetch_due(self, now: datetime, limit: int, status: NotificationStatus = NotificationStatus.PENDING) -> List[NotificationRecord]: ...

    async def claim(self, notification_id: UUID, expected_attempts: Optional[int] = None) -> bool: ...

    async def update_status(self, notification_id: UUID, **fields) -> None: ...

    async def append_history(self, **fields) -> UUID: ...


class SqlNotificationStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def enqueue(
        self,
        *,
        channel: NotificationChannel,
        event_type: str,
        recipient: str,
        content: str,
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[UUID] = None,
        scheduled_at: Optional[datetime] = None,
        max_attempts: int = 3,
    ) -> UUID:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        now = utcnow()
        notification = Notification(
            id=uuid4(),
            user_id=user_id,
            channel=_enum_value(NotificationChannel(channel)),
            event_type=event_type,
            recipient=recipient,
            subject=subject,
            content=content,
            metadata_=metadata or {},
            status=NotificationStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts,
            scheduled_at=as_naive_utc(scheduled_at) or now,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(notification)
            await session.commit()
        logger.info(
            "Notification queued",
            notification_id=str(notification.id),
            channel=notification.channel,
            event_type=event_type,
        )
        return notification.id

    async def fetch_due(
        self, now: datetime, limit: int, status: NotificationStatus = NotificationStatus.PENDING
    ) -> List[NotificationRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Notification)
                .filter(Notification.status == _enum_value(status), Notification.scheduled_at <= as_naive_utc(now))
                .order_by(Notification.scheduled_at.asc())
                .limit(limit)
            )
            return [NotificationRecord.from_model(row) for row in result.scalars().all()]

    async def claim(self, notification_id: UUID, expected_attempts: Optional[int] = None) -> bool:
        """
        PENDING -> PROCESSING, only for the first caller. Losers get False.

        With ``expected_attempts`` the claim also fails when another worker has
        already tried and rescheduled the record since it was fetched.
        """
        conditions = [
            Notification.id == notification_id,
            Notification.status == NotificationStatus.PENDING.value,
        ]
        if expected_attempts is not None:
            conditions.append(Notification.attempts == expected_attempts)
        async with self.session_factory() as session:
            result = await session.execute(
                update(Notification)
                .where(*conditions)
                .values(status=NotificationStatus.PROCESSING.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def update_status(self, notification_id: UUID, **fields) -> None:
        values = {_COLUMN_ALIASES.get(name, name): _enum_value(value) for name, value in fields.items()}
        values["updated_at"] = utcnow()
        async with self.session_factory() as session:
            await session.execute(
                update(Notification)
                .where(Notification.id == notification_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def append_history(
        self,
        *,
        queue_id: Optional[UUID],
        channel: NotificationChannel,
        event_type: str,
        recipient: str,
        status: NotificationStatus,
        user_id: Optional[UUID] = None,
        subject: Optional[str] = None,
        sent_at: Optional[datetime] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ) -> UUID:
        entry = NotificationHistory(
            id=uuid4(),
            queue_id=queue_id,
            user_id=user_id,
            channel=_enum_value(channel),
            event_type=event_type,
            recipient=recipient,
            subject=subject,
            status=_enum_value(status),
            sent_at=sent_at,
            response_data=response_data,
            created_at=utcnow(),
        )
        async with self.session_factory() as session:
            session.add(entry)
            await session.commit()
        return entry.id

    async def get(self, notification_id: UUID) -> Optional[NotificationRecord]:
        async with self.session_factory() as session:
            row = await session.get(Notification, notification_id)
            return NotificationRecord.from_model(row) if row else None

    async def list_notifications(
        self,
        status: Optional[str] = None,
        channel: Optional[str] = None,
        event_type: Optional[str] = None,
        user_id: Optional[UUID] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[NotificationRecord]:
        query = select(Notification)
        if status:
            query = query.filter(Notification.status == _enum_value(status))
        if channel:
            query = query.filter(Notification.channel == _enum_value(channel))
        if event_type:
            query = query.filter(Notification.event_type == event_type)
        if user_id:
            query = query.filter(Notification.user_id == user_id)
        query = query.order_by(Notification.created_at.desc()).limit(limit).offset(offset)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [NotificationRecord.from_model(row) for row in result.scalars().all()]

    async def list_history(
        self,
        queue_id: Optional[UUID] = None,
        status: Optional[str] = None,
        channel: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[NotificationHistory]:
        query = select(NotificationHistory)
        if queue_id:
            query = query.filter(NotificationHistory.queue_id == queue_id)
        if status:
            query = query.filter(NotificationHistory.status == _enum_value(status))
        if channel:
            query = query.filter(NotificationHistory.channel == _enum_value(channel))
        query = query.order_by(NotificationHistory.created_at.desc()).limit(limit).offset(offset)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def stats(self) -> Dict[str, Any]:
        async with self.session_factory() as session:
            by_status_rows = await session.execute(
                select(Notification.status, func.count()).group_by(Notification.status)
            )
            by_status = {status: count for status, count in by_status_rows.all()}

            by_channel_rows = await session.execute(
                select(Notification.channel, func.count()).group_by(Notification.channel)
            )
            by_channel = {channel: count for channel, count in by_channel_rows.all()}

            by_event_rows = await session.execute(
                select(Notification.event_type, Notification.status, func.count()).group_by(
                    Notification.event_type, Notification.status
                )
            )
            by_event_type: Dict[str, Dict[str, int]] = {}
            for event_type, status, count in by_event_rows.all():
                by_event_type.setdefault(event_type, {s.value: 0 for s in NotificationStatus})[status] = count

        return {
            "total_notifications": sum(by_status.values()),
            "total_sent": by_status.get(NotificationStatus.SENT.value, 0),
            "total_failed": by_status.get(NotificationStatus.FAILED.value, 0),
            "total_pending": by_status.get(NotificationStatus.PENDING.value, 0),
            "total_skipped": by_status.get(NotificationStatus.SKIPPED.value, 0),
            "by_status": by_status,
            "by_channel": by_channel,
            "by_event_type": by_event_type,
        }

    async def release_stale_claims(self, older_than: datetime) -> int:
        """Return PROCESSING rows abandoned by a crashed worker to PENDING."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Notification)
                .where(
                    Notification.status == NotificationStatus.PROCESSING.value,
                    Notification.updated_at < older_than,
                )
                .values(status=NotificationStatus.PENDING.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.warning("Released stale notification claims", count=result.rowcount)
        return result.rowcount

    async def purge_finished(self, older_than: datetime) -> int:
        """Delete terminal queue rows last touched before the cutoff. History is kept."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(Notification)
                .where(
                    Notification.status.in_([s.value for s in TERMINAL_STATUSES]),
                    Notification.updated_at < older_than,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.info("Purged finished notifications", count=result.rowcount)
        return result.rowcount

    async def purge_orphaned_in_app(self) -> int:
        """Delete IN_APP rows with no user; they can never be delivered."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(Notification)
                .where(
                    Notification.channel == NotificationChannel.IN_APP.value,
                    Notification.user_id.is_(None),
                    Notification.status != NotificationStatus.PROCESSING.value,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.info("Purged orphaned in-app notifications", count=result.rowcount)
        return result.rowcount
