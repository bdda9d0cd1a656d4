from enum import Enum

from sqlalchemy import Column, String, Text, TIMESTAMP, Integer, Index, Uuid
import uuid

from app.models.base import Base, JSONType, utcnow


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    WEBHOOK = "WEBHOOK"
    CHAT_TEAMS = "CHAT_TEAMS"
    CHAT_SLACK = "CHAT_SLACK"
    CHAT_DISCORD = "CHAT_DISCORD"
    PUSH_GENERIC = "PUSH_GENERIC"
    PUSH_FCM = "PUSH_FCM"
    PUSH_APNS = "PUSH_APNS"
    PUSH_WEB = "PUSH_WEB"
    SMS = "SMS"
    IN_APP = "IN_APP"
    RSS = "RSS"


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


TERMINAL_STATUSES = (NotificationStatus.SENT, NotificationStatus.FAILED, NotificationStatus.SKIPPED)


class Notification(Base):
    __tablename__ = "notification_queue"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=True)  # null for system-wide notifications
    channel = Column(String(32), nullable=False)
    event_type = Column(String(100), nullable=False)
    recipient = Column(Text, nullable=False)  # email, phone, webhook URL, device token...
    subject = Column(Text, nullable=True)
    content = Column(Text, nullable=False)
    metadata_ = Column("metadata", JSONType, nullable=True)
    status = Column(String(20), nullable=False, default=NotificationStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    scheduled_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    sent_at = Column(TIMESTAMP, nullable=True)
    failed_at = Column(TIMESTAMP, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_notification_queue_status_scheduled_at", "status", "scheduled_at"),
        Index("ix_notification_queue_user_id", "user_id"),
    )

    def __repr__(self):
        return f"<Notification(id='{self.id}', channel='{self.channel}', event_type='{self.event_type}', status='{self.status}')>"


class NotificationHistory(Base):
    """Append-only audit row, one per terminal delivery attempt. Never updated."""

    __tablename__ = "notification_history"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    queue_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    user_id = Column(Uuid(as_uuid=True), nullable=True)
    channel = Column(String(32), nullable=False)
    event_type = Column(String(100), nullable=False)
    recipient = Column(Text, nullable=False)
    subject = Column(Text, nullable=True)
    status = Column(String(20), nullable=False)
    sent_at = Column(TIMESTAMP, nullable=True)
    response_data = Column(JSONType, nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<NotificationHistory(queue_id='{self.queue_id}', channel='{self.channel}', status='{self.status}')>"
