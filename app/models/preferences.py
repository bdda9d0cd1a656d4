from sqlalchemy import Column, String, TIMESTAMP, Boolean, Index, Uuid
import uuid

from app.models.base import Base, utcnow


class UserNotificationPreference(Base):
    __tablename__ = "user_notification_preferences"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=False)
    channel = Column(String(32), nullable=False)
    event_type = Column(String(100), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
    updated_at = Column(TIMESTAMP, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_user_notification_preferences_user_channel_event", "user_id", "channel", "event_type", unique=True),
    )
