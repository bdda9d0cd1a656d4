from sqlalchemy import Column, String, Text, TIMESTAMP, Boolean, Uuid
import uuid

from app.models.base import Base, JSONType, utcnow


class InAppNotification(Base):
    __tablename__ = "in_app_notifications"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    queue_id = Column(Uuid(as_uuid=True), nullable=True)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    event_type = Column(String(100), nullable=False)
    action_url = Column(String(2048), nullable=True)
    metadata_ = Column("metadata", JSONType, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)


class RssFeedItem(Base):
    __tablename__ = "rss_feed_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    event_type = Column(String(100), nullable=False)
    link = Column(String(2048), nullable=False)
    guid = Column(String(255), nullable=False, unique=True)
    pub_date = Column(TIMESTAMP, nullable=False)
    is_published = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP, nullable=False, default=utcnow)
