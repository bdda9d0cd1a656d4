from pydantic import BaseModel, Field, field_validator
from uuid import UUID
from datetime import datetime
from typing import Dict, Any, Optional, List

from app.models.notification import NotificationChannel


class NotificationCreate(BaseModel):
    channel: NotificationChannel
    event_type: str
    recipient: str
    content: str
    subject: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    user_id: Optional[UUID] = None
    scheduled_at: Optional[datetime] = None
    max_attempts: int = Field(default=3, ge=1)


class NotificationResponse(BaseModel):
    id: UUID
    user_id: Optional[UUID]
    channel: str
    event_type: str
    recipient: str
    subject: Optional[str]
    content: str
    metadata: Optional[Dict[str, Any]]
    status: str
    attempts: int
    max_attempts: int
    scheduled_at: datetime
    sent_at: Optional[datetime]
    failed_at: Optional[datetime]
    error_message: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class EnqueueResponse(BaseModel):
    ids: List[UUID]


class HistoryEntryResponse(BaseModel):
    id: UUID
    queue_id: Optional[UUID]
    user_id: Optional[UUID]
    channel: str
    event_type: str
    recipient: str
    subject: Optional[str]
    status: str
    sent_at: Optional[datetime]
    response_data: Optional[Dict[str, Any]]
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationStatsResponse(BaseModel):
    total_notifications: int
    total_sent: int
    total_failed: int
    total_pending: int
    total_skipped: int
    by_event_type: Dict[str, Dict[str, int]]  # {event_type: {status: count}}
    by_status: Dict[str, int]
    by_channel: Dict[str, int]


class UserNotificationRequest(BaseModel):
    event_type: str
    title: str
    content: str
    metadata: Optional[Dict[str, Any]] = None
    channels: Optional[List[NotificationChannel]] = None


class TemplatedEventRequest(BaseModel):
    event_type: str
    user_ids: List[UUID] = Field(min_length=1)
    channels: List[NotificationChannel] = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("channels")
    @classmethod
    def no_webhook_channel(cls, channels):
        # Webhook destinations are addressed per event, not per user
        if NotificationChannel.WEBHOOK in channels:
            raise ValueError("WEBHOOK events are queued through /webhook-events")
        return channels


class WebhookEventRequest(BaseModel):
    event_type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    title: Optional[str] = None
    content: Optional[str] = None


class DispatchStatsResponse(BaseModel):
    picked: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    lost_claims: int = 0
    errors: int = 0

    class Config:
        from_attributes = True


class ProcessorStatusResponse(BaseModel):
    is_running: bool
    interval: int
    last_run_at: Optional[datetime]
    last_run: Optional[DispatchStatsResponse]


class PreferenceUpdate(BaseModel):
    channel: NotificationChannel
    event_type: str
    enabled: bool
