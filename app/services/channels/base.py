"""
Channel handler contract.

A handler answers two questions for its channel: is it configured and switched
on (``is_enabled``), and deliver this record (``send``). ``send`` reports
provider failures through a failed ``DeliveryResult``; it raises only
``ChannelConfigurationError`` when required settings are missing. Handlers never
touch queue state, the dispatcher owns every status transition.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

import httpx

from app.core.errors import ChannelConfigurationError
from app.core.logging import logger
from app.models.notification import NotificationChannel, NotificationStatus
from app.services.settings_store import SettingsProvider, is_truthy

DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class NotificationRecord:
    id: UUID
    channel: NotificationChannel
    event_type: str
    recipient: str
    content: str
    user_id: Optional[UUID] = None
    subject: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row) -> "NotificationRecord":
        return cls(
            id=row.id,
            channel=NotificationChannel(row.channel),
            event_type=row.event_type,
            recipient=row.recipient,
            content=row.content,
            user_id=row.user_id,
            subject=row.subject,
            metadata=dict(row.metadata_ or {}),
            status=NotificationStatus(row.status),
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            scheduled_at=row.scheduled_at,
            sent_at=row.sent_at,
            failed_at=row.failed_at,
            error_message=row.error_message,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @property
    def title(self) -> str:
        return self.subject or self.event_type


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    response: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    rate_limited: bool = False

    @classmethod
    def ok(cls, **response) -> "DeliveryResult":
        return cls(success=True, response=response)

    @classmethod
    def failed(cls, error: str, **response) -> "DeliveryResult":
        return cls(success=False, error=error, response=response)

    @classmethod
    def deferred(cls, destination: str) -> "DeliveryResult":
        return cls(success=False, rate_limited=True, error=f"Rate limit reached for {destination}")


def describe_http_error(response: httpx.Response) -> str:
    return f"HTTP {response.status_code}: {response.text[:500]}"


def response_payload(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        body = response.text[:2000]
    return {"status": response.status_code, "body": body}


class ChannelHandler(ABC):
    channel: NotificationChannel
    # Settings category holding this channel's configuration and on/off switch
    category: Optional[str] = None
    enabled_key: Optional[str] = None
    # Send deadline in seconds; the dispatcher applies the larger of this and its own
    send_timeout: Optional[float] = None

    def __init__(self, settings_provider: SettingsProvider, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings_provider
        self.transport = transport

    async def is_enabled(self) -> bool:
        if not self.category or not self.enabled_key:
            return True
        return is_truthy(await self.settings.get_setting(self.category, self.enabled_key))

    @abstractmethod
    async def send(self, record: NotificationRecord) -> DeliveryResult:
        ...

    async def setting(self, key: str, category: Optional[str] = None) -> Optional[str]:
        value = await self.settings.get_setting(category or self.category, key)
        return value.value if value else None

    async def require_setting(self, key: str, category: Optional[str] = None) -> str:
        value = await self.setting(key, category)
        if not value:
            raise ChannelConfigurationError(self.channel.value, f"{self.channel.value} is not configured: missing {key}")
        return value

    def http_client(self, timeout: float = DEFAULT_TIMEOUT, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport, **kwargs)

    async def post_json(self, url: str, payload: Dict[str, Any], **kwargs) -> DeliveryResult:
        """POST a JSON body; any non-2xx or transport error becomes a failed result."""
        try:
            async with self.http_client() as client:
                response = await client.post(url, json=payload, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Channel request failed", channel=self.channel.value, error=str(e))
            return DeliveryResult.failed(f"{type(e).__name__}: {e}")
        if not response.is_success:
            return DeliveryResult.failed(describe_http_error(response), **response_payload(response))
        return DeliveryResult.ok(**response_payload(response))


class RateLimitedHandler(ChannelHandler):
    """Webhook-class handler: consults the limiter before every send."""

    def __init__(self, settings_provider: SettingsProvider, rate_limiter, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(settings_provider, transport)
        self.rate_limiter = rate_limiter

    async def send(self, record: NotificationRecord) -> DeliveryResult:
        # Chat channels share one limiter key per channel
        key = self.channel.value
        if not await self.rate_limiter.can_send(key):
            return DeliveryResult.deferred(key)
        return await self.deliver(record)

    @abstractmethod
    async def deliver(self, record: NotificationRecord) -> DeliveryResult:
        ...
