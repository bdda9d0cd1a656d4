import time
from typing import Any, Dict, Optional
from uuid import UUID

import httpx

from app.core.errors import ChannelConfigurationError
from app.core.logging import logger
from app.models.notification import NotificationChannel
from app.models.webhook import WebhookDestination
from app.schemas.webhook import MAX_TIMEOUT_SECONDS
from app.services.channels.base import ChannelHandler, DeliveryResult, NotificationRecord
from app.services.settings_store import SettingsProvider
from app.services.webhook_templates import build_payload
from app.services.webhooks import deliver_webhook, record_delivery_stats


def webhook_data(metadata: Dict[str, Any]) -> Dict[str, Any]:
    if isinstance(metadata.get("data"), dict):
        return metadata["data"]
    return {key: value for key, value in metadata.items() if key != "webhook_id"}


class WebhookHandler(ChannelHandler):
    """
    Delivers to one configured destination, named by ``metadata.webhook_id``.

    Destinations carry their own enabled flag, so the channel itself is always on.
    Each destination is rate limited under ``webhook_<id>`` with its own cap.
    Requests are bounded by the destination's timeout; ``send_timeout`` covers
    the longest one a destination may configure.
    """

    channel = NotificationChannel.WEBHOOK
    send_timeout = MAX_TIMEOUT_SECONDS + 15

    def __init__(self, settings_provider: SettingsProvider, session_factory, rate_limiter,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(settings_provider, transport)
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter

    async def _load_destination(self, record: NotificationRecord) -> WebhookDestination:
        raw_id = record.metadata.get("webhook_id")
        if not raw_id:
            raise ChannelConfigurationError(self.channel.value, "Webhook notification has no webhook_id in metadata")
        try:
            webhook_id = UUID(str(raw_id))
        except ValueError:
            raise ChannelConfigurationError(self.channel.value, f"Invalid webhook_id: {raw_id}")

        async with self.session_factory() as session:
            destination = await session.get(WebhookDestination, webhook_id)
        if destination is None:
            raise ChannelConfigurationError(self.channel.value, f"Webhook destination {webhook_id} not found")
        if not destination.is_enabled:
            raise ChannelConfigurationError(self.channel.value, f"Webhook destination {destination.name} is disabled")
        return destination

    async def send(self, record: NotificationRecord) -> DeliveryResult:
        destination = await self._load_destination(record)

        key = f"webhook_{destination.id}"
        if not await self.rate_limiter.can_send(key, destination.rate_limit_per_minute):
            return DeliveryResult.deferred(key)

        payload = build_payload(destination, record.event_type, int(time.time()), webhook_data(record.metadata))
        result = await deliver_webhook(destination, payload, transport=self.transport, event_type=record.event_type)

        async with self.session_factory() as session:
            await record_delivery_stats(session, destination.id, result.success)

        if result.success:
            logger.info("Webhook delivered", webhook_id=str(destination.id), notification_id=str(record.id))
        return result
