from typing import Optional
from uuid import uuid4

from app.config import settings
from app.core.errors import ChannelConfigurationError
from app.core.logging import logger
from app.models.base import utcnow
from app.models.inbox import InAppNotification, RssFeedItem
from app.models.notification import NotificationChannel
from app.services.channels.base import ChannelHandler, DeliveryResult, NotificationRecord
from app.services.settings_store import SettingsProvider

CONTRIBUTION_EVENTS = (
    "contribution.approved",
    "contribution.rejected",
    "contribution.submitted",
    "contribution.vote_received",
)
STATIC_ACTION_URLS = {
    "user.low_credits": "/contribute",
    "user.credit_topup": "/dashboard",
    "system.changelog": "/changelog",
    "user.account_updated": "/settings",
}


def action_url_for(record: NotificationRecord) -> Optional[str]:
    """Frontend deep link for an in-app notification, if the event has one."""
    if record.metadata.get("actionUrl"):
        return record.metadata["actionUrl"]
    if record.event_type in CONTRIBUTION_EVENTS:
        contribution_id = record.metadata.get("contributionId")
        return f"/contributions/{contribution_id}" if contribution_id else "/contributions/browse"
    return STATIC_ACTION_URLS.get(record.event_type)


def feed_link_for(record: NotificationRecord) -> str:
    base_url = settings.FRONTEND_URL.rstrip("/")
    if record.event_type == "contribution.approved":
        return f"{base_url}/vehicles/{record.metadata.get('vehicleId', '')}"
    if record.event_type == "user.registered":
        return f"{base_url}/community"
    if record.event_type == "system.announcement":
        return f"{base_url}/announcements/{record.metadata.get('announcementId', '')}"
    return base_url


class _DatabaseSinkHandler(ChannelHandler):
    def __init__(self, settings_provider: SettingsProvider, session_factory):
        super().__init__(settings_provider)
        self.session_factory = session_factory


class InAppHandler(_DatabaseSinkHandler):
    """Writes to the user's inbox. Always enabled; the dispatcher does not ask."""

    channel = NotificationChannel.IN_APP

    async def send(self, record: NotificationRecord) -> DeliveryResult:
        if record.user_id is None:
            raise ChannelConfigurationError(self.channel.value, "In-app notification has no recipient user")

        item = InAppNotification(
            id=uuid4(),
            user_id=record.user_id,
            queue_id=record.id,
            title=record.title,
            content=record.content,
            event_type=record.event_type,
            action_url=action_url_for(record),
            metadata_=record.metadata or None,
            is_read=False,
            created_at=utcnow(),
        )
        async with self.session_factory() as session:
            session.add(item)
            await session.commit()

        logger.info("In-app notification created", in_app_id=str(item.id), user_id=str(record.user_id))
        return DeliveryResult.ok(message_id=f"inapp-{item.id}", in_app_id=str(item.id), action_url=item.action_url)


class RssHandler(_DatabaseSinkHandler):
    channel = NotificationChannel.RSS
    category = "RSS"
    enabled_key = "rss_enabled"

    async def send(self, record: NotificationRecord) -> DeliveryResult:
        now = utcnow()
        item = RssFeedItem(
            id=uuid4(),
            title=record.subject or f"{settings.APP_NAME} Update",
            description=record.content,
            event_type=record.event_type,
            link=feed_link_for(record),
            guid=f"{record.event_type}-{record.id}",
            pub_date=now,
            is_published=True,
            created_at=now,
        )
        async with self.session_factory() as session:
            session.add(item)
            await session.commit()

        logger.info("RSS feed item created", feed_item_id=str(item.id), event_type=record.event_type)
        return DeliveryResult.ok(message_id=f"rss-{item.id}", feed_item_id=str(item.id), link=item.link)
