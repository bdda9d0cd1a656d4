import json
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.core.logging import logger
from app.models.base import utcnow
from app.models.notification import NotificationChannel
from app.models.preferences import UserNotificationPreference
from app.schemas.notification import NotificationCreate, PreferenceUpdate
from app.services.store import SqlNotificationStore
from app.services.users import get_user_details_from_user_management
from app.services.webhooks import get_webhooks_for_event
from app.utils.templating import render_notification

FALLBACK_KEY = "*"

PREFERENCE_EVENT_TYPES = [
    "contribution.approved",
    "contribution.rejected",
    "contribution.submitted",
    "user.registered",
    "user.password_reset",
    "user.account_updated",
    "system.maintenance",
    "system.announcement",
]

# Channel -> event types switched on for users who never set a preference.
# Every other channel/event pair defaults to off.
DEFAULT_PREFERENCES = {
    NotificationChannel.EMAIL: {
        "contribution.approved", "contribution.rejected", "user.registered", "user.password_reset",
        "user.account_updated", "system.maintenance", "system.announcement",
    },
    NotificationChannel.IN_APP: {
        "contribution.approved", "contribution.rejected", "contribution.submitted", "user.registered",
        "user.account_updated", "system.maintenance", "system.announcement",
    },
    NotificationChannel.SMS: {"user.password_reset", "system.maintenance"},
}


# Load notification templates from JSON file
def load_notification_templates():
    template_path = Path(__file__).parent.parent / "templates" / "notifications.json"
    try:
        with open(template_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (FileNotFoundError, json.JSONDecodeError) as e:
        logger.error("Failed to load notification templates", error=str(e))
        return {}


NOTIFICATION_TEMPLATES = load_notification_templates()


def get_notification_template(event_type: str, channel: NotificationChannel) -> Dict[str, Any]:
    """Template for an event/channel pair, falling back to the generic ``{{title}}``/``{{content}}`` one."""
    channel = NotificationChannel(channel).value
    event_templates = NOTIFICATION_TEMPLATES.get(event_type) or {}
    template = event_templates.get(channel)
    if template is None:
        fallback = NOTIFICATION_TEMPLATES.get(FALLBACK_KEY, {})
        template = fallback.get(channel) or fallback.get(FALLBACK_KEY) or {"subject": "{{title}}", "content": "{{content}}"}
        logger.debug("No template for event/channel, using fallback", event_type=event_type, channel=channel)
    return dict(template)


def default_preference(channel: NotificationChannel, event_type: str) -> bool:
    return event_type in DEFAULT_PREFERENCES.get(NotificationChannel(channel), set())


def resolve_recipient(channel: NotificationChannel, user_id: UUID, user: Dict[str, Any]) -> Optional[str]:
    if channel == NotificationChannel.SMS:
        return user.get("phone_number")
    if channel == NotificationChannel.IN_APP:
        return str(user_id)
    if channel == NotificationChannel.PUSH_FCM:
        return user.get("fcm_token")
    if channel == NotificationChannel.PUSH_APNS:
        return user.get("apns_device_token")
    return user.get("email")


async def queue_notification(store: SqlNotificationStore, data: NotificationCreate) -> UUID:
    return await store.enqueue(
        channel=data.channel,
        event_type=data.event_type,
        recipient=data.recipient,
        content=data.content,
        subject=data.subject,
        metadata=data.metadata,
        user_id=data.user_id,
        scheduled_at=data.scheduled_at,
        max_attempts=data.max_attempts,
    )


async def is_notification_enabled(db: AsyncSession, user_id: UUID, channel: NotificationChannel, event_type: str) -> bool:
    channel = NotificationChannel(channel)
    result = await db.execute(
        select(UserNotificationPreference).filter(
            UserNotificationPreference.user_id == user_id,
            UserNotificationPreference.channel == channel.value,
            UserNotificationPreference.event_type == event_type,
        )
    )
    preference = result.scalar_one_or_none()
    if preference is not None:
        return preference.enabled
    return default_preference(channel, event_type)


async def get_preferences_matrix(db: AsyncSession, user_id: UUID) -> Dict[str, Dict[str, bool]]:
    matrix = {
        channel.value: {event_type: default_preference(channel, event_type) for event_type in PREFERENCE_EVENT_TYPES}
        for channel in NotificationChannel
    }
    result = await db.execute(
        select(UserNotificationPreference).filter(UserNotificationPreference.user_id == user_id)
    )
    for preference in result.scalars().all():
        matrix.setdefault(preference.channel, {})[preference.event_type] = preference.enabled
    return matrix


async def update_preferences(db: AsyncSession, user_id: UUID, updates: Iterable[PreferenceUpdate]) -> None:
    for update in updates:
        result = await db.execute(
            select(UserNotificationPreference).filter(
                UserNotificationPreference.user_id == user_id,
                UserNotificationPreference.channel == update.channel.value,
                UserNotificationPreference.event_type == update.event_type,
            )
        )
        preference = result.scalar_one_or_none()
        if preference is None:
            db.add(UserNotificationPreference(
                user_id=user_id,
                channel=update.channel.value,
                event_type=update.event_type,
                enabled=update.enabled,
            ))
        else:
            preference.enabled = update.enabled
            preference.updated_at = utcnow()
    await db.commit()
    logger.info("Notification preferences updated", user_id=str(user_id))


async def queue_notification_for_users(
    store: SqlNotificationStore,
    db: AsyncSession,
    user_ids: Iterable[UUID],
    channel: NotificationChannel,
    event_type: str,
    template: Dict[str, Any],
    data: Optional[Dict[str, Any]] = None,
) -> List[UUID]:
    """Render ``template`` per user and queue it for everyone who has the channel/event enabled."""
    channel = NotificationChannel(channel)
    notification_ids = []
    for user_id in user_ids:
        if not await is_notification_enabled(db, user_id, channel, event_type):
            logger.debug("Notification disabled by preference", user_id=str(user_id), channel=channel.value, event_type=event_type)
            continue

        user = await get_user_details_from_user_management(user_id)
        if not user:
            logger.warning("User not found, notification not queued", user_id=str(user_id), event_type=event_type)
            continue

        recipient = resolve_recipient(channel, user_id, user)
        if not recipient:
            logger.warning("User has no address for channel", user_id=str(user_id), channel=channel.value)
            continue

        rendered = render_notification(template, {
            **(data or {}),
            "user": user,
            "userId": str(user_id),
            "userEmail": user.get("email"),
        })
        notification_ids.append(await store.enqueue(
            channel=channel,
            event_type=event_type,
            recipient=recipient,
            subject=rendered["subject"],
            content=rendered["content"],
            metadata=rendered["metadata"],
            user_id=user_id,
        ))
    return notification_ids


async def queue_event_for_users(
    store: SqlNotificationStore,
    db: AsyncSession,
    event_type: str,
    channels: Iterable[NotificationChannel],
    user_ids: List[UUID],
    data: Optional[Dict[str, Any]] = None,
) -> List[UUID]:
    """Queue ``event_type`` on each channel with that channel's stored template."""
    notification_ids = []
    for channel in channels:
        template = get_notification_template(event_type, channel)
        notification_ids.extend(
            await queue_notification_for_users(store, db, user_ids, channel, event_type, template, data)
        )
    logger.info("Templated event queued", event_type=event_type, users=len(user_ids), queued=len(notification_ids))
    return notification_ids


async def _enabled_channels_for(db: AsyncSession, user_id: UUID, event_type: str) -> List[NotificationChannel]:
    result = await db.execute(
        select(UserNotificationPreference).filter(
            UserNotificationPreference.user_id == user_id,
            UserNotificationPreference.event_type == event_type,
        )
    )
    preferences = result.scalars().all()
    if preferences:
        return [NotificationChannel(p.channel) for p in preferences if p.enabled]
    defaults = [channel for channel in NotificationChannel if default_preference(channel, event_type)]
    return defaults or [NotificationChannel.IN_APP]


async def send_notification_to_user(
    store: SqlNotificationStore,
    db: AsyncSession,
    user_id: UUID,
    event_type: str,
    title: str,
    content: str,
    metadata: Optional[Dict[str, Any]] = None,
    channels: Optional[List[NotificationChannel]] = None,
) -> List[UUID]:
    """Fan one event out to every channel the user has enabled for it."""
    user = await get_user_details_from_user_management(user_id)
    if not user:
        logger.error("User not found for notification", user_id=str(user_id), event_type=event_type)
        return []

    if channels is None:
        channels = await _enabled_channels_for(db, user_id, event_type)
    notification_ids = []
    for channel in channels:
        channel = NotificationChannel(channel)
        if channel == NotificationChannel.WEBHOOK:
            notification_ids.extend(await _queue_user_webhooks(store, db, user_id, user, event_type, title, content, metadata))
            continue

        recipient = resolve_recipient(channel, user_id, user)
        if not recipient:
            logger.warning("User has no address for channel", user_id=str(user_id), channel=channel.value)
            continue
        notification_ids.append(await store.enqueue(
            channel=channel,
            event_type=event_type,
            recipient=recipient,
            subject=title,
            content=content,
            metadata=metadata,
            user_id=user_id,
        ))

    logger.info("Notification fanned out to user", user_id=str(user_id), event_type=event_type, queued=len(notification_ids))
    return notification_ids


async def _queue_user_webhooks(
    store: SqlNotificationStore,
    db: AsyncSession,
    user_id: UUID,
    user: Dict[str, Any],
    event_type: str,
    title: str,
    content: str,
    metadata: Optional[Dict[str, Any]],
) -> List[UUID]:
    destinations = await get_webhooks_for_event(db, event_type, created_by=user_id, data=metadata)
    notification_ids = []
    for destination in destinations:
        data = {
            "user": {"id": str(user_id), "email": user.get("email"), "name": user.get("name")},
            "notification": {"title": title, "content": content, "metadata": metadata},
            "webhook": {"id": str(destination.id), "name": destination.name},
        }
        notification_ids.append(await store.enqueue(
            channel=NotificationChannel.WEBHOOK,
            event_type=event_type,
            recipient=destination.url,
            subject=title,
            content=content,
            metadata={"webhook_id": str(destination.id), "data": data},
            user_id=user_id,
            max_attempts=destination.retry_attempts,
        ))
    return notification_ids


async def queue_webhook_event(
    store: SqlNotificationStore,
    db: AsyncSession,
    event_type: str,
    data: Dict[str, Any],
    title: Optional[str] = None,
    content: Optional[str] = None,
) -> List[UUID]:
    """System-wide event: one WEBHOOK record per enabled destination subscribed to ``event_type``."""
    destinations = await get_webhooks_for_event(db, event_type, data=data)
    if not destinations:
        logger.info("No webhooks subscribed to event", event_type=event_type)
        return []

    notification_ids = []
    for destination in destinations:
        payload = dict(data)
        if title or content:
            payload["notification"] = {"title": title, "content": content}
        payload["webhook"] = {"id": str(destination.id), "name": destination.name}
        payload["system"] = True
        notification_ids.append(await store.enqueue(
            channel=NotificationChannel.WEBHOOK,
            event_type=event_type,
            recipient=destination.url,
            subject=title,
            content=content or json.dumps(data, default=str),
            metadata={"webhook_id": str(destination.id), "data": payload},
            max_attempts=destination.retry_attempts,
        ))
    logger.info("Webhook event queued", event_type=event_type, destinations=len(notification_ids))
    return notification_ids


async def get_notification_stats(store: SqlNotificationStore) -> dict:
    """
    Retrieves aggregated statistics about notifications.
    """
    logger.info("Fetching notification stats")
    stats = await store.stats()
    logger.info(
        "Notification stats retrieved",
        total_notifications=stats["total_notifications"],
        total_sent=stats["total_sent"],
        total_failed=stats["total_failed"],
        total_pending=stats["total_pending"],
    )
    return stats


async def cleanup_notifications(store: SqlNotificationStore, retention_days: int) -> Dict[str, int]:
    purged = await store.purge_finished(utcnow() - timedelta(days=retention_days))
    orphaned = await store.purge_orphaned_in_app()
    return {"purged": purged, "orphaned_in_app": orphaned}
