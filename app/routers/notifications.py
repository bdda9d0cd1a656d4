from fastapi import APIRouter, Depends, HTTPException, status, Query, Request, Response
from uuid import UUID
from typing import Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter

from app.config import settings
from app.core.logging import logger
from app.database import get_db
from app.dependencies.auth import get_admin_or_internal_user, get_admin_user
from app.dependencies.services import get_dispatcher, get_store
from app.schemas.notification import (
    DispatchStatsResponse,
    EnqueueResponse,
    HistoryEntryResponse,
    NotificationCreate,
    NotificationResponse,
    NotificationStatsResponse,
    PreferenceUpdate,
    ProcessorStatusResponse,
    TemplatedEventRequest,
    UserNotificationRequest,
    WebhookEventRequest,
)
from app.services.dispatcher import NotificationDispatcher
from app.services.notification import (
    cleanup_notifications,
    get_notification_stats,
    get_preferences_matrix,
    queue_event_for_users,
    queue_notification,
    queue_webhook_event,
    send_notification_to_user,
    update_preferences,
)
from app.services.store import SqlNotificationStore

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


async def rate_limit_callback(request: Request, response: Response, pexpire: int):
    """Custom callback for rate limit exceeded."""
    client_ip = request.client.host if request.client else "unknown"
    logger.warning("Rate limit exceeded", ip=client_ip, path=request.url.path, retry_after_ms=pexpire)
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Too Many Requests",
        headers={"Retry-After": str(-(-pexpire // 1000))},
    )


_enqueue_limiter = RateLimiter(
    times=settings.API_RATE_LIMIT_TIMES,
    seconds=settings.API_RATE_LIMIT_SECONDS,
    callback=rate_limit_callback,
)


async def enqueue_rate_limit(request: Request, response: Response):
    # Limiting needs Redis; skipped while it is unavailable
    if FastAPILimiter.redis is None:
        return
    await _enqueue_limiter(request, response)


@router.post("", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED,
             dependencies=[Depends(enqueue_rate_limit)])
async def enqueue_notification_endpoint(
    notification: NotificationCreate,
    current_user: dict = Depends(get_admin_or_internal_user),
    store: SqlNotificationStore = Depends(get_store),
):
    """Queue a pre-rendered notification for delivery."""
    notification_id = await queue_notification(store, notification)
    return EnqueueResponse(ids=[notification_id])


@router.post("/users/{user_id}", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED,
             dependencies=[Depends(enqueue_rate_limit)])
async def notify_user_endpoint(
    user_id: UUID,
    request: UserNotificationRequest,
    current_user: dict = Depends(get_admin_or_internal_user),
    store: SqlNotificationStore = Depends(get_store),
    db: AsyncSession = Depends(get_db),
):
    """Fan an event out to every channel the user has enabled for it."""
    ids = await send_notification_to_user(
        store, db, user_id, request.event_type, request.title, request.content,
        metadata=request.metadata, channels=request.channels,
    )
    return EnqueueResponse(ids=ids)


@router.post("/events", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED,
             dependencies=[Depends(enqueue_rate_limit)])
async def templated_event_endpoint(
    event: TemplatedEventRequest,
    current_user: dict = Depends(get_admin_or_internal_user),
    store: SqlNotificationStore = Depends(get_store),
    db: AsyncSession = Depends(get_db),
):
    """Render the event's stored template per user and channel, then queue it."""
    ids = await queue_event_for_users(store, db, event.event_type, event.channels, event.user_ids, event.data)
    return EnqueueResponse(ids=ids)


@router.post("/webhook-events", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED,
             dependencies=[Depends(enqueue_rate_limit)])
async def webhook_event_endpoint(
    event: WebhookEventRequest,
    current_user: dict = Depends(get_admin_or_internal_user),
    store: SqlNotificationStore = Depends(get_store),
    db: AsyncSession = Depends(get_db),
):
    """Queue a system event for every webhook destination subscribed to it."""
    ids = await queue_webhook_event(store, db, event.event_type, event.data, title=event.title, content=event.content)
    return EnqueueResponse(ids=ids)


@router.get("", response_model=List[NotificationResponse])
async def get_notifications(
    current_user: dict = Depends(get_admin_user),
    store: SqlNotificationStore = Depends(get_store),
    status_filter: Optional[str] = Query(None, alias="status"),
    channel: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    user_id: Optional[UUID] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Retrieve queued notifications, newest first, with optional filters."""
    records = await store.list_notifications(
        status=status_filter, channel=channel, event_type=event_type, user_id=user_id, limit=limit, offset=offset
    )
    return [NotificationResponse.model_validate(record) for record in records]


@router.get("/stats", response_model=NotificationStatsResponse)
async def get_notifications_stats(
    current_user: dict = Depends(get_admin_user),
    store: SqlNotificationStore = Depends(get_store),
):
    """Retrieve aggregated statistics about notifications."""
    stats = await get_notification_stats(store)
    return NotificationStatsResponse.model_validate(stats)


@router.get("/history", response_model=List[HistoryEntryResponse])
async def get_history(
    current_user: dict = Depends(get_admin_user),
    store: SqlNotificationStore = Depends(get_store),
    queue_id: Optional[UUID] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    channel: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Delivery audit log: one entry per terminal attempt."""
    entries = await store.list_history(queue_id=queue_id, status=status_filter, channel=channel, limit=limit, offset=offset)
    return [HistoryEntryResponse.model_validate(entry) for entry in entries]


@router.post("/process", response_model=DispatchStatsResponse)
async def process_notifications_endpoint(
    current_user: dict = Depends(get_admin_or_internal_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    batch_size: Optional[int] = Query(None, ge=1, le=500),
):
    """Run one dispatch cycle now instead of waiting for the next tick."""
    stats = await dispatcher.run_once(batch_size)
    return DispatchStatsResponse.model_validate(stats)


@router.get("/processor", response_model=ProcessorStatusResponse)
async def processor_status_endpoint(
    current_user: dict = Depends(get_admin_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return ProcessorStatusResponse.model_validate(dispatcher.status())


@router.post("/cleanup")
async def cleanup_endpoint(
    current_user: dict = Depends(get_admin_user),
    store: SqlNotificationStore = Depends(get_store),
    retention_days: int = Query(settings.RETENTION_DAYS, ge=1),
) -> Dict[str, int]:
    """Delete finished queue rows past retention and undeliverable in-app rows. History is kept."""
    return await cleanup_notifications(store, retention_days)


@router.get("/users/{user_id}/preferences")
async def get_preferences_endpoint(
    user_id: UUID,
    current_user: dict = Depends(get_admin_or_internal_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Dict[str, bool]]:
    return await get_preferences_matrix(db, user_id)


@router.put("/users/{user_id}/preferences")
async def update_preferences_endpoint(
    user_id: UUID,
    updates: List[PreferenceUpdate],
    current_user: dict = Depends(get_admin_or_internal_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Dict[str, bool]]:
    await update_preferences(db, user_id, updates)
    return await get_preferences_matrix(db, user_id)


@router.get("/{id}", response_model=NotificationResponse)
async def get_notification(
    id: UUID,
    current_user: dict = Depends(get_admin_user),
    store: SqlNotificationStore = Depends(get_store),
):
    """Retrieve details of a specific notification by ID."""
    notification = await store.get(id)
    if not notification:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return NotificationResponse.model_validate(notification)
