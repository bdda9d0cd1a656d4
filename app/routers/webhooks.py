from fastapi import APIRouter, Depends, HTTPException, status
from uuid import UUID
from typing import List
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DestinationNotFoundError
from app.database import get_db
from app.dependencies.auth import get_admin_user
from app.dependencies.services import get_http_transport
from app.schemas.webhook import WebhookCreate, WebhookResponse, WebhookTestResponse, WebhookUpdate
from app.services.webhooks import (
    create_webhook,
    delete_webhook,
    get_webhook,
    list_webhooks,
    send_test_webhook,
    update_webhook,
)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


def _not_found(e: DestinationNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("", response_model=List[WebhookResponse])
async def list_webhooks_endpoint(current_user: dict = Depends(get_admin_user), db: AsyncSession = Depends(get_db)):
    return [WebhookResponse.from_destination(destination) for destination in await list_webhooks(db)]


@router.post("", response_model=WebhookResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook_endpoint(
    webhook: WebhookCreate,
    current_user: dict = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    created_by = current_user.get("user_id")
    destination = await create_webhook(db, webhook, created_by=UUID(str(created_by)) if created_by else None)
    return WebhookResponse.from_destination(destination)


@router.get("/{id}", response_model=WebhookResponse)
async def get_webhook_endpoint(id: UUID, current_user: dict = Depends(get_admin_user), db: AsyncSession = Depends(get_db)):
    destination = await get_webhook(db, id)
    if destination is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")
    return WebhookResponse.from_destination(destination)


@router.patch("/{id}", response_model=WebhookResponse)
async def update_webhook_endpoint(
    id: UUID,
    webhook: WebhookUpdate,
    current_user: dict = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        destination = await update_webhook(db, id, webhook)
    except DestinationNotFoundError as e:
        raise _not_found(e)
    return WebhookResponse.from_destination(destination)


@router.delete("/{id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook_endpoint(id: UUID, current_user: dict = Depends(get_admin_user), db: AsyncSession = Depends(get_db)):
    try:
        await delete_webhook(db, id)
    except DestinationNotFoundError as e:
        raise _not_found(e)


@router.post("/{id}/test", response_model=WebhookTestResponse)
async def test_webhook_endpoint(
    id: UUID,
    current_user: dict = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
    transport=Depends(get_http_transport),
):
    """Send a webhook.test event immediately, outside the queue."""
    try:
        result = await send_test_webhook(db, id, transport=transport)
    except DestinationNotFoundError as e:
        raise _not_found(e)
    return WebhookTestResponse(
        success=result.success,
        status_code=result.response.get("status"),
        response=result.response,
        error=result.error,
    )
