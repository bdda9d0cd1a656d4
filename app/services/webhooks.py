"""
Webhook destinations: CRUD, subscription lookup, and the signed outbound request.
"""
import asyncio
import base64
import json
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode
from uuid import UUID

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from app.config import settings
from app.core.errors import DestinationNotFoundError
from app.core.logging import logger
from app.models.base import utcnow
from app.models.webhook import WebhookDestination
from app.schemas.webhook import WebhookCreate, WebhookUpdate
from app.services.channels.base import DeliveryResult, describe_http_error, response_payload
from app.services.webhook_templates import build_payload, detect_template_from_url, provider_test_payload
from app.utils.signing import SIGNATURE_HEADER, TIMESTAMP_HEADER, sign_payload

JSON_CONTENT_TYPE = "application/json"
TEST_EVENT = "webhook.test"
EVENT_HEADER = "X-Webhook-Event"


def _auth_headers(destination: WebhookDestination) -> Dict[str, str]:
    if destination.auth_type == "bearer" and destination.auth_token:
        return {"Authorization": f"Bearer {destination.auth_token}"}
    if destination.auth_type == "api_key" and destination.auth_token and destination.auth_header_name:
        return {destination.auth_header_name: destination.auth_token}
    if destination.auth_type == "basic" and destination.auth_username and destination.auth_password:
        credentials = base64.b64encode(
            f"{destination.auth_username}:{destination.auth_password}".encode("utf-8")
        ).decode("ascii")
        return {"Authorization": f"Basic {credentials}"}
    return {}


def encode_body(destination: WebhookDestination, payload: Any) -> bytes:
    serialized = json.dumps(payload, separators=(",", ":"), default=str)
    if (destination.content_type or JSON_CONTENT_TYPE).startswith(JSON_CONTENT_TYPE):
        return serialized.encode("utf-8")
    return urlencode({"payload": serialized}).encode("utf-8")


def build_webhook_request(
    destination: WebhookDestination,
    payload: Any,
    timestamp: Optional[int] = None,
    event_type: Optional[str] = None,
) -> Tuple[Dict[str, str], bytes]:
    """Headers and the exact body bytes that get signed and sent."""
    body = encode_body(destination, payload)
    headers = {
        "Content-Type": destination.content_type or JSON_CONTENT_TYPE,
        "User-Agent": settings.WEBHOOK_USER_AGENT,
    }
    if event_type:
        headers[EVENT_HEADER] = event_type
    headers.update(_auth_headers(destination))
    headers.update(destination.custom_headers or {})
    if destination.secret:
        headers[SIGNATURE_HEADER] = sign_payload(destination.secret, body)
    headers[TIMESTAMP_HEADER] = str(timestamp if timestamp is not None else int(time.time()))
    return headers, body


async def deliver_webhook(
    destination: WebhookDestination,
    payload: Any,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timestamp: Optional[int] = None,
    event_type: Optional[str] = None,
) -> DeliveryResult:
    """Send one signed request. The destination's timeout bounds the whole exchange."""
    headers, body = build_webhook_request(destination, payload, timestamp, event_type)
    try:
        async with httpx.AsyncClient(timeout=destination.timeout, transport=transport) as client:
            response = await asyncio.wait_for(
                client.request(destination.method or "POST", destination.url, headers=headers, content=body),
                timeout=destination.timeout,
            )
    except (httpx.TimeoutException, asyncio.TimeoutError):
        logger.warning("Webhook timed out", webhook_id=str(destination.id), timeout=destination.timeout)
        return DeliveryResult.failed(f"Webhook timed out after {destination.timeout}s")
    except httpx.HTTPError as e:
        logger.warning("Webhook request failed", webhook_id=str(destination.id), error=str(e))
        return DeliveryResult.failed(f"Webhook request failed: {e}")

    if not response.is_success:
        logger.warning("Webhook rejected", webhook_id=str(destination.id), status_code=response.status_code)
        return DeliveryResult.failed(describe_http_error(response), **response_payload(response))
    return DeliveryResult.ok(webhook_id=str(destination.id), **response_payload(response))


async def create_webhook(db: AsyncSession, data: WebhookCreate, created_by: Optional[UUID] = None) -> WebhookDestination:
    values = data.model_dump()
    values["url"] = str(data.url)
    destination = WebhookDestination(**values, created_by=created_by)
    db.add(destination)
    await db.commit()
    await db.refresh(destination)
    logger.info("Webhook destination created", webhook_id=str(destination.id), name=destination.name)
    return destination


async def get_webhook(db: AsyncSession, webhook_id: UUID) -> Optional[WebhookDestination]:
    result = await db.execute(select(WebhookDestination).filter(WebhookDestination.id == webhook_id))
    return result.scalar_one_or_none()


async def list_webhooks(db: AsyncSession, enabled_only: bool = False) -> List[WebhookDestination]:
    query = select(WebhookDestination).order_by(WebhookDestination.created_at.desc())
    if enabled_only:
        query = query.filter(WebhookDestination.is_enabled.is_(True))
    result = await db.execute(query)
    return list(result.scalars().all())


async def update_webhook(db: AsyncSession, webhook_id: UUID, data: WebhookUpdate) -> WebhookDestination:
    destination = await get_webhook(db, webhook_id)
    if destination is None:
        raise DestinationNotFoundError(webhook_id)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(destination, field, str(value) if field == "url" and value is not None else value)
    await db.commit()
    await db.refresh(destination)
    logger.info("Webhook destination updated", webhook_id=str(webhook_id))
    return destination


async def delete_webhook(db: AsyncSession, webhook_id: UUID) -> None:
    destination = await get_webhook(db, webhook_id)
    if destination is None:
        raise DestinationNotFoundError(webhook_id)
    await db.delete(destination)
    await db.commit()
    logger.info("Webhook destination deleted", webhook_id=str(webhook_id))


async def get_webhooks_for_event(
    db: AsyncSession,
    event_type: str,
    created_by: Optional[UUID] = None,
    data: Optional[Dict[str, Any]] = None,
) -> List[WebhookDestination]:
    """
    Enabled destinations subscribed to ``event_type`` whose event filters match
    ``data``; optionally only those owned by one user.
    """
    query = select(WebhookDestination).filter(WebhookDestination.is_enabled.is_(True))
    if created_by is not None:
        query = query.filter(WebhookDestination.created_by == created_by)
    result = await db.execute(query)
    # enabled_events and event_filters are JSON; matched in Python on every backend
    return [destination for destination in result.scalars().all() if destination.subscribes_to(event_type, data)]


async def record_delivery_stats(db: AsyncSession, webhook_id: UUID, success: bool) -> None:
    now = utcnow()
    if success:
        values = {
            "success_count": WebhookDestination.success_count + 1,
            "last_triggered": now,
            "updated_at": now,
        }
    else:
        values = {"failure_count": WebhookDestination.failure_count + 1, "updated_at": now}
    await db.execute(
        update(WebhookDestination)
        .where(WebhookDestination.id == webhook_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def send_test_webhook(
    db: AsyncSession, webhook_id: UUID, transport: Optional[httpx.AsyncBaseTransport] = None
) -> DeliveryResult:
    """
    Send a ``webhook.test`` event right away, bypassing the queue and the rate limiter.

    The destination's own payload template wins; otherwise Discord, Teams and
    Slack URLs get a message in that provider's format.
    """
    destination = await get_webhook(db, webhook_id)
    if destination is None:
        raise DestinationNotFoundError(webhook_id)
    message = f"This is a test webhook from {settings.APP_NAME}"
    data = {
        "message": message,
        "test_mode": True,
        "webhook_id": str(destination.id),
        "webhook_name": destination.name,
    }
    template_id = detect_template_from_url(destination.url)
    payload = None if destination.payload_template else provider_test_payload(template_id, TEST_EVENT, message)
    if payload is None:
        payload = build_payload(destination, TEST_EVENT, int(time.time()), data)
    result = await deliver_webhook(destination, payload, transport=transport, event_type=TEST_EVENT)
    logger.info("Webhook test sent", webhook_id=str(webhook_id), template=template_id, success=result.success)
    return result
