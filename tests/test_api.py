import json
import pytest
from uuid import uuid4

import httpx
from httpx import ASGITransport, AsyncClient

from app.database import get_db
from app.dependencies.auth import get_current_user
from app.main import app
from app.models.notification import NotificationChannel, NotificationStatus
from app.services.channels.registry import ChannelHandlerRegistry
from app.services.dispatcher import NotificationDispatcher
from tests.conftest import ScriptedHandler

ADMIN = {"user_id": str(uuid4()), "role": "Admin"}
INTERNAL = {"user_id": str(uuid4()), "role": "Internal"}
TENANT = {"user_id": str(uuid4()), "role": "Tenant"}


@pytest.fixture
def current_user():
    return dict(ADMIN)


@pytest.fixture
async def client(store, session_factory, clock, current_user):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: current_user
    registry = ChannelHandlerRegistry({NotificationChannel.EMAIL: ScriptedHandler()})
    app.state.store = store
    app.state.dispatcher = NotificationDispatcher(store, registry, clock=clock)
    app.state.http_transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    del app.state.http_transport


EMAIL_NOTIFICATION = {
    "channel": "EMAIL",
    "event_type": "user.password_reset",
    "recipient": "test@example.com",
    "subject": "Password reset",
    "content": "Use code 1234",
}


@pytest.mark.asyncio
async def test_enqueue_and_fetch_notification(client):
    response = await client.post("/api/v1/notifications", json=EMAIL_NOTIFICATION)
    assert response.status_code == 202
    notification_id = response.json()["ids"][0]

    response = await client.get(f"/api/v1/notifications/{notification_id}")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "PENDING"
    assert body["channel"] == "EMAIL"
    assert body["attempts"] == 0


@pytest.mark.asyncio
async def test_enqueue_validates_channel_and_attempts(client):
    response = await client.post("/api/v1/notifications", json={**EMAIL_NOTIFICATION, "channel": "FAX"})
    assert response.status_code == 422
    response = await client.post("/api/v1/notifications", json={**EMAIL_NOTIFICATION, "max_attempts": 0})
    assert response.status_code == 422


@pytest.mark.asyncio
@pytest.mark.parametrize("current_user", [INTERNAL])
async def test_internal_services_may_enqueue_but_not_list(client):
    assert (await client.post("/api/v1/notifications", json=EMAIL_NOTIFICATION)).status_code == 202
    assert (await client.get("/api/v1/notifications")).status_code == 403


@pytest.mark.asyncio
@pytest.mark.parametrize("current_user", [TENANT])
async def test_other_roles_are_forbidden(client):
    assert (await client.post("/api/v1/notifications", json=EMAIL_NOTIFICATION)).status_code == 403
    assert (await client.get("/api/v1/webhooks")).status_code == 403


@pytest.mark.asyncio
async def test_unknown_notification_is_404(client):
    response = await client.get(f"/api/v1/notifications/{uuid4()}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_process_endpoint_runs_a_cycle(client, store):
    await client.post("/api/v1/notifications", json=EMAIL_NOTIFICATION)

    response = await client.post("/api/v1/notifications/process")
    assert response.status_code == 200
    assert response.json()["sent"] == 1

    listed = await client.get("/api/v1/notifications", params={"status": "SENT"})
    assert [n["status"] for n in listed.json()] == ["SENT"]

    history = await client.get("/api/v1/notifications/history")
    assert [h["status"] for h in history.json()] == ["SENT"]

    processor = await client.get("/api/v1/notifications/processor")
    assert processor.json()["is_running"] is False
    assert processor.json()["last_run"]["sent"] == 1


@pytest.mark.asyncio
async def test_stats_endpoint(client, store):
    await store.enqueue(channel=NotificationChannel.SMS, event_type="a", recipient="+1", content="x")
    sent = await store.enqueue(channel=NotificationChannel.EMAIL, event_type="a", recipient="x", content="x")
    await store.update_status(sent, status=NotificationStatus.SENT)

    response = await client.get("/api/v1/notifications/stats")

    assert response.status_code == 200
    body = response.json()
    assert body["total_notifications"] == 2
    assert body["total_sent"] == 1
    assert body["by_channel"] == {"EMAIL": 1, "SMS": 1}


@pytest.mark.asyncio
async def test_preferences_round_trip(client):
    user_id = uuid4()
    response = await client.get(f"/api/v1/notifications/users/{user_id}/preferences")
    assert response.json()["EMAIL"]["user.password_reset"] is True

    response = await client.put(
        f"/api/v1/notifications/users/{user_id}/preferences",
        json=[{"channel": "EMAIL", "event_type": "user.password_reset", "enabled": False}],
    )
    assert response.status_code == 200
    assert response.json()["EMAIL"]["user.password_reset"] is False


@pytest.mark.asyncio
async def test_notify_user_endpoint(client, mock_user_lookup):
    response = await client.post(
        f"/api/v1/notifications/users/{uuid4()}",
        json={"event_type": "custom.event", "title": "Hello", "content": "World"},
    )
    assert response.status_code == 202
    assert len(response.json()["ids"]) == 1


@pytest.mark.asyncio
async def test_templated_event_endpoint_renders_stored_templates(client, mock_user_lookup):
    response = await client.post("/api/v1/notifications/events", json={
        "event_type": "user.password_reset",
        "user_ids": [str(uuid4())],
        "channels": ["EMAIL", "SMS"],
        "data": {"resetUrl": "https://app.example.com/reset/abc", "resetCode": "4821"},
    })

    assert response.status_code == 202
    ids = response.json()["ids"]
    assert len(ids) == 2
    email, sms = [(await client.get(f"/api/v1/notifications/{i}")).json() for i in ids]
    assert email["subject"] == "Password reset requested"
    assert email["content"].startswith("Hello Test User,")
    assert "https://app.example.com/reset/abc" in email["content"]
    assert sms["recipient"] == "+251911123456"
    assert sms["content"] == "Your password reset code is 4821"


@pytest.mark.asyncio
async def test_templated_event_endpoint_validation(client):
    body = {"event_type": "user.registered", "user_ids": [str(uuid4())], "channels": ["EMAIL"]}
    response = await client.post("/api/v1/notifications/events", json={**body, "channels": ["WEBHOOK"]})
    assert response.status_code == 422
    response = await client.post("/api/v1/notifications/events", json={**body, "user_ids": []})
    assert response.status_code == 422


WEBHOOK = {
    "name": "Partner",
    "url": "https://hooks.example.com/notify",
    "secret": "s3cret",
    "auth_type": "bearer",
    "auth_token": "tok",
    "enabled_events": ["contribution.approved"],
}


@pytest.mark.asyncio
async def test_webhook_crud_endpoints(client):
    response = await client.post("/api/v1/webhooks", json=WEBHOOK)
    assert response.status_code == 201
    created = response.json()
    assert created["has_secret"] is True
    assert "secret" not in created and "auth_token" not in created
    assert "retry_delay" not in created
    assert created["created_by"] == ADMIN["user_id"]

    response = await client.patch(f"/api/v1/webhooks/{created['id']}", json={"rate_limit_per_minute": 5})
    assert response.json()["rate_limit_per_minute"] == 5

    assert len((await client.get("/api/v1/webhooks")).json()) == 1

    response = await client.post(f"/api/v1/webhooks/{created['id']}/test")
    assert response.json()["success"] is True
    assert response.json()["status_code"] == 200

    assert (await client.delete(f"/api/v1/webhooks/{created['id']}")).status_code == 204
    assert (await client.get(f"/api/v1/webhooks/{created['id']}")).status_code == 404
    assert (await client.delete(f"/api/v1/webhooks/{created['id']}")).status_code == 404


@pytest.mark.asyncio
async def test_webhook_validation(client):
    response = await client.post("/api/v1/webhooks", json={**WEBHOOK, "auth_type": "digest"})
    assert response.status_code == 422
    response = await client.post("/api/v1/webhooks", json={**WEBHOOK, "url": "not a url"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_webhook_event_endpoint(client):
    await client.post("/api/v1/webhooks", json=WEBHOOK)

    response = await client.post(
        "/api/v1/notifications/webhook-events",
        json={"event_type": "contribution.approved", "data": {"contributionId": 1}},
    )

    assert response.status_code == 202
    assert len(response.json()["ids"]) == 1
    notification = (await client.get(f"/api/v1/notifications/{response.json()['ids'][0]}")).json()
    assert notification["channel"] == "WEBHOOK"
    assert json.loads(notification["content"]) == {"contributionId": 1}


@pytest.mark.asyncio
async def test_cleanup_endpoint(client):
    response = await client.post("/api/v1/notifications/cleanup", params={"retention_days": 30})
    assert response.status_code == 200
    assert response.json() == {"purged": 0, "orphaned_in_app": 0}


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.json() == {"status": "ok", "processor_running": False}
