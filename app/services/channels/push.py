import time
from datetime import datetime, timezone
from typing import Any, Dict
from urllib.parse import urlparse

import httpx
from jose import JWTError, jwt

from app.core.errors import ChannelConfigurationError
from app.core.logging import logger
from app.models.notification import NotificationChannel
from app.services.channels.base import (
    ChannelHandler,
    DeliveryResult,
    NotificationRecord,
    describe_http_error,
    response_payload,
)
from app.services.settings_store import is_truthy

PUSHBULLET_URL = "https://api.pushbullet.com/v2/pushes"
FCM_LEGACY_URL = "https://fcm.googleapis.com/fcm/send"
APNS_HOSTS = {
    "production": "https://api.push.apple.com",
    "sandbox": "https://api.sandbox.push.apple.com",
}
WEB_PUSH_TTL_SECONDS = 86400


class GenericPushHandler(ChannelHandler):
    """Self-hosted Gotify when switched on, otherwise Pushbullet."""

    channel = NotificationChannel.PUSH_GENERIC

    async def _gotify_enabled(self) -> bool:
        return is_truthy(await self.settings.get_setting("GOTIFY", "gotify_enabled"))

    async def is_enabled(self) -> bool:
        if await self._gotify_enabled():
            return True
        return is_truthy(await self.settings.get_setting("PUSHBULLET", "pushbullet_enabled"))

    async def send(self, record: NotificationRecord) -> DeliveryResult:
        if await self._gotify_enabled():
            return await self._send_gotify(record)
        return await self._send_pushbullet(record)

    async def _send_gotify(self, record: NotificationRecord) -> DeliveryResult:
        server_url = await self.require_setting("gotify_server_url", "GOTIFY")
        app_token = await self.require_setting("gotify_app_token", "GOTIFY")
        priority = int(await self.setting("gotify_priority", "GOTIFY") or 5)
        result = await self.post_json(
            f"{server_url.rstrip('/')}/message",
            {"title": record.title, "message": record.content, "priority": priority},
            params={"token": app_token},
        )
        if result.success:
            result.response["provider"] = "gotify"
        return result

    async def _send_pushbullet(self, record: NotificationRecord) -> DeliveryResult:
        access_token = await self.require_setting("pushbullet_access_token", "PUSHBULLET")
        payload = {"type": "note", "title": record.title, "body": record.content}
        device_iden = await self.setting("pushbullet_device_iden", "PUSHBULLET")
        if device_iden:
            payload["device_iden"] = device_iden
        result = await self.post_json(PUSHBULLET_URL, payload, headers={"Access-Token": access_token})
        if result.success:
            result.response["provider"] = "pushbullet"
        return result


class FCMHandler(ChannelHandler):
    channel = NotificationChannel.PUSH_FCM
    category = "FCM"
    enabled_key = "fcm_enabled"

    async def send(self, record: NotificationRecord) -> DeliveryResult:
        server_key = await self.require_setting("fcm_server_key")
        token = record.metadata.get("fcmToken") or record.recipient
        if not token:
            raise ChannelConfigurationError(self.channel.value, "FCM token not provided")

        payload = {
            "to": token,
            "notification": {
                "title": record.title,
                "body": record.content,
                "click_action": record.metadata.get("clickAction", "/"),
            },
            "data": {
                "eventType": record.event_type,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **(record.metadata.get("data") or {}),
            },
        }
        result = await self.post_json(FCM_LEGACY_URL, payload, headers={"Authorization": f"key={server_key}"})
        if not result.success:
            return result

        body = result.response.get("body")
        # Per-token failures come back with HTTP 200
        if isinstance(body, dict) and body.get("failure", 0) > 0:
            return DeliveryResult.failed(f"FCM delivery failed: {body.get('results')}", **result.response)
        message_id = (body.get("results") or [{}])[0].get("message_id") if isinstance(body, dict) else None
        return DeliveryResult.ok(message_id=message_id, **result.response)


class APNsHandler(ChannelHandler):
    channel = NotificationChannel.PUSH_APNS
    category = "APNS"
    enabled_key = "apns_enabled"

    async def provider_token(self) -> str:
        key_id = await self.require_setting("apns_key_id")
        team_id = await self.require_setting("apns_team_id")
        private_key = await self.require_setting("apns_private_key")
        try:
            return jwt.encode(
                {"iss": team_id, "iat": int(time.time())},
                private_key,
                algorithm="ES256",
                headers={"kid": key_id},
            )
        except JWTError as e:
            raise ChannelConfigurationError(self.channel.value, f"Invalid APNs signing key: {e}")

    async def send(self, record: NotificationRecord) -> DeliveryResult:
        bundle_id = await self.require_setting("apns_bundle_id")
        environment = (await self.setting("apns_environment") or "production").lower()
        token = record.metadata.get("deviceToken") or record.recipient
        if not token:
            raise ChannelConfigurationError(self.channel.value, "APNs device token not provided")

        payload: Dict[str, Any] = {
            "aps": {
                "alert": {"title": record.title, "body": record.content},
                "badge": record.metadata.get("badge", 1),
                "sound": record.metadata.get("sound", "default"),
            },
            "eventType": record.event_type,
        }
        headers = {
            "authorization": f"bearer {await self.provider_token()}",
            "apns-topic": bundle_id,
            "apns-push-type": "alert",
        }
        url = f"{APNS_HOSTS.get(environment, APNS_HOSTS['production'])}/3/device/{token}"

        try:
            async with self.http_client(http2=True) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            return DeliveryResult.failed(f"APNs request failed: {e}")

        if not response.is_success:
            logger.warning("APNs rejected push", status_code=response.status_code, notification_id=str(record.id))
            return DeliveryResult.failed(describe_http_error(response), **response_payload(response))
        return DeliveryResult.ok(status=response.status_code, apns_id=response.headers.get("apns-id"))


class WebPushHandler(ChannelHandler):
    """
    Payload-less Web Push with VAPID authentication.

    The push message carries no body; the service worker fetches the user's
    unread in-app notifications when woken up.
    """

    channel = NotificationChannel.PUSH_WEB
    category = "WEB_PUSH"
    enabled_key = "web_push_enabled"

    async def vapid_headers(self, endpoint: str) -> Dict[str, str]:
        public_key = await self.require_setting("vapid_public_key")
        private_key = await self.require_setting("vapid_private_key")
        subject = await self.require_setting("vapid_subject")
        parsed = urlparse(endpoint)
        claims = {
            "aud": f"{parsed.scheme}://{parsed.netloc}",
            "exp": int(time.time()) + 12 * 3600,
            "sub": subject,
        }
        try:
            token = jwt.encode(claims, private_key, algorithm="ES256")
        except JWTError as e:
            raise ChannelConfigurationError(self.channel.value, f"Invalid VAPID private key: {e}")
        return {"Authorization": f"vapid t={token}, k={public_key}", "TTL": str(WEB_PUSH_TTL_SECONDS)}

    async def send(self, record: NotificationRecord) -> DeliveryResult:
        subscription = record.metadata.get("subscription") or {}
        endpoint = subscription.get("endpoint")
        if not endpoint:
            raise ChannelConfigurationError(self.channel.value, "Web Push subscription not provided")

        headers = await self.vapid_headers(endpoint)
        try:
            async with self.http_client() as client:
                response = await client.post(endpoint, headers=headers)
        except httpx.HTTPError as e:
            return DeliveryResult.failed(f"Web Push request failed: {e}")

        if not response.is_success:
            return DeliveryResult.failed(describe_http_error(response), **response_payload(response))
        return DeliveryResult.ok(status=response.status_code, endpoint=endpoint)
