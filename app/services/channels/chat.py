import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.core.errors import ChannelConfigurationError
from app.core.logging import logger
from app.models.notification import NotificationChannel
from app.services.channels.base import (
    DeliveryResult,
    NotificationRecord,
    RateLimitedHandler,
    describe_http_error,
    response_payload,
)

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"


def json_content(content: str) -> Optional[Dict[str, Any]]:
    """Content that is already a provider payload (a JSON object) is sent as-is."""
    try:
        parsed = json.loads(content)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


class TeamsHandler(RateLimitedHandler):
    channel = NotificationChannel.CHAT_TEAMS
    category = "TEAMS"
    enabled_key = "teams_enabled"

    def build_payload(self, record: NotificationRecord) -> Dict[str, Any]:
        payload = json_content(record.content)
        now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
        if payload is None:
            payload = {
                "@type": "MessageCard",
                "@context": "http://schema.org/extensions",
                "themeColor": "0076D7",
                "summary": record.title,
                "sections": [{
                    "activityTitle": record.title,
                    "activitySubtitle": now,
                    "text": record.content,
                    "markdown": True,
                }],
            }
        sections = payload.get("sections")
        if sections and isinstance(sections[0], dict):
            sections[0].setdefault("activitySubtitle", now)
        return payload

    async def deliver(self, record: NotificationRecord) -> DeliveryResult:
        url = await self.require_setting("teams_webhook_url")
        return await self.post_json(url, self.build_payload(record))


class SlackHandler(RateLimitedHandler):
    channel = NotificationChannel.CHAT_SLACK
    category = "SLACK"
    enabled_key = "slack_enabled"

    async def deliver(self, record: NotificationRecord) -> DeliveryResult:
        bot_token = await self.setting("slack_bot_token")
        if bot_token:
            return await self._send_via_api(record, bot_token, await self.setting("slack_channel"))
        webhook_url = await self.setting("slack_webhook_url")
        if webhook_url:
            return await self._send_via_webhook(record, webhook_url)
        raise ChannelConfigurationError(self.channel.value, "Neither Slack webhook URL nor bot token configured")

    async def _send_via_webhook(self, record: NotificationRecord, webhook_url: str) -> DeliveryResult:
        payload = json_content(record.content) or {
            "text": record.title,
            "attachments": [{
                "color": "good",
                "text": record.content,
                "footer": settings.APP_NAME,
                "ts": int(time.time()),
            }],
        }
        result = await self.post_json(webhook_url, payload)
        if result.success:
            result.response["method"] = "webhook"
        return result

    async def _send_via_api(self, record: NotificationRecord, bot_token: str, channel: Optional[str]) -> DeliveryResult:
        payload = json_content(record.content) or {
            "text": record.content,
            "attachments": [{
                "color": "good",
                "title": record.title,
                "footer": settings.APP_NAME,
                "ts": int(time.time()),
            }],
        }
        if channel:
            payload["channel"] = channel

        try:
            async with self.http_client() as client:
                response = await client.post(
                    SLACK_POST_MESSAGE_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {bot_token}"},
                )
        except httpx.HTTPError as e:
            return DeliveryResult.failed(f"Slack API request failed: {e}")

        if not response.is_success:
            return DeliveryResult.failed(describe_http_error(response), **response_payload(response))
        try:
            body = response.json()
        except ValueError:
            logger.warning("Slack API answered with a non-JSON body", status_code=response.status_code)
            return DeliveryResult.failed(
                f"Slack API returned a non-JSON response: {response.text[:200]}", status=response.status_code
            )
        # Slack answers 200 even when the post is rejected
        if not body.get("ok"):
            logger.warning("Slack API rejected message", error=body.get("error"))
            return DeliveryResult.failed(f"Slack API error: {body.get('error')}", status=response.status_code, body=body)
        return DeliveryResult.ok(status=response.status_code, body=body, method="api")


class DiscordHandler(RateLimitedHandler):
    channel = NotificationChannel.CHAT_DISCORD
    category = "DISCORD"
    enabled_key = "discord_enabled"

    def build_payload(self, record: NotificationRecord, username: Optional[str]) -> Dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        footer = {"text": settings.APP_NAME}
        payload = json_content(record.content) or {
            "embeds": [{
                "title": record.title,
                "description": record.content,
                "color": 0x0099FF,
            }],
        }
        if username:
            payload["username"] = username
        if payload.get("embeds"):
            payload["embeds"] = [
                {**embed, "timestamp": embed.get("timestamp") or now, "footer": embed.get("footer") or footer}
                for embed in payload["embeds"]
            ]
        return payload

    async def deliver(self, record: NotificationRecord) -> DeliveryResult:
        url = await self.require_setting("discord_webhook_url")
        payload = self.build_payload(record, await self.setting("discord_username"))
        return await self.post_json(url, payload)
