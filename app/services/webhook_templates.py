"""
Outbound webhook bodies.

A destination with a ``payload_template`` gets that JSON document rendered
against ``{event, timestamp, data, webhook}``. Everything else gets the default
``{event, timestamp, data}`` body. Test sends to well-known chat providers use a
message shaped for that provider, picked from the destination URL.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.config import settings
from app.core.logging import logger
from app.utils.templating import render_json

GENERIC = "generic"


def detect_template_from_url(url: str) -> str:
    if "discord.com/api/webhooks" in url or "discordapp.com/api/webhooks" in url:
        return "discord"
    if "webhook.office.com" in url:
        return "teams"
    if "hooks.slack.com/services" in url:
        return "slack"
    return GENERIC


def default_payload(event_type: str, timestamp: int, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event_type, "timestamp": timestamp, "data": data}


def build_payload(destination, event_type: str, timestamp: int, data: Dict[str, Any]) -> Any:
    if not destination.payload_template:
        return default_payload(event_type, timestamp, data)
    context = {
        "event": event_type,
        "timestamp": timestamp,
        "data": data,
        "webhook": {"id": str(destination.id), "name": destination.name},
    }
    try:
        return render_json(destination.payload_template, context)
    except ValueError as e:
        logger.warning(
            "Invalid webhook payload template, sending default body",
            webhook_id=str(destination.id),
            error=str(e),
        )
        return default_payload(event_type, timestamp, data)


def provider_test_payload(template_id: str, event_type: str, message: str) -> Optional[Dict[str, Any]]:
    """Connection-test message shaped for a chat provider, or None for plain HTTP endpoints."""
    now = datetime.now(timezone.utc).isoformat()
    app_name = settings.APP_NAME
    if template_id == "discord":
        return {
            "username": app_name,
            "embeds": [{
                "title": "Webhook Test",
                "description": message,
                "color": 0x00FFFF,
                "timestamp": now,
                "footer": {"text": app_name},
                "fields": [
                    {"name": "Event Type", "value": event_type, "inline": True},
                    {"name": "Status", "value": "Connection successful", "inline": True},
                ],
            }],
        }
    if template_id == "teams":
        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": "0099ff",
            "summary": f"{app_name} Test Notification",
            "sections": [{
                "activityTitle": "Webhook Test",
                "activitySubtitle": app_name,
                "facts": [
                    {"name": "Event", "value": event_type},
                    {"name": "Status", "value": "Connection successful"},
                    {"name": "Timestamp", "value": now},
                ],
                "markdown": True,
                "text": message,
            }],
        }
    if template_id == "slack":
        return {
            "username": app_name,
            "blocks": [
                {"type": "header", "text": {"type": "plain_text", "text": "Webhook Test"}},
                {"type": "section", "text": {"type": "mrkdwn", "text": message}},
                {"type": "context", "elements": [
                    {"type": "mrkdwn", "text": f"*Event:* {event_type} | *Time:* {now} | *Status:* Success"},
                ]},
            ],
        }
    return None
