from typing import Dict, List, Optional

import httpx

from app.core.errors import HandlerNotFoundError
from app.core.logging import logger
from app.models.notification import NotificationChannel
from app.services.channels.base import ChannelHandler
from app.services.channels.chat import DiscordHandler, SlackHandler, TeamsHandler
from app.services.channels.email import EmailHandler
from app.services.channels.inbox import InAppHandler, RssHandler
from app.services.channels.push import APNsHandler, FCMHandler, GenericPushHandler, WebPushHandler
from app.services.channels.sms import SMSHandler
from app.services.channels.webhook import WebhookHandler
from app.services.settings_store import SettingsProvider


class ChannelHandlerRegistry:
    def __init__(self, handlers: Optional[Dict[NotificationChannel, ChannelHandler]] = None):
        self._handlers: Dict[NotificationChannel, ChannelHandler] = dict(handlers or {})

    def register(self, channel: NotificationChannel, handler: ChannelHandler) -> None:
        self._handlers[NotificationChannel(channel)] = handler

    def get(self, channel: NotificationChannel) -> ChannelHandler:
        try:
            return self._handlers[NotificationChannel(channel)]
        except (KeyError, ValueError):
            raise HandlerNotFoundError(str(getattr(channel, "value", channel)))

    def channels(self) -> List[NotificationChannel]:
        return list(self._handlers)

    async def enabled_handlers(self) -> Dict[NotificationChannel, ChannelHandler]:
        enabled = {}
        for channel, handler in self._handlers.items():
            try:
                if await handler.is_enabled():
                    enabled[channel] = handler
            except Exception as e:
                logger.warning("Failed to check if handler is enabled", channel=channel.value, error=str(e))
        return enabled


def build_default_registry(
    settings_provider: SettingsProvider,
    session_factory,
    rate_limiter,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ChannelHandlerRegistry:
    handlers = [
        EmailHandler(settings_provider),
        WebhookHandler(settings_provider, session_factory, rate_limiter, transport),
        TeamsHandler(settings_provider, rate_limiter, transport),
        SlackHandler(settings_provider, rate_limiter, transport),
        DiscordHandler(settings_provider, rate_limiter, transport),
        GenericPushHandler(settings_provider, transport),
        FCMHandler(settings_provider, transport),
        APNsHandler(settings_provider, transport),
        WebPushHandler(settings_provider, transport),
        SMSHandler(settings_provider, transport),
        InAppHandler(settings_provider, session_factory),
        RssHandler(settings_provider, session_factory),
    ]
    return ChannelHandlerRegistry({handler.channel: handler for handler in handlers})
