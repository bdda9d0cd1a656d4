import asyncio

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from app.config import settings
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

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"


class SMSHandler(ChannelHandler):
    channel = NotificationChannel.SMS
    category = "SMS"
    enabled_key = "sms_enabled"

    async def send(self, record: NotificationRecord) -> DeliveryResult:
        provider = await self.setting("sms_provider")
        if provider == "twilio":
            return await self._send_twilio(record)
        if provider == "aws_sns":
            return await self._send_sns(record)
        raise ChannelConfigurationError(self.channel.value, "SMS provider not configured")

    async def _send_twilio(self, record: NotificationRecord) -> DeliveryResult:
        account_sid = await self.require_setting("twilio_account_sid")
        auth_token = await self.require_setting("twilio_auth_token")
        from_number = await self.require_setting("twilio_phone_number")

        try:
            async with self.http_client(auth=(account_sid, auth_token)) as client:
                response = await client.post(
                    TWILIO_MESSAGES_URL.format(account_sid=account_sid),
                    data={"From": from_number, "To": record.recipient, "Body": record.content},
                )
        except httpx.HTTPError as e:
            return DeliveryResult.failed(f"Twilio request failed: {e}")

        if not response.is_success:
            return DeliveryResult.failed(describe_http_error(response), **response_payload(response))
        body = response.json()
        logger.info("SMS sent via Twilio", sid=body.get("sid"), recipient=record.recipient)
        return DeliveryResult.ok(provider="twilio", status=response.status_code, sid=body.get("sid"))

    async def _send_sns(self, record: NotificationRecord) -> DeliveryResult:
        access_key = await self.setting("aws_sns_access_key") or settings.AWS_ACCESS_KEY_ID
        secret_key = await self.setting("aws_sns_secret_key") or settings.AWS_SECRET_ACCESS_KEY
        region = await self.setting("aws_sns_region") or settings.AWS_REGION_NAME
        if not access_key or not secret_key:
            raise ChannelConfigurationError(self.channel.value, "AWS SNS configuration incomplete")

        sns_client = boto3.client(
            "sns",
            region_name=region,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
        )
        try:
            response = await asyncio.to_thread(
                sns_client.publish, PhoneNumber=record.recipient, Message=record.content
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("SNS SMS send failed", error=str(e), recipient=record.recipient)
            return DeliveryResult.failed(f"SNS error: {e}")

        logger.info("SMS sent via SNS", message_id=response["MessageId"], recipient=record.recipient)
        return DeliveryResult.ok(provider="aws_sns", message_id=response["MessageId"])
