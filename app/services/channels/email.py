import asyncio
import html
import re
from email.message import EmailMessage
from email.utils import formataddr

import aiosmtplib
import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.config import settings
from app.core.logging import logger
from app.models.notification import NotificationChannel
from app.services.channels.base import ChannelHandler, DeliveryResult, NotificationRecord

_TAG = re.compile(r"<[^>]*>")
_HEADER_UNSAFE = re.compile(r"[\r\n\x00]")


def looks_like_html(content: str) -> bool:
    return "<" in content and ">" in content


def strip_tags(content: str) -> str:
    return _TAG.sub("", content)


def wrap_html(title: str, content: str, footer: str) -> str:
    paragraphs = "".join(f"<p>{html.escape(line)}</p>" for line in content.splitlines() if line.strip())
    return (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        f"<h2>{html.escape(title)}</h2>{paragraphs}"
        f"<hr><p style=\"font-size: 12px; color: #888;\">{html.escape(footer)}</p>"
        "</body></html>"
    )


class EmailHandler(ChannelHandler):
    channel = NotificationChannel.EMAIL
    category = "EMAIL"

    async def is_enabled(self) -> bool:
        if (await self.setting("email_provider") or "").lower() == "ses":
            return True
        return bool(await self.setting("smtp_host"))

    async def send(self, record: NotificationRecord) -> DeliveryResult:
        subject = _HEADER_UNSAFE.sub("", record.subject or settings.APP_NAME)
        text_body = strip_tags(record.content)
        html_body = record.content if looks_like_html(record.content) else wrap_html(
            subject, record.content, f"This is an automated notification from {settings.APP_NAME}."
        )

        if (await self.setting("email_provider") or "").lower() == "ses":
            return await self._send_ses(record.recipient, subject, text_body, html_body)
        return await self._send_smtp(record.recipient, subject, text_body, html_body)

    async def _send_ses(self, recipient: str, subject: str, text_body: str, html_body: str) -> DeliveryResult:
        sender = await self.require_setting("from_email")
        ses_client = boto3.client(
            "ses",
            region_name=settings.AWS_REGION_NAME,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        )
        try:
            response = await asyncio.to_thread(
                ses_client.send_email,
                Source=sender,
                Destination={"ToAddresses": [recipient]},
                Message={
                    "Subject": {"Data": subject},
                    "Body": {"Text": {"Data": text_body}, "Html": {"Data": html_body}},
                },
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("SES email send failed", error=str(e), recipient=recipient)
            return DeliveryResult.failed(f"SES error: {e}")

        message_id = response["MessageId"]
        logger.info("Email sent via SES", message_id=message_id, recipient=recipient)
        return DeliveryResult.ok(provider="ses", message_id=message_id)

    async def _send_smtp(self, recipient: str, subject: str, text_body: str, html_body: str) -> DeliveryResult:
        host = await self.require_setting("smtp_host")
        port = int(await self.setting("smtp_port") or 587)
        username = await self.setting("smtp_username")
        password = await self.setting("smtp_password")
        secure = (await self.setting("smtp_secure") or "").lower() == "true"
        sender = await self.setting("from_email") or username or f"no-reply@{host}"
        sender_name = await self.setting("from_name") or settings.APP_NAME

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((sender_name, sender))
        message["To"] = recipient
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")

        try:
            errors, response = await aiosmtplib.send(
                message,
                hostname=host,
                port=port,
                username=username or None,
                password=password or None,
                use_tls=secure,
                timeout=30,
            )
        except aiosmtplib.SMTPException as e:
            logger.error("SMTP email send failed", error=str(e), recipient=recipient, host=host)
            return DeliveryResult.failed(f"SMTP error: {e}")

        if errors:
            return DeliveryResult.failed(f"SMTP rejected recipients: {errors}", response=response)
        logger.info("Email sent via SMTP", recipient=recipient, host=host)
        return DeliveryResult.ok(provider="smtp", response=response)
