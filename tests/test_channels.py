import json
import pytest
from urllib.parse import parse_qs
from uuid import uuid4

import aiosmtplib
import httpx
from botocore.exceptions import ClientError
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jose import jwt
from sqlalchemy.future import select

from app.core.errors import ChannelConfigurationError
from app.models.inbox import InAppNotification, RssFeedItem
from app.models.notification import NotificationChannel
from app.services.channels.base import NotificationRecord
from app.services.channels.chat import DiscordHandler, SlackHandler, TeamsHandler
from app.services.channels.email import EmailHandler
from app.services.channels.inbox import InAppHandler, RssHandler, action_url_for
from app.services.channels.push import APNsHandler, FCMHandler, GenericPushHandler, WebPushHandler
from app.services.channels.sms import SMSHandler
from app.utils.rate_limit import RateLimiter
from tests.conftest import StaticSettingsProvider


def make_record(channel, **overrides):
    fields = dict(
        id=uuid4(),
        channel=channel,
        event_type="contribution.approved",
        recipient="test@example.com",
        content="Your contribution was approved",
        subject="Contribution approved",
    )
    fields.update(overrides)
    return NotificationRecord(**fields)


class RecordingTransport(httpx.MockTransport):
    def __init__(self, status_code=200, json_body=None):
        self.requests = []

        def handler(request):
            self.requests.append(request)
            return httpx.Response(status_code, json=json_body if json_body is not None else {})

        super().__init__(handler)


def ec_private_key_pem():
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


# Email

@pytest.mark.asyncio
async def test_email_enabled_by_smtp_host_or_ses_provider():
    assert not await EmailHandler(StaticSettingsProvider()).is_enabled()
    assert await EmailHandler(StaticSettingsProvider({("EMAIL", "smtp_host"): "smtp.example.com"})).is_enabled()
    assert await EmailHandler(StaticSettingsProvider({("EMAIL", "email_provider"): "SES"})).is_enabled()


@pytest.mark.asyncio
async def test_email_smtp_sends_multipart_message(mocker):
    provider = StaticSettingsProvider({
        ("EMAIL", "smtp_host"): "smtp.example.com",
        ("EMAIL", "smtp_port"): "465",
        ("EMAIL", "smtp_secure"): "true",
        ("EMAIL", "smtp_username"): "mailer",
        ("EMAIL", "smtp_password"): "pw",
        ("EMAIL", "from_email"): "no-reply@example.com",
    })
    send = mocker.patch("app.services.channels.email.aiosmtplib.send", return_value=({}, "250 OK"))

    result = await EmailHandler(provider).send(make_record(NotificationChannel.EMAIL, subject="Hi\r\nBcc: x"))

    assert result.success
    assert result.response["provider"] == "smtp"
    message = send.call_args.args[0]
    assert message["To"] == "test@example.com"
    assert message["Subject"] == "HiBcc: x"
    assert "no-reply@example.com" in message["From"]
    kwargs = send.call_args.kwargs
    assert kwargs["hostname"] == "smtp.example.com"
    assert kwargs["port"] == 465
    assert kwargs["use_tls"] is True
    html_part = message.get_body(preferencelist=("html",)).get_content()
    assert "<p>Your contribution was approved</p>" in html_part


@pytest.mark.asyncio
async def test_email_smtp_error_is_a_failed_result(mocker):
    provider = StaticSettingsProvider({("EMAIL", "smtp_host"): "smtp.example.com"})
    mocker.patch("app.services.channels.email.aiosmtplib.send", side_effect=aiosmtplib.SMTPException("refused"))

    result = await EmailHandler(provider).send(make_record(NotificationChannel.EMAIL))

    assert not result.success
    assert "refused" in result.error


@pytest.mark.asyncio
async def test_email_ses_send(mocker):
    provider = StaticSettingsProvider({
        ("EMAIL", "email_provider"): "ses",
        ("EMAIL", "from_email"): "no-reply@example.com",
    })
    client = mocker.patch("app.services.channels.email.boto3.client").return_value
    client.send_email.return_value = {"MessageId": "ses-123"}

    result = await EmailHandler(provider).send(make_record(NotificationChannel.EMAIL, content="<b>Hello</b>"))

    assert result.success
    assert result.response["message_id"] == "ses-123"
    message = client.send_email.call_args.kwargs["Message"]
    assert message["Body"]["Html"]["Data"] == "<b>Hello</b>"
    assert message["Body"]["Text"]["Data"] == "Hello"


@pytest.mark.asyncio
async def test_email_ses_client_error(mocker):
    provider = StaticSettingsProvider({
        ("EMAIL", "email_provider"): "ses",
        ("EMAIL", "from_email"): "no-reply@example.com",
    })
    client = mocker.patch("app.services.channels.email.boto3.client").return_value
    client.send_email.side_effect = ClientError({"Error": {"Code": "Throttling", "Message": "slow down"}}, "SendEmail")

    result = await EmailHandler(provider).send(make_record(NotificationChannel.EMAIL))

    assert not result.success
    assert "SES error" in result.error


@pytest.mark.asyncio
async def test_email_ses_requires_sender():
    provider = StaticSettingsProvider({("EMAIL", "email_provider"): "ses"})
    with pytest.raises(ChannelConfigurationError):
        await EmailHandler(provider).send(make_record(NotificationChannel.EMAIL))


# SMS

def twilio_settings(**extra):
    values = {
        ("SMS", "sms_enabled"): "true",
        ("SMS", "sms_provider"): "twilio",
        ("SMS", "twilio_account_sid"): "AC123",
        ("SMS", "twilio_auth_token"): "token",
        ("SMS", "twilio_phone_number"): "+15550001111",
    }
    values.update(extra)
    return StaticSettingsProvider(values)


@pytest.mark.asyncio
async def test_sms_twilio_posts_form(mocker):
    transport = RecordingTransport(status_code=201, json_body={"sid": "SM1"})
    handler = SMSHandler(twilio_settings(), transport)

    assert await handler.is_enabled()
    result = await handler.send(make_record(NotificationChannel.SMS, recipient="+251911123456", content="Code 1234"))

    assert result.success
    assert result.response["sid"] == "SM1"
    request = transport.requests[0]
    assert "/Accounts/AC123/Messages.json" in str(request.url)
    assert request.headers["Authorization"].startswith("Basic ")
    form = parse_qs(request.content.decode())
    assert form == {"From": ["+15550001111"], "To": ["+251911123456"], "Body": ["Code 1234"]}


@pytest.mark.asyncio
async def test_sms_twilio_error_status():
    handler = SMSHandler(twilio_settings(), RecordingTransport(status_code=400, json_body={"message": "bad number"}))

    result = await handler.send(make_record(NotificationChannel.SMS, recipient="nope"))

    assert not result.success
    assert result.response["status"] == 400


@pytest.mark.asyncio
async def test_sms_sns_publish(mocker):
    provider = StaticSettingsProvider({
        ("SMS", "sms_provider"): "aws_sns",
        ("SMS", "aws_sns_access_key"): "AKIA",
        ("SMS", "aws_sns_secret_key"): "secret",
    })
    boto_client = mocker.patch("app.services.channels.sms.boto3.client")
    boto_client.return_value.publish.return_value = {"MessageId": "sns-1"}

    result = await SMSHandler(provider).send(make_record(NotificationChannel.SMS, recipient="+1555"))

    assert result.success
    assert result.response == {"provider": "aws_sns", "message_id": "sns-1"}
    boto_client.return_value.publish.assert_called_once_with(PhoneNumber="+1555", Message="Your contribution was approved")


@pytest.mark.asyncio
async def test_sms_unknown_provider_is_configuration_error():
    provider = StaticSettingsProvider({("SMS", "sms_provider"): "carrier-pigeon"})
    with pytest.raises(ChannelConfigurationError):
        await SMSHandler(provider).send(make_record(NotificationChannel.SMS))


@pytest.mark.asyncio
async def test_sms_disabled_without_switch():
    assert not await SMSHandler(StaticSettingsProvider({("SMS", "sms_enabled"): "false"})).is_enabled()


# Chat

@pytest.mark.asyncio
async def test_slack_api_ok_false_is_failure():
    provider = StaticSettingsProvider({("SLACK", "slack_bot_token"): "xoxb-1", ("SLACK", "slack_channel"): "#ops"})
    transport = RecordingTransport(json_body={"ok": False, "error": "channel_not_found"})

    result = await SlackHandler(provider, RateLimiter(), transport).send(make_record(NotificationChannel.CHAT_SLACK))

    assert not result.success
    assert "channel_not_found" in result.error
    request = transport.requests[0]
    assert request.headers["Authorization"] == "Bearer xoxb-1"
    assert json.loads(request.content)["channel"] == "#ops"


@pytest.mark.asyncio
async def test_slack_api_non_json_answer_is_failure():
    provider = StaticSettingsProvider({("SLACK", "slack_bot_token"): "xoxb-1"})
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>maintenance</html>"))

    result = await SlackHandler(provider, RateLimiter(), transport).send(make_record(NotificationChannel.CHAT_SLACK))

    assert not result.success
    assert "non-JSON" in result.error
    assert result.response["status"] == 200


@pytest.mark.asyncio
async def test_slack_webhook_fallback():
    provider = StaticSettingsProvider({("SLACK", "slack_webhook_url"): "https://hooks.slack.com/services/T/B/X"})
    transport = RecordingTransport()

    result = await SlackHandler(provider, RateLimiter(), transport).send(make_record(NotificationChannel.CHAT_SLACK))

    assert result.success
    assert result.response["method"] == "webhook"
    assert json.loads(transport.requests[0].content)["text"] == "Contribution approved"


@pytest.mark.asyncio
async def test_slack_without_configuration_raises():
    with pytest.raises(ChannelConfigurationError):
        await SlackHandler(StaticSettingsProvider(), RateLimiter()).send(make_record(NotificationChannel.CHAT_SLACK))


@pytest.mark.asyncio
async def test_teams_message_card_and_rate_limit():
    provider = StaticSettingsProvider({("TEAMS", "teams_webhook_url"): "https://outlook.office.com/webhook/x"})
    transport = RecordingTransport()
    handler = TeamsHandler(provider, RateLimiter(max_requests=1), transport)

    first = await handler.send(make_record(NotificationChannel.CHAT_TEAMS))
    second = await handler.send(make_record(NotificationChannel.CHAT_TEAMS))

    assert first.success
    assert second.rate_limited and not second.success
    assert len(transport.requests) == 1
    card = json.loads(transport.requests[0].content)
    assert card["@type"] == "MessageCard"
    assert card["sections"][0]["activityTitle"] == "Contribution approved"


@pytest.mark.asyncio
async def test_discord_passes_through_json_content_and_sets_username():
    provider = StaticSettingsProvider({
        ("DISCORD", "discord_webhook_url"): "https://discord.com/api/webhooks/1/x",
        ("DISCORD", "discord_username"): "Notifier",
    })
    transport = RecordingTransport()
    content = json.dumps({"embeds": [{"title": "Custom"}]})

    result = await DiscordHandler(provider, RateLimiter(), transport).send(
        make_record(NotificationChannel.CHAT_DISCORD, content=content)
    )

    assert result.success
    payload = json.loads(transport.requests[0].content)
    assert payload["username"] == "Notifier"
    assert payload["embeds"][0]["title"] == "Custom"
    assert payload["embeds"][0]["timestamp"]


# Push

@pytest.mark.asyncio
async def test_gotify_preferred_over_pushbullet():
    provider = StaticSettingsProvider({
        ("GOTIFY", "gotify_enabled"): "true",
        ("GOTIFY", "gotify_server_url"): "https://gotify.example.com/",
        ("GOTIFY", "gotify_app_token"): "app-token",
        ("PUSHBULLET", "pushbullet_enabled"): "true",
    })
    transport = RecordingTransport(json_body={"id": 1})
    handler = GenericPushHandler(provider, transport)

    result = await handler.send(make_record(NotificationChannel.PUSH_GENERIC))

    assert result.success
    assert result.response["provider"] == "gotify"
    request = transport.requests[0]
    assert request.url.path == "/message"
    assert request.url.params["token"] == "app-token"
    assert json.loads(request.content)["priority"] == 5


@pytest.mark.asyncio
async def test_pushbullet_send():
    provider = StaticSettingsProvider({
        ("PUSHBULLET", "pushbullet_enabled"): "true",
        ("PUSHBULLET", "pushbullet_access_token"): "pb-token",
    })
    transport = RecordingTransport()
    handler = GenericPushHandler(provider, transport)

    assert await handler.is_enabled()
    result = await handler.send(make_record(NotificationChannel.PUSH_GENERIC))

    assert result.response["provider"] == "pushbullet"
    assert transport.requests[0].headers["Access-Token"] == "pb-token"


@pytest.mark.asyncio
async def test_generic_push_disabled_without_either_provider():
    assert not await GenericPushHandler(StaticSettingsProvider()).is_enabled()


@pytest.mark.asyncio
async def test_fcm_per_token_failure_is_failed_result():
    provider = StaticSettingsProvider({("FCM", "fcm_server_key"): "server-key"})
    transport = RecordingTransport(json_body={"success": 0, "failure": 1, "results": [{"error": "NotRegistered"}]})

    result = await FCMHandler(provider, transport).send(make_record(NotificationChannel.PUSH_FCM, recipient="device-1"))

    assert not result.success
    assert "NotRegistered" in result.error
    assert transport.requests[0].headers["Authorization"] == "key=server-key"


@pytest.mark.asyncio
async def test_fcm_success_returns_message_id():
    provider = StaticSettingsProvider({("FCM", "fcm_server_key"): "server-key"})
    transport = RecordingTransport(json_body={"success": 1, "failure": 0, "results": [{"message_id": "fcm-1"}]})
    record = make_record(NotificationChannel.PUSH_FCM, metadata={"fcmToken": "tok-1", "data": {"contributionId": "7"}})

    result = await FCMHandler(provider, transport).send(record)

    assert result.success
    assert result.response["message_id"] == "fcm-1"
    payload = json.loads(transport.requests[0].content)
    assert payload["to"] == "tok-1"
    assert payload["data"]["contributionId"] == "7"


@pytest.mark.asyncio
async def test_apns_request_shape():
    provider = StaticSettingsProvider({
        ("APNS", "apns_key_id"): "KEY123",
        ("APNS", "apns_team_id"): "TEAM123",
        ("APNS", "apns_private_key"): ec_private_key_pem(),
        ("APNS", "apns_bundle_id"): "com.example.app",
        ("APNS", "apns_environment"): "sandbox",
    })
    transport = RecordingTransport()

    result = await APNsHandler(provider, transport).send(make_record(NotificationChannel.PUSH_APNS, recipient="abc123"))

    assert result.success
    request = transport.requests[0]
    assert str(request.url) == "https://api.sandbox.push.apple.com/3/device/abc123"
    assert request.headers["apns-topic"] == "com.example.app"
    assert request.headers["apns-push-type"] == "alert"
    token = request.headers["authorization"].split(" ", 1)[1]
    assert jwt.get_unverified_header(token)["kid"] == "KEY123"
    assert jwt.get_unverified_claims(token)["iss"] == "TEAM123"


@pytest.mark.asyncio
async def test_web_push_vapid_headers():
    provider = StaticSettingsProvider({
        ("WEB_PUSH", "vapid_public_key"): "BPublicKey",
        ("WEB_PUSH", "vapid_private_key"): ec_private_key_pem(),
        ("WEB_PUSH", "vapid_subject"): "mailto:ops@example.com",
    })
    transport = RecordingTransport(status_code=201)
    endpoint = "https://fcm.googleapis.com/fcm/send/abc"
    record = make_record(NotificationChannel.PUSH_WEB, metadata={"subscription": {"endpoint": endpoint}})

    result = await WebPushHandler(provider, transport).send(record)

    assert result.success
    request = transport.requests[0]
    assert request.headers["TTL"] == "86400"
    authorization = request.headers["Authorization"]
    assert authorization.startswith("vapid t=") and authorization.endswith("k=BPublicKey")
    token = authorization[len("vapid t="):].split(",")[0]
    assert jwt.get_unverified_claims(token)["aud"] == "https://fcm.googleapis.com"


@pytest.mark.asyncio
async def test_web_push_requires_subscription():
    with pytest.raises(ChannelConfigurationError):
        await WebPushHandler(StaticSettingsProvider()).send(make_record(NotificationChannel.PUSH_WEB))


# In-app and RSS

def test_action_url_for_contribution_events():
    assert action_url_for(make_record(NotificationChannel.IN_APP, metadata={"contributionId": 9})) == "/contributions/9"
    assert action_url_for(make_record(NotificationChannel.IN_APP)) == "/contributions/browse"
    assert action_url_for(make_record(NotificationChannel.IN_APP, metadata={"actionUrl": "/x"})) == "/x"
    assert action_url_for(make_record(NotificationChannel.IN_APP, event_type="user.account_updated")) == "/settings"
    assert action_url_for(make_record(NotificationChannel.IN_APP, event_type="other")) is None


@pytest.mark.asyncio
async def test_in_app_writes_inbox_row(session_factory, settings_provider):
    user_id = uuid4()
    record = make_record(NotificationChannel.IN_APP, user_id=user_id, metadata={"contributionId": 3})

    result = await InAppHandler(settings_provider, session_factory).send(record)

    assert result.success
    async with session_factory() as session:
        rows = (await session.execute(select(InAppNotification))).scalars().all()
    assert len(rows) == 1
    assert rows[0].user_id == user_id
    assert rows[0].queue_id == record.id
    assert rows[0].action_url == "/contributions/3"
    assert result.response["message_id"] == f"inapp-{rows[0].id}"


@pytest.mark.asyncio
async def test_in_app_without_user_is_configuration_error(session_factory, settings_provider):
    with pytest.raises(ChannelConfigurationError):
        await InAppHandler(settings_provider, session_factory).send(make_record(NotificationChannel.IN_APP))


@pytest.mark.asyncio
async def test_rss_writes_feed_item(session_factory):
    provider = StaticSettingsProvider({("RSS", "rss_enabled"): "true"})
    handler = RssHandler(provider, session_factory)
    record = make_record(NotificationChannel.RSS, metadata={"vehicleId": "v1"})

    assert await handler.is_enabled()
    result = await handler.send(record)

    assert result.success
    async with session_factory() as session:
        item = (await session.execute(select(RssFeedItem))).scalar_one()
    assert item.guid == f"contribution.approved-{record.id}"
    assert item.link.endswith("/vehicles/v1")
