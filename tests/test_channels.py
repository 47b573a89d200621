"""Tests for parcelnotify/notification/channels.

SMTP is mocked with ``unittest.mock.patch``; HTTP transports use
``httpx.MockTransport``.  No network access.
"""
from __future__ import annotations

import json
import smtplib
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import httpx
import pytest

from parcelnotify.core.constants import ChannelType
from parcelnotify.core.security import SIGNATURE_HEADER, TIMESTAMP_HEADER, verify_signature
from parcelnotify.notification.channels import (
    ChatChannel,
    EmailChannel,
    SmsChannel,
    WebhookChannel,
    build_channels,
)
from parcelnotify.notification.errors import FailureKind
from parcelnotify.notification.template_manager import RenderedMessage

SECRET = "shared-secret"


def _message(channel: str, **kwargs) -> RenderedMessage:
    fields = {
        "channel": channel,
        "event_code": "Delivered",
        "locale": "en",
        "body": "Package TH1 delivered.",
        "variables": {"tracking_number": "TH1", "current_status": "Delivered", "facility": "BKK Hub"},
    }
    fields.update(kwargs)
    return RenderedMessage(**fields)


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def _status(code: int, **kwargs):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(code, **kwargs)

    return handler


def _raise(exc_type):
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc_type("boom", request=request)

    return handler


# ===========================================================================
# Email
# ===========================================================================

class TestEmailChannel:
    def _channel(self) -> EmailChannel:
        return EmailChannel("smtp.local", 2525, mail_from="noreply@tracking.local", timeout=3.0)

    def _message(self) -> RenderedMessage:
        return _message("email", subject="Package Delivered: TH1", body="<p>Delivered <b>TH1</b></p>")

    @patch("parcelnotify.notification.channels.email.smtplib.SMTP")
    def test_success_sends_multipart(self, mock_smtp):
        server = MagicMock()
        mock_smtp.return_value.__enter__.return_value = server

        result = self._channel().send("alice@example.com", self._message())

        assert result.success is True
        assert result.provider_ref.startswith("<")
        mock_smtp.assert_called_once_with("smtp.local", 2525, timeout=3.0)
        from_addr, to_addrs, raw = server.sendmail.call_args.args
        assert from_addr == "noreply@tracking.local"
        assert to_addrs == ["alice@example.com"]
        assert "multipart/alternative" in raw
        assert "Package Delivered: TH1" in raw

    def test_plain_alternative_strips_markup(self):
        msg = self._channel().build_message("alice@example.com", self._message())
        plain, html_part = msg.get_payload()
        assert plain.get_content_type() == "text/plain"
        assert html_part.get_content_type() == "text/html"
        assert "<b>" not in plain.get_payload(decode=True).decode("utf-8")

    @patch("parcelnotify.notification.channels.email.smtplib.SMTP")
    def test_tls_and_login_when_configured(self, mock_smtp):
        server = MagicMock()
        mock_smtp.return_value.__enter__.return_value = server
        channel = EmailChannel("smtp.local", username="user", password="pw", use_tls=True)

        assert channel.send("alice@example.com", self._message()).success is True
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("user", "pw")

    @patch("parcelnotify.notification.channels.email.smtplib.SMTP")
    def test_recipient_refused_is_invalid_address(self, mock_smtp):
        server = MagicMock()
        server.sendmail.side_effect = smtplib.SMTPRecipientsRefused({"bad@example.com": (550, b"no such user")})
        mock_smtp.return_value.__enter__.return_value = server

        result = self._channel().send("bad@example.com", self._message())

        assert result.success is False
        assert result.error_kind == FailureKind.INVALID_ADDRESS

    @patch("parcelnotify.notification.channels.email.smtplib.SMTP")
    def test_5xx_reply_is_provider_rejected(self, mock_smtp):
        server = MagicMock()
        server.sendmail.side_effect = smtplib.SMTPDataError(554, b"rejected")
        mock_smtp.return_value.__enter__.return_value = server

        result = self._channel().send("alice@example.com", self._message())
        assert result.error_kind == FailureKind.PROVIDER_REJECTED

    @patch("parcelnotify.notification.channels.email.smtplib.SMTP")
    def test_4xx_reply_is_transport_error(self, mock_smtp):
        server = MagicMock()
        server.sendmail.side_effect = smtplib.SMTPDataError(451, b"try later")
        mock_smtp.return_value.__enter__.return_value = server

        result = self._channel().send("alice@example.com", self._message())
        assert result.error_kind == FailureKind.TRANSPORT_ERROR

    @patch("parcelnotify.notification.channels.email.smtplib.SMTP")
    def test_timeout_is_transport_timeout(self, mock_smtp):
        mock_smtp.side_effect = TimeoutError("timed out")

        result = self._channel().send("alice@example.com", self._message())
        assert result.error_kind == FailureKind.TRANSPORT_TIMEOUT

    @patch("parcelnotify.notification.channels.email.smtplib.SMTP")
    def test_connection_refused_is_transport_error(self, mock_smtp):
        mock_smtp.side_effect = ConnectionRefusedError()

        result = self._channel().send("alice@example.com", self._message())
        assert result.error_kind == FailureKind.TRANSPORT_ERROR

    @patch("parcelnotify.notification.channels.email.smtplib.SMTP")
    def test_destination_not_logged(self, mock_smtp, caplog):
        mock_smtp.return_value.__enter__.return_value = MagicMock()
        with caplog.at_level("INFO"):
            self._channel().send("alice@example.com", self._message())
        assert "alice@example.com" not in caplog.text


# ===========================================================================
# SMS
# ===========================================================================

class TestSmsChannel:
    def test_success_posts_bearer_json(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"message_id": "sms-42"})

        channel = SmsChannel("https://sms.example/send", "key-1", sender_id="TRACK", client=_client(handler))
        result = channel.send("+66812345678", _message("sms"))

        assert result.success is True
        assert result.provider_ref == "sms-42"
        assert seen["auth"] == "Bearer key-1"
        assert seen["body"] == {"to": "+66812345678", "from": "TRACK", "message": "Package TH1 delivered."}

    @pytest.mark.parametrize(
        "code, kind",
        [
            (429, FailureKind.CARRIER_THROTTLED),
            (400, FailureKind.INVALID_ADDRESS),
            (401, FailureKind.PROVIDER_REJECTED),
            (503, FailureKind.TRANSPORT_ERROR),
        ],
    )
    def test_status_mapping(self, code, kind):
        channel = SmsChannel("https://sms.example/send", "k", client=_client(_status(code)))
        result = channel.send("+66812345678", _message("sms"))
        assert result.success is False
        assert result.error_kind == kind

    def test_timeout(self):
        channel = SmsChannel("https://sms.example/send", "k", client=_client(_raise(httpx.ConnectTimeout)))
        assert channel.send("+66812345678", _message("sms")).error_kind == FailureKind.TRANSPORT_TIMEOUT

    def test_connection_error(self):
        channel = SmsChannel("https://sms.example/send", "k", client=_client(_raise(httpx.ConnectError)))
        assert channel.send("+66812345678", _message("sms")).error_kind == FailureKind.TRANSPORT_ERROR

    def test_check_delivery_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/status/sms-42"
            return httpx.Response(200, json={"status": "delivered", "delivered_at": "2026-10-19T10:00:00Z"})

        channel = SmsChannel(
            "https://sms.example/send", "k", status_url="https://sms.example/status", client=_client(handler)
        )
        status = channel.check_delivery_status("sms-42")
        assert status["status"] == "delivered"
        assert status["provider_ref"] == "sms-42"

    def test_check_delivery_status_without_status_url(self):
        channel = SmsChannel("https://sms.example/send", "k", client=_client(_status(200)))
        assert channel.check_delivery_status("sms-42")["status"] == "unknown"


# ===========================================================================
# Chat
# ===========================================================================

class TestChatChannel:
    def test_push_contains_text_and_card(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={}, headers={"x-line-request-id": "req-1"})

        channel = ChatChannel("https://chat.example/push", "token", client=_client(handler))
        result = channel.send("U4af4980629", _message("chat"))

        assert result.success is True
        assert result.provider_ref == "req-1"
        text, card = seen["body"]["messages"]
        assert seen["body"]["to"] == "U4af4980629"
        assert text == {"type": "text", "text": "Package TH1 delivered."}
        assert card["type"] == "flex"
        assert "TH1" in json.dumps(card)

    @pytest.mark.parametrize("code", [403, 404, 410])
    def test_revoked_recipient(self, code):
        channel = ChatChannel("https://chat.example/push", "token", client=_client(_status(code)))
        assert channel.send("U1", _message("chat")).error_kind == FailureKind.RECIPIENT_REVOKED

    def test_server_error_is_transient(self):
        channel = ChatChannel("https://chat.example/push", "token", client=_client(_status(500)))
        assert channel.send("U1", _message("chat")).error_kind == FailureKind.TRANSPORT_ERROR

    def test_bad_request_is_rejected(self):
        channel = ChatChannel("https://chat.example/push", "token", client=_client(_status(400)))
        assert channel.send("U1", _message("chat")).error_kind == FailureKind.PROVIDER_REJECTED


# ===========================================================================
# Webhook
# ===========================================================================

class TestWebhookChannel:
    def _webhook_message(self) -> RenderedMessage:
        return _message(
            "webhook",
            body="",
            payload={"event": "shipment.updated", "event_code": "Delivered", "data": {"tracking_number": "TH1"}},
        )

    def _channel(self, handler) -> WebhookChannel:
        return WebhookChannel(
            SECRET,
            client=_client(handler),
            clock=lambda: datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc),
        )

    def test_signature_verifies_against_raw_body(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = request.content
            seen["signature"] = request.headers[SIGNATURE_HEADER]
            return httpx.Response(204)

        result = self._channel(handler).send("https://merchant.example/hook", self._webhook_message())

        assert result.success is True
        assert verify_signature(seen["body"], seen["signature"], SECRET) is True
        assert verify_signature(seen["body"], seen["signature"], "wrong-secret") is False
        payload = json.loads(seen["body"])
        assert payload["event"] == "shipment.updated"
        assert payload["timestamp"] == "2026-10-19T10:00:00+00:00"
        assert payload["data"] == {"tracking_number": "TH1"}

    def test_timestamp_header_matches_body(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = request.content
            seen["timestamp"] = request.headers[TIMESTAMP_HEADER]
            return httpx.Response(200)

        self._channel(handler).send("https://merchant.example/hook", self._webhook_message())

        assert seen["timestamp"] == "2026-10-19T10:00:00+00:00"
        assert json.loads(seen["body"])["timestamp"] == seen["timestamp"]

    @pytest.mark.parametrize(
        "code, kind",
        [
            (500, FailureKind.TRANSPORT_ERROR),
            (408, FailureKind.TRANSPORT_ERROR),
            (429, FailureKind.CARRIER_THROTTLED),
            (404, FailureKind.PROVIDER_REJECTED),
            (301, FailureKind.PROVIDER_REJECTED),
        ],
    )
    def test_non_2xx_mapping(self, code, kind):
        result = self._channel(_status(code)).send("https://merchant.example/hook", self._webhook_message())
        assert result.success is False
        assert result.error_kind == kind

    def test_dns_failure_is_transport_error(self):
        result = self._channel(_raise(httpx.ConnectError)).send(
            "https://merchant.example/hook", self._webhook_message()
        )
        assert result.error_kind == FailureKind.TRANSPORT_ERROR

    def test_timeout(self):
        result = self._channel(_raise(httpx.ReadTimeout)).send(
            "https://merchant.example/hook", self._webhook_message()
        )
        assert result.error_kind == FailureKind.TRANSPORT_TIMEOUT


# ===========================================================================
# Factory
# ===========================================================================

class TestBuildChannels:
    def test_one_transport_per_channel(self, settings):
        channels = build_channels(settings)
        assert set(channels) == {c.value for c in ChannelType}
        assert isinstance(channels[ChannelType.EMAIL], EmailChannel)
        assert isinstance(channels[ChannelType.WEBHOOK], WebhookChannel)
        assert channels[ChannelType.SMS].timeout == settings.channel_timeout_s
