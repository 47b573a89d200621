"""Channel variants and the factory that builds them from settings."""
from __future__ import annotations

from parcelnotify.core.constants import ChannelType
from parcelnotify.notification.channels.base import Channel, DeliveryResult
from parcelnotify.notification.channels.chat import ChatChannel
from parcelnotify.notification.channels.email import EmailChannel
from parcelnotify.notification.channels.sms import SmsChannel
from parcelnotify.notification.channels.webhook import WebhookChannel

__all__ = [
    "Channel",
    "ChatChannel",
    "DeliveryResult",
    "EmailChannel",
    "SmsChannel",
    "WebhookChannel",
    "build_channels",
]


def build_channels(settings) -> dict[str, Channel]:
    """Return one configured transport per ``ChannelType``."""
    timeout = settings.channel_timeout_s
    return {
        ChannelType.EMAIL: EmailChannel(
            settings.smtp_host,
            settings.smtp_port,
            mail_from=settings.mail_from,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            timeout=timeout,
        ),
        ChannelType.SMS: SmsChannel(
            settings.sms_api_url,
            settings.sms_api_key,
            sender_id=settings.sms_sender_id,
            status_url=settings.sms_status_url,
            timeout=timeout,
        ),
        ChannelType.CHAT: ChatChannel(
            settings.chat_api_url,
            settings.chat_access_token,
            timeout=timeout,
        ),
        ChannelType.WEBHOOK: WebhookChannel(settings.webhook_secret, timeout=timeout),
    }
