"""SMTP email channel.

Sends a ``multipart/alternative`` message (plain text + HTML) through the
configured relay.  Each call opens its own connection with the
per-call timeout, so a stuck relay only blocks the calling worker.

SMTP replies are mapped to failure kinds:

- recipient refused          → INVALID_ADDRESS
- 5xx reply / refused sender → PROVIDER_REJECTED
- 4xx reply, connection loss → TRANSPORT_ERROR
- socket timeout             → TRANSPORT_TIMEOUT
"""
from __future__ import annotations

import logging
import smtplib
import socket
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

from parcelnotify.core.constants import ChannelType
from parcelnotify.notification.channels.base import Channel, DeliveryResult
from parcelnotify.notification.errors import (
    ChannelRejectedError,
    ChannelTransportError,
    FailureKind,
)
from parcelnotify.notification.template_manager import RenderedMessage

logger = logging.getLogger(__name__)


class EmailChannel(Channel):
    name = ChannelType.EMAIL

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int = 587,
        *,
        mail_from: str = "noreply@tracking.local",
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = False,
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.mail_from = mail_from
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def build_message(self, destination: str, message: RenderedMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject or ""
        msg["From"] = self.mail_from
        msg["To"] = destination
        msg["Message-ID"] = make_msgid(domain=self.mail_from.rpartition("@")[2] or None)
        msg.attach(MIMEText(message.plain_text, "plain", "utf-8"))
        msg.attach(MIMEText(message.body, "html", "utf-8"))
        return msg

    def _deliver(self, destination: str, message: RenderedMessage) -> DeliveryResult:
        msg = self.build_message(destination, message)
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password or "")
                server.sendmail(self.mail_from, [destination], msg.as_string())
        except smtplib.SMTPRecipientsRefused as exc:
            raise ChannelRejectedError(
                "Recipient refused by relay", failure_kind=FailureKind.INVALID_ADDRESS
            ) from exc
        except smtplib.SMTPResponseException as exc:
            # SMTPSenderRefused and SMTPDataError carry the reply code too.
            text = f"SMTP {exc.smtp_code}"
            if 400 <= exc.smtp_code < 500:
                raise ChannelTransportError(text) from exc
            raise ChannelRejectedError(text) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ChannelTransportError(
                "SMTP timeout", failure_kind=FailureKind.TRANSPORT_TIMEOUT
            ) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelTransportError(f"SMTP connection error: {type(exc).__name__}") from exc

        return DeliveryResult(
            success=True,
            provider_ref=msg["Message-ID"],
            provider_response="250 OK",
        )
