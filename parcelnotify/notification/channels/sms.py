"""SMS gateway channel.

POSTs ``{to, from, message}`` to the gateway with a bearer token.  The
body arrives already truncated to the segment limit by the template
manager.
"""
from __future__ import annotations

import logging

import httpx

from parcelnotify.core.constants import ChannelType
from parcelnotify.notification.channels.base import DeliveryResult, clip_response
from parcelnotify.notification.channels.http import HttpChannel
from parcelnotify.notification.errors import (
    ChannelRejectedError,
    ChannelTransportError,
    FailureKind,
)
from parcelnotify.notification.template_manager import RenderedMessage

logger = logging.getLogger(__name__)


class SmsChannel(HttpChannel):
    name = ChannelType.SMS

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        sender_id: str = "TRACKING",
        status_url: str | None = None,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self.api_url = api_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.status_url = status_url

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _deliver(self, destination: str, message: RenderedMessage) -> DeliveryResult:
        response = self._request(
            "POST",
            self.api_url,
            headers=self._headers,
            json={"to": destination, "from": self.sender_id, "message": message.body},
        )
        code = response.status_code
        if code == 429:
            raise ChannelTransportError(
                "SMS gateway throttled the request", failure_kind=FailureKind.CARRIER_THROTTLED
            )
        if code >= 500:
            raise ChannelTransportError(f"SMS gateway returned HTTP {code}")
        if code in (400, 422):
            raise ChannelRejectedError(
                f"SMS gateway rejected destination (HTTP {code})",
                failure_kind=FailureKind.INVALID_ADDRESS,
            )
        if code >= 400:
            raise ChannelRejectedError(f"SMS gateway returned HTTP {code}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        return DeliveryResult(
            success=True,
            provider_ref=data.get("message_id"),
            status_code=code,
            provider_response=clip_response(response.text),
        )

    def check_delivery_status(self, provider_ref: str) -> dict:
        if not self.status_url:
            return super().check_delivery_status(provider_ref)
        try:
            response = self._request(
                "GET", f"{self.status_url.rstrip('/')}/{provider_ref}", headers=self._headers
            )
        except ChannelTransportError as exc:
            logger.warning("SMS status check failed: %s", exc)
            return {"status": "unknown", "provider_ref": provider_ref}
        if response.status_code != 200:
            return {"status": "unknown", "provider_ref": provider_ref}
        try:
            data = response.json()
        except ValueError:
            data = {}
        return {
            "status": data.get("status", "unknown"),
            "provider_ref": provider_ref,
            "delivered_at": data.get("delivered_at"),
        }
