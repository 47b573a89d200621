"""Push-style chat messaging channel (LINE Messaging API shape).

Each push carries a text message plus a flex "card" summarising the
shipment.  A 403/404/410 means the recipient blocked the account or
removed the integration, which is permanent.
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

_REVOKED_STATUSES = frozenset({403, 404, 410})


def build_card(variables: dict[str, str]) -> dict:
    """Flex bubble with tracking number, status and location."""
    rows = [
        ("Tracking", variables.get("tracking_number", "")),
        ("Status", variables.get("current_status", "")),
        ("Location", variables.get("facility", "") or variables.get("location", "")),
    ]
    return {
        "type": "flex",
        "altText": f"Shipment update {variables.get('tracking_number', '')}".strip(),
        "contents": {
            "type": "bubble",
            "body": {
                "type": "box",
                "layout": "vertical",
                "contents": [
                    {"type": "text", "text": "Shipment Update", "weight": "bold", "size": "lg"},
                    *(
                        {
                            "type": "box",
                            "layout": "baseline",
                            "contents": [
                                {"type": "text", "text": label, "size": "sm", "color": "#aaaaaa", "flex": 2},
                                {"type": "text", "text": value or "-", "size": "sm", "flex": 5, "wrap": True},
                            ],
                        }
                        for label, value in rows
                    ),
                ],
            },
        },
    }


class ChatChannel(HttpChannel):
    name = ChannelType.CHAT

    def __init__(
        self,
        api_url: str,
        access_token: str,
        *,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self.api_url = api_url
        self.access_token = access_token

    def build_payload(self, destination: str, message: RenderedMessage) -> dict:
        return {
            "to": destination,
            "messages": [
                {"type": "text", "text": message.body},
                build_card(message.variables),
            ],
        }

    def _deliver(self, destination: str, message: RenderedMessage) -> DeliveryResult:
        response = self._request(
            "POST",
            self.api_url,
            headers={"Authorization": f"Bearer {self.access_token}"},
            json=self.build_payload(destination, message),
        )
        code = response.status_code
        if code in _REVOKED_STATUSES:
            raise ChannelRejectedError(
                f"Chat recipient unavailable (HTTP {code})",
                failure_kind=FailureKind.RECIPIENT_REVOKED,
            )
        if code == 429:
            raise ChannelTransportError(
                "Chat API rate limit reached", failure_kind=FailureKind.CARRIER_THROTTLED
            )
        if code >= 500:
            raise ChannelTransportError(f"Chat API returned HTTP {code}")
        if code >= 400:
            raise ChannelRejectedError(f"Chat API returned HTTP {code}")

        return DeliveryResult(
            success=True,
            provider_ref=response.headers.get("x-line-request-id"),
            status_code=code,
            provider_response=clip_response(response.text),
        )
