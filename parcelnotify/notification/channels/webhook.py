"""Signed outbound webhook channel.

The rendered payload is serialised once to canonical JSON (sorted keys,
compact separators) with a ``timestamp`` added; the exact bytes sent are
what the ``X-Webhook-Signature`` header (hex HMAC-SHA256 with the shared
secret) covers, so receivers verify against the raw request body.  The same
timestamp is repeated in the ``X-Webhook-Timestamp`` header.

Status mapping: 2xx success; 408, 429 and 5xx transient; any other
non-2xx is a permanent rejection.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone

import httpx

from parcelnotify.core.constants import ChannelType
from parcelnotify.core.security import SIGNATURE_HEADER, TIMESTAMP_HEADER, sign_payload
from parcelnotify.notification.channels.base import DeliveryResult, clip_response
from parcelnotify.notification.channels.http import HttpChannel
from parcelnotify.notification.errors import (
    ChannelRejectedError,
    ChannelTransportError,
    FailureKind,
)
from parcelnotify.notification.template_manager import RenderedMessage

logger = logging.getLogger(__name__)

_TRANSIENT_STATUSES = frozenset({408, 429})


def encode_body(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class WebhookChannel(HttpChannel):
    name = ChannelType.WEBHOOK

    def __init__(
        self,
        secret: str,
        *,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self.secret = secret
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build_request(self, message: RenderedMessage) -> tuple[bytes, dict[str, str]]:
        """Return the body bytes and headers for *message*."""
        payload = dict(message.payload or {})
        timestamp = self._clock().isoformat()
        payload["timestamp"] = timestamp
        body = encode_body(payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, self.secret),
            TIMESTAMP_HEADER: timestamp,
        }
        return body, headers

    def _deliver(self, destination: str, message: RenderedMessage) -> DeliveryResult:
        body, headers = self.build_request(message)
        response = self._request("POST", destination, content=body, headers=headers)
        code = response.status_code
        if 200 <= code < 300:
            return DeliveryResult(
                success=True,
                provider_ref=response.headers.get("x-request-id"),
                status_code=code,
                provider_response=clip_response(response.text),
            )
        if code in _TRANSIENT_STATUSES or code >= 500:
            kind = FailureKind.CARRIER_THROTTLED if code == 429 else FailureKind.TRANSPORT_ERROR
            raise ChannelTransportError(f"Webhook endpoint returned HTTP {code}", failure_kind=kind)
        raise ChannelRejectedError(f"Webhook endpoint returned HTTP {code}")
