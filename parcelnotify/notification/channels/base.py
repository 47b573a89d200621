"""Channel capability shared by every transport.

A channel turns a ``RenderedMessage`` into one outbound delivery attempt.
``send`` never raises: transport failures are converted into a failed
``DeliveryResult`` carrying a ``FailureKind``, and the retry decision is
left to the retry policy.

Safety: destinations are never logged by channels, only the channel name
and the outcome.
"""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from parcelnotify.notification.errors import (
    ChannelRejectedError,
    ChannelTransportError,
    FailureKind,
    TRANSIENT_FAILURE_KINDS,
)
from parcelnotify.notification.template_manager import RenderedMessage

logger = logging.getLogger(__name__)

_MAX_PROVIDER_RESPONSE = 2000


@dataclass
class DeliveryResult:
    """Outcome of a single ``Channel.send`` call."""

    success: bool
    provider_ref: str | None = None
    error_kind: FailureKind | None = None
    error_message: str | None = None
    status_code: int | None = None
    provider_response: str | None = None
    response_time_ms: int | None = None

    @classmethod
    def failed(cls, kind: FailureKind, message: str, **kwargs) -> DeliveryResult:
        return cls(success=False, error_kind=kind, error_message=message, **kwargs)


def clip_response(text: str | None) -> str | None:
    """Bound provider response text before it is stored in the ledger."""
    if text is None:
        return None
    return text[:_MAX_PROVIDER_RESPONSE]


class Channel(ABC):
    """Polymorphic transport.  Subclasses implement ``_deliver``."""

    #: ``ChannelType`` value this transport serves.
    name: str = ""

    def send(self, destination: str, message: RenderedMessage) -> DeliveryResult:
        """Deliver *message* to *destination* and return the outcome."""
        started = time.monotonic()
        try:
            result = self._deliver(destination, message)
        except ChannelRejectedError as exc:
            result = DeliveryResult.failed(exc.failure_kind, str(exc))
        except ChannelTransportError as exc:
            result = DeliveryResult.failed(exc.failure_kind, str(exc))
        result.response_time_ms = int((time.monotonic() - started) * 1000)

        if result.success:
            logger.info("%s send succeeded in %d ms", self.name, result.response_time_ms)
        elif result.error_kind in TRANSIENT_FAILURE_KINDS:
            logger.warning("%s send failed (%s): %s", self.name, result.error_kind, result.error_message)
        else:
            logger.error("%s send rejected (%s): %s", self.name, result.error_kind, result.error_message)
        return result

    @abstractmethod
    def _deliver(self, destination: str, message: RenderedMessage) -> DeliveryResult:
        """Perform the transport call.

        May raise ``ChannelRejectedError`` or ``ChannelTransportError``;
        ``send`` converts them to a failed result.
        """

    def check_delivery_status(self, provider_ref: str) -> dict:
        """Ask the provider whether *provider_ref* reached the recipient.

        Returns a dict with at least ``status``; transports without a
        status API report ``"unknown"``.
        """
        return {"status": "unknown", "provider_ref": provider_ref}
