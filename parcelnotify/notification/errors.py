"""Notification failure taxonomy.

Every failure carries a ``FailureKind``.  Whether a kind is retried is
decided in one place only, ``parcelnotify.dispatch.retry.RetryPolicy``,
from the kind itself, never from error message text.

Permanent kinds
---------------
INVALID_ADDRESS     : destination rejected as malformed or unknown
PROVIDER_REJECTED   : provider refused the message (4xx, 5xx SMTP reply)
RECIPIENT_REVOKED   : chat recipient blocked or removed the integration
CONSENT_REQUIRED    : subscription has no recorded consent
TEMPLATE_NOT_FOUND  : no template for the channel/event/locale (configuration gap)
CHANNEL_UNAVAILABLE : no transport configured for the subscription's channel

Transient kinds
---------------
TRANSPORT_TIMEOUT   : the per-call timeout elapsed
TRANSPORT_ERROR     : DNS, connection, or provider 5xx failure
CARRIER_THROTTLED   : provider asked us to slow down (429)
INTERNAL_ERROR      : unexpected fault while preparing the dispatch
"""
from __future__ import annotations

from enum import StrEnum


class FailureKind(StrEnum):
    INVALID_ADDRESS = "invalid_address"
    PROVIDER_REJECTED = "provider_rejected"
    RECIPIENT_REVOKED = "recipient_revoked"
    CONSENT_REQUIRED = "consent_required"
    TEMPLATE_NOT_FOUND = "template_not_found"
    CHANNEL_UNAVAILABLE = "channel_unavailable"
    TRANSPORT_TIMEOUT = "transport_timeout"
    TRANSPORT_ERROR = "transport_error"
    CARRIER_THROTTLED = "carrier_throttled"
    INTERNAL_ERROR = "internal_error"


TRANSIENT_FAILURE_KINDS: frozenset[FailureKind] = frozenset({
    FailureKind.TRANSPORT_TIMEOUT,
    FailureKind.TRANSPORT_ERROR,
    FailureKind.CARRIER_THROTTLED,
    FailureKind.INTERNAL_ERROR,
})


class NotificationError(Exception):
    """Base class for dispatch failures."""

    failure_kind: FailureKind = FailureKind.INTERNAL_ERROR

    def __init__(self, message: str, *, failure_kind: FailureKind | None = None) -> None:
        super().__init__(message)
        if failure_kind is not None:
            self.failure_kind = failure_kind


class ConsentRequiredError(NotificationError):
    """Raised when a send is attempted for a subscription without consent."""

    failure_kind = FailureKind.CONSENT_REQUIRED


class TemplateNotFoundError(NotificationError):
    """Raised when no template resolves for (channel, event_code, locale)."""

    failure_kind = FailureKind.TEMPLATE_NOT_FOUND


class ChannelTransportError(NotificationError):
    """Transient transport failure: timeout, connection error, throttling."""

    failure_kind = FailureKind.TRANSPORT_ERROR


class ChannelRejectedError(NotificationError):
    """Permanent rejection: bad destination or provider refusal."""

    failure_kind = FailureKind.PROVIDER_REJECTED


class DuplicateDispatchSkipped(Exception):
    """Not an error: the (subscription, event) pair is already handled.

    Raised by the delivery ledger when another dispatch owns the pair.
    """

    def __init__(self, subscription_id, event_id, status: str, delivery_record_id=None) -> None:
        super().__init__(
            f"Delivery for subscription {subscription_id} / event {event_id} "
            f"already recorded with status {status!r}"
        )
        self.subscription_id = subscription_id
        self.event_id = event_id
        self.status = status
        self.delivery_record_id = delivery_record_id
