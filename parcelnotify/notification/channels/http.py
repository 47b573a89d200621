"""Shared plumbing for channels that talk to an HTTP provider."""
from __future__ import annotations

import httpx

from parcelnotify.notification.channels.base import Channel
from parcelnotify.notification.errors import ChannelTransportError, FailureKind


class HttpChannel(Channel):
    """Channel backed by an ``httpx.Client``.

    Parameters
    ----------
    timeout:
        Per-call timeout in seconds, applied to every request.
    client:
        Optional pre-built client (tests pass one wrapping
        ``httpx.MockTransport``).  When omitted, a client is created
        lazily and reused across calls.
    """

    def __init__(self, *, timeout: float = 10.0, client: httpx.Client | None = None) -> None:
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Issue a request, translating transport failures to ``ChannelTransportError``."""
        try:
            return self.client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise ChannelTransportError(
                f"{self.name} request timed out after {self.timeout}s",
                failure_kind=FailureKind.TRANSPORT_TIMEOUT,
            ) from exc
        except httpx.HTTPError as exc:
            raise ChannelTransportError(f"{self.name} transport error: {type(exc).__name__}") from exc
