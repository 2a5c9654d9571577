"""
Messaging Transport — the collaborator that owns the real-time link.

The wire protocol is not implemented here. A transport:
- opens one handle per profile connection and raises envelope events
  (models.events) through the sink it was given at connect time
- accepts commands against a handle: send text/image/media, request a
  linking code, graceful sign-off, forced disconnect
- owns its own credential storage (save on credentials-changed, discard
  on demand)

Provides:
- TransportError: structured error hierarchy
- TransportHandle: opaque per-connection handle
- MessagingTransport: abstract base every transport implements
"""
from __future__ import annotations

import abc
import uuid
from typing import Any, Callable, Optional

from models.events import TransportEvent

EventSink = Callable[[TransportEvent], None]


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class TransportError(Exception):
    """Base exception for all transport operations."""

    def __init__(self, message: str, profile_id: str = "", retryable: bool = False):
        self.profile_id = profile_id
        self.retryable = retryable
        super().__init__(message)


class NotConnectedError(TransportError):
    def __init__(self, profile_id: str = ""):
        super().__init__(f"Profile {profile_id} is not connected", profile_id, retryable=True)


class LinkingError(TransportError):
    pass


# ══════════════════════════════════════════════════════════════
#  HANDLE
# ══════════════════════════════════════════════════════════════

class TransportHandle:
    """One live connection. Exclusively owned by a ConnectionSession."""

    def __init__(self, profile_id: str, sink: EventSink):
        self.id = uuid.uuid4().hex[:12]
        self.profile_id = profile_id
        self.sink = sink
        self.closed = False

    def emit(self, event: TransportEvent):
        if not self.closed:
            self.sink(event)

    def __repr__(self):
        return f"<TransportHandle {self.profile_id}/{self.id}{' closed' if self.closed else ''}>"


# ══════════════════════════════════════════════════════════════
#  TRANSPORT — Abstract Base
# ══════════════════════════════════════════════════════════════

class MessagingTransport(abc.ABC):
    """
    Base class for messaging transports.

    Events raised after `disconnect()` on a handle are dropped by the
    handle itself; the lifecycle manager additionally ignores events from
    any handle that is no longer current.
    """

    @abc.abstractmethod
    async def connect(self, profile_id: str, sink: EventSink) -> TransportHandle:
        ...

    @abc.abstractmethod
    async def disconnect(self, handle: TransportHandle) -> None:
        """Forcibly terminate the handle."""
        ...

    @abc.abstractmethod
    async def sign_off(self, handle: TransportHandle) -> None:
        """Graceful logout on the remote side."""
        ...

    @abc.abstractmethod
    async def send_text(self, handle: TransportHandle, contact_id: str, text: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def send_image(
        self, handle: TransportHandle, contact_id: str, url: str, caption: Optional[str] = None,
    ) -> dict[str, Any]:
        ...

    async def send_media(
        self,
        handle: TransportHandle,
        contact_id: str,
        media_kind: str,
        url: str,
        caption: Optional[str] = None,
        mimetype: Optional[str] = None,
    ) -> dict[str, Any]:
        if media_kind == "image":
            return await self.send_image(handle, contact_id, url, caption)
        raise TransportError(f"Media kind '{media_kind}' not supported", handle.profile_id)

    @abc.abstractmethod
    async def request_linking_code(self, handle: TransportHandle, phone_number: str) -> str:
        ...

    @abc.abstractmethod
    def save_credentials(self, profile_id: str, payload: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    def clear_credentials(self, profile_id: str) -> None:
        """Discard locally cached credentials so the next connect links afresh."""
        ...

    def has_credentials(self, profile_id: str) -> bool:
        return False
