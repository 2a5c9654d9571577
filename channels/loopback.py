"""
Loopback Transport — in-process stand-in for the real messaging transport.

Provides:
- connect/disconnect/sign_off bookkeeping with live-handle tracking
- Outbound: text, image and other media are recorded in `sent`
- Linking: QR-style artifact on connect when no credentials are stored,
  short alphanumeric codes on request
- `emit()` / `receive_text()` / `open()` / `drop()` helpers to inject
  transport events for a profile's current handle

Used by the development runner and the test-suite.
"""
from __future__ import annotations

import secrets
import string
import uuid
import structlog
from typing import Any, Optional

from channels.base import (
    EventSink, LinkingError, MessagingTransport, TransportError, TransportHandle,
)
from models.events import (
    ConnectionUpdate, LinkingArtifact, MessageReceived, TransportEvent,
)
from models.schemas import ConnectionState

logger = structlog.get_logger()

_CODE_ALPHABET = string.ascii_uppercase + string.digits


class LoopbackTransport(MessagingTransport):

    def __init__(self, emit_qr_on_connect: bool = True):
        self.emit_qr_on_connect = emit_qr_on_connect
        self.handles: dict[str, TransportHandle] = {}       # profile_id → live handle
        self.credentials: dict[str, dict[str, Any]] = {}
        self.sent: list[dict[str, Any]] = []
        self.connect_calls: list[str] = []
        self.disconnect_calls: list[str] = []
        self.fail_connect: bool = False
        self.fail_send: bool = False
        self.fail_sign_off: bool = False

    # ── Connection ────────────────────────────────────────────

    async def connect(self, profile_id: str, sink: EventSink) -> TransportHandle:
        self.connect_calls.append(profile_id)
        if self.fail_connect:
            raise TransportError("connect refused", profile_id, retryable=True)

        handle = TransportHandle(profile_id, sink)
        self.handles[profile_id] = handle
        logger.info("loopback_connected", profile_id=profile_id, handle=handle.id)

        handle.emit(ConnectionUpdate(state=ConnectionState.CONNECTING))
        if self.emit_qr_on_connect and profile_id not in self.credentials:
            handle.emit(LinkingArtifact(artifact_kind="image", value=f"qr:{uuid.uuid4().hex}"))
        return handle

    async def disconnect(self, handle: TransportHandle) -> None:
        self.disconnect_calls.append(handle.profile_id)
        handle.closed = True
        if self.handles.get(handle.profile_id) is handle:
            del self.handles[handle.profile_id]

    async def sign_off(self, handle: TransportHandle) -> None:
        if self.fail_sign_off:
            raise TransportError("sign-off failed", handle.profile_id)
        self.credentials.pop(handle.profile_id, None)
        handle.emit(ConnectionUpdate(state=ConnectionState.CLOSED, error_code=401, reason="logged out"))

    # ── Outbound ──────────────────────────────────────────────

    def _record(self, handle: TransportHandle, contact_id: str, **content) -> dict[str, Any]:
        if handle.closed:
            raise TransportError("handle closed", handle.profile_id)
        if self.fail_send:
            raise TransportError("send failed", handle.profile_id, retryable=True)
        message_id = f"LB{uuid.uuid4().hex[:16].upper()}"
        self.sent.append({
            "profile_id": handle.profile_id,
            "contact_id": contact_id,
            "message_id": message_id,
            **content,
        })
        return {"status": "sent", "message_id": message_id}

    async def send_text(self, handle: TransportHandle, contact_id: str, text: str) -> dict[str, Any]:
        return self._record(handle, contact_id, type="text", text=text)

    async def send_image(
        self, handle: TransportHandle, contact_id: str, url: str, caption: Optional[str] = None,
    ) -> dict[str, Any]:
        return self._record(handle, contact_id, type="image", url=url, caption=caption)

    async def send_media(
        self,
        handle: TransportHandle,
        contact_id: str,
        media_kind: str,
        url: str,
        caption: Optional[str] = None,
        mimetype: Optional[str] = None,
    ) -> dict[str, Any]:
        return self._record(
            handle, contact_id, type=media_kind, url=url, caption=caption, mimetype=mimetype,
        )

    async def request_linking_code(self, handle: TransportHandle, phone_number: str) -> str:
        digits = "".join(c for c in phone_number if c.isdigit())
        if not digits:
            raise LinkingError("A phone number is required for a linking code", handle.profile_id)
        return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(8))

    # ── Credentials ───────────────────────────────────────────

    def save_credentials(self, profile_id: str, payload: dict[str, Any]) -> None:
        self.credentials.setdefault(profile_id, {}).update(payload)

    def clear_credentials(self, profile_id: str) -> None:
        self.credentials.pop(profile_id, None)

    def has_credentials(self, profile_id: str) -> bool:
        return profile_id in self.credentials

    # ── Event injection ───────────────────────────────────────

    def emit(self, profile_id: str, event: TransportEvent):
        handle = self.handles.get(profile_id)
        if handle is None:
            raise TransportError(f"No live handle for {profile_id}", profile_id)
        handle.emit(event)

    def open(self, profile_id: str):
        self.credentials.setdefault(profile_id, {"linked": True})
        self.emit(profile_id, ConnectionUpdate(state=ConnectionState.OPEN))

    def drop(self, profile_id: str, error_code: Optional[int] = None, reason: str = ""):
        self.emit(profile_id, ConnectionUpdate(
            state=ConnectionState.CLOSED, error_code=error_code, reason=reason,
        ))

    def receive_text(
        self, profile_id: str, contact_id: str, text: str,
        sender_name: Optional[str] = None, from_me: bool = False,
    ):
        self.emit(profile_id, MessageReceived(
            message_id=uuid.uuid4().hex[:16].upper(),
            contact_id=contact_id,
            text=text,
            sender_display_name=sender_name,
            from_me=from_me,
        ))

    def texts_to(self, contact_id: str) -> list[str]:
        return [m["text"] for m in self.sent if m["contact_id"] == contact_id and m["type"] == "text"]
