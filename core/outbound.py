"""
Outbound Messenger — validated sends on behalf of an external caller.

Provides:
- send(): text or media to a phone number / contact id through the
  profile's live connection, with `message_sent` / `message_failed`
  webhooks
- inject_inbound(): record a message delivered by an external system and
  forward it as `message_received`
- Media kind detection: file extension first, HTTP HEAD content-type
  second, `document` otherwise
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from channels.base import NotConnectedError, TransportError
from core.lifecycle import ConnectionLifecycleManager
from database.profile_store import ProfileDataStore
from job_queue.webhook_queue import WebhookDeliveryQueue
from models.events import MessageReceived
from utils.text import to_contact_id

logger = structlog.get_logger()

IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp"}
VIDEO_EXTENSIONS = {"mp4", "avi", "mov"}
AUDIO_EXTENSIONS = {"mp3", "wav", "ogg"}


class SendRequestError(ValueError):
    """The caller's request is missing required fields or is malformed."""


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def media_kind_from_extension(url: str) -> Optional[str]:
    path = urlparse(url).path or url
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in VIDEO_EXTENSIONS:
        return "video"
    if ext in AUDIO_EXTENSIONS:
        return "audio"
    return None


def media_kind_from_content_type(content_type: str) -> str:
    if "image" in content_type:
        return "image"
    if "video" in content_type:
        return "video"
    if "audio" in content_type:
        return "audio"
    return "document"


class OutboundMessenger:

    def __init__(
        self,
        lifecycle: ConnectionLifecycleManager,
        webhooks: WebhookDeliveryQueue,
        profiles: ProfileDataStore,
        client: Optional[httpx.AsyncClient] = None,
        probe_timeout_s: float = 5.0,
    ):
        self.lifecycle = lifecycle
        self.webhooks = webhooks
        self.profiles = profiles
        self._client = client
        self._owns_client = client is None
        self.probe_timeout_s = probe_timeout_s

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.probe_timeout_s, follow_redirects=True)
            self._owns_client = True
        return self._client

    async def detect_media(self, url: str) -> tuple[str, Optional[str]]:
        """Return (kind, mimetype) for a media URL."""
        kind = media_kind_from_extension(url)
        if kind:
            return kind, None
        try:
            client = await self._get_client()
            response = await client.head(url)
        except httpx.HTTPError as e:
            logger.warning("media_probe_failed", url=url, error=str(e))
            return "document", None
        content_type = response.headers.get("content-type", "")
        return media_kind_from_content_type(content_type), content_type or None

    async def send(
        self,
        profile_id: str,
        phone: str,
        message: Optional[str] = None,
        media: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> dict[str, Any]:
        if not phone:
            raise SendRequestError("Phone is required")
        if not message and not media:
            raise SendRequestError("Message or media is required")

        contact_id = to_contact_id(phone)
        try:
            if media:
                kind, mimetype = await self.detect_media(media)
                if kind == "document":
                    mimetype = mimetype or "application/octet-stream"
                elif kind != "audio":
                    mimetype = None
                result = await self.lifecycle.send_media(
                    profile_id, contact_id, kind, media, caption or "", mimetype,
                )
            else:
                result = await self.lifecycle.send_text(profile_id, contact_id, message)
        except NotConnectedError:
            raise
        except TransportError as e:
            logger.warning("outbound_send_failed", profile_id=profile_id, to=contact_id, error=str(e))
            self.webhooks.trigger(profile_id, "message_failed", {"to": contact_id, "error": str(e)})
            raise

        message_id = result.get("message_id") if isinstance(result, dict) else None
        self.webhooks.trigger(profile_id, "message_sent", {
            "to": contact_id,
            "message": message or "media",
            "messageId": message_id,
        })
        logger.info("outbound_message_sent", profile_id=profile_id, to=contact_id, message_id=message_id)
        return {"messageId": message_id, "status": "sent", "timestamp": _utc_now_iso()}

    def inject_inbound(self, profile_id: str, body: dict[str, Any]) -> dict[str, Any]:
        """Record a message handed over by an external system."""
        sender = body.get("from")
        if not sender:
            raise SendRequestError("'from' is required")

        fields: dict[str, Any] = {
            "message_id": f"ext_{self.webhooks.scheduler.now_ms()}",
            "contact_id": to_contact_id(str(sender)),
            "text": body.get("message") or "",
            "sender_display_name": body.get("senderName") or "External",
        }
        if body.get("time"):
            fields["timestamp"] = body["time"]
        try:
            event = MessageReceived(**fields)
        except ValidationError as e:
            raise SendRequestError(f"Invalid inbound message: {e.error_count()} field error(s)") from e

        record = event.to_record()
        self.profiles.add_message(profile_id, record)
        self.webhooks.trigger(profile_id, "message_received", {**body, "source": "external_webhook"})
        logger.info("inbound_message_injected", profile_id=profile_id, contact_id=event.contact_id)
        return record

    async def close(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
