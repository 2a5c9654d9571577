"""Tests for outbound sends, media detection and external inbound injection."""
import pytest
import pytest_asyncio
import httpx

from channels.base import NotConnectedError, TransportError
from core.lifecycle import ConnectionLifecycleManager
from core.outbound import (
    OutboundMessenger, SendRequestError, media_kind_from_content_type, media_kind_from_extension,
)
from job_queue.subscriptions import WebhookSubscriptionRegistry
from job_queue.webhook_queue import WebhookDeliveryQueue
from models.schemas import WebhookSubscription

EVENTS = ["message_sent", "message_failed", "message_received"]
CONTACT = "15550001111@s.whatsapp.net"
GROUP_ID = "120363000000000000@g.us"


class ProbeTarget:
    """Answers HEAD probes with a configurable content type."""

    def __init__(self):
        self.content_type = None
        self.raise_error = None
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_error is not None:
            raise self.raise_error
        headers = {"content-type": self.content_type} if self.content_type else {}
        return httpx.Response(200, headers=headers)


@pytest.fixture
def probe():
    return ProbeTarget()


@pytest.fixture
def webhooks(store, scheduler):
    subscriptions = WebhookSubscriptionRegistry(store)
    subscriptions.add("p1", WebhookSubscription(url="https://hooks.example.com/a", events=EVENTS))
    return WebhookDeliveryQueue(store, subscriptions, scheduler)


@pytest_asyncio.fixture
async def lifecycle(transport, scheduler):
    manager = ConnectionLifecycleManager(transport, scheduler)
    await manager.start("p1")
    transport.open("p1")
    await manager.wait_idle("p1")
    yield manager
    await manager.shutdown()


@pytest.fixture
def outbound(lifecycle, webhooks, profiles, probe):
    client = httpx.AsyncClient(transport=httpx.MockTransport(probe))
    return OutboundMessenger(lifecycle, webhooks, profiles, client=client)


def payloads(webhooks, event):
    return [t.payload for t in webhooks.pending() if t.event == event]


# ══════════════════════════════════════════════════════════════
#  Media detection
# ══════════════════════════════════════════════════════════════

class TestMediaKinds:
    def test_extension(self):
        assert media_kind_from_extension("https://cdn.example.com/a/photo.JPG?v=2") == "image"
        assert media_kind_from_extension("https://cdn.example.com/clip.mov") == "video"
        assert media_kind_from_extension("https://cdn.example.com/voice.ogg") == "audio"
        assert media_kind_from_extension("https://cdn.example.com/report.pdf") is None
        assert media_kind_from_extension("https://cdn.example.com/download") is None

    def test_content_type(self):
        assert media_kind_from_content_type("image/png") == "image"
        assert media_kind_from_content_type("video/mp4") == "video"
        assert media_kind_from_content_type("audio/mpeg") == "audio"
        assert media_kind_from_content_type("application/pdf") == "document"
        assert media_kind_from_content_type("") == "document"

    @pytest.mark.asyncio
    async def test_extension_skips_probe(self, outbound, probe):
        assert await outbound.detect_media("https://cdn.example.com/a.png") == ("image", None)
        assert probe.requests == []

    @pytest.mark.asyncio
    async def test_probe_by_head(self, outbound, probe):
        probe.content_type = "application/pdf"
        assert await outbound.detect_media("https://cdn.example.com/file") == ("document", "application/pdf")
        assert probe.requests[0].method == "HEAD"

    @pytest.mark.asyncio
    async def test_probe_failure_means_document(self, outbound, probe):
        probe.raise_error = httpx.ConnectTimeout("slow")
        assert await outbound.detect_media("https://cdn.example.com/file") == ("document", None)


# ══════════════════════════════════════════════════════════════
#  Sends
# ══════════════════════════════════════════════════════════════

class TestSend:
    @pytest.mark.asyncio
    async def test_validation(self, outbound):
        with pytest.raises(SendRequestError, match="Phone is required"):
            await outbound.send("p1", "", "hi")
        with pytest.raises(SendRequestError, match="Message or media is required"):
            await outbound.send("p1", "+1 555 000 1111")

    @pytest.mark.asyncio
    async def test_text(self, outbound, transport, webhooks):
        result = await outbound.send("p1", "+1 (555) 000-1111", "Your order shipped")
        assert result["status"] == "sent"
        assert result["timestamp"].endswith("Z")

        sent = transport.sent[-1]
        assert (sent["contact_id"], sent["type"], sent["text"]) == (CONTACT, "text", "Your order shipped")
        assert result["messageId"] == sent["message_id"]

        payload = payloads(webhooks, "message_sent")[0]
        assert payload["to"] == CONTACT
        assert payload["message"] == "Your order shipped"
        assert payload["messageId"] == sent["message_id"]

    @pytest.mark.asyncio
    async def test_contact_id_passes_through(self, outbound, transport):
        await outbound.send("p1", GROUP_ID, "hello group")
        assert transport.sent[-1]["contact_id"] == GROUP_ID

    @pytest.mark.asyncio
    async def test_image_by_extension(self, outbound, transport, webhooks):
        await outbound.send("p1", "15550001111", media="https://cdn.example.com/p.png", caption="Look")
        sent = transport.sent[-1]
        assert (sent["type"], sent["url"], sent["caption"], sent["mimetype"]) == (
            "image", "https://cdn.example.com/p.png", "Look", None,
        )
        assert payloads(webhooks, "message_sent")[0]["message"] == "media"

    @pytest.mark.asyncio
    async def test_document_gets_fallback_mimetype(self, outbound, transport, probe):
        await outbound.send("p1", "15550001111", media="https://cdn.example.com/download")
        sent = transport.sent[-1]
        assert (sent["type"], sent["mimetype"], sent["caption"]) == ("document", "application/octet-stream", "")

    @pytest.mark.asyncio
    async def test_audio_keeps_probed_mimetype(self, outbound, transport, probe):
        probe.content_type = "audio/ogg; codecs=opus"
        await outbound.send("p1", "15550001111", media="https://cdn.example.com/voice")
        assert transport.sent[-1]["mimetype"] == "audio/ogg; codecs=opus"

    @pytest.mark.asyncio
    async def test_probed_image_drops_mimetype(self, outbound, transport, probe):
        probe.content_type = "image/webp"
        await outbound.send("p1", "15550001111", media="https://cdn.example.com/img")
        assert (transport.sent[-1]["type"], transport.sent[-1]["mimetype"]) == ("image", None)

    @pytest.mark.asyncio
    async def test_not_connected(self, outbound, lifecycle, webhooks):
        with pytest.raises(NotConnectedError):
            await outbound.send("p2", "15550001111", "hi")
        assert len(webhooks) == 0

    @pytest.mark.asyncio
    async def test_transport_failure_triggers_message_failed(self, outbound, transport, webhooks):
        transport.fail_send = True
        with pytest.raises(TransportError):
            await outbound.send("p1", "15550001111", "hi")
        assert payloads(webhooks, "message_failed") == [{
            "event": "message_failed",
            "from": "p1",
            "to": CONTACT,
            "error": "send failed",
            "timestamp": payloads(webhooks, "message_failed")[0]["timestamp"],
        }]
        assert payloads(webhooks, "message_sent") == []


# ══════════════════════════════════════════════════════════════
#  External inbound
# ══════════════════════════════════════════════════════════════

class TestInjectInbound:
    def test_requires_from(self, outbound):
        with pytest.raises(SendRequestError):
            outbound.inject_inbound("p1", {"message": "hi"})

    def test_records_and_forwards(self, outbound, profiles, webhooks, scheduler):
        body = {"from": "+1 555 000 1111", "message": "Order #42 paid", "time": "2024-01-01T10:00:00Z"}
        record = outbound.inject_inbound("p1", body)

        assert record["message_id"] == f"ext_{scheduler.now_ms()}"
        assert record["contact_id"] == CONTACT
        assert record["sender_display_name"] == "External"
        assert record["timestamp"].startswith("2024-01-01T10:00:00")
        assert profiles.get_messages("p1")[-1] == record

        payload = payloads(webhooks, "message_received")[0]
        assert payload["source"] == "external_webhook"
        assert payload["message"] == "Order #42 paid"
        assert payload["from"] == "+1 555 000 1111"

    def test_sender_name(self, outbound):
        record = outbound.inject_inbound("p1", {"from": "15550001111", "senderName": "Billing"})
        assert record["sender_display_name"] == "Billing"
        assert record["text"] == ""

    def test_invalid_time(self, outbound):
        with pytest.raises(SendRequestError):
            outbound.inject_inbound("p1", {"from": "15550001111", "time": "not a time"})
