"""Tests for event routing to storage, flows, webhooks and observers."""
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from pydantic import ValidationError

from core.router import EventRouter, LoggingObserverSink
from models.events import (
    ConnectionUpdate, ContactsUpdate, CredentialsChanged, LinkingArtifact, MessageReceived,
    MessageStatusUpdate, parse_event,
)
from models.schemas import ConnectionState

CONTACT = "15550001111@s.whatsapp.net"
GROUP = "120363000000000000@g.us"


class FakeWebhooks:
    def __init__(self):
        self.triggered: list[tuple[str, str, dict]] = []

    def trigger(self, profile_id, event_name, data=None):
        self.triggered.append((profile_id, event_name, data))
        return []

    def events(self) -> list[str]:
        return [name for _, name, _ in self.triggered]


class FakeFlows:
    def __init__(self):
        self.handled: list[tuple[str, str, str]] = []
        self.fail = False

    async def handle_message(self, profile_id, contact_id, text):
        if self.fail:
            raise RuntimeError("flow bug")
        self.handled.append((profile_id, contact_id, text))
        return True


class ExplodingObserver:
    def notify(self, profile_id, name, payload):
        raise RuntimeError("ui gone")


@pytest.fixture
def webhooks():
    return FakeWebhooks()


@pytest.fixture
def flows():
    return FakeFlows()


@pytest.fixture
def router(profiles, webhooks, flows, observer):
    profiles.ensure_profile("p1")
    return EventRouter(profiles, webhooks, flows, [observer])


def message(**overrides):
    data = {
        "message_id": "M1",
        "contact_id": CONTACT,
        "text": "hello",
        "sender_display_name": "Asha",
        "timestamp": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return MessageReceived(**data)


# ══════════════════════════════════════════════════════════════
#  Messages
# ══════════════════════════════════════════════════════════════

class TestMessageRouting:
    @pytest.mark.asyncio
    async def test_inbound_message_reaches_every_consumer(self, router, profiles, webhooks, flows, observer):
        await router.route("p1", message())

        assert profiles.get_messages("p1")[-1]["message_id"] == "M1"
        assert profiles.contact_name("p1", CONTACT) == "Asha"
        assert profiles.get_profile("p1").unread_count == 1
        assert flows.handled == [("p1", CONTACT, "hello")]
        assert webhooks.triggered == [("p1", "message_received", {
            "messageId": "M1",
            "from": CONTACT,
            "message": "hello",
            "type": "conversation",
            "timestamp": 1704067200,
            "pushName": "Asha",
        })]
        assert observer.names() == ["contacts.update", "messages.upsert"]

    @pytest.mark.asyncio
    async def test_known_contact_name_is_kept(self, router, profiles, observer):
        profiles.save_contact_name("p1", CONTACT, "Asha K")
        await router.route("p1", message(sender_display_name="asha"))
        assert profiles.contact_name("p1", CONTACT) == "Asha K"
        assert observer.names() == ["messages.upsert"]

    @pytest.mark.asyncio
    async def test_self_sent_message_is_only_stored(self, router, profiles, webhooks, flows, observer):
        await router.route("p1", message(from_me=True))
        assert len(profiles.get_messages("p1")) == 1
        assert profiles.get_profile("p1").unread_count == 0
        assert profiles.contact_name("p1", CONTACT) is None
        assert flows.handled == []
        assert webhooks.triggered == []
        assert observer.names() == ["messages.upsert"]

    @pytest.mark.asyncio
    async def test_group_message_skips_flows(self, router, webhooks, flows):
        await router.route("p1", message(contact_id=GROUP))
        assert flows.handled == []
        assert webhooks.events() == ["message_received"]

    @pytest.mark.asyncio
    async def test_textless_message_skips_flows(self, router, webhooks, flows):
        await router.route("p1", message(text="", message_type="imageMessage"))
        assert flows.handled == []
        assert webhooks.triggered[0][2]["type"] == "imageMessage"

    @pytest.mark.asyncio
    async def test_flow_failure_does_not_block_webhook(self, router, webhooks, flows, observer):
        flows.fail = True
        await router.route("p1", message())
        assert webhooks.events() == ["message_received"]
        assert observer.names()[-1] == "messages.upsert"

    @pytest.mark.asyncio
    async def test_flow_engine_called_with_raw_text(self, profiles, webhooks):
        flows = AsyncMock()
        flows.handle_message.return_value = False
        router = EventRouter(profiles, webhooks, flows, [])
        await router.route("p1", message(text="  Help!! "))
        flows.handle_message.assert_awaited_once_with("p1", CONTACT, "  Help!! ")

    @pytest.mark.asyncio
    async def test_observer_failure_is_isolated(self, profiles, webhooks, flows, observer):
        router = EventRouter(profiles, webhooks, flows, [ExplodingObserver(), observer])
        await router.route("p1", message(from_me=True))
        assert observer.names() == ["messages.upsert"]


# ══════════════════════════════════════════════════════════════
#  Connection and linking
# ══════════════════════════════════════════════════════════════

class TestConnectionRouting:
    @pytest.mark.asyncio
    async def test_open(self, router, webhooks, observer):
        await router.route("p1", LinkingArtifact(artifact_kind="image", value="qr:1"))
        await router.route("p1", ConnectionUpdate(state=ConnectionState.OPEN))

        assert router.get_status("p1") == ConnectionState.OPEN
        assert router.get_linking_artifact("p1") is None
        assert webhooks.triggered == [("p1", "session_opened", {"status": "open"})]
        assert observer.notifications[-1] == ("p1", "connection.update", {"connection": "open", "errorCode": None})

    @pytest.mark.asyncio
    async def test_closed_with_reason(self, router, webhooks):
        await router.route("p1", ConnectionUpdate(state=ConnectionState.CLOSED, error_code=428,
                                                  reason="connection lost"))
        assert router.get_status("p1") == ConnectionState.CLOSED
        assert webhooks.triggered == [("p1", "session_closed", {"reason": "connection lost", "loggedOut": False})]

    @pytest.mark.asyncio
    async def test_closed_reason_falls_back_to_code(self, router, webhooks):
        await router.route("p1", ConnectionUpdate(state=ConnectionState.CLOSED, error_code=401, logged_out=True))
        assert webhooks.triggered[0][2] == {"reason": "401", "loggedOut": True}

    @pytest.mark.asyncio
    async def test_connecting_has_no_webhook(self, router, webhooks, observer):
        await router.route("p1", ConnectionUpdate(state=ConnectionState.CONNECTING))
        assert webhooks.triggered == []
        assert observer.names() == ["connection.update"]

    @pytest.mark.asyncio
    async def test_linking_artifacts(self, router, observer):
        await router.route("p1", LinkingArtifact(artifact_kind="image", value="qr:abc"))
        await router.route("p1", LinkingArtifact(artifact_kind="code", value="ABCD1234"))
        assert router.get_linking_artifact("p1").value == "ABCD1234"
        assert observer.notifications == [("p1", "qr", "qr:abc"), ("p1", "pairing_code", "ABCD1234")]

    @pytest.mark.asyncio
    async def test_forget(self, router):
        await router.route("p1", LinkingArtifact(artifact_kind="image", value="qr:abc"))
        await router.route("p1", ConnectionUpdate(state=ConnectionState.CONNECTING))
        router.forget("p1")
        assert router.get_status("p1") == ConnectionState.UNINITIALIZED
        assert router.get_linking_artifact("p1") is None


# ══════════════════════════════════════════════════════════════
#  Status and contacts
# ══════════════════════════════════════════════════════════════

class TestStatusAndContacts:
    @pytest.mark.asyncio
    async def test_delivered_and_read_trigger_webhooks(self, router, webhooks, observer):
        await router.route("p1", MessageStatusUpdate(message_id="M1", contact_id=CONTACT, status="delivered"))
        await router.route("p1", MessageStatusUpdate(message_id="M1", contact_id=CONTACT, status="read"))
        await router.route("p1", MessageStatusUpdate(message_id="M1", contact_id=CONTACT, status="server_ack"))

        assert webhooks.triggered == [
            ("p1", "message_delivered", {"messageId": "M1", "to": CONTACT, "status": "delivered"}),
            ("p1", "message_read", {"messageId": "M1", "to": CONTACT, "status": "read"}),
        ]
        assert observer.names() == ["messages.update"] * 3
        assert observer.notifications[0][2] == {"message_id": "M1", "contact_id": CONTACT, "status": "delivered"}

    @pytest.mark.asyncio
    async def test_contacts_update(self, router, profiles, observer):
        await router.route("p1", ContactsUpdate(contacts={CONTACT: "Asha", "2@s.whatsapp.net": ""}))
        assert profiles.contact_name("p1", CONTACT) == "Asha"
        assert profiles.contact_name("p1", "2@s.whatsapp.net") is None
        assert observer.notifications[-1][1] == "contacts.update"
        assert len(observer.notifications[-1][2]) == 2

    def test_default_observer(self, profiles, webhooks, flows):
        router = EventRouter(profiles, webhooks, flows)
        assert isinstance(router.observers[0], LoggingObserverSink)


# ══════════════════════════════════════════════════════════════
#  Raw envelopes
# ══════════════════════════════════════════════════════════════

class TestEventEnvelope:
    @pytest.mark.parametrize("raw, model", [
        ({"kind": "connection", "state": "open"}, ConnectionUpdate),
        ({"kind": "linking_artifact", "artifact_kind": "code", "value": "ABCD1234"}, LinkingArtifact),
        ({"kind": "message", "message_id": "M1", "contact_id": CONTACT, "text": "hi"}, MessageReceived),
        ({"kind": "credentials", "payload": {"me": "p1"}}, CredentialsChanged),
        ({"kind": "message_status", "message_id": "M1", "status": "read"}, MessageStatusUpdate),
        ({"kind": "contacts", "contacts": {CONTACT: "Asha"}}, ContactsUpdate),
    ])
    def test_each_kind_parses_to_its_model(self, raw, model):
        assert isinstance(parse_event(raw), model)

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_event({"kind": "presence", "state": "typing"})

    def test_invalid_fields_are_rejected(self):
        with pytest.raises(ValidationError):
            parse_event({"kind": "message_status", "message_id": "M1", "status": "lost"})

    def test_group_detection(self):
        assert parse_event({"kind": "message", "message_id": "M1", "contact_id": GROUP}).is_group
        assert not parse_event({"kind": "message", "message_id": "M2", "contact_id": CONTACT}).is_group

    @pytest.mark.asyncio
    async def test_parsed_event_routes_like_a_model(self, router, webhooks):
        await router.route("p1", parse_event({"kind": "connection", "state": "open"}))
        assert router.get_status("p1") == ConnectionState.OPEN
        assert webhooks.events() == ["session_opened"]
