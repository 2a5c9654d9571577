"""Shared test fixtures for the relay core."""
import pytest
import httpx
from typing import Any

from channels.loopback import LoopbackTransport
from config.settings import FlowConfig, LifecycleConfig, Settings, WebhookConfig, reset_settings
from database.profile_store import ProfileDataStore
from database.store_factory import reset_store
from database.store_memory import InMemoryKeyValueStore
from utils.scheduler import VirtualScheduler


@pytest.fixture(autouse=True)
def _reset_singletons():
    yield
    reset_settings()
    reset_store()


@pytest.fixture
def scheduler() -> VirtualScheduler:
    return VirtualScheduler()


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def profiles(store) -> ProfileDataStore:
    return ProfileDataStore(store)


@pytest.fixture
def transport() -> LoopbackTransport:
    return LoopbackTransport()


# ── Recorders ─────────────────────────────────────────

class EventRecorder:
    """Async event handler that remembers everything it was given."""

    def __init__(self):
        self.events: list[tuple[str, Any]] = []

    async def __call__(self, profile_id: str, event: Any):
        self.events.append((profile_id, event))

    def of_kind(self, kind: str) -> list[Any]:
        return [e for _, e in self.events if e.kind == kind]

    def states(self) -> list[str]:
        return [e.state.value for e in self.of_kind("connection")]


class ObserverRecorder:

    def __init__(self):
        self.notifications: list[tuple[str, str, Any]] = []

    def notify(self, profile_id: str, name: str, payload: Any):
        self.notifications.append((profile_id, name, payload))

    def names(self) -> list[str]:
        return [name for _, name, _ in self.notifications]


class SenderRecorder:
    """Stands in for the lifecycle manager's send capability."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    async def send_text(self, profile_id: str, contact_id: str, text: str):
        if self.fail:
            raise RuntimeError("transport down")
        self.sent.append({"profile_id": profile_id, "contact_id": contact_id, "type": "text", "text": text})
        return {"message_id": f"m{len(self.sent)}"}

    async def send_image(self, profile_id: str, contact_id: str, url: str, caption: str = None):
        if self.fail:
            raise RuntimeError("transport down")
        self.sent.append({"profile_id": profile_id, "contact_id": contact_id, "type": "image",
                          "url": url, "caption": caption})
        return {"message_id": f"m{len(self.sent)}"}

    def texts(self) -> list[str]:
        return [m["text"] for m in self.sent if m["type"] == "text"]


class WebhookTarget:
    """httpx MockTransport handler standing in for subscriber endpoints."""

    def __init__(self, scheduler: VirtualScheduler = None, status: int = 200):
        self.scheduler = scheduler
        self.status = status
        self.requests: list[httpx.Request] = []
        self.times: list[float] = []
        self.raise_error: Exception = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.scheduler is not None:
            self.times.append(self.scheduler.now())
        if self.raise_error is not None:
            raise self.raise_error
        return httpx.Response(self.status)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def observer() -> ObserverRecorder:
    return ObserverRecorder()


@pytest.fixture
def sender() -> SenderRecorder:
    return SenderRecorder()


@pytest.fixture
def webhook_target(scheduler) -> WebhookTarget:
    return WebhookTarget(scheduler)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        profiles=["p1"],
        lifecycle=LifecycleConfig(),
        webhooks=WebhookConfig(),
        flows=FlowConfig(),
    )


# ── Flow documents ────────────────────────────────────

SUPPORT_FLOW_DOC = {
    "idleEnabled": False,
    "flows": [
        {
            "id": "f_support",
            "name": "Support",
            "triggers": ["help", "Support!"],
            "nodes": [
                {"id": "start", "type": "START", "nextId": "welcome"},
                {"id": "welcome", "type": "MESSAGE", "content": "Welcome!", "nextId": "q1"},
                {
                    "id": "q1", "type": "QUESTION", "content": "What do you need?",
                    "options": ["Sales", "Support"],
                    "connections": {"Sales": "n2", "Support": "n3"},
                },
                {"id": "n2", "type": "MESSAGE", "content": "Sales team will call you.", "nextId": "end"},
                {
                    "id": "n3", "type": "IMAGE", "imageUrl": "https://cdn.example.com/hours.png",
                    "caption": "Support hours", "nextId": "cond",
                },
                {"id": "cond", "type": "CONDITION", "connections": {"urgent": "urgent_end", "default": "end"}},
                {"id": "urgent_end", "type": "END", "content": "Escalated."},
                {"id": "end", "type": "END", "content": "Bye!"},
            ],
        },
    ],
}


@pytest.fixture
def support_flow_doc() -> dict:
    import copy
    return copy.deepcopy(SUPPORT_FLOW_DOC)
