"""
Core data models for the Profile Relay system.
These are the universal types shared across all modules.

Persisted shapes use camelCase aliases so the JSON written by the flow
editor and the admin layer round-trips unchanged.
"""
from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ConnectionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class NodeType(str, Enum):
    START = "START"
    MESSAGE = "MESSAGE"
    IMAGE = "IMAGE"
    QUESTION = "QUESTION"
    CONDITION = "CONDITION"
    ACTION = "ACTION"
    END = "END"


class _AliasedModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ──────────────────────────────────────────────────────────────
#  Profile — one tenant
# ──────────────────────────────────────────────────────────────

class Profile(_AliasedModel):
    id: str
    name: str = ""
    unread_count: int = Field(default=0, alias="unreadCount")


# ──────────────────────────────────────────────────────────────
#  Webhooks
# ──────────────────────────────────────────────────────────────

class WebhookSubscription(_AliasedModel):
    """A subscriber URL for a profile's events. Read-only to the queue."""
    url: str
    events: list[str] = []
    enabled: bool = True
    secret: Optional[str] = None

    def wants(self, event_name: str) -> bool:
        return self.enabled and event_name in self.events


class WebhookDeliveryTask(_AliasedModel):
    """One pending notification of one subscriber about one event."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    profile_id: str = Field(alias="profileId")
    event: str
    payload: dict[str, Any] = {}
    target_url: str = Field(alias="targetUrl")
    secret: Optional[str] = None
    attempts: int = 0
    next_retry: int = Field(default=0, alias="nextRetry")     # epoch ms
    timestamp: str = ""


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

class FlowNode(_AliasedModel):
    id: str
    type: NodeType
    content: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    caption: Optional[str] = None
    options: list[str] = []
    next_id: Optional[str] = Field(default=None, alias="nextId")
    connections: dict[str, str] = {}          # branch label → node id
    action: Optional[str] = None

    def edges(self) -> list[str]:
        targets = [self.next_id] if self.next_id else []
        targets.extend(t for t in self.connections.values() if t)
        return targets


class FlowDefinition(_AliasedModel):
    id: str
    name: str = ""
    triggers: list[str] = []
    nodes: list[FlowNode] = []

    def get_node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        if not node_id:
            return None
        return next((n for n in self.nodes if n.id == node_id), None)

    @property
    def start_node(self) -> Optional[FlowNode]:
        return next((n for n in self.nodes if n.type == NodeType.START), None)


class FlowDocument(_AliasedModel):
    """The per-profile flow configuration written by the external editor."""
    idle_enabled: bool = Field(default=False, alias="idleEnabled")
    idle_message: Optional[str] = Field(default=None, alias="idleMessage")
    flows: list[FlowDefinition] = []

    def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        return next((f for f in self.flows if f.id == flow_id), None)


class ConversationSession(_AliasedModel):
    """Per-contact progress pointer through a flow."""
    contact_id: str = Field(alias="id")
    active_flow_id: str = Field(alias="activeFlowId")
    current_node_id: str = Field(alias="currentNodeId")
    answers: dict[str, str] = {}
    last_activity: int = Field(default=0, alias="lastActivity")   # epoch ms

    def touch(self, now_ms: int):
        self.last_activity = max(self.last_activity, now_ms)

    def record_answer(self, node_id: str, text: str):
        # re-insert so the latest answer is always last
        self.answers.pop(node_id, None)
        self.answers[node_id] = text

    @property
    def last_answer(self) -> Optional[str]:
        if not self.answers:
            return None
        return list(self.answers.values())[-1]
