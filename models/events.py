"""
Transport event envelope.

Every event the messaging transport raises is one of these models,
discriminated by `kind`. The lifecycle manager consumes them and forwards
the normalized ones to the event router.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from models.schemas import ConnectionState
from utils.text import is_group_contact


class ConnectionUpdate(BaseModel):
    kind: Literal["connection"] = "connection"
    state: ConnectionState
    error_code: Optional[int] = None
    reason: str = ""
    logged_out: bool = False


class LinkingArtifact(BaseModel):
    kind: Literal["linking_artifact"] = "linking_artifact"
    artifact_kind: Literal["image", "code"]
    value: str


class MessageReceived(BaseModel):
    kind: Literal["message"] = "message"
    message_id: str = ""
    contact_id: str
    text: str = ""
    sender_display_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    from_me: bool = False
    message_type: str = "conversation"

    @property
    def is_group(self) -> bool:
        return is_group_contact(self.contact_id)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"kind"})


class CredentialsChanged(BaseModel):
    kind: Literal["credentials"] = "credentials"
    payload: dict[str, Any] = {}


class MessageStatusUpdate(BaseModel):
    kind: Literal["message_status"] = "message_status"
    message_id: str
    contact_id: str = ""
    status: Literal["pending", "server_ack", "delivered", "read"]


class ContactsUpdate(BaseModel):
    kind: Literal["contacts"] = "contacts"
    contacts: dict[str, str] = {}             # contact id → display name


TransportEvent = Annotated[
    Union[
        ConnectionUpdate, LinkingArtifact, MessageReceived,
        CredentialsChanged, MessageStatusUpdate, ContactsUpdate,
    ],
    Field(discriminator="kind"),
]

_event_adapter = TypeAdapter(TransportEvent)


def parse_event(raw: dict[str, Any]) -> TransportEvent:
    """Validate a raw dict into the matching envelope model."""
    return _event_adapter.validate_python(raw)
