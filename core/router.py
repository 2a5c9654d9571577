"""
Event Router — turns normalized transport events into side effects.

For each event every interested consumer runs once:

  message            → store message, record contact name, unread counter,
                       flow engine, `message_received` webhook, observers
  connection         → status cache, `session_opened` / `session_closed`
                       webhook, linking cache, observers
  linking_artifact   → linking cache, observers (`qr` / `pairing_code`)
  message_status     → `message_delivered` / `message_read` webhook, observers
  contacts           → contact names, observers

A consumer that raises is logged and the remaining consumers still run.
"""
from __future__ import annotations

import inspect
import structlog
from typing import Any, Callable, Optional, Protocol

from core.flow_engine import ConversationFlowEngine
from database.profile_store import ProfileDataStore
from job_queue.webhook_queue import WebhookDeliveryQueue
from models.events import (
    ConnectionUpdate, ContactsUpdate, LinkingArtifact, MessageReceived,
    MessageStatusUpdate, TransportEvent,
)
from models.schemas import ConnectionState

logger = structlog.get_logger()


class ObserverSink(Protocol):
    """UI fan-out. Receives every routed event under a short name."""

    def notify(self, profile_id: str, name: str, payload: Any) -> Any: ...


class LoggingObserverSink:

    def notify(self, profile_id: str, name: str, payload: Any) -> None:
        logger.debug("observer_notified", profile_id=profile_id, observer_event=name)


class EventRouter:

    def __init__(
        self,
        profiles: ProfileDataStore,
        webhooks: WebhookDeliveryQueue,
        flows: ConversationFlowEngine,
        observers: Optional[list[ObserverSink]] = None,
    ):
        self.profiles = profiles
        self.webhooks = webhooks
        self.flows = flows
        self.observers: list[ObserverSink] = list(observers) if observers is not None else [LoggingObserverSink()]
        self._status: dict[str, ConnectionState] = {}
        self._linking: dict[str, LinkingArtifact] = {}

    # ── Caches ────────────────────────────────────────

    def get_status(self, profile_id: str) -> ConnectionState:
        return self._status.get(profile_id, ConnectionState.UNINITIALIZED)

    def get_linking_artifact(self, profile_id: str) -> Optional[LinkingArtifact]:
        return self._linking.get(profile_id)

    def forget(self, profile_id: str):
        self._status.pop(profile_id, None)
        self._linking.pop(profile_id, None)

    # ── Dispatch ──────────────────────────────────────

    async def route(self, profile_id: str, event: TransportEvent):
        if isinstance(event, MessageReceived):
            await self._on_message(profile_id, event)
        elif isinstance(event, ConnectionUpdate):
            await self._on_connection(profile_id, event)
        elif isinstance(event, LinkingArtifact):
            await self._on_linking_artifact(profile_id, event)
        elif isinstance(event, MessageStatusUpdate):
            await self._on_message_status(profile_id, event)
        elif isinstance(event, ContactsUpdate):
            await self._on_contacts(profile_id, event)
        else:
            logger.debug("event_not_routed", profile_id=profile_id, kind=event.kind)

    async def _step(self, consumer: str, profile_id: str, fn: Callable, *args) -> Any:
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            logger.error("router_consumer_failed", consumer=consumer,
                         profile_id=profile_id, error=str(e))
            return None

    async def _notify(self, profile_id: str, name: str, payload: Any):
        for observer in self.observers:
            await self._step(f"observer:{name}", profile_id, observer.notify, profile_id, name, payload)

    # ── Handlers ──────────────────────────────────────

    async def _on_message(self, profile_id: str, event: MessageReceived):
        record = event.to_record()
        await self._step("store_message", profile_id, self.profiles.add_message, profile_id, record)

        if not event.from_me:
            name = event.sender_display_name
            if name and not self.profiles.contact_name(profile_id, event.contact_id):
                await self._step("store_contact", profile_id,
                                 self.profiles.save_contact_name, profile_id, event.contact_id, name)
                await self._notify(profile_id, "contacts.update", [{"id": event.contact_id, "name": name}])

            await self._step("unread_counter", profile_id, self.profiles.increment_unread, profile_id)

            if event.text and not event.is_group:
                await self._step("flow_engine", profile_id,
                                 self.flows.handle_message, profile_id, event.contact_id, event.text)

            await self._step("webhook", profile_id, self.webhooks.trigger, profile_id, "message_received", {
                "messageId": event.message_id,
                "from": event.contact_id,
                "message": event.text,
                "type": event.message_type,
                "timestamp": int(event.timestamp.timestamp()),
                "pushName": event.sender_display_name,
            })

        await self._notify(profile_id, "messages.upsert", record)

    async def _on_connection(self, profile_id: str, event: ConnectionUpdate):
        self._status[profile_id] = event.state

        if event.state == ConnectionState.OPEN:
            self._linking.pop(profile_id, None)
            await self._step("webhook", profile_id, self.webhooks.trigger,
                             profile_id, "session_opened", {"status": "open"})
        elif event.state == ConnectionState.CLOSED:
            self._linking.pop(profile_id, None)
            reason = event.reason or (str(event.error_code) if event.error_code is not None else "")
            await self._step("webhook", profile_id, self.webhooks.trigger, profile_id, "session_closed", {
                "reason": reason,
                "loggedOut": event.logged_out,
            })

        await self._notify(profile_id, "connection.update", {
            "connection": event.state.value,
            "errorCode": event.error_code,
        })

    async def _on_linking_artifact(self, profile_id: str, event: LinkingArtifact):
        self._linking[profile_id] = event
        name = "qr" if event.artifact_kind == "image" else "pairing_code"
        await self._notify(profile_id, name, event.value)

    async def _on_message_status(self, profile_id: str, event: MessageStatusUpdate):
        if event.status in ("delivered", "read"):
            await self._step("webhook", profile_id, self.webhooks.trigger,
                             profile_id, f"message_{event.status}", {
                                 "messageId": event.message_id,
                                 "to": event.contact_id,
                                 "status": event.status,
                             })
        await self._notify(profile_id, "messages.update", event.model_dump(mode="json", exclude={"kind"}))

    async def _on_contacts(self, profile_id: str, event: ContactsUpdate):
        for contact_id, name in event.contacts.items():
            if name:
                await self._step("store_contact", profile_id,
                                 self.profiles.save_contact_name, profile_id, contact_id, name)
        await self._notify(profile_id, "contacts.update",
                           [{"id": cid, "name": name} for cid, name in event.contacts.items()])
