"""
Conversation Flow Engine — scripted per-contact dialogues.

Inbound text either advances the contact's active session (answer to a
QUESTION node) or starts a new flow through trigger-phrase matching.
Node execution runs until it reaches a node that waits for input
(QUESTION) or terminates (END):

  START ─▶ MESSAGE ─▶ IMAGE ─▶ QUESTION ┄┄ (next inbound message) ┄┄▶ CONDITION ─▶ ACTION ─▶ END
                                                                         │
                                                                   branch on last answer

Sessions live in the store (`sessions:<profile>`), so a dialogue resumes
after a restart. The flow document is re-read for every message so edits
made mid-conversation apply immediately. A session pointing at a flow or
node that no longer exists is discarded, never surfaced to the contact.
"""
from __future__ import annotations

import inspect
import re
import structlog
from typing import Any, Awaitable, Callable, Optional, Protocol

from pydantic import ValidationError

from config.settings import FlowConfig
from core.flow_registry import load_flow_document
from database.profile_store import ProfileDataStore
from models.schemas import (
    ConversationSession, FlowDefinition, FlowDocument, FlowNode, NodeType,
)
from utils.scheduler import Scheduler
from utils.text import normalize_text

logger = structlog.get_logger()

_LEADING_DIGITS = re.compile(r"^\d+")

ActionHook = Callable[[str, str, Optional[ConversationSession], FlowNode], Any]
Serializer = Callable[..., Awaitable[Any]]


class MessageSender(Protocol):
    async def send_text(self, profile_id: str, contact_id: str, text: str) -> Any: ...

    async def send_image(
        self, profile_id: str, contact_id: str, url: str, caption: Optional[str] = None,
    ) -> Any: ...


# ──────────────────────────────────────────────────────
#  Matching
# ──────────────────────────────────────────────────────

def match_trigger(document: FlowDocument, normalized: str) -> Optional[FlowDefinition]:
    """First flow with a trigger equal to the text, one of its words, or a substring of it."""
    words = normalized.split(" ")
    for flow in document.flows:
        for trigger in flow.triggers:
            cleaned = normalize_text(trigger)
            if not cleaned:
                continue
            if cleaned == normalized or cleaned in words or cleaned in normalized:
                return flow
    return None


def resolve_answer(node: FlowNode, normalized: str) -> Optional[str]:
    """Pick the next node id for an answer to a QUESTION node."""
    branches = node.connections

    for label, target in branches.items():
        if target and normalized == label.lower():
            return target

    if node.options:
        digits = _LEADING_DIGITS.match(normalized)
        if digits:
            choice = int(digits.group())
            if 1 <= choice <= len(node.options):
                target = branches.get(node.options[choice - 1])
                if target:
                    return target

    if normalized:
        for label, target in branches.items():
            lowered = label.lower()
            if target and lowered and (lowered in normalized or normalized in lowered):
                return target

    return node.next_id or branches.get("default") or None


def choose_branch(node: FlowNode, last_answer: Optional[str]) -> Optional[str]:
    """CONDITION: first branch label contained in the last answer, else `default`, else nextId."""
    path = "default"
    if node.connections and last_answer:
        lowered = last_answer.lower()
        for label in node.connections:
            if label and label.lower() in lowered:
                path = label
                break
    return node.connections.get(path) or node.next_id or None


def render_question(node: FlowNode) -> str:
    text = node.content or ""
    if node.options:
        text += "\n\n" + "\n".join(f"{i}. {opt}" for i, opt in enumerate(node.options, 1))
    return text


# ──────────────────────────────────────────────────────
#  Engine
# ──────────────────────────────────────────────────────

class ConversationFlowEngine:

    SWEEP_KEY = ("flows", "sweep")

    def __init__(
        self,
        profiles: ProfileDataStore,
        sender: MessageSender,
        scheduler: Scheduler,
        config: FlowConfig = None,
        action_hooks: Optional[dict[str, ActionHook]] = None,
        serializer: Optional[Serializer] = None,
    ):
        self.profiles = profiles
        self.sender = sender
        self.scheduler = scheduler
        self.config = config or FlowConfig()
        self.action_hooks: dict[str, ActionHook] = dict(action_hooks or {})
        self.serializer = serializer

    @property
    def ttl_ms(self) -> int:
        return int(self.config.session_ttl_s * 1000)

    def register_action(self, name: str, hook: ActionHook):
        self.action_hooks[name] = hook

    def load_flows(self, profile_id: str) -> FlowDocument:
        return load_flow_document(self.profiles.get_flow_document(profile_id), profile_id)

    # ── Session storage ───────────────────────────────

    def get_session(self, profile_id: str, contact_id: str) -> Optional[ConversationSession]:
        raw = self.profiles.get_sessions(profile_id).get(contact_id)
        if raw is None:
            return None
        try:
            return ConversationSession.model_validate(raw)
        except ValidationError as e:
            logger.warning("conversation_session_invalid", profile_id=profile_id,
                           contact_id=contact_id, errors=e.error_count())
            self._delete(profile_id, contact_id)
            return None

    def active_contacts(self, profile_id: str) -> list[str]:
        return list(self.profiles.get_sessions(profile_id))

    def _save(self, profile_id: str, session: ConversationSession):
        sessions = dict(self.profiles.get_sessions(profile_id))
        sessions[session.contact_id] = session.to_json_dict()
        self.profiles.save_sessions(profile_id, sessions)

    def _delete(self, profile_id: str, contact_id: str) -> bool:
        sessions = dict(self.profiles.get_sessions(profile_id))
        if sessions.pop(contact_id, None) is None:
            return False
        self.profiles.save_sessions(profile_id, sessions)
        return True

    async def end_session(self, profile_id: str, contact_id: str, notice: Optional[str] = None) -> bool:
        if notice:
            await self._send_text(profile_id, contact_id, notice)
        removed = self._delete(profile_id, contact_id)
        if removed:
            logger.info("conversation_session_ended", profile_id=profile_id, contact_id=contact_id)
        return removed

    def clear_profile(self, profile_id: str) -> int:
        count = len(self.profiles.get_sessions(profile_id))
        self.profiles.save_sessions(profile_id, {})
        return count

    # ── Inbound ───────────────────────────────────────

    async def handle_message(self, profile_id: str, contact_id: str, text: str) -> bool:
        """Process one inbound text. Returns True when a flow consumed it."""
        document = self.load_flows(profile_id)
        normalized = normalize_text(text)
        now_ms = self.scheduler.now_ms()

        session = self.get_session(profile_id, contact_id)
        if session is not None:
            if now_ms - session.last_activity > self.ttl_ms:
                logger.info("conversation_session_expired", profile_id=profile_id, contact_id=contact_id)
                await self.end_session(profile_id, contact_id, self.config.expiry_notice)
            else:
                flow = document.get_flow(session.active_flow_id)
                node = flow.get_node(session.current_node_id) if flow else None
                if node is None:
                    logger.info("conversation_session_stale", profile_id=profile_id,
                                contact_id=contact_id, flow_id=session.active_flow_id,
                                node_id=session.current_node_id)
                    self._delete(profile_id, contact_id)
                else:
                    await self._answer(profile_id, session, flow, node, text, normalized, now_ms)
                    return True

        flow = match_trigger(document, normalized)
        if flow is not None:
            await self.start_flow(profile_id, contact_id, flow)
            return True

        if document.idle_enabled and document.idle_message:
            await self._send_text(profile_id, contact_id, document.idle_message)
        return False

    async def _answer(
        self,
        profile_id: str,
        session: ConversationSession,
        flow: FlowDefinition,
        node: FlowNode,
        text: str,
        normalized: str,
        now_ms: int,
    ):
        contact_id = session.contact_id
        session.touch(now_ms)

        if node.type != NodeType.QUESTION:
            logger.warning("conversation_session_not_waiting", profile_id=profile_id,
                           contact_id=contact_id, node_id=node.id, node_type=node.type.value)
            await self.end_session(profile_id, contact_id)
            return

        session.record_answer(node.id, text)
        self._save(profile_id, session)

        next_id = resolve_answer(node, normalized)
        if next_id:
            await self.process_node(profile_id, contact_id, flow, next_id)
        elif node.options:
            await self._send_text(profile_id, contact_id, self.config.reprompt_message)
        else:
            await self.end_session(profile_id, contact_id)

    async def start_flow(
        self, profile_id: str, contact_id: str, flow: FlowDefinition,
    ) -> Optional[ConversationSession]:
        start = flow.start_node
        if start is None:
            logger.warning("flow_without_start", profile_id=profile_id, flow_id=flow.id)
            return None

        session = ConversationSession(
            contact_id=contact_id,
            active_flow_id=flow.id,
            current_node_id=start.id,
            answers={},
            last_activity=self.scheduler.now_ms(),
        )
        self._save(profile_id, session)
        logger.info("conversation_flow_started", profile_id=profile_id,
                    contact_id=contact_id, flow_id=flow.id)

        first = start.next_id or start.connections.get("default")
        if first:
            await self.process_node(profile_id, contact_id, flow, first)
        return session

    # ── Node execution ────────────────────────────────

    async def process_node(self, profile_id: str, contact_id: str, flow: FlowDefinition, node_id: str):
        """Execute nodes from `node_id` until one waits for input or ends the dialogue."""
        session = self.get_session(profile_id, contact_id)
        next_id: Optional[str] = node_id
        steps = 0

        while next_id:
            if steps >= self.config.max_steps:
                logger.warning("flow_walk_step_limit", profile_id=profile_id,
                               contact_id=contact_id, flow_id=flow.id, node_id=next_id)
                return
            steps += 1

            node = flow.get_node(next_id)
            if node is None:
                logger.warning("flow_node_missing", profile_id=profile_id,
                               flow_id=flow.id, node_id=next_id)
                self._delete(profile_id, contact_id)
                return

            if session is not None:
                session.current_node_id = node.id
                self._save(profile_id, session)

            next_id = await self._execute(profile_id, contact_id, session, node)

    async def _execute(
        self,
        profile_id: str,
        contact_id: str,
        session: Optional[ConversationSession],
        node: FlowNode,
    ) -> Optional[str]:
        if node.type == NodeType.MESSAGE:
            if node.content:
                await self._send_text(profile_id, contact_id, node.content)
            return node.next_id

        if node.type == NodeType.IMAGE:
            if node.image_url:
                await self._send_image(profile_id, contact_id, node.image_url, node.caption)
            return node.next_id

        if node.type == NodeType.QUESTION:
            await self._send_text(profile_id, contact_id, render_question(node))
            return None

        if node.type == NodeType.CONDITION:
            target = choose_branch(node, session.last_answer if session else None)
            if not target:
                await self.end_session(profile_id, contact_id)
            return target

        if node.type == NodeType.ACTION:
            await self._run_action(profile_id, contact_id, session, node)
            return node.next_id

        if node.type == NodeType.END:
            if node.content:
                await self._send_text(profile_id, contact_id, node.content)
            await self.end_session(profile_id, contact_id)
            return None

        # START reached mid-walk: just pass through
        return node.next_id

    async def _run_action(
        self, profile_id: str, contact_id: str, session: Optional[ConversationSession], node: FlowNode,
    ):
        hook = self.action_hooks.get(node.action or "")
        if hook is None:
            logger.info("flow_action_unhandled", profile_id=profile_id, action=node.action, node_id=node.id)
            return
        try:
            result = hook(profile_id, contact_id, session, node)
            if inspect.isawaitable(result):
                await result
            logger.info("flow_action_executed", profile_id=profile_id, action=node.action, node_id=node.id)
        except Exception as e:
            logger.error("flow_action_failed", profile_id=profile_id, action=node.action, error=str(e))

    async def _send_text(self, profile_id: str, contact_id: str, text: str):
        try:
            await self.sender.send_text(profile_id, contact_id, text)
        except Exception as e:
            logger.warning("flow_send_failed", profile_id=profile_id, contact_id=contact_id, error=str(e))

    async def _send_image(self, profile_id: str, contact_id: str, url: str, caption: Optional[str]):
        try:
            await self.sender.send_image(profile_id, contact_id, url, caption)
        except Exception as e:
            logger.warning("flow_send_failed", profile_id=profile_id, contact_id=contact_id, error=str(e))

    # ── Expiry sweep ──────────────────────────────────

    async def sweep_expired(self) -> int:
        profile_ids = {p.id for p in self.profiles.get_profiles()} | set(self.profiles.session_profiles())
        expired = 0
        for profile_id in sorted(profile_ids):
            try:
                if self.serializer is not None:
                    expired += await self.serializer(profile_id, self._sweep_profile, profile_id)
                else:
                    expired += await self._sweep_profile(profile_id)
            except Exception as e:
                logger.error("session_sweep_error", profile_id=profile_id, error=str(e))
        if expired:
            logger.info("session_sweep_completed", expired=expired)
        return expired

    async def _sweep_profile(self, profile_id: str) -> int:
        now_ms = self.scheduler.now_ms()
        expired = 0
        for contact_id in self.active_contacts(profile_id):
            session = self.get_session(profile_id, contact_id)
            if session is not None and now_ms - session.last_activity > self.ttl_ms:
                await self.end_session(profile_id, contact_id, self.config.expiry_notice)
                expired += 1
        return expired

    def start(self):
        self.scheduler.every(self.SWEEP_KEY, self.config.sweep_interval_s, self.sweep_expired)

    def stop(self):
        self.scheduler.cancel(self.SWEEP_KEY)
