"""
Connection Lifecycle Manager — one self-healing transport link per profile.

States (per profile):

  uninitialized ──start()──▶ connecting ──handshake──▶ open
                                  │                      │
                       30s timeout│                      │ transport closed
                                  ▼                      ▼
               clear credentials, tear down,          closed
               delete session, start() again     ┌──────┴──────────┐
                                              recoverable       terminal (401)
                                              reconnect 5s      clear credentials,
                                                                delete session,
                                                                restart 2s

Every handler for a profile (transport events, timer callbacks, start,
logout, refresh, linking-code requests) runs through that profile's
ProfileMailbox, so no two handlers for the same profile overlap. Profiles
are independent of each other.

Each ConnectionSession carries a generation number. Events are bound to the
generation whose handle produced them; anything arriving for an older
generation is dropped, so a torn-down handle can never drive the state
machine.
"""
from __future__ import annotations

import asyncio
import itertools
import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from channels.base import (
    LinkingError, MessagingTransport, NotConnectedError, TransportHandle,
)
from config.settings import LifecycleConfig
from models.events import (
    ConnectionUpdate, CredentialsChanged, LinkingArtifact, TransportEvent,
)
from models.schemas import ConnectionState
from utils.scheduler import Scheduler, TimerHandle

logger = structlog.get_logger()

EventHandler = Callable[[str, TransportEvent], Awaitable[None]]


# ══════════════════════════════════════════════════════════════
#  PER-PROFILE MAILBOX
# ══════════════════════════════════════════════════════════════

class ProfileMailbox:
    """
    Serial executor for one profile.

    `call()` awaits the handler's result; `post()` is fire-and-forget and
    safe to use from synchronous code (transport sinks, timer callbacks).
    Calls made from inside the worker run inline.
    """

    def __init__(self, profile_id: str, maxsize: int = 1000):
        self.profile_id = profile_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    def _ensure_worker(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name=f"mailbox:{self.profile_id}",
            )

    def in_worker(self) -> bool:
        return self._worker is not None and asyncio.current_task() is self._worker

    async def call(self, fn: Callable[..., Awaitable[Any]], *args) -> Any:
        if self._closed:
            raise RuntimeError(f"Mailbox for {self.profile_id} is closed")
        if self.in_worker():
            return await fn(*args)
        future = asyncio.get_running_loop().create_future()
        self._ensure_worker()
        await self.queue.put((fn, args, future))
        return await future

    def post(self, fn: Callable[..., Awaitable[Any]], *args) -> bool:
        if self._closed:
            return False
        try:
            self.queue.put_nowait((fn, args, None))
        except asyncio.QueueFull:
            logger.warning("mailbox_full", profile_id=self.profile_id, handler=fn.__name__)
            return False
        self._ensure_worker()
        return True

    async def _run(self):
        while not self._closed:
            fn, args, future = await self.queue.get()
            try:
                result = await fn(*args)
            except asyncio.CancelledError:
                if future is not None and not future.done():
                    future.cancel()
                self.queue.task_done()
                raise
            except Exception as e:
                if future is not None and not future.done():
                    future.set_exception(e)
                else:
                    logger.error("mailbox_handler_error", profile_id=self.profile_id,
                                 handler=fn.__name__, error=str(e))
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            self.queue.task_done()

    async def join(self):
        await self.queue.join()

    async def close(self):
        self._closed = True
        while not self.queue.empty():
            _, _, future = self.queue.get_nowait()
            self.queue.task_done()
            if future is not None and not future.done():
                future.cancel()
        worker, self._worker = self._worker, None
        if worker is None or worker.done() or worker is asyncio.current_task():
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass


# ══════════════════════════════════════════════════════════════
#  CONNECTION SESSION
# ══════════════════════════════════════════════════════════════

@dataclass
class ConnectionSession:
    profile_id: str
    generation: int
    state: ConnectionState = ConnectionState.UNINITIALIZED
    handle: Optional[TransportHandle] = None
    last_error: Optional[str] = None
    connecting_timer: Optional[TimerHandle] = None
    reconnect_timer: Optional[TimerHandle] = None
    linking_artifact: Optional[LinkingArtifact] = None

    @property
    def is_live(self) -> bool:
        return self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN)


# ══════════════════════════════════════════════════════════════
#  LIFECYCLE MANAGER
# ══════════════════════════════════════════════════════════════

class ConnectionLifecycleManager:

    def __init__(
        self,
        transport: MessagingTransport,
        scheduler: Scheduler,
        config: LifecycleConfig = None,
        event_handler: Optional[EventHandler] = None,
    ):
        self.transport = transport
        self.scheduler = scheduler
        self.config = config or LifecycleConfig()
        self.event_handler = event_handler
        self._sessions: dict[str, ConnectionSession] = {}
        self._mailboxes: dict[str, ProfileMailbox] = {}
        self._generations = itertools.count(1)
        self._restarts: dict[str, TimerHandle] = {}

    # ── Registry ──────────────────────────────────────────

    def get_session(self, profile_id: str) -> Optional[ConnectionSession]:
        return self._sessions.get(profile_id)

    def get_state(self, profile_id: str) -> ConnectionState:
        session = self._sessions.get(profile_id)
        return session.state if session else ConnectionState.UNINITIALIZED

    def profiles(self) -> list[str]:
        return list(self._sessions)

    def _mailbox(self, profile_id: str) -> ProfileMailbox:
        mailbox = self._mailboxes.get(profile_id)
        if mailbox is None:
            mailbox = ProfileMailbox(profile_id, self.config.mailbox_size)
            self._mailboxes[profile_id] = mailbox
        return mailbox

    async def run_exclusive(self, profile_id: str, fn: Callable[..., Awaitable[Any]], *args) -> Any:
        """Run `fn` without overlapping any other handler of the profile."""
        mailbox = self._mailboxes.get(profile_id)
        if mailbox is None:
            return await fn(*args)
        return await mailbox.call(fn, *args)

    async def wait_idle(self, profile_id: Optional[str] = None):
        """Wait until the profile's (or every profile's) mailbox has drained."""
        if profile_id is not None:
            mailbox = self._mailboxes.get(profile_id)
            if mailbox is not None:
                await mailbox.join()
            return
        for mailbox in list(self._mailboxes.values()):
            await mailbox.join()

    # ── Timers ────────────────────────────────────────────

    @staticmethod
    def _timer_key(profile_id: str, purpose: str) -> tuple:
        return ("lifecycle", profile_id, purpose)

    def _arm(self, profile_id: str, purpose: str, delay: float, fn, *args) -> TimerHandle:
        return self.scheduler.arm(
            self._timer_key(profile_id, purpose), delay,
            lambda: self._mailbox(profile_id).post(fn, *args),
        )

    def _cancel(self, profile_id: str, purpose: str):
        self.scheduler.cancel(self._timer_key(profile_id, purpose))

    def _cancel_all_timers(self, profile_id: str) -> int:
        return self.scheduler.cancel_where(
            lambda k: isinstance(k, tuple) and k[:2] == ("lifecycle", profile_id)
        )

    # ── Event intake ──────────────────────────────────────

    def _sink(self, profile_id: str, generation: int):
        def sink(event: TransportEvent):
            self.submit(profile_id, event, generation)
        return sink

    def submit(self, profile_id: str, event: TransportEvent, generation: Optional[int] = None) -> bool:
        """Accept one transport event. Returns False when it was dropped."""
        session = self._sessions.get(profile_id)
        if session is None or (generation is not None and generation != session.generation):
            logger.debug("stale_transport_event", profile_id=profile_id,
                         kind=event.kind, generation=generation)
            return False

        if isinstance(event, CredentialsChanged):
            self.transport.save_credentials(profile_id, event.payload)
            return True

        return self._mailbox(profile_id).post(
            self._handle_event, profile_id, session.generation, event,
        )

    async def _handle_event(self, profile_id: str, generation: int, event: TransportEvent):
        session = self._sessions.get(profile_id)
        if session is None or session.generation != generation:
            return

        if isinstance(event, ConnectionUpdate):
            await self._on_connection_update(session, event)
        elif isinstance(event, LinkingArtifact):
            if session.state != ConnectionState.CONNECTING:
                logger.debug("linking_artifact_ignored", profile_id=profile_id, state=session.state.value)
                return
            session.linking_artifact = event
            await self._dispatch(profile_id, event)
        else:
            await self._dispatch(profile_id, event)

    async def _dispatch(self, profile_id: str, event: TransportEvent):
        if self.event_handler is None:
            return
        try:
            await self.event_handler(profile_id, event)
        except Exception as e:
            logger.error("event_handler_error", profile_id=profile_id, kind=event.kind, error=str(e))

    async def _emit_state(self, session: ConnectionSession, **fields):
        await self._dispatch(session.profile_id, ConnectionUpdate(state=session.state, **fields))

    # ── Transitions ───────────────────────────────────────

    async def start(self, profile_id: str) -> ConnectionSession:
        return await self._mailbox(profile_id).call(self._start, profile_id)

    async def _start(self, profile_id: str) -> ConnectionSession:
        existing = self._sessions.get(profile_id)
        if existing is not None and existing.is_live:
            logger.debug("profile_already_started", profile_id=profile_id, state=existing.state.value)
            return existing

        self._cancel(profile_id, "reconnect")
        session = ConnectionSession(profile_id=profile_id, generation=next(self._generations))
        self._sessions[profile_id] = session
        await self._enter_connecting(session)

        try:
            handle = await asyncio.wait_for(
                self.transport.connect(profile_id, self._sink(profile_id, session.generation)),
                timeout=self.config.connecting_timeout_s,
            )
        except Exception as e:
            self._cancel(profile_id, "connecting_timeout")
            session.state = ConnectionState.CLOSED
            session.last_error = str(e) or type(e).__name__
            logger.warning("transport_connect_failed", profile_id=profile_id,
                           error=session.last_error, retry_in_s=self.config.connect_failure_retry_s)
            await self._emit_state(session, reason=session.last_error)
            session.reconnect_timer = self._arm(
                profile_id, "reconnect", self.config.connect_failure_retry_s, self._start, profile_id,
            )
            return session

        if self._sessions.get(profile_id) is not session:
            await self._teardown_handle(profile_id, handle)
            return session

        session.handle = handle
        logger.info("profile_connecting", profile_id=profile_id, generation=session.generation)
        return session

    async def _enter_connecting(self, session: ConnectionSession):
        session.state = ConnectionState.CONNECTING
        session.connecting_timer = self._arm(
            session.profile_id, "connecting_timeout", self.config.connecting_timeout_s,
            self._on_connecting_timeout, session.profile_id, session.generation,
        )
        await self._emit_state(session)

    async def _on_connection_update(self, session: ConnectionSession, event: ConnectionUpdate):
        profile_id = session.profile_id

        if event.state == ConnectionState.CONNECTING:
            if session.state != ConnectionState.CONNECTING:
                await self._enter_connecting(session)

        elif event.state == ConnectionState.OPEN:
            self._cancel(profile_id, "connecting_timeout")
            session.connecting_timer = None
            session.linking_artifact = None
            session.last_error = None
            if session.state != ConnectionState.OPEN:
                session.state = ConnectionState.OPEN
                logger.info("profile_connected", profile_id=profile_id)
                await self._emit_state(session)

        elif event.state == ConnectionState.CLOSED:
            if session.state == ConnectionState.CLOSED:
                return
            terminal = event.logged_out or event.error_code in self.config.terminal_disconnect_codes
            self._cancel(profile_id, "connecting_timeout")
            session.connecting_timer = None
            session.linking_artifact = None
            session.last_error = event.reason or (str(event.error_code) if event.error_code else None)
            await self._teardown(session)
            session.state = ConnectionState.CLOSED

            if terminal:
                await self._terminal_cleanup(session, event.reason or "logged out", event.error_code)
            else:
                logger.warning("profile_disconnected", profile_id=profile_id,
                               error_code=event.error_code, reason=event.reason,
                               reconnect_in_s=self.config.reconnect_delay_s)
                await self._emit_state(session, error_code=event.error_code, reason=event.reason)
                session.reconnect_timer = self._arm(
                    profile_id, "reconnect", self.config.reconnect_delay_s,
                    self._reconnect, profile_id, session.generation,
                )

    async def _reconnect(self, profile_id: str, generation: int):
        session = self._sessions.get(profile_id)
        if session is not None and session.generation != generation:
            return
        await self._start(profile_id)

    async def _on_connecting_timeout(self, profile_id: str, generation: int):
        session = self._sessions.get(profile_id)
        if session is None or session.generation != generation:
            return
        if session.state != ConnectionState.CONNECTING:
            return
        logger.warning("connecting_timeout", profile_id=profile_id,
                       timeout_s=self.config.connecting_timeout_s)
        self.transport.clear_credentials(profile_id)
        await self._teardown(session)
        self._sessions.pop(profile_id, None)
        await self._start(profile_id)

    async def _terminal_cleanup(self, session: ConnectionSession, reason: str, error_code: Optional[int] = None):
        """Discard credentials, delete the session, restart to produce a fresh linking artifact."""
        profile_id = session.profile_id
        self.transport.clear_credentials(profile_id)
        await self._teardown(session)
        session.state = ConnectionState.CLOSED
        if self._sessions.get(profile_id) is session:
            del self._sessions[profile_id]
        logger.warning("profile_logged_out", profile_id=profile_id, reason=reason,
                       restart_in_s=self.config.logged_out_restart_delay_s)
        await self._emit_state(session, error_code=error_code, reason=reason, logged_out=True)
        self._arm(profile_id, "reconnect", self.config.logged_out_restart_delay_s, self._start, profile_id)

    async def _teardown(self, session: ConnectionSession):
        handle, session.handle = session.handle, None
        if handle is not None:
            await self._teardown_handle(session.profile_id, handle)

    async def _teardown_handle(self, profile_id: str, handle: TransportHandle):
        try:
            await self.transport.disconnect(handle)
        except Exception as e:
            logger.warning("transport_disconnect_failed", profile_id=profile_id, error=str(e))

    # ── Explicit operations ───────────────────────────────

    async def logout(self, profile_id: str):
        await self._mailbox(profile_id).call(self._logout, profile_id)

    async def _logout(self, profile_id: str):
        session = self._sessions.get(profile_id)
        if session is None:
            session = ConnectionSession(profile_id=profile_id, generation=next(self._generations))
        elif session.handle is not None:
            try:
                await self.transport.sign_off(session.handle)
            except Exception as e:
                logger.warning("transport_sign_off_failed", profile_id=profile_id, error=str(e))
        self._cancel_all_timers(profile_id)
        session.state = ConnectionState.CLOSED
        await self._terminal_cleanup(session, "logout")

    async def refresh(self, profile_id: str) -> ConnectionSession:
        """Force a brand-new linking artifact."""
        return await self._mailbox(profile_id).call(self._refresh, profile_id)

    async def _refresh(self, profile_id: str) -> ConnectionSession:
        logger.info("profile_refresh_requested", profile_id=profile_id)
        self._cancel_all_timers(profile_id)
        session = self._sessions.pop(profile_id, None)
        if session is not None:
            await self._teardown(session)
        self.transport.clear_credentials(profile_id)
        return await self._start(profile_id)

    async def request_linking_code(self, profile_id: str, phone_number: str) -> str:
        return await self._mailbox(profile_id).call(self._request_linking_code, profile_id, phone_number)

    async def _request_linking_code(self, profile_id: str, phone_number: str) -> str:
        session = self._sessions.get(profile_id)
        if session is None or session.handle is None:
            raise NotConnectedError(profile_id)
        if session.state != ConnectionState.CONNECTING:
            raise LinkingError(f"Profile {profile_id} is already linked", profile_id)
        code = await self.transport.request_linking_code(session.handle, phone_number)
        artifact = LinkingArtifact(artifact_kind="code", value=code)
        session.linking_artifact = artifact
        await self._dispatch(profile_id, artifact)
        return code

    async def delete(self, profile_id: str):
        """Cancel every timer, drop the session and stop the mailbox for a profile."""
        cancelled = self._cancel_all_timers(profile_id)
        session = self._sessions.pop(profile_id, None)
        mailbox = self._mailboxes.pop(profile_id, None)
        if mailbox is not None:
            await mailbox.close()
        if session is not None:
            await self._teardown(session)
        logger.info("profile_lifecycle_deleted", profile_id=profile_id, timers_cancelled=cancelled)

    async def shutdown(self):
        for profile_id in list(set(self._sessions) | set(self._mailboxes)):
            await self.delete(profile_id)
        logger.info("lifecycle_manager_shutdown")

    # ── Sends ─────────────────────────────────────────────

    def _open_handle(self, profile_id: str) -> TransportHandle:
        session = self._sessions.get(profile_id)
        if session is None or session.state != ConnectionState.OPEN or session.handle is None:
            raise NotConnectedError(profile_id)
        return session.handle

    async def send_text(self, profile_id: str, contact_id: str, text: str) -> dict[str, Any]:
        return await self.transport.send_text(self._open_handle(profile_id), contact_id, text)

    async def send_image(
        self, profile_id: str, contact_id: str, url: str, caption: Optional[str] = None,
    ) -> dict[str, Any]:
        return await self.transport.send_image(self._open_handle(profile_id), contact_id, url, caption)

    async def send_media(
        self,
        profile_id: str,
        contact_id: str,
        media_kind: str,
        url: str,
        caption: Optional[str] = None,
        mimetype: Optional[str] = None,
    ) -> dict[str, Any]:
        return await self.transport.send_media(
            self._open_handle(profile_id), contact_id, media_kind, url, caption, mimetype,
        )
