"""
Webhook Delivery Queue — at-least-once, signed, retrying HTTP notifications.

Lifecycle of a task:

  trigger() ──▶ queued (attempts=0, next_retry=now)
                  │
       tick ──────┤ due? POST to target_url
                  │
        2xx ──────┼──▶ removed
                  │
    failure ──────┼──▶ attempts += 1
                  │      attempts < max  → next_retry = now + 2^attempts × base
                  │      attempts ≥ max  → dropped (logged)

Delivery is sequential: one task in flight at a time, and only one pass of
the loop can run at once. The in-memory queue is the source of truth; a
periodic persist writes it through the key-value store only when it changed,
and `load()` restores it on start so pending retries survive restarts.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from config.settings import WebhookConfig
from database.store_base import BaseKeyValueStore
from job_queue.subscriptions import WebhookSubscriptionRegistry
from models.schemas import WebhookDeliveryTask
from utils.scheduler import Scheduler

logger = structlog.get_logger()


class WebhookDeliveryError(Exception):
    """Non-2xx response or network failure delivering one task."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def encode_payload(payload: dict[str, Any]) -> bytes:
    """Compact JSON, the exact bytes that are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


class WebhookDeliveryQueue:

    STORE_KEY = "webhook_queue"
    TICK_KEY = ("webhooks", "tick")
    PERSIST_KEY = ("webhooks", "persist")
    KICK_KEY = ("webhooks", "kick")

    def __init__(
        self,
        store: BaseKeyValueStore,
        subscriptions: WebhookSubscriptionRegistry,
        scheduler: Scheduler,
        config: WebhookConfig = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.store = store
        self.subscriptions = subscriptions
        self.scheduler = scheduler
        self.config = config or WebhookConfig()
        self._client = client
        self._owns_client = client is None
        self._tasks: dict[str, WebhookDeliveryTask] = {}    # insertion-ordered
        self._processing = False
        self._dirty = False

    # ── Introspection ─────────────────────────────────────

    def pending(self, profile_id: Optional[str] = None) -> list[WebhookDeliveryTask]:
        return [t for t in self._tasks.values() if profile_id is None or t.profile_id == profile_id]

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def dirty(self) -> bool:
        return self._dirty

    # ── Enqueue ───────────────────────────────────────────

    def trigger(self, profile_id: str, event_name: str, data: dict[str, Any] = None) -> list[WebhookDeliveryTask]:
        """Queue one task per enabled subscription that wants `event_name`."""
        subs = self.subscriptions.matching(profile_id, event_name)
        if not subs:
            return []

        data = data or {}
        timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        now_ms = self.scheduler.now_ms()
        payload = {
            "event": event_name,
            "from": data.get("from") or profile_id,
            **data,
            "timestamp": timestamp,
        }

        created = []
        for sub in subs:
            task = WebhookDeliveryTask(
                profile_id=profile_id,
                event=event_name,
                payload=dict(payload),
                target_url=sub.url,
                secret=sub.secret,
                attempts=0,
                next_retry=now_ms,
                timestamp=timestamp,
            )
            self._tasks[task.id] = task
            created.append(task)

        self._dirty = True
        logger.info("webhook_triggered", profile_id=profile_id, webhook_event=event_name, tasks=len(created))
        if not self._processing:
            self.scheduler.arm(self.KICK_KEY, 0, self.process_queue)
        return created

    def remove_profile(self, profile_id: str) -> int:
        doomed = [tid for tid, t in self._tasks.items() if t.profile_id == profile_id]
        for tid in doomed:
            del self._tasks[tid]
        if doomed:
            self._dirty = True
        return len(doomed)

    # ── Delivery loop ─────────────────────────────────────

    async def process_queue(self) -> int:
        """One pass over due tasks. Returns the number delivered."""
        if self._processing:
            return 0
        self._processing = True
        delivered = 0
        try:
            now_ms = self.scheduler.now_ms()
            due = [t for t in self._tasks.values() if t.next_retry <= now_ms]
            for task in due:
                if task.id not in self._tasks:
                    continue  # removed while an earlier task was in flight
                try:
                    await self.deliver(task)
                except Exception as e:
                    self._record_failure(task, e)
                else:
                    self._tasks.pop(task.id, None)
                    delivered += 1
                    logger.info("webhook_delivered", task_id=task.id, webhook_event=task.event,
                                url=task.target_url, attempt=task.attempts + 1)
                self._dirty = True
        except Exception as e:
            logger.error("webhook_queue_processing_error", error=str(e))
        finally:
            self._processing = False
        return delivered

    def _record_failure(self, task: WebhookDeliveryTask, error: Exception):
        task.attempts += 1
        if task.attempts >= self.config.max_attempts:
            self._tasks.pop(task.id, None)
            logger.warning("webhook_task_dropped", task_id=task.id, webhook_event=task.event,
                           url=task.target_url, attempts=task.attempts, error=str(error))
            return
        delay_ms = (2 ** task.attempts) * self.config.backoff_base_ms
        task.next_retry = self.scheduler.now_ms() + delay_ms
        logger.warning("webhook_delivery_failed", task_id=task.id, webhook_event=task.event,
                       url=task.target_url, attempts=task.attempts,
                       retry_in_ms=delay_ms, error=str(error))

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.request_timeout_s)
            self._owns_client = True
        return self._client

    def build_request(self, task: WebhookDeliveryTask) -> tuple[bytes, dict[str, str]]:
        body = encode_payload(task.payload)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.config.user_agent,
            self.config.event_header: task.event,
        }
        if task.secret:
            headers["X-Hub-Signature"] = f"sha256={sign_body(task.secret, body)}"
        return body, headers

    async def deliver(self, task: WebhookDeliveryTask):
        if not task.target_url:
            raise WebhookDeliveryError("No target URL")
        body, headers = self.build_request(task)
        client = await self._get_client()
        try:
            response = await client.post(task.target_url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise WebhookDeliveryError(f"{type(e).__name__}: {e}") from e
        if not response.is_success:
            raise WebhookDeliveryError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )

    # ── Persistence ───────────────────────────────────────

    def snapshot(self) -> list[dict[str, Any]]:
        return [t.to_json_dict() for t in self._tasks.values()]

    async def persist(self) -> bool:
        """Write the queue through the store if it changed since the last write."""
        if not self._dirty:
            return False
        self._dirty = False
        try:
            self.store.set(self.STORE_KEY, self.snapshot())
            await self.store.flush(self.STORE_KEY)
        except (OSError, TypeError, ValueError) as e:
            self._dirty = True
            logger.error("webhook_queue_persist_failed", error=str(e))
            return False
        return True

    def load(self) -> int:
        raw = self.store.get(self.STORE_KEY, [])
        if not isinstance(raw, list):
            logger.warning("webhook_queue_invalid", type=type(raw).__name__)
            raw = []
        self._tasks.clear()
        for item in raw:
            try:
                task = WebhookDeliveryTask.model_validate(item)
            except ValidationError as e:
                logger.warning("webhook_task_invalid", error=str(e))
                continue
            self._tasks[task.id] = task
        logger.info("webhook_queue_loaded", tasks=len(self._tasks))
        return len(self._tasks)

    # ── Start / Stop ──────────────────────────────────────

    def start(self):
        self.load()
        self.scheduler.every(self.TICK_KEY, self.config.tick_interval_s, self.process_queue)
        self.scheduler.every(self.PERSIST_KEY, self.config.persist_interval_s, self.persist)
        logger.info("webhook_queue_started", tick_s=self.config.tick_interval_s,
                    persist_s=self.config.persist_interval_s)

    async def stop(self):
        for key in (self.TICK_KEY, self.PERSIST_KEY, self.KICK_KEY):
            self.scheduler.cancel(key)
        await self.persist()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("webhook_queue_stopped", pending=len(self._tasks))
