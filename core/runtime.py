"""
Profile Runtime — wires every component for one process.

  transport ─▶ ConnectionLifecycleManager ─▶ EventRouter ─┬─▶ ProfileDataStore
                        ▲                                 ├─▶ ConversationFlowEngine ─┐
                        │                                 ├─▶ WebhookDeliveryQueue    │
                        │                                 └─▶ observers               │
                        └────────────── sends ◀───────────── OutboundMessenger ◀──────┘
"""
from __future__ import annotations

import structlog
from typing import Optional

import httpx

from channels.base import MessagingTransport
from channels.loopback import LoopbackTransport
from config.settings import Settings, get_settings
from core.flow_engine import ConversationFlowEngine
from core.lifecycle import ConnectionLifecycleManager
from core.outbound import OutboundMessenger
from core.router import EventRouter, ObserverSink
from database.profile_store import ProfileDataStore
from database.store_base import BaseKeyValueStore
from database.store_factory import create_store
from job_queue.subscriptions import WebhookSubscriptionRegistry
from job_queue.webhook_queue import WebhookDeliveryQueue
from utils.scheduler import AsyncioScheduler, Scheduler

logger = structlog.get_logger()


class ProfileRuntime:

    def __init__(
        self,
        settings: Settings,
        transport: MessagingTransport,
        scheduler: Scheduler,
        store: BaseKeyValueStore,
        profiles: ProfileDataStore,
        subscriptions: WebhookSubscriptionRegistry,
        webhooks: WebhookDeliveryQueue,
        lifecycle: ConnectionLifecycleManager,
        flows: ConversationFlowEngine,
        router: EventRouter,
        outbound: OutboundMessenger,
    ):
        self.settings = settings
        self.transport = transport
        self.scheduler = scheduler
        self.store = store
        self.profiles = profiles
        self.subscriptions = subscriptions
        self.webhooks = webhooks
        self.lifecycle = lifecycle
        self.flows = flows
        self.router = router
        self.outbound = outbound
        self._started = False

    @classmethod
    def build(
        cls,
        settings: Settings = None,
        transport: MessagingTransport = None,
        scheduler: Scheduler = None,
        store: BaseKeyValueStore = None,
        observers: Optional[list[ObserverSink]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> ProfileRuntime:
        settings = settings or get_settings()
        scheduler = scheduler or AsyncioScheduler()
        transport = transport or LoopbackTransport()
        store = store or create_store(settings.store, scheduler)

        profiles = ProfileDataStore(store)
        subscriptions = WebhookSubscriptionRegistry(store)
        webhooks = WebhookDeliveryQueue(store, subscriptions, scheduler, settings.webhooks, client=http_client)
        lifecycle = ConnectionLifecycleManager(transport, scheduler, settings.lifecycle)
        flows = ConversationFlowEngine(
            profiles, lifecycle, scheduler, settings.flows, serializer=lifecycle.run_exclusive,
        )
        router = EventRouter(profiles, webhooks, flows, observers)
        lifecycle.event_handler = router.route
        outbound = OutboundMessenger(lifecycle, webhooks, profiles, client=http_client)

        return cls(
            settings=settings, transport=transport, scheduler=scheduler, store=store,
            profiles=profiles, subscriptions=subscriptions, webhooks=webhooks,
            lifecycle=lifecycle, flows=flows, router=router, outbound=outbound,
        )

    def boot_profiles(self) -> list[str]:
        if self.settings.profiles:
            return list(self.settings.profiles)
        return [p.id for p in self.profiles.get_profiles()]

    async def start(self):
        self.webhooks.start()
        self.flows.start()
        for profile_id in self.boot_profiles():
            await self.add_profile(profile_id)
        self._started = True
        logger.info("runtime_started", app=self.settings.app_name, profiles=self.lifecycle.profiles())

    async def stop(self):
        self.flows.stop()
        await self.lifecycle.shutdown()
        await self.webhooks.stop()
        await self.outbound.close()
        await self.store.close()
        self._started = False
        logger.info("runtime_stopped")

    async def add_profile(self, profile_id: str, name: str = ""):
        self.profiles.ensure_profile(profile_id, name)
        await self.lifecycle.start(profile_id)

    async def delete_profile(self, profile_id: str):
        """Stop the profile and discard everything the process holds for it."""
        await self.lifecycle.delete(profile_id)
        self.router.forget(profile_id)
        self.flows.clear_profile(profile_id)
        self.subscriptions.remove_profile(profile_id)
        dropped = self.webhooks.remove_profile(profile_id)
        self.transport.clear_credentials(profile_id)
        self.profiles.delete_profile_data(profile_id)
        logger.info("profile_deleted", profile_id=profile_id, webhook_tasks_dropped=dropped)
