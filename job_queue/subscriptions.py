"""
Webhook subscriptions — which URLs want which events for a profile.

Stored under the `webhooks` key as:
  {
      "<profile_id>": [
          {"url": "...", "events": ["message_received"], "enabled": true, "secret": "..."},
      ],
  }

Subscriptions are plain configuration written by the admin layer; the
delivery queue only reads them.
"""
from __future__ import annotations

import structlog
from typing import Any

from pydantic import ValidationError

from database.store_base import BaseKeyValueStore
from models.schemas import WebhookSubscription

logger = structlog.get_logger()


class WebhookSubscriptionRegistry:

    STORE_KEY = "webhooks"

    def __init__(self, store: BaseKeyValueStore):
        self.store = store

    def _all(self) -> dict[str, Any]:
        raw = self.store.get(self.STORE_KEY, {})
        if not isinstance(raw, dict):
            logger.warning("webhook_config_invalid", type=type(raw).__name__)
            return {}
        return raw

    def list(self, profile_id: str) -> list[WebhookSubscription]:
        subs = []
        for item in self._all().get(profile_id) or []:
            try:
                subs.append(WebhookSubscription.model_validate(item))
            except ValidationError as e:
                logger.warning("webhook_subscription_invalid", profile_id=profile_id, error=str(e))
        return subs

    def add(self, profile_id: str, subscription: WebhookSubscription) -> WebhookSubscription:
        """Add a subscription; an existing one for the same URL is replaced."""
        subs = [s for s in self.list(profile_id) if s.url != subscription.url]
        subs.append(subscription)
        self._save(profile_id, subs)
        logger.info("webhook_subscription_added", profile_id=profile_id,
                    url=subscription.url, events=subscription.events)
        return subscription

    def remove(self, profile_id: str, url: str) -> bool:
        subs = self.list(profile_id)
        kept = [s for s in subs if s.url != url]
        if len(kept) == len(subs):
            return False
        self._save(profile_id, kept)
        logger.info("webhook_subscription_removed", profile_id=profile_id, url=url)
        return True

    def matching(self, profile_id: str, event_name: str) -> list[WebhookSubscription]:
        return [s for s in self.list(profile_id) if s.wants(event_name)]

    def remove_profile(self, profile_id: str):
        configs = dict(self._all())
        if configs.pop(profile_id, None) is not None:
            self.store.set(self.STORE_KEY, configs)

    def _save(self, profile_id: str, subs: list[WebhookSubscription]):
        configs = dict(self._all())
        configs[profile_id] = [s.to_json_dict() for s in subs]
        self.store.set(self.STORE_KEY, configs)
