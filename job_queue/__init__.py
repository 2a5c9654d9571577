"""
Webhook delivery — subscriptions and the retrying delivery queue.

- Event router TRIGGERS events for a profile
- Queue fans each event out to every matching subscription as one task
- Tasks are POSTed sequentially, retried with backoff, persisted through the store
"""
from job_queue.subscriptions import WebhookSubscriptionRegistry
from job_queue.webhook_queue import (
    WebhookDeliveryError,
    WebhookDeliveryQueue,
    encode_payload,
    sign_body,
)

__all__ = [
    "WebhookSubscriptionRegistry", "WebhookDeliveryQueue",
    "WebhookDeliveryError", "encode_payload", "sign_body",
]
