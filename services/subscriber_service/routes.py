"""
Routing table: which subscription receives which events.

Both processes build their Router from this table. The write processor only
needs the delivery queues (it fans out); the subscriber service also
attaches the endpoint adapters (it delivers).
"""
from __future__ import annotations

from pipeline.config import PipelineConfig
from pipeline.events import EntityType, EventDelivery, Operation
from pipeline.router import Router, SubscriberEndpoint, SubscriptionPattern
from pipeline.work_queue import SqsWorkQueue

SEARCH_INDEX = "search-index"
ANALYTICS = "analytics"
NOTIFICATIONS = "notifications"

ROUTING_TABLE: dict[str, list[SubscriptionPattern]] = {
    SEARCH_INDEX: [
        SubscriptionPattern(entity_type=EntityType.RESTAURANT),
        SubscriptionPattern(entity_type=EntityType.REVIEW),
        SubscriptionPattern(entity_type=EntityType.USER_ACCOUNT),
    ],
    ANALYTICS: [SubscriptionPattern()],
    NOTIFICATIONS: [
        SubscriptionPattern(entity_type=EntityType.USER_ACCOUNT, operation=Operation.CREATE),
        SubscriptionPattern(entity_type=EntityType.USER_ACCOUNT, operation=Operation.DELETE),
        SubscriptionPattern(entity_type=EntityType.REVIEW, operation=Operation.CREATE),
    ],
}


def build_router(
    config: PipelineConfig,
    sqs_client,
    targets: dict[str, SubscriberEndpoint] | None = None,
) -> Router:
    router = Router()
    for subscription_id, patterns in ROUTING_TABLE.items():
        queue = SqsWorkQueue.from_name(
            sqs_client,
            config.subscription_queue_name(subscription_id),
            EventDelivery,
            config.poll_interval_seconds,
        )
        router.subscribe(subscription_id, patterns, (targets or {}).get(subscription_id), queue)
    return router
