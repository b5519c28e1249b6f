"""
Router (subscription rules)
===========================
Maps every published DomainEvent onto the subscriptions whose pattern
matches it. Each subscription owns its own SQS delivery queue (and DLQ), so
fan-out is decoupled: a subscriber that is slow, down or NACKing everything
only backs up its own queue.

    DomainEvent ──> Router.route ──┬──> bellyfed-sub-search-index     ──> SearchIndexSubscriber
                                   ├──> bellyfed-sub-analytics        ──> AnalyticsSubscriber
                                   └──> bellyfed-sub-notifications    ──> NotificationSubscriber

Contract for subscribers: delivery is AT-LEAST-ONCE. The same event (same
event_id) can arrive more than once, e.g. after a republish that followed a
crash, or after a visibility timeout. Subscribers dedupe on event_id.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from .errors import QueueUnavailableError, describe
from .events import DeliveryResult, DomainEvent, EntityType, EventDelivery, Operation
from .work_queue import SqsWorkQueue

logger = logging.getLogger(__name__)


@runtime_checkable
class SubscriberEndpoint(Protocol):
    """Anything that can receive a DomainEvent. Must tolerate duplicates."""

    def deliver(self, event: DomainEvent) -> DeliveryResult: ...


class SubscriptionPattern(BaseModel):
    """`None` matches any value."""
    model_config = ConfigDict(frozen=True)

    entity_type: EntityType | None = None
    operation: Operation | None = None

    def matches(self, event: DomainEvent) -> bool:
        if self.entity_type is not None and self.entity_type != event.entity_type:
            return False
        if self.operation is not None and self.operation != event.operation:
            return False
        return True


@dataclass(frozen=True)
class SubscriptionHandle:
    subscription_id: str


@dataclass
class Subscription:
    subscription_id: str
    patterns: tuple[SubscriptionPattern, ...]
    target: SubscriberEndpoint | None
    queue: SqsWorkQueue[EventDelivery]

    def matches(self, event: DomainEvent) -> bool:
        return any(p.matches(event) for p in self.patterns)


class FanOutError(QueueUnavailableError):
    """One or more subscription queues did not accept the event."""

    def __init__(self, event_id: str, failed: dict[str, str]):
        self.event_id = event_id
        self.failed = failed
        super().__init__(f"Fan-out of {event_id} failed for {sorted(failed)}: {failed}")


class Router:
    def __init__(self):
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def subscribe(
        self,
        subscription_id: str,
        pattern: SubscriptionPattern | list[SubscriptionPattern],
        target: SubscriberEndpoint | None,
        queue: SqsWorkQueue[EventDelivery],
    ) -> SubscriptionHandle:
        """`target` may be None in processes that only publish (fan-out needs just the queue)."""
        patterns = tuple(pattern) if isinstance(pattern, (list, tuple)) else (pattern,)
        if not patterns:
            raise ValueError("a subscription needs at least one pattern")
        with self._lock:
            if subscription_id in self._subscriptions:
                raise ValueError(f"subscription {subscription_id!r} already registered")
            self._subscriptions[subscription_id] = Subscription(subscription_id, patterns, target, queue)
        logger.info("Subscription registered", extra={"subscription": subscription_id})
        return SubscriptionHandle(subscription_id)

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        with self._lock:
            self._subscriptions.pop(handle.subscription_id, None)

    def get(self, subscription_id: str) -> Subscription:
        with self._lock:
            return self._subscriptions[subscription_id]

    def subscriptions(self) -> list[Subscription]:
        with self._lock:
            return list(self._subscriptions.values())

    def matching(self, event: DomainEvent) -> list[Subscription]:
        return [s for s in self.subscriptions() if s.matches(event)]

    def route(self, event: DomainEvent) -> list[str]:
        """
        Enqueue one EventDelivery per matching subscription. Every match is
        attempted even if an earlier one fails; if any failed, FanOutError is
        raised so the publisher retries (healthy subscriptions then see a
        duplicate, which they are obliged to tolerate).
        """
        routed: list[str] = []
        failed: dict[str, str] = {}
        for sub in self.matching(event):
            try:
                sub.queue.enqueue(EventDelivery(subscription_id=sub.subscription_id, event=event))
            except QueueUnavailableError as e:
                logger.warning(
                    "Fan-out enqueue failed",
                    extra={"event_id": event.event_id, "subscription": sub.subscription_id},
                )
                failed[sub.subscription_id] = describe(e)
                continue
            routed.append(sub.subscription_id)
        if failed:
            raise FanOutError(event.event_id, failed)
        return routed
