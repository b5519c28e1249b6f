"""
Event Bus
=========
EventBridge is the bus of record: once put_events accepts the entry the
event is durable, whatever happens to this process next. The Router then
fans the same event out to the per-subscription delivery queues.

publish() raises EventBusUnavailableError (transient) when:
  - EventBridge is unreachable or throttling
  - EventBridge accepted the call but rejected the entry (FailedEntryCount > 0)
  - a subscription queue did not accept the event

In every case the Processor does not acknowledge the mutation message, so
the publish is retried with the same event_id.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import EventBusUnavailableError
from .events import DomainEvent
from .router import FanOutError, Router, SubscriberEndpoint, SubscriptionHandle, SubscriptionPattern

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishAck:
    event_id: str
    bus_entry_id: str
    routed_to: list[str] = field(default_factory=list)


class EventBus:
    def __init__(self, events_client, bus_name: str, source: str, router: Router | None = None):
        self._events = events_client
        self.bus_name = bus_name
        self.source = source
        self.router = router or Router()

    @classmethod
    def from_config(cls, config, router: Router | None = None, events_client=None) -> "EventBus":
        return cls(
            events_client or boto3.client("events"),
            config.event_bus_name,
            config.event_source,
            router,
        )

    def publish(self, event: DomainEvent) -> PublishAck:
        try:
            resp = self._events.put_events(
                Entries=[event.to_eventbridge_entry(self.bus_name, self.source)]
            )
        except (ClientError, BotoCoreError) as e:
            raise EventBusUnavailableError(f"put_events failed: {e}") from e

        entries = resp.get("Entries", [])
        if resp.get("FailedEntryCount", 0) > 0 or not entries or "EventId" not in entries[0]:
            reason = entries[0].get("ErrorMessage", "unknown") if entries else "no entries returned"
            raise EventBusUnavailableError(f"EventBridge rejected {event.event_id}: {reason}")

        try:
            routed = self.router.route(event)
        except FanOutError as e:
            raise EventBusUnavailableError(str(e)) from e

        logger.info(
            "Event published",
            extra={
                "event_id": event.event_id,
                "detail_type": event.detail_type,
                "causation_id": event.causation_id,
                "routed_to": routed,
            },
        )
        return PublishAck(event.event_id, entries[0]["EventId"], routed)

    def subscribe(
        self,
        pattern: SubscriptionPattern | list[SubscriptionPattern],
        target: SubscriberEndpoint,
        queue,
        subscription_id: str | None = None,
    ) -> SubscriptionHandle:
        subscription_id = subscription_id or getattr(target, "subscription_id", None) or type(target).__name__
        return self.router.subscribe(subscription_id, pattern, target, queue)

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self.router.unsubscribe(handle)
