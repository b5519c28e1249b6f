"""
Subscriber delivery dispatcher
==============================
One dispatcher per subscription, draining that subscription's own delivery
queue. Nothing here is shared between subscriptions, which is what keeps a
broken search index from delaying analytics.

Per delivery:
  ACK                         -> acknowledge
  NACK / timeout / exception  -> SubscriberDeliveryFailure, released with the
                                 same backoff policy as the work queues
  attempt budget exhausted    -> subscription DLQ + alarm, always

Each deliver() runs on its own daemon thread; a timed-out call is abandoned
there and can never hold the process open on shutdown.

The originating mutation committed long before any of this runs; a failed
delivery never touches it.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum

from aws_xray_sdk.core import xray_recorder

from pipeline.alarms import (
    AlarmHook,
    ErrorRateMonitor,
    LoggingAlarmHook,
    check_dlq_depth,
    notify_retry_exhausted,
)
from pipeline.config import PipelineConfig
from pipeline.errors import (
    PayloadValidationError,
    QueueUnavailableError,
    SubscriberDeliveryFailure,
    describe,
)
from pipeline.events import DeliveryResult, EventDelivery, utcnow
from pipeline.retry import RetryController
from pipeline.router import Subscription
from pipeline.work_queue import Receipt

logger = logging.getLogger(__name__)


class DeliveryOutcome(str, Enum):
    DELIVERED = "DELIVERED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    DEAD_LETTERED = "DEAD_LETTERED"


@dataclass
class DeliveryReport:
    outcome: DeliveryOutcome
    subscription_id: str
    event_id: str
    attempt: int = 0
    error: str = ""


class SubscriberDispatcher:
    def __init__(
        self,
        subscription: Subscription,
        config: PipelineConfig,
        retry: RetryController | None = None,
        alarm_hook: AlarmHook | None = None,
        error_monitor: ErrorRateMonitor | None = None,
        clock=utcnow,
    ):
        if subscription.target is None:
            raise ValueError(f"subscription {subscription.subscription_id!r} has no target to deliver to")
        self.subscription = subscription
        self.queue = subscription.queue
        self.config = config
        self.retry = retry or RetryController(config.retry)
        self.alarm_hook = alarm_hook or LoggingAlarmHook()
        self.error_monitor = error_monitor
        self._clock = clock

    def poll_once(self) -> list[DeliveryReport]:
        window = self.config.visibility_window_seconds
        batch = self.queue.dequeue(self.config.batch_size, window)
        return self.queue.handle_batch(batch, self.handle, window, self.config.extend_visibility)

    def handle(self, delivery: EventDelivery | None, receipt: Receipt[EventDelivery]) -> DeliveryReport:
        sid = self.subscription.subscription_id
        if delivery is None:
            return self._dead_letter(
                receipt, PayloadValidationError.failure_kind, receipt.parse_error or "undecodable delivery",
            )

        with xray_recorder.in_segment(f"subscriber-{sid}") as segment:
            segment.put_annotation("subscription", sid)
            segment.put_annotation("event_id", delivery.event.event_id)
            try:
                result = self._deliver(delivery)
                if result != DeliveryResult.ACK:
                    raise SubscriberDeliveryFailure(sid, "subscriber returned NACK")
            except Exception as e:
                failure = e if isinstance(e, SubscriberDeliveryFailure) else SubscriberDeliveryFailure(sid, describe(e))
                return self._retry_or_dead_letter(delivery, receipt, failure)

        try:
            self.queue.acknowledge(receipt)
        except QueueUnavailableError as e:
            # Redelivered after the visibility window; subscribers dedupe on event_id
            logger.warning("Acknowledge failed: %s", e, extra={"subscription": sid})
        logger.info(
            "Event delivered",
            extra={"subscription": sid, "event_id": delivery.event.event_id, "attempt": delivery.attempt},
        )
        return DeliveryReport(DeliveryOutcome.DELIVERED, sid, delivery.event.event_id, delivery.attempt)

    def _deliver(self, delivery: EventDelivery) -> DeliveryResult:
        sid = self.subscription.subscription_id
        timeout = self.config.delivery_timeout_seconds
        outcome: dict = {}

        def run():
            try:
                outcome["result"] = self.subscription.target.deliver(delivery.event)
            except Exception as e:
                outcome["error"] = e

        worker = threading.Thread(target=run, daemon=True, name=f"deliver-{sid}")
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            # abandoned: the daemon thread dies with the process
            raise SubscriberDeliveryFailure(sid, f"timed out after {timeout}s")
        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]

    def _retry_or_dead_letter(
        self,
        delivery: EventDelivery,
        receipt: Receipt[EventDelivery],
        failure: SubscriberDeliveryFailure,
    ) -> DeliveryReport:
        sid = self.subscription.subscription_id
        error = describe(failure)
        if self.error_monitor is not None:
            self.error_monitor.record_failure(error)

        decision = self.retry.on_failure(delivery.attempt, self._clock())
        if decision.terminal:
            return self._dead_letter(receipt, failure.failure_kind, error, delivery)

        try:
            self.queue.release(receipt, decision.delay_seconds, error, decision.next_eligible_at)
        except QueueUnavailableError as e:
            logger.error("Release failed, leaving delivery for redelivery: %s", e, extra={"subscription": sid})
        logger.warning(
            "Delivery failed, retry scheduled: %s", failure.reason,
            extra={
                "subscription": sid,
                "event_id": delivery.event.event_id,
                "attempt": delivery.attempt,
                "delay_seconds": decision.delay_seconds,
            },
        )
        return DeliveryReport(
            DeliveryOutcome.RETRY_SCHEDULED, sid, delivery.event.event_id, delivery.attempt, error,
        )

    def _dead_letter(
        self,
        receipt: Receipt[EventDelivery],
        failure_kind: str,
        error: str,
        delivery: EventDelivery | None = None,
    ) -> DeliveryReport:
        sid = self.subscription.subscription_id
        event_id = delivery.event.event_id if delivery else receipt.retry.request_id
        try:
            self.queue.dead_letter(receipt, failure_kind, error)
        except QueueUnavailableError as e:
            logger.error("Dead-letter failed, leaving delivery for redelivery: %s", e, extra={"subscription": sid})
            return DeliveryReport(DeliveryOutcome.RETRY_SCHEDULED, sid, event_id, receipt.retry.attempt, error)

        logger.error(
            "Delivery dead-lettered",
            extra={"subscription": sid, "event_id": event_id, "failure_kind": failure_kind, "last_error": error},
        )
        entity_type = delivery.event.entity_type.value if delivery else "unknown"
        operation = delivery.event.operation.value if delivery else "unknown"
        if delivery is not None and failure_kind == SubscriberDeliveryFailure.failure_kind:
            notify_retry_exhausted(
                self.alarm_hook,
                delivery.attempt + 1,
                self.config.retry.max_attempts,
                entity_type,
                operation,
                queue=self.queue.name,
                last_error=error,
            )
        try:
            depth = self.queue.dlq_depth()
        except QueueUnavailableError as e:
            logger.warning("DLQ depth unavailable: %s", e)
            depth = self.config.dlq_alarm_threshold
        check_dlq_depth(
            self.alarm_hook,
            depth,
            self.config.dlq_alarm_threshold,
            entity_type,
            operation,
            queue=self.queue.name,
            last_error=error,
        )
        return DeliveryReport(DeliveryOutcome.DEAD_LETTERED, sid, event_id, receipt.retry.attempt, error)
