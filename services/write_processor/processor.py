"""
Write Processor
===============
Drains one work queue (one entity type x operation). For every message:

  1. ledger says PUBLISHED          -> acknowledge, DUPLICATE
  2. undecodable / invalid payload  -> dead-letter (ValidationError), no retry
  3. ledger says APPLIED            -> skip the mutation, go straight to 5
     (so does a redriven DEAD_LETTERED record that had committed)
  4. claim ledger (APPLYING) -> apply via persistence gateway -> record APPLIED
     (an apply failure releases the claim so the retry can re-claim)
  5. publish DomainEvent -> mark ledger PUBLISHED -> acknowledge

Apply (4) and publish (5) are separate retryable steps. A crash after the
commit but before the bus accepted the event leaves the ledger at APPLIED;
the redelivered message republishes without touching the entity again, and
since event_id is derived from request_id the republished event is the
same event as far as subscribers are concerned.

Anything that is not a validation failure is treated as transient: the
message is released with exponential backoff until the attempt budget is
spent, then dead-lettered as TerminalRetryExhaustion and the alarm hook is
signalled, whatever the DLQ depth. Every dead-letter is also written to the
ledger (DEAD_LETTERED) so request status never has to read the DLQ.
No exception escapes handle().
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

from aws_xray_sdk.core import xray_recorder

from pipeline.alarms import (
    AlarmHook,
    ErrorRateMonitor,
    LoggingAlarmHook,
    check_dlq_depth,
    notify_retry_exhausted,
)
from pipeline.circuit_breaker import CircuitBreaker
from pipeline.config import PipelineConfig
from pipeline.errors import (
    PayloadValidationError,
    PersistenceUnavailableError,
    QueueUnavailableError,
    TerminalRetryExhaustion,
    describe,
)
from pipeline.event_bus import EventBus
from pipeline.events import DomainEvent, MutationRequest, utcnow
from pipeline.idempotency import IdempotencyLedger, LedgerStatus
from pipeline.retry import RetryController
from pipeline.schemas import CURRENT_SCHEMA_VERSION, _Payload, validate_payload
from pipeline.work_queue import DLQ_RETENTION_SECONDS, Receipt, SqsWorkQueue

from write_processor.repositories import PersistenceGateway

logger = logging.getLogger(__name__)

# A dead-lettered request keeps its entity_id if it had committed before failing
_COMMITTED = (LedgerStatus.APPLIED, LedgerStatus.DEAD_LETTERED)


class Outcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    DUPLICATE = "DUPLICATE"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    DEAD_LETTERED = "DEAD_LETTERED"


@dataclass
class ProcessResult:
    outcome: Outcome
    request_id: str
    attempt: int = 0
    event: DomainEvent | None = None
    error: str = ""
    delay_seconds: int = 0


class Processor:
    def __init__(
        self,
        queue: SqsWorkQueue[MutationRequest],
        ledger: IdempotencyLedger,
        gateway: PersistenceGateway,
        bus: EventBus,
        config: PipelineConfig,
        retry: RetryController | None = None,
        breaker: CircuitBreaker | None = None,
        alarm_hook: AlarmHook | None = None,
        error_monitor: ErrorRateMonitor | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.ledger = ledger
        self.gateway = gateway
        self.bus = bus
        self.config = config
        self.retry = retry or RetryController(config.retry)
        self.breaker = breaker
        self.alarm_hook = alarm_hook or LoggingAlarmHook()
        self.error_monitor = error_monitor
        self._clock = clock

    # ------------------------------------------------------------------
    # Loop body
    # ------------------------------------------------------------------

    def poll_once(self) -> list[ProcessResult]:
        """Dequeue one batch and handle every message in it, keeping the rest of the batch hidden meanwhile."""
        window = self.config.visibility_window_seconds
        batch = self.queue.dequeue(self.config.batch_size, window)
        return self.queue.handle_batch(batch, self.handle, window, self.config.extend_visibility)

    def handle(self, request: MutationRequest | None, receipt: Receipt[MutationRequest]) -> ProcessResult:
        if request is None:
            return self._dead_letter(
                receipt, PayloadValidationError.failure_kind, receipt.parse_error or "undecodable message",
            )

        with xray_recorder.in_segment(f"write-processor-{self.queue.name}") as segment:
            segment.put_annotation("request_id", request.request_id)
            segment.put_annotation("entity_type", request.entity_type.value)
            segment.put_annotation("operation", request.operation.value)
            segment.put_annotation("attempt", request.attempt)
            result = self._process(request, receipt)
            segment.put_annotation("outcome", result.outcome.value)
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _process(self, request: MutationRequest, receipt: Receipt[MutationRequest]) -> ProcessResult:
        log_extra = {
            "request_id": request.request_id,
            "entity_type": request.entity_type.value,
            "operation": request.operation.value,
            "attempt": request.attempt,
        }
        try:
            record = self.ledger.lookup(request.request_id)
            if record is not None and record.status == LedgerStatus.PUBLISHED:
                self.queue.acknowledge(receipt)
                logger.info("Duplicate delivery skipped", extra=log_extra)
                return ProcessResult(Outcome.DUPLICATE, request.request_id, request.attempt)

            payload = validate_payload(request)

            if record is not None and record.status in _COMMITTED and record.entity_id:
                logger.info("Mutation already committed, republishing event", extra=log_extra)
                entity_id, committed_at = record.entity_id, record.committed_at
            else:
                entity_id, committed_at = self._apply(request, payload)

            event = DomainEvent.for_request(
                request, entity_id, self._event_payload(request, payload, entity_id), committed_at,
            )
            with xray_recorder.in_subsegment("publish"):
                self.bus.publish(event)
            self.ledger.mark_processed(request.request_id, self.config.ledger_ttl_seconds)
            self.queue.acknowledge(receipt)
        except PayloadValidationError as e:
            logger.warning("Payload rejected: %s", e, extra=log_extra)
            return self._dead_letter(receipt, e.failure_kind, describe(e), request)
        except Exception as e:
            return self._retry_or_dead_letter(request, receipt, e)

        logger.info("Mutation processed", extra={**log_extra, "event_id": event.event_id, "entity_id": entity_id})
        return ProcessResult(Outcome.SUCCEEDED, request.request_id, request.attempt, event=event)

    def _apply(self, request: MutationRequest, payload: _Payload) -> tuple[str, datetime]:
        self.ledger.claim(request)
        try:
            with xray_recorder.in_subsegment("apply"):
                if self.breaker is not None:
                    entity_id = self.breaker.call(
                        self.gateway.apply, request.entity_type, request.operation, payload,
                        request_id=request.request_id,
                    )
                else:
                    entity_id = self.gateway.apply(
                        request.entity_type, request.operation, payload, request_id=request.request_id,
                    )
            committed_at = self.ledger.record_applied(request.request_id, entity_id)
        except Exception:
            # Compensating rollback: the retry must be able to claim again
            self.ledger.release_claim(request.request_id)
            raise
        return entity_id, committed_at

    @staticmethod
    def _event_payload(request: MutationRequest, payload: _Payload, entity_id: str) -> dict:
        body = payload.model_dump(mode="json", exclude_none=True)
        body["schema_version"] = CURRENT_SCHEMA_VERSION
        body[request.entity_type.id_field] = entity_id
        return body

    # ------------------------------------------------------------------
    # Failure paths
    # ------------------------------------------------------------------

    def _retry_or_dead_letter(
        self, request: MutationRequest, receipt: Receipt[MutationRequest], exc: Exception,
    ) -> ProcessResult:
        error = describe(exc)
        if self.error_monitor is not None:
            self.error_monitor.record_failure(error)

        decision = self.retry.on_failure(request.attempt, self._clock())
        if decision.terminal:
            exhausted = TerminalRetryExhaustion(decision.next_attempt, error)
            logger.error(
                "Retry budget exhausted: %s", error,
                extra={"request_id": request.request_id, "attempt": request.attempt},
            )
            return self._dead_letter(receipt, exhausted.failure_kind, error, request)

        try:
            self.queue.release(receipt, decision.delay_seconds, error, decision.next_eligible_at)
        except QueueUnavailableError as e:
            # Not acknowledged either: the visibility window brings it back
            logger.error("Release failed, leaving message for redelivery: %s", e,
                         extra={"request_id": request.request_id})
        logger.warning(
            "Transient failure, retry scheduled: %s", error,
            extra={
                "request_id": request.request_id,
                "attempt": request.attempt,
                "delay_seconds": decision.delay_seconds,
            },
        )
        return ProcessResult(
            Outcome.RETRY_SCHEDULED, request.request_id, request.attempt,
            error=error, delay_seconds=decision.delay_seconds,
        )

    def _dead_letter(
        self,
        receipt: Receipt[MutationRequest],
        failure_kind: str,
        error: str,
        request: MutationRequest | None = None,
    ) -> ProcessResult:
        entity_type = request.entity_type.value if request else "unknown"
        operation = request.operation.value if request else "unknown"
        try:
            self.queue.dead_letter(receipt, failure_kind, error)
        except QueueUnavailableError as e:
            logger.error("Dead-letter failed, leaving message for redelivery: %s", e,
                         extra={"request_id": receipt.retry.request_id})
            return ProcessResult(Outcome.RETRY_SCHEDULED, receipt.retry.request_id, receipt.retry.attempt, error=error)

        logger.error(
            "Message dead-lettered",
            extra={"request_id": receipt.retry.request_id, "failure_kind": failure_kind, "last_error": error},
        )
        try:
            self.ledger.record_dead_letter(
                receipt.retry.request_id, failure_kind, error, receipt.retry.attempt,
                entity_type, operation, ttl=DLQ_RETENTION_SECONDS,
            )
        except PersistenceUnavailableError as e:
            # The DLQ entry stands; status reads PENDING until an operator acts
            logger.error("Dead letter not recorded in ledger: %s", e, extra={"request_id": receipt.retry.request_id})

        if failure_kind == TerminalRetryExhaustion.failure_kind:
            notify_retry_exhausted(
                self.alarm_hook,
                receipt.retry.attempt + 1,
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
        return ProcessResult(
            Outcome.DEAD_LETTERED, receipt.retry.request_id, receipt.retry.attempt, error=error,
        )
