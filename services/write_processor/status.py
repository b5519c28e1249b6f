"""
Request status lookup
=====================
Answers the API layer's question "will this request eventually be reflected,
or has it definitively failed?" from the ledger record alone, one GetItem:

  COMPLETED  ledger record is PUBLISHED
  FAILED     ledger record is DEAD_LETTERED (the request sits in its DLQ)
  PENDING    anything else: queued, in flight, or waiting for a retry

The Processor writes DEAD_LETTERED when it moves a message to the DLQ and
redrive clears it, so the record mirrors DLQ membership without anyone
having to receive (and so hide) DLQ messages to answer.
"""
from __future__ import annotations

from enum import Enum

from pydantic import BaseModel

from pipeline.idempotency import IdempotencyLedger, LedgerStatus


class RequestState(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RequestStatus(BaseModel):
    request_id: str
    state: RequestState
    entity_id: str | None = None
    failure_kind: str = ""
    last_error: str = ""
    attempt: int = 0


class RequestStatusService:
    def __init__(self, ledger: IdempotencyLedger):
        self._ledger = ledger

    def status_of(self, request_id: str) -> RequestStatus:
        record = self._ledger.lookup(request_id)
        if record is None:
            return RequestStatus(request_id=request_id, state=RequestState.PENDING)

        if record.status == LedgerStatus.PUBLISHED:
            return RequestStatus(request_id=request_id, state=RequestState.COMPLETED, entity_id=record.entity_id)

        if record.status == LedgerStatus.DEAD_LETTERED:
            return RequestStatus(
                request_id=request_id,
                state=RequestState.FAILED,
                entity_id=record.entity_id,
                failure_kind=record.failure_kind,
                last_error=record.last_error,
                attempt=record.attempt,
            )

        return RequestStatus(request_id=request_id, state=RequestState.PENDING, entity_id=record.entity_id)
