"""
Idempotency Ledger
==================
SQS delivers at-least-once and a visibility timeout can hand the same
message to a second worker while the first is still busy. The ledger is what
turns "at-least-once delivery" into "one side effect per request_id".

One DynamoDB item per request_id, moving through these states:

  APPLYING       claimed by a worker, mutation not yet committed
  APPLIED        mutation committed, DomainEvent not yet accepted by the bus
  PUBLISHED      event accepted; any redelivery is a pure duplicate
  DEAD_LETTERED  the message sits in its DLQ (failure_kind, last_error kept)

Splitting APPLIED from PUBLISHED is what lets a crash between commit and
publish heal itself: the redelivered message skips the mutation and only
republishes the event.

The claim is a conditional write (`attribute_not_exists`), so two workers
racing on the same request cannot both win. If the mutation fails the claim
is deleted again (compensating rollback) so the retry can re-claim it.
A DEAD_LETTERED record without a committed entity can be claimed too.
A claim left behind by a crashed worker is taken over once it is older than
the lease (the queue's visibility window); this re-applies the mutation,
which is only safe because the entity repositories are keyed by a stable id
and conditioned on causation_id.

Garbage collection: the `ttl` attribute is a DynamoDB TTL attribute. DynamoDB
deletes lazily, so reads also treat expired items as absent.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from .dynamodb import is_conditional_failure, unavailable
from .errors import LedgerClaimConflict
from .events import MutationRequest

logger = logging.getLogger(__name__)


class LedgerStatus(str, Enum):
    APPLYING = "APPLYING"
    APPLIED = "APPLIED"
    PUBLISHED = "PUBLISHED"
    DEAD_LETTERED = "DEAD_LETTERED"


@dataclass(frozen=True)
class IdempotencyRecord:
    request_id: str
    entity_type: str
    operation: str
    status: LedgerStatus
    claimed_at: float
    expires_at: int
    entity_id: str | None = None
    committed_at: datetime | None = None
    processed_at: datetime | None = None
    failure_kind: str = ""
    last_error: str = ""
    attempt: int = 0

    @classmethod
    def from_item(cls, item: dict) -> "IdempotencyRecord":
        def _ts(key):
            raw = item.get(key)
            return datetime.fromtimestamp(float(raw), tz=timezone.utc) if raw is not None else None

        return cls(
            request_id=item["request_id"],
            entity_type=item.get("entity_type", ""),
            operation=item.get("operation", ""),
            status=LedgerStatus(item["status"]),
            claimed_at=float(item.get("claimed_at", 0)) / 1000,
            expires_at=int(item.get("ttl", 0)),
            entity_id=item.get("entity_id"),
            committed_at=_ts("committed_at"),
            processed_at=_ts("processed_at"),
            failure_kind=item.get("failure_kind", ""),
            last_error=item.get("last_error", ""),
            attempt=int(item.get("attempt", 0)),
        )


class IdempotencyLedger:
    """
    Parameters
    ----------
    table:         boto3 DynamoDB Table, hash key `request_id`
    default_ttl:   seconds a record lives; must exceed the max redelivery span
    lease_seconds: how long an APPLYING claim blocks other workers
    """

    def __init__(self, table, default_ttl: int, lease_seconds: float, clock=time.time):
        self._table = table
        self.default_ttl = default_ttl
        self.lease_seconds = lease_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def lookup(self, request_id: str) -> IdempotencyRecord | None:
        try:
            item = self._table.get_item(Key={"request_id": request_id}, ConsistentRead=True).get("Item")
        except (ClientError, BotoCoreError) as e:
            raise unavailable(e, "ledger lookup") from e
        if not item:
            return None
        record = IdempotencyRecord.from_item(item)
        if record.expires_at and record.expires_at < self._clock():
            return None
        return record

    def has_processed(self, request_id: str) -> bool:
        record = self.lookup(request_id)
        return record is not None and record.status == LedgerStatus.PUBLISHED

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def claim(self, request: MutationRequest) -> None:
        """
        Atomically mark the request as being applied by this worker.
        Raises LedgerClaimConflict if another worker holds a live claim.
        """
        now = self._clock()
        item = {
            "request_id": request.request_id,
            "entity_type": request.entity_type.value,
            "operation": request.operation.value,
            "status": LedgerStatus.APPLYING.value,
            "claimed_at": int(now * 1000),
            "ttl": int(now) + self.default_ttl,
        }
        stale_before = int((now - self.lease_seconds) * 1000)
        try:
            self._table.put_item(
                Item=item,
                ConditionExpression=(
                    Attr("request_id").not_exists()
                    | (Attr("status").eq(LedgerStatus.APPLYING.value) & Attr("claimed_at").lt(stale_before))
                    | Attr("status").eq(LedgerStatus.DEAD_LETTERED.value)
                    | Attr("ttl").lt(int(now))
                ),
            )
        except ClientError as e:
            if not is_conditional_failure(e):
                raise unavailable(e, "ledger claim") from e
            existing = self.lookup(request.request_id)
            claimed_at = existing.claimed_at if existing else now
            raise LedgerClaimConflict(request.request_id, claimed_at) from e
        except BotoCoreError as e:
            raise unavailable(e, "ledger claim") from e

    def release_claim(self, request_id: str) -> None:
        """Compensating rollback after a failed apply, so a retry can re-claim."""
        try:
            self._table.delete_item(
                Key={"request_id": request_id},
                ConditionExpression=Attr("status").eq(LedgerStatus.APPLYING.value),
            )
        except ClientError as e:
            if is_conditional_failure(e):
                return
            # The stale-lease takeover in claim() covers us if this fails
            logger.warning("Could not release ledger claim for %s: %s", request_id, e)
        except BotoCoreError as e:
            logger.warning("Could not release ledger claim for %s: %s", request_id, e)

    def record_applied(self, request_id: str, entity_id: str) -> datetime:
        """Mutation committed. Returns the commit timestamp stored in the ledger."""
        now = self._clock()
        try:
            self._table.update_item(
                Key={"request_id": request_id},
                UpdateExpression="SET #s = :s, entity_id = :e, committed_at = :c",
                ExpressionAttributeNames={"#s": "status"},
                ExpressionAttributeValues={
                    ":s": LedgerStatus.APPLIED.value,
                    ":e": entity_id,
                    ":c": int(now),
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise unavailable(e, "ledger record_applied") from e
        return datetime.fromtimestamp(int(now), tz=timezone.utc)

    def mark_processed(self, request_id: str, ttl: int | None = None) -> None:
        """Event accepted by the bus. From here on, redeliveries are no-ops."""
        now = self._clock()
        try:
            self._table.update_item(
                Key={"request_id": request_id},
                UpdateExpression="SET #s = :s, processed_at = :p, #t = :t",
                ExpressionAttributeNames={"#s": "status", "#t": "ttl"},
                ExpressionAttributeValues={
                    ":s": LedgerStatus.PUBLISHED.value,
                    ":p": int(now),
                    ":t": int(now) + (ttl or self.default_ttl),
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise unavailable(e, "ledger mark_processed") from e

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------

    def record_dead_letter(
        self,
        request_id: str,
        failure_kind: str,
        last_error: str,
        attempt: int,
        entity_type: str,
        operation: str,
        ttl: int,
    ) -> None:
        """
        The message was moved to its DLQ. Kept on the request's own key so a
        status lookup is one GetItem, never a DLQ scan. entity_id and
        committed_at survive, so a redriven APPLIED request still only
        republishes. A PUBLISHED record is left alone.
        """
        now = self._clock()
        try:
            self._table.update_item(
                Key={"request_id": request_id},
                UpdateExpression=(
                    "SET #s = :s, failure_kind = :k, last_error = :e, #a = :a, dead_lettered_at = :d, #t = :t, "
                    "entity_type = if_not_exists(entity_type, :et), #o = if_not_exists(#o, :op)"
                ),
                ConditionExpression=Attr("request_id").not_exists() | Attr("status").ne(LedgerStatus.PUBLISHED.value),
                ExpressionAttributeNames={"#s": "status", "#t": "ttl", "#a": "attempt", "#o": "operation"},
                ExpressionAttributeValues={
                    ":s": LedgerStatus.DEAD_LETTERED.value,
                    ":k": failure_kind,
                    ":e": last_error[:1000],
                    ":a": attempt,
                    ":d": int(now),
                    ":t": int(now) + ttl,
                    ":et": entity_type,
                    ":op": operation,
                },
            )
        except ClientError as e:
            if is_conditional_failure(e):
                logger.info("Request %s already published, dead-letter not recorded", request_id)
                return
            raise unavailable(e, "ledger record_dead_letter") from e
        except BotoCoreError as e:
            raise unavailable(e, "ledger record_dead_letter") from e

    def clear_dead_letter(self, request_id: str) -> None:
        """
        The message is going back onto its work queue. A request that had
        committed returns to APPLIED; anything else is forgotten so the next
        attempt can claim it.
        """
        record = self.lookup(request_id)
        if record is None or record.status != LedgerStatus.DEAD_LETTERED:
            return
        still_dead = Attr("status").eq(LedgerStatus.DEAD_LETTERED.value)
        try:
            if record.entity_id:
                self._table.update_item(
                    Key={"request_id": request_id},
                    UpdateExpression="SET #s = :s REMOVE failure_kind, last_error, #a, dead_lettered_at",
                    ConditionExpression=still_dead,
                    ExpressionAttributeNames={"#s": "status", "#a": "attempt"},
                    ExpressionAttributeValues={":s": LedgerStatus.APPLIED.value},
                )
            else:
                self._table.delete_item(Key={"request_id": request_id}, ConditionExpression=still_dead)
        except ClientError as e:
            if is_conditional_failure(e):
                return
            raise unavailable(e, "ledger clear_dead_letter") from e
        except BotoCoreError as e:
            raise unavailable(e, "ledger clear_dead_letter") from e
