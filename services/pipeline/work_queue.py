"""
Work Queue + Dead-Letter Queue on SQS
=====================================
One SQS standard queue per entity type x operation (and one per subscriber),
each paired with its own DLQ. Standard queues give at-least-once delivery
and "mostly FIFO" ordering; the idempotency ledger absorbs the duplicates.

Lifecycle of a message:

  enqueue ──> dequeue (hidden for visibility_window) ──> acknowledge   (done)
                 │                                  └──> release       (re-sent with attempt+1, delayed)
                 │                                  └──> dead_letter   (moved to DLQ, tagged)
                 └── not acknowledged in time ──> visible again, redelivered

Why release re-sends instead of ChangeMessageVisibility:
  the attempt counter and last_error have to travel with the message, and an
  SQS message body is immutable. Re-sending is send-then-delete; a crash in
  between yields a duplicate, which the ledger already handles.

Redrive policy (maxReceiveCount) on the SQS queue itself is still configured
by bootstrap as a backstop for messages that crash the worker outright.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Generic, Iterable, Iterator, TypeVar

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from .errors import PipelineError, QueueUnavailableError
from .events import DeadLetterEntry, QueueItem, RetryState
from .retry import SQS_MAX_DELAY_SECONDS

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=QueueItem)
R = TypeVar("R")

# SQS limits
MAX_BATCH = 10
MAX_WAIT_SECONDS = 20
_INSPECT_VISIBILITY_SECONDS = 30
DLQ_RETENTION_SECONDS = 1209600  # 14 days


@dataclass
class Receipt(Generic[T]):
    """Token for one delivery of one message. Opaque to callers."""
    handle: str
    message_id: str
    body: str
    retry: RetryState
    item: T | None = None
    parse_error: str | None = None


def _attributes(values: dict[str, object]) -> dict:
    # SQS rejects empty string attribute values
    attrs = {}
    for key, value in values.items():
        if value is None or value == "":
            continue
        if isinstance(value, int):
            attrs[key] = {"DataType": "Number", "StringValue": str(value)}
        else:
            attrs[key] = {"DataType": "String", "StringValue": str(value)[:1024]}
    return attrs


def _attr(message: dict, key: str, default: str = "") -> str:
    return message.get("MessageAttributes", {}).get(key, {}).get("StringValue", default)


class SqsWorkQueue(Generic[T]):
    """
    Parameters
    ----------
    sqs_client:            boto3 SQS client
    name:                  logical queue name (used in logs / alarms)
    queue_url, dlq_url:    the queue and its DLQ
    item_model:            QueueItem subclass the bodies decode into
    poll_interval_seconds: upper bound on how long dequeue() may block
    """

    def __init__(
        self,
        sqs_client,
        name: str,
        queue_url: str,
        dlq_url: str,
        item_model: type[T],
        poll_interval_seconds: int = MAX_WAIT_SECONDS,
    ):
        self._sqs = sqs_client
        self.name = name
        self.queue_url = queue_url
        self.dlq_url = dlq_url
        self.item_model = item_model
        self.poll_interval_seconds = max(0, min(poll_interval_seconds, MAX_WAIT_SECONDS))

    @classmethod
    def from_name(
        cls,
        sqs_client,
        name: str,
        item_model: type[T],
        poll_interval_seconds: int = MAX_WAIT_SECONDS,
    ) -> "SqsWorkQueue[T]":
        try:
            queue_url = sqs_client.get_queue_url(QueueName=name)["QueueUrl"]
            dlq_url = sqs_client.get_queue_url(QueueName=f"{name}-dlq")["QueueUrl"]
        except (ClientError, BotoCoreError) as e:
            raise QueueUnavailableError(f"Queue {name!r} not resolvable: {e}") from e
        return cls(sqs_client, name, queue_url, dlq_url, item_model, poll_interval_seconds)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, item: T, delay_seconds: int = 0, retry: RetryState | None = None) -> str:
        attrs = {"request_id": item.message_key, "attempt": item.attempt, **item.routing_attributes()}
        if retry is not None:
            attrs["last_error"] = retry.last_error
            attrs["next_eligible_at"] = retry.next_eligible_at.isoformat() if retry.next_eligible_at else None
        try:
            resp = self._sqs.send_message(
                QueueUrl=self.queue_url,
                MessageBody=item.model_dump_json(),
                DelaySeconds=max(0, min(int(delay_seconds), SQS_MAX_DELAY_SECONDS)),
                MessageAttributes=_attributes(attrs),
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueUnavailableError(f"enqueue to {self.name} failed: {e}") from e
        return resp["MessageId"]

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def dequeue(self, batch_size: int, visibility_window: int) -> list[tuple[T | None, Receipt[T]]]:
        """
        Receive up to `batch_size` messages, hiding them for `visibility_window`
        seconds. Blocks at most `poll_interval_seconds`.

        Undecodable bodies come back as (None, receipt) with `parse_error` set;
        the caller decides (the Processor dead-letters them).
        """
        try:
            resp = self._sqs.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=max(1, min(batch_size, MAX_BATCH)),
                WaitTimeSeconds=self.poll_interval_seconds,
                VisibilityTimeout=visibility_window,
                MessageAttributeNames=["All"],
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueUnavailableError(f"dequeue from {self.name} failed: {e}") from e

        return [self._decode(m) for m in resp.get("Messages", [])]

    def _decode(self, message: dict) -> tuple[T | None, Receipt[T]]:
        body = message["Body"]
        next_eligible = _attr(message, "next_eligible_at")
        retry = RetryState(
            request_id=_attr(message, "request_id", message["MessageId"]),
            attempt=int(_attr(message, "attempt", "0")),
            next_eligible_at=datetime.fromisoformat(next_eligible) if next_eligible else None,
            last_error=_attr(message, "last_error"),
        )
        receipt: Receipt[T] = Receipt(
            handle=message["ReceiptHandle"],
            message_id=message["MessageId"],
            body=body,
            retry=retry,
        )
        try:
            item = self.item_model.model_validate_json(body)
        except (ValidationError, ValueError) as e:
            receipt.parse_error = f"Undecodable message body: {e}"[:1000]
            logger.warning(
                "Undecodable message on %s",
                self.name,
                extra={"queue": self.name, "message_id": receipt.message_id},
            )
            return None, receipt
        receipt.item = item
        # the body is authoritative for attempt; attributes can be stripped by tooling
        receipt.retry = retry.model_copy(update={"request_id": item.message_key, "attempt": item.attempt})
        return item, receipt

    def acknowledge(self, receipt: Receipt[T]) -> None:
        try:
            self._sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt.handle)
        except (ClientError, BotoCoreError) as e:
            raise QueueUnavailableError(f"acknowledge on {self.name} failed: {e}") from e

    def release(
        self,
        receipt: Receipt[T],
        delay_seconds: int,
        error: str = "",
        next_eligible_at: datetime | None = None,
    ) -> RetryState:
        """
        Schedule another attempt: re-send with attempt+1 after `delay_seconds`,
        then drop the current delivery. Returns the new RetryState.
        """
        if receipt.item is None:
            raise ValueError("cannot release an undecodable message; dead-letter it")
        item = receipt.item.next_attempt()
        retry = RetryState(
            request_id=item.message_key,
            attempt=item.attempt,
            next_eligible_at=next_eligible_at,
            last_error=error,
        )
        self.enqueue(item, delay_seconds=delay_seconds, retry=retry)
        self.acknowledge(receipt)
        return retry

    def dead_letter(self, receipt: Receipt[T], failure_kind: str, error: str = "") -> None:
        """Move the message to the DLQ, bypassing any remaining attempts."""
        attrs = {
            "request_id": receipt.retry.request_id,
            "failure_kind": failure_kind,
            "last_error": error or receipt.retry.last_error,
            "attempt": receipt.retry.attempt,
        }
        if receipt.item is not None:
            attrs.update(receipt.item.routing_attributes())
        try:
            self._sqs.send_message(
                QueueUrl=self.dlq_url,
                MessageBody=receipt.body,
                MessageAttributes=_attributes(attrs),
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueUnavailableError(f"dead_letter to {self.name}-dlq failed: {e}") from e
        self.acknowledge(receipt)

    def extend_visibility(self, receipt: Receipt[T], seconds: int) -> None:
        try:
            self._sqs.change_message_visibility(
                QueueUrl=self.queue_url,
                ReceiptHandle=receipt.handle,
                VisibilityTimeout=seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueUnavailableError(f"extend_visibility on {self.name} failed: {e}") from e

    @contextmanager
    def keep_visible(self, receipts: Iterable[Receipt[T]], window: int) -> Iterator["_VisibilityHeartbeat"]:
        """
        Heartbeat that keeps every message of a batch hidden until it is
        settled. Call `done(receipt)` on the yielded heartbeat once a message
        has been acknowledged, released or dead-lettered.
        """
        heartbeat = _VisibilityHeartbeat(self, receipts, window)
        if window >= 1:
            heartbeat.start()
        try:
            yield heartbeat
        finally:
            heartbeat.stop()

    def handle_batch(
        self,
        batch: list[tuple[T | None, Receipt[T]]],
        handler: Callable[[T | None, Receipt[T]], R],
        window: int,
        extend_visibility: bool = True,
    ) -> list[R]:
        """
        Handle a dequeued batch one message at a time. With
        `extend_visibility`, messages still waiting their turn stay hidden
        too, so no other worker picks them up while this one holds them.
        """
        if not batch or not extend_visibility:
            return [handler(item, receipt) for item, receipt in batch]
        results = []
        with self.keep_visible([receipt for _, receipt in batch], window) as heartbeat:
            for item, receipt in batch:
                results.append(handler(item, receipt))
                heartbeat.done(receipt)
        return results

    # ------------------------------------------------------------------
    # Depth / DLQ inspection
    # ------------------------------------------------------------------

    def _approximate_count(self, url: str) -> int:
        try:
            attrs = self._sqs.get_queue_attributes(
                QueueUrl=url, AttributeNames=["ApproximateNumberOfMessages"],
            )["Attributes"]
        except (ClientError, BotoCoreError) as e:
            raise QueueUnavailableError(f"get_queue_attributes on {url} failed: {e}") from e
        return int(attrs.get("ApproximateNumberOfMessages", 0))

    def depth(self) -> int:
        return self._approximate_count(self.queue_url)

    def dlq_depth(self) -> int:
        return self._approximate_count(self.dlq_url)

    def _drain_dlq(self, limit: int | None = None) -> list[dict]:
        """Receive DLQ messages, hidden for a short inspection window."""
        messages: list[dict] = []
        while limit is None or len(messages) < limit:
            want = MAX_BATCH if limit is None else min(MAX_BATCH, limit - len(messages))
            try:
                resp = self._sqs.receive_message(
                    QueueUrl=self.dlq_url,
                    MaxNumberOfMessages=want,
                    WaitTimeSeconds=0,
                    VisibilityTimeout=_INSPECT_VISIBILITY_SECONDS,
                    MessageAttributeNames=["All"],
                )
            except (ClientError, BotoCoreError) as e:
                raise QueueUnavailableError(f"DLQ read on {self.name} failed: {e}") from e
            batch = resp.get("Messages", [])
            if not batch:
                break
            messages.extend(batch)
        return messages

    def _unhide(self, url: str, messages: list[dict]) -> None:
        for m in messages:
            try:
                self._sqs.change_message_visibility(
                    QueueUrl=url, ReceiptHandle=m["ReceiptHandle"], VisibilityTimeout=0,
                )
            except (ClientError, BotoCoreError) as e:
                logger.warning("Could not unhide DLQ message %s: %s", m.get("MessageId"), e)

    def list_dead_letters(self) -> list[DeadLetterEntry]:
        messages = self._drain_dlq()
        try:
            return [
                DeadLetterEntry(
                    request_id=_attr(m, "request_id", m["MessageId"]),
                    failure_kind=_attr(m, "failure_kind", "Unknown"),
                    last_error=_attr(m, "last_error"),
                    attempt=int(_attr(m, "attempt", "0")),
                    entity_type=_attr(m, "entity_type"),
                    operation=_attr(m, "operation"),
                    body=m["Body"],
                )
                for m in messages
            ]
        finally:
            self._unhide(self.dlq_url, messages)

    def find_dead_letter(self, key: str) -> DeadLetterEntry | None:
        for entry in self.list_dead_letters():
            if entry.request_id == key:
                return entry
        return None

    def redrive(self, limit: int | None = None, on_redrive: Callable[[T], None] | None = None) -> int:
        """
        Operator action: move DLQ entries back onto the work queue with a
        fresh attempt budget. Undecodable bodies stay in the DLQ.

        `on_redrive(item)` runs before each item is re-enqueued (the write
        processor clears the ledger's dead-letter record there); an entry
        whose hook fails stays in the DLQ.
        """
        messages = self._drain_dlq(limit)
        moved = 0
        stuck = []
        for m in messages:
            try:
                item = self.item_model.model_validate_json(m["Body"])
            except (ValidationError, ValueError):
                stuck.append(m)
                continue
            if on_redrive is not None:
                try:
                    on_redrive(item)
                except PipelineError as e:
                    logger.warning("Redrive hook failed for %s, left in DLQ: %s", item.message_key, e)
                    stuck.append(m)
                    continue
            self.enqueue(item.model_copy(update={"attempt": 0}))
            try:
                self._sqs.delete_message(QueueUrl=self.dlq_url, ReceiptHandle=m["ReceiptHandle"])
            except (ClientError, BotoCoreError) as e:
                # Left in the DLQ as well; the ledger dedupes if both run
                logger.warning("Redriven message %s not removed from DLQ: %s", m["MessageId"], e)
            moved += 1
        self._unhide(self.dlq_url, stuck)
        logger.info("Redrove %d messages from %s-dlq", moved, self.name, extra={"queue": self.name})
        return moved


class _VisibilityHeartbeat:
    """Extends the visibility of every unsettled receipt every window/2 seconds until stopped."""

    def __init__(self, queue: SqsWorkQueue, receipts: Iterable[Receipt], window: int):
        self._queue = queue
        self._pending = {r.handle: r for r in receipts}
        self._window = window
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"heartbeat-{queue.name}")

    def start(self) -> None:
        self._thread.start()

    def done(self, receipt: Receipt) -> None:
        with self._lock:
            self._pending.pop(receipt.handle, None)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=self._window)

    def _run(self) -> None:
        interval = self._window / 2
        while not self._stop_event.wait(timeout=interval):
            with self._lock:
                receipts = list(self._pending.values())
            for receipt in receipts:
                try:
                    self._queue.extend_visibility(receipt, self._window)
                except QueueUnavailableError as e:
                    # settled between the snapshot and the call, or SQS is down
                    logger.warning("Visibility extend failed on %s: %s", self._queue.name, e)
            logger.debug("Visibility extended for %d messages", len(receipts), extra={"queue": self._queue.name})
