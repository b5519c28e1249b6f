#!/usr/bin/env python3
"""
Inspect a work queue's DLQ and move its entries back for another round.

List only:  python scripts/redrive_dlq.py --entity restaurant --operation create --list
Redrive:    python scripts/redrive_dlq.py --entity restaurant --operation create --limit 50
Subscriber: python scripts/redrive_dlq.py --subscription search-index

Redriven messages restart at attempt 0, and a work-queue request reads as
PENDING again (its ledger dead-letter record is cleared). Fix the cause
first (a bad deploy, an expired credential): a ValidationError entry will
just come straight back.
"""
from __future__ import annotations

import argparse
import os
import sys

import boto3

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "services"))

from pipeline.config import PipelineConfig  # noqa: E402
from pipeline.dynamodb import get_table  # noqa: E402
from pipeline.events import EntityType, EventDelivery, MutationRequest, Operation  # noqa: E402
from pipeline.idempotency import IdempotencyLedger  # noqa: E402
from pipeline.work_queue import SqsWorkQueue  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Redrive a pipeline DLQ")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--entity", choices=[e.value for e in EntityType])
    target.add_argument("--subscription")
    parser.add_argument("--operation", choices=[o.value for o in Operation])
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--list", action="store_true", help="show entries without moving them")
    parser.add_argument("--endpoint", default=os.environ.get("AWS_ENDPOINT_URL"))
    args = parser.parse_args(argv)

    if args.entity and not args.operation:
        parser.error("--operation is required with --entity")

    config = PipelineConfig.from_env()
    sqs = boto3.client("sqs", endpoint_url=args.endpoint) if args.endpoint else boto3.client("sqs")
    on_redrive = None
    if args.entity:
        name = config.queue_name(EntityType(args.entity), Operation(args.operation))
        queue = SqsWorkQueue.from_name(sqs, name, MutationRequest, poll_interval_seconds=0)
        dynamodb = boto3.resource("dynamodb", endpoint_url=args.endpoint) if args.endpoint else boto3.resource("dynamodb")
        ledger = IdempotencyLedger(
            get_table(config.ledger_table, dynamodb),
            default_ttl=config.ledger_ttl_seconds,
            lease_seconds=config.visibility_window_seconds,
        )

        def on_redrive(request: MutationRequest) -> None:
            ledger.clear_dead_letter(request.request_id)
    else:
        name = config.subscription_queue_name(args.subscription)
        queue = SqsWorkQueue.from_name(sqs, name, EventDelivery, poll_interval_seconds=0)

    if args.list:
        entries = queue.list_dead_letters()
        print(f"{len(entries)} entries in {name}-dlq")
        for entry in entries:
            print(f"  {entry.request_id}  {entry.failure_kind:<26} attempt={entry.attempt}  {entry.last_error[:80]}")
        return 0

    moved = queue.redrive(args.limit, on_redrive)
    print(f"Redrove {moved} messages from {name}-dlq back to {name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
