#!/usr/bin/env python3
"""
Demo script: enqueue a sample restaurant create and follow it through the
pipeline, then enqueue the SAME request again to show it is deduplicated.

Run against LocalStack (after bootstrap_local.py, with the write processor running):
  python scripts/enqueue_sample.py
"""
from __future__ import annotations

import argparse
import json
import os
import sys
import time
import uuid

import boto3

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "services"))

from pipeline.config import PipelineConfig  # noqa: E402
from pipeline.dynamodb import get_table  # noqa: E402
from pipeline.events import EntityType, MutationRequest, Operation  # noqa: E402
from pipeline.idempotency import IdempotencyLedger  # noqa: E402
from pipeline.work_queue import SqsWorkQueue  # noqa: E402
from write_processor.status import RequestState, RequestStatusService  # noqa: E402

parser = argparse.ArgumentParser()
parser.add_argument("--endpoint", default=os.environ.get("LOCALSTACK_ENDPOINT", "http://localhost:4566"))
parser.add_argument("--name", default="Cafe A")
args = parser.parse_args()

os.environ.setdefault("AWS_ACCESS_KEY_ID", "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

config = PipelineConfig.from_env()
sqs = boto3.client("sqs", endpoint_url=args.endpoint)
dynamodb = boto3.resource("dynamodb", endpoint_url=args.endpoint)

key = (EntityType.RESTAURANT, Operation.CREATE)
queue = SqsWorkQueue.from_name(sqs, config.queue_name(*key), MutationRequest, poll_interval_seconds=0)
ledger = IdempotencyLedger(
    get_table(config.ledger_table, dynamodb),
    default_ttl=config.ledger_ttl_seconds,
    lease_seconds=config.visibility_window_seconds,
)
status = RequestStatusService(ledger)

request = MutationRequest(
    request_id=str(uuid.uuid4()),
    entity_type=EntityType.RESTAURANT,
    operation=Operation.CREATE,
    payload={"schema_version": 1, "name": args.name, "city": "Melbourne", "price_range": 2},
)
print(f"Enqueuing request_id={request.request_id}")
print(f"Payload: {json.dumps(request.payload, indent=2)}\n")
queue.enqueue(request)

for attempt in range(15):
    time.sleep(2)
    result = status.status_of(request.request_id)
    print(f"  Poll {attempt + 1}: {result.state.value}")
    if result.state == RequestState.COMPLETED:
        print(f"\nRestaurant {result.entity_id} created.")
        break
    if result.state == RequestState.FAILED:
        print(f"\nFailed ({result.failure_kind}): {result.last_error}")
        break
else:
    print("Timed out waiting. Is the write processor running?")

print("\nEnqueuing the SAME request again to show deduplication...")
queue.enqueue(request)
time.sleep(5)
print(f"Status: {status.status_of(request.request_id).state.value} (no second mutation, no second event)")
