#!/usr/bin/env python3
"""
Create every queue, table, bus and topic the pipeline needs.
Safe to run repeatedly; existing resources are left alone.

Run against LocalStack: python scripts/bootstrap_local.py
Custom endpoint:        python scripts/bootstrap_local.py --endpoint http://localhost:4566 --prefix dev
"""
from __future__ import annotations

import argparse
import json
import os
import sys

import boto3
from botocore.exceptions import ClientError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "services"))

from pipeline.config import PipelineConfig  # noqa: E402
from pipeline.events import EntityType, Operation  # noqa: E402
from pipeline.work_queue import DLQ_RETENTION_SECONDS  # noqa: E402
from subscriber_service.routes import ROUTING_TABLE  # noqa: E402

LOCALSTACK = os.environ.get("LOCALSTACK_ENDPOINT", "http://localhost:4566")
REGION = "us-east-1"

# SQS-side backstop for messages that crash a worker before it can release
# or dead-letter them. Must stay above max_attempts so it never pre-empts
# the pipeline's own retry accounting.
REDRIVE_HEADROOM = 5


def create_queue_pair(sqs, name: str, visibility_timeout: int, max_receive_count: int) -> tuple[str, str]:
    dlq_url = sqs.create_queue(
        QueueName=PipelineConfig.dlq_name(name),
        Attributes={"MessageRetentionPeriod": str(DLQ_RETENTION_SECONDS)},  # the SQS maximum
    )["QueueUrl"]
    dlq_arn = sqs.get_queue_attributes(QueueUrl=dlq_url, AttributeNames=["QueueArn"])["Attributes"]["QueueArn"]
    queue_url = sqs.create_queue(
        QueueName=name,
        Attributes={
            "VisibilityTimeout": str(visibility_timeout),
            "RedrivePolicy": json.dumps({
                "deadLetterTargetArn": dlq_arn,
                "maxReceiveCount": str(max_receive_count),
            }),
        },
    )["QueueUrl"]
    return queue_url, dlq_url


def create_table(dynamodb, name: str, hash_key: str, range_key: str | None = None, ttl_attribute: str | None = None) -> None:
    attr_defs = [{"AttributeName": hash_key, "AttributeType": "S"}]
    key_schema = [{"AttributeName": hash_key, "KeyType": "HASH"}]
    if range_key:
        attr_defs.append({"AttributeName": range_key, "AttributeType": "S"})
        key_schema.append({"AttributeName": range_key, "KeyType": "RANGE"})
    try:
        dynamodb.create_table(
            TableName=name,
            AttributeDefinitions=attr_defs,
            KeySchema=key_schema,
            BillingMode="PAY_PER_REQUEST",
        )
    except ClientError as e:
        if e.response["Error"]["Code"] != "ResourceInUseException":
            raise
        return
    dynamodb.get_waiter("table_exists").wait(TableName=name)
    if ttl_attribute:
        dynamodb.update_time_to_live(
            TableName=name,
            TimeToLiveSpecification={"Enabled": True, "AttributeName": ttl_attribute},
        )


def create_tables(config: PipelineConfig, dynamodb) -> None:
    create_table(dynamodb, config.ledger_table, "request_id", ttl_attribute="ttl")
    create_table(dynamodb, config.entities_table, "pk", "sk")
    create_table(dynamodb, config.circuit_breaker_table, "name")
    create_table(dynamodb, config.analytics_table, "pk", "sk", ttl_attribute="ttl")


def create_queues(config: PipelineConfig, sqs) -> list[str]:
    max_receive = config.retry.max_attempts + REDRIVE_HEADROOM
    names = [config.queue_name(entity, op) for entity in EntityType for op in Operation]
    names += [config.subscription_queue_name(sid) for sid in ROUTING_TABLE]
    for name in names:
        create_queue_pair(sqs, name, config.visibility_window_seconds, max_receive)
    return names


def create_event_bus(config: PipelineConfig, events) -> None:
    try:
        events.create_event_bus(Name=config.event_bus_name)
    except ClientError as e:
        if e.response["Error"]["Code"] != "ResourceAlreadyExistsException":
            raise


def bootstrap(config: PipelineConfig, session: boto3.session.Session, endpoint_url: str | None = None) -> dict:
    kwargs = {"endpoint_url": endpoint_url} if endpoint_url else {}
    create_tables(config, session.client("dynamodb", **kwargs))
    queues = create_queues(config, session.client("sqs", **kwargs))
    create_event_bus(config, session.client("events", **kwargs))
    sns = session.client("sns", **kwargs)
    topics = {
        "alarms": sns.create_topic(Name=f"{config.queue_prefix}-alarms")["TopicArn"],
        "notifications": sns.create_topic(Name=f"{config.queue_prefix}-notifications")["TopicArn"],
    }
    return {"queues": queues, "topics": topics, "bus": config.event_bus_name}


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--endpoint", default=LOCALSTACK)
    parser.add_argument("--prefix", default=None, help="queue name prefix (default: QUEUE_PREFIX or bellyfed)")
    args = parser.parse_args()

    os.environ.setdefault("AWS_ACCESS_KEY_ID", "test")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
    os.environ.setdefault("AWS_DEFAULT_REGION", REGION)

    config = PipelineConfig.from_env()
    if args.prefix:
        config = config.model_copy(update={"queue_prefix": args.prefix})

    summary = bootstrap(config, boto3.session.Session(region_name=REGION), args.endpoint)
    print(f"Created {len(summary['queues'])} queues (each with a DLQ) on {args.endpoint}")
    for name in summary["queues"]:
        print(f"  {name}")
    print(f"Event bus: {summary['bus']}")
    for purpose, arn in summary["topics"].items():
        print(f"Topic ({purpose}): {arn}")
    print("\nExport these before starting the workers:")
    print(f"  ALARM_TOPIC_ARN={summary['topics']['alarms']}")
    print(f"  NOTIFICATION_TOPIC_ARN={summary['topics']['notifications']}")


if __name__ == "__main__":
    main()
