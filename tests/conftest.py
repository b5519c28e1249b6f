"""
Pytest configuration and shared fixtures.
Unit tests use moto (AWS mocks in-process).
Integration tests use LocalStack (real service emulation via Docker).
"""
import os

# Must be set before aws_xray_sdk is imported anywhere: no daemon in tests
os.environ["AWS_XRAY_SDK_ENABLED"] = "false"

import sys
from types import SimpleNamespace

import boto3
import pytest
from moto import mock_aws

sys.path.insert(0, "services")
sys.path.insert(0, "scripts")

# Point all boto3 calls at LocalStack when running integration tests
LOCALSTACK_ENDPOINT = os.environ.get("LOCALSTACK_ENDPOINT", "http://localhost:4566")
USE_LOCALSTACK = os.environ.get("USE_LOCALSTACK", "false").lower() == "true"
REGION = "us-east-1"


@pytest.fixture(autouse=True)
def aws_env(monkeypatch):
    """Set fake AWS credentials so boto3 doesn't error in tests."""
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "test")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "test")
    monkeypatch.setenv("QUEUE_PREFIX", "test")
    monkeypatch.setenv("IDEMPOTENCY_TABLE", "test-idempotency")
    monkeypatch.setenv("ENTITIES_TABLE", "test-entities")
    monkeypatch.setenv("CIRCUIT_BREAKER_TABLE", "test-circuit-breakers")
    monkeypatch.setenv("ANALYTICS_TABLE", "test-analytics")
    monkeypatch.setenv("EVENT_BUS_NAME", "test-bus")


@pytest.fixture
def config():
    """
    Fast, deterministic settings: no long-polling, no backoff delay, no
    jitter, so a released message is visible again on the next dequeue.
    """
    from pipeline.config import PipelineConfig
    from pipeline.retry import RetryPolicy

    return PipelineConfig(
        queue_prefix="test",
        retry=RetryPolicy(base_delay_seconds=0, max_delay_seconds=0, max_attempts=5, jitter=False),
        poll_interval_seconds=0,
        visibility_window_seconds=30,
        extend_visibility=False,
        ledger_table="test-idempotency",
        entities_table="test-entities",
        circuit_breaker_table="test-circuit-breakers",
        analytics_table="test-analytics",
        event_bus_name="test-bus",
        delivery_timeout_seconds=2.0,
    )


@pytest.fixture
def aws(config):
    """Every queue, DLQ, table, bus and topic, created with moto."""
    from bootstrap_local import bootstrap

    with mock_aws():
        session = boto3.session.Session(region_name=REGION)
        summary = bootstrap(config, session)
        yield SimpleNamespace(
            session=session,
            sqs=session.client("sqs"),
            events=session.client("events"),
            sns=session.client("sns"),
            dynamodb=session.resource("dynamodb"),
            topics=summary["topics"],
        )


class SpyEventsClient:
    """Passes put_events through to moto and remembers every entry sent."""

    def __init__(self, client):
        self._client = client
        self.entries = []
        self.fail_next = 0

    def put_events(self, Entries):
        if self.fail_next:
            self.fail_next -= 1
            return {"FailedEntryCount": 1, "Entries": [{"ErrorCode": "InternalFailure", "ErrorMessage": "injected"}]}
        resp = self._client.put_events(Entries=Entries)
        self.entries.extend(Entries)
        return resp

    def published_details(self):
        import json
        return [json.loads(e["Detail"]) for e in self.entries]


@pytest.fixture
def events_spy(aws):
    return SpyEventsClient(aws.events)


@pytest.fixture
def router(aws, config):
    from subscriber_service.routes import build_router
    return build_router(config, aws.sqs)


@pytest.fixture
def bus(config, events_spy, router):
    from pipeline.event_bus import EventBus
    return EventBus(events_spy, config.event_bus_name, config.event_source, router)


@pytest.fixture
def ledger(aws, config):
    from pipeline.dynamodb import get_table
    from pipeline.idempotency import IdempotencyLedger

    return IdempotencyLedger(
        get_table(config.ledger_table, aws.dynamodb),
        default_ttl=config.ledger_ttl_seconds,
        lease_seconds=config.visibility_window_seconds,
    )


@pytest.fixture
def gateway(aws, config):
    from write_processor.repositories import DynamoDbGateway
    return DynamoDbGateway.from_config(config, aws.dynamodb)


@pytest.fixture
def queue_for(aws, config):
    """queue_for(EntityType.RESTAURANT, Operation.CREATE) -> SqsWorkQueue[MutationRequest]"""
    from pipeline.events import MutationRequest
    from pipeline.work_queue import SqsWorkQueue

    def _make(entity_type, operation):
        return SqsWorkQueue.from_name(
            aws.sqs, config.queue_name(entity_type, operation), MutationRequest, config.poll_interval_seconds,
        )
    return _make


def pytest_collection_modifyitems(config, items):
    if USE_LOCALSTACK:
        return
    skip = pytest.mark.skip(reason="needs LocalStack (set USE_LOCALSTACK=true)")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)
