"""
Integration tests: the write pipeline against LocalStack.

Same wiring as production (real SQS visibility semantics, DynamoDB
transactions, EventBridge put_events), nothing mocked. Every test run gets
its own queue/table prefix so runs don't see each other's messages.

Run: USE_LOCALSTACK=true pytest tests/integration/ -m integration
"""
import os
import sys
import uuid

import boto3
import pytest

sys.path.insert(0, "services")
sys.path.insert(0, "scripts")

LOCALSTACK = os.environ.get("LOCALSTACK_ENDPOINT", "http://localhost:4566")
REGION = "us-east-1"

pytestmark = pytest.mark.integration


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def localstack_env(aws_env, monkeypatch):
    """Route every boto3 client at LocalStack. Runs after aws_env so these win."""
    monkeypatch.setenv("AWS_ENDPOINT_URL", LOCALSTACK)
    monkeypatch.setenv("AWS_XRAY_SDK_ENABLED", "false")  # no X-Ray daemon in tests


@pytest.fixture
def stack(localstack_env):
    from bootstrap_local import bootstrap
    from pipeline.config import PipelineConfig
    from pipeline.retry import RetryPolicy

    prefix = f"it-{uuid.uuid4().hex[:8]}"
    config = PipelineConfig(
        queue_prefix=prefix,
        retry=RetryPolicy(base_delay_seconds=0, max_delay_seconds=0, max_attempts=3, jitter=False),
        poll_interval_seconds=1,
        visibility_window_seconds=30,
        extend_visibility=False,
        ledger_table=f"{prefix}-idempotency",
        entities_table=f"{prefix}-entities",
        circuit_breaker_table=f"{prefix}-circuit-breakers",
        analytics_table=f"{prefix}-analytics",
        event_bus_name=f"{prefix}-bus",
    )
    session = boto3.session.Session(region_name=REGION)
    summary = bootstrap(config, session, endpoint_url=LOCALSTACK)
    return config, session, summary


def _processor(config, session, entity, op):
    from pipeline.dynamodb import get_table
    from pipeline.event_bus import EventBus
    from pipeline.idempotency import IdempotencyLedger
    from subscriber_service.routes import build_router
    from write_processor.main import work_queues
    from write_processor.processor import Processor
    from write_processor.repositories import DynamoDbGateway

    sqs = session.client("sqs", endpoint_url=LOCALSTACK)
    dynamodb = session.resource("dynamodb", endpoint_url=LOCALSTACK)
    router = build_router(config, sqs)
    ledger = IdempotencyLedger(
        get_table(config.ledger_table, dynamodb),
        default_ttl=config.ledger_ttl_seconds,
        lease_seconds=config.visibility_window_seconds,
    )
    bus = EventBus.from_config(config, router, session.client("events", endpoint_url=LOCALSTACK))
    gateway = DynamoDbGateway.from_config(config, dynamodb)
    return Processor(work_queues(config, sqs)[(entity, op)], ledger, gateway, bus, config), router


def _drain(poller, polls=10):
    results = []
    for _ in range(polls):
        batch = poller.poll_once()
        if not batch:
            break
        results.extend(batch)
    return results


# ---------------------------------------------------------------------------
# Write path
# ---------------------------------------------------------------------------

class TestWritePath:

    def test_restaurant_create_commits_and_fans_out(self, stack):
        from pipeline.events import EntityType, MutationRequest, Operation
        from write_processor.processor import Outcome

        config, session, _ = stack
        processor, router = _processor(config, session, EntityType.RESTAURANT, Operation.CREATE)
        request_id = f"it-{uuid.uuid4().hex}"
        processor.queue.enqueue(MutationRequest(
            request_id=request_id,
            entity_type=EntityType.RESTAURANT,
            operation=Operation.CREATE,
            payload={"schema_version": 1, "name": "Integration Cafe", "city": "Kuala Lumpur"},
        ))

        results = _drain(processor)

        assert [r.outcome for r in results] == [Outcome.SUCCEEDED]
        entity = processor.gateway.get(EntityType.RESTAURANT, results[0].event.entity_id)
        assert entity["name"] == "Integration Cafe"
        assert processor.ledger.has_processed(request_id)
        assert router.get("analytics").queue.depth() == 1
        assert processor.queue.dlq_depth() == 0

    def test_invalid_payload_lands_in_dlq(self, stack):
        from pipeline.events import EntityType, MutationRequest, Operation
        from write_processor.processor import Outcome

        config, session, _ = stack
        processor, _ = _processor(config, session, EntityType.REVIEW, Operation.CREATE)
        processor.queue.enqueue(MutationRequest(
            request_id="bad-review",
            entity_type=EntityType.REVIEW,
            operation=Operation.CREATE,
            payload={"schema_version": 1, "restaurant_id": "x", "user_id": "u", "rating": 11},
        ))

        assert [r.outcome for r in _drain(processor)] == [Outcome.DEAD_LETTERED]
        assert processor.queue.find_dead_letter("bad-review").failure_kind == "ValidationError"


# ---------------------------------------------------------------------------
# Delivery path
# ---------------------------------------------------------------------------

class TestDeliveryPath:

    def test_analytics_counts_published_event_once(self, stack):
        from pipeline.events import EntityType, MutationRequest, Operation
        from subscriber_service.adapters import AnalyticsSubscriber
        from subscriber_service.dispatcher import DeliveryOutcome, SubscriberDispatcher
        from pipeline.events import utcnow

        config, session, _ = stack
        processor, router = _processor(config, session, EntityType.USER_ACCOUNT, Operation.CREATE)
        request = MutationRequest(
            request_id=f"it-{uuid.uuid4().hex}",
            entity_type=EntityType.USER_ACCOUNT,
            operation=Operation.CREATE,
            payload={"schema_version": 1, "email": "it@example.com"},
        )
        processor.queue.enqueue(request)
        processor.queue.enqueue(request)  # duplicate delivery
        _drain(processor)

        analytics = AnalyticsSubscriber.from_config(config, session.resource("dynamodb", endpoint_url=LOCALSTACK))
        sub = router.get("analytics")
        sub.target = analytics
        reports = _drain(SubscriberDispatcher(sub, config))

        assert [r.outcome for r in reports] == [DeliveryOutcome.DELIVERED]
        day = utcnow().strftime("%Y-%m-%d")
        assert analytics.counter(EntityType.USER_ACCOUNT, Operation.CREATE, day)["count"] == 1
