"""
Unit tests for message models, payload schemas and configuration.
"""
import json
import sys
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

sys.path.insert(0, "services")

from pipeline.config import PipelineConfig
from pipeline.errors import PayloadValidationError
from pipeline.events import DomainEvent, EntityType, EventDelivery, MutationRequest, Operation, QueueItem
from pipeline.retry import RetryPolicy
from pipeline.schemas import RestaurantUpdateV1, validate_payload


def _request(entity=EntityType.RESTAURANT, op=Operation.CREATE, payload=None, request_id="r1"):
    return MutationRequest(
        request_id=request_id,
        entity_type=entity,
        operation=op,
        payload={"schema_version": 1, "name": "Cafe A"} if payload is None else payload,
    )


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

def test_request_round_trips_through_queue_body():
    req = _request()
    assert MutationRequest.model_validate_json(req.model_dump_json()) == req


def test_attempt_cannot_be_negative():
    with pytest.raises(ValidationError):
        MutationRequest(request_id="r1", entity_type="restaurant", operation="create", payload={}, attempt=-1)


def test_next_attempt_only_increases():
    req = _request()
    assert req.next_attempt().attempt == 1
    assert req.next_attempt().next_attempt().attempt == 2
    assert req.attempt == 0


def test_event_id_is_stable_across_republish():
    """A republished event must be the same event for subscribers."""
    req = _request()
    first = DomainEvent.for_request(req, "e1", {"schema_version": 1})
    again = DomainEvent.for_request(req.next_attempt(), "e1", {"schema_version": 1})
    other = DomainEvent.for_request(_request(request_id="r2"), "e1", {"schema_version": 1})
    assert first.event_id == again.event_id
    assert first.event_id != other.event_id
    assert first.causation_id == "r1"


def test_derived_entity_id_is_deterministic_per_request():
    assert _request().derived_entity_id() == _request().derived_entity_id()
    assert _request().derived_entity_id() != _request(request_id="r2").derived_entity_id()


def test_domain_event_is_immutable():
    event = DomainEvent.for_request(_request(), "e1", {"schema_version": 1})
    with pytest.raises(ValidationError):
        event.entity_id = "other"


def test_eventbridge_entry_shape():
    occurred = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    event = DomainEvent.for_request(_request(), "e1", {"schema_version": 1, "name": "Cafe A"}, occurred)
    entry = event.to_eventbridge_entry("bus", "bellyfed.write-pipeline")
    assert entry["DetailType"] == "bellyfed.restaurant.create"
    assert entry["EventBusName"] == "bus"
    assert entry["Source"] == "bellyfed.write-pipeline"
    detail = json.loads(entry["Detail"])
    assert detail["causation_id"] == "r1"
    assert detail["payload"]["name"] == "Cafe A"


def test_event_delivery_keys_on_event_id():
    event = DomainEvent.for_request(_request(), "e1", {"schema_version": 1})
    delivery = EventDelivery(subscription_id="analytics", event=event)
    assert delivery.message_key == event.event_id
    assert delivery.routing_attributes()["subscription_id"] == "analytics"


def test_queue_item_without_message_key_cannot_be_built():
    class Keyless(QueueItem):
        attempt: int = 0

    with pytest.raises(TypeError):
        QueueItem()
    with pytest.raises(TypeError):
        Keyless()


# ---------------------------------------------------------------------------
# Payload schemas
# ---------------------------------------------------------------------------

def test_valid_restaurant_create():
    payload = validate_payload(_request())
    assert payload.name == "Cafe A"


def test_payload_may_arrive_as_json_string():
    payload = validate_payload(_request(payload='{"schema_version": 1, "name": "Cafe B"}'))
    assert payload.name == "Cafe B"


@pytest.mark.parametrize("payload, reason", [
    ("{not json", "not valid JSON"),
    ([1, 2, 3], "JSON object"),
    ({"name": "Cafe A"}, "missing schema_version"),
    ({"schema_version": 99, "name": "Cafe A"}, "Unsupported schema_version"),
    ({"schema_version": True, "name": "Cafe A"}, "Unsupported schema_version"),
    ({"schema_version": 1}, "name"),
    ({"schema_version": 1, "name": "   "}, "name"),
])
def test_invalid_restaurant_payloads(payload, reason):
    with pytest.raises(PayloadValidationError) as exc_info:
        validate_payload(_request(payload=payload))
    assert reason in str(exc_info.value)
    assert exc_info.value.failure_kind == "ValidationError"


def test_review_rating_bounds():
    ok = {"schema_version": 1, "restaurant_id": "rest-1", "user_id": "u1", "rating": 5}
    assert validate_payload(_request(EntityType.REVIEW, Operation.CREATE, ok)).rating == 5
    with pytest.raises(PayloadValidationError):
        validate_payload(_request(EntityType.REVIEW, Operation.CREATE, {**ok, "rating": 6}))


def test_update_must_change_something():
    with pytest.raises(PayloadValidationError):
        validate_payload(_request(EntityType.RESTAURANT, Operation.UPDATE, {"schema_version": 1, "restaurant_id": "x"}))


def test_update_changes_exclude_id_and_version():
    payload = validate_payload(_request(
        EntityType.RESTAURANT, Operation.UPDATE,
        {"schema_version": 1, "restaurant_id": "x", "city": "Sydney"},
    ))
    assert isinstance(payload, RestaurantUpdateV1)
    assert payload.changes() == {"city": "Sydney"}


def test_user_account_email_format():
    with pytest.raises(PayloadValidationError):
        validate_payload(_request(EntityType.USER_ACCOUNT, Operation.CREATE, {"schema_version": 1, "email": "nope"}))


def test_unknown_fields_are_ignored():
    payload = validate_payload(_request(payload={"schema_version": 1, "name": "Cafe A", "legacy_flag": True}))
    assert not hasattr(payload, "legacy_flag")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def test_ledger_ttl_defaults_to_at_least_a_day():
    assert PipelineConfig().ledger_ttl_seconds == 86400


def test_ledger_ttl_grows_with_redelivery_span():
    cfg = PipelineConfig(retry=RetryPolicy(max_delay_seconds=900, max_attempts=100))
    assert cfg.ledger_ttl_seconds == 100 * 900 + 3600


def test_ledger_ttl_shorter_than_redelivery_span_is_rejected():
    with pytest.raises(ValidationError):
        PipelineConfig(retry=RetryPolicy(max_delay_seconds=900, max_attempts=10), ledger_ttl_seconds=60)


def test_queue_naming():
    cfg = PipelineConfig(queue_prefix="bf")
    assert cfg.queue_name(EntityType.USER_ACCOUNT, Operation.DELETE) == "bf-user-account-delete"
    assert cfg.dlq_name(cfg.queue_name(EntityType.REVIEW, Operation.CREATE)) == "bf-review-create-dlq"
    assert cfg.subscription_queue_name("analytics") == "bf-sub-analytics"


def test_high_volume_entity_gets_larger_pool():
    cfg = PipelineConfig()
    assert cfg.pool_size(EntityType.REVIEW) > cfg.pool_size(EntityType.USER_ACCOUNT)


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("RETRY_JITTER", "false")
    monkeypatch.setenv("POOL_SIZE_REVIEW", "16")
    monkeypatch.setenv("POLL_INTERVAL_SECONDS", "5")
    cfg = PipelineConfig.from_env()
    assert cfg.retry.max_attempts == 7
    assert cfg.retry.jitter is False
    assert cfg.pool_size(EntityType.REVIEW) == 16
    assert cfg.poll_interval_seconds == 5
    assert cfg.ledger_table == "test-idempotency"  # from the autouse aws_env fixture
