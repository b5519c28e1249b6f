"""
Processor Scenario Tests
========================
End-to-end through the real moving parts (SQS, DynamoDB ledger + entity
table, EventBridge, fan-out queues, all moto), with failure injected at the
persistence gateway or the bus.

Scenarios covered:
  1. Restaurant create -> exactly one event, zero DLQ entries
  2. Redelivered duplicate -> one side effect, one event
  3. Unparseable payload -> zero retries, one DLQ entry tagged ValidationError
  4. Persistence fails twice then succeeds -> success at attempt 2, no DLQ
  5. Persistence always fails -> DLQ after exactly max_attempts, alarm fired
  6. Crash between commit and publish -> republish only, same event_id
  7. Entity state is committed before its event is published
"""
import json
import math
import sys

import pytest

sys.path.insert(0, "services")

from pipeline.errors import PersistenceUnavailableError
from pipeline.events import EntityType, MutationRequest, Operation
from pipeline.idempotency import LedgerStatus

RESTAURANT_CREATE = (EntityType.RESTAURANT, Operation.CREATE)


class CountingGateway:
    """Wraps the real DynamoDB gateway; fails the first `failures` calls."""

    def __init__(self, inner, failures=0, error=None):
        self.inner = inner
        self.failures = failures
        self.error = error or PersistenceUnavailableError("persistence layer timed out")
        self.calls = 0

    def apply(self, entity_type, operation, payload, *, request_id):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.inner.apply(entity_type, operation, payload, request_id=request_id)


class RecordingAlarmHook:
    def __init__(self):
        self.signals = []

    def notify(self, signal):
        self.signals.append(signal)


@pytest.fixture
def alarms():
    return RecordingAlarmHook()


@pytest.fixture
def make_processor(config, ledger, bus, queue_for, alarms):
    from write_processor.processor import Processor

    def _make(gateway, key=RESTAURANT_CREATE, **kwargs):
        return Processor(queue_for(*key), ledger, gateway, bus, config, alarm_hook=alarms, **kwargs)
    return _make


def _request(request_id="r1", payload=None, key=RESTAURANT_CREATE):
    return MutationRequest(
        request_id=request_id,
        entity_type=key[0],
        operation=key[1],
        payload={"schema_version": 1, "name": "Cafe A"} if payload is None else payload,
    )


def drain(processor, max_polls=50):
    results = []
    for _ in range(max_polls):
        batch = processor.poll_once()
        if not batch:
            break
        results.extend(batch)
    return results


# ---------------------------------------------------------------------------
# Scenario 1: the happy path
# ---------------------------------------------------------------------------

def test_restaurant_create_publishes_one_event(make_processor, gateway, events_spy):
    from write_processor.processor import Outcome

    processor = make_processor(CountingGateway(gateway))
    processor.queue.enqueue(_request("r1"))

    results = drain(processor)

    assert [r.outcome for r in results] == [Outcome.SUCCEEDED]
    details = events_spy.published_details()
    assert len(details) == 1
    assert details[0]["entity_type"] == "restaurant"
    assert details[0]["operation"] == "create"
    assert details[0]["causation_id"] == "r1"
    assert events_spy.entries[0]["DetailType"] == "bellyfed.restaurant.create"
    assert processor.queue.dlq_depth() == 0
    assert processor.queue.depth() == 0


def test_event_payload_is_versioned_and_names_the_entity(make_processor, gateway):
    processor = make_processor(gateway)
    processor.queue.enqueue(_request("r1"))
    result, = drain(processor)

    payload = result.event.payload
    assert payload["schema_version"] == 1
    assert payload["name"] == "Cafe A"
    assert payload["restaurant_id"] == result.event.entity_id
    assert result.event.entity_id == _request("r1").derived_entity_id()
    assert gateway.get(EntityType.RESTAURANT, result.event.entity_id)["name"] == "Cafe A"


def test_event_is_fanned_out_to_matching_subscriptions(make_processor, gateway, router):
    processor = make_processor(gateway)
    processor.queue.enqueue(_request("r1"))
    drain(processor)

    assert router.get("analytics").queue.depth() == 1
    assert router.get("search-index").queue.depth() == 1
    assert router.get("notifications").queue.depth() == 0  # restaurant create isn't routed there


def test_entity_is_committed_before_event_is_published(make_processor, gateway, bus, monkeypatch):
    seen_at_publish = []
    original = bus.publish

    def checking_publish(event):
        seen_at_publish.append(gateway.get(event.entity_type, event.entity_id))
        return original(event)

    monkeypatch.setattr(bus, "publish", checking_publish)
    processor = make_processor(gateway)
    processor.queue.enqueue(_request("r1"))
    drain(processor)

    assert len(seen_at_publish) == 1
    assert seen_at_publish[0] is not None


# ---------------------------------------------------------------------------
# Scenario 2: duplicate delivery
# ---------------------------------------------------------------------------

def test_redelivered_request_has_one_side_effect_and_one_event(make_processor, gateway, events_spy, ledger):
    from write_processor.processor import Outcome

    counting = CountingGateway(gateway)
    processor = make_processor(counting)
    processor.queue.enqueue(_request("r1"))
    processor.queue.enqueue(_request("r1"))  # at-least-once: the same request twice

    results = drain(processor)

    assert sorted(r.outcome for r in results) == sorted([Outcome.SUCCEEDED, Outcome.DUPLICATE])
    assert counting.calls == 1
    assert [d["causation_id"] for d in events_spy.published_details()] == ["r1"]
    assert ledger.has_processed("r1")


# ---------------------------------------------------------------------------
# Scenario 3: validation failures are fatal
# ---------------------------------------------------------------------------

def test_unparseable_payload_goes_straight_to_dlq(make_processor, gateway, events_spy, alarms):
    from write_processor.processor import Outcome

    counting = CountingGateway(gateway)
    processor = make_processor(counting)
    processor.queue.enqueue(_request("bad", payload="{this is not json"))

    results = drain(processor)

    assert [r.outcome for r in results] == [Outcome.DEAD_LETTERED]
    assert counting.calls == 0
    assert events_spy.entries == []
    entry = processor.queue.find_dead_letter("bad")
    assert entry.failure_kind == "ValidationError"
    assert entry.attempt == 0
    assert [s.metric for s in alarms.signals] == ["dlq_depth"]


def test_undecodable_message_body_is_dead_lettered(make_processor, gateway, aws):
    from write_processor.processor import Outcome

    processor = make_processor(gateway)
    aws.sqs.send_message(QueueUrl=processor.queue.queue_url, MessageBody=json.dumps({"nope": True}))

    results = drain(processor)

    assert [r.outcome for r in results] == [Outcome.DEAD_LETTERED]
    assert processor.queue.list_dead_letters()[0].failure_kind == "ValidationError"


def test_rejected_mutation_is_not_retried(make_processor, gateway):
    """Updating a restaurant that doesn't exist will never succeed."""
    from write_processor.processor import Outcome

    key = (EntityType.RESTAURANT, Operation.UPDATE)
    counting = CountingGateway(gateway)
    processor = make_processor(counting, key=key)
    processor.queue.enqueue(_request("u1", {"schema_version": 1, "restaurant_id": "ghost", "city": "Perth"}, key))

    results = drain(processor)

    assert [r.outcome for r in results] == [Outcome.DEAD_LETTERED]
    assert counting.calls == 1
    assert processor.queue.find_dead_letter("u1").failure_kind == "ValidationError"


# ---------------------------------------------------------------------------
# Scenario 4 & 5: transient failures and the retry bound
# ---------------------------------------------------------------------------

def test_two_transient_failures_then_success(make_processor, gateway, events_spy, ledger):
    from write_processor.processor import Outcome

    counting = CountingGateway(gateway, failures=2)
    processor = make_processor(counting)
    processor.queue.enqueue(_request("r1"))

    results = drain(processor)

    assert [r.outcome for r in results] == [Outcome.RETRY_SCHEDULED, Outcome.RETRY_SCHEDULED, Outcome.SUCCEEDED]
    assert results[-1].attempt == 2
    assert counting.calls == 3
    assert processor.queue.dlq_depth() == 0
    assert len(events_spy.entries) == 1
    assert ledger.lookup("r1").status == LedgerStatus.PUBLISHED


def test_always_failing_request_is_dead_lettered_after_exactly_max_attempts(
    make_processor, gateway, events_spy, alarms, config,
):
    from write_processor.processor import Outcome

    counting = CountingGateway(gateway, failures=math.inf)
    processor = make_processor(counting)
    processor.queue.enqueue(_request("r1"))

    results = drain(processor)

    assert counting.calls == config.retry.max_attempts
    assert [r.outcome for r in results] == [Outcome.RETRY_SCHEDULED] * (config.retry.max_attempts - 1) + [Outcome.DEAD_LETTERED]
    assert events_spy.entries == []

    entry = processor.queue.find_dead_letter("r1")
    assert entry.failure_kind == "TerminalRetryExhaustion"
    assert "persistence layer timed out" in entry.last_error
    assert entry.attempt == config.retry.max_attempts - 1

    assert [s.metric for s in alarms.signals] == ["retry_exhausted", "dlq_depth"]
    exhausted = alarms.signals[0]
    assert (exhausted.entity_type, exhausted.operation) == ("restaurant", "create")
    assert exhausted.value == config.retry.max_attempts
    assert "persistence layer timed out" in exhausted.last_error


def test_exhaustion_alarm_fires_below_dlq_depth_threshold(config, ledger, bus, queue_for, gateway, alarms):
    from write_processor.processor import Outcome, Processor

    relaxed = config.model_copy(update={"dlq_alarm_threshold": 2})
    processor = Processor(
        queue_for(*RESTAURANT_CREATE), ledger, CountingGateway(gateway, failures=math.inf), bus, relaxed,
        alarm_hook=alarms,
    )
    processor.queue.enqueue(_request("r1"))

    assert drain(processor)[-1].outcome == Outcome.DEAD_LETTERED
    signal, = alarms.signals
    assert signal.metric == "retry_exhausted"
    assert (signal.entity_type, signal.operation) == ("restaurant", "create")
    assert "persistence layer timed out" in signal.last_error


def test_dead_lettered_request_is_never_returned_to_work_queue(make_processor, gateway):
    processor = make_processor(CountingGateway(gateway, failures=math.inf))
    processor.queue.enqueue(_request("r1"))
    drain(processor)
    assert drain(processor) == []
    assert processor.queue.depth() == 0


def test_live_claim_by_another_worker_is_retried_not_applied(make_processor, gateway, ledger):
    from write_processor.processor import Outcome

    ledger.claim(_request("r1"))  # another worker is mid-apply
    counting = CountingGateway(gateway)
    processor = make_processor(counting)
    processor.queue.enqueue(_request("r1"))

    result = processor.poll_once()[0]

    assert result.outcome == Outcome.RETRY_SCHEDULED
    assert "LedgerClaimConflict" in result.error
    assert counting.calls == 0


def test_open_circuit_fails_fast_and_retries(make_processor, gateway, aws, config):
    from pipeline.circuit_breaker import CircuitBreaker
    from pipeline.dynamodb import get_table
    from write_processor.processor import Outcome

    breaker = CircuitBreaker(
        "persistence-layer", get_table(config.circuit_breaker_table, aws.dynamodb),
        failure_threshold=1, timeout_seconds=60,
    )
    counting = CountingGateway(gateway, failures=1)
    processor = make_processor(counting, breaker=breaker)
    processor.queue.enqueue(_request("r1"))

    first = processor.poll_once()[0]
    second = processor.poll_once()[0]

    assert first.outcome == Outcome.RETRY_SCHEDULED
    assert second.outcome == Outcome.RETRY_SCHEDULED
    assert "CircuitBreakerOpenError" in second.error
    assert counting.calls == 1  # the open circuit never reached the gateway


def test_error_rate_monitor_fires_on_burst(make_processor, gateway, alarms):
    from pipeline.alarms import ErrorRateMonitor

    monitor = ErrorRateMonitor(alarms, "restaurant", "create", threshold=3, window_seconds=60)
    processor = make_processor(CountingGateway(gateway, failures=3), error_monitor=monitor)
    processor.queue.enqueue(_request("r1"))
    drain(processor)

    assert [s.metric for s in alarms.signals] == ["error_rate"]
    assert alarms.signals[0].value == 3


# ---------------------------------------------------------------------------
# Scenario 6: crash between commit and publish
# ---------------------------------------------------------------------------

def test_publish_failure_republishes_without_reapplying(make_processor, gateway, events_spy, ledger):
    from write_processor.processor import Outcome

    events_spy.fail_next = 1
    counting = CountingGateway(gateway)
    processor = make_processor(counting)
    processor.queue.enqueue(_request("r1"))

    first = processor.poll_once()[0]
    assert first.outcome == Outcome.RETRY_SCHEDULED
    assert "EventBusUnavailableError" in first.error
    assert ledger.lookup("r1").status == LedgerStatus.APPLIED

    second = processor.poll_once()[0]
    assert second.outcome == Outcome.SUCCEEDED
    assert second.attempt == 1
    assert counting.calls == 1  # mutation applied once
    assert len(events_spy.entries) == 1
    assert ledger.lookup("r1").status == LedgerStatus.PUBLISHED


def test_republished_event_keeps_commit_time_and_id(make_processor, gateway, events_spy, ledger):
    from pipeline.events import DomainEvent

    events_spy.fail_next = 1
    processor = make_processor(gateway)
    processor.queue.enqueue(_request("r1"))
    processor.poll_once()
    record = ledger.lookup("r1")

    result = processor.poll_once()[0]

    assert result.event.occurred_at == record.committed_at
    assert result.event.entity_id == record.entity_id
    assert result.event.event_id == DomainEvent.for_request(_request("r1"), record.entity_id, {}).event_id
    assert events_spy.published_details()[0]["event_id"] == result.event.event_id


# ---------------------------------------------------------------------------
# Dead letters are recorded in the ledger
# ---------------------------------------------------------------------------

def test_dead_letter_is_recorded_on_the_request_key(make_processor, gateway, ledger, config):
    processor = make_processor(CountingGateway(gateway, failures=math.inf))
    processor.queue.enqueue(_request("r1"))
    drain(processor)

    record = ledger.lookup("r1")
    assert record.status == LedgerStatus.DEAD_LETTERED
    assert record.failure_kind == "TerminalRetryExhaustion"
    assert "persistence layer timed out" in record.last_error
    assert record.attempt == config.retry.max_attempts - 1
    assert record.entity_id is None


def test_redriven_committed_request_only_republishes(make_processor, gateway, events_spy, ledger):
    """Committed, then the bus stayed down for the whole budget: redrive must not re-apply."""
    from write_processor.processor import Outcome

    events_spy.fail_next = 5
    counting = CountingGateway(gateway)
    processor = make_processor(counting)
    processor.queue.enqueue(_request("r1"))

    assert drain(processor)[-1].outcome == Outcome.DEAD_LETTERED
    dead = ledger.lookup("r1")
    assert dead.status == LedgerStatus.DEAD_LETTERED
    assert dead.entity_id == _request("r1").derived_entity_id()

    processor.queue.redrive(on_redrive=lambda item: ledger.clear_dead_letter(item.request_id))
    assert ledger.lookup("r1").status == LedgerStatus.APPLIED

    result, = drain(processor)
    assert result.outcome == Outcome.SUCCEEDED
    assert counting.calls == 1
    assert result.event.occurred_at == dead.committed_at
    assert ledger.lookup("r1").status == LedgerStatus.PUBLISHED
