"""
Write processor entry point
===========================
Runs one WorkerPool per work queue (entity type x operation), sized per
entity type from config. SIGTERM / SIGINT stop new dequeues and give
in-flight messages `shutdown_grace_seconds` to finish; anything still
running after that is redelivered by SQS.

    python -m write_processor.main
"""
from __future__ import annotations

import signal
import threading

import boto3
from aws_xray_sdk.core import patch_all

from pipeline.alarms import ErrorRateMonitor, build_alarm_hook
from pipeline.circuit_breaker import CircuitBreaker
from pipeline.config import PipelineConfig
from pipeline.dynamodb import get_table
from pipeline.event_bus import EventBus
from pipeline.events import EntityType, MutationRequest, Operation
from pipeline.idempotency import IdempotencyLedger
from pipeline.logger import configure_logging, get_logger
from pipeline.retry import RetryController
from pipeline.work_queue import SqsWorkQueue
from pipeline.worker_pool import WorkerPool, run_until_stopped
from subscriber_service.routes import build_router

from write_processor.processor import Processor
from write_processor.repositories import DynamoDbGateway

logger = get_logger(__name__)


def work_queues(config: PipelineConfig, sqs_client) -> dict[tuple[EntityType, Operation], SqsWorkQueue]:
    return {
        (entity, op): SqsWorkQueue.from_name(
            sqs_client, config.queue_name(entity, op), MutationRequest, config.poll_interval_seconds,
        )
        for entity in EntityType
        for op in Operation
    }


def build_pools(config: PipelineConfig, session=None) -> list[WorkerPool]:
    session = session or boto3.session.Session()
    sqs = session.client("sqs")
    dynamodb = session.resource("dynamodb")

    ledger = IdempotencyLedger(
        get_table(config.ledger_table, dynamodb),
        default_ttl=config.ledger_ttl_seconds,
        lease_seconds=config.visibility_window_seconds,
    )
    gateway = DynamoDbGateway.from_config(config, dynamodb)
    breaker = CircuitBreaker("persistence-layer", get_table(config.circuit_breaker_table, dynamodb))
    bus = EventBus.from_config(config, build_router(config, sqs), session.client("events"))
    alarm_hook = build_alarm_hook(config.alarm_topic_arn, session.client("sns"))
    retry = RetryController(config.retry)

    pools = []
    for (entity, op), queue in work_queues(config, sqs).items():
        monitor = ErrorRateMonitor(
            alarm_hook, entity.value, op.value,
            config.error_rate_threshold, config.error_rate_window_seconds, queue=queue.name,
        )
        processor = Processor(
            queue, ledger, gateway, bus, config,
            retry=retry, breaker=breaker, alarm_hook=alarm_hook, error_monitor=monitor,
        )
        pools.append(WorkerPool(processor, config.pool_size(entity), name=queue.name))
    return pools


def main() -> None:
    configure_logging(service="write-processor")
    patch_all()
    config = PipelineConfig.from_env()
    pools = build_pools(config)
    stop_event = threading.Event()

    def _handle_signal(sig, frame):
        logger.info("Shutdown signal received", extra={"signal": signal.Signals(sig).name})
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info("Write processor starting", extra={"pools": [p.name for p in pools]})
    clean = run_until_stopped(pools, config.shutdown_grace_seconds, stop_event)
    logger.info("Write processor stopped", extra={"clean": clean})


if __name__ == "__main__":
    main()
