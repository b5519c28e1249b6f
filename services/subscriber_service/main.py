"""
Subscriber service entry point: one dispatcher pool per subscription.

    python -m subscriber_service.main
"""
from __future__ import annotations

import signal
import threading

import boto3
from aws_xray_sdk.core import patch_all

from pipeline.alarms import ErrorRateMonitor, build_alarm_hook
from pipeline.config import PipelineConfig
from pipeline.logger import configure_logging, get_logger
from pipeline.retry import RetryController
from pipeline.router import SubscriberEndpoint
from pipeline.worker_pool import WorkerPool, run_until_stopped

from subscriber_service.adapters import AnalyticsSubscriber, NotificationSubscriber, SearchIndexSubscriber
from subscriber_service.dispatcher import SubscriberDispatcher
from subscriber_service.routes import ANALYTICS, NOTIFICATIONS, SEARCH_INDEX, build_router

logger = get_logger(__name__)


def build_targets(config: PipelineConfig, session) -> dict[str, SubscriberEndpoint]:
    targets: dict[str, SubscriberEndpoint] = {
        ANALYTICS: AnalyticsSubscriber.from_config(config, session.resource("dynamodb")),
        NOTIFICATIONS: NotificationSubscriber(config.notification_topic_arn, session.client("sns")),
    }
    if config.search_endpoint:
        targets[SEARCH_INDEX] = SearchIndexSubscriber(config.search_endpoint, config.search_api_key)
    else:
        logger.warning("TYPESENSE_ENDPOINT not set; search-index deliveries stay queued")
    return targets


def build_pools(config: PipelineConfig, session=None) -> list[WorkerPool]:
    session = session or boto3.session.Session()
    router = build_router(config, session.client("sqs"), build_targets(config, session))
    alarm_hook = build_alarm_hook(config.alarm_topic_arn, session.client("sns"))
    retry = RetryController(config.retry)

    pools = []
    for sub in router.subscriptions():
        if sub.target is None:
            continue
        monitor = ErrorRateMonitor(
            alarm_hook, "subscription", sub.subscription_id,
            config.error_rate_threshold, config.error_rate_window_seconds, queue=sub.queue.name,
        )
        dispatcher = SubscriberDispatcher(sub, config, retry=retry, alarm_hook=alarm_hook, error_monitor=monitor)
        pools.append(WorkerPool(dispatcher, config.subscriber_pool_size, name=sub.queue.name))
    return pools


def main() -> None:
    configure_logging(service="subscriber-service")
    patch_all()
    config = PipelineConfig.from_env()
    pools = build_pools(config)
    stop_event = threading.Event()

    def _handle_signal(sig, frame):
        logger.info("Shutdown signal received", extra={"signal": signal.Signals(sig).name})
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info("Subscriber service starting", extra={"pools": [p.name for p in pools]})
    clean = run_until_stopped(pools, config.shutdown_grace_seconds, stop_event)
    logger.info("Subscriber service stopped", extra={"clean": clean})


if __name__ == "__main__":
    main()
