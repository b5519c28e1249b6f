"""
Pipeline configuration
======================
One explicit object handed to every Processor, pool, ledger and dispatcher
at construction. Nothing reads tunables from module globals at call time.

`PipelineConfig.from_env()` builds it from environment variables, which is
how the worker processes are configured in ECS / Lambda.
"""
from __future__ import annotations

import os

from pydantic import BaseModel, Field, model_validator

from .events import EntityType, Operation
from .retry import RetryPolicy

# Added on top of max_attempts * max_delay when sizing the ledger TTL, to
# cover visibility-window redeliveries and clock skew between workers.
LEDGER_SAFETY_MARGIN_SECONDS = 3600
DEFAULT_LEDGER_TTL_SECONDS = 86400  # 24h

DEFAULT_POOL_SIZES = {
    EntityType.RESTAURANT: 4,
    EntityType.REVIEW: 8,       # reviews are the high-volume write path
    EntityType.USER_ACCOUNT: 2,
}


class PipelineConfig(BaseModel):
    queue_prefix: str = "bellyfed"
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    pool_sizes: dict[EntityType, int] = Field(default_factory=lambda: dict(DEFAULT_POOL_SIZES))

    batch_size: int = Field(default=10, ge=1, le=10)
    visibility_window_seconds: int = Field(default=60, ge=0, le=43200)
    poll_interval_seconds: int = Field(default=20, ge=0, le=20)
    shutdown_grace_seconds: float = Field(default=30.0, ge=0)
    extend_visibility: bool = True

    ledger_table: str = "bellyfed-idempotency"
    entities_table: str = "bellyfed-entities"
    circuit_breaker_table: str = "bellyfed-circuit-breakers"
    analytics_table: str = "bellyfed-analytics"
    ledger_ttl_seconds: int | None = None

    event_bus_name: str = "bellyfed-events"
    event_source: str = "bellyfed.write-pipeline"

    alarm_topic_arn: str = ""
    dlq_alarm_threshold: int = Field(default=1, ge=1)
    error_rate_threshold: int = Field(default=20, ge=1)
    error_rate_window_seconds: float = Field(default=60.0, gt=0)

    delivery_timeout_seconds: float = Field(default=10.0, gt=0)
    subscriber_pool_size: int = Field(default=2, ge=1)
    search_endpoint: str = ""
    search_api_key: str = ""
    notification_topic_arn: str = ""

    @model_validator(mode="after")
    def size_ledger_ttl(self):
        floor = int(self.retry.max_redelivery_span_seconds) + LEDGER_SAFETY_MARGIN_SECONDS
        if self.ledger_ttl_seconds is None:
            self.ledger_ttl_seconds = max(DEFAULT_LEDGER_TTL_SECONDS, floor)
        elif self.ledger_ttl_seconds < floor:
            raise ValueError(
                f"ledger_ttl_seconds={self.ledger_ttl_seconds} is shorter than the "
                f"maximum redelivery span plus margin ({floor}s); duplicates could slip through"
            )
        return self

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def queue_name(self, entity_type: EntityType, operation: Operation) -> str:
        return f"{self.queue_prefix}-{entity_type.value}-{operation.value}"

    def subscription_queue_name(self, subscription_id: str) -> str:
        return f"{self.queue_prefix}-sub-{subscription_id}"

    @staticmethod
    def dlq_name(queue_name: str) -> str:
        return f"{queue_name}-dlq"

    def pool_size(self, entity_type: EntityType) -> int:
        return self.pool_sizes.get(entity_type, 1)

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        env = os.environ
        retry = RetryPolicy(
            base_delay_seconds=float(env.get("RETRY_BASE_DELAY_SECONDS", "2")),
            max_delay_seconds=float(env.get("RETRY_MAX_DELAY_SECONDS", "300")),
            max_attempts=int(env.get("RETRY_MAX_ATTEMPTS", "5")),
            jitter=env.get("RETRY_JITTER", "true").lower() == "true",
        )
        pool_sizes = {
            entity: int(env.get(f"POOL_SIZE_{entity.name}", str(default)))
            for entity, default in DEFAULT_POOL_SIZES.items()
        }
        ttl = env.get("LEDGER_TTL_SECONDS")
        return cls(
            queue_prefix=env.get("QUEUE_PREFIX", "bellyfed"),
            retry=retry,
            pool_sizes=pool_sizes,
            batch_size=int(env.get("BATCH_SIZE", "10")),
            visibility_window_seconds=int(env.get("VISIBILITY_WINDOW_SECONDS", "60")),
            poll_interval_seconds=int(env.get("POLL_INTERVAL_SECONDS", "20")),
            shutdown_grace_seconds=float(env.get("SHUTDOWN_GRACE_SECONDS", "30")),
            extend_visibility=env.get("EXTEND_VISIBILITY", "true").lower() == "true",
            ledger_table=env.get("IDEMPOTENCY_TABLE", "bellyfed-idempotency"),
            entities_table=env.get("ENTITIES_TABLE", "bellyfed-entities"),
            circuit_breaker_table=env.get("CIRCUIT_BREAKER_TABLE", "bellyfed-circuit-breakers"),
            analytics_table=env.get("ANALYTICS_TABLE", "bellyfed-analytics"),
            ledger_ttl_seconds=int(ttl) if ttl else None,
            event_bus_name=env.get("EVENT_BUS_NAME", "bellyfed-events"),
            event_source=env.get("EVENT_SOURCE", "bellyfed.write-pipeline"),
            alarm_topic_arn=env.get("ALARM_TOPIC_ARN", ""),
            dlq_alarm_threshold=int(env.get("DLQ_ALARM_THRESHOLD", "1")),
            error_rate_threshold=int(env.get("ERROR_RATE_THRESHOLD", "20")),
            error_rate_window_seconds=float(env.get("ERROR_RATE_WINDOW_SECONDS", "60")),
            delivery_timeout_seconds=float(env.get("DELIVERY_TIMEOUT_SECONDS", "10")),
            subscriber_pool_size=int(env.get("SUBSCRIBER_POOL_SIZE", "2")),
            search_endpoint=env.get("TYPESENSE_ENDPOINT", ""),
            search_api_key=env.get("TYPESENSE_API_KEY", ""),
            notification_topic_arn=env.get("NOTIFICATION_TOPIC_ARN", ""),
        )
