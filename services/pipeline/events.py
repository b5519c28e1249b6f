"""
Pipeline Message Schemas
========================
Everything that crosses a queue or the event bus is defined here as a
Pydantic model, so producers (the API layer), the Processor and the
subscribers agree on one contract.

Two kinds of message:
  MutationRequest  a command ("create this restaurant"); it can be rejected.
  DomainEvent      a fact ("restaurant created"); emitted only after commit.
"""
from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Namespace for deterministic ids. A republished event must carry the same
# event_id as the first publish so subscribers can dedupe on it.
_EVENT_NAMESPACE = uuid.UUID("6f1c2a4e-9b7d-5e3a-8c1f-2d4b6a8e0c13")
_ENTITY_NAMESPACE = uuid.UUID("0b8e7f3a-1c2d-5f4e-9a6b-7c8d9e0f1a2b")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_entity_id(entity_type: EntityType, request_id: str) -> str:
    """Stable entity id for creates that don't name one."""
    return str(uuid.uuid5(_ENTITY_NAMESPACE, f"{entity_type.value}:{request_id}"))


# ---------------------------------------------------------------------------
# Domain enums
# ---------------------------------------------------------------------------

class EntityType(str, Enum):
    RESTAURANT = "restaurant"
    REVIEW = "review"
    USER_ACCOUNT = "user-account"

    @property
    def id_field(self) -> str:
        return _ID_FIELDS[self.value]


_ID_FIELDS = {"restaurant": "restaurant_id", "review": "review_id", "user-account": "user_id"}


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class DeliveryResult(str, Enum):
    ACK = "ACK"
    NACK = "NACK"


# ---------------------------------------------------------------------------
# Queue items
# ---------------------------------------------------------------------------

class QueueItem(BaseModel, ABC):
    """Base for anything held on an SQS work queue. `attempt` only grows."""
    attempt: int = Field(default=0, ge=0)

    @property
    @abstractmethod
    def message_key(self) -> str:
        """Stable id the queue tags each message with (request_id, event_id)."""

    def next_attempt(self) -> "QueueItem":
        return self.model_copy(update={"attempt": self.attempt + 1})

    def routing_attributes(self) -> dict[str, str]:
        """Tags copied onto SQS message attributes (and DLQ entries)."""
        return {}


class MutationRequest(QueueItem):
    """
    A pending create/update/delete, enqueued by the API layer.

    request_id is the client-generated idempotency key: one per logical
    operation, reused verbatim on client retries.
    payload is left untyped here on purpose; its shape is checked by the
    Processor against the versioned schema table (pipeline.schemas).
    """
    request_id: str = Field(min_length=1)
    entity_type: EntityType
    operation: Operation
    payload: Any
    enqueued_at: datetime = Field(default_factory=utcnow)

    @property
    def message_key(self) -> str:
        return self.request_id

    def routing_attributes(self) -> dict[str, str]:
        return {"entity_type": self.entity_type.value, "operation": self.operation.value}

    def derived_entity_id(self) -> str:
        return derive_entity_id(self.entity_type, self.request_id)


class DomainEvent(BaseModel):
    """
    Immutable record of a committed mutation.

    causation_id is the request_id of the MutationRequest that produced it.
    occurred_at is the commit time, not the publish time, so a republish
    after a crash describes the same fact.
    """
    model_config = ConfigDict(frozen=True)

    event_id: str
    entity_type: EntityType
    operation: Operation
    entity_id: str
    payload: dict[str, Any]
    causation_id: str
    occurred_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def for_request(
        cls,
        request: MutationRequest,
        entity_id: str,
        payload: dict[str, Any],
        occurred_at: datetime | None = None,
    ) -> "DomainEvent":
        return cls(
            event_id=str(uuid.uuid5(_EVENT_NAMESPACE, request.request_id)),
            entity_type=request.entity_type,
            operation=request.operation,
            entity_id=entity_id,
            payload=payload,
            causation_id=request.request_id,
            occurred_at=occurred_at or utcnow(),
        )

    @property
    def detail_type(self) -> str:
        return f"bellyfed.{self.entity_type.value}.{self.operation.value}"

    def to_eventbridge_entry(self, event_bus_name: str, source: str) -> dict:
        """Serialize for EventBridge PutEvents API."""
        return {
            "Source": source,
            "DetailType": self.detail_type,
            "Detail": self.model_dump_json(),
            "EventBusName": event_bus_name,
            "Time": self.occurred_at,
        }


class EventDelivery(QueueItem):
    """One event on its way to one subscriber."""
    subscription_id: str
    event: DomainEvent

    @property
    def message_key(self) -> str:
        return self.event.event_id

    def routing_attributes(self) -> dict[str, str]:
        return {
            "entity_type": self.event.entity_type.value,
            "operation": self.event.operation.value,
            "subscription_id": self.subscription_id,
        }


# ---------------------------------------------------------------------------
# Retry / DLQ bookkeeping
# ---------------------------------------------------------------------------

class RetryState(BaseModel):
    request_id: str
    attempt: int = 0
    next_eligible_at: datetime | None = None
    last_error: str = ""


class DeadLetterEntry(BaseModel):
    """What an operator sees when inspecting a DLQ."""
    request_id: str
    failure_kind: str
    last_error: str = ""
    attempt: int = 0
    entity_type: str = ""
    operation: str = ""
    body: str
