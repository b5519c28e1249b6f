"""
Subscriber endpoint adapters
============================
One adapter per downstream system, each a plain class with
`deliver(event) -> DeliveryResult`. No shared base class: the Router only
needs the capability, not a hierarchy.

Every adapter must tolerate duplicate deliveries of the same event_id:
  SearchIndexSubscriber   upserts / deletes are naturally idempotent
  AnalyticsSubscriber     writes an EVENT#{event_id} marker in the same transaction as the counter
  NotificationSubscriber  best effort; a duplicate e-mail is the accepted cost
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from pipeline.dynamodb import TRANSACTION_CANCELED, error_code, get_table
from pipeline.events import DeliveryResult, DomainEvent, EntityType, Operation

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Search index (Typesense)
# ---------------------------------------------------------------------------

SEARCH_COLLECTIONS = {
    EntityType.RESTAURANT: "restaurants",
    EntityType.REVIEW: "reviews",
    EntityType.USER_ACCOUNT: "users",
}

# Never pushed to a public search index
_PRIVATE_USER_FIELDS = {"email", "phone_number"}


class SearchIndexSubscriber:
    """
    Keeps the Typesense collections in step with the entity store.

      create  POST   /collections/{c}/documents?action=upsert
      update  PATCH  /collections/{c}/documents/{id}    (404 -> NACK: the create hasn't landed yet)
      delete  DELETE /collections/{c}/documents/{id}    (404 -> ACK: already gone)
    """
    subscription_id = "search-index"

    def __init__(self, endpoint: str, api_key: str, session: requests.Session | None = None, timeout: float = 5.0):
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"X-TYPESENSE-API-KEY": api_key, "Content-Type": "application/json"})

    def document_for(self, event: DomainEvent) -> dict:
        doc = {k: v for k, v in event.payload.items() if k != "schema_version"}
        if event.entity_type == EntityType.USER_ACCOUNT:
            doc = {k: v for k, v in doc.items() if k not in _PRIVATE_USER_FIELDS}
        doc["id"] = event.entity_id
        doc["updated_at"] = int(event.occurred_at.timestamp())
        return doc

    def deliver(self, event: DomainEvent) -> DeliveryResult:
        collection = SEARCH_COLLECTIONS[event.entity_type]
        base = f"{self.endpoint}/collections/{collection}/documents"
        try:
            if event.operation == Operation.CREATE:
                resp = self._session.post(
                    base, params={"action": "upsert"}, json=self.document_for(event), timeout=self.timeout,
                )
            elif event.operation == Operation.UPDATE:
                resp = self._session.patch(
                    f"{base}/{event.entity_id}", json=self.document_for(event), timeout=self.timeout,
                )
            else:
                resp = self._session.delete(f"{base}/{event.entity_id}", timeout=self.timeout)
                if resp.status_code == 404:
                    return DeliveryResult.ACK
        except requests.RequestException as e:
            logger.warning("Search index unreachable: %s", e, extra={"event_id": event.event_id})
            return DeliveryResult.NACK

        if resp.ok:
            return DeliveryResult.ACK
        logger.warning(
            "Search index rejected document: %s %s", resp.status_code, resp.text[:200],
            extra={"event_id": event.event_id, "collection": collection},
        )
        return DeliveryResult.NACK


# ---------------------------------------------------------------------------
# Analytics (DynamoDB daily counters)
# ---------------------------------------------------------------------------

DEDUPE_TTL_SECONDS = 7 * 86400


class AnalyticsSubscriber:
    """
    Daily counters per entity type and operation:

      PK: COUNTER#{entity_type}#{operation}   SK: {YYYY-MM-DD}   count, rating_sum (reviews)
      PK: EVENT#{event_id}                    SK: SEEN           ttl

    Both written in one transaction; the marker's attribute_not_exists
    condition makes a duplicate delivery cancel the whole transaction.
    """
    subscription_id = "analytics"

    def __init__(self, table):
        self._table = table
        self._client = table.meta.client

    @classmethod
    def from_config(cls, config, resource=None) -> "AnalyticsSubscriber":
        return cls(get_table(config.analytics_table, resource))

    def deliver(self, event: DomainEvent) -> DeliveryResult:
        day = event.occurred_at.astimezone(timezone.utc).strftime("%Y-%m-%d")
        values = {":one": 1}
        update = "ADD #c :one"
        if event.entity_type == EntityType.REVIEW and event.operation == Operation.CREATE:
            update += ", rating_sum :r"
            values[":r"] = int(event.payload.get("rating", 0))
        now = int(datetime.now(timezone.utc).timestamp())
        try:
            self._client.transact_write_items(TransactItems=[
                {
                    "Put": {
                        "TableName": self._table.name,
                        "Item": {"pk": f"EVENT#{event.event_id}", "sk": "SEEN", "ttl": now + DEDUPE_TTL_SECONDS},
                        "ConditionExpression": "attribute_not_exists(pk)",
                    }
                },
                {
                    "Update": {
                        "TableName": self._table.name,
                        "Key": {"pk": f"COUNTER#{event.entity_type.value}#{event.operation.value}", "sk": day},
                        "UpdateExpression": update,
                        "ExpressionAttributeNames": {"#c": "count"},
                        "ExpressionAttributeValues": values,
                    }
                },
            ])
        except ClientError as e:
            if error_code(e) == TRANSACTION_CANCELED and _marker_exists(e):
                logger.info("Duplicate analytics event ignored", extra={"event_id": event.event_id})
                return DeliveryResult.ACK
            logger.warning("Analytics write failed: %s", e, extra={"event_id": event.event_id})
            return DeliveryResult.NACK
        except BotoCoreError as e:
            logger.warning("Analytics write failed: %s", e, extra={"event_id": event.event_id})
            return DeliveryResult.NACK
        return DeliveryResult.ACK

    def counter(self, entity_type: EntityType, operation: Operation, day: str) -> dict:
        item = self._table.get_item(
            Key={"pk": f"COUNTER#{entity_type.value}#{operation.value}", "sk": day}
        ).get("Item") or {}
        return {"count": int(item.get("count", 0)), "rating_sum": int(item.get("rating_sum", 0))}


def _marker_exists(e: ClientError) -> bool:
    reasons = e.response.get("CancellationReasons") or []
    if reasons:
        return reasons[0].get("Code") == "ConditionalCheckFailed"
    return "ConditionalCheckFailed" in str(e)


# ---------------------------------------------------------------------------
# Notifications (SNS)
# ---------------------------------------------------------------------------

class NotificationSubscriber:
    subscription_id = "notifications"

    def __init__(self, topic_arn: str, sns_client=None):
        self.topic_arn = topic_arn
        self._sns = sns_client or boto3.client("sns")

    def deliver(self, event: DomainEvent) -> DeliveryResult:
        subject, message = _build_message(event)
        if not self.topic_arn:
            logger.info("No notification topic configured, skipping", extra={"event_id": event.event_id})
            return DeliveryResult.ACK
        try:
            self._sns.publish(
                TopicArn=self.topic_arn,
                Subject=subject,
                Message=message,
                MessageAttributes={
                    "event_type": {"DataType": "String", "StringValue": event.detail_type},
                    "entity_id": {"DataType": "String", "StringValue": event.entity_id},
                },
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("Notification publish failed: %s", e, extra={"event_id": event.event_id})
            return DeliveryResult.NACK
        logger.info("Notification sent", extra={"event_id": event.event_id, "detail_type": event.detail_type})
        return DeliveryResult.ACK


def _build_message(event: DomainEvent) -> tuple[str, str]:
    p = event.payload
    if event.entity_type == EntityType.USER_ACCOUNT and event.operation == Operation.CREATE:
        name = p.get("first_name") or p.get("username") or "there"
        return "Welcome to Bellyfed!", f"Hi {name}, your Bellyfed account is ready."
    if event.entity_type == EntityType.USER_ACCOUNT and event.operation == Operation.DELETE:
        return "Your Bellyfed account was deleted", f"Account {event.entity_id} has been deleted."
    if event.entity_type == EntityType.REVIEW and event.operation == Operation.CREATE:
        return (
            "New review posted",
            f"A {p.get('rating', '?')}-star review was posted for restaurant {p.get('restaurant_id', '?')}.",
        )
    return f"Bellyfed update: {event.detail_type}", f"{event.detail_type} for {event.entity_id}"
