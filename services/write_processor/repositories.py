"""
Entity repositories (default persistence gateway)
=================================================
The relational store is an external collaborator; the Processor only needs
`apply(entity_type, operation, payload, request_id=...) -> entity_id`. This
module ships the default adapter, a DynamoDB single-table design:

  PK: RESTAURANT#{restaurant_id}   SK: META
  PK: REVIEW#{review_id}           SK: META
  PK: USER#{user_id}               SK: META

Every item carries `causation_id` (the request that last wrote it) and a
`version` counter. Re-applying the same request is a no-op, which is what
makes a stale-claim takeover in the ledger safe:

  create  conditional on attribute_not_exists(pk) OR causation_id = :rid
  update  skipped when causation_id already equals the request id
  delete  of a missing item counts as already applied

Reviews keep the restaurant's rating aggregate (rating_total, review_count,
average_rating) in the same TransactWriteItems call as the review write, so
the two can never disagree.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from pipeline.dynamodb import (
    TRANSACTION_CANCELED,
    OptimisticLockError,
    decimal_to_python,
    error_code,
    get_table,
    is_conditional_failure,
    to_dynamo,
    unavailable,
)
from pipeline.errors import MutationRejectedError
from pipeline.events import EntityType, Operation, derive_entity_id
from pipeline.schemas import _Payload

logger = logging.getLogger(__name__)


class PersistenceGateway(Protocol):
    def apply(
        self,
        entity_type: EntityType,
        operation: Operation,
        payload: _Payload,
        *,
        request_id: str,
    ) -> str: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class EntityRepository:
    """Create / update / delete for one entity type in the shared table."""

    prefix = ""
    id_field = ""

    def __init__(self, table):
        self._table = table

    def key(self, entity_id: str) -> dict:
        return {"pk": f"{self.prefix}#{entity_id}", "sk": "META"}

    def get(self, entity_id: str) -> dict | None:
        try:
            resp = self._table.get_item(Key=self.key(entity_id), ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            raise unavailable(e, f"get {self.prefix}") from e
        item = resp.get("Item")
        return decimal_to_python(item) if item else None

    def raw_item(self, entity_id: str) -> dict | None:
        try:
            return self._table.get_item(Key=self.key(entity_id), ConsistentRead=True).get("Item")
        except (ClientError, BotoCoreError) as e:
            raise unavailable(e, f"get {self.prefix}") from e

    def entity_id_for_create(self, payload: _Payload, request_id: str, entity_type: EntityType) -> str:
        return getattr(payload, self.id_field, None) or derive_entity_id(entity_type, request_id)

    def _new_item(self, entity_id: str, fields: dict, request_id: str) -> dict:
        now = _now()
        return to_dynamo({
            **self.key(entity_id),
            **fields,
            self.id_field: entity_id,
            "causation_id": request_id,
            "created_at": now,
            "updated_at": now,
            "version": 1,
        })

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(self, entity_id: str, payload: _Payload, request_id: str) -> str:
        fields = payload.model_dump(exclude_none=True, exclude={"schema_version", self.id_field})
        try:
            self._table.put_item(
                Item=self._new_item(entity_id, fields, request_id),
                ConditionExpression=Attr("pk").not_exists() | Attr("causation_id").eq(request_id),
            )
        except ClientError as e:
            if is_conditional_failure(e):
                raise MutationRejectedError(
                    f"{self.prefix} {entity_id} already exists (created by another request)"
                ) from e
            raise unavailable(e, f"create {self.prefix}") from e
        except BotoCoreError as e:
            raise unavailable(e, f"create {self.prefix}") from e
        return entity_id

    def update(self, payload: _Payload, request_id: str) -> str:
        entity_id = getattr(payload, self.id_field)
        changes = to_dynamo(payload.changes())
        names = {f"#f{i}": k for i, k in enumerate(changes)}
        values = {f":v{i}": v for i, v in enumerate(changes.values())}
        sets = [f"#f{i} = :v{i}" for i in range(len(changes))]
        sets += ["updated_at = :u", "causation_id = :rid"]
        values.update({":u": _now(), ":rid": request_id, ":one": 1})
        try:
            self._table.update_item(
                Key=self.key(entity_id),
                UpdateExpression="SET " + ", ".join(sets) + " ADD version :one",
                ConditionExpression="attribute_exists(pk) AND causation_id <> :rid",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            if not is_conditional_failure(e):
                raise unavailable(e, f"update {self.prefix}") from e
            existing = self.raw_item(entity_id)
            if existing is None:
                raise MutationRejectedError(f"{self.prefix} {entity_id} does not exist") from e
            # causation matched: this request was already applied
        except BotoCoreError as e:
            raise unavailable(e, f"update {self.prefix}") from e
        return entity_id

    def delete(self, payload: _Payload, request_id: str) -> str:
        entity_id = getattr(payload, self.id_field)
        try:
            self._table.delete_item(Key=self.key(entity_id))
        except (ClientError, BotoCoreError) as e:
            raise unavailable(e, f"delete {self.prefix}") from e
        return entity_id


class RestaurantRepository(EntityRepository):
    prefix = "RESTAURANT"
    id_field = "restaurant_id"


class UserAccountRepository(EntityRepository):
    prefix = "USER"
    id_field = "user_id"


def _average(total: Decimal, count: Decimal) -> Decimal:
    if count <= 0:
        return Decimal("0")
    return (Decimal(total) / Decimal(count)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class ReviewRepository(EntityRepository):
    prefix = "REVIEW"
    id_field = "review_id"

    def __init__(self, table, restaurants: RestaurantRepository):
        super().__init__(table)
        self._restaurants = restaurants
        self._client = table.meta.client
        self._table_name = table.name

    def _aggregate_update(self, restaurant: dict, rating_delta: int, count_delta: int) -> dict:
        total = Decimal(restaurant.get("rating_total", 0)) + rating_delta
        count = Decimal(restaurant.get("review_count", 0)) + count_delta
        return {
            "Update": {
                "TableName": self._table_name,
                "Key": {"pk": restaurant["pk"], "sk": "META"},
                "UpdateExpression": (
                    "SET rating_total = :t, review_count = :c, average_rating = :a, "
                    "updated_at = :u ADD version :one"
                ),
                "ConditionExpression": "version = :v",
                "ExpressionAttributeValues": {
                    ":t": total,
                    ":c": count,
                    ":a": _average(total, count),
                    ":u": _now(),
                    ":one": 1,
                    ":v": restaurant["version"],
                },
            }
        }

    def _transact(self, items: list[dict], what: str) -> None:
        try:
            self._client.transact_write_items(TransactItems=items)
        except ClientError as e:
            if error_code(e) == TRANSACTION_CANCELED:
                # a concurrent writer moved the version; re-read and retry
                raise OptimisticLockError(f"{what}: transaction cancelled ({e})") from e
            raise unavailable(e, what) from e
        except BotoCoreError as e:
            raise unavailable(e, what) from e

    def create(self, entity_id: str, payload: _Payload, request_id: str) -> str:
        existing = self.raw_item(entity_id)
        if existing is not None:
            if existing.get("causation_id") == request_id:
                return entity_id
            raise MutationRejectedError(f"review {entity_id} already exists (created by another request)")

        restaurant = self._restaurants.raw_item(payload.restaurant_id)
        if restaurant is None:
            raise MutationRejectedError(f"restaurant {payload.restaurant_id} does not exist")

        fields = payload.model_dump(exclude_none=True, exclude={"schema_version", self.id_field})
        self._transact([
            {
                "Put": {
                    "TableName": self._table_name,
                    "Item": self._new_item(entity_id, fields, request_id),
                    "ConditionExpression": "attribute_not_exists(pk)",
                }
            },
            self._aggregate_update(restaurant, payload.rating, 1),
        ], "create review")
        return entity_id

    def update(self, payload: _Payload, request_id: str) -> str:
        entity_id = payload.review_id
        review = self.raw_item(entity_id)
        if review is None:
            raise MutationRejectedError(f"review {entity_id} does not exist")
        if review.get("causation_id") == request_id:
            return entity_id

        changes = to_dynamo(payload.changes())
        names = {f"#f{i}": k for i, k in enumerate(changes)}
        values: dict[str, Any] = {f":v{i}": v for i, v in enumerate(changes.values())}
        sets = [f"#f{i} = :v{i}" for i in range(len(changes))]
        sets += ["updated_at = :u", "causation_id = :rid"]
        values.update({":u": _now(), ":rid": request_id, ":one": 1, ":ver": review["version"]})
        update = {
            "TableName": self._table_name,
            "Key": self.key(entity_id),
            "UpdateExpression": "SET " + ", ".join(sets) + " ADD version :one",
            "ConditionExpression": "version = :ver",
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }
        items = [{"Update": update}]

        delta = (payload.rating - int(review["rating"])) if payload.rating is not None else 0
        if delta:
            restaurant = self._restaurants.raw_item(review["restaurant_id"])
            if restaurant is not None:
                items.append(self._aggregate_update(restaurant, delta, 0))
        self._transact(items, "update review")
        return entity_id

    def delete(self, payload: _Payload, request_id: str) -> str:
        entity_id = payload.review_id
        review = self.raw_item(entity_id)
        if review is None:
            return entity_id

        items = [{
            "Delete": {
                "TableName": self._table_name,
                "Key": self.key(entity_id),
                "ConditionExpression": "version = :ver",
                "ExpressionAttributeValues": {":ver": review["version"]},
            }
        }]
        restaurant = self._restaurants.raw_item(review["restaurant_id"])
        if restaurant is not None:
            items.append(self._aggregate_update(restaurant, -int(review["rating"]), -1))
        self._transact(items, "delete review")
        return entity_id


class DynamoDbGateway:
    """PersistenceGateway over the single entities table, dispatching on entity type."""

    def __init__(self, table):
        restaurants = RestaurantRepository(table)
        self.repositories: dict[EntityType, EntityRepository] = {
            EntityType.RESTAURANT: restaurants,
            EntityType.REVIEW: ReviewRepository(table, restaurants),
            EntityType.USER_ACCOUNT: UserAccountRepository(table),
        }

    @classmethod
    def from_config(cls, config, resource=None) -> "DynamoDbGateway":
        return cls(get_table(config.entities_table, resource))

    def apply(
        self,
        entity_type: EntityType,
        operation: Operation,
        payload: _Payload,
        *,
        request_id: str,
    ) -> str:
        repo = self.repositories[entity_type]
        if operation == Operation.CREATE:
            entity_id = repo.entity_id_for_create(payload, request_id, entity_type)
            result = repo.create(entity_id, payload, request_id)
        elif operation == Operation.UPDATE:
            result = repo.update(payload, request_id)
        else:
            result = repo.delete(payload, request_id)
        logger.debug(
            "Mutation applied",
            extra={"entity_type": entity_type.value, "operation": operation.value, "entity_id": result},
        )
        return result

    def get(self, entity_type: EntityType, entity_id: str) -> dict | None:
        return self.repositories[entity_type].get(entity_id)
