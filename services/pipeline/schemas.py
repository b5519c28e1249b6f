"""
Versioned payload schemas
=========================
The dispatch table below maps (entity_type, operation, schema_version) to
the Pydantic model that validates a MutationRequest payload. Adding v2 of a
payload means adding a model and a row; v1 producers keep working.
"""
from __future__ import annotations

import json
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import PayloadValidationError
from .events import EntityType, MutationRequest, Operation

CURRENT_SCHEMA_VERSION = 1


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    schema_version: int


class _PartialUpdate(_Payload):
    """Updates must change at least one mutable field."""
    id_field: ClassVar[str] = ""

    @model_validator(mode="after")
    def has_changes(self):
        if not self.changes():
            raise ValueError("update payload must set at least one field")
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(
            exclude_none=True, exclude={"schema_version", self.id_field}
        )


# ---------------------------------------------------------------------------
# Restaurant
# ---------------------------------------------------------------------------

class _RestaurantFields(BaseModel):
    description: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    country_code: str | None = Field(default=None, min_length=2, max_length=3)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    phone: str | None = None
    website: str | None = None
    email: str | None = None
    cuisine_type: str | None = None
    price_range: int | None = Field(default=None, ge=1, le=4)


class RestaurantCreateV1(_Payload, _RestaurantFields):
    restaurant_id: str | None = None
    name: str = Field(min_length=1)


class RestaurantUpdateV1(_PartialUpdate, _RestaurantFields):
    id_field: ClassVar[str] = "restaurant_id"
    restaurant_id: str = Field(min_length=1)
    name: str | None = Field(default=None, min_length=1)


class RestaurantDeleteV1(_Payload):
    restaurant_id: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------

class ReviewCreateV1(_Payload):
    review_id: str | None = None
    restaurant_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    rating: int = Field(ge=1, le=5)
    text: str | None = None
    visit_status: str | None = None


class ReviewUpdateV1(_PartialUpdate):
    id_field: ClassVar[str] = "review_id"
    review_id: str = Field(min_length=1)
    rating: int | None = Field(default=None, ge=1, le=5)
    text: str | None = None
    visit_status: str | None = None


class ReviewDeleteV1(_Payload):
    review_id: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# User account
# ---------------------------------------------------------------------------

class _UserFields(BaseModel):
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone_number: str | None = None


class UserAccountCreateV1(_Payload, _UserFields):
    user_id: str | None = None
    email: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")


class UserAccountUpdateV1(_PartialUpdate, _UserFields):
    id_field: ClassVar[str] = "user_id"
    user_id: str = Field(min_length=1)
    email: str | None = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+$")


class UserAccountDeleteV1(_Payload):
    user_id: str = Field(min_length=1)


PAYLOAD_SCHEMAS: dict[tuple[EntityType, Operation], dict[int, type[_Payload]]] = {
    (EntityType.RESTAURANT, Operation.CREATE): {1: RestaurantCreateV1},
    (EntityType.RESTAURANT, Operation.UPDATE): {1: RestaurantUpdateV1},
    (EntityType.RESTAURANT, Operation.DELETE): {1: RestaurantDeleteV1},
    (EntityType.REVIEW, Operation.CREATE): {1: ReviewCreateV1},
    (EntityType.REVIEW, Operation.UPDATE): {1: ReviewUpdateV1},
    (EntityType.REVIEW, Operation.DELETE): {1: ReviewDeleteV1},
    (EntityType.USER_ACCOUNT, Operation.CREATE): {1: UserAccountCreateV1},
    (EntityType.USER_ACCOUNT, Operation.UPDATE): {1: UserAccountUpdateV1},
    (EntityType.USER_ACCOUNT, Operation.DELETE): {1: UserAccountDeleteV1},
}


def validate_payload(request: MutationRequest) -> _Payload:
    """
    Parse and validate a request's payload.
    Raises PayloadValidationError for anything retrying cannot fix.
    """
    raw = request.payload
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise PayloadValidationError(f"Payload is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise PayloadValidationError(
            f"Payload must be a JSON object, got {type(raw).__name__}"
        )

    version = raw.get("schema_version")
    if version is None:
        raise PayloadValidationError("Payload is missing schema_version")

    versions = PAYLOAD_SCHEMAS[(request.entity_type, request.operation)]
    model = versions.get(version) if isinstance(version, int) and not isinstance(version, bool) else None
    if model is None:
        raise PayloadValidationError(
            f"Unsupported schema_version {version!r} for "
            f"{request.entity_type.value}/{request.operation.value}"
        )

    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise PayloadValidationError(
            f"Payload failed {model.__name__} validation: "
            + "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors())
        ) from e
