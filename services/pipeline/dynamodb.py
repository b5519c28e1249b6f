"""
DynamoDB Helpers
================
Thin wrappers around boto3 shared by the ledger, the circuit breaker, the
entity repositories and the analytics subscriber:
- Decimal <-> Python number conversion (DynamoDB rejects floats)
- Telling a conditional-check failure apart from an infrastructure failure
- OptimisticLockError for version-conditioned transactions
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import PersistenceUnavailableError

CONDITIONAL_FAILURE = "ConditionalCheckFailedException"
TRANSACTION_CANCELED = "TransactionCanceledException"


def get_table(table_name: str, resource=None):
    dynamodb = resource or boto3.resource("dynamodb")
    return dynamodb.Table(table_name)


def error_code(e: ClientError) -> str:
    return (e.response or {}).get("Error", {}).get("Code", "")


def is_conditional_failure(e: Exception) -> bool:
    return isinstance(e, ClientError) and error_code(e) == CONDITIONAL_FAILURE


def unavailable(e: Exception, what: str) -> PersistenceUnavailableError:
    """
    Wrap a boto3 failure as transient. Throttling, timeouts and 5xx all land
    here; conditional failures must be handled by the caller before this.
    """
    if isinstance(e, ClientError):
        return PersistenceUnavailableError(f"{what} failed: {error_code(e)} {e}")
    if isinstance(e, BotoCoreError):
        return PersistenceUnavailableError(f"{what} failed: {e}")
    return PersistenceUnavailableError(f"{what} failed: {e!r}")


class OptimisticLockError(PersistenceUnavailableError):
    """A concurrent update won the race. The caller retries (it's transient)."""


def to_dynamo(obj: Any) -> Any:
    """Recursively convert floats to Decimal so boto3 accepts them."""
    if isinstance(obj, float):
        return Decimal(str(obj))
    if isinstance(obj, dict):
        return {k: to_dynamo(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [to_dynamo(v) for v in obj]
    return obj


def decimal_to_python(obj: Any) -> Any:
    """
    DynamoDB returns Decimals for all numbers.
    Recursively convert to int or float for JSON serialization.
    """
    if isinstance(obj, Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    if isinstance(obj, dict):
        return {k: decimal_to_python(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [decimal_to_python(v) for v in obj]
    return obj
