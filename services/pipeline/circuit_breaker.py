"""
Circuit Breaker for the persistence layer
=========================================
When the persistence layer is down every worker would otherwise burn a full
timeout per message, per attempt. Once the breaker opens, workers fail fast
with CircuitBreakerOpenError, which is a TransientInfraError: the message is
released with backoff exactly as if the call had timed out, just without the
wait.

States:
  CLOSED    normal operation, calls pass through
  OPEN      failure threshold exceeded, calls fast-fail
  HALF_OPEN cooldown elapsed, trial calls allowed through

State lives in DynamoDB so every worker thread in every process shares one
view of the dependency's health; an in-process breaker would need N
separate failure streaks to open across N workers.

Only infrastructure failures count. A payload the persistence layer rejects
(MutationRejectedError) says nothing about its health.
"""
from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable

from botocore.exceptions import BotoCoreError, ClientError

from .errors import PayloadValidationError, TransientInfraError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpenError(TransientInfraError):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, name: str, resets_at: float):
        self.resets_at = resets_at
        super().__init__(
            f"Circuit '{name}' is OPEN. Will retry after {max(0, int(resets_at - time.time()))}s."
        )


def _counts_as_failure(exc: BaseException) -> bool:
    return not isinstance(exc, PayloadValidationError)


class CircuitBreaker:
    """
    DynamoDB-backed circuit breaker.

    Parameters
    ----------
    name:              Unique name for this breaker (e.g. "persistence-layer")
    table:             boto3 DynamoDB Table, hash key `name`
    failure_threshold: Consecutive failures before opening
    success_threshold: Consecutive successes in HALF_OPEN to close again
    timeout_seconds:   How long to stay OPEN before allowing a trial call
    """

    def __init__(
        self,
        name: str,
        table,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout_seconds: int = 30,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout_seconds = timeout_seconds
        self._table = table

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def call(self, fn: Callable, *args, **kwargs) -> Any:
        """
        Execute `fn` through the circuit breaker.
        Raises CircuitBreakerOpenError if the circuit is OPEN.
        """
        state = self.state()

        if state["circuit_state"] == CircuitState.OPEN:
            resets_at = float(state.get("resets_at", 0))  # DynamoDB returns Decimal
            if time.time() < resets_at:
                raise CircuitBreakerOpenError(self.name, resets_at)
            self._transition_to_half_open()
            state = {**state, "circuit_state": CircuitState.HALF_OPEN, "success_count": 0}

        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            if _counts_as_failure(exc):
                self._record_failure(state)
            raise
        self._record_success(state)
        return result

    def state(self) -> dict:
        try:
            resp = self._table.get_item(Key={"name": self.name})
        except (ClientError, BotoCoreError) as e:
            # Breaker bookkeeping must never be the reason a write fails
            logger.warning("Circuit '%s' state unreadable, assuming CLOSED: %s", self.name, e)
            resp = {}
        return resp.get("Item") or {
            "name": self.name,
            "circuit_state": CircuitState.CLOSED,
            "failure_count": 0,
            "success_count": 0,
        }

    def reset(self) -> None:
        """Manually reset the circuit to CLOSED (for testing / admin ops)."""
        self._table.put_item(Item={
            "name": self.name,
            "circuit_state": CircuitState.CLOSED.value,
            "failure_count": 0,
            "success_count": 0,
        })

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def _update(self, expression: str, values: dict) -> None:
        try:
            self._table.update_item(
                Key={"name": self.name},
                UpdateExpression=expression,
                ExpressionAttributeValues=values,
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("Circuit '%s' state write failed: %s", self.name, e)

    def _record_success(self, prev_state: dict) -> None:
        circuit_state = prev_state.get("circuit_state", CircuitState.CLOSED)

        if circuit_state == CircuitState.HALF_OPEN:
            new_successes = int(prev_state.get("success_count", 0)) + 1
            if new_successes >= self.success_threshold:
                logger.info("Circuit '%s' CLOSED after %d trial successes", self.name, new_successes)
                self._update(
                    "SET circuit_state = :s, failure_count = :f, success_count = :sc",
                    {":s": CircuitState.CLOSED.value, ":f": 0, ":sc": 0},
                )
            else:
                self._update("SET success_count = :sc", {":sc": new_successes})
        elif int(prev_state.get("failure_count", 0)) > 0:
            # Only CLOSED streaks need resetting; skip the write on the happy path
            self._update("SET failure_count = :f", {":f": 0})

    def _record_failure(self, prev_state: dict) -> None:
        new_failures = int(prev_state.get("failure_count", 0)) + 1
        circuit_state = prev_state.get("circuit_state", CircuitState.CLOSED)

        if circuit_state == CircuitState.HALF_OPEN or new_failures >= self.failure_threshold:
            resets_at = time.time() + self.timeout_seconds
            logger.warning(
                "Circuit '%s' OPENED after %d failures. Resets at %s",
                self.name, new_failures, resets_at,
            )
            self._update(
                "SET circuit_state = :s, failure_count = :f, resets_at = :r, success_count = :sc",
                {
                    ":s": CircuitState.OPEN.value,
                    ":f": new_failures,
                    ":r": int(resets_at),
                    ":sc": 0,
                },
            )
        else:
            self._update("SET failure_count = :f", {":f": new_failures})

    def _transition_to_half_open(self) -> None:
        logger.info("Circuit '%s' transitioning OPEN -> HALF_OPEN", self.name)
        self._update(
            "SET circuit_state = :s, success_count = :sc",
            {":s": CircuitState.HALF_OPEN.value, ":sc": 0},
        )
