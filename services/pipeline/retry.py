"""
Retry / Backoff Controller
==========================
A pure policy: no I/O, no clock of its own (callers pass `now`), no state.

    delay = min(max_delay, base_delay * 2 ** attempt)      optionally ±20% jitter

Jitter matters when a shared dependency (the persistence layer) has an
outage: hundreds of messages fail in the same second, and without jitter
they would all come back in the same second too.

`attempt` is zero-based. The decision after a failure of attempt k is
terminal iff k + 1 >= max_attempts, so a message that always fails is tried
exactly max_attempts times before it is dead-lettered.
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import BaseModel, Field, model_validator

from .events import utcnow

# SQS DelaySeconds cannot exceed 15 minutes
SQS_MAX_DELAY_SECONDS = 900
JITTER_RATIO = 0.2


class RetryPolicy(BaseModel):
    base_delay_seconds: float = Field(default=2.0, ge=0)
    max_delay_seconds: float = Field(default=300.0, ge=0, le=SQS_MAX_DELAY_SECONDS)
    max_attempts: int = Field(default=5, ge=1)
    jitter: bool = True

    @model_validator(mode="after")
    def base_not_above_cap(self):
        if self.base_delay_seconds > self.max_delay_seconds:
            raise ValueError("base_delay_seconds must not exceed max_delay_seconds")
        return self

    @property
    def max_redelivery_span_seconds(self) -> float:
        """Upper bound on how long one request can keep bouncing between retries."""
        return self.max_attempts * self.max_delay_seconds


@dataclass(frozen=True)
class RetryDecision:
    terminal: bool
    next_attempt: int
    delay_seconds: int = 0
    next_eligible_at: datetime | None = None


class RetryController:
    def __init__(self, policy: RetryPolicy, rng: random.Random | None = None):
        self.policy = policy
        self._rng = rng or random.Random()

    def compute_delay(self, attempt: int) -> float:
        p = self.policy
        # cap the exponent so huge attempt counts don't overflow to inf
        delay = min(p.max_delay_seconds, p.base_delay_seconds * (2 ** min(attempt, 32)))
        if p.jitter and delay > 0:
            delay *= self._rng.uniform(1 - JITTER_RATIO, 1 + JITTER_RATIO)
            delay = min(delay, p.max_delay_seconds)
        return max(0.0, delay)

    def is_terminal(self, attempt: int) -> bool:
        return attempt >= self.policy.max_attempts

    def on_failure(self, attempt: int, now: datetime | None = None) -> RetryDecision:
        """Decide what happens after attempt `attempt` failed."""
        next_attempt = attempt + 1
        if self.is_terminal(next_attempt):
            return RetryDecision(terminal=True, next_attempt=next_attempt)

        # SQS only takes whole seconds; round up so we never retry early
        delay = int(-(-self.compute_delay(attempt) // 1))
        now = now or utcnow()
        return RetryDecision(
            terminal=False,
            next_attempt=next_attempt,
            delay_seconds=delay,
            next_eligible_at=now + timedelta(seconds=delay),
        )
