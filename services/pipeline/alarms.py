"""
Alarm hook
==========
The pipeline does not render dashboards or page anyone; it only fires a
signal when something needs an operator:

  - a message runs out of retries and is dead-lettered (always)
  - a DLQ reaches its depth threshold (a message needs a human)
  - the failure rate of one queue crosses a threshold within a sliding window

notify() is fire-and-forget: an alarm hook that is down must never turn a
successfully dead-lettered message into a processing failure.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class AlarmSignal(BaseModel):
    entity_type: str
    operation: str
    metric: str            # "retry_exhausted" | "dlq_depth" | "error_rate"
    value: float
    threshold: float
    queue: str = ""
    last_error: str = ""

    @property
    def subject(self) -> str:
        return f"[bellyfed] {self.metric} alarm on {self.entity_type}/{self.operation}"[:100]


class AlarmHook(Protocol):
    def notify(self, signal: AlarmSignal) -> None: ...


class LoggingAlarmHook:
    """Used when no alarm topic is configured (local runs, tests)."""

    def notify(self, signal: AlarmSignal) -> None:
        logger.error("ALARM %s", signal.subject, extra=signal.model_dump())


class SnsAlarmHook:
    def __init__(self, topic_arn: str, sns_client=None):
        self.topic_arn = topic_arn
        self._sns = sns_client or boto3.client("sns")

    def notify(self, signal: AlarmSignal) -> None:
        try:
            self._sns.publish(
                TopicArn=self.topic_arn,
                Subject=signal.subject,
                Message=signal.model_dump_json(),
                MessageAttributes={
                    "metric": {"DataType": "String", "StringValue": signal.metric},
                    "entity_type": {"DataType": "String", "StringValue": signal.entity_type},
                },
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("Alarm publish failed, signal dropped: %s", e, extra=signal.model_dump())


def build_alarm_hook(topic_arn: str, sns_client=None) -> AlarmHook:
    if topic_arn:
        return SnsAlarmHook(topic_arn, sns_client)
    return LoggingAlarmHook()


class ErrorRateMonitor:
    """
    Sliding-window failure counter for one queue. Fires once when the count
    reaches the threshold, then stays quiet until the window has drained
    below it again.
    """

    def __init__(
        self,
        hook: AlarmHook,
        entity_type: str,
        operation: str,
        threshold: int,
        window_seconds: float,
        queue: str = "",
        clock=time.monotonic,
    ):
        self._hook = hook
        self.entity_type = entity_type
        self.operation = operation
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.queue = queue
        self._clock = clock
        self._failures: deque[float] = deque()
        self._lock = threading.Lock()
        self._tripped = False

    def record_failure(self, error: str = "") -> None:
        now = self._clock()
        with self._lock:
            self._failures.append(now)
            self._evict(now)
            count = len(self._failures)
            fire = count >= self.threshold and not self._tripped
            if fire:
                self._tripped = True
        if fire:
            self._hook.notify(AlarmSignal(
                entity_type=self.entity_type,
                operation=self.operation,
                metric="error_rate",
                value=count,
                threshold=self.threshold,
                queue=self.queue,
                last_error=error,
            ))

    def failure_count(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return len(self._failures)

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._failures and self._failures[0] <= cutoff:
            self._failures.popleft()
        if len(self._failures) < self.threshold:
            self._tripped = False


def check_dlq_depth(
    hook: AlarmHook,
    depth: int,
    threshold: int,
    entity_type: str,
    operation: str,
    queue: str = "",
    last_error: str = "",
) -> bool:
    """Signal the hook if `depth` reached `threshold`. Returns whether it fired."""
    if depth < threshold:
        return False
    hook.notify(AlarmSignal(
        entity_type=entity_type,
        operation=operation,
        metric="dlq_depth",
        value=depth,
        threshold=threshold,
        queue=queue,
        last_error=last_error,
    ))
    return True


def notify_retry_exhausted(
    hook: AlarmHook,
    attempts: int,
    max_attempts: int,
    entity_type: str,
    operation: str,
    queue: str = "",
    last_error: str = "",
) -> None:
    """Unconditional: every exhausted message is worth a signal, whatever the DLQ depth."""
    hook.notify(AlarmSignal(
        entity_type=entity_type,
        operation=operation,
        metric="retry_exhausted",
        value=attempts,
        threshold=max_attempts,
        queue=queue,
        last_error=last_error,
    ))
