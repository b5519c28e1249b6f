"""
Worker pool
===========
A fixed number of threads, each running an independent
poll -> dequeue -> process loop against one queue. Threads (not asyncio)
because every step is blocking boto3 I/O.

Shutdown: request_stop() stops new dequeues; whatever a worker is handling
finishes, bounded by the grace period in stop(). A message still in flight
when the grace period ends is simply never acknowledged, so SQS hands it to
another worker once its visibility window lapses.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Protocol

logger = logging.getLogger(__name__)


class Pollable(Protocol):
    def poll_once(self) -> list: ...


class WorkerPool:
    def __init__(
        self,
        processor: Pollable,
        size: int,
        name: str,
        idle_sleep_seconds: float = 0.0,
        error_sleep_seconds: float = 1.0,
    ):
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.processor = processor
        self.size = size
        self.name = name
        self.idle_sleep_seconds = idle_sleep_seconds
        self.error_sleep_seconds = error_sleep_seconds
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self.processed = 0
        self._count_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self._threads:
            raise RuntimeError(f"pool {self.name} already started")
        for i in range(self.size):
            t = threading.Thread(target=self._loop, name=f"{self.name}-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("Worker pool started", extra={"pool": self.name, "size": self.size})

    def request_stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float) -> bool:
        """Wait up to `timeout` seconds in total. True if every worker exited."""
        deadline = time.monotonic() + timeout
        for t in self._threads:
            t.join(max(0.0, deadline - time.monotonic()))
        stragglers = [t.name for t in self._threads if t.is_alive()]
        if stragglers:
            logger.warning(
                "Grace period over, abandoning in-flight work",
                extra={"pool": self.name, "workers": stragglers},
            )
            return False
        logger.info("Worker pool stopped", extra={"pool": self.name, "processed": self.processed})
        return True

    def stop(self, grace_seconds: float) -> bool:
        self.request_stop()
        return self.join(grace_seconds)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                results = self.processor.poll_once()
            except Exception:
                # Queue unreachable etc.; back off instead of spinning
                logger.exception("Poll failed", extra={"pool": self.name})
                self._stop_event.wait(self.error_sleep_seconds)
                continue
            if results:
                with self._count_lock:
                    self.processed += len(results)
            elif self.idle_sleep_seconds:
                self._stop_event.wait(self.idle_sleep_seconds)


def run_until_stopped(pools: list[WorkerPool], grace_seconds: float, stop_event: threading.Event) -> bool:
    """Start every pool, block until `stop_event`, then drain. True on a clean drain."""
    for pool in pools:
        pool.start()
    stop_event.wait()
    for pool in pools:
        pool.request_stop()
    # one grace period shared by all pools
    deadline = time.monotonic() + grace_seconds
    return all([pool.join(max(0.0, deadline - time.monotonic())) for pool in pools])
