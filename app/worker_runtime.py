from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    idle: int = 0
    errors: int = 0

    def add(self, other: "WorkerRunStats") -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.idle += other.idle
        self.errors += other.errors

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "idle": self.idle,
            "errors": self.errors,
        }


class WorkerRuntime:
    """Resident poller that drives the async entry point.

    Each iteration fans out up to max_concurrent_processors process_next()
    calls; exclusivity of each job comes from the claim, not from this loop.
    """

    def __init__(
        self,
        *,
        service: Any,
        concurrency: int | None = None,
        interval_ms: int = 5000,
        max_backoff_ms: int = 60000,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.service = service
        self._concurrency = concurrency
        self.interval_ms = max(1, int(interval_ms))
        self.max_backoff_ms = max(self.interval_ms, int(max_backoff_ms))
        self._sleep = sleep

    @property
    def concurrency(self) -> int:
        if self._concurrency is not None:
            return max(1, int(self._concurrency))
        return max(1, self.service.settings.max_concurrent_processors(default=DEFAULT_CONCURRENCY))

    def _process_one(self) -> WorkerRunStats:
        stats = WorkerRunStats()
        try:
            result = self.service.process_next()
        except Exception as exc:
            logger.warning("worker_process_next_failed error=%s", exc)
            stats.errors += 1
            return stats
        if result is None:
            stats.idle += 1
            return stats
        stats.processed += 1
        if result.success:
            stats.succeeded += 1
        else:
            stats.failed += 1
        return stats

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        workers = self.concurrency
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="upload-queue") as pool:
            for item in pool.map(lambda _: self._process_one(), range(workers)):
                stats.add(item)
        logger.info("worker_iteration_done %s", " ".join(f"{k}={v}" for k, v in stats.as_dict().items()))
        return stats.as_dict()

    def next_delay_ms(self, *, current_ms: int, had_errors: bool) -> int:
        if not had_errors:
            return self.interval_ms
        return min(self.max_backoff_ms, max(self.interval_ms, current_ms) * 2)

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        delay_ms = self.interval_ms
        while True:
            current = self.run_once()
            aggregate.add(WorkerRunStats(**current))
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            delay_ms = self.next_delay_ms(current_ms=delay_ms, had_errors=current["errors"] > 0)
            if delay_ms > self.interval_ms:
                logger.warning("worker_backoff delay_ms=%s", delay_ms)
            self._sleep(delay_ms / 1000.0)
        return aggregate.as_dict()


def create_worker_runtime_from_env(*, service: Any) -> WorkerRuntime:
    config = service.config
    return WorkerRuntime(
        service=service,
        concurrency=config.max_concurrent_processors or None,
        interval_ms=config.processor_interval_ms,
        max_backoff_ms=config.max_backoff_ms,
    )
