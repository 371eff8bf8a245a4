"""Adaptive concurrency scheduler with memory-pressure feedback.

Tasks run on a thread pool in batches. Batches are processed strictly in
submission order and results come back index-aligned with the input,
while tasks inside one batch overlap freely. After every batch the batch
size is adjusted from memory usage and task duration, always staying
within ``[base, 10 x base]``.
"""

import gc
import logging
import math
import os
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from itertools import pairwise
from typing import Any, Callable, Deque, Generic, Iterable, List, Optional, Tuple, TypeVar

import psutil

from flashcache.errors import SchedulerError, wrap_exception
from flashcache.retry import retry_call
from flashcache.utils import config_degraded

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

MemoryProbe = Callable[[], Tuple[int, int]]


def default_concurrency() -> int:
    return max(1, (os.cpu_count() or 2) - 1)


@dataclass
class SchedulerConfig:
    """Settings of the adaptive scheduler.

    Attributes:
        base_concurrency: Lower bound of the batch size
        memory_limit_percent: Share of total memory the process may use
        max_retries: Retries after a failed attempt (retryable errors only)
        retry_base_delay: Delay before the first retry, doubled each time
        retry_max_delay: Upper bound of a single retry delay
    """

    base_concurrency: int = field(default_factory=default_concurrency)
    memory_limit_percent: float = 80.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0

    def __post_init__(self):
        if self.base_concurrency < 1:
            config_degraded(f"base_concurrency must be >= 1, got {self.base_concurrency}")
            self.base_concurrency = default_concurrency()
        if not 0 < self.memory_limit_percent <= 100:
            config_degraded(
                f"memory_limit_percent must be in (0, 100], got {self.memory_limit_percent}"
            )
            self.memory_limit_percent = 80.0


def psutil_memory_probe() -> Tuple[int, int]:
    """(process resident memory, total system memory) in bytes."""
    return psutil.Process().memory_info().rss, psutil.virtual_memory().total


@dataclass
class WorkerTask(Generic[T, R]):
    """One unit of work and its outcome.

    Attributes:
        index: Position in the submitted sequence
        input: The item handed to the task function
        result: Return value of the task function on success
        error: Last error when every attempt failed
        attempts: Number of attempts made
        duration: Wall time of all attempts in seconds
    """

    index: int
    input: T
    result: Optional[R] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchReport:
    """Aggregate outcome of a run."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    batches: int = 0
    batch_size: int = 0

    @classmethod
    def from_tasks(cls, tasks: List[WorkerTask], batches: int = 0, batch_size: int = 0):
        failed = sum(1 for t in tasks if not t.ok)
        return cls(
            total=len(tasks),
            succeeded=len(tasks) - failed,
            failed=failed,
            batches=batches,
            batch_size=batch_size,
        )


class AdaptiveScheduler:
    """Bounded-parallelism task runner that respects a memory budget.

    Args:
        config: Scheduler settings
        memory_probe: Callable returning (used, total) memory in bytes;
            defaults to process RSS and total RAM from psutil
        sleep: Sleep function used between retries
    """

    DECREASE_FACTOR = 0.8
    INCREASE_FACTOR = 1.2
    TREND_WINDOW = 10
    LOW_WATER = 0.7  # share of the limit below which the batch may grow
    HARD_LIMIT = 0.9  # share of the limit above which gc runs
    FAST_TASK_SECONDS = 1.0

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        memory_probe: Optional[MemoryProbe] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.config = config or SchedulerConfig()
        self.memory_probe = memory_probe or psutil_memory_probe
        self.sleep = sleep
        self.min_batch = self.config.base_concurrency
        self.max_batch = 10 * self.config.base_concurrency
        self.batch_size = self._clamp(2 * self.config.base_concurrency)
        self._samples: Deque[int] = deque(maxlen=self.TREND_WINDOW)
        self.batches_run = 0

    def _clamp(self, size: int) -> int:
        return max(self.min_batch, min(self.max_batch, size))

    def memory_trend_increasing(self) -> bool:
        """True when the last 10 memory samples rise monotonically."""
        if len(self._samples) < self.TREND_WINDOW:
            return False
        return all(later > earlier for earlier, later in pairwise(self._samples))

    def adjust(self, mean_duration: float) -> int:
        """Adapt the batch size after a batch.

        Args:
            mean_duration: Mean task duration of the finished batch (seconds)

        Returns:
            The new batch size
        """
        used, total = self.memory_probe()
        self._samples.append(used)
        usage_percent = (used / total * 100) if total else 0.0
        limit = self.config.memory_limit_percent

        if usage_percent > limit or self.memory_trend_increasing():
            proposed = math.floor(self.batch_size * self.DECREASE_FACTOR)
        elif usage_percent < limit * self.LOW_WATER and mean_duration < self.FAST_TASK_SECONDS:
            proposed = math.ceil(self.batch_size * self.INCREASE_FACTOR)
        else:
            proposed = self.batch_size

        previous, self.batch_size = self.batch_size, self._clamp(proposed)
        if self.batch_size != previous:
            logger.debug(
                f"Batch size {previous} -> {self.batch_size} "
                f"(memory {usage_percent:.1f}% of {limit:.0f}% limit, "
                f"mean task {mean_duration:.2f}s)"
            )

        if usage_percent > limit * self.HARD_LIMIT:
            logger.debug(f"Memory at {usage_percent:.1f}%, collecting garbage")
            gc.collect()

        return self.batch_size

    def _execute(self, task: WorkerTask, fn: Callable[[Any], Any], max_retries: int) -> None:
        """Run one task to completion; records the outcome instead of raising."""
        start = time.monotonic()

        def attempt():
            task.attempts += 1
            return fn(task.input)

        try:
            task.result = retry_call(
                attempt,
                max_retries=max_retries,
                base_delay=self.config.retry_base_delay,
                max_delay=self.config.retry_max_delay,
                sleep=self.sleep,
                description=f"task {task.index}",
            )
        except Exception as e:
            task.error = wrap_exception(e, f"Task {task.index} failed", SchedulerError)
        finally:
            task.duration = time.monotonic() - start

    def run(
        self,
        items: Iterable[T],
        fn: Callable[[T], R],
        max_retries: int = 0,
    ) -> List[WorkerTask]:
        """Run ``fn`` over every item in adaptive batches.

        No task is ever dropped: a task whose attempts are exhausted keeps
        its last error in ``WorkerTask.error``.

        Args:
            items: Inputs, one task each
            fn: Task function
            max_retries: Retries per task for retryable errors

        Returns:
            WorkerTasks in submission order
        """
        tasks = [WorkerTask(index=i, input=item) for i, item in enumerate(items)]
        if not tasks:
            return tasks

        position = 0
        with ThreadPoolExecutor(
            max_workers=self.max_batch, thread_name_prefix="flashcache"
        ) as pool:
            while position < len(tasks):
                batch = tasks[position : position + self.batch_size]
                futures = [pool.submit(self._execute, task, fn, max_retries) for task in batch]
                for future in futures:
                    future.result()
                position += len(batch)
                self.batches_run += 1
                self.adjust(sum(t.duration for t in batch) / len(batch))

        return tasks

    def run_with_retry(
        self,
        item: T,
        fn: Callable[[T], R],
        max_retries: Optional[int] = None,
    ) -> R:
        """Run a single task with exponential-backoff retries.

        Only retryable failures are retried; the last error propagates.

        Args:
            item: Task input
            fn: Task function
            max_retries: Retries after the first attempt (configured default)

        Returns:
            The task's result
        """
        return retry_call(
            lambda: fn(item),
            max_retries=self.config.max_retries if max_retries is None else max_retries,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            sleep=self.sleep,
            description=getattr(fn, "__name__", "task"),
        )

    def report(self, tasks: List[WorkerTask]) -> BatchReport:
        return BatchReport.from_tasks(tasks, self.batches_run, self.batch_size)
