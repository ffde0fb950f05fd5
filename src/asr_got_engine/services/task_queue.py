import asyncio
import itertools
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from ..domain.services.exceptions import (
    QueueFullError,
    TaskFailedError,
    TaskNotFoundError,
    TaskQueueError,
    TaskTimeoutError,
)

TaskFactory = Callable[[], Awaitable[Any]]


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 0, "medium": 1, "low": 2}[self.value]


class TaskStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskRecord:
    task_id: str
    name: str
    priority: TaskPriority
    factory: Optional[TaskFactory]
    submitted_at: float
    status: TaskStatus = TaskStatus.QUEUED
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    result: Any = None
    error: Optional[BaseException] = None
    done: asyncio.Event = field(default_factory=asyncio.Event)


class BackgroundTaskQueue:
    """
    Bounded-concurrency priority queue for external calls.

    ``max_concurrent`` asyncio workers drain a priority queue ordered
    high > medium > low, FIFO within a tier. ``submit`` rejects new work once
    ``max_queue_size`` tasks are waiting. Finished records are kept for
    ``result_retention_seconds`` and evicted lazily on the next queue call.
    """

    def __init__(
        self,
        max_concurrent: int = 3,
        max_queue_size: int = 100,
        result_retention_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.max_queue_size = max_queue_size
        self.result_retention_seconds = result_retention_seconds
        self._clock = clock
        self._queue: Optional[asyncio.PriorityQueue] = None
        self._workers: List[asyncio.Task] = []
        self._records: Dict[str, TaskRecord] = {}
        self._sequence = itertools.count()
        self._rejected = 0

    # -- lifecycle --
    async def start(self) -> None:
        self._ensure_started()

    def _ensure_started(self) -> None:
        if self._workers:
            return
        self._queue = asyncio.PriorityQueue()
        self._workers = [
            asyncio.get_running_loop().create_task(self._worker(i), name=f"task-queue-worker-{i}")
            for i in range(self.max_concurrent)
        ]
        logger.debug(f"BackgroundTaskQueue started with {self.max_concurrent} workers")

    async def close(self) -> None:
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        unfinished = [
            r for r in self._records.values() if r.status in (TaskStatus.QUEUED, TaskStatus.PROCESSING)
        ]
        for record in unfinished:
            record.status = TaskStatus.FAILED
            record.error = TaskQueueError(f"Task queue closed before {record.name} finished")
            record.factory = None
            record.finished_at = self._clock()
            record.done.set()
        if unfinished:
            logger.warning(f"BackgroundTaskQueue closed with {len(unfinished)} unfinished tasks")
        logger.debug("BackgroundTaskQueue closed")

    async def __aenter__(self) -> "BackgroundTaskQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # -- submission --
    def submit(
        self,
        task: TaskFactory,
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        name: Optional[str] = None,
    ) -> str:
        """Queue ``task`` (a zero-argument coroutine function) and return its id."""
        self._ensure_started()
        self._evict_expired()
        priority = TaskPriority(priority)
        if self._count(TaskStatus.QUEUED) >= self.max_queue_size:
            self._rejected += 1
            raise QueueFullError(
                f"Task queue is full ({self.max_queue_size} tasks waiting)"
            )
        task_id = str(uuid.uuid4())
        record = TaskRecord(
            task_id=task_id,
            name=name or task_id,
            priority=priority,
            factory=task,
            submitted_at=self._clock(),
        )
        self._records[task_id] = record
        self._queue.put_nowait((priority.rank, next(self._sequence), task_id))
        logger.debug(f"Queued task {record.name} ({task_id}) with priority {priority.value}")
        return task_id

    async def _worker(self, index: int) -> None:
        while True:
            _, _, task_id = await self._queue.get()
            record = self._records.get(task_id)
            try:
                if record is None or record.factory is None:
                    continue
                record.status = TaskStatus.PROCESSING
                record.started_at = self._clock()
                try:
                    record.result = await record.factory()
                    record.status = TaskStatus.COMPLETED
                except Exception as e:
                    record.error = e
                    record.status = TaskStatus.FAILED
                    logger.warning(f"Task {record.name} ({task_id}) failed: {e}")
                finally:
                    record.factory = None
                    record.finished_at = self._clock()
                    record.done.set()
            finally:
                self._queue.task_done()

    # -- results --
    async def poll_result(self, task_id: str, timeout: float = 30.0) -> Any:
        """
        Wait up to ``timeout`` seconds for ``task_id`` and return its result.

        Raises:
            TaskNotFoundError: unknown or already evicted id.
            TaskTimeoutError: the task did not finish in time. The task
                keeps running; its record remains pollable until evicted.
            TaskFailedError: the task raised; ``original_error`` holds the cause.
        """
        self._evict_expired()
        record = self._records.get(task_id)
        if record is None:
            raise TaskNotFoundError(f"Unknown task id {task_id}")
        try:
            await asyncio.wait_for(record.done.wait(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TaskTimeoutError(task_id, timeout) from e
        if record.error is not None:
            raise TaskFailedError(task_id, record.error) from record.error
        return record.result

    def get_task_status(self, task_id: str) -> Optional[TaskStatus]:
        self._evict_expired()
        record = self._records.get(task_id)
        return record.status if record else None

    def stats(self) -> Dict[str, int]:
        self._evict_expired()
        return {
            "queued": self._count(TaskStatus.QUEUED),
            "processing": self._count(TaskStatus.PROCESSING),
            "completed": self._count(TaskStatus.COMPLETED),
            "failed": self._count(TaskStatus.FAILED),
            "max_concurrent": self.max_concurrent,
            "rejected": self._rejected,
        }

    def _count(self, status: TaskStatus) -> int:
        return sum(1 for r in self._records.values() if r.status == status)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [
            task_id
            for task_id, record in self._records.items()
            if record.finished_at is not None
            and now - record.finished_at > self.result_retention_seconds
        ]
        for task_id in expired:
            del self._records[task_id]
        if expired:
            logger.debug(f"Evicted {len(expired)} finished task records")
