from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Callable, Generic, Literal, Sequence, TypeVar

from batchllm.utils.error_taxonomy import TaskCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TaskState = Literal["pending", "running", "done"]
CancelCallback = Callable[[], None]


class StopLevel(IntEnum):
    RUNNING = 0
    SOFT_STOP = 1
    HARD_STOP = 2


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TaskCancelledError(self._reason or "cancelled")


@dataclass(slots=True)
class Task:
    task_id: str
    input_id: str
    source_path: Path
    sample_index: int
    total_samples: int
    state: TaskState = "pending"
    cancel_token: CancelToken = field(default_factory=CancelToken)
    started_at: float | None = None
    finished_at: float | None = None


class RunController:
    """Owns the stop level and the task registry of a single run.

    The stop level only moves forward: RUNNING -> SOFT_STOP -> HARD_STOP.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._stop_level = StopLevel.RUNNING
        self._reason: str | None = None
        self._stopped_at: float | None = None
        self._tasks: dict[str, Task] = {}
        self._cancel_callbacks: dict[str, CancelCallback] = {}

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def stop_level(self) -> StopLevel:
        with self._lock:
            return self._stop_level

    @property
    def reason(self) -> str | None:
        with self._lock:
            return self._reason

    @property
    def stopped_at(self) -> float | None:
        with self._lock:
            return self._stopped_at

    @property
    def is_stopped(self) -> bool:
        return self.stop_level >= StopLevel.SOFT_STOP

    @property
    def is_hard_stopped(self) -> bool:
        return self.stop_level >= StopLevel.HARD_STOP

    def soft_stop(self, reason: str = "soft stop requested") -> None:
        self._escalate(StopLevel.SOFT_STOP, reason)

    def hard_stop(self, reason: str = "hard stop requested") -> None:
        self._escalate(StopLevel.HARD_STOP, reason)

        with self._lock:
            running = [task for task in self._tasks.values() if task.state == "running"]
            for task in running:
                task.cancel_token.cancel(reason)
            callbacks = [
                self._cancel_callbacks[task.task_id]
                for task in running
                if task.task_id in self._cancel_callbacks
            ]

        for callback in callbacks:
            _run_cancel_callback(callback)

    def register_task(self, task: Task) -> None:
        with self._lock:
            if task.task_id in self._tasks:
                raise ValueError(f"Task already registered: {task.task_id}")
            self._tasks[task.task_id] = task

    def update_task(self, task_id: str, state: TaskState) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise KeyError(f"Unknown task: {task_id}")
            if state == "running":
                task.started_at = self._clock()
            elif state == "done":
                task.finished_at = self._clock()
                self._cancel_callbacks.pop(task_id, None)
            task.state = state
            return task

    def release_task(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)
            self._cancel_callbacks.pop(task_id, None)

    def register_cancel_callback(self, task_id: str, callback: CancelCallback) -> None:
        """Register the abort hook of a running task.

        A task whose token already fired gets its callback invoked right away,
        so a hook registered during a hard stop is never missed.
        """

        with self._lock:
            self._cancel_callbacks[task_id] = callback
            task = self._tasks.get(task_id)
            cancelled = task is not None and task.cancel_token.cancelled
        if cancelled:
            _run_cancel_callback(callback)

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            return self._tasks.get(task_id)

    def tasks(self, state: TaskState | None = None) -> list[Task]:
        with self._lock:
            return [
                task
                for task in self._tasks.values()
                if state is None or task.state == state
            ]

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            counts = {"pending": 0, "running": 0, "done": 0}
            for task in self._tasks.values():
                counts[task.state] += 1
            return {
                "stop_level": int(self._stop_level),
                "reason": self._reason,
                "stopped_at": self._stopped_at,
                "tasks": counts,
            }

    def _escalate(self, level: StopLevel, reason: str) -> None:
        with self._lock:
            if level <= self._stop_level:
                return
            self._stop_level = level
            self._reason = reason
            if self._stopped_at is None:
                self._stopped_at = self._clock()
        logger.warning("Run stop requested", extra={"metrics": {"level": int(level), "reason": reason}})


@dataclass(frozen=True, slots=True)
class TaskOutcome(Generic[T]):
    task: Task
    value: T | None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class SchedulerReport(Generic[T]):
    outcomes: dict[str, TaskOutcome[T]]
    abandoned: list[Task]


class TaskScheduler:
    """Run a flat task list on a fixed pool of worker threads.

    Workers share one cursor. Claiming the next task and checking the stop
    level happen under the controller lock, so a stopped run never starts
    another task and no task is dispatched twice.
    """

    def __init__(self, *, controller: RunController, max_workers: int) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._controller = controller
        self._max_workers = max_workers
        self._cursor = 0
        self._tasks: Sequence[Task] = ()

    def run(
        self,
        tasks: Sequence[Task],
        handler: Callable[[Task], T],
    ) -> SchedulerReport[T]:
        self._tasks = list(tasks)
        self._cursor = 0
        for task in self._tasks:
            self._controller.register_task(task)

        outcomes: dict[str, TaskOutcome[T]] = {}
        outcomes_lock = threading.Lock()

        def _worker() -> None:
            while True:
                task = self._claim_next()
                if task is None:
                    return
                try:
                    outcome = TaskOutcome(task=task, value=handler(task))
                except Exception as error:  # noqa: BLE001
                    outcome = TaskOutcome(task=task, value=None, error=error)
                finally:
                    self._controller.update_task(task.task_id, "done")
                with outcomes_lock:
                    outcomes[task.task_id] = outcome

        worker_count = min(self._max_workers, len(self._tasks)) or 0
        threads = [
            threading.Thread(target=_worker, name=f"batchllm-worker-{index}", daemon=True)
            for index in range(worker_count)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        abandoned = [task for task in self._tasks if task.state == "pending"]
        if abandoned:
            logger.warning(
                "Tasks were not started because the run was stopped",
                extra={"metrics": {"abandoned": len(abandoned)}},
            )
        return SchedulerReport(outcomes=outcomes, abandoned=abandoned)

    def _claim_next(self) -> Task | None:
        with self._controller.lock:
            if self._controller.is_stopped or self._cursor >= len(self._tasks):
                return None
            task = self._tasks[self._cursor]
            self._cursor += 1
            self._controller.update_task(task.task_id, "running")
            return task


def _run_cancel_callback(callback: CancelCallback) -> None:
    try:
        callback()
    except Exception:  # noqa: BLE001
        logger.exception("Cancel callback failed")


def call_with_cancel(
    operation: Callable[[], T],
    token: CancelToken,
    *,
    poll_seconds: float = 0.05,
    name: str = "batchllm-call",
) -> T:
    """Run ``operation`` on a helper thread, giving up as soon as ``token`` fires.

    The abandoned helper thread is a daemon; its late result is discarded.
    """

    token.raise_if_cancelled()

    queue: Queue[tuple[str, Any]] = Queue(maxsize=1)

    def _target() -> None:
        try:
            queue.put(("result", operation()))
        except Exception as error:  # noqa: BLE001
            queue.put(("error", error))

    thread = threading.Thread(target=_target, name=name, daemon=True)
    thread.start()

    while True:
        try:
            kind, payload = queue.get(timeout=poll_seconds)
        except Empty:
            token.raise_if_cancelled()
            continue

        if kind == "error":
            raise payload
        return payload
