"""
Background task runner - In-process work queue with bounded retries.

Long-running side effects of a registration (face enrollment, OTP
delivery) are executed here, out of the request path. Each task kind has
a retry policy:

    Kind               Max attempts   Base delay   Multiplier
    face_enrollment    3              2.0s         2x
    notification_send  5              1.0s         2x

The delay after attempt n is base * multiplier ** (n - 1). Any handler
exception is retried except ExternalServiceConflict, which is a semantic
rejection and fails the task immediately. When a task is exhausted the
kind's terminal-failure hook runs and the task is kept in dead_letters.

Delivery is at-least-once: a retry re-runs the whole handler body, so
handlers must tolerate re-execution.

Maintenance jobs such as the stale-draft sweep run on their own timer
thread via schedule_periodic() and stop with the runner.
"""

import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import ExternalServiceConflict

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], None]
FailureHook = Callable[[dict[str, Any], str], None]


class TaskKind(str, Enum):
    FACE_ENROLLMENT = "face_enrollment"
    NOTIFICATION = "notification_send"


class TaskState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class TaskPolicy:
    """Retry policy for one task kind."""

    max_attempts: int
    base_delay: float
    multiplier: float = 2.0

    def delay_after(self, attempt: int) -> float:
        """Backoff delay (seconds) after the given 1-based attempt."""
        return self.base_delay * self.multiplier ** (attempt - 1)


DEFAULT_POLICIES: dict[TaskKind, TaskPolicy] = {
    TaskKind.FACE_ENROLLMENT: TaskPolicy(max_attempts=3, base_delay=2.0),
    TaskKind.NOTIFICATION: TaskPolicy(max_attempts=5, base_delay=1.0),
}


@dataclass
class BackgroundTask:
    kind: TaskKind
    payload: dict[str, Any]
    max_attempts: int
    id: UUID = field(default_factory=uuid4)
    attempts: int = 0
    state: TaskState = TaskState.QUEUED
    last_error: str | None = None


class BackgroundTaskRunner:
    """
    Worker pool executing registered task handlers with retry and backoff.

    Lifecycle is explicit: construct, register handlers, start(), and
    close() on shutdown. Tasks enqueued before start() wait in the queue.
    """

    def __init__(
        self,
        policies: dict[TaskKind, TaskPolicy] | None = None,
        workers: int = 2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the runner.

        Args:
            policies: Per-kind overrides of DEFAULT_POLICIES
            workers: Number of worker threads started by start()
            sleep: Backoff sleep function (injectable for tests)
        """
        self._policies = {**DEFAULT_POLICIES, **(policies or {})}
        self._handlers: dict[TaskKind, tuple[Handler, FailureHook | None]] = {}
        self._queue: queue.Queue[BackgroundTask | None] = queue.Queue()
        self._worker_count = workers
        self._threads: list[threading.Thread] = []
        self._sleep = sleep
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._periodic: list[threading.Thread] = []
        self.dead_letters: list[BackgroundTask] = []

    def register(
        self, kind: TaskKind, handler: Handler, on_exhausted: FailureHook | None = None
    ) -> None:
        """Register the handler and terminal-failure hook for a task kind."""
        self._handlers[kind] = (handler, on_exhausted)

    def policy(self, kind: TaskKind) -> TaskPolicy:
        return self._policies[kind]

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._threads = [
            threading.Thread(target=self._work, name=f"task-worker-{i}", daemon=True)
            for i in range(self._worker_count)
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Task runner started with {self._worker_count} worker(s)")

    def schedule_periodic(
        self, interval: float, job: Callable[[], Any], name: str = "periodic"
    ) -> None:
        """
        Run job every interval seconds on a dedicated thread until close().

        A failing run is logged and the next one still happens.
        """
        if interval <= 0:
            raise ValueError("Periodic interval must be positive")
        self._stopping.clear()

        def loop() -> None:
            while not self._stopping.wait(interval):
                try:
                    job()
                except Exception:
                    logger.exception(f"Periodic job {name} failed")

        thread = threading.Thread(target=loop, name=f"task-{name}", daemon=True)
        self._periodic.append(thread)
        thread.start()
        logger.info(f"Scheduled periodic job {name} every {interval:g}s")

    def close(self) -> None:
        """Stop periodic jobs, then the workers after the queue drains."""
        self._stopping.set()
        for thread in self._periodic:
            thread.join()
        self._periodic = []
        for _ in self._threads:
            self._queue.put(None)
        for thread in self._threads:
            thread.join()
        self._threads = []
        logger.info("Task runner stopped")

    def join(self) -> None:
        """Block until every enqueued task has reached a terminal state."""
        self._queue.join()

    def run_pending(self) -> list[BackgroundTask]:
        """
        Run every queued task inline, in the calling thread.

        For maintenance scripts and tests; do not mix with started workers.
        """
        finished = []
        while True:
            try:
                task = self._queue.get_nowait()
            except queue.Empty:
                return finished
            try:
                if task is not None:
                    finished.append(self.run(task))
            finally:
                self._queue.task_done()

    def enqueue(self, kind: TaskKind, payload: dict[str, Any]) -> BackgroundTask:
        """
        Queue a task and return immediately.

        Raises:
            ValueError: If no handler is registered for the kind
        """
        if kind not in self._handlers:
            raise ValueError(f"No handler registered for task kind: {kind.value}")

        task = BackgroundTask(
            kind=kind, payload=payload, max_attempts=self.policy(kind).max_attempts
        )
        self._queue.put(task)
        logger.info(f"Queued {kind.value} task {task.id}")
        return task

    def run(self, task: BackgroundTask) -> BackgroundTask:
        """
        Execute one task to a terminal state in the calling thread.

        Returns:
            The same task, now SUCCEEDED or EXHAUSTED
        """
        handler, on_exhausted = self._handlers[task.kind]
        policy = self.policy(task.kind)

        retrying = Retrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(multiplier=policy.base_delay, exp_base=policy.multiplier),
            retry=retry_if_not_exception_type(ExternalServiceConflict),
            before_sleep=self._log_retry(task),
            sleep=self._sleep,
            reraise=True,
        )

        task.state = TaskState.RUNNING
        try:
            for attempt in retrying:
                with attempt:
                    task.attempts = attempt.retry_state.attempt_number
                    handler(task.payload)
        except Exception as e:
            task.state = TaskState.EXHAUSTED
            task.last_error = str(e) or e.__class__.__name__
            with self._lock:
                self.dead_letters.append(task)
            logger.error(
                f"{task.kind.value} task {task.id} failed after "
                f"{task.attempts} attempt(s): {task.last_error}"
            )
            if on_exhausted is not None:
                on_exhausted(task.payload, task.last_error)
            return task

        task.state = TaskState.SUCCEEDED
        logger.info(f"{task.kind.value} task {task.id} succeeded on attempt {task.attempts}")
        return task

    def _log_retry(self, task: BackgroundTask) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                f"{task.kind.value} task {task.id} attempt "
                f"{retry_state.attempt_number} failed ({error}); retrying in {delay:.1f}s"
            )

        return before_sleep

    def _work(self) -> None:
        while True:
            task = self._queue.get()
            try:
                if task is None:
                    return
                self.run(task)
            except Exception:
                # Only a terminal-failure hook can raise out of run()
                logger.exception(f"Terminal-failure hook raised for task {task.id}")
            finally:
                self._queue.task_done()
