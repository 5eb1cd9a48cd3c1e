"""
Background task queue driving print photo generation.

This module manages the lifecycle of queued print tasks:
- Task submission with one live task per source key
- Priority-ordered, FIFO-stable dispatch to a bounded worker pool
- Retry with backoff and terminal failure after the attempt budget
- Reconciliation of tasks stranded in processing by a dead worker
- Retention-based cleanup of finished tasks

The PrintJobQueue is constructed once at application start and handed to
every caller that needs to enqueue or inspect work.
"""

from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from threading import Event, Lock
from typing import Any, Callable, Dict, List, Optional

from .errors import is_retryable
from .models import PRINT_PHOTO_TASK, EnqueueResult, PrintTaskSpec, TaskDetail, TaskStatus, TaskSummary
from .processor import PrintJobProcessor
from .retry import DelayStrategy, RetryPolicy
from .task_store import TaskDatabase

logger = logging.getLogger(__name__)

TaskHandler = Callable[[TaskDetail], Any]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UnknownTaskType(Exception):
    """No handler is registered for a task's type."""

    retryable = False


class TaskConflict(Exception):
    """The requested transition is not allowed in the task's current state."""


def print_photo_handler(processor: PrintJobProcessor) -> TaskHandler:
    """Adapt a PrintJobProcessor to the queue's handler signature."""

    def handle(task: TaskDetail) -> Any:
        return processor.process(task.storage_key, task.location_name)

    return handle


class PrintJobQueue:
    """
    Durable, priority-ordered, retrying task scheduler.

    Thread Safety:
        Claims and status transitions are atomic in the task database, so
        any number of workers (threads or processes sharing the database)
        may call ``dispatch`` concurrently without double-processing a task.

    Attributes:
        store: SQLite-backed task persistence
        max_workers: Number of worker threads started by ``start``
        default_priority: Priority for submissions that do not name one
        default_max_attempts: Attempt budget for submissions that do not name one
        backoff: Delay policy between attempts of the same task
        stale_timeout: Seconds after which a processing task is presumed abandoned
        retention: Seconds to keep finished tasks before purging them
    """

    def __init__(
        self,
        store: TaskDatabase,
        handlers: Optional[Dict[str, TaskHandler]] = None,
        *,
        max_workers: int = 2,
        default_priority: int = 0,
        default_max_attempts: int = 3,
        backoff: Optional[RetryPolicy] = None,
        stale_timeout: float = 600.0,
        retention: Optional[float] = 7 * 24 * 3600.0,
        poll_interval: float = 1.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize the queue.

        Args:
            store: Task database shared by all workers
            handlers: Map of task type to the callable that performs it
            max_workers: Number of concurrent task executions (default: 2)
            default_priority: Priority used when a submission names none
            default_max_attempts: Attempt budget used when a submission names none
            backoff: Delay policy between attempts (default: exponential from 2s)
            stale_timeout: Seconds before a processing task is reclaimed
            retention: Seconds to keep finished tasks; None keeps them forever
            poll_interval: Seconds an idle worker sleeps before polling again
            sweep_interval: Seconds between stale/retention sweeps
            clock: Source of the current time (UTC)
        """
        self.store = store
        self._handlers: Dict[str, TaskHandler] = dict(handlers or {})
        self.max_workers = max(1, max_workers)
        self.default_priority = default_priority
        self.default_max_attempts = max(1, default_max_attempts)
        self.backoff = backoff or RetryPolicy(delay_strategy=DelayStrategy.EXPONENTIAL, delay=2.0, max_delay=300.0)
        self.stale_timeout = stale_timeout
        self.retention = retention
        self.poll_interval = poll_interval
        self.sweep_interval = sweep_interval
        self._clock = clock

        self._lock = Lock()
        self._stop = Event()
        self._wake = Event()
        self._executor: Optional[ThreadPoolExecutor] = None

    def register_handler(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    # Submission and inspection

    def add_task(
        self,
        spec: PrintTaskSpec,
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> EnqueueResult:
        """
        Queue a task, or return the live task already queued for its key.

        Args:
            spec: What to process
            priority: Higher runs first (default: queue default)
            max_attempts: Attempt budget (default: queue default)

        Returns:
            EnqueueResult with the task and whether it was newly created
        """
        data, created = self.store.insert_task(
            task_type=spec.type,
            storage_key=spec.storage_key,
            photo_id=spec.photo_id,
            location_name=spec.location_name,
            priority=self.default_priority if priority is None else priority,
            max_attempts=self.default_max_attempts if max_attempts is None else max(1, max_attempts),
            now=self._clock(),
        )
        task = TaskDetail(**data)
        if created:
            logger.info(f"Queued {task.type} task {task.id} for {task.storage_key} (priority {task.priority})")
            self._wake.set()
        else:
            logger.info(f"Task for {task.storage_key} already {task.status.value} as {task.id}; not queued again")
        return EnqueueResult(task=task, created=created)

    def get_task(self, task_id: str) -> Optional[TaskDetail]:
        data = self.store.get_task(task_id)
        return TaskDetail(**data) if data else None

    def find_live_task(self, storage_key: str) -> Optional[TaskDetail]:
        data = self.store.find_live_task(storage_key)
        return TaskDetail(**data) if data else None

    def find_latest_task(self, storage_key: str) -> Optional[TaskDetail]:
        data = self.store.find_latest_task(storage_key)
        return TaskDetail(**data) if data else None

    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[TaskSummary]:
        return [TaskSummary(**data) for data in self.store.list_tasks(status)]

    def retry_task(self, task_id: str) -> TaskDetail:
        """
        Manually give a failed task a fresh attempt budget.

        Raises:
            KeyError: Unknown task
            TaskConflict: Task is not failed, or its key already has a live task
        """
        current = self.store.get_task(task_id)
        if current is None:
            raise KeyError(task_id)
        try:
            data = self.store.requeue_failed(task_id, self._clock())
        except sqlite3.IntegrityError as exc:
            raise TaskConflict(f"Another live task exists for {current['storage_key']}") from exc
        if data is None:
            raise TaskConflict(f"Task {task_id} is {current['status']}, only failed tasks can be retried")
        logger.info(f"Task {task_id} re-queued manually")
        self._wake.set()
        return TaskDetail(**data)

    # Execution

    def dispatch(self) -> Optional[TaskDetail]:
        """
        Claim and run the next available task in the calling thread.

        Returns:
            The task in its post-run state, or None when nothing is available
        """
        claimed = self.store.claim_next(self._clock())
        if claimed is None:
            return None

        token = claimed["claim_token"]
        task = TaskDetail(**claimed)
        logger.info(f"Processing {task.type} task {task.id} for {task.storage_key} (attempt {task.attempts + 1}/{task.max_attempts})")

        try:
            handler = self._handlers.get(task.type)
            if handler is None:
                raise UnknownTaskType(f"No handler registered for task type {task.type!r}")
            handler(task)
        except Exception as exc:
            return self._handle_failure(task, token, exc)

        if not self.store.mark_completed(task.id, token, self._clock()):
            logger.warning(f"Task {task.id} finished after its claim was revoked; result kept, state unchanged")
        else:
            logger.info(f"Task {task.id} completed")
        return self.get_task(task.id)

    def _handle_failure(self, task: TaskDetail, token: str, exc: Exception) -> Optional[TaskDetail]:
        retryable = is_retryable(exc)
        error = f"{type(exc).__name__}: {exc}"
        data = self.store.record_failure(task.id, token, error, self._clock(), retryable, self.backoff.delay_for)
        if data is None:
            logger.warning(f"Task {task.id} failed after its claim was revoked: {error}")
            return self.get_task(task.id)

        updated = TaskDetail(**data)
        if updated.status is TaskStatus.FAILED:
            reason = "not retryable" if not retryable else f"{updated.attempts}/{updated.max_attempts} attempts used"
            logger.error(f"Task {task.id} for {task.storage_key} failed permanently ({reason}): {error}")
        else:
            logger.warning(
                f"Task {task.id} attempt {updated.attempts}/{updated.max_attempts} failed: {error}; "
                f"retrying after {updated.available_at.isoformat()}"
            )
        return updated

    def reconcile_stale(self, timeout: Optional[float] = None) -> List[TaskDetail]:
        """
        Return tasks stranded in processing to pending (or failed).

        Args:
            timeout: Age in seconds after which a processing task is stale
                (default: the queue's ``stale_timeout``)
        """
        now = self._clock()
        cutoff = now - timedelta(seconds=self.stale_timeout if timeout is None else timeout)
        reset = [TaskDetail(**data) for data in self.store.reset_stale(cutoff, now, self.backoff.delay_for)]
        for task in reset:
            logger.warning(f"Reclaimed stale task {task.id} for {task.storage_key}; now {task.status.value}")
        if reset:
            self._wake.set()
        return reset

    def purge_finished(self, retention: Optional[float] = None) -> int:
        """Delete finished tasks older than the retention window."""
        retention = self.retention if retention is None else retention
        if retention is None:
            return 0
        removed = self.store.purge_finished(self._clock() - timedelta(seconds=retention))
        if removed:
            logger.info(f"Purged {removed} finished task(s)")
        return removed

    # Worker pool

    @property
    def running(self) -> bool:
        return self._executor is not None

    def start(self) -> None:
        """Start the worker threads and the housekeeping loop."""
        with self._lock:
            if self._executor is not None:
                return
            self._stop.clear()
            self.reconcile_stale()
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers + 1, thread_name_prefix="print-queue")
            for index in range(self.max_workers):
                self._executor.submit(self._worker_loop, index)
            self._executor.submit(self._housekeeping_loop)
        logger.info(f"Print queue started with {self.max_workers} worker(s)")

    def stop(self, wait: bool = True) -> None:
        """Signal workers to stop after their current task."""
        with self._lock:
            executor, self._executor = self._executor, None
            if executor is None:
                return
            self._stop.set()
            self._wake.set()
        executor.shutdown(wait=wait)
        logger.info("Print queue stopped")

    def _worker_loop(self, index: int) -> None:
        while not self._stop.is_set():
            try:
                task = self.dispatch()
            except Exception as exc:  # noqa: BLE001
                # Store errors (locked database, disk full) must not kill the worker.
                logger.error(f"Worker {index} dispatch error: {exc}")
                task = None
            if task is None:
                self._wake.wait(self.poll_interval)
                self._wake.clear()

    def _housekeeping_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.reconcile_stale()
                self.purge_finished()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Queue housekeeping failed: {exc}")


def build_handlers(processor: PrintJobProcessor) -> Dict[str, TaskHandler]:
    return {PRINT_PHOTO_TASK: print_photo_handler(processor)}
