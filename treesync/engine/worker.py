from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from .errors import (
    FatalSyncError,
    MappingMissingError,
    PermanentError,
    UnknownTaskError,
)
from .lease import LeaseManager, scope_for
from .models import Task
from .task_queue import TaskQueue

logger = logging.getLogger("treesync.worker")


class TaskHandler(Protocol):
    def handle(self, task: Task) -> Optional[dict]: ...


class WorkerRunResult(BaseModel):
    worker_id: int
    status: str  # busy | idle | drained | fatal
    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    next_run_in_sec: float = 0
    error: Optional[str] = None
    started_at: float = Field(default_factory=time.time)
    finished_at: Optional[float] = None


class WorkerLoop:
    """One bounded worker cycle: lease, drain a batch, dispatch, release.

    The caller reschedules after `next_run_in_sec`.
    """

    def __init__(
        self,
        queue: TaskQueue,
        leases: LeaseManager,
        handlers: dict[tuple[str, str], TaskHandler],
        batch_size: int = 10,
        lease_ttl_sec: int = 300,
        idle_delay_sec: float = 30,
        completed_retention: timedelta = timedelta(days=7),
    ):
        self.queue = queue
        self.leases = leases
        self.handlers = handlers
        self.batch_size = batch_size
        self.lease_ttl_sec = lease_ttl_sec
        self.idle_delay_sec = idle_delay_sec
        self.completed_retention = completed_retention

    def run(self, worker_id: int = 0) -> WorkerRunResult:
        scope = scope_for(worker_id)
        result = WorkerRunResult(worker_id=worker_id, status="busy", next_run_in_sec=self.idle_delay_sec)
        if not self.leases.try_acquire(scope, self.lease_ttl_sec):
            logger.info("worker_lease_busy worker=%s scope=%s", worker_id, scope)
            result.finished_at = time.time()
            return result

        try:
            self.queue.requeue_stuck(timedelta(seconds=self.lease_ttl_sec))
            tasks = self.queue.dequeue(self.batch_size, worker_id)
            if not tasks:
                result.status = "idle"
                return result

            result.status = "drained"
            reschedule_now = len(tasks) >= self.batch_size
            for task in tasks:
                outcome = self._run_task(task, result)
                if outcome == "fatal":
                    result.status = "fatal"
                    break
                if outcome == "completed" and task.target_type == "system" and task.action == "full_sync":
                    reschedule_now = True

            if result.status != "fatal":
                result.next_run_in_sec = 0 if reschedule_now else self.idle_delay_sec
                self.queue.purge_completed(self.completed_retention)
            return result
        finally:
            self.leases.release(scope)
            result.finished_at = time.time()
            logger.info(
                "worker_cycle_finished worker=%s status=%s processed=%s completed=%s retried=%s failed=%s next_run_in_sec=%s",
                worker_id, result.status, result.processed, result.completed,
                result.retried, result.failed, result.next_run_in_sec,
            )

    def _run_task(self, task: Task, result: WorkerRunResult) -> str:
        if not self.queue.mark_processing(task.id):
            result.skipped += 1
            return "skipped"
        result.processed += 1

        handler = self.handlers.get((task.target_type, task.action))
        try:
            if handler is None:
                raise UnknownTaskError(f"no_handler: {task.target_type}/{task.action}")
            detail = handler.handle(task)
        except FatalSyncError as e:
            self.queue.release_to_pending(task.id, f"fatal: {e}")
            result.error = f"{type(e).__name__}: {e}"
            logger.error("worker_fatal task=%s error=%s", task.id, e)
            return "fatal"
        except MappingMissingError as e:
            self.queue.mark_completed(task.id, f"noop: {e}")
            result.completed += 1
            logger.info("task_noop id=%s reason=%s", task.id, e)
            return "completed"
        except PermanentError as e:
            self.queue.mark_failed(task.id, f"{type(e).__name__}: {e}")
            result.failed += 1
            return "failed"
        except Exception as e:
            # Transient errors and anything unexpected share the retry budget.
            message = f"{type(e).__name__}: {e}"
            if self.queue.mark_retry(task.id, message):
                result.retried += 1
                logger.warning("task_retry id=%s attempt=%s error=%s", task.id, task.attempts + 1, message)
                return "retried"
            self.queue.mark_failed(task.id, message)
            result.failed += 1
            return "failed"

        self.queue.mark_completed(task.id)
        result.completed += 1
        logger.info(
            "task_completed id=%s action=%s type=%s direction=%s detail=%s",
            task.id, task.action, task.target_type, task.direction, detail,
        )
        return "completed"
