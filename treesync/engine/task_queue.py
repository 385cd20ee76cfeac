from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from .db import get_conn, transaction
from .errors import TaskValidationError
from .models import ACTIONS, DIRECTIONS, STATUSES, TARGET_TYPES, Priority, Task, now_iso

logger = logging.getLogger("treesync.queue")

DEFAULT_PRIORITY = {
    "system": Priority.SYSTEM,
    "folder": Priority.FOLDER,
    "file": Priority.FILE,
}


def _cutoff(older_than: timedelta) -> str:
    return (datetime.now(timezone.utc) - older_than).isoformat(timespec="microseconds")


class TaskQueue:
    """Durable priority queue of sync tasks backed by the `sync_tasks` table.

    Pending rows are unique per (action, target_type, target_id, direction):
    enqueueing an existing pending key rewrites its payload and priority and
    resets its attempts instead of adding a row. Every status transition is a
    single statement or a single IMMEDIATE transaction, so several workers can
    share one database file.
    """

    def __init__(self, db_path: str, max_retries: int = 3):
        self.db_path = db_path
        self.max_retries = max_retries

    def enqueue(
        self,
        action: str,
        target_type: str,
        target_id: str,
        direction: str,
        payload: Optional[dict[str, Any]] = None,
        priority: Optional[int] = None,
        worker_id: int = 0,
    ) -> int:
        if action not in ACTIONS:
            raise TaskValidationError(f"unknown_action: {action}")
        if target_type not in TARGET_TYPES:
            raise TaskValidationError(f"unknown_target_type: {target_type}")
        if direction not in DIRECTIONS:
            raise TaskValidationError(f"unknown_direction: {direction}")
        if target_id is None or str(target_id) == "":
            raise TaskValidationError("target_id_missing")
        if priority is None:
            priority = DEFAULT_PRIORITY[target_type]

        stamp = now_iso()
        conn = get_conn(self.db_path)
        try:
            row = conn.execute(
                """
                INSERT INTO sync_tasks(
                  action, target_type, target_id, direction, payload, priority,
                  status, attempts, error, worker_id, created_at, updated_at
                ) VALUES(?,?,?,?,?,?,'pending',0,'',?,?,?)
                ON CONFLICT(action, target_type, target_id, direction) WHERE status = 'pending'
                DO UPDATE SET
                  payload=excluded.payload,
                  priority=excluded.priority,
                  attempts=0,
                  error='',
                  worker_id=excluded.worker_id,
                  updated_at=excluded.updated_at
                RETURNING id
                """,
                (
                    action,
                    target_type,
                    str(target_id),
                    direction,
                    json.dumps(payload or {}, ensure_ascii=False),
                    int(priority),
                    int(worker_id),
                    stamp,
                    stamp,
                ),
            ).fetchone()
        finally:
            conn.close()
        task_id = int(row[0])
        logger.debug(
            "task_enqueued id=%s action=%s type=%s target=%s direction=%s priority=%s",
            task_id, action, target_type, target_id, direction, priority,
        )
        return task_id

    def get(self, task_id: int) -> Optional[Task]:
        conn = get_conn(self.db_path)
        try:
            row = conn.execute("SELECT * FROM sync_tasks WHERE id=?", (task_id,)).fetchone()
        finally:
            conn.close()
        return Task.from_row(row) if row else None

    def dequeue(self, limit: int, worker_id: int = 0) -> list[Task]:
        """Return up to `limit` runnable pending tasks, highest priority first.

        Worker 0 is the global worker and sees every task; worker N sees tasks
        pinned to it plus unpinned ones.
        """
        sql = "SELECT * FROM sync_tasks WHERE status='pending' AND attempts < ?"
        params: list[Any] = [self.max_retries]
        if worker_id:
            sql += " AND (worker_id=0 OR worker_id=?)"
            params.append(int(worker_id))
        sql += " ORDER BY priority ASC, created_at ASC, id ASC LIMIT ?"
        params.append(int(limit))

        conn = get_conn(self.db_path)
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [Task.from_row(r) for r in rows]

    def mark_processing(self, task_id: int) -> bool:
        conn = get_conn(self.db_path)
        try:
            cur = conn.execute(
                "UPDATE sync_tasks SET status='processing', attempts=attempts+1, updated_at=? "
                "WHERE id=? AND status='pending'",
                (now_iso(), task_id),
            )
            return cur.rowcount == 1
        finally:
            conn.close()

    def mark_completed(self, task_id: int, note: Optional[str] = None) -> None:
        self._set_status(task_id, "completed", note or "")

    def mark_failed(self, task_id: int, error: str) -> None:
        self._set_status(task_id, "failed", error)
        logger.warning("task_failed id=%s error=%s", task_id, error)

    def _set_status(self, task_id: int, status: str, error: str) -> None:
        conn = get_conn(self.db_path)
        try:
            conn.execute(
                "UPDATE sync_tasks SET status=?, error=?, updated_at=? WHERE id=?",
                (status, error, now_iso(), task_id),
            )
        finally:
            conn.close()

    def mark_retry(self, task_id: int, error: str) -> bool:
        """Return the task to pending while it has attempts left.

        Returns False when retries are exhausted; the caller then fails it.
        A newer pending task with the same key supersedes this one.
        """
        with transaction(self.db_path, immediate=True) as conn:
            row = conn.execute("SELECT * FROM sync_tasks WHERE id=?", (task_id,)).fetchone()
            if not row:
                return False
            if row["attempts"] >= self.max_retries:
                return False
            newer = conn.execute(
                """
                SELECT id FROM sync_tasks
                WHERE status='pending' AND action=? AND target_type=? AND target_id=? AND direction=? AND id<>?
                """,
                (row["action"], row["target_type"], row["target_id"], row["direction"], task_id),
            ).fetchone()
            if newer:
                conn.execute(
                    "UPDATE sync_tasks SET status='completed', error=?, updated_at=? WHERE id=?",
                    (f"superseded by task {newer['id']}", now_iso(), task_id),
                )
                return True
            conn.execute(
                "UPDATE sync_tasks SET status='pending', error=?, updated_at=? WHERE id=?",
                (error, now_iso(), task_id),
            )
        return True

    def reset_failed(self, task_id: Optional[int] = None) -> int:
        """Move failed tasks back to pending with a fresh attempt budget."""
        sql = "SELECT * FROM sync_tasks WHERE status='failed'"
        params: tuple = ()
        if task_id is not None:
            sql += " AND id=?"
            params = (task_id,)
        reset = 0
        with transaction(self.db_path, immediate=True) as conn:
            for row in conn.execute(sql, params).fetchall():
                if self._has_pending_twin(conn, row):
                    continue
                conn.execute(
                    "UPDATE sync_tasks SET status='pending', attempts=0, error='', updated_at=? WHERE id=?",
                    (now_iso(), row["id"]),
                )
                reset += 1
        if reset:
            logger.info("failed_tasks_reset count=%s", reset)
        return reset

    def requeue_stuck(self, older_than: timedelta) -> int:
        """Return rows left in `processing` by a crashed worker to pending.

        A row that was on its last allowed attempt is failed instead.
        """
        requeued = 0
        exhausted = 0
        with transaction(self.db_path, immediate=True) as conn:
            rows = conn.execute(
                "SELECT * FROM sync_tasks WHERE status='processing' AND updated_at < ?",
                (_cutoff(older_than),),
            ).fetchall()
            for row in rows:
                if self._has_pending_twin(conn, row):
                    conn.execute(
                        "UPDATE sync_tasks SET status='completed', error=?, updated_at=? WHERE id=?",
                        ("superseded while stuck", now_iso(), row["id"]),
                    )
                    continue
                if row["attempts"] >= self.max_retries:
                    conn.execute(
                        "UPDATE sync_tasks SET status='failed', error=?, updated_at=? WHERE id=?",
                        ("stuck_in_processing: retries exhausted", now_iso(), row["id"]),
                    )
                    exhausted += 1
                    continue
                conn.execute(
                    "UPDATE sync_tasks SET status='pending', error='stuck_in_processing', updated_at=? WHERE id=?",
                    (now_iso(), row["id"]),
                )
                requeued += 1
        if requeued:
            logger.warning("stuck_tasks_requeued count=%s", requeued)
        if exhausted:
            logger.warning("stuck_tasks_failed count=%s", exhausted)
        return requeued

    def release_to_pending(self, task_id: int, error: str = "") -> bool:
        """Undo a claim without spending an attempt, for cycles cut short by
        a condition that is not the task's fault."""
        with transaction(self.db_path, immediate=True) as conn:
            row = conn.execute("SELECT * FROM sync_tasks WHERE id=? AND status='processing'", (task_id,)).fetchone()
            if not row:
                return False
            if self._has_pending_twin(conn, row):
                conn.execute(
                    "UPDATE sync_tasks SET status='completed', error=?, updated_at=? WHERE id=?",
                    ("superseded while released", now_iso(), task_id),
                )
                return True
            conn.execute(
                "UPDATE sync_tasks SET status='pending', attempts=MAX(attempts-1, 0), error=?, updated_at=? "
                "WHERE id=?",
                (error, now_iso(), task_id),
            )
        return True

    @staticmethod
    def _has_pending_twin(conn, row) -> bool:
        twin = conn.execute(
            """
            SELECT 1 FROM sync_tasks
            WHERE status='pending' AND action=? AND target_type=? AND target_id=? AND direction=? AND id<>?
            """,
            (row["action"], row["target_type"], row["target_id"], row["direction"], row["id"]),
        ).fetchone()
        return twin is not None

    def purge_completed(self, older_than: timedelta) -> int:
        return self._purge("completed", older_than)

    def purge_failed(self, older_than: timedelta) -> int:
        return self._purge("failed", older_than)

    def _purge(self, status: str, older_than: timedelta) -> int:
        conn = get_conn(self.db_path)
        try:
            cur = conn.execute(
                "DELETE FROM sync_tasks WHERE status=? AND updated_at < ?",
                (status, _cutoff(older_than)),
            )
            purged = cur.rowcount
        finally:
            conn.close()
        if purged:
            logger.info("tasks_purged status=%s count=%s", status, purged)
        return purged

    def list_failed(self, limit: int = 50) -> list[Task]:
        conn = get_conn(self.db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM sync_tasks WHERE status='failed' ORDER BY updated_at DESC, id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        finally:
            conn.close()
        return [Task.from_row(r) for r in rows]

    def stats(self) -> dict[str, int]:
        conn = get_conn(self.db_path)
        try:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM sync_tasks GROUP BY status").fetchall()
        finally:
            conn.close()
        out = {status: 0 for status in STATUSES}
        for row in rows:
            out[row["status"]] = int(row["n"])
        out["total"] = sum(out[s] for s in STATUSES)
        return out
