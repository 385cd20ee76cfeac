from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from typing import Callable, Optional

from .db import get_conn, transaction
from .models import Lease

logger = logging.getLogger("treesync.lease")

GLOBAL_SCOPE = "global"
DEFAULT_TTL_SEC = 300


def scope_for(worker_id: int) -> str:
    return GLOBAL_SCOPE if not worker_id else f"worker:{int(worker_id)}"


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LeaseManager:
    """Time-boxed exclusive leases stored in the `leases` table.

    A lease older than its ttl is stale. Breaking a stale lease deletes it
    with a compare-and-delete, waits `grace_sec` so the previous holder can
    notice, then retries the insert once; whoever inserts first owns it.
    """

    def __init__(
        self,
        db_path: str,
        owner: Optional[str] = None,
        grace_sec: float = 1.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db_path = db_path
        self.owner = owner or default_owner()
        self.grace_sec = grace_sec
        self._clock = clock
        self._sleep = sleep

    def try_acquire(self, scope: str, ttl: int = DEFAULT_TTL_SEC) -> bool:
        now = self._clock()
        with transaction(self.db_path, immediate=True) as conn:
            row = conn.execute("SELECT * FROM leases WHERE scope=?", (scope,)).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO leases(scope, owner, acquired_at, ttl) VALUES(?,?,?,?)",
                    (scope, self.owner, now, int(ttl)),
                )
                logger.debug("lease_acquired scope=%s owner=%s", scope, self.owner)
                return True

            current = Lease(scope=row["scope"], owner=row["owner"], acquired_at=row["acquired_at"], ttl=row["ttl"])
            if not current.is_stale(now):
                return False

            cur = conn.execute(
                "DELETE FROM leases WHERE scope=? AND owner=? AND acquired_at=?",
                (scope, current.owner, current.acquired_at),
            )
            broken = cur.rowcount == 1

        if not broken:
            return False

        logger.warning(
            "stale_lease_broken scope=%s previous_owner=%s age_sec=%.1f",
            scope, current.owner, now - current.acquired_at,
        )
        if self.grace_sec > 0:
            self._sleep(self.grace_sec)

        conn = get_conn(self.db_path)
        try:
            cur = conn.execute(
                "INSERT OR IGNORE INTO leases(scope, owner, acquired_at, ttl) VALUES(?,?,?,?)",
                (scope, self.owner, self._clock(), int(ttl)),
            )
            acquired = cur.rowcount == 1
        finally:
            conn.close()
        if acquired:
            logger.info("lease_acquired_after_takeover scope=%s owner=%s", scope, self.owner)
        return acquired

    def release(self, scope: str) -> None:
        conn = get_conn(self.db_path)
        try:
            row = conn.execute("SELECT owner FROM leases WHERE scope=?", (scope,)).fetchone()
            conn.execute("DELETE FROM leases WHERE scope=?", (scope,))
        finally:
            conn.close()
        if row is not None and row["owner"] != self.owner:
            logger.warning("lease_released_foreign scope=%s owner=%s releaser=%s", scope, row["owner"], self.owner)

    def holder(self, scope: str) -> Optional[Lease]:
        conn = get_conn(self.db_path)
        try:
            row = conn.execute("SELECT * FROM leases WHERE scope=?", (scope,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        lease = Lease(scope=row["scope"], owner=row["owner"], acquired_at=row["acquired_at"], ttl=row["ttl"])
        return None if lease.is_stale(self._clock()) else lease
