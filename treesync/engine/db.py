import sqlite3
from contextlib import contextmanager
from pathlib import Path

from .errors import SchemaMissingError

BUSY_TIMEOUT_SEC = 30


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    # Autocommit; multi-statement work goes through transaction().
    conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT_SEC, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_SEC * 1000}")
    return conn


@contextmanager
def transaction(db_path: str, immediate: bool = False):
    """Yield a connection inside BEGIN (or BEGIN IMMEDIATE) and commit on exit.

    A missing table surfaces as SchemaMissingError so workers can stop instead
    of retrying forever against an uninitialized database.
    """
    conn = get_conn(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    except sqlite3.OperationalError as e:
        if "no such table" in str(e):
            raise SchemaMissingError(str(e)) from e
        raise
    finally:
        conn.close()


def init_db(db_path: str):
    conn = get_conn(db_path)
    cur = conn.cursor()
    cur.execute("PRAGMA journal_mode=WAL")

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS folder_mappings (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          local_folder_id TEXT NOT NULL UNIQUE,
          remote_path TEXT NOT NULL,
          path_lower TEXT NOT NULL,
          path_hash TEXT NOT NULL UNIQUE,
          fingerprint TEXT,
          last_synced_at TEXT
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS file_mappings (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          local_file_id TEXT NOT NULL UNIQUE,
          remote_path TEXT NOT NULL,
          path_lower TEXT NOT NULL,
          path_hash TEXT NOT NULL UNIQUE,
          remote_object_id TEXT UNIQUE,
          content_fingerprint TEXT,
          size INTEGER DEFAULT 0,
          last_synced_at TEXT
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_tasks (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          action TEXT NOT NULL,
          target_type TEXT NOT NULL,
          target_id TEXT NOT NULL,
          direction TEXT NOT NULL,
          payload TEXT,
          priority INTEGER NOT NULL DEFAULT 10,
          status TEXT NOT NULL DEFAULT 'pending',
          attempts INTEGER NOT NULL DEFAULT 0,
          error TEXT DEFAULT '',
          worker_id INTEGER NOT NULL DEFAULT 0,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS cursors (
          root_path TEXT PRIMARY KEY,
          opaque_cursor TEXT NOT NULL,
          has_more INTEGER NOT NULL DEFAULT 0,
          updated_at TEXT NOT NULL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS leases (
          scope TEXT PRIMARY KEY,
          owner TEXT NOT NULL,
          acquired_at REAL NOT NULL,
          ttl INTEGER NOT NULL
        )
        """
    )

    # At most one pending row per task key; enqueue upserts against this index.
    cur.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_tasks_pending
        ON sync_tasks(action, target_type, target_id, direction)
        WHERE status = 'pending'
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_sync_tasks_pick ON sync_tasks(status, priority, created_at)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_folder_mappings_path ON folder_mappings(path_lower)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_file_mappings_path ON file_mappings(path_lower)")

    conn.close()
