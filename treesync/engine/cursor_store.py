from __future__ import annotations

from typing import Optional

from . import paths
from .db import get_conn
from .models import Cursor, now_iso


class CursorStore:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def get(self, root_path: str) -> Optional[Cursor]:
        conn = get_conn(self.db_path)
        try:
            row = conn.execute("SELECT * FROM cursors WHERE root_path=?", (paths.path_key(root_path),)).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return Cursor(
            root_path=row["root_path"],
            opaque_cursor=row["opaque_cursor"],
            has_more=bool(row["has_more"]),
            updated_at=row["updated_at"],
        )

    def save(self, root_path: str, opaque_cursor: str, has_more: bool = False) -> Cursor:
        cursor = Cursor(
            root_path=paths.path_key(root_path),
            opaque_cursor=opaque_cursor,
            has_more=bool(has_more),
            updated_at=now_iso(),
        )
        conn = get_conn(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO cursors(root_path, opaque_cursor, has_more, updated_at) VALUES(?,?,?,?)
                ON CONFLICT(root_path) DO UPDATE SET
                  opaque_cursor=excluded.opaque_cursor,
                  has_more=excluded.has_more,
                  updated_at=excluded.updated_at
                """,
                (cursor.root_path, cursor.opaque_cursor, int(cursor.has_more), cursor.updated_at),
            )
        finally:
            conn.close()
        return cursor

    def clear(self, root_path: str) -> None:
        conn = get_conn(self.db_path)
        try:
            conn.execute("DELETE FROM cursors WHERE root_path=?", (paths.path_key(root_path),))
        finally:
            conn.close()
