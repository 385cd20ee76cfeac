from __future__ import annotations

import logging
from typing import Optional

from . import paths
from .db import get_conn, transaction
from .models import ROOT_FOLDER_ID, FileMapping, FolderMapping, now_iso

logger = logging.getLogger("treesync.mapping")


def folder_fingerprint(remote_path: str) -> str:
    return paths.path_hash(f"{paths.path_key(remote_path)}|{now_iso()}")


class MappingStore:
    """Persistent local-id <-> remote-path mappings for folders and files.

    The configured remote root is never stored; it is always resolved from
    the sentinel local id ROOT_FOLDER_ID.
    """

    def __init__(self, db_path: str, remote_root: str):
        self.db_path = db_path
        self.remote_root = paths.normalize(remote_root)

    def _fetch_one(self, sql: str, params: tuple):
        conn = get_conn(self.db_path)
        try:
            return conn.execute(sql, params).fetchone()
        finally:
            conn.close()

    def _fetch_all(self, sql: str, params: tuple = ()):
        conn = get_conn(self.db_path)
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    # -- folders -----------------------------------------------------------

    def is_root_path(self, remote_path: str) -> bool:
        return paths.path_key(remote_path) == paths.path_key(self.remote_root)

    def root_mapping(self) -> FolderMapping:
        return FolderMapping(
            local_folder_id=ROOT_FOLDER_ID,
            remote_path=self.remote_root,
            path_hash=paths.path_hash(self.remote_root),
        )

    def get_folder(self, local_folder_id: str) -> Optional[FolderMapping]:
        if str(local_folder_id) == ROOT_FOLDER_ID:
            return self.root_mapping()
        row = self._fetch_one("SELECT * FROM folder_mappings WHERE local_folder_id=?", (str(local_folder_id),))
        return FolderMapping.from_row(row) if row else None

    def get_folder_by_path(self, remote_path: str) -> Optional[FolderMapping]:
        if self.is_root_path(remote_path):
            return self.root_mapping()
        row = self._fetch_one("SELECT * FROM folder_mappings WHERE path_hash=?", (paths.path_hash(remote_path),))
        return FolderMapping.from_row(row) if row else None

    def upsert_folder(self, local_folder_id: str, remote_path: str, fingerprint: Optional[str] = None) -> FolderMapping:
        local_folder_id = str(local_folder_id)
        norm = paths.normalize(remote_path)
        mapping = FolderMapping(
            local_folder_id=local_folder_id,
            remote_path=norm,
            path_hash=paths.path_hash(norm),
            fingerprint=fingerprint or folder_fingerprint(norm),
            last_synced_at=now_iso(),
        )
        with transaction(self.db_path, immediate=True) as conn:
            conn.execute(
                "DELETE FROM folder_mappings WHERE path_hash=? AND local_folder_id<>?",
                (mapping.path_hash, local_folder_id),
            )
            conn.execute(
                """
                INSERT INTO folder_mappings(local_folder_id, remote_path, path_lower, path_hash, fingerprint, last_synced_at)
                VALUES(?,?,?,?,?,?)
                ON CONFLICT(local_folder_id) DO UPDATE SET
                  remote_path=excluded.remote_path,
                  path_lower=excluded.path_lower,
                  path_hash=excluded.path_hash,
                  fingerprint=excluded.fingerprint,
                  last_synced_at=excluded.last_synced_at
                """,
                (
                    local_folder_id,
                    norm,
                    paths.path_key(norm),
                    mapping.path_hash,
                    mapping.fingerprint,
                    mapping.last_synced_at,
                ),
            )
        return mapping

    def relocate_folder(self, old_path: str, new_path: str) -> int:
        """Move a folder mapping and every mapping below it to `new_path`.

        Returns the number of rows rewritten.
        """
        old_key = paths.path_key(old_path)
        prefix = old_key + "/"
        stamp = now_iso()
        changed = 0
        with transaction(self.db_path, immediate=True) as conn:
            for table, id_col in (("folder_mappings", "local_folder_id"), ("file_mappings", "local_file_id")):
                rows = conn.execute(
                    f"SELECT {id_col} AS local_id, remote_path FROM {table} "
                    "WHERE path_lower=? OR substr(path_lower, 1, ?)=?",
                    (old_key, len(prefix), prefix),
                ).fetchall()
                for row in rows:
                    moved = paths.rebase(row["remote_path"], old_path, new_path)
                    moved_hash = paths.path_hash(moved)
                    conn.execute(
                        f"DELETE FROM {table} WHERE path_hash=? AND {id_col}<>?",
                        (moved_hash, row["local_id"]),
                    )
                    conn.execute(
                        f"UPDATE {table} SET remote_path=?, path_lower=?, path_hash=?, last_synced_at=? "
                        f"WHERE {id_col}=?",
                        (moved, paths.path_key(moved), moved_hash, stamp, row["local_id"]),
                    )
                    changed += 1
            conn.execute(
                "UPDATE folder_mappings SET fingerprint=? WHERE path_hash=?",
                (folder_fingerprint(new_path), paths.path_hash(new_path)),
            )
        logger.info("mapping_relocated old=%s new=%s rows=%s", old_path, new_path, changed)
        return changed

    def delete_folder_tree(self, remote_path: str) -> int:
        key = paths.path_key(remote_path)
        prefix = key + "/"
        with transaction(self.db_path, immediate=True) as conn:
            removed = 0
            for table in ("folder_mappings", "file_mappings"):
                cur = conn.execute(
                    f"DELETE FROM {table} WHERE path_lower=? OR substr(path_lower, 1, ?)=?",
                    (key, len(prefix), prefix),
                )
                removed += cur.rowcount
        logger.info("mapping_tree_deleted path=%s rows=%s", remote_path, removed)
        return removed

    def list_folders(self) -> list[FolderMapping]:
        rows = self._fetch_all("SELECT * FROM folder_mappings ORDER BY path_lower")
        return [FolderMapping.from_row(r) for r in rows]

    # -- files -------------------------------------------------------------

    def get_file(self, local_file_id: str) -> Optional[FileMapping]:
        row = self._fetch_one("SELECT * FROM file_mappings WHERE local_file_id=?", (str(local_file_id),))
        return FileMapping.from_row(row) if row else None

    def get_file_by_path(self, remote_path: str) -> Optional[FileMapping]:
        row = self._fetch_one("SELECT * FROM file_mappings WHERE path_hash=?", (paths.path_hash(remote_path),))
        return FileMapping.from_row(row) if row else None

    def upsert_file(
        self,
        local_file_id: str,
        remote_path: str,
        content_fingerprint: str,
        size: int = 0,
        remote_object_id: Optional[str] = None,
    ) -> FileMapping:
        local_file_id = str(local_file_id)
        norm = paths.normalize(remote_path)
        mapping = FileMapping(
            local_file_id=local_file_id,
            remote_path=norm,
            path_hash=paths.path_hash(norm),
            remote_object_id=remote_object_id or None,
            content_fingerprint=content_fingerprint or "",
            size=int(size or 0),
            last_synced_at=now_iso(),
        )
        with transaction(self.db_path, immediate=True) as conn:
            # A row that claims the same path or remote object under another
            # local id is stale; the newest transfer owns both keys.
            conn.execute(
                """
                DELETE FROM file_mappings
                WHERE local_file_id<>?
                  AND (path_hash=? OR (remote_object_id IS NOT NULL AND remote_object_id=?))
                """,
                (local_file_id, mapping.path_hash, mapping.remote_object_id),
            )
            conn.execute(
                """
                INSERT INTO file_mappings(
                  local_file_id, remote_path, path_lower, path_hash, remote_object_id,
                  content_fingerprint, size, last_synced_at
                ) VALUES(?,?,?,?,?,?,?,?)
                ON CONFLICT(local_file_id) DO UPDATE SET
                  remote_path=excluded.remote_path,
                  path_lower=excluded.path_lower,
                  path_hash=excluded.path_hash,
                  remote_object_id=COALESCE(excluded.remote_object_id, file_mappings.remote_object_id),
                  content_fingerprint=excluded.content_fingerprint,
                  size=excluded.size,
                  last_synced_at=excluded.last_synced_at
                """,
                (
                    local_file_id,
                    norm,
                    paths.path_key(norm),
                    mapping.path_hash,
                    mapping.remote_object_id,
                    mapping.content_fingerprint,
                    mapping.size,
                    mapping.last_synced_at,
                ),
            )
        return self.get_file(local_file_id) or mapping

    def move_file(self, local_file_id: str, new_path: str) -> None:
        norm = paths.normalize(new_path)
        new_hash = paths.path_hash(norm)
        with transaction(self.db_path, immediate=True) as conn:
            conn.execute(
                "DELETE FROM file_mappings WHERE path_hash=? AND local_file_id<>?",
                (new_hash, str(local_file_id)),
            )
            conn.execute(
                "UPDATE file_mappings SET remote_path=?, path_lower=?, path_hash=?, last_synced_at=? "
                "WHERE local_file_id=?",
                (norm, paths.path_key(norm), new_hash, now_iso(), str(local_file_id)),
            )

    def refresh_file_fingerprint(self, remote_path: str, content_fingerprint: str, remote_object_id: Optional[str] = None) -> None:
        conn = get_conn(self.db_path)
        try:
            conn.execute(
                "UPDATE file_mappings SET content_fingerprint=?, "
                "remote_object_id=COALESCE(?, remote_object_id), last_synced_at=? WHERE path_hash=?",
                (content_fingerprint, remote_object_id, now_iso(), paths.path_hash(remote_path)),
            )
        finally:
            conn.close()

    def delete_file(self, local_file_id: str) -> bool:
        conn = get_conn(self.db_path)
        try:
            cur = conn.execute("DELETE FROM file_mappings WHERE local_file_id=?", (str(local_file_id),))
            return cur.rowcount > 0
        finally:
            conn.close()

    def delete_file_by_path(self, remote_path: str) -> bool:
        conn = get_conn(self.db_path)
        try:
            cur = conn.execute("DELETE FROM file_mappings WHERE path_hash=?", (paths.path_hash(remote_path),))
            return cur.rowcount > 0
        finally:
            conn.close()

    def list_files(self) -> list[FileMapping]:
        rows = self._fetch_all("SELECT * FROM file_mappings ORDER BY path_lower")
        return [FileMapping.from_row(r) for r in rows]
