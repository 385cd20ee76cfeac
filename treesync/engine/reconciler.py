from __future__ import annotations

import logging
from typing import Iterable, Optional, Union

from . import paths
from .cursor_store import CursorStore
from .errors import RemoteApiError, TaskValidationError
from .interfaces import LocalStore, RemoteClient
from .mapping_store import MappingStore
from .models import (
    LOCAL_TO_REMOTE,
    REMOTE_TO_LOCAL,
    ROOT_FOLDER_ID,
    ChangeEntry,
    Priority,
    RemoteEntry,
    Task,
)
from .task_queue import TaskQueue

logger = logging.getLogger("treesync.reconciler")


class _Pending:
    def __repr__(self) -> str:
        return "PENDING"


# Resolution result for a folder whose creation is itself a queued task.
PENDING = _Pending()


def _new_summary() -> dict[str, int]:
    return {
        "entries": 0,
        "filtered": 0,
        "folders_enqueued": 0,
        "folders_adopted": 0,
        "ancestors_created": 0,
        "files_enqueued": 0,
        "files_adopted": 0,
        "updates_enqueued": 0,
        "deletes_enqueued": 0,
        "uploads_enqueued": 0,
        "conflicts": 0,
        "unchanged": 0,
        "noops": 0,
        "pages": 0,
    }


def _merge(into: dict, other: dict) -> dict:
    for key, value in other.items():
        if isinstance(value, int) and not isinstance(value, bool):
            into[key] = into.get(key, 0) + value
    return into


class _Batch:
    def __init__(self):
        # path_key -> local folder id, or PENDING
        self.resolved: dict[str, Union[str, _Pending]] = {}


class Reconciler:
    """Turns remote change-feed entries into ordered sync tasks.

    Tasks are always enqueued before the cursor that produced them is stored,
    so a crash between the two replays the batch and the queue's dedup rule
    absorbs the duplicates.
    """

    def __init__(
        self,
        remote: RemoteClient,
        local: LocalStore,
        mappings: MappingStore,
        queue: TaskQueue,
        cursors: CursorStore,
        remote_root: str,
        conflict_policy: str = "remote_wins",
        hidden_prefix: str = ".",
        max_feed_pages: int = 50,
    ):
        if conflict_policy not in ("remote_wins", "local_wins"):
            raise ValueError(f"unknown conflict policy: {conflict_policy}")
        self.remote = remote
        self.local = local
        self.mappings = mappings
        self.queue = queue
        self.cursors = cursors
        self.remote_root = paths.normalize(remote_root)
        self.conflict_policy = conflict_policy
        self.hidden_prefix = hidden_prefix
        self.max_feed_pages = max_feed_pages

    # -- filtering ---------------------------------------------------------

    def is_hidden_name(self, name: str) -> bool:
        return bool(self.hidden_prefix) and name.startswith(self.hidden_prefix)

    def accepts(self, path: str) -> bool:
        if not paths.is_under(path, self.remote_root):
            return False
        return not any(self.is_hidden_name(p) for p in paths.relative_parts(path, self.remote_root))

    def filter_entries(self, entries: Iterable[ChangeEntry]) -> list[ChangeEntry]:
        return [e for e in entries if self.accepts(e.path)]

    # -- batch application -------------------------------------------------

    def apply_entries(self, entries: Iterable[ChangeEntry]) -> dict[str, int]:
        entries = list(entries)
        summary = _new_summary()
        summary["entries"] = len(entries)
        changes = self.filter_entries(entries)
        summary["filtered"] = len(entries) - len(changes)

        folders = [c for c in changes if c.kind != "deleted" and c.item_type == "folder"]
        files = [c for c in changes if c.kind != "deleted" and c.item_type == "file"]
        deletions = [c for c in changes if c.kind == "deleted"]
        folders.sort(key=lambda c: paths.depth(c.path))

        batch = _Batch()
        for change in folders:
            self._reconcile_folder(change, batch, summary)
        for change in files:
            self._reconcile_file(change, batch, summary)
        for change in deletions:
            self._reconcile_deletion(change, summary)

        logger.info(
            "changes_reconciled entries=%s folders=%s files=%s deletes=%s conflicts=%s",
            summary["entries"], len(folders), len(files), len(deletions), summary["conflicts"],
        )
        return summary

    def _enqueue_remote_folder(self, path: str, batch: _Batch, summary: dict, remote_id: Optional[str] = None) -> None:
        self.queue.enqueue(
            "create",
            "folder",
            paths.path_hash(path),
            REMOTE_TO_LOCAL,
            {"path": path, "remote_id": remote_id},
            Priority.FOLDER,
        )
        batch.resolved[paths.path_key(path)] = PENDING
        summary["folders_enqueued"] += 1

    def _resolve_folder(self, path: str, batch: _Batch, summary: dict) -> Union[str, _Pending]:
        """Local folder id for remote folder `path`, creating unmapped
        ancestors on the way. Returns PENDING when an ancestor is itself
        waiting in the queue."""
        key = paths.path_key(path)
        if key in batch.resolved:
            return batch.resolved[key]
        if self.mappings.is_root_path(path):
            batch.resolved[key] = ROOT_FOLDER_ID
            return ROOT_FOLDER_ID
        if not paths.is_under(path, self.remote_root):
            raise TaskValidationError(f"path_outside_root: {path}")

        mapping = self.mappings.get_folder_by_path(path)
        if mapping is not None:
            batch.resolved[key] = mapping.local_folder_id
            return mapping.local_folder_id

        parent = self._resolve_folder(paths.parent_of(path), batch, summary)
        if parent is PENDING:
            self._enqueue_remote_folder(path, batch, summary)
            return PENDING

        name = paths.base_name(path)
        existing = self.local.find_child(parent, name)
        if existing is not None and existing.is_folder:
            local_id = existing.id
        else:
            local_id = self.local.create_folder(parent, name)
        self.mappings.upsert_folder(local_id, path)
        summary["ancestors_created"] += 1
        logger.info("ancestor_folder_created path=%s local_id=%s", path, local_id)
        batch.resolved[key] = local_id
        return local_id

    def _reconcile_folder(self, change: ChangeEntry, batch: _Batch, summary: dict) -> None:
        key = paths.path_key(change.path)
        mapping = self.mappings.get_folder_by_path(change.path)
        if mapping is not None:
            batch.resolved[key] = mapping.local_folder_id
            summary["unchanged"] += 1
            return

        parent = self._resolve_folder(paths.parent_of(change.path), batch, summary)
        if parent is not PENDING:
            existing = self.local.find_child(parent, paths.base_name(change.path))
            if existing is not None and existing.is_folder:
                self.mappings.upsert_folder(existing.id, change.path)
                batch.resolved[key] = existing.id
                summary["folders_adopted"] += 1
                return
        self._enqueue_remote_folder(change.path, batch, summary, change.remote_id)

    def _file_payload(self, change: ChangeEntry) -> dict:
        return {
            "path": change.path,
            "remote_id": change.remote_id,
            "content_hash": change.content_hash,
            "size": change.size,
        }

    def _log_conflict(self, change: ChangeEntry, local_fp: Optional[str], base_fp: Optional[str]) -> None:
        logger.warning(
            "sync_conflict path=%s policy=%s local=%s remote=%s base=%s",
            change.path, self.conflict_policy, local_fp, change.content_hash, base_fp,
        )

    def _reconcile_file(self, change: ChangeEntry, batch: _Batch, summary: dict) -> None:
        mapping = self.mappings.get_file_by_path(change.path)
        if mapping is None:
            self._reconcile_unmapped_file(change, batch, summary)
            return

        if change.content_hash and change.content_hash == mapping.content_fingerprint:
            summary["unchanged"] += 1
            return

        local_fp = self.local.get_fingerprint(mapping.local_file_id)
        if local_fp is None or local_fp == mapping.content_fingerprint:
            self._enqueue_download("update", mapping.local_file_id, change)
            summary["updates_enqueued"] += 1
        elif local_fp == change.content_hash:
            # Both sides already hold the same bytes; only the base is stale.
            self.mappings.refresh_file_fingerprint(change.path, local_fp, change.remote_id)
            summary["unchanged"] += 1
        else:
            summary["conflicts"] += 1
            self._log_conflict(change, local_fp, mapping.content_fingerprint)
            if self.conflict_policy == "remote_wins":
                self._enqueue_download("update", mapping.local_file_id, change)
                summary["updates_enqueued"] += 1

    def _reconcile_unmapped_file(self, change: ChangeEntry, batch: _Batch, summary: dict) -> None:
        parent = self._resolve_folder(paths.parent_of(change.path), batch, summary)
        if parent is not PENDING:
            existing = self.local.find_child(parent, paths.base_name(change.path))
            if existing is not None and not existing.is_folder:
                local_fp = self.local.get_fingerprint(existing.id)
                if local_fp and local_fp == change.content_hash:
                    self.mappings.upsert_file(existing.id, change.path, local_fp, change.size, change.remote_id)
                    summary["files_adopted"] += 1
                    return
                summary["conflicts"] += 1
                self._log_conflict(change, local_fp, None)
                if self.conflict_policy == "remote_wins":
                    self._enqueue_download("update", existing.id, change)
                    summary["updates_enqueued"] += 1
                else:
                    self.queue.enqueue(
                        "update", "file", existing.id, LOCAL_TO_REMOTE, {"path": change.path}, Priority.FILE
                    )
                    summary["uploads_enqueued"] += 1
                return

        self._enqueue_download("create", paths.path_hash(change.path), change)
        summary["files_enqueued"] += 1

    def _enqueue_download(self, action: str, target_id: str, change: ChangeEntry) -> int:
        return self.queue.enqueue(action, "file", target_id, REMOTE_TO_LOCAL, self._file_payload(change), Priority.FILE)

    def _reconcile_deletion(self, change: ChangeEntry, summary: dict) -> None:
        file_mapping = self.mappings.get_file_by_path(change.path)
        if file_mapping is not None:
            self.queue.enqueue(
                "delete", "file", file_mapping.local_file_id, REMOTE_TO_LOCAL,
                {"path": file_mapping.remote_path}, Priority.FILE,
            )
            summary["deletes_enqueued"] += 1
            return

        folder_mapping = self.mappings.get_folder_by_path(change.path)
        if folder_mapping is not None and folder_mapping.local_folder_id != ROOT_FOLDER_ID:
            self.queue.enqueue(
                "delete", "folder", folder_mapping.local_folder_id, REMOTE_TO_LOCAL,
                {"path": folder_mapping.remote_path}, Priority.FOLDER,
            )
            summary["deletes_enqueued"] += 1
            return

        summary["noops"] += 1

    # -- change feed -------------------------------------------------------

    def process_change_feed(self) -> dict[str, int]:
        cursor = self.cursors.get(self.remote_root)
        if cursor is None:
            latest = self.remote.get_latest_cursor(self.remote_root, recursive=True)
            self.cursors.save(self.remote_root, latest, False)
            logger.info("cursor_initialized root=%s", self.remote_root)
            summary = _new_summary()
            summary["cursor_initialized"] = 1
            return summary

        summary = _new_summary()
        opaque = cursor.opaque_cursor
        while True:
            try:
                result = self.remote.list_folder_continue(opaque)
            except RemoteApiError as e:
                if e.summary.startswith("reset"):
                    self.cursors.clear(self.remote_root)
                    self.queue.enqueue("full_sync", "system", "root", REMOTE_TO_LOCAL, {"reason": "cursor_reset"})
                    logger.warning("cursor_reset root=%s full_sync_enqueued", self.remote_root)
                    summary["cursor_reset"] = 1
                    return summary
                raise
            page = self.apply_entries(ChangeEntry.from_remote(e) for e in result.entries)
            _merge(summary, page)
            self.cursors.save(self.remote_root, result.cursor, result.has_more)
            opaque = result.cursor
            summary["pages"] += 1
            if not result.has_more or summary["pages"] >= self.max_feed_pages:
                break
        return summary

    # -- full enumeration --------------------------------------------------

    def full_sync(self) -> dict[str, int]:
        entries: list[RemoteEntry] = []
        result = self.remote.list_folder(self.remote_root, recursive=True)
        entries.extend(result.entries)
        pages = 1
        while result.has_more:
            result = self.remote.list_folder_continue(result.cursor)
            entries.extend(result.entries)
            pages += 1

        changes = [ChangeEntry.from_remote(e) for e in entries if e.tag != "deleted"]
        summary = self.apply_entries(changes)
        summary["pages"] = pages

        seen = {
            paths.path_key(c.path): c.content_hash
            for c in changes
            if self.accepts(c.path)
        }
        self._bootstrap_local(ROOT_FOLDER_ID, self.remote_root, seen, summary)

        self.cursors.save(self.remote_root, result.cursor, False)
        logger.info(
            "full_sync_completed entries=%s pages=%s uploads=%s conflicts=%s",
            len(entries), pages, summary["uploads_enqueued"], summary["conflicts"],
        )
        return summary

    def _bootstrap_local(self, folder_id: str, remote_path: str, seen: dict, summary: dict) -> None:
        """Enqueue uploads for local items the remote enumeration did not
        contain, and for mapped files edited locally while we were offline."""
        for child in self.local.list_children(folder_id):
            if self.is_hidden_name(child.name):
                continue
            child_path = paths.join(remote_path, child.name)
            key = paths.path_key(child_path)
            if child.is_folder:
                if key not in seen and self.mappings.get_folder(child.id) is None:
                    self.queue.enqueue(
                        "create", "folder", child.id, LOCAL_TO_REMOTE, {"path": child_path}, Priority.FOLDER
                    )
                    summary["uploads_enqueued"] += 1
                self._bootstrap_local(child.id, child_path, seen, summary)
                continue

            mapping = self.mappings.get_file(child.id)
            if mapping is None:
                if key not in seen:
                    self.queue.enqueue(
                        "create", "file", child.id, LOCAL_TO_REMOTE, {"path": child_path}, Priority.FILE
                    )
                    summary["uploads_enqueued"] += 1
                continue
            if key in seen and seen[key] == mapping.content_fingerprint:
                local_fp = self.local.get_fingerprint(child.id)
                if local_fp and local_fp != mapping.content_fingerprint:
                    self.queue.enqueue(
                        "update", "file", child.id, LOCAL_TO_REMOTE, {"path": mapping.remote_path}, Priority.FILE
                    )
                    summary["uploads_enqueued"] += 1

    def handle(self, task: Task) -> dict[str, int]:
        return self.full_sync()
