from __future__ import annotations

import logging
from typing import Any, Optional

from . import paths
from .errors import (
    MappingMissingError,
    ParentNotReadyError,
    RemoteConflictError,
    RemoteNotFoundError,
    TaskValidationError,
    UnknownTaskError,
)
from .interfaces import LocalStore, RemoteClient
from .mapping_store import MappingStore
from .models import Task
from .transfer import TransferEngine

logger = logging.getLogger("treesync.handlers")


def require(payload: dict, *keys: str) -> list[Any]:
    missing = [k for k in keys if not payload.get(k)]
    if missing:
        raise TaskValidationError(f"payload_missing: {','.join(missing)}")
    return [payload[k] for k in keys]


class _BaseHandler:
    def __init__(self, remote: RemoteClient, local: LocalStore, mappings: MappingStore):
        self.remote = remote
        self.local = local
        self.mappings = mappings

    def handle(self, task: Task) -> Optional[dict]:
        method = getattr(self, f"_{task.direction}_{task.action}", None)
        if method is None:
            raise UnknownTaskError(f"unsupported: {task.target_type}/{task.action}/{task.direction}")
        return method(task)

    def _parent_folder_id(self, remote_path: str) -> str:
        parent = self.mappings.get_folder_by_path(paths.parent_of(remote_path))
        if parent is None:
            raise ParentNotReadyError(f"parent_not_mapped: {remote_path}")
        return parent.local_folder_id

    def _remote_delete(self, remote_path: str) -> None:
        try:
            self.remote.delete(remote_path)
        except RemoteNotFoundError:
            logger.info("remote_delete_already_gone path=%s", remote_path)


class FolderTaskHandler(_BaseHandler):
    """Folder create/rename/move/delete in either direction."""

    # -- local -> remote ---------------------------------------------------

    def _local_to_remote_create(self, task: Task) -> dict:
        (path,) = require(task.payload, "path")
        if self.local.get_entry(task.target_id) is None:
            raise MappingMissingError(f"local_folder_gone: {task.target_id}")
        try:
            self.remote.create_folder(path)
        except RemoteConflictError:
            existing = self.remote.get_metadata(path)
            if existing is None or existing.tag != "folder":
                raise
        self.mappings.upsert_folder(task.target_id, path)
        logger.info("remote_folder_created path=%s local_id=%s", path, task.target_id)
        return {"path": path}

    def _local_to_remote_rename(self, task: Task) -> dict:
        from_path, path = require(task.payload, "from_path", "path")
        try:
            self.remote.move(from_path, path)
        except RemoteNotFoundError:
            logger.warning("remote_folder_move_source_missing from=%s to=%s", from_path, path)
            return self._local_to_remote_create(task)
        self.mappings.relocate_folder(from_path, path)
        return {"from_path": from_path, "path": path}

    _local_to_remote_move = _local_to_remote_rename

    def _local_to_remote_delete(self, task: Task) -> dict:
        (path,) = require(task.payload, "path")
        self._remote_delete(path)
        self.mappings.delete_folder_tree(path)
        return {"path": path}

    # -- remote -> local ---------------------------------------------------

    def _remote_to_local_create(self, task: Task) -> dict:
        (path,) = require(task.payload, "path")
        mapped = self.mappings.get_folder_by_path(path)
        if mapped is not None:
            return {"path": path, "local_id": mapped.local_folder_id, "noop": True}
        parent_id = self._parent_folder_id(path)
        name = paths.base_name(path)
        existing = self.local.find_child(parent_id, name)
        if existing is not None and existing.is_folder:
            local_id = existing.id
        else:
            local_id = self.local.create_folder(parent_id, name)
        self.mappings.upsert_folder(local_id, path)
        logger.info("local_folder_created path=%s local_id=%s", path, local_id)
        return {"path": path, "local_id": local_id}

    def _remote_to_local_rename(self, task: Task) -> dict:
        from_path, path = require(task.payload, "from_path", "path")
        mapping = self.mappings.get_folder_by_path(from_path)
        if mapping is None:
            raise MappingMissingError(f"folder_not_mapped: {from_path}")
        parent_id = self._parent_folder_id(path)
        self.local.move_folder(mapping.local_folder_id, parent_id, paths.base_name(path))
        self.mappings.relocate_folder(from_path, path)
        return {"from_path": from_path, "path": path}

    _remote_to_local_move = _remote_to_local_rename

    def _remote_to_local_delete(self, task: Task) -> dict:
        mapping = self.mappings.get_folder(task.target_id)
        if mapping is None and task.payload.get("path"):
            mapping = self.mappings.get_folder_by_path(task.payload["path"])
        if mapping is None:
            raise MappingMissingError(f"folder_not_mapped: {task.target_id}")
        self.local.delete_folder(mapping.local_folder_id)
        self.mappings.delete_folder_tree(mapping.remote_path)
        logger.info("local_folder_deleted path=%s", mapping.remote_path)
        return {"path": mapping.remote_path}


class FileTaskHandler(_BaseHandler):
    """File create/update/move/rename/delete in either direction."""

    def __init__(self, remote: RemoteClient, local: LocalStore, mappings: MappingStore, transfer: TransferEngine):
        super().__init__(remote, local, mappings)
        self.transfer = transfer

    # -- local -> remote ---------------------------------------------------

    def _local_to_remote_create(self, task: Task) -> dict:
        (path,) = require(task.payload, "path")
        result = self.transfer.upload_file(task.target_id, path)
        self.mappings.upsert_file(task.target_id, path, result.fingerprint, result.size, result.entry.id)
        return {"path": path, "size": result.size, "chunked": result.chunked}

    _local_to_remote_update = _local_to_remote_create

    def _local_to_remote_move(self, task: Task) -> dict:
        from_path, path = require(task.payload, "from_path", "path")
        try:
            entry = self.remote.move(from_path, path)
        except RemoteNotFoundError:
            logger.warning("remote_file_move_source_missing from=%s to=%s", from_path, path)
            return self._local_to_remote_create(task)
        mapping = self.mappings.get_file(task.target_id)
        if mapping is None:
            fingerprint = self.local.get_fingerprint(task.target_id) or ""
            self.mappings.upsert_file(task.target_id, path, fingerprint, entry.size, entry.id)
        else:
            self.mappings.move_file(task.target_id, path)
        return {"from_path": from_path, "path": path}

    _local_to_remote_rename = _local_to_remote_move

    def _local_to_remote_delete(self, task: Task) -> dict:
        (path,) = require(task.payload, "path")
        self._remote_delete(path)
        # By path: the local id may already belong to a newer file.
        self.mappings.delete_file_by_path(path)
        return {"path": path}

    # -- remote -> local ---------------------------------------------------

    def _remote_to_local_create(self, task: Task) -> dict:
        (path,) = require(task.payload, "path")
        mapping = self.mappings.get_file_by_path(path)
        expected = task.payload.get("content_hash")
        if mapping is not None and expected and mapping.content_fingerprint == expected:
            if self.local.get_fingerprint(mapping.local_file_id) == expected:
                return {"path": path, "noop": True}

        parent_id = self._parent_folder_id(path)
        result = self.transfer.download_file(path, parent_id, paths.base_name(path))
        self.mappings.upsert_file(result.local_id, path, result.fingerprint, result.entry.size, result.entry.id)
        return {"path": path, "local_id": result.local_id, "size": result.entry.size}

    def _remote_to_local_update(self, task: Task) -> dict:
        (path,) = require(task.payload, "path")
        parent_id = self._parent_folder_id(path)
        result = self.transfer.download_file(path, parent_id, paths.base_name(path))
        if result.local_id != task.target_id:
            self.mappings.delete_file(task.target_id)
        self.mappings.upsert_file(result.local_id, path, result.fingerprint, result.entry.size, result.entry.id)
        return {"path": path, "local_id": result.local_id, "size": result.entry.size}

    def _remote_to_local_move(self, task: Task) -> dict:
        # The remote feed reports moves as delete + create; a targeted move is
        # applied as a fresh download at the new path.
        return self._remote_to_local_update(task)

    _remote_to_local_rename = _remote_to_local_move

    def _remote_to_local_delete(self, task: Task) -> dict:
        mapping = self.mappings.get_file(task.target_id)
        if mapping is None and task.payload.get("path"):
            mapping = self.mappings.get_file_by_path(task.payload["path"])
        if mapping is None:
            raise MappingMissingError(f"file_not_mapped: {task.target_id}")
        self.local.delete_file(mapping.local_file_id)
        self.mappings.delete_file(mapping.local_file_id)
        logger.info("local_file_deleted path=%s", mapping.remote_path)
        return {"path": mapping.remote_path}
