from __future__ import annotations

import logging
from typing import Optional

from . import paths
from .interfaces import LocalStore
from .mapping_store import MappingStore
from .models import LOCAL_TO_REMOTE, ROOT_FOLDER_ID, Priority
from .task_queue import TaskQueue

logger = logging.getLogger("treesync.local_events")


class LocalEventHandler:
    """Observer registered with the local store; turns local mutations into
    local_to_remote tasks.

    Events whose outcome is already reflected in the mapping store (our own
    downloads and folder creations) are dropped here.
    """

    def __init__(self, local: LocalStore, mappings: MappingStore, queue: TaskQueue, hidden_prefix: str = "."):
        self.local = local
        self.mappings = mappings
        self.queue = queue
        self.hidden_prefix = hidden_prefix

    def _is_hidden(self, name: str) -> bool:
        return bool(self.hidden_prefix) and name.startswith(self.hidden_prefix)

    def remote_path_for(self, local_id: str) -> Optional[str]:
        """Remote path the local entry should live at, or None when it is gone
        or sits below a hidden folder."""
        names: list[str] = []
        current = self.local.get_entry(local_id)
        while current is not None:
            if self._is_hidden(current.name):
                return None
            names.append(current.name)
            if current.parent_id is None:
                return None
            mapping = self.mappings.get_folder(current.parent_id)
            if mapping is not None:
                return paths.normalize("/".join([mapping.remote_path, *reversed(names)]))
            current = self.local.get_entry(current.parent_id)
        return None

    def _enqueue(self, action: str, target_type: str, local_id: str, payload: dict, priority: int) -> int:
        task_id = self.queue.enqueue(action, target_type, local_id, LOCAL_TO_REMOTE, payload, priority)
        logger.info(
            "local_change_enqueued task=%s action=%s type=%s local_id=%s path=%s",
            task_id, action, target_type, local_id, payload.get("path"),
        )
        return task_id

    # -- folders -----------------------------------------------------------

    def on_folder_created(self, folder_id: str) -> Optional[int]:
        mapping = self.mappings.get_folder(folder_id)
        path = self.remote_path_for(folder_id)
        if path is None:
            return None
        if mapping is not None:
            if paths.path_key(path) == paths.path_key(mapping.remote_path):
                return None
            logger.warning("local_id_reused local_id=%s old_path=%s path=%s", folder_id, mapping.remote_path, path)
        return self._enqueue("create", "folder", folder_id, {"path": path}, Priority.FOLDER)

    def _on_folder_relocated(self, folder_id: str, action: str) -> Optional[int]:
        mapping = self.mappings.get_folder(folder_id)
        if mapping is None:
            return self.on_folder_created(folder_id)
        path = self.remote_path_for(folder_id)
        if path is None:
            return self.on_folder_deleted(folder_id)
        if path == mapping.remote_path:
            return None
        payload = {"from_path": mapping.remote_path, "path": path}
        return self._enqueue(action, "folder", folder_id, payload, Priority.FOLDER)

    def on_folder_renamed(self, folder_id: str) -> Optional[int]:
        return self._on_folder_relocated(folder_id, "rename")

    def on_folder_moved(self, folder_id: str) -> Optional[int]:
        return self._on_folder_relocated(folder_id, "move")

    def on_folder_deleted(self, folder_id: str) -> Optional[int]:
        mapping = self.mappings.get_folder(folder_id)
        if mapping is None or mapping.local_folder_id == ROOT_FOLDER_ID:
            return None
        return self._enqueue("delete", "folder", folder_id, {"path": mapping.remote_path}, Priority.FOLDER)

    # -- files -------------------------------------------------------------

    def _file_priority(self, thumbnail: bool) -> int:
        return Priority.THUMBNAIL if thumbnail else Priority.FILE

    def _stale_mapping_path(self, file_id: str, mapping) -> Optional[str]:
        """Current remote path of `file_id` when it no longer matches its
        mapping. Local ids can be reused by a new file after a delete, so an
        add or update at another path is a new file, not an edit."""
        path = self.remote_path_for(file_id)
        if path is None or paths.path_key(path) == paths.path_key(mapping.remote_path):
            return None
        return path

    def on_file_added(self, file_id: str, thumbnail: bool = False) -> Optional[int]:
        mapping = self.mappings.get_file(file_id)
        if mapping is not None and self._stale_mapping_path(file_id, mapping) is None:
            return self.on_file_updated(file_id, thumbnail)
        path = self.remote_path_for(file_id)
        if path is None:
            return None
        if mapping is not None:
            logger.warning("local_id_reused local_id=%s old_path=%s path=%s", file_id, mapping.remote_path, path)
        return self._enqueue("create", "file", file_id, {"path": path}, self._file_priority(thumbnail))

    def on_file_updated(self, file_id: str, thumbnail: bool = False) -> Optional[int]:
        mapping = self.mappings.get_file(file_id)
        if mapping is None or self._stale_mapping_path(file_id, mapping) is not None:
            return self.on_file_added(file_id, thumbnail)
        fingerprint = self.local.get_fingerprint(file_id)
        if fingerprint is None or fingerprint == mapping.content_fingerprint:
            return None
        return self._enqueue("update", "file", file_id, {"path": mapping.remote_path}, self._file_priority(thumbnail))

    def on_file_moved(self, file_id: str, thumbnail: bool = False) -> Optional[int]:
        mapping = self.mappings.get_file(file_id)
        if mapping is None:
            return self.on_file_added(file_id, thumbnail)
        path = self.remote_path_for(file_id)
        if path is None:
            return self.on_file_deleted(file_id)
        if path == mapping.remote_path:
            return None
        same_parent = paths.path_key(paths.parent_of(path)) == paths.path_key(paths.parent_of(mapping.remote_path))
        payload = {"from_path": mapping.remote_path, "path": path}
        return self._enqueue(
            "rename" if same_parent else "move", "file", file_id, payload, self._file_priority(thumbnail)
        )

    def on_file_deleted(self, file_id: str) -> Optional[int]:
        mapping = self.mappings.get_file(file_id)
        if mapping is None:
            return None
        return self._enqueue("delete", "file", file_id, {"path": mapping.remote_path}, Priority.FILE)
