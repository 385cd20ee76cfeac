from __future__ import annotations

import logging
import os
from typing import Optional

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .store import LocalFsStore, is_staging_name

logger = logging.getLogger("treesync.localfs.watcher")


class LocalFsWatcher(FileSystemEventHandler):
    """Translates watchdog events under the store root into observer calls
    on the store (on_folder_created, on_file_added, ...).

    Paths the store muted for its own writes and staging files are ignored.
    """

    file_event_types = (EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED)
    dir_event_types = (EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED)

    def __init__(self, store: LocalFsStore):
        super().__init__()
        self.store = store
        self._observer: Optional[Observer] = None

    def start(self) -> None:
        if self._observer is not None:
            return
        self.store.rescan()
        observer = Observer()
        observer.schedule(self, str(self.store.root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info("local_watcher_started root=%s", self.store.root)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("local_watcher_stopped root=%s", self.store.root)

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def _relative(self, path) -> Optional[str]:
        path = os.fsdecode(path)
        root = str(self.store.root)
        if path == root or not path.startswith(root + os.sep):
            return None
        if is_staging_name(os.path.basename(path)):
            return None
        if self.store.is_muted(path):
            return None
        return os.path.relpath(path, root)

    def on_any_event(self, event: FileSystemEvent) -> None:
        allowed = self.dir_event_types if event.is_directory else self.file_event_types
        if event.event_type not in allowed:
            return
        try:
            self._translate(event)
        except Exception:
            logger.exception("local_event_failed type=%s path=%s", event.event_type, event.src_path)

    def _translate(self, event: FileSystemEvent) -> None:
        if event.event_type == EVENT_TYPE_MOVED:
            self._on_moved(event)
            return

        rel = self._relative(event.src_path)
        if rel is None:
            return

        if event.event_type == EVENT_TYPE_DELETED:
            local_id = self.store.id_for_path(rel, include_gone=True)
            if local_id is not None:
                self._emit_deleted(local_id, event.is_directory)
            return

        local_id = self.store.id_for_path(rel, include_gone=False)
        if local_id is None:
            return
        for observer in self.store.observers:
            if event.event_type == EVENT_TYPE_CREATED and event.is_directory:
                observer.on_folder_created(local_id)
            elif event.event_type == EVENT_TYPE_CREATED:
                observer.on_file_added(local_id)
            elif not event.is_directory:
                observer.on_file_updated(local_id)

    def _emit_deleted(self, local_id: str, is_directory: bool) -> None:
        for observer in self.store.observers:
            if is_directory:
                observer.on_folder_deleted(local_id)
            else:
                observer.on_file_deleted(local_id)

    def _on_moved(self, event: FileSystemEvent) -> None:
        dest = self._relative(event.dest_path)
        if dest is None:
            # Moved out of the tree, onto a staging name or onto a muted path.
            if self._relative(event.src_path) is not None and not self.store.is_muted(os.fsdecode(event.dest_path)):
                self._translate_deleted_source(event)
            return
        local_id = self.store.id_for_path(dest, include_gone=False)
        if local_id is None:
            return
        if event.is_directory:
            same_parent = os.path.dirname(os.fsdecode(event.src_path)) == os.path.dirname(os.fsdecode(event.dest_path))
            self.store.rescan()
            for observer in self.store.observers:
                if same_parent:
                    observer.on_folder_renamed(local_id)
                else:
                    observer.on_folder_moved(local_id)
        else:
            for observer in self.store.observers:
                observer.on_file_moved(local_id)

    def _translate_deleted_source(self, event: FileSystemEvent) -> None:
        rel = self._relative(event.src_path)
        local_id = self.store.id_for_path(rel, include_gone=True) if rel else None
        if local_id is not None:
            self._emit_deleted(local_id, event.is_directory)
