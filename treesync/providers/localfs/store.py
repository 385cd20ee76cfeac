from __future__ import annotations

import logging
import os
import shutil
import threading
import time
import uuid
from pathlib import Path
from typing import BinaryIO, Optional

from treesync.engine.errors import MappingMissingError, ParentNotReadyError
from treesync.engine.fingerprint import fingerprint_file
from treesync.engine.interfaces import LocalChangeObserver
from treesync.engine.models import ROOT_FOLDER_ID, LocalEntry

logger = logging.getLogger("treesync.localfs")

STAGING_PREFIX = ".treesync-"
STAGING_SUFFIX = ".download"
DEFAULT_MUTE_SEC = 2.0


def is_staging_name(name: str) -> bool:
    return name.startswith(STAGING_PREFIX) and name.endswith(STAGING_SUFFIX)


class LocalFsStore:
    """Local folder/file tree rooted at a directory on disk.

    Entries are identified by inode number, so ids survive renames and moves
    within the tree. The root directory is always ROOT_FOLDER_ID. Replacing a
    file via install_file gives it the staging file's inode, which is why
    install_file returns the id the caller must record.
    """

    def __init__(self, root: str, mute_sec: float = DEFAULT_MUTE_SEC):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.mute_sec = mute_sec
        self._index: dict[str, Path] = {}
        self._lock = threading.RLock()
        self._observers: list[LocalChangeObserver] = []
        self._muted: dict[str, float] = {}
        # Last known ids of paths that disappeared, for delete events.
        self._gone: dict[Path, str] = {}

    # -- id <-> path -------------------------------------------------------

    def _id_of(self, path: Path) -> str:
        if path == self.root:
            return ROOT_FOLDER_ID
        return str(path.lstat().st_ino)

    def _remember(self, path: Path) -> str:
        local_id = self._id_of(path)
        with self._lock:
            self._index[local_id] = path
        return local_id

    def rescan(self) -> None:
        index: dict[str, Path] = {}
        for dirpath, dirnames, filenames in os.walk(self.root):
            base = Path(dirpath)
            for name in dirnames + filenames:
                if is_staging_name(name):
                    continue
                full = base / name
                try:
                    index[str(full.lstat().st_ino)] = full
                except FileNotFoundError:
                    continue
        with self._lock:
            for local_id, known in self._index.items():
                if local_id not in index:
                    self._gone[known] = local_id
            self._index = index

    def path_of(self, local_id: str) -> Optional[Path]:
        local_id = str(local_id)
        if local_id == ROOT_FOLDER_ID:
            return self.root
        with self._lock:
            cached = self._index.get(local_id)
        if cached is not None and cached.exists() and str(cached.lstat().st_ino) == local_id:
            return cached
        self.rescan()
        with self._lock:
            return self._index.get(local_id)

    def id_for_path(self, rel_path: str, include_gone: bool = True) -> Optional[str]:
        """Id for a path relative to the root. With `include_gone`, a path that
        no longer exists resolves through the last known index."""
        full = (self.root / rel_path.strip("/")).resolve()
        if full == self.root:
            return ROOT_FOLDER_ID
        if full.exists():
            return self._remember(full)
        if include_gone:
            with self._lock:
                for local_id, known in self._index.items():
                    if known == full:
                        return local_id
                return self._gone.get(full)
        return None

    def _require(self, local_id: str) -> Path:
        path = self.path_of(local_id)
        if path is None or not path.exists():
            raise MappingMissingError(f"local_entry_missing: {local_id}")
        return path

    def _entry(self, path: Path) -> LocalEntry:
        is_folder = path.is_dir()
        return LocalEntry(
            id=self._remember(path),
            parent_id=None if path == self.root else self._id_of(path.parent),
            name=path.name,
            is_folder=is_folder,
            size=0 if is_folder else path.stat().st_size,
        )

    # -- reads -------------------------------------------------------------

    def get_entry(self, local_id: str) -> Optional[LocalEntry]:
        path = self.path_of(local_id)
        if path is None or not path.exists():
            return None
        return self._entry(path)

    def list_children(self, folder_id: str) -> list[LocalEntry]:
        folder = self._require(folder_id)
        out = []
        for child in sorted(folder.iterdir()):
            if is_staging_name(child.name):
                continue
            out.append(self._entry(child))
        return out

    def find_child(self, folder_id: str, name: str) -> Optional[LocalEntry]:
        folder = self.path_of(folder_id)
        if folder is None or not folder.is_dir():
            return None
        exact = folder / name
        if exact.exists():
            return self._entry(exact)
        lowered = name.lower()
        for child in folder.iterdir():
            if child.name.lower() == lowered and not is_staging_name(child.name):
                return self._entry(child)
        return None

    def open_file(self, file_id: str) -> BinaryIO:
        return self._require(file_id).open("rb")

    def get_fingerprint(self, file_id: str) -> Optional[str]:
        path = self.path_of(file_id)
        if path is None or not path.is_file():
            return None
        return fingerprint_file(path)

    # -- writes ------------------------------------------------------------

    def create_folder(self, parent_id: str, name: str) -> str:
        parent = self.path_of(parent_id)
        if parent is None or not parent.is_dir():
            raise ParentNotReadyError(f"local_parent_missing: {parent_id}")
        target = parent / name
        self.mute(target)
        target.mkdir(exist_ok=True)
        return self._remember(target)

    def rename_folder(self, folder_id: str, new_name: str) -> None:
        path = self._require(folder_id)
        self.move_folder(folder_id, self._id_of(path.parent), new_name)

    def move_folder(self, folder_id: str, new_parent_id: str, new_name: Optional[str] = None) -> None:
        path = self._require(folder_id)
        parent = self.path_of(new_parent_id)
        if parent is None or not parent.is_dir():
            raise ParentNotReadyError(f"local_parent_missing: {new_parent_id}")
        target = parent / (new_name or path.name)
        self.mute(path)
        self.mute(target)
        path.rename(target)
        self.rescan()

    def delete_folder(self, folder_id: str) -> None:
        path = self.path_of(folder_id)
        if path is None or not path.exists():
            return
        if path == self.root:
            raise MappingMissingError("refusing_to_delete_root")
        self.mute(path)
        shutil.rmtree(path)
        self.rescan()

    def delete_file(self, file_id: str) -> None:
        path = self.path_of(file_id)
        if path is None:
            return
        self.mute(path)
        path.unlink(missing_ok=True)
        with self._lock:
            self._index.pop(str(file_id), None)
            self._gone[path] = str(file_id)

    def staging_path(self, parent_id: str, name: str) -> Path:
        parent = self.path_of(parent_id)
        if parent is None or not parent.is_dir():
            raise ParentNotReadyError(f"local_parent_missing: {parent_id}")
        return parent / f"{STAGING_PREFIX}{uuid.uuid4().hex[:12]}-{name}{STAGING_SUFFIX}"

    def install_file(self, staged: Path, parent_id: str, name: str) -> str:
        parent = self.path_of(parent_id)
        if parent is None or not parent.is_dir():
            raise ParentNotReadyError(f"local_parent_missing: {parent_id}")
        target = parent / name
        self.mute(target)
        os.replace(staged, target)
        return self._remember(target)

    # -- events ------------------------------------------------------------

    def register_observer(self, observer: LocalChangeObserver) -> None:
        self._observers.append(observer)

    @property
    def observers(self) -> tuple[LocalChangeObserver, ...]:
        return tuple(self._observers)

    def mute(self, path: Path, seconds: Optional[float] = None) -> None:
        """Suppress watcher events for `path` caused by our own writes."""
        with self._lock:
            self._muted[str(path)] = time.monotonic() + (self.mute_sec if seconds is None else seconds)

    def is_muted(self, path: str) -> bool:
        now = time.monotonic()
        with self._lock:
            for key, until in list(self._muted.items()):
                if until < now:
                    del self._muted[key]
            return any(path == key or path.startswith(key + os.sep) for key in self._muted)
