from __future__ import annotations

from pathlib import Path
from typing import BinaryIO, Optional, Protocol

from .models import ListFolderResult, LocalEntry, RemoteEntry


class LocalChangeObserver(Protocol):
    """Receives local tree mutations, one method per kind of change."""

    def on_folder_created(self, folder_id: str) -> Optional[int]: ...

    def on_folder_renamed(self, folder_id: str) -> Optional[int]: ...

    def on_folder_moved(self, folder_id: str) -> Optional[int]: ...

    def on_folder_deleted(self, folder_id: str) -> Optional[int]: ...

    def on_file_added(self, file_id: str, thumbnail: bool = False) -> Optional[int]: ...

    def on_file_updated(self, file_id: str, thumbnail: bool = False) -> Optional[int]: ...

    def on_file_moved(self, file_id: str, thumbnail: bool = False) -> Optional[int]: ...

    def on_file_deleted(self, file_id: str) -> Optional[int]: ...


class LocalStore(Protocol):
    """Folder/file tree on the local side. Ids are opaque strings; the root
    folder is ROOT_FOLDER_ID."""

    def get_entry(self, local_id: str) -> Optional[LocalEntry]: ...

    def list_children(self, folder_id: str) -> list[LocalEntry]: ...

    def find_child(self, folder_id: str, name: str) -> Optional[LocalEntry]: ...

    def open_file(self, file_id: str) -> BinaryIO: ...

    def get_fingerprint(self, file_id: str) -> Optional[str]: ...

    def create_folder(self, parent_id: str, name: str) -> str: ...

    def rename_folder(self, folder_id: str, new_name: str) -> None: ...

    def move_folder(self, folder_id: str, new_parent_id: str, new_name: Optional[str] = None) -> None: ...

    def delete_folder(self, folder_id: str) -> None: ...

    def delete_file(self, file_id: str) -> None: ...

    def staging_path(self, parent_id: str, name: str) -> Path: ...

    def install_file(self, staged: Path, parent_id: str, name: str) -> str: ...

    def register_observer(self, observer: LocalChangeObserver) -> None: ...


class RemoteClient(Protocol):
    """Path-addressed remote object store with resumable upload sessions and a
    cursor-based change feed."""

    def create_folder(self, path: str) -> RemoteEntry: ...

    def move(self, from_path: str, to_path: str) -> RemoteEntry: ...

    def delete(self, path: str) -> None: ...

    def upload(self, path: str, data: bytes) -> RemoteEntry: ...

    def start_session(self, data: bytes) -> str: ...

    def append(self, session_id: str, data: bytes, offset: int) -> None: ...

    def finish(self, session_id: str, offset: int, path: str) -> RemoteEntry: ...

    def download_file(self, path: str, dest_path: Path) -> RemoteEntry: ...

    def download_range(self, path: str, start: int, end: int) -> bytes: ...

    def get_metadata(self, path: str) -> Optional[RemoteEntry]: ...

    def list_folder(self, path: str, recursive: bool = True) -> ListFolderResult: ...

    def list_folder_continue(self, cursor: str) -> ListFolderResult: ...

    def get_latest_cursor(self, path: str, recursive: bool = True) -> str: ...
