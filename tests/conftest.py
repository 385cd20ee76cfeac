from __future__ import annotations

import uuid
from pathlib import Path
from typing import Optional

import pytest

from treesync.core.config import AppConfig
from treesync.engine import paths
from treesync.engine.db import init_db
from treesync.engine.errors import IncorrectOffsetError, RemoteConflictError, RemoteNotFoundError
from treesync.engine.fingerprint import fingerprint_bytes
from treesync.engine.models import ListFolderResult, RemoteEntry
from treesync.engine.service import SyncService
from treesync.providers.localfs import LocalFsStore


class FakeRemote:
    """In-memory path-addressed object store."""

    def __init__(self):
        self.items: dict[str, dict] = {}
        self.sessions: dict[str, bytearray] = {}
        self.errors: dict[str, list[Exception]] = {}
        self.calls: list[tuple] = []
        self.feed_pages: list[ListFolderResult] = []
        self.corrupt_downloads = False
        self.reported_hash: Optional[str] = None

    # -- helpers -----------------------------------------------------------

    def fail(self, op: str, *errors: Exception) -> None:
        self.errors.setdefault(op, []).extend(errors)

    def _maybe_fail(self, op: str) -> None:
        queued = self.errors.get(op)
        if queued:
            raise queued.pop(0)

    def _entry(self, item: dict) -> RemoteEntry:
        if item["tag"] == "folder":
            return RemoteEntry(
                tag="folder",
                path_display=item["path"],
                path_lower=paths.path_key(item["path"]),
                name=paths.base_name(item["path"]),
                id=item["id"],
            )
        return RemoteEntry(
            tag="file",
            path_display=item["path"],
            path_lower=paths.path_key(item["path"]),
            name=paths.base_name(item["path"]),
            id=item["id"],
            content_hash=fingerprint_bytes(item["data"]),
            size=len(item["data"]),
            rev=uuid.uuid4().hex[:9],
        )

    def put_folder(self, path: str) -> RemoteEntry:
        norm = paths.normalize(path)
        item = {"tag": "folder", "path": norm, "id": f"id:{uuid.uuid4().hex[:10]}"}
        self.items[paths.path_key(norm)] = item
        return self._entry(item)

    def put_file(self, path: str, data: bytes) -> RemoteEntry:
        norm = paths.normalize(path)
        existing = self.items.get(paths.path_key(norm))
        item = {
            "tag": "file",
            "path": norm,
            "data": bytes(data),
            "id": existing["id"] if existing else f"id:{uuid.uuid4().hex[:10]}",
        }
        self.items[paths.path_key(norm)] = item
        return self._entry(item)

    def data_of(self, path: str) -> Optional[bytes]:
        item = self.items.get(paths.path_key(path))
        return item["data"] if item and item["tag"] == "file" else None

    def entry(self, path: str) -> RemoteEntry:
        return self._entry(self.items[paths.path_key(path)])

    # -- RemoteClient ------------------------------------------------------

    def create_folder(self, path: str) -> RemoteEntry:
        self.calls.append(("create_folder", path))
        self._maybe_fail("create_folder")
        if paths.path_key(path) in self.items:
            raise RemoteConflictError("path/conflict/folder/", 409, "path/conflict/folder/")
        return self.put_folder(path)

    def move(self, from_path: str, to_path: str) -> RemoteEntry:
        self.calls.append(("move", from_path, to_path))
        self._maybe_fail("move")
        src = paths.path_key(from_path)
        if src not in self.items:
            raise RemoteNotFoundError(f"from_lookup/not_found/: {from_path}")
        moved = {}
        for key in list(self.items):
            if key == src or key.startswith(src + "/"):
                item = self.items.pop(key)
                item["path"] = paths.rebase(item["path"], from_path, to_path)
                moved[paths.path_key(item["path"])] = item
        self.items.update(moved)
        return self._entry(moved[paths.path_key(to_path)])

    def delete(self, path: str) -> None:
        self.calls.append(("delete", path))
        self._maybe_fail("delete")
        key = paths.path_key(path)
        if key not in self.items:
            raise RemoteNotFoundError(f"path_lookup/not_found/: {path}")
        for k in list(self.items):
            if k == key or k.startswith(key + "/"):
                del self.items[k]

    def upload(self, path: str, data: bytes) -> RemoteEntry:
        self.calls.append(("upload", path, len(data)))
        self._maybe_fail("upload")
        entry = self.put_file(path, data)
        if self.reported_hash is not None:
            entry.content_hash = self.reported_hash
        return entry

    def start_session(self, data: bytes) -> str:
        self.calls.append(("start_session", len(data)))
        self._maybe_fail("start_session")
        session_id = uuid.uuid4().hex
        self.sessions[session_id] = bytearray(data)
        return session_id

    def append(self, session_id: str, data: bytes, offset: int) -> None:
        self.calls.append(("append", offset, len(data)))
        self._maybe_fail("append")
        buf = self.sessions[session_id]
        if offset != len(buf):
            raise IncorrectOffsetError("lookup_failed/incorrect_offset/", len(buf))
        buf.extend(data)

    def finish(self, session_id: str, offset: int, path: str) -> RemoteEntry:
        self.calls.append(("finish", offset, path))
        self._maybe_fail("finish")
        buf = self.sessions.pop(session_id)
        if offset != len(buf):
            raise IncorrectOffsetError("lookup_failed/incorrect_offset/", len(buf))
        return self.put_file(path, bytes(buf))

    def _payload(self, path: str) -> bytes:
        data = self.data_of(path)
        if data is None:
            raise RemoteNotFoundError(f"path/not_found/: {path}")
        if self.corrupt_downloads and data:
            return bytes([data[0] ^ 0xFF]) + data[1:]
        return data

    def download_file(self, path: str, dest_path: Path) -> RemoteEntry:
        self.calls.append(("download_file", path))
        self._maybe_fail("download_file")
        Path(dest_path).write_bytes(self._payload(path))
        return self.entry(path)

    def download_range(self, path: str, start: int, end: int) -> bytes:
        self.calls.append(("download_range", start, end))
        self._maybe_fail("download_range")
        return self._payload(path)[start:end]

    def get_metadata(self, path: str) -> Optional[RemoteEntry]:
        item = self.items.get(paths.path_key(path))
        return self._entry(item) if item else None

    def list_folder(self, path: str, recursive: bool = True) -> ListFolderResult:
        self.calls.append(("list_folder", path))
        root = paths.path_key(path)
        entries = [
            self._entry(item)
            for key, item in sorted(self.items.items())
            if key == root or key.startswith(root + "/")
        ]
        return ListFolderResult(entries=entries, cursor="cursor-full", has_more=False)

    def list_folder_continue(self, cursor: str) -> ListFolderResult:
        self.calls.append(("list_folder_continue", cursor))
        self._maybe_fail("list_folder_continue")
        if self.feed_pages:
            return self.feed_pages.pop(0)
        return ListFolderResult(entries=[], cursor=cursor, has_more=False)

    def get_latest_cursor(self, path: str, recursive: bool = True) -> str:
        self.calls.append(("get_latest_cursor", path))
        return "cursor-0"


@pytest.fixture
def cfg(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.database.path = str(tmp_path / "runtime" / "treesync.db")
    cfg.logging.file = str(tmp_path / "runtime" / "treesync.log")
    cfg.sync.local_root = str(tmp_path / "local")
    cfg.sync.remote_root = "/root"
    cfg.worker.lease_grace_sec = 0
    cfg.transfer.backoff_sec = 0
    return cfg


@pytest.fixture
def db_path(cfg: AppConfig) -> str:
    init_db(cfg.database.path)
    return cfg.database.path


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def local(cfg: AppConfig) -> LocalFsStore:
    return LocalFsStore(cfg.sync.local_root)


@pytest.fixture
def service(cfg: AppConfig, remote: FakeRemote, local: LocalFsStore) -> SyncService:
    return SyncService(cfg, remote, local, lease_owner="test-owner", sleep=lambda _s: None)
