from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

ROOT_FOLDER_ID = "0"

ACTIONS = ("create", "rename", "delete", "move", "update", "full_sync")
TARGET_TYPES = ("folder", "file", "system")
DIRECTIONS = ("local_to_remote", "remote_to_local")
STATUSES = ("pending", "processing", "completed", "failed")

LOCAL_TO_REMOTE = "local_to_remote"
REMOTE_TO_LOCAL = "remote_to_local"


class Priority:
    SYSTEM = 1
    FOLDER = 5
    FILE = 10
    THUMBNAIL = 15


def now_iso() -> str:
    # Microsecond precision keeps created_at ordering stable within a batch.
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class FolderMapping(BaseModel):
    local_folder_id: str
    remote_path: str
    path_hash: str
    fingerprint: str = ""
    last_synced_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "FolderMapping":
        return cls(
            local_folder_id=row["local_folder_id"],
            remote_path=row["remote_path"],
            path_hash=row["path_hash"],
            fingerprint=row["fingerprint"] or "",
            last_synced_at=row["last_synced_at"],
        )


class FileMapping(BaseModel):
    local_file_id: str
    remote_path: str
    path_hash: str
    remote_object_id: Optional[str] = None
    content_fingerprint: str = ""
    size: int = 0
    last_synced_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "FileMapping":
        return cls(
            local_file_id=row["local_file_id"],
            remote_path=row["remote_path"],
            path_hash=row["path_hash"],
            remote_object_id=row["remote_object_id"],
            content_fingerprint=row["content_fingerprint"] or "",
            size=int(row["size"] or 0),
            last_synced_at=row["last_synced_at"],
        )


class Task(BaseModel):
    id: int
    action: str
    target_type: str
    target_id: str
    direction: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = Priority.FILE
    status: str = "pending"
    attempts: int = 0
    error: str = ""
    worker_id: int = 0
    created_at: str = ""
    updated_at: str = ""

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.action, self.target_type, self.target_id, self.direction)

    @classmethod
    def from_row(cls, row) -> "Task":
        raw = row["payload"]
        try:
            payload = json.loads(raw) if raw else {}
        except ValueError:
            payload = {"_raw": raw}
        return cls(
            id=row["id"],
            action=row["action"],
            target_type=row["target_type"],
            target_id=row["target_id"],
            direction=row["direction"],
            payload=payload if isinstance(payload, dict) else {"_raw": payload},
            priority=row["priority"],
            status=row["status"],
            attempts=row["attempts"],
            error=row["error"] or "",
            worker_id=row["worker_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class Cursor(BaseModel):
    root_path: str
    opaque_cursor: str
    has_more: bool = False
    updated_at: str = ""


class Lease(BaseModel):
    scope: str
    owner: str
    acquired_at: float
    ttl: int

    def is_stale(self, now: float) -> bool:
        return now - self.acquired_at > self.ttl


class RemoteEntry(BaseModel):
    """One item as reported by the remote listing/metadata endpoints."""

    tag: Literal["folder", "file", "deleted"]
    path_display: str
    path_lower: str = ""
    name: str = ""
    id: Optional[str] = None
    content_hash: Optional[str] = None
    size: int = 0
    rev: Optional[str] = None


class ChangeEntry(BaseModel):
    kind: Literal["created", "modified", "deleted"]
    item_type: Optional[Literal["folder", "file"]] = None
    path: str
    remote_id: Optional[str] = None
    content_hash: Optional[str] = None
    size: int = 0

    @classmethod
    def from_remote(cls, entry: RemoteEntry) -> "ChangeEntry":
        if entry.tag == "deleted":
            return cls(kind="deleted", path=entry.path_display)
        # The change feed does not distinguish creation from modification.
        return cls(
            kind="modified",
            item_type=entry.tag,
            path=entry.path_display,
            remote_id=entry.id,
            content_hash=entry.content_hash,
            size=entry.size,
        )


class LocalEntry(BaseModel):
    id: str
    parent_id: Optional[str] = None
    name: str
    is_folder: bool
    size: int = 0


class ListFolderResult(BaseModel):
    entries: list[RemoteEntry] = Field(default_factory=list)
    cursor: str = ""
    has_more: bool = False
