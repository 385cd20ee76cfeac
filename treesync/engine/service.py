from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Any, Callable, Optional

from treesync.core.config import AppConfig

from .cursor_store import CursorStore
from .db import init_db
from .errors import TaskValidationError
from .handlers import FileTaskHandler, FolderTaskHandler
from .interfaces import LocalStore, RemoteClient
from .lease import LeaseManager, scope_for
from .local_events import LocalEventHandler
from .mapping_store import MappingStore
from .models import REMOTE_TO_LOCAL, ChangeEntry, Priority
from .reconciler import Reconciler
from .task_queue import TaskQueue
from .transfer import TransferEngine
from .worker import WorkerLoop, WorkerRunResult

logger = logging.getLogger("treesync.service")

FOLDER_ACTIONS = ("create", "rename", "move", "delete")
FILE_ACTIONS = ("create", "update", "move", "rename", "delete")


class SyncService:
    """Wires the engine components for one local root <-> remote root pair
    and exposes the operations hosts call."""

    def __init__(
        self,
        cfg: AppConfig,
        remote: RemoteClient,
        local: LocalStore,
        lease_owner: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self.remote = remote
        self.local = local
        db_path = cfg.database.path
        init_db(db_path)

        self.mappings = MappingStore(db_path, cfg.sync.remote_root)
        self.queue = TaskQueue(db_path, max_retries=cfg.worker.max_retries)
        self.cursors = CursorStore(db_path)
        self.leases = LeaseManager(db_path, owner=lease_owner, grace_sec=cfg.worker.lease_grace_sec, clock=clock, sleep=sleep)
        self.transfer = TransferEngine(
            remote,
            local,
            inline_threshold=cfg.transfer.inline_threshold,
            chunk_size=cfg.transfer.chunk_size,
            max_attempts=cfg.transfer.max_attempts,
            backoff_sec=cfg.transfer.backoff_sec,
            sleep=sleep,
        )
        self.reconciler = Reconciler(
            remote,
            local,
            self.mappings,
            self.queue,
            self.cursors,
            remote_root=cfg.sync.remote_root,
            conflict_policy=cfg.sync.conflict_policy,
            hidden_prefix=cfg.sync.hidden_prefix,
            max_feed_pages=cfg.sync.max_feed_pages,
        )
        self.local_events = LocalEventHandler(local, self.mappings, self.queue, hidden_prefix=cfg.sync.hidden_prefix)
        local.register_observer(self.local_events)

        folders = FolderTaskHandler(remote, local, self.mappings)
        files = FileTaskHandler(remote, local, self.mappings, self.transfer)
        handlers: dict = {("system", "full_sync"): self.reconciler}
        handlers.update({("folder", action): folders for action in FOLDER_ACTIONS})
        handlers.update({("file", action): files for action in FILE_ACTIONS})

        self.worker = WorkerLoop(
            self.queue,
            self.leases,
            handlers,
            batch_size=cfg.worker.batch_size,
            lease_ttl_sec=cfg.worker.lease_ttl_sec,
            idle_delay_sec=cfg.worker.idle_delay_sec,
            completed_retention=timedelta(days=cfg.worker.completed_retention_days),
        )

    def notify_change(self, payload: Optional[dict[str, Any]] = None) -> dict[str, int]:
        """Apply a pushed batch of change entries, or pull the change feed.

        A payload with `entries` is applied as-is; its optional `cursor` is
        stored only after the resulting tasks are enqueued.
        """
        if payload and "entries" in payload:
            raw = payload.get("entries") or []
            if not isinstance(raw, list):
                raise TaskValidationError("entries_not_a_list")
            entries = [ChangeEntry.model_validate(item) for item in raw]
            summary = self.reconciler.apply_entries(entries)
            if payload.get("cursor"):
                self.cursors.save(self.cfg.sync.remote_root, str(payload["cursor"]), bool(payload.get("has_more")))
            return summary
        return self.reconciler.process_change_feed()

    def run_worker(self, worker_id: int = 0) -> WorkerRunResult:
        return self.worker.run(worker_id)

    def start_full_sync(self) -> int:
        task_id = self.queue.enqueue("full_sync", "system", "root", REMOTE_TO_LOCAL, {}, Priority.SYSTEM)
        logger.info("full_sync_enqueued task=%s", task_id)
        return task_id

    def get_queue_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = dict(self.queue.stats())
        scopes = [scope_for(0)] + [scope_for(i) for i in range(1, self.cfg.worker.worker_count + 1)]
        stats["is_processing"] = any(self.leases.holder(scope) is not None for scope in scopes)
        return stats

    def list_failed(self, limit: int = 50) -> list[dict[str, Any]]:
        return [
            {
                "id": t.id,
                "action": t.action,
                "target_type": t.target_type,
                "target_id": t.target_id,
                "direction": t.direction,
                "attempts": t.attempts,
                "error": t.error,
                "path": t.payload.get("path"),
                "updated_at": t.updated_at,
            }
            for t in self.queue.list_failed(limit)
        ]

    def reset_failed(self, task_id: Optional[int] = None) -> int:
        return self.queue.reset_failed(task_id)

    def purge(self) -> dict[str, int]:
        return {
            "completed": self.queue.purge_completed(timedelta(days=self.cfg.worker.completed_retention_days)),
            "failed": self.queue.purge_failed(timedelta(days=self.cfg.worker.failed_retention_days)),
        }


def build_service(cfg: AppConfig) -> SyncService:
    from treesync.providers.dropbox import DropboxClient
    from treesync.providers.localfs import LocalFsStore

    remote = DropboxClient(
        app_key=cfg.auth.app_key,
        app_secret=cfg.auth.app_secret,
        access_token=cfg.auth.access_token,
        refresh_token=cfg.auth.refresh_token,
        token_file=cfg.auth.token_file,
        timeout=int(cfg.auth.timeout_sec),
        max_retries=cfg.auth.max_retries,
        api_base=cfg.auth.api_base,
        content_base=cfg.auth.content_base,
    )
    local = LocalFsStore(cfg.sync.local_root)
    return SyncService(cfg, remote, local)
