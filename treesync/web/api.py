from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ValidationError

from treesync.core.config import load_config
from treesync.engine.errors import FatalSyncError, SyncError
from treesync.engine.interfaces import LocalChangeObserver
from treesync.engine.service import SyncService, build_service

router = APIRouter(prefix="/api")
logger = logging.getLogger("treesync.web")

SERVICE_LOCK = threading.Lock()
SCHEDULER_STATE_LOCK = threading.Lock()
SCHEDULER_MIN_INTERVAL_SEC = 10
SCHEDULER_MAX_INTERVAL_SEC = 86400

LOCAL_EVENTS: dict[str, Callable[[LocalChangeObserver, str, bool], Optional[int]]] = {
    "folder_created": lambda obs, local_id, _thumb: obs.on_folder_created(local_id),
    "folder_renamed": lambda obs, local_id, _thumb: obs.on_folder_renamed(local_id),
    "folder_moved": lambda obs, local_id, _thumb: obs.on_folder_moved(local_id),
    "folder_deleted": lambda obs, local_id, _thumb: obs.on_folder_deleted(local_id),
    "file_added": lambda obs, local_id, thumb: obs.on_file_added(local_id, thumbnail=thumb),
    "file_updated": lambda obs, local_id, thumb: obs.on_file_updated(local_id, thumbnail=thumb),
    "file_renamed": lambda obs, local_id, thumb: obs.on_file_moved(local_id, thumbnail=thumb),
    "file_moved": lambda obs, local_id, thumb: obs.on_file_moved(local_id, thumbnail=thumb),
    "file_deleted": lambda obs, local_id, _thumb: obs.on_file_deleted(local_id),
}

_service: Optional[SyncService] = None
_scheduler_tasks: list[asyncio.Task] = []
_scheduler_stop_event: asyncio.Event | None = None
_scheduler_state: dict[str, object] = {
    "running": False,
    "workers": {},
    "poll_enabled": False,
    "poll_interval_sec": 0,
    "last_poll_at": None,
    "last_poll_result": None,
    "last_error": None,
    "cycle_count": 0,
}


class LocalEvent(BaseModel):
    event: str
    local_id: str
    thumbnail: bool = False


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso_from_ts(ts: object) -> str | None:
    if not isinstance(ts, (int, float)):
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _sanitize_poll_interval(raw_value: object) -> int:
    try:
        raw = int(raw_value or 0)
    except (TypeError, ValueError):
        return 0
    if raw <= 0:
        return 0
    return min(max(raw, SCHEDULER_MIN_INTERVAL_SEC), SCHEDULER_MAX_INTERVAL_SEC)


def _build_service() -> SyncService:
    return build_service(load_config())


def get_service() -> SyncService:
    global _service
    with SERVICE_LOCK:
        if _service is None:
            _service = _build_service()
        return _service


def reset_service() -> None:
    global _service
    with SERVICE_LOCK:
        _service = None


def worker_ids(worker_count: int) -> list[int]:
    """A single worker takes the global scope; several get scopes 1..N."""
    if worker_count <= 1:
        return [0]
    return list(range(1, worker_count + 1))


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, (signature or "").strip().lower())


def _scheduler_state_update(**kwargs) -> None:
    with SCHEDULER_STATE_LOCK:
        _scheduler_state.update(kwargs)


def _record_worker(worker_id: int, **kwargs) -> None:
    with SCHEDULER_STATE_LOCK:
        workers = dict(_scheduler_state["workers"])  # type: ignore[arg-type]
        entry = dict(workers.get(worker_id) or {})
        entry.update(kwargs)
        workers[worker_id] = entry
        _scheduler_state["workers"] = workers


def _scheduler_state_snapshot() -> dict[str, object]:
    with SCHEDULER_STATE_LOCK:
        snap = dict(_scheduler_state)
        workers = {k: dict(v) for k, v in snap["workers"].items()}  # type: ignore[union-attr]

    now_ts = time.time()
    out_workers = {}
    for worker_id, entry in workers.items():
        next_run_at = entry.get("next_run_at")
        out_workers[str(worker_id)] = {
            "last_status": entry.get("last_status"),
            "last_finished_at": _iso_from_ts(entry.get("last_finished_at")),
            "next_run_at": _iso_from_ts(next_run_at),
            "next_run_in_sec": max(int(next_run_at - now_ts), 0) if isinstance(next_run_at, (int, float)) else None,
            "last_error": entry.get("last_error"),
        }
    return {
        "running": bool(snap.get("running")),
        "workers": out_workers,
        "poll_enabled": bool(snap.get("poll_enabled")),
        "poll_interval_sec": snap.get("poll_interval_sec"),
        "last_poll_at": _iso_from_ts(snap.get("last_poll_at")),
        "last_poll_result": snap.get("last_poll_result"),
        "last_error": snap.get("last_error"),
        "cycle_count": snap.get("cycle_count"),
    }


async def _wait_stop_or_timeout(stop_event: asyncio.Event, timeout_sec: float) -> bool:
    if timeout_sec <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_sec)
        return True
    except asyncio.TimeoutError:
        return False


async def _worker_loop(worker_id: int, stop_event: asyncio.Event) -> None:
    logger.info("scheduler_worker_started worker=%s", worker_id)
    idle_delay = 30.0
    while not stop_event.is_set():
        try:
            service = get_service()
            idle_delay = float(service.cfg.worker.idle_delay_sec)
            result = await asyncio.to_thread(service.run_worker, worker_id)
            delay = float(result.next_run_in_sec)
            with SCHEDULER_STATE_LOCK:
                _scheduler_state["cycle_count"] = int(_scheduler_state.get("cycle_count") or 0) + 1
            _record_worker(
                worker_id,
                last_status=result.status,
                last_finished_at=result.finished_at,
                next_run_at=time.time() + delay,
                last_error=result.error,
            )
            if result.status == "fatal":
                logger.error("scheduler_worker_fatal worker=%s error=%s", worker_id, result.error)
                delay = max(delay, idle_delay)
        except Exception as e:
            logger.exception("scheduler_worker_failed worker=%s", worker_id)
            delay = idle_delay
            _record_worker(worker_id, last_status="error", last_error=str(e), next_run_at=time.time() + delay)
        if delay <= 0:
            await asyncio.sleep(0)
            continue
        await _wait_stop_or_timeout(stop_event, delay)
    logger.info("scheduler_worker_stopped worker=%s", worker_id)


async def _poll_loop(interval_sec: int, stop_event: asyncio.Event) -> None:
    logger.info("scheduler_poll_started interval_sec=%s", interval_sec)
    while not await _wait_stop_or_timeout(stop_event, interval_sec):
        try:
            summary = await asyncio.to_thread(get_service().notify_change)
            _scheduler_state_update(last_poll_at=time.time(), last_poll_result=summary, last_error=None)
        except Exception as e:
            logger.exception("scheduler_poll_failed")
            _scheduler_state_update(last_poll_at=time.time(), last_poll_result=None, last_error=str(e))
    logger.info("scheduler_poll_stopped")


def start_scheduler() -> None:
    global _scheduler_tasks, _scheduler_stop_event
    if any(not t.done() for t in _scheduler_tasks):
        return

    cfg = get_service().cfg
    stop_event = asyncio.Event()
    tasks = [
        asyncio.create_task(_worker_loop(worker_id, stop_event), name=f"treesync_worker_{worker_id}")
        for worker_id in worker_ids(cfg.worker.worker_count)
    ]
    poll_interval = _sanitize_poll_interval(cfg.sync.poll_interval_sec)
    if poll_interval > 0:
        tasks.append(asyncio.create_task(_poll_loop(poll_interval, stop_event), name="treesync_poll"))

    _scheduler_stop_event = stop_event
    _scheduler_tasks = tasks
    _scheduler_state_update(running=True, poll_enabled=poll_interval > 0, poll_interval_sec=poll_interval)
    logger.info("scheduler_started workers=%s poll_interval_sec=%s", len(tasks) - (poll_interval > 0), poll_interval)


async def stop_scheduler() -> None:
    global _scheduler_tasks, _scheduler_stop_event
    if _scheduler_stop_event is not None:
        _scheduler_stop_event.set()

    for task in _scheduler_tasks:
        try:
            await task
        except Exception:
            logger.exception("scheduler_stop_error task=%s", task.get_name())

    _scheduler_tasks = []
    _scheduler_stop_event = None
    _scheduler_state_update(running=False)
    logger.info("scheduler_stopped")


def _notify_in_background(payload: Optional[dict]) -> None:
    try:
        summary = get_service().notify_change(payload)
        logger.info("webhook_notify_done summary=%s", summary)
    except Exception:
        logger.exception("webhook_notify_failed")


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/webhook", response_class=PlainTextResponse)
def webhook_challenge(challenge: str = ""):
    return PlainTextResponse(challenge, headers={"X-Content-Type-Options": "nosniff"})


@router.post("/webhook")
async def webhook_notify(request: Request, background: BackgroundTasks):
    cfg = get_service().cfg
    if not cfg.webhook.enabled:
        raise HTTPException(status_code=404, detail="webhook_disabled")
    secret = cfg.webhook_secret()
    if not secret:
        raise HTTPException(status_code=503, detail="webhook_secret_missing")

    body = await request.body()
    if not verify_signature(secret, body, request.headers.get("X-Dropbox-Signature", "")):
        logger.warning("webhook_signature_rejected")
        raise HTTPException(status_code=403, detail="invalid_signature")

    background.add_task(_notify_in_background, None)
    return {"ok": True, "accepted": True}


@router.post("/changes")
def post_changes(payload: Optional[dict] = None):
    try:
        summary = get_service().notify_change(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"invalid_entries: {e}")
    except FatalSyncError as e:
        raise HTTPException(status_code=503, detail=f"{type(e).__name__}: {e}")
    except SyncError as e:
        raise HTTPException(status_code=400, detail=f"{type(e).__name__}: {e}")
    return {"ok": True, "summary": summary}


@router.post("/events/local")
def post_local_event(event: LocalEvent):
    handler = LOCAL_EVENTS.get(event.event)
    if handler is None:
        raise HTTPException(status_code=400, detail=f"unknown_event: {event.event}")
    task_id = handler(get_service().local_events, event.local_id, event.thumbnail)
    return {"ok": True, "task_id": task_id}


@router.post("/actions/full-sync")
def full_sync():
    task_id = get_service().start_full_sync()
    return {"ok": True, "task_id": task_id}


@router.post("/actions/run-worker")
def run_worker(worker_id: int = 0):
    result = get_service().run_worker(worker_id)
    return result.model_dump()


@router.get("/queue/stats")
def queue_stats():
    return {
        "checked_at": _now_iso(),
        **get_service().get_queue_stats(),
    }


@router.get("/queue/failed")
def queue_failed(limit: int = 50):
    limit = min(max(int(limit), 1), 500)
    items = get_service().list_failed(limit)
    return {"count": len(items), "items": items}


@router.post("/queue/reset-failed")
def queue_reset_failed(task_id: Optional[int] = None):
    reset = get_service().reset_failed(task_id)
    return {"ok": True, "reset": reset}


@router.get("/status/scheduler")
def scheduler_status() -> dict[str, Any]:
    return {
        "ok": True,
        "checked_at": _now_iso(),
        **_scheduler_state_snapshot(),
    }
