from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from treesync.core.config import DEFAULT_CONFIG_PATH, load_config
from treesync.core.logging_setup import setup_logging
from treesync.engine.errors import SyncError
from treesync.engine.service import SyncService, build_service

app = typer.Typer(add_completion=False, help="Bidirectional local tree <-> cloud folder sync.")
console = Console()


def _dump(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _service(config: Path) -> SyncService:
    cfg = load_config(config)
    setup_logging(cfg.logging.level, cfg.logging.file)
    return build_service(cfg)


ConfigOption = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config.yaml.")


@app.command("config-show")
def config_show(path: Path = ConfigOption):
    """Show current config.yaml."""
    cfg = load_config(path)
    _dump(cfg.model_dump())


@app.command()
def status(config: Path = ConfigOption):
    """Show configuration summary and queue counts."""
    service = _service(config)
    cfg = service.cfg
    stats = service.get_queue_stats()

    table = Table(title="treesync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(config))
    table.add_row("local_root", cfg.sync.local_root)
    table.add_row("remote_root", cfg.sync.remote_root)
    table.add_row("conflict_policy", cfg.sync.conflict_policy)
    table.add_row("workers", str(cfg.worker.worker_count))
    table.add_row("poll_interval_sec", str(cfg.sync.poll_interval_sec))
    for key in ("pending", "processing", "completed", "failed", "total"):
        table.add_row(f"tasks.{key}", str(stats.get(key, 0)))
    table.add_row("is_processing", "yes" if stats.get("is_processing") else "no")
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command("full-sync")
def full_sync(
    config: Path = ConfigOption,
    run: bool = typer.Option(False, "--run", help="Run a worker cycle right after enqueueing."),
):
    """Enqueue a full reconciliation of the remote root."""
    service = _service(config)
    out: dict[str, Any] = {"task_id": service.start_full_sync()}
    if run:
        out["worker"] = service.run_worker(0).model_dump()
    _dump(out)


@app.command("run-worker")
def run_worker(
    config: Path = ConfigOption,
    worker_id: int = typer.Option(0, "--worker-id", min=0, help="0 drains every task under the global lease."),
    loop: bool = typer.Option(False, "--loop", help="Keep running, sleeping next_run_in_sec between cycles."),
):
    """Run one worker cycle (or loop) and print the result JSON."""
    service = _service(config)
    while True:
        result = service.run_worker(worker_id)
        _dump(result.model_dump())
        if not loop:
            if result.status == "fatal":
                raise typer.Exit(2)
            return
        try:
            time.sleep(max(float(result.next_run_in_sec), 0))
        except KeyboardInterrupt:
            return


@app.command()
def notify(
    config: Path = ConfigOption,
    payload_file: Optional[Path] = typer.Option(
        None, "--payload", help="JSON file with change entries; omit to poll the change feed."
    ),
):
    """Feed remote changes into the queue."""
    service = _service(config)
    payload = json.loads(payload_file.read_text(encoding="utf-8")) if payload_file else None
    try:
        summary = service.notify_change(payload)
    except SyncError as e:
        _dump({"ok": False, "error": f"{type(e).__name__}: {e}"})
        raise typer.Exit(2)
    _dump({"ok": True, "summary": summary})


@app.command("failed")
def failed(config: Path = ConfigOption, limit: int = typer.Option(50, "--limit", min=1)):
    """List failed tasks with their latest error."""
    _dump(_service(config).list_failed(limit))


@app.command("reset-failed")
def reset_failed(
    config: Path = ConfigOption,
    task_id: Optional[int] = typer.Option(None, "--task-id", help="Reset a single task."),
):
    """Move failed tasks back to pending with a fresh attempt budget."""
    _dump({"ok": True, "reset": _service(config).reset_failed(task_id)})


@app.command()
def purge(config: Path = ConfigOption):
    """Delete completed and failed tasks past their retention."""
    _dump({"ok": True, "purged": _service(config).purge()})


@app.command()
def serve():
    """Run the web service with the worker scheduler."""
    from treesync.web.main import main as web_main

    web_main()


def main():
    app()


if __name__ == "__main__":
    main()
