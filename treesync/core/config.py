from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

PROJECT_ROOT = Path(os.environ.get("TREESYNC_HOME") or Path.home() / ".treesync")
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"

MIB = 1024 * 1024


class RemoteAuthConfig(BaseModel):
    app_key: str = ""
    app_secret: str = ""
    access_token: str = ""
    refresh_token: str = ""
    # Refreshed access tokens are persisted here, if set.
    token_file: str = ""
    timeout_sec: int = 30
    api_base: str = "https://api.dropboxapi.com/2"
    content_base: str = "https://content.dropboxapi.com/2"
    max_retries: int = Field(default=3, ge=0, le=10)


class SyncConfig(BaseModel):
    local_root: str = str(PROJECT_ROOT / "data")
    remote_root: str = "/Docs"
    # Applied when both sides changed since the last confirmed sync:
    # - remote_wins: remote content replaces the local copy
    # - local_wins: local copy is kept, the conflict is only logged
    conflict_policy: Literal["remote_wins", "local_wins"] = "remote_wins"
    hidden_prefix: str = "."
    # 0 means disabled; positive values are seconds between change-feed polls.
    poll_interval_sec: int = Field(default=0, ge=0, le=86400)
    max_feed_pages: int = Field(default=50, ge=1)


class WorkerConfig(BaseModel):
    worker_count: int = Field(default=1, ge=1, le=16)
    batch_size: int = Field(default=10, ge=1, le=500)
    max_retries: int = Field(default=3, ge=1, le=20)
    lease_ttl_sec: int = Field(default=300, ge=1)
    lease_grace_sec: float = Field(default=1.0, ge=0)
    idle_delay_sec: int = Field(default=30, ge=0)
    completed_retention_days: int = Field(default=7, ge=0)
    failed_retention_days: int = Field(default=30, ge=0)


class TransferConfig(BaseModel):
    inline_threshold: int = Field(default=8 * MIB, ge=1)
    chunk_size: int = Field(default=4 * MIB, ge=1)
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_sec: float = Field(default=1.0, ge=0)


class WebhookConfig(BaseModel):
    enabled: bool = True
    # Falls back to auth.app_secret when empty.
    secret: str = ""


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "service.db")


class AppConfig(BaseModel):
    auth: RemoteAuthConfig = Field(default_factory=RemoteAuthConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Web API
    web_bind_host: str = "127.0.0.1"
    web_port: int = 8765

    def webhook_secret(self) -> str:
        return self.webhook.secret or self.auth.app_secret


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.sync.local_root).mkdir(parents=True, exist_ok=True)


def _dump_yaml(cfg: AppConfig) -> str:
    return yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False)


def _bootstrap_config(path: Path) -> AppConfig:
    """Create `path` from the example template, or from defaults when the
    template is missing or does not validate."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
        template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
        try:
            cfg = AppConfig.model_validate(yaml.safe_load(template_text) or {})
        except (yaml.YAMLError, ValidationError):
            cfg = None
        if cfg is not None:
            path.write_text(template_text, encoding="utf-8")
            return cfg

    cfg = AppConfig()
    path.write_text(_dump_yaml(cfg), encoding="utf-8")
    return cfg


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    if path.exists():
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        cfg = AppConfig.model_validate(data)
    else:
        cfg = _bootstrap_config(path)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_dump_yaml(cfg), encoding="utf-8")
