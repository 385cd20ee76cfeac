from pathlib import Path

import pytest
from pydantic import ValidationError

from treesync.core import config as config_module


def test_load_config_creates_from_template(monkeypatch, tmp_path: Path):
    template = tmp_path / "config.yaml.example"
    target = tmp_path / "config.yaml"
    runtime_dir = tmp_path / "runtime"
    template.write_text(
        "\n".join(
            [
                "auth:",
                "  app_key: tpl_app_key",
                "  app_secret: tpl_app_secret",
                "sync:",
                "  local_root: /tmp/local_root",
                "  remote_root: /Team/Docs",
                "  conflict_policy: local_wins",
                "worker:",
                "  batch_size: 25",
                "logging:",
                f"  file: {runtime_dir / 'service.log'}",
                "database:",
                f"  path: {runtime_dir / 'service.db'}",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", template)
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.auth.app_key == "tpl_app_key"
    assert cfg.webhook_secret() == "tpl_app_secret"
    assert cfg.sync.remote_root == "/Team/Docs"
    assert cfg.sync.conflict_policy == "local_wins"
    assert cfg.worker.batch_size == 25
    assert cfg.worker.idle_delay_sec == 30


def test_load_config_creates_defaults_when_template_missing(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", tmp_path / "missing-template.yaml")
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.sync.conflict_policy == "remote_wins"
    assert cfg.transfer.chunk_size == 4 * 1024 * 1024
    assert cfg.transfer.inline_threshold == 8 * 1024 * 1024
    assert cfg.worker.lease_ttl_sec == 300


def test_load_config_falls_back_when_template_invalid(monkeypatch, tmp_path: Path):
    template = tmp_path / "config.yaml.example"
    target = tmp_path / "config.yaml"
    template.write_text("auth: [invalid\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", template)
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.sync.conflict_policy == "remote_wins"


def test_save_then_load_round_trip(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)
    cfg = config_module.AppConfig()
    cfg.webhook.secret = "hook-secret"
    cfg.web_port = 9001

    config_module.save_config(cfg, target)
    loaded = config_module.load_config(target)

    assert loaded.webhook_secret() == "hook-secret"
    assert loaded.web_port == 9001


def test_unknown_conflict_policy_is_rejected(tmp_path: Path):
    with pytest.raises(ValidationError):
        config_module.AppConfig.model_validate({"sync": {"conflict_policy": "newest_wins"}})
