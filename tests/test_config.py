"""Tests for settings layering and TOML persistence."""

import argparse
from pathlib import Path

import pytest

from mlsync.config import SyncSettings, cli_overrides_from_args


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("MLSYNC_WORKERS", "MLSYNC_LOG_LEVEL", "MLSYNC_DB_PATH", "MLSYNC_DUPLICATE_DETECTION"):
        monkeypatch.delenv(key, raising=False)


def test_defaults(tmp_path):
    cfg = SyncSettings.load(config_path=tmp_path / "missing.toml")
    assert cfg.log_level == "INFO"
    assert cfg.supported_extensions == ["mp3", "m4a", "wav", "aac", "aiff", "flac"]
    assert cfg.mtime_tolerance_s == 1.0
    assert cfg.duplicate_detection is True
    assert cfg.auto_scan_seconds == 3600
    assert 1 <= cfg.effective_workers <= 4
    assert cfg.config_path == tmp_path / "missing.toml"


def test_toml_then_env_then_cli(tmp_path, monkeypatch):
    cfg_file = tmp_path / "config.toml"
    cfg_file.write_text('workers = 2\nlog_level = "DEBUG"\nauto_scan_interval = "every_15_minutes"\n')

    cfg = SyncSettings.load(config_path=cfg_file)
    assert cfg.workers == 2
    assert cfg.log_level == "DEBUG"
    assert cfg.auto_scan_seconds == 15 * 60

    monkeypatch.setenv("MLSYNC_WORKERS", "3")
    cfg = SyncSettings.load(config_path=cfg_file)
    assert cfg.workers == 3
    assert cfg.log_level == "DEBUG"

    cfg = SyncSettings.load(config_path=cfg_file, overrides={"workers": 6, "log_level": None})
    assert cfg.workers == 6
    assert cfg.log_level == "DEBUG"


def test_only_on_launch_has_no_interval():
    cfg = SyncSettings(auto_scan_interval="only_on_launch")
    assert cfg.auto_scan_seconds is None


def test_invalid_interval_rejected():
    with pytest.raises(ValueError):
        SyncSettings(auto_scan_interval="every_5_minutes")


def test_write_round_trip(tmp_path):
    target = tmp_path / "nested" / "config.toml"
    cfg = SyncSettings(workers=2, db_path=str(tmp_path / "lib.db"), duplicate_detection=False)
    written = cfg.write(target)
    assert written == target

    text = target.read_text()
    assert "config_path" not in text
    assert "log_json" not in text  # None values are not written

    again = SyncSettings.load(config_path=target)
    assert again.workers == 2
    assert again.duplicate_detection is False
    assert again.resolved_db_path == tmp_path / "lib.db"


def test_cli_overrides_from_args_picks_known_keys():
    ns = argparse.Namespace(db_path="/tmp/x.db", workers=None, cmd="sync", json=True)
    overrides = cli_overrides_from_args(ns)
    assert overrides == {"db_path": "/tmp/x.db", "workers": None}
    cfg = SyncSettings.load(config_path=Path("/nonexistent/config.toml"), overrides=overrides)
    assert cfg.db_path == "/tmp/x.db"
