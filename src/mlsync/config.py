"""Layered settings: defaults, then config.toml, then MLSYNC_* env vars, then CLI flags."""
from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from tomlkit import dumps as toml_dumps

from .formats import DEFAULT_EXTENSIONS


DEFAULT_CONFIG_PATH = Path("~/.config/mlsync/config.toml").expanduser()

AutoScanInterval = Literal["every_15_minutes", "every_30_minutes", "every_60_minutes", "only_on_launch"]

_INTERVAL_SECONDS: Dict[str, Optional[int]] = {
    "every_15_minutes": 15 * 60,
    "every_30_minutes": 30 * 60,
    "every_60_minutes": 60 * 60,
    "only_on_launch": None,
}

# argparse dest names that map 1:1 onto settings fields
_CLI_KEYS = (
    "log_level",
    "log_json",
    "db_path",
    "workers",
    "metadata_workers",
    "batch_size",
    "mtime_tolerance_s",
    "auto_scan_interval",
)


class SyncSettings(BaseSettings):
    log_level: str = Field(default="INFO", description="Console log level")
    log_json: Optional[str] = Field(default=None, description="JSON lines log file")

    db_path: str = Field(default="~/.local/share/mlsync/library.db", description="Library catalog (sqlite)")

    workers: Optional[int] = Field(default=None, description="Folders scanned at once; unset = min(4, CPU cores)")
    metadata_workers: int = Field(default=4, description="Tag reads in flight per folder")
    batch_size: Optional[int] = Field(default=None, description="Tracks per DB write; unset = 50, or 100 above 1000 files")
    supported_extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    mtime_tolerance_s: float = Field(default=1.0, description="Root mtime drift still treated as unchanged")
    auto_scan_interval: AutoScanInterval = Field(default="every_60_minutes")

    duplicate_detection: bool = Field(default=True, description="Run the duplicate pass after a sync that scanned something")

    # Where this instance was loaded from; never written back
    config_path: Path = Field(default=DEFAULT_CONFIG_PATH, exclude=True)

    model_config = SettingsConfigDict(env_prefix="MLSYNC_", extra="ignore")

    @property
    def effective_workers(self) -> int:
        return self.workers or min(4, os.cpu_count() or 1)

    @property
    def auto_scan_seconds(self) -> Optional[int]:
        return _INTERVAL_SECONDS[self.auto_scan_interval]

    @property
    def resolved_db_path(self) -> Path:
        return Path(self.db_path).expanduser()

    @staticmethod
    def _read_toml(path: Path) -> Dict[str, Any]:
        if not path.is_file():
            return {}
        with path.open("rb") as f:
            return tomllib.load(f)

    @classmethod
    def load(
        cls,
        *,
        config_path: Optional[Path] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "SyncSettings":
        """Build settings from every layer.

        Keys in `overrides` whose value is None are skipped, so unset CLI
        flags fall through to the lower layers.
        """
        path = config_path or DEFAULT_CONFIG_PATH
        values = cls(**cls._read_toml(path)).model_dump()
        # pydantic-settings ranks init kwargs above env, so env has to be layered by hand
        from_env = cls()
        values.update({k: getattr(from_env, k) for k in from_env.model_fields_set})
        values.update({k: v for k, v in (overrides or {}).items() if v is not None})
        settings = cls(**values)
        settings.config_path = path
        return settings

    def to_toml(self) -> str:
        # TOML has no null; unset optionals are simply omitted
        data = {k: v for k, v in self.model_dump().items() if v is not None}
        return toml_dumps(data)

    def write(self, path: Optional[Path] = None) -> Path:
        target = path or self.config_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.to_toml(), encoding="utf-8")
        return target


def cli_overrides_from_args(args: Any) -> Dict[str, Any]:
    """Pick the settings-backed attributes off an argparse Namespace."""
    return {k: getattr(args, k) for k in _CLI_KEYS if hasattr(args, k)}
