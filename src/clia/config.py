"""Configuration loading from environment variables and clia.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from datetime import timedelta

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from clia.memory.types import MemoryConfig

APP_NAME = "clia"
_CONFIG_FILENAME = "clia.toml"


def get_config_dir(app_name: str = APP_NAME) -> Path:
    """Platform config directory for `app_name`.

    Windows: %APPDATA%/app_name (or ~/AppData/Roaming/app_name).
    Elsewhere: $XDG_CONFIG_HOME/app_name or ~/.config/app_name.
    """
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
    else:
        xdg_config = os.environ.get("XDG_CONFIG_HOME")
        base = Path(xdg_config) if xdg_config else Path.home() / ".config"
    return base / app_name


@dataclass
class CliaConfig:
    """Top-level clia configuration."""

    memory: MemoryConfig = field(default_factory=MemoryConfig)
    config_dir: Path = field(default_factory=get_config_dir)
    log_level: str = "INFO"

    @property
    def memory_file(self) -> Path:
        return self.config_dir / "memory.yaml"


def _read_config_file(config_path: Path | None, config_dir: Path) -> dict:
    if config_path and config_path.exists():
        return tomllib.loads(config_path.read_text())
    # Search current dir and the config dir
    for candidate in [Path.cwd() / _CONFIG_FILENAME, config_dir / _CONFIG_FILENAME]:
        if candidate.exists():
            return tomllib.loads(candidate.read_text())
    return {}


def load_config(config_path: Path | None = None) -> CliaConfig:
    """Load configuration from environment variables and optional clia.toml.

    Priority: environment variables > clia.toml > defaults.
    """
    env_dir = os.getenv("CLIA_CONFIG_DIR")
    config_dir = Path(env_dir) if env_dir else get_config_dir()

    file_data = _read_config_file(config_path, config_dir)
    memory_data = file_data.get("memory", {})
    defaults = MemoryConfig()

    if not env_dir and file_data.get("config_dir"):
        config_dir = Path(file_data["config_dir"]).expanduser()

    memory = MemoryConfig(
        max_entries=int(
            os.getenv("CLIA_MEMORY_MAX_ENTRIES", memory_data.get("max_entries", defaults.max_entries))
        ),
        max_file_size=int(memory_data.get("max_file_size", defaults.max_file_size)),
        cleanup_interval=timedelta(
            seconds=float(
                os.getenv(
                    "CLIA_MEMORY_CLEANUP_INTERVAL",
                    memory_data.get(
                        "cleanup_interval", defaults.cleanup_interval.total_seconds()
                    ),
                )
            )
        ),
        min_usage_count=int(
            os.getenv(
                "CLIA_MEMORY_MIN_USAGE", memory_data.get("min_usage_count", defaults.min_usage_count)
            )
        ),
        max_age=timedelta(
            days=float(
                os.getenv(
                    "CLIA_MEMORY_MAX_AGE_DAYS", memory_data.get("max_age_days", defaults.max_age.days)
                )
            )
        ),
        backup_count=int(
            os.getenv("CLIA_MEMORY_BACKUP_COUNT", memory_data.get("backup_count", defaults.backup_count))
        ),
        enable_compression=bool(memory_data.get("enable_compression", False)),
    )

    return CliaConfig(
        memory=memory,
        config_dir=config_dir,
        log_level=os.getenv("CLIA_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
