"""Settings loader for the FarmBot configuration daemon.

Configuration is read from a TOML file (table ``[farmbot]``) and merged over
defaults derived from :class:`RuntimeConfig` itself, so a missing file or a
partial table always yields a complete configuration.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import msgspec

from ..const import (
    CONFIG_TABLE,
    DEFAULT_BUILD_COMMIT,
    DEFAULT_BUILD_ENV,
    DEFAULT_BUILD_TARGET,
    DEFAULT_CONFIG_PATH,
    DEFAULT_DEBUG_LOGGING,
    DEFAULT_FIRMWARE_DIR,
    DEFAULT_FLASH_BAUD,
    DEFAULT_FLASH_PART,
    DEFAULT_FLASH_PROGRAMMER,
    DEFAULT_FLASH_SETTLE_DELAY,
    DEFAULT_FLASH_TOOL,
    DEFAULT_METRICS_ENABLED,
    DEFAULT_METRICS_HOST,
    DEFAULT_METRICS_PORT,
    DEFAULT_SERIAL_BAUD,
    DEFAULT_SERIAL_PORT,
    DEFAULT_STATUS_FILE,
    DEFAULT_STATUS_INTERVAL,
    DEFAULT_STORAGE_PATH,
)

logger = logging.getLogger(__name__)


class RuntimeConfig(msgspec.Struct, kw_only=True):
    """Strongly typed configuration for the daemon."""

    serial_port: str = DEFAULT_SERIAL_PORT
    serial_baud: int = DEFAULT_SERIAL_BAUD
    storage_path: str = DEFAULT_STORAGE_PATH
    firmware_dir: str = DEFAULT_FIRMWARE_DIR
    flash_tool: str = DEFAULT_FLASH_TOOL
    flash_part: str = DEFAULT_FLASH_PART
    flash_programmer: str = DEFAULT_FLASH_PROGRAMMER
    flash_baud: int = DEFAULT_FLASH_BAUD
    flash_settle_delay: float = DEFAULT_FLASH_SETTLE_DELAY
    status_file: str = DEFAULT_STATUS_FILE
    status_interval: int = DEFAULT_STATUS_INTERVAL
    debug_logging: bool = DEFAULT_DEBUG_LOGGING
    metrics_enabled: bool = DEFAULT_METRICS_ENABLED
    metrics_host: str = DEFAULT_METRICS_HOST
    metrics_port: int = DEFAULT_METRICS_PORT
    build_target: str = DEFAULT_BUILD_TARGET
    build_commit: str = DEFAULT_BUILD_COMMIT
    build_env: str = DEFAULT_BUILD_ENV

    def __post_init__(self) -> None:
        if not self.serial_port.strip():
            raise ValueError("serial_port must be a non-empty path")
        self.serial_baud = self._require_positive("serial_baud", self.serial_baud)
        self.flash_baud = self._require_positive("flash_baud", self.flash_baud)
        self.status_interval = self._require_positive(
            "status_interval", self.status_interval
        )
        if self.flash_settle_delay < 0.0:
            raise ValueError("flash_settle_delay must not be negative")
        if not self.flash_tool.strip():
            raise ValueError("flash_tool must be configured")
        if not 0 <= self.metrics_port <= 65535:
            raise ValueError("metrics_port must be between 0 and 65535")
        self.storage_path = self._normalize_path(
            self.storage_path, field_name="storage_path"
        )
        self.firmware_dir = self._normalize_path(
            self.firmware_dir, field_name="firmware_dir"
        )
        self.status_file = self._normalize_path(
            self.status_file, field_name="status_file"
        )

    @staticmethod
    def _require_positive(name: str, value: int) -> int:
        if value <= 0:
            raise ValueError(f"{name} must be a positive integer")
        return value

    @staticmethod
    def _normalize_path(value: str, *, field_name: str) -> str:
        candidate = (value or "").strip()
        if not candidate:
            raise ValueError(f"{field_name} must be a non-empty path")
        expanded = os.path.expanduser(candidate)
        if not os.path.isabs(expanded):
            raise ValueError(f"{field_name} must be an absolute path")
        return os.path.abspath(expanded)


def get_default_config() -> dict[str, Any]:
    """Provide default configuration values.

    Derived from ``RuntimeConfig`` field defaults so the struct stays the
    single source of truth.
    """
    return {
        field.name: field.default for field in msgspec.structs.fields(RuntimeConfig)
    }


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        document = msgspec.toml.decode(path.read_bytes())
    except FileNotFoundError:
        logger.warning("Configuration file %s not found; using defaults.", path)
        return {}
    except msgspec.DecodeError as exc:
        raise ValueError(f"Malformed configuration file {path}: {exc}") from exc

    section = document.get(CONFIG_TABLE, {})
    if not isinstance(section, dict):
        raise ValueError(f"[{CONFIG_TABLE}] in {path} must be a table")
    return section


def load_runtime_config(path: str | Path | None = None) -> RuntimeConfig:
    """Load configuration from the TOML file, falling back to defaults."""

    config_path = Path(path or DEFAULT_CONFIG_PATH)
    raw = get_default_config()
    raw.update(_read_config_file(config_path))

    try:
        return msgspec.convert(raw, RuntimeConfig, strict=False)
    except msgspec.ValidationError as exc:
        raise ValueError(f"Invalid configuration in {config_path}: {exc}") from exc


__all__ = ["RuntimeConfig", "get_default_config", "load_runtime_config"]
