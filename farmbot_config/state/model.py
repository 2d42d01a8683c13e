"""State record held by the configuration actor.

The record is split in two halves, mirroring what the web app shows:
``configuration`` holds user settings (a subset of which is persisted) and
``informational_settings`` holds status reported by the rest of the system.
"""

from __future__ import annotations

import socket
from collections.abc import Mapping
from enum import StrEnum
from typing import Any, Final

import msgspec

from .. import __version__
from ..const import (
    DEFAULT_BUILD_COMMIT,
    DEFAULT_BUILD_ENV,
    DEFAULT_BUILD_TARGET,
    FIRMWARE_DISCONNECTED,
)


class FirmwareHardware(StrEnum):
    ARDUINO = "arduino"
    FARMDUINO = "farmduino"


class SyncStatus(StrEnum):
    """Message shown on the sync button."""

    SYNC_NOW = "sync_now"
    SYNCING = "syncing"
    SYNC_ERROR = "sync_error"
    UNKNOWN = "unknown"
    LOCKED = "locked"


class ConfigKey(StrEnum):
    """Configuration fields accepted by ``UpdateConfig``/``GetConfig``."""

    FIRMWARE_HARDWARE = "firmware_hardware"
    TIMEZONE = "timezone"
    USER_ENV = "user_env"
    OS_AUTO_UPDATE = "os_auto_update"


class InfoKey(StrEnum):
    """Informational fields accepted by ``UpdateInfo``."""

    LOCKED = "locked"
    CONTROLLER_VERSION = "controller_version"
    TARGET = "target"
    COMMIT = "commit"
    ENV = "env"
    SYNC_STATUS = "sync_status"
    FIRMWARE_VERSION = "firmware_version"
    NODE_IDENTITY = "node_identity"


# Fields restored from the persistence backend at startup.
PERSISTED_KEYS: Final[tuple[ConfigKey, ...]] = (
    ConfigKey.USER_ENV,
    ConfigKey.OS_AUTO_UPDATE,
    ConfigKey.TIMEZONE,
    ConfigKey.FIRMWARE_HARDWARE,
)


class InvalidConfigValue(ValueError):
    """Raised when a configuration value has no defined normalisation."""

    def __init__(self, key: ConfigKey, value: object) -> None:
        super().__init__(f"invalid value for {key.value}: {value!r}")
        self.key = key
        self.value = value


def _empty_env() -> dict[str, str]:
    return {}


class Configuration(msgspec.Struct):
    firmware_hardware: FirmwareHardware = FirmwareHardware.ARDUINO
    timezone: str | None = None
    user_env: dict[str, str] = msgspec.field(default_factory=_empty_env)
    os_auto_update: bool = False


class InformationalSettings(msgspec.Struct):
    controller_version: str
    target: str
    commit: str
    env: str
    node_identity: str
    locked: bool = False
    sync_status: Any = SyncStatus.SYNC_NOW
    firmware_version: Any = FIRMWARE_DISCONNECTED


class BotState(msgspec.Struct):
    configuration: Configuration
    informational_settings: InformationalSettings


class BuildInfo(msgspec.Struct, frozen=True):
    """Build metadata injected into the informational settings."""

    version: str = __version__
    target: str = DEFAULT_BUILD_TARGET
    commit: str = DEFAULT_BUILD_COMMIT
    env: str = DEFAULT_BUILD_ENV


def build_default_state(build: BuildInfo, *, node_identity: str | None = None) -> BotState:
    """Return the state record before any persisted values are applied."""
    return BotState(
        configuration=Configuration(),
        informational_settings=InformationalSettings(
            controller_version=build.version,
            target=build.target,
            commit=build.commit,
            env=build.env,
            node_identity=node_identity or socket.gethostname(),
        ),
    )


def parse_config_key(key: object) -> ConfigKey | None:
    try:
        return ConfigKey(key)
    except (ValueError, TypeError):
        return None


def parse_info_key(key: object) -> InfoKey | None:
    try:
        return InfoKey(key)
    except (ValueError, TypeError):
        return None


def coerce_firmware_hardware(value: object) -> FirmwareHardware:
    try:
        return FirmwareHardware(value)
    except (ValueError, TypeError):
        raise InvalidConfigValue(ConfigKey.FIRMWARE_HARDWARE, value) from None


def coerce_os_auto_update(value: object) -> bool:
    """Normalise the auto-update flag.

    Only booleans and the integers ``1``/``0`` are accepted; everything else
    (including ``"true"`` and ``1.0``) is rejected.
    """
    if isinstance(value, bool):
        return value
    if type(value) is int and value in (0, 1):
        return value == 1
    raise InvalidConfigValue(ConfigKey.OS_AUTO_UPDATE, value)


def coerce_timezone(value: object) -> str | None:
    if value is None or isinstance(value, str):
        return value
    raise InvalidConfigValue(ConfigKey.TIMEZONE, value)


def coerce_user_env(value: object) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise InvalidConfigValue(ConfigKey.USER_ENV, value)
    return {str(key): str(item) for key, item in value.items()}


def snapshot_state(state: BotState) -> dict[str, Any]:
    """Detached plain-builtins copy of *state*."""
    return msgspec.to_builtins(state, enc_hook=str)


__all__ = [
    "BotState",
    "BuildInfo",
    "ConfigKey",
    "Configuration",
    "FirmwareHardware",
    "InfoKey",
    "InformationalSettings",
    "InvalidConfigValue",
    "PERSISTED_KEYS",
    "SyncStatus",
    "build_default_state",
    "coerce_firmware_hardware",
    "coerce_os_auto_update",
    "coerce_timezone",
    "coerce_user_env",
    "parse_config_key",
    "parse_info_key",
    "snapshot_state",
]
