"""State record and status helpers for the configuration daemon."""

from .model import (
    BotState,
    BuildInfo,
    ConfigKey,
    FirmwareHardware,
    InfoKey,
    SyncStatus,
    build_default_state,
)

__all__ = [
    "BotState",
    "BuildInfo",
    "ConfigKey",
    "FirmwareHardware",
    "InfoKey",
    "SyncStatus",
    "build_default_state",
]
