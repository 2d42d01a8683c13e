"""Message types accepted by the configuration actor."""

from __future__ import annotations

from enum import Enum
from typing import Any

import msgspec


class Reply(Enum):
    """Sentinel replies that are not values of the state record."""

    NOT_FOUND = "not_found"
    UNHANDLED = "unhandled"

    def __repr__(self) -> str:
        return f"Reply.{self.name}"


# Requests (call)


class UpdateConfig(msgspec.Struct, frozen=True):
    key: Any
    value: Any


class GetConfig(msgspec.Struct, frozen=True):
    key: Any


class GetVersion(msgspec.Struct, frozen=True):
    pass


class GetFirmwareVersion(msgspec.Struct, frozen=True):
    pass


class GetFirmwareHardware(msgspec.Struct, frozen=True):
    pass


class IsLocked(msgspec.Struct, frozen=True):
    pass


class GetState(msgspec.Struct, frozen=True):
    pass


# Notifications (cast)


class UpdateInfo(msgspec.Struct, frozen=True):
    key: Any
    value: Any


class UpdateSyncStatus(msgspec.Struct, frozen=True):
    status: Any


Request = UpdateConfig | GetConfig | GetVersion | GetFirmwareVersion | GetFirmwareHardware | IsLocked | GetState
Notification = UpdateInfo | UpdateSyncStatus


__all__ = [
    "GetConfig",
    "GetFirmwareHardware",
    "GetFirmwareVersion",
    "GetState",
    "GetVersion",
    "IsLocked",
    "Notification",
    "Reply",
    "Request",
    "UpdateConfig",
    "UpdateInfo",
    "UpdateSyncStatus",
]
