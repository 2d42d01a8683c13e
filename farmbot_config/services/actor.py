"""Single-consumer actor owning the bot state record.

Every read and write of the record goes through :class:`ConfigActor`'s inbox.
Messages are handled one at a time and each handler runs to completion,
including the synchronous write to the persistence backend, before the next
message is taken. Requests (``call``) wait for a reply; notifications
(``cast``) do not.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable
from typing import Any

from ..persistence import MISSING, ConfigStore, PersistenceError
from ..state.model import (
    PERSISTED_KEYS,
    BotState,
    BuildInfo,
    ConfigKey,
    FirmwareHardware,
    InvalidConfigValue,
    SyncStatus,
    build_default_state,
    coerce_firmware_hardware,
    coerce_os_auto_update,
    coerce_timezone,
    coerce_user_env,
    parse_config_key,
    parse_info_key,
    snapshot_state,
)
from .flash import FlashCoordinator, FlashInProgress
from .messages import (
    GetConfig,
    GetFirmwareHardware,
    GetFirmwareVersion,
    GetState,
    GetVersion,
    IsLocked,
    Reply,
    UpdateConfig,
    UpdateInfo,
    UpdateSyncStatus,
)

logger = logging.getLogger("farmbot_config.actor")

StateListener = Callable[[dict[str, Any]], None]


class ActorStopped(RuntimeError):
    """The actor is no longer processing messages."""


def load_state(
    store: ConfigStore,
    build: BuildInfo,
    *,
    node_identity: str | None = None,
) -> BotState:
    """Build the default record and overlay the persisted fields.

    A failing backend raises :class:`PersistenceError`. A stored value that
    cannot be interpreted is logged and the default is kept.
    """
    state = build_default_state(build, node_identity=node_identity)
    config = state.configuration
    for key in PERSISTED_KEYS:
        value = store.get_config(key.value)
        if value is MISSING:
            continue
        try:
            match key:
                case ConfigKey.FIRMWARE_HARDWARE:
                    config.firmware_hardware = coerce_firmware_hardware(value)
                case ConfigKey.OS_AUTO_UPDATE:
                    config.os_auto_update = coerce_os_auto_update(value)
                case ConfigKey.USER_ENV:
                    config.user_env = coerce_user_env(value)
                case ConfigKey.TIMEZONE:
                    config.timezone = coerce_timezone(value)
        except InvalidConfigValue as exc:
            logger.warning("Ignoring stored %s: %s", key.value, exc)
    return state


class ConfigActor:
    """Owns the :class:`BotState` and serialises access to it."""

    def __init__(
        self,
        store: ConfigStore,
        flasher: FlashCoordinator,
        *,
        build: BuildInfo | None = None,
        node_identity: str | None = None,
    ) -> None:
        self._store = store
        self._flasher = flasher
        self._build = build or BuildInfo()
        self._node_identity = node_identity
        self._inbox: asyncio.Queue[tuple[Any, asyncio.Future[Any] | None]] = asyncio.Queue()
        self._state: BotState | None = None
        self._published: dict[str, Any] | None = None
        self._listeners: list[StateListener] = []
        self._task: asyncio.Task[None] | None = None
        self._stopped = False
        self._dirty = False

    @property
    def flasher(self) -> FlashCoordinator:
        return self._flasher

    @property
    def loaded(self) -> bool:
        return self._state is not None

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def published(self) -> dict[str, Any] | None:
        """Copy of the snapshot published after the last state change."""
        return copy.deepcopy(self._published)

    def add_listener(self, listener: StateListener) -> None:
        """Register *listener* to receive every published snapshot."""
        self._listeners.append(listener)

    def load(self) -> None:
        """Build the initial record from defaults and persisted values."""
        self._state = load_state(self._store, self._build, node_identity=self._node_identity)
        self._publish()
        config = self._state.configuration
        logger.info(
            "Loaded configuration (firmware_hardware=%s, os_auto_update=%s)",
            config.firmware_hardware.value,
            config.os_auto_update,
        )

    # Client API

    async def call(self, message: Any) -> Any:
        """Send a request and wait for its reply."""
        if self._stopped:
            raise ActorStopped("configuration actor is stopped")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait((message, future))
        return await future

    def cast(self, message: Any) -> None:
        """Queue a notification without waiting for it to be handled."""
        if self._stopped:
            logger.debug("Dropping %r; configuration actor is stopped", message)
            return
        self._inbox.put_nowait((message, None))

    async def update_config(self, key: Any, value: Any) -> bool:
        return await self.call(UpdateConfig(key, value))

    async def get_config(self, key: Any) -> Any:
        return await self.call(GetConfig(key))

    async def get_version(self) -> str:
        return await self.call(GetVersion())

    async def get_fw_version(self) -> Any:
        return await self.call(GetFirmwareVersion())

    async def get_fw_hardware(self) -> FirmwareHardware:
        return await self.call(GetFirmwareHardware())

    async def is_locked(self) -> bool:
        return await self.call(IsLocked())

    async def get_state(self) -> dict[str, Any]:
        return await self.call(GetState())

    def update_info(self, key: Any, value: Any) -> None:
        self.cast(UpdateInfo(key, value))

    def update_sync_status(self, status: Any) -> None:
        self.cast(UpdateSyncStatus(status))

    # Lifecycle

    async def run(self) -> None:
        """Process inbox messages until cancelled or persistence fails."""
        if self._state is None:
            self.load()
        self._stopped = False
        try:
            while True:
                message, reply = await self._inbox.get()
                self._dispatch(message, reply)
        finally:
            self._stopped = True
            self._fail_pending()

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            if self._state is None:
                self.load()
            self._task = asyncio.create_task(self.run(), name="config-actor")
        return self._task

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        await asyncio.wait({task})
        # A task cancelled before its first step never reaches run()'s cleanup.
        self._stopped = True
        self._fail_pending()
        if not task.cancelled() and task.exception() is not None:
            logger.error("Configuration actor stopped with error: %s", task.exception())

    async def __aenter__(self) -> ConfigActor:
        self.start()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.stop()

    # Message handling

    def _dispatch(self, message: Any, reply: asyncio.Future[Any] | None) -> None:
        self._dirty = False
        try:
            if reply is None:
                self._handle_notification(message)
            else:
                result = self._handle_request(message)
                if not reply.done():
                    reply.set_result(result)
        except PersistenceError as exc:
            logger.critical("Persistence failed while handling %r: %s", message, exc)
            if reply is not None and not reply.done():
                reply.set_exception(exc)
            raise
        except Exception as exc:
            # Only the sender sees the error; the loop keeps running.
            logger.exception("Failed to handle %r", message)
            if reply is not None and not reply.done():
                reply.set_exception(exc)
        if self._dirty:
            self._publish()

    def _handle_request(self, message: Any) -> Any:
        assert self._state is not None
        config = self._state.configuration
        info = self._state.informational_settings
        match message:
            case UpdateConfig(key=key, value=value):
                return self._update_config(key, value)
            case GetConfig(key=key):
                parsed = parse_config_key(key)
                if parsed is None:
                    return Reply.NOT_FOUND
                return copy.deepcopy(getattr(config, parsed.value))
            case GetVersion():
                return info.controller_version
            case GetFirmwareVersion():
                return info.firmware_version
            case GetFirmwareHardware():
                return config.firmware_hardware
            case IsLocked():
                return info.locked
            case GetState():
                return snapshot_state(self._state)
            case _:
                logger.warning("Unhandled request: %r", message)
                return Reply.UNHANDLED

    def _update_config(self, key: Any, value: Any) -> bool:
        assert self._state is not None
        parsed = parse_config_key(key)
        if parsed is None:
            logger.warning("Unrecognized config key: %r", key)
            return False

        config = self._state.configuration
        try:
            match parsed:
                case ConfigKey.FIRMWARE_HARDWARE:
                    return self._update_firmware_hardware(value)
                case ConfigKey.OS_AUTO_UPDATE:
                    config.os_auto_update = coerce_os_auto_update(value)
                    self._dirty = True
                    self._store.put_config(parsed.value, config.os_auto_update)
                case ConfigKey.TIMEZONE:
                    config.timezone = coerce_timezone(value)
                    self._dirty = True
                    self._store.put_config(parsed.value, config.timezone)
                case ConfigKey.USER_ENV:
                    config.user_env = {**config.user_env, **coerce_user_env(value)}
                    self._dirty = True
                    self._store.put_config(parsed.value, dict(config.user_env))
        except InvalidConfigValue as exc:
            logger.warning("Rejected update: %s", exc, extra={"config_key": parsed.value})
            return False
        return True

    def _update_firmware_hardware(self, value: Any) -> bool:
        assert self._state is not None
        hardware = coerce_firmware_hardware(value)
        try:
            self._flasher.ensure_idle(hardware)
        except FlashInProgress as exc:
            logger.warning(
                "Rejected firmware_hardware update: %s",
                exc,
                extra={"config_key": ConfigKey.FIRMWARE_HARDWARE.value, "hardware": hardware.value},
            )
            return False

        self._state.configuration.firmware_hardware = hardware
        self._dirty = True
        self._store.put_config(ConfigKey.FIRMWARE_HARDWARE.value, hardware.value)
        self._flasher.spawn(hardware)
        logger.info("firmware_hardware set to %s; flashing in background", hardware.value)
        return True

    def _handle_notification(self, message: Any) -> None:
        assert self._state is not None
        info = self._state.informational_settings
        match message:
            case UpdateInfo(key=key, value=value):
                parsed = parse_info_key(key)
                if parsed is None:
                    logger.warning("Dropping update for unknown informational key: %r", key)
                    return
                setattr(info, parsed.value, value)
                self._dirty = True
            case UpdateSyncStatus(status=status):
                if info.locked:
                    logger.debug("Bot is locked; ignoring sync_status %r", status)
                    return
                try:
                    info.sync_status = SyncStatus(status)
                except (ValueError, TypeError):
                    logger.warning("Dropping invalid sync_status: %r", status)
                    return
                self._dirty = True
            case _:
                logger.warning("Unhandled notification: %r", message)

    def _publish(self) -> None:
        assert self._state is not None
        snapshot = snapshot_state(self._state)
        self._published = snapshot
        for listener in list(self._listeners):
            try:
                listener(copy.deepcopy(snapshot))
            except Exception:
                logger.exception("State listener %r failed", listener)

    def _fail_pending(self) -> None:
        while not self._inbox.empty():
            message, reply = self._inbox.get_nowait()
            if reply is not None and not reply.done():
                reply.set_exception(ActorStopped(f"configuration actor stopped before handling {message!r}"))


__all__ = ["ActorStopped", "ConfigActor", "StateListener", "load_state"]
