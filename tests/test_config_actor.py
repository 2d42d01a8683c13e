"""Tests for the configuration actor message protocol."""

from __future__ import annotations

import asyncio
import datetime
from pathlib import Path
from typing import Any

import msgspec
import pytest

from farmbot_config.const import FIRMWARE_DISCONNECTED
from farmbot_config.persistence import ConfigStore, FileBackend, MemoryBackend, PersistenceError
from farmbot_config.services.actor import ActorStopped, ConfigActor
from farmbot_config.services.flash import FlashCoordinator
from farmbot_config.services.messages import GetConfig, GetVersion, Reply, UpdateInfo
from farmbot_config.state.model import BuildInfo, FirmwareHardware, SyncStatus


class _FailingPutBackend(MemoryBackend):
    def put(self, key: str, value: Any) -> bool:
        raise OSError("read-only file system")


@pytest.mark.asyncio
@pytest.mark.parametrize("hardware", ["arduino", "farmduino", FirmwareHardware.FARMDUINO])
async def test_update_firmware_hardware_persists_and_flashes(
    actor: ConfigActor,
    backend: MemoryBackend,
    coordinator: FlashCoordinator,
    invoker,
    hardware: str,
) -> None:
    assert await actor.update_config("firmware_hardware", hardware) is True
    assert await actor.get_fw_hardware() == hardware
    assert backend.writes[-1] == ("firmware_hardware", str(hardware))

    result = await coordinator.wait()
    assert result is not None and result.success
    assert invoker.calls[0][0].name == f"{hardware}-firmware.hex"


@pytest.mark.asyncio
@pytest.mark.parametrize("value", ["express_k10", "", None, 1, "ARDUINO"])
async def test_invalid_firmware_hardware_is_rejected(
    actor: ConfigActor,
    backend: MemoryBackend,
    coordinator: FlashCoordinator,
    value: Any,
) -> None:
    before = await actor.get_fw_hardware()

    assert await actor.update_config("firmware_hardware", value) is False

    assert await actor.get_fw_hardware() == before
    assert backend.writes == []
    assert await coordinator.wait() is None


@pytest.mark.asyncio
async def test_firmware_hardware_reply_does_not_wait_for_flash(
    actor: ConfigActor,
    coordinator: FlashCoordinator,
    invoker,
) -> None:
    invoker.gate = asyncio.Event()

    assert await actor.update_config("firmware_hardware", "farmduino") is True
    assert coordinator.in_flight

    invoker.gate.set()
    result = await coordinator.wait()
    assert result is not None and result.success
    assert not coordinator.in_flight


@pytest.mark.asyncio
async def test_second_hardware_update_rejected_while_flashing(
    actor: ConfigActor,
    backend: MemoryBackend,
    coordinator: FlashCoordinator,
    invoker,
) -> None:
    invoker.gate = asyncio.Event()
    assert await actor.update_config("firmware_hardware", "farmduino") is True

    assert await actor.update_config("firmware_hardware", "arduino") is False
    assert await actor.get_fw_hardware() == FirmwareHardware.FARMDUINO
    assert backend.writes == [("firmware_hardware", "farmduino")]
    assert coordinator.stats.rejected == 1

    invoker.gate.set()
    await coordinator.wait()

    assert await actor.update_config("firmware_hardware", "arduino") is True
    await coordinator.wait()
    assert len(invoker.calls) == 2


@pytest.mark.asyncio
async def test_flash_failure_does_not_reach_caller(
    actor: ConfigActor,
    coordinator: FlashCoordinator,
    invoker,
) -> None:
    invoker.exit_code = 1

    assert await actor.update_config("firmware_hardware", "farmduino") is True

    result = await coordinator.wait()
    assert result is not None
    assert result.success is False
    assert result.exit_code == 1
    assert await actor.get_fw_hardware() == FirmwareHardware.FARMDUINO


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("value", "expected"),
    [(1, True), (0, False), (True, True), (False, False)],
)
async def test_os_auto_update_normalised_and_persisted(
    actor: ConfigActor,
    backend: MemoryBackend,
    value: Any,
    expected: bool,
) -> None:
    assert await actor.update_config("os_auto_update", value) is True

    stored = await actor.get_config("os_auto_update")
    assert stored is expected
    key, persisted = backend.writes[-1]
    assert key == "os_auto_update"
    assert persisted is expected


@pytest.mark.asyncio
@pytest.mark.parametrize("value", ["true", "1", 2, -1, 1.0, None, [1]])
async def test_os_auto_update_rejects_other_values(
    actor: ConfigActor,
    backend: MemoryBackend,
    value: Any,
) -> None:
    assert await actor.update_config("os_auto_update", value) is False
    assert await actor.get_config("os_auto_update") is False
    assert backend.writes == []


@pytest.mark.asyncio
async def test_user_env_merges(actor: ConfigActor, backend: MemoryBackend) -> None:
    assert await actor.update_config("user_env", {"A": "1"}) is True
    assert await actor.update_config("user_env", {"B": "2"}) is True

    assert await actor.get_config("user_env") == {"A": "1", "B": "2"}
    assert backend.writes[-1] == ("user_env", {"A": "1", "B": "2"})


@pytest.mark.asyncio
async def test_user_env_overwrites_existing_key(actor: ConfigActor) -> None:
    await actor.update_config("user_env", {"A": "1", "B": "2"})
    await actor.update_config("user_env", {"A": "3"})

    assert await actor.get_config("user_env") == {"A": "3", "B": "2"}


@pytest.mark.asyncio
async def test_user_env_rejects_non_mapping(actor: ConfigActor, backend: MemoryBackend) -> None:
    assert await actor.update_config("user_env", "A=1") is False
    assert await actor.get_config("user_env") == {}
    assert backend.writes == []


@pytest.mark.asyncio
async def test_get_config_returns_copy(actor: ConfigActor) -> None:
    await actor.update_config("user_env", {"A": "1"})

    env = await actor.get_config("user_env")
    env["B"] = "2"

    assert await actor.get_config("user_env") == {"A": "1"}


@pytest.mark.asyncio
async def test_timezone_last_write_wins(actor: ConfigActor, backend: MemoryBackend) -> None:
    assert await actor.update_config("timezone", "UTC") is True
    assert await actor.update_config("timezone", "PST") is True

    assert await actor.get_config("timezone") == "PST"
    timezone_writes = [value for key, value in backend.writes if key == "timezone"]
    assert timezone_writes == ["UTC", "PST"]


@pytest.mark.asyncio
async def test_concurrent_updates_apply_in_enqueue_order(actor: ConfigActor, backend: MemoryBackend) -> None:
    zones = [f"Etc/GMT+{offset}" for offset in range(10)]

    results = await asyncio.gather(*(actor.update_config("timezone", zone) for zone in zones))

    assert all(results)
    assert [value for _, value in backend.writes] == zones
    assert await actor.get_config("timezone") == zones[-1]


@pytest.mark.asyncio
async def test_unknown_config_key_is_rejected(actor: ConfigActor, backend: MemoryBackend) -> None:
    assert await actor.update_config("network_ssid", "farm") is False
    assert backend.writes == []


@pytest.mark.asyncio
@pytest.mark.parametrize("key", ["network_ssid", None, 42, "FIRMWARE_HARDWARE"])
async def test_get_config_unknown_key_returns_not_found(actor: ConfigActor, key: Any) -> None:
    assert await actor.get_config(key) is Reply.NOT_FOUND


@pytest.mark.asyncio
async def test_unhandled_request_reply(actor: ConfigActor) -> None:
    assert await actor.call(object()) is Reply.UNHANDLED
    # The actor keeps serving after an unhandled request.
    assert await actor.get_version() == "5.0.0"


@pytest.mark.asyncio
async def test_read_only_requests(actor: ConfigActor) -> None:
    assert await actor.get_version() == "5.0.0"
    assert await actor.get_fw_version() == FIRMWARE_DISCONNECTED
    assert await actor.get_fw_hardware() == FirmwareHardware.ARDUINO
    assert await actor.is_locked() is False
    assert await actor.call(GetVersion()) == "5.0.0"


@pytest.mark.asyncio
async def test_sync_status_dropped_while_locked(actor: ConfigActor) -> None:
    actor.update_info("locked", True)
    actor.update_sync_status(SyncStatus.SYNCING)

    state = await actor.get_state()
    assert state["informational_settings"]["sync_status"] == "sync_now"
    assert await actor.is_locked() is True

    actor.update_info("locked", False)
    actor.update_sync_status("sync_error")

    state = await actor.get_state()
    assert state["informational_settings"]["sync_status"] == "sync_error"


@pytest.mark.asyncio
async def test_invalid_sync_status_is_dropped(actor: ConfigActor) -> None:
    actor.update_sync_status("syncing")
    actor.update_sync_status("exploded")

    state = await actor.get_state()
    assert state["informational_settings"]["sync_status"] == "syncing"


@pytest.mark.asyncio
async def test_update_info_sets_values_unvalidated(actor: ConfigActor) -> None:
    actor.update_info("firmware_version", "6.4.2.F")
    actor.update_info("controller_version", 99)
    actor.cast(UpdateInfo("node_identity", "farmbot-42"))

    assert await actor.get_fw_version() == "6.4.2.F"
    assert await actor.get_version() == 99
    state = await actor.get_state()
    assert state["informational_settings"]["node_identity"] == "farmbot-42"


@pytest.mark.asyncio
async def test_update_info_unknown_key_is_dropped(actor: ConfigActor) -> None:
    before = await actor.get_state()

    actor.update_info("battery_level", 80)
    actor.cast("not a message")

    assert await actor.get_state() == before


@pytest.mark.asyncio
async def test_listeners_receive_copies(actor: ConfigActor) -> None:
    received: list[dict[str, Any]] = []
    actor.add_listener(received.append)

    await actor.update_config("timezone", "UTC")
    received[-1]["configuration"]["timezone"] = "tampered"

    assert await actor.get_config("timezone") == "UTC"
    published = actor.published
    assert published is not None
    assert published["configuration"]["timezone"] == "UTC"


@pytest.mark.asyncio
async def test_reads_do_not_publish(actor: ConfigActor) -> None:
    received: list[dict[str, Any]] = []
    actor.add_listener(received.append)

    await actor.get_version()
    await actor.get_config("timezone")
    await actor.update_config("timezone", "UTC")

    assert len(received) == 1


@pytest.mark.asyncio
async def test_listener_failure_does_not_stop_actor(actor: ConfigActor) -> None:
    def _broken(_snapshot: dict[str, Any]) -> None:
        raise RuntimeError("listener exploded")

    actor.add_listener(_broken)

    assert await actor.update_config("timezone", "UTC") is True
    assert await actor.get_config("timezone") == "UTC"


@pytest.mark.asyncio
async def test_persistence_failure_reaches_caller_and_stops_actor(
    coordinator: FlashCoordinator,
    build_info: BuildInfo,
) -> None:
    config_actor = ConfigActor(ConfigStore(_FailingPutBackend()), coordinator, build=build_info)
    task = config_actor.start()

    with pytest.raises(PersistenceError) as excinfo:
        await config_actor.update_config("timezone", "UTC")
    assert excinfo.value.reason == "write_failed:timezone"

    with pytest.raises(PersistenceError):
        await task
    assert config_actor.stopped

    with pytest.raises(ActorStopped):
        await config_actor.get_version()
    await config_actor.stop()


class _FlakyPutBackend(MemoryBackend):
    def __init__(self) -> None:
        super().__init__()
        self.broken = True

    def put(self, key: str, value: Any) -> bool:
        if self.broken:
            raise LookupError(f"no slot for {key}")
        return super().put(key, value)


@pytest.mark.asyncio
async def test_unexpected_handler_error_reaches_caller_and_actor_survives(
    coordinator: FlashCoordinator,
    build_info: BuildInfo,
) -> None:
    backend = _FlakyPutBackend()
    async with ConfigActor(ConfigStore(backend), coordinator, build=build_info) as config_actor:
        with pytest.raises(LookupError):
            await asyncio.wait_for(config_actor.update_config("timezone", "UTC"), 1.0)

        assert not config_actor.stopped
        assert await asyncio.wait_for(config_actor.get_version(), 1.0) == "5.0.0"

        backend.broken = False
        assert await config_actor.update_config("timezone", "PST") is True
        assert backend.writes == [("timezone", "PST")]


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [datetime.timezone.utc, 3600, {"name": "UTC"}])
async def test_non_string_timezone_rejected_before_persisting(
    coordinator: FlashCoordinator,
    build_info: BuildInfo,
    tmp_path: Path,
    value: Any,
) -> None:
    path = tmp_path / "config.json"
    async with ConfigActor(ConfigStore(FileBackend(path)), coordinator, build=build_info) as config_actor:
        assert await config_actor.update_config("timezone", value) is False
        assert await config_actor.get_config("timezone") is None
        assert not config_actor.stopped

        assert await config_actor.update_config("timezone", "Europe/Berlin") is True
        assert await config_actor.update_config("timezone", None) is True

    assert msgspec.json.decode(path.read_bytes()) == {"timezone": None}


@pytest.mark.asyncio
async def test_pending_requests_fail_on_stop(
    store: ConfigStore,
    coordinator: FlashCoordinator,
    build_info: BuildInfo,
) -> None:
    config_actor = ConfigActor(store, coordinator, build=build_info)
    config_actor.load()

    pending = asyncio.create_task(config_actor.call(GetConfig("timezone")))
    await asyncio.sleep(0)
    config_actor.start()
    await config_actor.stop()

    # Either handled before the stop or failed by it; never left hanging.
    try:
        assert await pending is None
    except ActorStopped:
        pass

    with pytest.raises(ActorStopped):
        await config_actor.get_version()


@pytest.mark.asyncio
async def test_messages_queued_before_run_are_handled(
    store: ConfigStore,
    coordinator: FlashCoordinator,
    build_info: BuildInfo,
) -> None:
    config_actor = ConfigActor(store, coordinator, build=build_info)
    config_actor.update_info("firmware_version", "6.4.2.F")
    reply = asyncio.create_task(config_actor.get_fw_version())
    await asyncio.sleep(0)

    async with config_actor:
        assert await reply == "6.4.2.F"
