"""Pytest configuration for the configuration daemon tests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from farmbot_config.const import FIRMWARE_IMAGE_SUFFIX
from farmbot_config.persistence import ConfigStore, MemoryBackend
from farmbot_config.services.actor import ConfigActor
from farmbot_config.services.flash import FlashCoordinator, FlashError
from farmbot_config.state.model import BuildInfo


class FakeSerialLink:
    """Serial link double recording every lifecycle call in ``events``."""

    def __init__(self, device: str | None = "ttyACM0", *, fail_stop: bool = False) -> None:
        self.device = device
        self.running = True
        self.fail_stop = fail_stop
        self.events: list[str] = []

    async def stop(self) -> None:
        self.events.append("stop")
        if self.fail_stop:
            raise OSError("tty busy")
        self.running = False

    async def start(self) -> None:
        self.events.append("start")
        self.running = True


class FakeInvoker:
    """Flashing tool double; set ``gate`` to hold the flash until released."""

    def __init__(self, serial: FakeSerialLink, *, exit_code: int = 0) -> None:
        self.serial = serial
        self.exit_code = exit_code
        self.calls: list[tuple[Path, str | None]] = []
        self.gate: asyncio.Event | None = None
        self.serial_running_during_flash: list[bool] = []

    async def flash(self, image: Path, device: str | None) -> int:
        self.calls.append((image, device))
        self.serial_running_during_flash.append(self.serial.running)
        self.serial.events.append("flash")
        if self.gate is not None:
            await self.gate.wait()
        if self.exit_code != 0:
            raise FlashError(self.exit_code, "avrdude: stk500v2_ReceiveMessage(): timeout")
        return 0


@pytest.fixture(autouse=True)
def reset_logging_handlers():
    """Close and remove all logging handlers after each test to prevent ResourceWarnings."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        try:
            handler.close()
        except (OSError, RuntimeError):
            pass
        root.removeHandler(handler)


@pytest.fixture()
def firmware_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "firmware"
    directory.mkdir()
    for hardware in ("arduino", "farmduino"):
        (directory / f"{hardware}{FIRMWARE_IMAGE_SUFFIX}").write_text(":00000001FF\n")
    return directory


@pytest.fixture()
def build_info() -> BuildInfo:
    return BuildInfo(version="5.0.0", target="rpi3", commit="abc123", env="test")


@pytest.fixture()
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture()
def store(backend: MemoryBackend) -> ConfigStore:
    return ConfigStore(backend)


@pytest.fixture()
def serial_link() -> FakeSerialLink:
    return FakeSerialLink()


@pytest.fixture()
def invoker(serial_link: FakeSerialLink) -> FakeInvoker:
    return FakeInvoker(serial_link)


@pytest.fixture()
def coordinator(serial_link: FakeSerialLink, invoker: FakeInvoker, firmware_dir: Path) -> FlashCoordinator:
    return FlashCoordinator(serial_link, invoker, firmware_dir=firmware_dir, settle_delay=0.0)


@pytest_asyncio.fixture
async def actor(
    store: ConfigStore,
    coordinator: FlashCoordinator,
    build_info: BuildInfo,
) -> AsyncIterator[ConfigActor]:
    config_actor = ConfigActor(store, coordinator, build=build_info, node_identity="farmbot-test")
    async with config_actor:
        yield config_actor
    await coordinator.wait()
