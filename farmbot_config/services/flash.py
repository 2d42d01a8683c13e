"""Firmware reflashing coordinated with the serial link."""

from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import msgspec
from transitions import Machine

from ..const import (
    DEFAULT_FIRMWARE_DIR,
    DEFAULT_FLASH_BAUD,
    DEFAULT_FLASH_PART,
    DEFAULT_FLASH_PROGRAMMER,
    DEFAULT_FLASH_SETTLE_DELAY,
    DEFAULT_FLASH_TOOL,
    FIRMWARE_IMAGE_SUFFIX,
)
from ..state.model import FirmwareHardware

logger = logging.getLogger("farmbot_config.flash")


class FlashError(RuntimeError):
    """The flashing tool could not be run or exited unsuccessfully."""

    def __init__(self, exit_code: int | None, output: str = "") -> None:
        if exit_code is None:
            message = f"flashing tool failed to run: {output}" if output else "flashing tool failed to run"
        else:
            message = f"flashing tool exited with status {exit_code}"
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class FlashInProgress(RuntimeError):
    """A flash was requested while another one is still running."""


class FlashResult(msgspec.Struct, frozen=True):
    hardware: FirmwareHardware
    image: str
    device: str | None
    success: bool
    exit_code: int | None = None
    error: str | None = None
    duration: float = 0.0


class FlashStats(msgspec.Struct):
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    rejected: int = 0
    last_error: str | None = None
    last_hardware: str | None = None
    last_finished_unix: float | None = None

    def record(self, result: FlashResult) -> None:
        if result.success:
            self.successes += 1
            self.last_error = None
        else:
            self.failures += 1
            self.last_error = result.error
        self.last_finished_unix = time.time()

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class SerialLinkController(Protocol):
    """Lifecycle handle for whatever currently owns the serial device."""

    @property
    def device(self) -> str | None: ...

    async def stop(self) -> None: ...

    async def start(self) -> None: ...


class FlashInvoker(Protocol):
    """Runs the programming command for *image* against *device*."""

    async def flash(self, image: Path, device: str | None) -> int: ...


def _device_path(device: str) -> str:
    if device.startswith("/"):
        return device
    return f"/dev/{device}"


class AvrdudeInvoker:
    """Flash an Intel HEX image with avrdude."""

    def __init__(
        self,
        *,
        tool: str = DEFAULT_FLASH_TOOL,
        part: str = DEFAULT_FLASH_PART,
        programmer: str = DEFAULT_FLASH_PROGRAMMER,
        baud: int = DEFAULT_FLASH_BAUD,
    ) -> None:
        self.tool = tool
        self.part = part
        self.programmer = programmer
        self.baud = baud

    def build_command(self, image: Path, device: str) -> list[str]:
        return [
            self.tool,
            f"-p{self.part}",
            f"-c{self.programmer}",
            f"-P{_device_path(device)}",
            f"-b{self.baud}",
            "-D",
            "-q",
            "-V",
            f"-Uflash:w:{image}:i",
        ]

    async def flash(self, image: Path, device: str | None) -> int:
        if not device:
            raise FlashError(None, "no serial device to flash")
        argv = self.build_command(image, device)
        logger.info("Running %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            raise FlashError(None, str(exc)) from exc

        try:
            stdout, _ = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        output = (stdout or b"").decode("utf-8", errors="replace")
        for line in output.splitlines():
            logger.debug("%s: %s", self.tool, line)
        if proc.returncode != 0:
            raise FlashError(proc.returncode, output)
        return 0


class FlashCoordinator:
    """Pause the serial link, flash new firmware, then bring the link back.

    At most one flash runs at a time. ``spawn`` hands back the task running
    the sequence; its result is a :class:`FlashResult` and failures are
    recorded there rather than raised.
    """

    if TYPE_CHECKING:
        # FSM generated methods and attributes for static analysis
        fsm_state: str
        prepare: Callable[[], bool]
        abort: Callable[[], bool]
        settle: Callable[[], bool]
        begin_flash: Callable[[], bool]
        resume: Callable[[], bool]
        finish: Callable[[], bool]

    # FSM States
    STATE_IDLE = "idle"
    STATE_PREPARING = "preparing"
    STATE_SETTLING = "settling"
    STATE_FLASHING = "flashing"
    STATE_RESUMING = "resuming"

    def __init__(
        self,
        serial: SerialLinkController,
        invoker: FlashInvoker,
        *,
        firmware_dir: str | Path = DEFAULT_FIRMWARE_DIR,
        settle_delay: float = DEFAULT_FLASH_SETTLE_DELAY,
        stats: FlashStats | None = None,
    ) -> None:
        self._serial = serial
        self._invoker = invoker
        self._firmware_dir = Path(firmware_dir)
        self._settle_delay = max(0.0, settle_delay)
        self._task: asyncio.Task[FlashResult] | None = None
        self.stats = stats or FlashStats()

        self.state_machine = Machine(
            model=self,
            states=[
                self.STATE_IDLE,
                self.STATE_PREPARING,
                self.STATE_SETTLING,
                self.STATE_FLASHING,
                self.STATE_RESUMING,
            ],
            initial=self.STATE_IDLE,
            ignore_invalid_triggers=True,
            model_attribute='fsm_state'
        )

        self.state_machine.add_transition(trigger='prepare', source=self.STATE_IDLE, dest=self.STATE_PREPARING)
        self.state_machine.add_transition(trigger='abort', source=self.STATE_PREPARING, dest=self.STATE_IDLE)
        self.state_machine.add_transition(trigger='settle', source=self.STATE_PREPARING, dest=self.STATE_SETTLING)
        self.state_machine.add_transition(trigger='begin_flash', source=self.STATE_SETTLING, dest=self.STATE_FLASHING)
        self.state_machine.add_transition(
            trigger='resume',
            source=[self.STATE_PREPARING, self.STATE_SETTLING, self.STATE_FLASHING],
            dest=self.STATE_RESUMING,
        )
        self.state_machine.add_transition(trigger='finish', source=self.STATE_RESUMING, dest=self.STATE_IDLE)

    @property
    def settle_delay(self) -> float:
        return self._settle_delay

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    def image_path(self, hardware: FirmwareHardware) -> Path:
        return self._firmware_dir / f"{hardware.value}{FIRMWARE_IMAGE_SUFFIX}"

    def ensure_idle(self, hardware: FirmwareHardware) -> None:
        """Raise :class:`FlashInProgress` if a flash is already running."""
        if self.in_flight:
            self.stats.rejected += 1
            raise FlashInProgress(f"flash already in progress; refusing {hardware.value}")

    def spawn(self, hardware: FirmwareHardware) -> asyncio.Task[FlashResult]:
        """Start flashing *hardware* firmware in a detached task."""
        self.ensure_idle(hardware)
        self._task = asyncio.create_task(self._run(hardware), name=f"flash-{hardware.value}")
        return self._task

    async def wait(self) -> FlashResult | None:
        """Wait for the most recent flash to complete."""
        if self._task is None:
            return None
        return await self._task

    async def _run(self, hardware: FirmwareHardware) -> FlashResult:
        started = time.monotonic()
        image = self.image_path(hardware)
        self.stats.attempts += 1
        self.stats.last_hardware = hardware.value
        self.prepare()

        if not image.is_file():
            self.abort()
            return self._complete(
                hardware, image, None, started, error=f"firmware image not found: {image}"
            )

        device = self._serial.device
        exit_code: int | None = None
        error: str | None = None
        try:
            logger.info(
                "Pausing serial link on %s to flash %s firmware",
                device,
                hardware.value,
                extra={"hardware": hardware.value, "device": device, "fsm_state": self.fsm_state},
            )
            await self._serial.stop()
            self.settle()
            await asyncio.sleep(self._settle_delay)
            self.begin_flash()
            exit_code = await self._invoker.flash(image, device)
        except FlashError as exc:
            exit_code = exc.exit_code
            error = str(exc)
            if exc.output:
                logger.error("Flash output:\n%s", exc.output.rstrip())
        except Exception as exc:
            logger.exception("Flash of %s firmware failed", hardware.value)
            error = f"{type(exc).__name__}: {exc}"
        finally:
            self.resume()
            try:
                await self._serial.start()
            except Exception as exc:
                logger.error("Failed to restart serial link after flashing: %s", exc)
                if error is None:
                    error = f"serial restart failed: {exc}"
            self.finish()

        return self._complete(hardware, image, device, started, exit_code=exit_code, error=error)

    def _complete(
        self,
        hardware: FirmwareHardware,
        image: Path,
        device: str | None,
        started: float,
        *,
        exit_code: int | None = None,
        error: str | None = None,
    ) -> FlashResult:
        result = FlashResult(
            hardware=hardware,
            image=str(image),
            device=device,
            success=error is None,
            exit_code=exit_code,
            error=error,
            duration=time.monotonic() - started,
        )
        self.stats.record(result)
        if result.success:
            logger.info(
                "Flashed %s firmware in %.1fs",
                hardware.value,
                result.duration,
                extra={"hardware": hardware.value, "device": device},
            )
        else:
            logger.error(
                "Flashing %s firmware failed: %s",
                hardware.value,
                error,
                extra={"hardware": hardware.value, "device": device},
            )
        return result


__all__ = [
    "AvrdudeInvoker",
    "FlashCoordinator",
    "FlashError",
    "FlashInProgress",
    "FlashInvoker",
    "FlashResult",
    "FlashStats",
    "SerialLinkController",
]
