"""Serial link lifecycle for the configuration daemon.

The link is owned by a runner coroutine that the daemon supervises. Flashing
new firmware needs exclusive access to the device, so the link can be
stopped (the runner is cancelled and the port released) and started again.
The runner shipped here only watches the firmware for version reports; the
full serial protocol lives elsewhere.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import termios
from collections.abc import Awaitable, Callable
from typing import Any, Final, cast

from ..const import (
    DEFAULT_SERIAL_BAUD,
    FIRMWARE_DISCONNECTED,
    FIRMWARE_VERSION_REPORT,
    SUPERVISOR_DEFAULT_MAX_BACKOFF,
    SUPERVISOR_DEFAULT_MIN_BACKOFF,
)
from ..services.supervisor import SupervisorStats, supervise_task

logger = logging.getLogger("farmbot_config.serial")

# Baudrate constants mapping (Termios)
BAUDRATE_MAP: Final[dict[int, int]] = {
    1200: termios.B1200, 2400: termios.B2400, 4800: termios.B4800,
    9600: termios.B9600, 19200: termios.B19200, 38400: termios.B38400,
    57600: termios.B57600, 115200: termios.B115200, 230400: termios.B230400,
    460800: termios.B460800, 500000: termios.B500000, 921600: termios.B921600,
    1000000: termios.B1000000,
}

MAX_REPORT_LINE: Final[int] = 512

SerialRunner = Callable[[str], Awaitable[None]]
ReportCallback = Callable[[str], None]


class SerialException(OSError):
    """Exception raised on serial port errors."""
    pass


class SerialFileObj:
    """Minimal file-like wrapper for a serial file descriptor."""
    def __init__(self, fd: int):
        self._fd: int | None = fd

    def fileno(self) -> int:
        if self._fd is None:
            raise SerialException("File closed")
        return self._fd

    def close(self) -> None:
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None


def configure_serial_port(fd: int, baudrate: int, exclusive: bool = False) -> None:
    """Put *fd* in raw 8N1 mode at *baudrate*."""
    if baudrate not in BAUDRATE_MAP:
        raise SerialException(f"Unsupported baudrate: {baudrate}")
    speed = BAUDRATE_MAP[baudrate]

    if exclusive:
        try:
            fcntl.ioctl(fd, termios.TIOCEXCL)
        except (OSError, AttributeError):
            pass

    try:
        attrs = termios.tcgetattr(fd)
    except termios.error as e:
        raise SerialException(f"Failed to get terminal attributes: {e}") from e

    attrs[0] = 0  # iflag: no processing
    attrs[1] = 0  # oflag: no processing
    attrs[2] = termios.CS8 | termios.CREAD | termios.CLOCAL  # cflag: 8N1
    attrs[3] = 0  # lflag: raw mode
    attrs[6][termios.VMIN] = 0
    attrs[6][termios.VTIME] = 0
    attrs[4] = speed  # ispeed
    attrs[5] = speed  # ospeed

    try:
        termios.tcsetattr(fd, termios.TCSANOW, attrs)
        termios.tcflush(fd, termios.TCIOFLUSH)
    except termios.error as e:
        raise SerialException(f"Failed to configure port: {e}") from e


class SerialReadProtocol(asyncio.Protocol):
    def __init__(self) -> None:
        self.reader = asyncio.StreamReader(limit=MAX_REPORT_LINE * 4)

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.reader.set_transport(cast(asyncio.Transport, transport))

    def data_received(self, data: bytes) -> None:
        self.reader.feed_data(data)

    def connection_lost(self, exc: Exception | None) -> None:
        self.reader.feed_eof()


def parse_firmware_report(line: str | bytes) -> str | None:
    """Return the version carried by an ``R83 <version>`` report line."""
    if isinstance(line, bytes):
        line = line.decode("ascii", errors="ignore")
    parts = line.strip().split(maxsplit=1)
    if len(parts) != 2 or parts[0] != FIRMWARE_VERSION_REPORT:
        return None
    version = parts[1].split(" Q", 1)[0].strip()
    return version or None


async def watch_firmware_reports(
    device: str,
    report: ReportCallback,
    *,
    baud: int = DEFAULT_SERIAL_BAUD,
) -> None:
    """Read *device* line by line and pass firmware versions to *report*.

    Returns only by raising: a closed port raises :class:`SerialException`
    so the supervisor reopens it. *report* receives the disconnected marker
    whenever the port is released.
    """
    loop = asyncio.get_running_loop()
    try:
        fd = os.open(device, os.O_RDWR | os.O_NOCTTY | os.O_NONBLOCK)
    except OSError as e:
        raise SerialException(f"Could not open port {device}: {e}") from e

    fobj = SerialFileObj(fd)
    transport: asyncio.BaseTransport | None = None
    try:
        configure_serial_port(fd, baud, exclusive=True)
        protocol = SerialReadProtocol()
        transport, _ = await loop.connect_read_pipe(lambda: protocol, fobj)
        logger.info("Serial link open on %s at %d baud", device, baud, extra={"device": device})

        while True:
            try:
                line = await protocol.reader.readline()
            except ValueError:
                logger.warning("Discarding oversized line from %s", device)
                continue
            if not line:
                raise SerialException(f"Serial port {device} closed")
            version = parse_firmware_report(line)
            if version is not None:
                logger.info("Firmware reported version %s", version)
                report(version)
    finally:
        if transport is not None:
            transport.close()
        else:
            fobj.close()
        report(FIRMWARE_DISCONNECTED)


class SupervisedSerialLink:
    """Serial link whose runner can be paused around a firmware flash."""

    def __init__(
        self,
        device: str,
        runner: SerialRunner,
        *,
        stats: SupervisorStats | None = None,
        min_backoff: float = SUPERVISOR_DEFAULT_MIN_BACKOFF,
        max_backoff: float = SUPERVISOR_DEFAULT_MAX_BACKOFF,
    ) -> None:
        self._device = device
        self._runner = runner
        self._min_backoff = min_backoff
        self._max_backoff = max_backoff
        self._task: asyncio.Task[None] | None = None
        self.stats = stats or SupervisorStats()

    @property
    def device(self) -> str | None:
        return self._device

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(
            supervise_task(
                "serial-link",
                self._run_once,
                min_backoff=self._min_backoff,
                max_backoff=self._max_backoff,
                stats=self.stats,
                logger=logger,
            ),
            name="serial-link",
        )
        self._task.add_done_callback(self._on_done)
        logger.info("Serial link started on %s", self._device, extra={"device": self._device})

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait({task})
        logger.info("Serial link on %s stopped", self._device)

    async def _run_once(self) -> None:
        await self._runner(self._device)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Serial link supervisor for %s gave up: %s", self._device, exc)


__all__ = [
    "BAUDRATE_MAP",
    "SerialException",
    "SupervisedSerialLink",
    "configure_serial_port",
    "parse_firmware_report",
    "watch_firmware_reports",
]
