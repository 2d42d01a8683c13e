"""Periodic status writer for the configuration daemon."""

from __future__ import annotations

import asyncio
import msgspec
import logging
import time
from collections.abc import Callable
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any

from ..const import DEFAULT_STATUS_FILE, DEFAULT_STATUS_INTERVAL

logger = logging.getLogger("farmbot_config.status")

StatusCollector = Callable[[], dict[str, Any]]


async def status_writer(
    collect: StatusCollector,
    path: str | Path = DEFAULT_STATUS_FILE,
    interval: float = DEFAULT_STATUS_INTERVAL,
) -> None:
    """Write the collected status to *path* every *interval* seconds."""
    status_file = Path(path)
    while True:
        try:
            payload = dict(collect())
            payload["heartbeat_unix"] = time.time()
            write_task = asyncio.create_task(asyncio.to_thread(_write_status_file, status_file, payload))
            try:
                await asyncio.shield(write_task)
            except asyncio.CancelledError:
                await write_task
                raise
        except asyncio.CancelledError:
            logger.info("Status writer task cancelled.")
            raise
        await asyncio.sleep(interval)


def cleanup_status_file(path: str | Path = DEFAULT_STATUS_FILE) -> None:
    """Remove the status file if it exists."""

    try:
        Path(path).unlink(missing_ok=True)
    except OSError:
        logger.debug("Ignoring error while removing status file.")


def _write_status_file(status_file: Path, payload: dict[str, Any]) -> None:
    status_file.parent.mkdir(parents=True, exist_ok=True)
    with NamedTemporaryFile(
        "wb",
        dir=status_file.parent,
        delete=False,
    ) as handle:
        handle.write(msgspec.json.encode(payload, enc_hook=str))
        temp_name = handle.name
    Path(temp_name).replace(status_file)


__all__ = ["StatusCollector", "cleanup_status_file", "status_writer"]
