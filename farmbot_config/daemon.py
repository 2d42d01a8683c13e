#!/usr/bin/env python3
"""Async orchestrator for the FarmBot configuration daemon.

The daemon owns the configuration actor and wires it to its collaborators:
the JSON persistence backend, the supervised serial link and the firmware
flash coordinator. Long-running pieces run under the task supervisor inside
one ``TaskGroup``.

Architecture:
    main() -> ConfigDaemon -> TaskGroup
        ├── config-actor (ConfigActor.run)
        ├── status-writer (status_writer)
        ├── prometheus-exporter (optional)
    serial-link (SupervisedSerialLink) is started and stopped by the daemon
    and paused by the flash coordinator.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Awaitable, Callable
from typing import Any, NoReturn

import msgspec
import uvloop

from farmbot_config.config.logging import configure_logging
from farmbot_config.config.settings import RuntimeConfig, load_runtime_config
from farmbot_config.const import (
    CONFIG_PATH_ENV,
    SUPERVISOR_DEFAULT_MAX_BACKOFF,
    SUPERVISOR_DEFAULT_MIN_BACKOFF,
    SUPERVISOR_DEFAULT_RESTART_INTERVAL,
    SUPERVISOR_STATUS_MAX_BACKOFF,
    SUPERVISOR_STATUS_RESTART_INTERVAL,
)
from farmbot_config.metrics import PrometheusExporter
from farmbot_config.persistence import ConfigStore, FileBackend, PersistenceBackend, PersistenceError
from farmbot_config.services.actor import ConfigActor
from farmbot_config.services.flash import AvrdudeInvoker, FlashCoordinator, FlashInvoker
from farmbot_config.services.supervisor import SupervisorStats, supervise_task
from farmbot_config.state.model import BuildInfo, InfoKey
from farmbot_config.state.status import cleanup_status_file, status_writer
from farmbot_config.transport.serial import SerialRunner, SupervisedSerialLink, watch_firmware_reports

logger = logging.getLogger("farmbot_config")


class SupervisedTaskSpec(msgspec.Struct):
    """Specification for a supervised async task."""

    name: str
    factory: Callable[[], Awaitable[None]]
    fatal_exceptions: tuple[type[BaseException], ...] = ()
    max_restarts: int | None = None
    restart_interval: float = SUPERVISOR_DEFAULT_RESTART_INTERVAL
    min_backoff: float = SUPERVISOR_DEFAULT_MIN_BACKOFF
    max_backoff: float = SUPERVISOR_DEFAULT_MAX_BACKOFF


class ConfigDaemon:
    """Main orchestrator for the configuration daemon.

    Attributes:
        config: Runtime configuration loaded from the TOML file.
        store: Persistence glue used by the actor.
        serial: Serial link paused while flashing.
        flasher: Flash coordinator spawned by firmware_hardware updates.
        actor: The configuration actor owning the bot state.
        exporter: Optional Prometheus metrics exporter.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        backend: PersistenceBackend | None = None,
        invoker: FlashInvoker | None = None,
        serial_runner: SerialRunner | None = None,
    ) -> None:
        self.config = config
        self.supervisor_stats: dict[str, SupervisorStats] = {}
        self.build = BuildInfo(
            target=config.build_target,
            commit=config.build_commit,
            env=config.build_env,
        )
        self.store = ConfigStore(backend or FileBackend(config.storage_path))
        self.serial = SupervisedSerialLink(
            config.serial_port,
            serial_runner or self._watch_serial,
            stats=self._stats_for("serial-link"),
        )
        self.flasher = FlashCoordinator(
            self.serial,
            invoker
            or AvrdudeInvoker(
                tool=config.flash_tool,
                part=config.flash_part,
                programmer=config.flash_programmer,
                baud=config.flash_baud,
            ),
            firmware_dir=config.firmware_dir,
            settle_delay=config.flash_settle_delay,
        )
        self.actor = ConfigActor(self.store, self.flasher, build=self.build)
        self.exporter: PrometheusExporter | None = None

    def _stats_for(self, name: str) -> SupervisorStats:
        return self.supervisor_stats.setdefault(name, SupervisorStats())

    async def _watch_serial(self, device: str) -> None:
        await watch_firmware_reports(
            device,
            self._report_firmware_version,
            baud=self.config.serial_baud,
        )

    def _report_firmware_version(self, version: str) -> None:
        self.actor.update_info(InfoKey.FIRMWARE_VERSION, version)

    def status_payload(self) -> dict[str, Any]:
        """Status document shared by the status file and the exporter."""
        return {
            "state": self.actor.published,
            "flash": {
                **self.flasher.stats.as_dict(),
                "in_flight": self.flasher.in_flight,
                "fsm_state": self.flasher.fsm_state,
            },
            "serial": {
                "device": self.serial.device,
                "running": self.serial.running,
            },
            "supervisors": {name: stats.as_dict() for name, stats in self.supervisor_stats.items()},
        }

    async def _run_status_writer(self) -> None:
        await status_writer(
            self.status_payload,
            self.config.status_file,
            self.config.status_interval,
        )

    def _setup_supervision(self) -> list[SupervisedTaskSpec]:
        """Prepare the list of tasks to be supervised."""
        specs: list[SupervisedTaskSpec] = [
            SupervisedTaskSpec(
                name="config-actor",
                factory=self.actor.run,
                fatal_exceptions=(PersistenceError,),
            ),
            SupervisedTaskSpec(
                name="status-writer",
                factory=self._run_status_writer,
                max_restarts=5,
                restart_interval=SUPERVISOR_STATUS_RESTART_INTERVAL,
                max_backoff=SUPERVISOR_STATUS_MAX_BACKOFF,
            ),
        ]

        if self.config.metrics_enabled:
            self.exporter = PrometheusExporter(
                self.status_payload,
                self.config.metrics_host,
                self.config.metrics_port,
            )
            specs.append(
                SupervisedTaskSpec(
                    name="prometheus-exporter",
                    factory=self.exporter.run,
                    max_restarts=5,
                    restart_interval=SUPERVISOR_STATUS_RESTART_INTERVAL,
                )
            )

        return specs

    async def _supervise(self, spec: SupervisedTaskSpec) -> None:
        await supervise_task(
            spec.name,
            spec.factory,
            fatal_exceptions=spec.fatal_exceptions,
            min_backoff=spec.min_backoff,
            max_backoff=spec.max_backoff,
            stats=self._stats_for(spec.name),
            max_restarts=spec.max_restarts,
            restart_interval=spec.restart_interval,
        )

    async def run(self) -> None:
        """Main async entry point."""
        # A backend that cannot be read is fatal before anything else starts.
        self.actor.load()
        supervised_tasks = self._setup_supervision()

        try:
            await self.serial.start()
            async with asyncio.TaskGroup() as task_group:
                for spec in supervised_tasks:
                    task_group.create_task(self._supervise(spec), name=spec.name)
        except* asyncio.CancelledError:
            logger.info("Main task cancelled; shutting down.")
        except* Exception as exc_group:
            for group_exc in exc_group.exceptions:
                logger.critical(
                    "Unhandled exception in main task group: %s",
                    group_exc,
                    exc_info=group_exc,
                )
            raise
        finally:
            if self.flasher.in_flight:
                # Interrupting avrdude mid-write leaves the board unbootable.
                logger.info("Waiting for firmware flash to finish before shutdown.")
                await self.flasher.wait()
            await self.serial.stop()
            cleanup_status_file(self.config.status_file)
            logger.info("FarmBot configuration daemon stopped.")


def main() -> NoReturn:  # pragma: no cover (Entry point wrapper)
    try:
        config = load_runtime_config(os.environ.get(CONFIG_PATH_ENV))
    except ValueError as exc:
        sys.stderr.write(f"farmbot-config: {exc}\n")
        sys.exit(2)
    configure_logging(config)

    logger.info(
        "Starting FarmBot configuration daemon. Serial: %s@%d Storage: %s",
        config.serial_port,
        config.serial_baud,
        config.storage_path,
    )

    try:
        daemon = ConfigDaemon(config)
        asyncio.run(daemon.run(), loop_factory=uvloop.new_event_loop)
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        sys.exit(0)
    except PersistenceError as exc:
        logger.critical("Configuration store unavailable: %s", exc)
        sys.exit(1)
    except RuntimeError as exc:
        logger.critical("Startup aborted due to runtime error: %s", exc)
        sys.exit(1)
    except ExceptionGroup as exc_group:
        for group_exc in exc_group.exceptions:
            logger.critical("Fatal error in task group: %s", group_exc, exc_info=group_exc)
        sys.exit(1)
    except OSError as exc:
        logger.critical("System/OS error during daemon execution: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
