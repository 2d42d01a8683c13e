"""Asyncio task supervision helpers for the configuration daemon."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import msgspec
import tenacity

from ..const import (
    SUPERVISOR_DEFAULT_MAX_BACKOFF,
    SUPERVISOR_DEFAULT_MIN_BACKOFF,
    SUPERVISOR_DEFAULT_RESTART_INTERVAL,
    SUPERVISOR_MIN_RESTART_WINDOW,
)


class SupervisorStats(msgspec.Struct):
    """Restart bookkeeping for one supervised task."""

    restarts: int = 0
    last_failure: str | None = None
    last_failure_unix: float | None = None
    backoff_seconds: float = 0.0
    fatal: bool = False

    def record_failure(self, exc: BaseException, *, backoff: float, fatal: bool) -> None:
        if not fatal:
            self.restarts += 1
        self.last_failure = f"{type(exc).__name__}: {exc}"
        self.last_failure_unix = time.time()
        self.backoff_seconds = backoff
        self.fatal = fatal

    def mark_healthy(self) -> None:
        self.backoff_seconds = 0.0
        self.fatal = False

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class _SupervisorRetryState:
    """Helper to track supervisor health and logging across tenacity retries."""

    def __init__(
        self,
        name: str,
        log: logging.Logger,
        stats: SupervisorStats | None,
        window: float,
    ) -> None:
        self.name = name
        self.log = log
        self.stats = stats
        self.window = window
        self.last_start_time = 0.0

    def mark_started(self) -> None:
        self.last_start_time = time.monotonic()

    def is_healthy_runtime(self) -> bool:
        if self.last_start_time <= 0:
            return False
        return (time.monotonic() - self.last_start_time) > self.window

    def before_sleep(self, retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self.log.error("%s failed (%s); restarting in %.1fs", self.name, exc, delay)
        if self.stats is not None and exc is not None:
            self.stats.record_failure(exc, backoff=delay, fatal=False)


async def supervise_task(
    name: str,
    coro_factory: Callable[[], Awaitable[None]],
    *,
    fatal_exceptions: tuple[type[BaseException], ...] = (),
    min_backoff: float = SUPERVISOR_DEFAULT_MIN_BACKOFF,
    max_backoff: float = SUPERVISOR_DEFAULT_MAX_BACKOFF,
    stats: SupervisorStats | None = None,
    max_restarts: int | None = None,
    restart_interval: float = SUPERVISOR_DEFAULT_RESTART_INTERVAL,
    logger: logging.Logger | None = None,
) -> None:
    """Run *coro_factory* restarting it on failures using tenacity."""
    log = logger or logging.getLogger("farmbot_config.supervisor")
    restart_window_duration = max(SUPERVISOR_MIN_RESTART_WINDOW, restart_interval)

    helper = _SupervisorRetryState(name, log, stats, restart_window_duration)

    retryer = tenacity.AsyncRetrying(
        wait=tenacity.wait_exponential(multiplier=min_backoff, max=max_backoff),
        retry=tenacity.retry_if_not_exception_type(
            (asyncio.CancelledError, SystemExit, KeyboardInterrupt, GeneratorExit) + fatal_exceptions
        ),
        stop=tenacity.stop_after_attempt(max_restarts + 1) if max_restarts is not None else tenacity.stop_never,
        before_sleep=helper.before_sleep,
        reraise=True,
    )

    try:
        while True:
            try:
                async for attempt in retryer:
                    with attempt:
                        helper.mark_started()
                        await coro_factory()

                        log.warning("%s task exited cleanly; supervisor exiting", name)
                        if stats is not None:
                            stats.mark_healthy()
                        return
            except fatal_exceptions as exc:
                log.critical("%s failed with fatal exception: %s", name, exc)
                if stats is not None:
                    stats.record_failure(exc, backoff=0.0, fatal=True)
                raise
            except Exception as exc:
                if helper.is_healthy_runtime():
                    log.info("%s was healthy long enough; resetting backoff", name)
                    if stats is not None:
                        stats.mark_healthy()
                    continue
                if max_restarts is not None:
                    log.error("%s exceeded max restarts (%d); giving up", name, max_restarts)
                if stats is not None:
                    stats.record_failure(exc, backoff=0.0, fatal=True)
                raise
    except asyncio.CancelledError:
        log.debug("%s supervisor cancelled", name)
        raise


__all__ = ["SupervisorStats", "supervise_task"]
