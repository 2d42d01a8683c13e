"""Service layer for the configuration daemon."""

from .actor import ActorStopped, ConfigActor, load_state
from .flash import (
    AvrdudeInvoker,
    FlashCoordinator,
    FlashError,
    FlashInProgress,
    FlashResult,
    FlashStats,
)
from .messages import Reply
from .supervisor import SupervisorStats, supervise_task

__all__ = [
    "ActorStopped",
    "AvrdudeInvoker",
    "ConfigActor",
    "FlashCoordinator",
    "FlashError",
    "FlashInProgress",
    "FlashResult",
    "FlashStats",
    "Reply",
    "SupervisorStats",
    "load_state",
    "supervise_task",
]
