"""Persistence glue between the configuration actor and a durable store."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Final, Literal, Protocol

import msgspec

logger = logging.getLogger("farmbot_config.persistence")


class _Missing(Enum):
    MISSING = "missing"

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Final = _Missing.MISSING
Missing = Literal[_Missing.MISSING]


class PersistenceError(RuntimeError):
    """Raised when the durable store cannot fulfil a read or write."""

    def __init__(
        self,
        reason: str,
        *,
        original: BaseException | None = None,
    ) -> None:
        message = reason if original is None else f"{reason}: {original}"
        super().__init__(message)
        self.reason = reason
        self.original = original


class PersistenceBackend(Protocol):
    """Durable key-value store holding selected configuration fields."""

    def get(self, key: str) -> Any | Missing: ...

    def put(self, key: str, value: Any) -> bool: ...


class ConfigStore:
    """Synchronous accessor used by the actor for persisted fields."""

    def __init__(self, backend: PersistenceBackend) -> None:
        self._backend = backend

    def get_config(self, name: str) -> Any | Missing:
        try:
            return self._backend.get(name)
        except (OSError, ValueError, msgspec.DecodeError) as exc:
            raise PersistenceError(f"read_failed:{name}", original=exc) from exc

    def put_config(self, name: str, value: Any) -> None:
        try:
            ok = self._backend.put(name, value)
        except (OSError, ValueError, TypeError) as exc:
            raise PersistenceError(f"write_failed:{name}", original=exc) from exc
        if not ok:
            raise PersistenceError(f"write_rejected:{name}")
        logger.debug("Persisted %s", name)


class MemoryBackend:
    """In-process backend; keeps every write in order for inspection."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self.values: dict[str, Any] = dict(initial or {})
        self.writes: list[tuple[str, Any]] = []

    def get(self, key: str) -> Any | Missing:
        return self.values.get(key, MISSING)

    def put(self, key: str, value: Any) -> bool:
        self.values[key] = value
        self.writes.append((key, value))
        return True


class FileBackend:
    """Single JSON document on disk, rewritten atomically on every put."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._cache: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._cache is None:
            try:
                raw = self.path.read_bytes()
            except FileNotFoundError:
                self._cache = {}
            else:
                document = msgspec.json.decode(raw) if raw.strip() else {}
                if not isinstance(document, dict):
                    raise ValueError(f"{self.path} does not contain a JSON object")
                self._cache = document
        return self._cache

    def get(self, key: str) -> Any | Missing:
        return self._load().get(key, MISSING)

    def put(self, key: str, value: Any) -> bool:
        document = dict(self._load())
        document[key] = value
        payload = msgspec.json.encode(document)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path: Path | None = None
        try:
            with NamedTemporaryFile(
                "wb",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                delete=False,
            ) as handle:
                temp_path = Path(handle.name)
                handle.write(payload)
            temp_path.replace(self.path)
        except OSError:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            raise
        self._cache = document
        return True


__all__ = [
    "ConfigStore",
    "FileBackend",
    "MISSING",
    "MemoryBackend",
    "Missing",
    "PersistenceBackend",
    "PersistenceError",
]
