"""Prometheus exporter for the configuration daemon.

The exporter serves two documents built from the same status snapshot:
``/metrics`` in the Prometheus text format and ``/status`` as JSON.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Iterator
from http import HTTPStatus
from typing import Any

import msgspec
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily, InfoMetricFamily
from prometheus_client.registry import Collector

logger = logging.getLogger("farmbot_config.metrics")


_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_]")
_METRIC_PREFIX = "farmbot"
# InfoMetricFamily appends "_info" to the exposed name.
_INFO_METRIC = "farmbot"
_GAUGE_DOC = "FarmBot configuration auto-generated metric"
_INFO_DOC = "FarmBot configuration informational metric"
_REQUEST_TIMEOUT = 5.0
_JSON_CONTENT_TYPE = "application/json"
_TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"

SnapshotSource = Callable[[], dict[str, Any]]


def _flatten_snapshot(prefix: str, value: Any) -> Iterator[tuple[str, float | str]]:
    """Yield ``(name, value)`` leaves; numbers stay numeric, the rest become text."""
    if isinstance(value, dict):
        for key, item in value.items():
            yield from _flatten_snapshot(f"{prefix}_{key}", item)
    elif isinstance(value, bool):
        yield prefix, 1.0 if value else 0.0
    elif isinstance(value, (int, float)):
        yield prefix, float(value)
    elif value is None:
        yield prefix, "null"
    else:
        yield prefix, str(value)


class SnapshotCollector(Collector):
    """Project the daemon status snapshot onto Prometheus families.

    Numeric leaves (flash counters, supervisor restarts, ``locked``) become
    one gauge each. Textual leaves such as ``firmware_hardware`` and
    ``sync_status`` are folded into a single info metric keyed by the
    flattened field name.
    """

    def __init__(self, source: SnapshotSource) -> None:
        self._source = source

    def collect(self) -> Iterator[Any]:
        info = InfoMetricFamily(_INFO_METRIC, _INFO_DOC, labels=("key",))
        has_info = False
        for name, value in _flatten_snapshot(_METRIC_PREFIX, self._source()):
            if isinstance(value, float):
                gauge = GaugeMetricFamily(_sanitize_metric_name(name), _GAUGE_DOC)
                gauge.add_metric((), value)
                yield gauge
            else:
                info.add_metric((name,), {"value": value})
                has_info = True
        if has_info:
            yield info


class PrometheusExporter:
    """Small HTTP endpoint publishing the daemon status."""

    def __init__(self, source: SnapshotSource, host: str, port: int) -> None:
        self._source = source
        self._host = host
        self._port = port
        self._server: asyncio.AbstractServer | None = None
        self._registry = CollectorRegistry()
        self._registry.register(SnapshotCollector(source))

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when that was 0."""
        if self._server is not None:
            for sock in self._server.sockets:
                return sock.getsockname()[1]
        return self._port

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await asyncio.start_server(self._handle_client, self._host, self._port)
        logger.info("Serving metrics on http://%s:%d/metrics", self._host, self.port)

    async def stop(self) -> None:
        server = self._server
        self._server = None
        if server is None:
            return
        server.close()
        await server.wait_closed()
        logger.info("Metrics endpoint closed")

    async def run(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    def _respond(self, method: str, path: str) -> bytes:
        match (method, path):
            case ("GET", "/metrics"):
                return _http_response(HTTPStatus.OK, generate_latest(self._registry), CONTENT_TYPE_LATEST)
            case ("GET", "/status"):
                body = msgspec.json.encode(self._source(), enc_hook=str)
                return _http_response(HTTPStatus.OK, body, _JSON_CONTENT_TYPE)
            case (_, "/metrics" | "/status"):
                return _http_response(HTTPStatus.METHOD_NOT_ALLOWED, b"", headers={"Allow": "GET"})
            case _:
                return _http_response(HTTPStatus.NOT_FOUND, b"")

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), _REQUEST_TIMEOUT)
            method, target, _version = head.split(b"\r\n", 1)[0].decode("latin-1").split(" ", 2)
            response = self._respond(method, target.split("?", 1)[0])
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, TimeoutError, ValueError) as exc:
            logger.debug("Malformed metrics request: %s", exc)
            response = _http_response(HTTPStatus.BAD_REQUEST, b"")

        try:
            writer.write(response)
            await writer.drain()
            writer.close()
            await writer.wait_closed()
        except OSError as exc:
            logger.debug("Metrics client went away: %s", exc)


def _http_response(
    status: HTTPStatus,
    body: bytes,
    content_type: str = _TEXT_CONTENT_TYPE,
    *,
    headers: dict[str, str] | None = None,
) -> bytes:
    lines = [
        f"HTTP/1.1 {status.value} {status.phrase}",
        f"Content-Type: {content_type}",
        f"Content-Length: {len(body)}",
        "Connection: close",
    ]
    lines.extend(f"{name}: {value}" for name, value in (headers or {}).items())
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body


def _sanitize_metric_name(name: str) -> str:
    cleaned = _SANITIZE_RE.sub("_", name.lower())
    cleaned = cleaned.strip("_") or "farmbot_metric"
    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned


__all__ = ["PrometheusExporter", "SnapshotCollector", "SnapshotSource"]
