"""Lightweight async HTTP health server for the engine's probes.

Zero-dependency implementation using ``asyncio.start_server``.
Exposes ``/healthz`` (liveness) and ``/readyz`` (readiness) endpoints;
readiness fails with 503 while any subscribed topic is not Connected.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

import structlog

logger = structlog.get_logger()

ReadinessCheck = Callable[[], Awaitable[dict[str, Any]]]

NOT_READY_STATUSES = frozenset({"error", "stale"})


class HealthServer:
    """Async TCP server that responds to HTTP health probes.

    Parameters
    ----------
    port:
        TCP port to listen on.
    readiness_check:
        Async callable returning a health dict.  An ``"error"`` or ``"stale"``
        status in any nested topic entry causes the readiness probe to
        return 503.
    host:
        Interface to bind; defaults to all interfaces.
    """

    def __init__(
        self,
        port: int,
        readiness_check: ReadinessCheck,
        host: str = "0.0.0.0",  # noqa: S104
    ) -> None:
        self._port = port
        self._host = host
        self._readiness_check = readiness_check
        self._server: asyncio.Server | None = None

    @property
    def port(self) -> int:
        """Bound port (resolves ``0`` to the ephemeral port once started)."""
        if self._server is not None and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle, host=self._host, port=self._port
        )
        logger.info("health.server_started", port=self.port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("health.server_stopped")

    async def _handle(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=5.0)
            path = self._parse_path(request_line)

            if path == "/healthz":
                await self._respond(writer, 200, {"status": "ok"})
            elif path == "/readyz":
                await self._handle_readiness(writer)
            else:
                await self._respond(writer, 404, {"error": "not found"})
        except Exception:
            logger.debug("health.request_error", exc_info=True)
            with suppress(Exception):
                await self._respond(writer, 500, {"error": "internal server error"})
        finally:
            with suppress(Exception):
                writer.close()
                await writer.wait_closed()

    async def _handle_readiness(self, writer: asyncio.StreamWriter) -> None:
        health = await self._readiness_check()
        status_code = 503 if self._is_not_ready(health) else 200
        await self._respond(writer, status_code, health)

    @staticmethod
    def _is_not_ready(health: dict[str, Any]) -> bool:
        """Check if any topic or component reports a not-ready status."""
        for value in health.values():
            if isinstance(value, dict) and value.get("status") in NOT_READY_STATUSES:
                return True
            if isinstance(value, list):
                for item in value:
                    if (
                        isinstance(item, dict)
                        and item.get("status") in NOT_READY_STATUSES
                    ):
                        return True
        return False

    @staticmethod
    def _parse_path(request_line: bytes) -> str:
        parts = request_line.decode("utf-8", errors="replace").strip().split()
        if len(parts) >= 2:
            return parts[1]
        return ""

    @staticmethod
    async def _respond(
        writer: asyncio.StreamWriter, status: int, body: dict[str, Any]
    ) -> None:
        reasons = {
            200: "OK",
            404: "Not Found",
            500: "Internal Server Error",
            503: "Service Unavailable",
        }
        reason = reasons.get(status, "Unknown")
        payload = json.dumps(body).encode()
        header = (
            f"HTTP/1.1 {status} {reason}\r\n"
            f"Content-Type: application/json\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(header.encode() + payload)
        await writer.drain()
