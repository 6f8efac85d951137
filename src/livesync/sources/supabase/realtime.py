"""Supabase Realtime push transport (Phoenix channel protocol over websockets).

Each topic joins its own channel subscribed to ``postgres_changes`` INSERTs on
the event-log table, filtered by the ``topic`` column. The log is append-only,
so every row insert is one engine ``Event``.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import AsyncIterator
from contextlib import suppress
from typing import Any
from urllib.parse import urlencode

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from livesync.config.models import SupabaseConfig
from livesync.errors import TransportError
from livesync.streaming.events import Event

logger = structlog.get_logger()

PROTOCOL_VERSION = "1.0.0"


def channel_name(topic: str) -> str:
    return f"realtime:{topic}"


def join_message(topic: str, config: SupabaseConfig, ref: str) -> dict[str, Any]:
    """Build the ``phx_join`` frame subscribing to event-log inserts for *topic*."""
    token = config.access_token or config.api_key
    return {
        "topic": channel_name(topic),
        "event": "phx_join",
        "payload": {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {
                        "event": "INSERT",
                        "schema": config.db_schema,
                        "table": config.events_table,
                        "filter": f"topic=eq.{topic}",
                    }
                ],
            },
            "access_token": token.get_secret_value(),
        },
        "ref": ref,
        "join_ref": ref,
    }


def heartbeat_message(ref: str) -> dict[str, Any]:
    return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": ref}


def parse_message(message: dict[str, Any], topic: str) -> Event | None:
    """Convert one channel frame to an Event.

    Returns ``None`` for frames that carry no change (replies, presence,
    system notices). Raises ``TransportError`` when the server closes or
    errors the channel.
    """
    if message.get("topic") not in (channel_name(topic), "phoenix"):
        return None
    event = message.get("event")
    payload = message.get("payload") or {}
    if event in ("phx_error", "phx_close"):
        raise TransportError(topic, f"channel {event}")
    if event == "system" and payload.get("status") == "error":
        raise TransportError(topic, f"realtime error: {payload.get('message', '')}")
    if event != "postgres_changes":
        return None
    data = payload.get("data") or {}
    if str(data.get("type", "")).upper() != "INSERT":
        return None
    record = data.get("record") or {}
    if record.get("topic") not in (None, topic):
        return None
    return Event.from_dict(record, topic=topic)


def websocket_url(config: SupabaseConfig) -> str:
    query = urlencode(
        {"apikey": config.api_key.get_secret_value(), "vsn": PROTOCOL_VERSION}
    )
    return f"{config.realtime_url}?{query}"


class SupabaseRealtimeConnection:
    """One joined channel; sends heartbeats while open."""

    def __init__(
        self,
        ws: Any,
        topic: str,
        config: SupabaseConfig,
        refs: itertools.count[int],
    ) -> None:
        self._ws = ws
        self._topic = topic
        self._config = config
        self._refs = refs
        self._closed = False
        self._heartbeat: asyncio.Task[None] | None = asyncio.create_task(
            self._heartbeat_loop()
        )

    async def __aiter__(self) -> AsyncIterator[Event]:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                    event = parse_message(message, self._topic)
                except ValueError as exc:
                    logger.warning(
                        "supabase_realtime.bad_frame", topic=self._topic, error=str(exc)
                    )
                    continue
                if event is not None:
                    yield event
        except ConnectionClosed as exc:
            if self._closed:
                return
            raise TransportError(self._topic, f"websocket closed: {exc}") from exc
        if not self._closed:
            raise TransportError(self._topic, "websocket closed by server")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await self._heartbeat
            self._heartbeat = None
        with suppress(WebSocketException, OSError):
            await self._ws.close()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.heartbeat_interval_seconds)
            try:
                await self._ws.send(json.dumps(heartbeat_message(str(next(self._refs)))))
            except (ConnectionClosed, OSError) as exc:
                logger.debug(
                    "supabase_realtime.heartbeat_failed", topic=self._topic, error=str(exc)
                )
                return


class SupabaseRealtimeTransport:
    """Transport that opens one Realtime channel per topic."""

    def __init__(self, config: SupabaseConfig) -> None:
        self._config = config
        self._refs = itertools.count(1)

    async def open(self, topic: str) -> SupabaseRealtimeConnection:
        ref = str(next(self._refs))
        try:
            ws = await websockets.connect(
                websocket_url(self._config),
                open_timeout=self._config.timeout_seconds,
                ping_interval=None,
            )
        except (OSError, WebSocketException, TimeoutError) as exc:
            raise TransportError(topic, f"connect failed: {exc}") from exc

        try:
            await ws.send(json.dumps(join_message(topic, self._config, ref)))
            await asyncio.wait_for(
                self._await_join_reply(ws, topic, ref),
                timeout=self._config.timeout_seconds,
            )
        except (
            OSError,
            ValueError,
            WebSocketException,
            TimeoutError,
            TransportError,
        ) as exc:
            with suppress(WebSocketException, OSError):
                await ws.close()
            if isinstance(exc, TransportError):
                raise
            raise TransportError(topic, f"join failed: {exc}") from exc

        logger.info("supabase_realtime.joined", topic=topic)
        return SupabaseRealtimeConnection(ws, topic, self._config, self._refs)

    async def close(self) -> None:
        pass

    @staticmethod
    async def _await_join_reply(ws: Any, topic: str, ref: str) -> None:
        async for raw in ws:
            message = json.loads(raw)
            if message.get("event") != "phx_reply" or message.get("ref") != ref:
                continue
            payload = message.get("payload") or {}
            if payload.get("status") != "ok":
                reason = (payload.get("response") or {}).get("reason", payload)
                raise TransportError(topic, f"join rejected: {reason}")
            return
        raise TransportError(topic, "websocket closed during join")
