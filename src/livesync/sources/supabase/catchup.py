"""PostgREST catch-up client for the Supabase event-log table."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from livesync.config.models import SupabaseConfig
from livesync.errors import CatchUpFailure
from livesync.streaming.events import Event

logger = structlog.get_logger()


class SupabaseCatchUpSource:
    """Thin async wrapper around ``GET /rest/v1/<events_table>``."""

    def __init__(
        self,
        config: SupabaseConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        token = config.access_token or config.api_key
        self._client = httpx.AsyncClient(
            base_url=config.rest_url,
            headers={
                "apikey": config.api_key.get_secret_value(),
                "Authorization": f"Bearer {token.get_secret_value()}",
                "Accept-Profile": config.db_schema,
            },
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> SupabaseCatchUpSource:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def fetch_since(
        self, topic: str, sequence_no: int, *, limit: int = 500
    ) -> list[Event]:
        """Fetch up to *limit* events after *sequence_no*, ordered by sequence."""
        params = {
            "select": "*",
            "topic": f"eq.{topic}",
            "sequence_no": f"gt.{sequence_no}",
            "order": "sequence_no.asc",
            "limit": str(limit),
        }
        try:
            resp = await self._client.get(f"/{self._config.events_table}", params=params)
            resp.raise_for_status()
            rows: list[dict[str, Any]] = resp.json()
            events = [Event.from_dict(row, topic=topic) for row in rows]
        except httpx.HTTPError as exc:
            raise CatchUpFailure(topic, sequence_no, str(exc)) from exc
        except ValueError as exc:
            raise CatchUpFailure(topic, sequence_no, f"bad row: {exc}") from exc
        logger.debug(
            "supabase_catchup.fetched", topic=topic, since=sequence_no, count=len(events)
        )
        return events

    async def ping(self) -> int:
        """Probe the REST endpoint; returns the HTTP status code."""
        resp = await self._client.get(
            f"/{self._config.events_table}", params={"select": "sequence_no", "limit": "1"}
        )
        resp.raise_for_status()
        return resp.status_code
