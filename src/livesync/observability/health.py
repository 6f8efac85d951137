"""Health probes for the configured realtime backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

import httpx
import structlog

from livesync.config.models import EngineConfig, SupabaseConfig, TransportMode

logger = structlog.get_logger()


class Status(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    name: str
    status: Status = Status.UNKNOWN
    detail: str = ""


@dataclass
class BackendHealth:
    components: list[ComponentHealth] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(c.status == Status.HEALTHY for c in self.components)

    @property
    def summary(self) -> dict[str, str]:
        return {c.name: c.status.value for c in self.components}


def check_supabase_rest(config: SupabaseConfig) -> ComponentHealth:
    """Probe the PostgREST event-log endpoint."""
    token = config.access_token or config.api_key
    try:
        resp = httpx.get(
            f"{config.rest_url}/{config.events_table}",
            params={"select": "sequence_no", "limit": "1"},
            headers={
                "apikey": config.api_key.get_secret_value(),
                "Authorization": f"Bearer {token.get_secret_value()}",
                "Accept-Profile": config.db_schema,
            },
            timeout=config.timeout_seconds,
        )
        resp.raise_for_status()
        return ComponentHealth(
            name="supabase-rest",
            status=Status.HEALTHY,
            detail=f"{config.events_table} reachable",
        )
    except Exception as exc:
        return ComponentHealth(
            name="supabase-rest", status=Status.UNHEALTHY, detail=str(exc)
        )


def check_backend_health(config: EngineConfig) -> BackendHealth:
    """Run all health checks for the configured transport."""
    components: list[ComponentHealth] = []

    if config.transport_mode == TransportMode.SUPABASE and config.supabase:
        components.append(check_supabase_rest(config.supabase))
    elif config.transport_mode == TransportMode.MEMORY:
        components.append(
            ComponentHealth(
                name="memory", status=Status.HEALTHY, detail="in-process backend"
            )
        )
    else:
        components.append(
            ComponentHealth(
                name="transport",
                status=Status.UNKNOWN,
                detail=f"no health checks for transport mode: {config.transport_mode}",
            )
        )

    result = BackendHealth(components=components)
    logger.debug("health.checked", summary=result.summary)
    return result
