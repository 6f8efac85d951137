"""Pydantic configuration models for the real-time merge engine."""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


class TransportMode(StrEnum):
    """Supported event backends."""

    MEMORY = "memory"
    SUPABASE = "supabase"


class BackoffConfig(BaseModel):
    """Exponential backoff with full jitter for reconnects and catch-up retries."""

    base_seconds: float = Field(default=0.25, gt=0)
    cap_seconds: float = Field(default=30.0, gt=0)
    # 0 retries forever
    max_attempts: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_cap(self) -> Self:
        if self.cap_seconds < self.base_seconds:
            msg = "cap_seconds must be >= base_seconds"
            raise ValueError(msg)
        return self


class BufferConfig(BaseModel):
    """Ordering & de-dup buffer settings."""

    defer_window_seconds: float = Field(default=2.0, gt=0)
    max_deferred_per_topic: int = Field(default=1000, ge=1)
    sweep_interval_seconds: float = Field(default=0.5, gt=0)
    # deleted ids remembered per topic; the oldest are forgotten first
    max_tombstones_per_topic: int = Field(default=10_000, ge=1)
    # sequence numbers held above a gap before the gap is given up on
    max_gap_backlog_per_topic: int = Field(default=10_000, ge=1)


class ResyncConfig(BaseModel):
    """Catch-up fetch settings used after a reconnect."""

    fetch_timeout_seconds: float = Field(default=10.0, gt=0)
    page_size: int = Field(default=500, ge=1)
    catch_up_on_connect: bool = False


class NotifierConfig(BaseModel):
    """Per-subscriber delivery settings."""

    max_pending_per_subscriber: int = Field(default=1000, ge=1)
    callback_timeout_seconds: float = Field(default=5.0, gt=0)


TableName = Annotated[str, Field(pattern=r"^[a-zA-Z_]\w*$")]


class SupabaseConfig(BaseModel):
    """Supabase project used as realtime + catch-up backend.

    Events are read from an append-only event-log table that carries
    ``topic``, ``op``, ``record_id``, ``payload``, ``server_timestamp``,
    ``sequence_no`` and ``correlation_id`` columns.
    """

    url: str
    api_key: SecretStr
    access_token: SecretStr | None = None
    db_schema: TableName = "public"
    events_table: TableName = "realtime_events"
    heartbeat_interval_seconds: float = Field(default=25.0, gt=0)
    timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            msg = f"Supabase url '{v}' must start with http:// or https://"
            raise ValueError(msg)
        return v.rstrip("/")

    @property
    def rest_url(self) -> str:
        return f"{self.url}/rest/v1"

    @property
    def realtime_url(self) -> str:
        scheme, _, host = self.url.partition("://")
        ws_scheme = "wss" if scheme == "https" else "ws"
        return f"{ws_scheme}://{host}/realtime/v1/websocket"


TopicName = Annotated[str, Field(min_length=1, pattern=r"^[a-z][a-z0-9_-]*:[\w.-]+$")]


class EngineConfig(BaseModel, extra="forbid"):
    """Top-level engine configuration."""

    engine_id: str = "livesync"
    transport_mode: TransportMode = TransportMode.MEMORY
    supabase: SupabaseConfig | None = None
    topics: list[TopicName] = Field(default_factory=list)
    backoff: BackoffConfig = BackoffConfig()
    buffer: BufferConfig = BufferConfig()
    resync: ResyncConfig = ResyncConfig()
    notifier: NotifierConfig = NotifierConfig()
    health_port: int = Field(default=8080, ge=0, le=65535)
    health_enabled: bool = False
    metrics_log_interval_seconds: float = Field(default=0.0, ge=0)

    @model_validator(mode="after")
    def check_transport_requirements(self) -> Self:
        """Ensure transport-specific config is present."""
        if self.transport_mode == TransportMode.SUPABASE and self.supabase is None:
            msg = "supabase config is required when transport_mode is 'supabase'"
            raise ValueError(msg)
        return self
