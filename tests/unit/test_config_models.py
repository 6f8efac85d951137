"""Unit tests for configuration Pydantic models."""

import pytest
from pydantic import ValidationError

from livesync.config.models import (
    BackoffConfig,
    BufferConfig,
    EngineConfig,
    NotifierConfig,
    ResyncConfig,
    SupabaseConfig,
    TransportMode,
)


class TestBackoffConfig:
    def test_defaults(self):
        cfg = BackoffConfig()
        assert cfg.base_seconds == 0.25
        assert cfg.cap_seconds == 30.0
        assert cfg.max_attempts == 0

    def test_cap_below_base_raises(self):
        with pytest.raises(ValidationError, match="cap_seconds"):
            BackoffConfig(base_seconds=5.0, cap_seconds=1.0)

    def test_non_positive_base_raises(self):
        with pytest.raises(ValidationError):
            BackoffConfig(base_seconds=0)


class TestBufferAndResyncConfig:
    def test_buffer_defaults(self):
        cfg = BufferConfig()
        assert cfg.defer_window_seconds == 2.0
        assert cfg.max_deferred_per_topic == 1000

    def test_page_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            ResyncConfig(page_size=0)

    def test_notifier_queue_must_be_positive(self):
        with pytest.raises(ValidationError):
            NotifierConfig(max_pending_per_subscriber=0)


class TestSupabaseConfig:
    def test_strips_trailing_slash(self):
        cfg = SupabaseConfig(url="https://abc.supabase.co/", api_key="k")
        assert cfg.url == "https://abc.supabase.co"
        assert cfg.rest_url == "https://abc.supabase.co/rest/v1"

    def test_realtime_url_uses_wss_for_https(self):
        cfg = SupabaseConfig(url="https://abc.supabase.co", api_key="k")
        assert cfg.realtime_url == "wss://abc.supabase.co/realtime/v1/websocket"

    def test_realtime_url_uses_ws_for_http(self):
        cfg = SupabaseConfig(url="http://localhost:54321", api_key="k")
        assert cfg.realtime_url == "ws://localhost:54321/realtime/v1/websocket"

    def test_rejects_non_http_url(self):
        with pytest.raises(ValidationError, match="http"):
            SupabaseConfig(url="ftp://abc", api_key="k")

    def test_api_key_is_secret(self):
        cfg = SupabaseConfig(url="https://abc.supabase.co", api_key="s3cret")
        assert cfg.api_key.get_secret_value() == "s3cret"
        assert "s3cret" not in repr(cfg)
        assert "s3cret" not in cfg.model_dump_json()

    def test_rejects_bad_table_name(self):
        with pytest.raises(ValidationError):
            SupabaseConfig(url="https://a.b", api_key="k", events_table="drop table;")


class TestEngineConfig:
    def test_defaults(self):
        cfg = EngineConfig()
        assert cfg.transport_mode == TransportMode.MEMORY
        assert cfg.topics == []
        assert cfg.health_enabled is False

    def test_supabase_mode_requires_supabase_section(self):
        with pytest.raises(ValidationError, match="supabase config is required"):
            EngineConfig(transport_mode=TransportMode.SUPABASE)

    def test_supabase_mode_with_section(self):
        cfg = EngineConfig(
            transport_mode="supabase",
            supabase={"url": "https://abc.supabase.co", "api_key": "k"},
        )
        assert cfg.supabase is not None

    def test_topic_names_validated(self):
        EngineConfig(topics=["doubts:session-4", "messages:room-a.b"])
        with pytest.raises(ValidationError):
            EngineConfig(topics=["no-scope"])

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            EngineConfig(unknown_setting=1)
