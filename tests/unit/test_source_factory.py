"""Unit tests for the backend factory."""

from __future__ import annotations

from livesync.config.models import EngineConfig, SupabaseConfig, TransportMode
from livesync.sources.factory import create_backend
from livesync.sources.memory import InMemoryBackend
from livesync.sources.supabase.catchup import SupabaseCatchUpSource
from livesync.sources.supabase.realtime import SupabaseRealtimeTransport


class TestCreateBackend:
    def test_memory_shares_one_backend(self):
        transport, catch_up = create_backend(EngineConfig())
        assert isinstance(transport, InMemoryBackend)
        assert catch_up is transport

    def test_supabase_builds_realtime_and_rest(self):
        config = EngineConfig(
            transport_mode=TransportMode.SUPABASE,
            supabase=SupabaseConfig(url="https://lms.supabase.co", api_key="k"),
        )
        transport, catch_up = create_backend(config)
        assert isinstance(transport, SupabaseRealtimeTransport)
        assert isinstance(catch_up, SupabaseCatchUpSource)
