"""Protocol conformance tests — verify all backends satisfy their protocols."""

from __future__ import annotations

from livesync.config.models import SupabaseConfig
from livesync.sources.base import CatchUpSource, EventStream, Transport, TransportConnection
from livesync.sources.memory import InMemoryBackend, MemoryConnection
from livesync.sources.stream import ReconnectingStream
from livesync.sources.supabase.catchup import SupabaseCatchUpSource
from livesync.sources.supabase.realtime import SupabaseRealtimeTransport


def _supabase() -> SupabaseConfig:
    return SupabaseConfig(url="https://lms.supabase.co", api_key="anon-key")


class TestProtocolConformance:
    # -- In-memory -------------------------------------------------------------
    def test_memory_backend_satisfies_transport(self):
        assert isinstance(InMemoryBackend(), Transport)

    def test_memory_backend_satisfies_catch_up_source(self):
        assert isinstance(InMemoryBackend(), CatchUpSource)

    def test_memory_connection_satisfies_transport_connection(self):
        conn = MemoryConnection(InMemoryBackend(), "doubts:s1")
        assert isinstance(conn, TransportConnection)

    # -- Supabase --------------------------------------------------------------
    def test_supabase_realtime_satisfies_transport(self):
        assert isinstance(SupabaseRealtimeTransport(_supabase()), Transport)

    def test_supabase_catch_up_satisfies_catch_up_source(self):
        assert isinstance(SupabaseCatchUpSource(_supabase()), CatchUpSource)

    # -- Reconnect policy ------------------------------------------------------
    def test_reconnecting_stream_satisfies_event_stream(self):
        assert isinstance(ReconnectingStream(InMemoryBackend()), EventStream)
