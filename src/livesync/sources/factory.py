"""Factory functions for backend-specific source components."""

from __future__ import annotations

from livesync.config.models import EngineConfig, TransportMode
from livesync.sources.base import CatchUpSource, Transport


def create_backend(config: EngineConfig) -> tuple[Transport, CatchUpSource]:
    """Create the push transport and catch-up source for the configured mode."""
    if config.transport_mode == TransportMode.MEMORY:
        from livesync.sources.memory import InMemoryBackend

        backend = InMemoryBackend()
        return backend, backend

    if config.transport_mode == TransportMode.SUPABASE:
        assert config.supabase is not None
        from livesync.sources.supabase.catchup import SupabaseCatchUpSource
        from livesync.sources.supabase.realtime import SupabaseRealtimeTransport

        return (
            SupabaseRealtimeTransport(config.supabase),
            SupabaseCatchUpSource(config.supabase),
        )

    msg = f"Unsupported transport mode: {config.transport_mode}"
    raise ValueError(msg)
