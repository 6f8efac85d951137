"""Typer CLI for the livesync engine."""

from __future__ import annotations

import asyncio
import json
import random
from collections import Counter
from pathlib import Path
from typing import Any

import structlog
import typer
from rich.console import Console
from rich.table import Table

from livesync.config.loader import load_engine_config
from livesync.config.models import EngineConfig
from livesync.domain.records import domain_local_record, domain_record
from livesync.observability.health import Status, check_backend_health
from livesync.observability.logging import configure_logging
from livesync.streaming.events import Event
from livesync.streaming.notifier import Delivery
from livesync.sync.engine import RealtimeEngine

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="livesync", help="Realtime event-merge engine CLI")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="JSON log lines"),
) -> None:
    configure_logging(log_level, json=json_logs)


def _load(config_path: str | None) -> EngineConfig:
    if config_path is None:
        return load_engine_config()
    path = Path(config_path)
    if not path.exists():
        console.print(f"[red]Config file not found: {path}[/red]")
        raise typer.Exit(1)
    return load_engine_config(path)


def _read_events(path: Path, topic: str | None) -> list[Event]:
    events: list[Event] = []
    with path.open() as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                events.append(Event.from_dict(json.loads(line), topic=topic))
            except ValueError as exc:
                msg = f"{path}:{lineno}: {exc}"
                raise ValueError(msg) from exc
    return events


def _record_row(record: Any) -> tuple[str, str, str, str]:
    if hasattr(record, "model_dump"):
        data = record.model_dump(
            mode="json",
            exclude={"id", "last_modified", "sequence_no", "pending", "correlation_id"},
        )
    else:
        data = record.payload
    pending = "yes" if getattr(record, "pending", False) else ""
    return (
        record.id,
        str(getattr(record, "sequence_no", "")),
        pending,
        json.dumps(data, default=str),
    )


@app.command()
def validate(
    config_path: str = typer.Argument(..., help="Path to engine YAML"),
) -> None:
    """Validate an engine configuration file."""
    try:
        config = _load(config_path)
        console.print(f"[green]Valid[/green] — engine_id={config.engine_id}")
        console.print(f"  transport: {config.transport_mode}")
        if config.supabase is not None:
            console.print(f"  supabase:  {config.supabase.url}")
        console.print(f"  topics:    {config.topics or '(none)'}")
        console.print(
            f"  backoff:   {config.backoff.base_seconds}s → {config.backoff.cap_seconds}s"
        )
    except typer.Exit:
        raise
    except Exception as exc:
        console.print(f"[red]Validation error:[/red] {exc}")
        raise typer.Exit(1) from exc


@app.command()
def replay(
    events_path: str = typer.Argument(..., help="JSON-lines file of events"),
    topic: str | None = typer.Option(
        None, "--topic", help="Topic for lines that carry none"
    ),
    shuffle: bool = typer.Option(False, "--shuffle", help="Apply in random order"),
    seed: int | None = typer.Option(None, "--seed", help="Shuffle seed"),
    typed: bool = typer.Option(
        False, "--typed", help="Build LMS domain records instead of raw payloads"
    ),
) -> None:
    """Feed an event file through an in-memory engine and print the final views."""
    path = Path(events_path)
    if not path.exists():
        console.print(f"[red]Events file not found: {path}[/red]")
        raise typer.Exit(1)
    try:
        events = _read_events(path, topic)
    except ValueError as exc:
        console.print(f"[red]Bad event:[/red] {exc}")
        raise typer.Exit(1) from exc
    if shuffle:
        random.Random(seed).shuffle(events)

    factories: dict[str, Any] = (
        {"record_factory": domain_record, "local_factory": domain_local_record}
        if typed
        else {}
    )
    engine = RealtimeEngine.from_config(load_engine_config(), **factories)
    tally: Counter[str] = Counter()
    for event in events:
        try:
            tally[engine.apply(event).value] += 1
        except ValueError as exc:
            console.print(
                f"[red]Bad event:[/red] {event.topic} {event.record_id} "
                f"seq={event.sequence_no}: {exc}"
            )
            raise typer.Exit(1) from exc

    topics = sorted({e.topic for e in events})
    for name in topics:
        table = Table(title=f"View — {name}")
        table.add_column("Record", style="cyan")
        table.add_column("Seq")
        table.add_column("Pending")
        table.add_column("Payload")
        for record in engine.current_view(name):
            table.add_row(*_record_row(record))
        console.print(table)

    summary = Table(title="Applied results")
    summary.add_column("Result", style="cyan")
    summary.add_column("Count", justify="right")
    for result, count in sorted(tally.items()):
        summary.add_row(result, str(count))
    console.print(summary)
    snapshot = engine.metrics.snapshot()
    anomalies = sum(t["anomalies"] for t in snapshot.values())
    if anomalies:
        console.print(f"[yellow]{anomalies} ordering anomalies[/yellow]")


@app.command()
def tail(
    topic: str = typer.Argument(..., help="Topic to follow, e.g. doubts:session-4"),
    config_path: str | None = typer.Option(None, "--config", help="Engine YAML"),
    typed: bool = typer.Option(False, "--typed", help="Build LMS domain records"),
) -> None:
    """Print committed changes for a topic until interrupted."""
    config = _load(config_path)
    factories: dict[str, Any] = (
        {"record_factory": domain_record, "local_factory": domain_local_record}
        if typed
        else {}
    )

    def _print(delivery: Delivery) -> None:
        console.print(
            f"[cyan]{delivery.topic}[/cyan] {delivery.op.value} "
            f"id={delivery.record_id} seq={delivery.sequence_no}"
        )
        console.print(f"  {_record_row(delivery.record)[3]}")

    def _state(name: str, state: Any) -> None:
        console.print(f"[yellow]{name}[/yellow] → {state.value}")

    async def _tail() -> None:
        async with RealtimeEngine.from_config(config, **factories) as engine:
            engine.add_state_listener(_state)
            engine.register(topic, _print)
            await engine.subscribe(topic)
            await asyncio.Event().wait()

    console.print(f"[yellow]Tailing:[/yellow] {topic} ({config.transport_mode})")
    try:
        asyncio.run(_tail())
    except KeyboardInterrupt:
        console.print("[dim]stopped[/dim]")


@app.command()
def health(
    config_path: str | None = typer.Option(None, "--config", help="Engine YAML"),
) -> None:
    """Check reachability of the configured backend."""
    config = _load(config_path)
    result = check_backend_health(config)

    table = Table(title="Backend Health")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")

    for c in result.components:
        style = "green" if c.status == Status.HEALTHY else "red"
        table.add_row(c.name, f"[{style}]{c.status}[/{style}]", c.detail)

    console.print(table)
    if not result.healthy:
        raise typer.Exit(1)
