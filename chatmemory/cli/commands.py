"""Inspect and maintain memory kept in a JSON-file store."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from chatmemory import __version__
from chatmemory.config.loader import load_config
from chatmemory.errors import StoreError
from chatmemory.logging import setup_logging
from chatmemory.memory.archive import VectorArchive
from chatmemory.memory.injection import ContextAssembler
from chatmemory.memory.io import JsonFileKeyValueStore
from chatmemory.memory.store import MemoryStore
from chatmemory.memory.types import render_entities

app = typer.Typer(name="chatmemory", help="Conversation memory tools.", no_args_is_help=True)

StoreOption = typer.Option(..., "--store", "-s", help="Path to the JSON key/value store file.")
ScopeOption = typer.Option(..., "--scope", help="Scope id, e.g. chat:42.")
ConfigOption = typer.Option(None, "--config", "-c", help="Path to a JSON config file.")


def _open_store(path: Path) -> JsonFileKeyValueStore:
    try:
        return JsonFileKeyValueStore(path)
    except StoreError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    if verbose:
        setup_logging(json_output=False, level="DEBUG")


@app.command()
def version() -> None:
    """Show the installed version."""
    typer.echo(f"chatmemory {__version__}")


@app.command()
def scopes(store: Path = StoreOption) -> None:
    """List scopes that have stored memory."""
    kv = _open_store(store)
    names = kv.keys(MemoryStore.NAMESPACE)
    if not names:
        typer.echo("No scopes.")
        return
    for name in names:
        typer.echo(name)


@app.command()
def show(
    store: Path = StoreOption,
    scope: str = ScopeOption,
    as_json: bool = typer.Option(False, "--json", help="Print the raw record as JSON."),
) -> None:
    """Show the memory record for a scope."""
    record = MemoryStore(_open_store(store)).get(scope)
    if as_json:
        typer.echo(json.dumps(record.to_dict(), ensure_ascii=False, indent=2))
        return
    typer.echo(f"Scope: {scope}")
    typer.echo(f"Consolidated cursor: {record.consolidated_cursor}")
    typer.echo(f"Last updated: {record.last_updated or '-'}")
    if record.is_empty:
        typer.echo("Memory is empty.")
        return
    if record.rolling_summary:
        typer.echo("\nSummary:")
        typer.echo(record.rolling_summary)
    if record.entities:
        typer.echo(f"\nEntities ({len(record.entities)}):")
        typer.echo(render_entities(record.entities.values()))
    if record.message_summaries:
        typer.echo(f"\nMessage summaries: {len(record.message_summaries)}")


@app.command()
def history(
    store: Path = StoreOption,
    scope: str = ScopeOption,
    limit: int = typer.Option(10, "--limit", "-n", min=1, help="Newest entries to show."),
) -> None:
    """Show recent consolidation history for a scope."""
    record = MemoryStore(_open_store(store)).get(scope)
    if not record.history:
        typer.echo("No history.")
        return
    for entry in record.history[-limit:]:
        typer.echo(f"[{entry.timestamp}] ({entry.message_count} messages) {entry.summary}")


@app.command()
def wipe(
    store: Path = StoreOption,
    scope: str = ScopeOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    """Delete memory and archive for a scope."""
    if not yes and not typer.confirm(f"Wipe memory for {scope}?"):
        typer.echo("Aborted.")
        raise typer.Exit(code=1)
    kv = _open_store(store)
    MemoryStore(kv).wipe(scope)
    VectorArchive(kv).wipe(scope)
    typer.echo(f"Wiped memory for {scope}")


@app.command()
def inject(
    store: Path = StoreOption,
    scope: str = ScopeOption,
    config: Optional[Path] = ConfigOption,
    profile: Optional[str] = typer.Option(None, "--profile", help="Config profile to apply."),
) -> None:
    """Preview the injection text for a scope (without archive retrieval)."""
    cfg = load_config(config, profile=profile)
    record = MemoryStore(_open_store(store), history_limit=cfg.consolidation.history_limit).get(scope)
    assembler = ContextAssembler(cfg.injection, shape=cfg.consolidation.shape)
    text = assembler.render(record)
    typer.echo(text if text else "(nothing to inject)")


if __name__ == "__main__":
    app()
