"""
Command-Line Interface

CLI commands for inspecting and feeding a DialogKG knowledge base.

Commands:
    dialog-kg propositions  - List stored propositions
    dialog-kg search        - Vector search over propositions
    dialog-kg stats         - Resolution coverage and confidence summary
    dialog-kg clear         - Delete propositions (one context or all)
    dialog-kg analyze       - Run the pipeline over a JSON transcript
    dialog-kg config        - Show or write the effective configuration

Usage:
    # Replay a transcript in trigger-sized steps
    dialog-kg analyze chat.json --kb ./kb -c alice -t Composer -t Work --user Alice

    # Inspect
    dialog-kg propositions --kb ./kb -c alice --details
    dialog-kg search "violin concerto" --kb ./kb -c alice
    dialog-kg stats --kb ./kb -c alice

Transcript format (JSON):
    {"id": "chat-1", "messages": [{"role": "user", "content": "..."}, ...]}
    or just the list of messages.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

__all__ = ["main", "app"]

app = typer.Typer(
    name="dialog-kg",
    help="Incremental knowledge extraction from conversations",
    no_args_is_help=True,
)
console = Console()

_KB_OPTION = typer.Option(Path("./kb"), "--kb", "-k", help="Knowledge base directory")
_CONTEXT_OPTION = typer.Option(None, "--context", "-c", help="Context id (default: all)")
_CONFIG_OPTION = typer.Option(None, "--config", help="TOML configuration file", exists=True)


@app.callback()
def _setup(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    env_file: Optional[Path] = typer.Option(None, "--env-file", help="Load variables from this .env file"),
) -> None:
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(config_path: Optional[Path]):
    from dialog_kg.config import KGConfig

    return KGConfig.from_file(config_path) if config_path else KGConfig()


def _open(kb: Path, config_path: Optional[Path], types: Optional[List[str]] = None):
    from dialog_kg.api.knowledge_base import ConversationKnowledgeBase
    from dialog_kg.types import DomainSchema

    schema = DomainSchema.of(*(types or []))
    return ConversationKnowledgeBase(kb, _load_config(config_path), schema=schema)


def _load_transcript(path: Path, conversation_id: str):
    from dialog_kg.types import Conversation, Message

    data = json.loads(path.read_text())
    if isinstance(data, list):
        data = {"id": conversation_id, "messages": data}
    data.setdefault("id", conversation_id)
    return Conversation(
        id=data["id"],
        messages=[Message.model_validate(m) for m in data.get("messages", [])],
    )


@app.command()
def propositions(
    kb: Path = _KB_OPTION,
    context: Optional[str] = _CONTEXT_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
    verbose: bool = typer.Option(False, "--details", "-d", help="Show mentions and grounding"),
    limit: int = typer.Option(50, "--limit", "-n", help="Max rows"),
) -> None:
    """List stored propositions."""

    async def _run() -> None:
        async with _open(kb, config) as knowledge_base:
            rows = await knowledge_base.propositions(context)
            rows.sort(key=lambda p: p.revised, reverse=True)

            table = Table(title=f"Propositions ({len(rows)})")
            table.add_column("Text", style="white")
            table.add_column("Conf", justify="right", style="green")
            table.add_column("Decay", justify="right", style="yellow")
            table.add_column("Status", style="dim")
            if verbose:
                table.add_column("Mentions", style="cyan")
                table.add_column("Grounding", style="dim")

            for p in rows[:limit]:
                row = [p.text, f"{p.confidence:.2f}", f"{p.decay:.2f}", p.status.value]
                if verbose:
                    row.append(", ".join(str(m) for m in p.mentions))
                    row.append(", ".join(p.grounding))
                table.add_row(*row)

            console.print(table)

    asyncio.run(_run())


@app.command()
def search(
    query: str = typer.Argument(..., help="Text to search for"),
    kb: Path = _KB_OPTION,
    context: Optional[str] = _CONTEXT_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
    top_k: int = typer.Option(10, "--top-k", "-n", help="Max results"),
    threshold: float = typer.Option(0.0, "--threshold", help="Min similarity"),
) -> None:
    """Vector search over active propositions."""

    async def _run() -> None:
        async with _open(kb, config) as knowledge_base:
            results = await knowledge_base.find_similar(
                query, top_k=top_k, threshold=threshold, context_id=context
            )
            if not results:
                console.print("[yellow]No matching propositions[/]")
                return
            for p in results:
                console.print(f"  [green]{p.confidence:.2f}[/] {p.text}")

    asyncio.run(_run())


@app.command()
def stats(
    kb: Path = _KB_OPTION,
    context: Optional[str] = _CONTEXT_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
) -> None:
    """Resolution coverage and confidence summary."""

    async def _run() -> None:
        async with _open(kb, config) as knowledge_base:
            summary = await knowledge_base.stats(context)

            table = Table(title=f"Knowledge Base: {kb}" + (f" [{context}]" if context else ""))
            table.add_column("Metric", style="cyan")
            table.add_column("Value", justify="right", style="green")

            table.add_row("Propositions", str(summary["propositions"]))
            for status, count in sorted(summary["by_status"].items()):
                table.add_row(f"  {status}", str(count))
            table.add_row("Fully resolved", str(summary["fully_resolved"]))
            table.add_row("Partially resolved", str(summary["partially_resolved"]))
            table.add_row("Unresolved", str(summary["unresolved"]))
            table.add_row("Average confidence", f"{summary['avg_confidence']:.2f}")
            table.add_row("Entities", str(summary["entities"]))
            console.print(table)

            if summary["mentions_by_type"]:
                types = Table(title="Mentions by type")
                types.add_column("Type", style="cyan")
                types.add_column("Count", justify="right")
                for type_name, count in summary["mentions_by_type"].items():
                    types.add_row(type_name, str(count))
                console.print(types)

    asyncio.run(_run())


@app.command()
def clear(
    kb: Path = _KB_OPTION,
    context: Optional[str] = _CONTEXT_OPTION,
    config: Optional[Path] = _CONFIG_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete propositions and analysis state (one context, or everything)."""
    scope = f"context '{context}'" if context else "ALL contexts and entities"
    if not yes and not typer.confirm(f"Delete {scope} in {kb}?"):
        raise typer.Abort()

    async def _run() -> None:
        async with _open(kb, config) as knowledge_base:
            deleted = await knowledge_base.clear(context)
            console.print(f"[green]Deleted {deleted} propositions ({scope})[/]")

    asyncio.run(_run())


@app.command()
def analyze(
    transcript: Path = typer.Argument(..., help="JSON transcript", exists=True),
    kb: Path = _KB_OPTION,
    context: str = typer.Option("default", "--context", "-c", help="Context id"),
    config: Optional[Path] = _CONFIG_OPTION,
    types: Optional[List[str]] = typer.Option(None, "--type", "-t", help="Schema entity type (repeatable)"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Name of the user in the transcript"),
    step: Optional[int] = typer.Option(None, "--step", help="Messages per replay step (default: trigger interval)"),
) -> None:
    """Replay a transcript through the pipeline, one window per step."""
    from dialog_kg.types import USER_TYPE, Conversation, KnownEntity, NamedEntity

    conversation = _load_transcript(transcript, context)
    known: list[KnownEntity] = []
    schema_types = list(types or [])
    if user:
        known.append(KnownEntity.current_user(
            NamedEntity(id=f"user:{context}", name=user, entity_type=USER_TYPE)
        ))

    async def _run() -> None:
        async with _open(kb, config, schema_types) as knowledge_base:
            size = step or knowledge_base.config.trigger_interval or knowledge_base.config.window_size
            total = len(conversation.messages)
            ends = list(range(size, total, size)) + [total]

            totals = {"new": 0, "merged": 0, "reinforced": 0, "duplicate": 0, "entities": 0, "failed": 0}
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Analyzing...", total=len(ends))
                for end in ends:
                    progress.update(task, description=f"Messages 1-{end}")
                    prefix = Conversation(id=conversation.id, messages=conversation.messages[:end])
                    result = await knowledge_base.analyze(context, prefix, known_entities=known)
                    if result is not None:
                        totals["new"] += result.stats.new
                        totals["merged"] += result.stats.merged
                        totals["reinforced"] += result.stats.reinforced
                        totals["duplicate"] += result.stats.duplicate
                        totals["entities"] += result.new_entity_count
                        totals["failed"] += int(result.failed)
                        if result.failed:
                            console.print(f"[red]Window ending at {end} failed: {result.error}[/]")
                    progress.advance(task)

            console.print()
            console.print(Panel(
                f"[green]Analyzed {total} messages in {len(ends)} windows[/]\n\n"
                f"  New: {totals['new']}\n"
                f"  Merged: {totals['merged']}\n"
                f"  Reinforced: {totals['reinforced']}\n"
                f"  Duplicate: {totals['duplicate']}\n"
                f"  New entities: {totals['entities']}\n"
                f"  Failed windows: {totals['failed']}",
                title="Analysis Complete",
            ))

    asyncio.run(_run())


@app.command("config")
def show_config(
    config: Optional[Path] = _CONFIG_OPTION,
    write: Optional[Path] = typer.Option(None, "--write", "-w", help="Write effective config as TOML"),
) -> None:
    """Show the effective configuration (defaults < environment < file)."""
    effective = _load_config(config)
    if write:
        effective.to_file(write)
        console.print(f"[green]Wrote {write}[/]")
        return

    table = Table(title="DialogKG configuration")
    table.add_column("Option", style="cyan")
    table.add_column("Value", style="green")
    for key in sorted(dir(effective)):
        if key.startswith("_") or callable(getattr(effective, key)):
            continue
        value = getattr(effective, key)
        if key.endswith("api_key") and value:
            value = "****"
        table.add_row(key, str(value))
    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    app()
