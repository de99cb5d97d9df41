"""Memory CLI commands: history, versions, search, stats, export/import."""

import json
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from memkeep.exceptions import MemkeepError
from memkeep.models import SearchFilter
from memkeep.service import ExportRequest, RememberRequest, RestoreRequest

from .helpers import fail, format_timestamp, open_service, parse_date_option

console = Console()

SNIPPET_LENGTH = 50


def _snippet(content: str) -> str:
    content = content.replace("\n", " ")
    return content if len(content) <= SNIPPET_LENGTH else content[:SNIPPET_LENGTH] + "..."


def history(ctx: typer.Context, memory_id: str = typer.Argument(help="Memory ID")):
    """Show every version of a memory."""
    try:
        record = open_service(ctx).history(memory_id)
    except MemkeepError as e:
        fail(console, str(e))

    console.print(f"[bold]{record.id}[/bold] (context: {record.context or '-'}, tags: {', '.join(record.tags) or '-'})")

    table = Table(title=f"{record.current_version} versions")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Created", style="dim")
    table.add_column("By", style="green")
    table.add_column("Note")
    table.add_column("Content")

    for version in record.versions:
        table.add_row(
            str(version.version_number),
            format_timestamp(version.created_at),
            version.created_by or "-",
            version.change_note or "-",
            _snippet(version.content),
        )
    console.print(table)


def show(
    ctx: typer.Context,
    memory_id: str = typer.Argument(help="Memory ID"),
    version_number: int = typer.Argument(help="Version number"),
):
    """Print the full content of one version."""
    try:
        version = open_service(ctx).get_version(memory_id, version_number)
    except MemkeepError as e:
        fail(console, str(e))

    console.print(f"[cyan]Version {version.version_number}[/cyan] by {version.created_by or '-'} at {version.created_at}")
    if version.change_note:
        console.print(f"[dim]{version.change_note}[/dim]")
    # Plain print so rich markup in memory content is left alone
    print(version.content)


def remember(
    ctx: typer.Context,
    memory_id: str = typer.Argument(help="Memory ID"),
    content: str = typer.Argument(help="Memory content"),
    context: Optional[str] = typer.Option(None, "--context", "-c", help="Context ID (defaults to client's current)"),
    tags: Optional[List[str]] = typer.Option(None, "--tag", "-t", help="Tag (repeatable)"),
    client: str = typer.Option("cli", "--client", help="Client ID recorded as author"),
    note: str = typer.Option("", "--note", "-m", help="Change note"),
):
    """Store a new version of a memory."""
    try:
        request = RememberRequest(
            memory_id=memory_id,
            content=content,
            client_id=client,
            change_note=note,
            context=context,
            tags=tags or [],
        )
        version = open_service(ctx).remember(request)
    except (MemkeepError, ValueError) as e:
        fail(console, f"Failed to remember: {e}")

    console.print(f"[green]✓ Stored {memory_id} version {version.version_number}[/green]")


def restore(
    ctx: typer.Context,
    memory_id: str = typer.Argument(help="Memory ID"),
    version_number: int = typer.Argument(help="Version to restore"),
    reason: str = typer.Option("", "--reason", help="Why the version is being restored"),
    client: str = typer.Option("cli", "--client", help="Client ID recorded as author"),
):
    """Append a new version with the content of an older one."""
    try:
        request = RestoreRequest(
            memory_id=memory_id,
            version_number=version_number,
            client_id=client,
            restore_reason=reason,
        )
        version = open_service(ctx).restore(request)
    except (MemkeepError, ValueError) as e:
        fail(console, f"Failed to restore: {e}")

    console.print(f"[green]✓ Restored {memory_id} to version {version_number} (now version {version.version_number})[/green]")


def delete(ctx: typer.Context, memory_id: str = typer.Argument(help="Memory ID")):
    """Delete a memory and its entire history."""
    try:
        open_service(ctx).forget(memory_id)
    except MemkeepError as e:
        fail(console, str(e))

    console.print(f"[green]✓ Deleted {memory_id}[/green]")


def search(
    ctx: typer.Context,
    context: str = typer.Option("", "--context", "-c", help="Filter by context ID"),
    tags: Optional[List[str]] = typer.Option(None, "--tag", "-t", help="Filter by tag (repeatable)"),
    mode: str = typer.Option("any", "--mode", help="Tag matching: all or any"),
    author: str = typer.Option("", "--author", help="Original author of the memory"),
    since: Optional[str] = typer.Option(None, "--since", help="Created on or after (ISO date)"),
    until: Optional[str] = typer.Option(None, "--until", help="Updated on or before (ISO date)"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum results (0 = unlimited, not ranked)"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
):
    """Filter memories by context, tags, dates and author."""
    try:
        search_filter = SearchFilter(
            context_id=context,
            tags=tags or [],
            tag_filter_mode=mode,
            created_by=author,
            start_date=parse_date_option(since, "--since"),
            end_date=parse_date_option(until, "--until"),
            max_results=limit,
        )
        results = open_service(ctx).search(search_filter)
    except (MemkeepError, ValueError) as e:
        fail(console, f"Search failed: {e}")

    if as_json:
        print(json.dumps([r.model_dump(mode="json") for r in results], indent=2, ensure_ascii=False))
        return

    if not results:
        console.print("[yellow]No memories found[/yellow]")
        return

    table = Table(title=f"Memories ({len(results)} found)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Context", style="green")
    table.add_column("Tags", style="dim")
    table.add_column("Ver", justify="right")
    table.add_column("Updated", style="dim")
    table.add_column("Content")

    for result in results:
        table.add_row(
            result.id,
            result.context,
            ", ".join(result.tags),
            str(result.current_version),
            format_timestamp(result.updated_at),
            _snippet(result.content),
        )
    console.print(table)


def stats(ctx: typer.Context, context_id: str = typer.Argument(help="Context ID")):
    """Show statistics for a context."""
    try:
        context_stats = open_service(ctx).context_stats(context_id)
    except MemkeepError as e:
        fail(console, str(e))

    console.print(f"[bold]Context:[/bold] {context_stats.context_id}")
    console.print(f"  Memories: {context_stats.memory_count}")
    console.print(f"  Unique tags: {', '.join(sorted(context_stats.unique_tags)) or '-'}")
    console.print(f"  Oldest: {format_timestamp(context_stats.oldest_memory)}")
    console.print(f"  Newest: {format_timestamp(context_stats.newest_memory)}")
    console.print(f"  Total characters: {context_stats.total_characters:,}")


def export(
    ctx: typer.Context,
    memory_ids: Optional[List[str]] = typer.Option(None, "--id", help="Memory ID to export (repeatable)"),
    no_versions: bool = typer.Option(False, "--no-versions", help="Keep only the latest version of each memory"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
):
    """Export memories (and contexts/tags) as JSON."""
    request = ExportRequest(memory_ids=memory_ids or [], include_versions=not no_versions)
    try:
        data = open_service(ctx).export(request)
    except MemkeepError as e:
        fail(console, str(e))

    payload = data.model_dump_json(indent=2)
    if output is None:
        print(payload)
        return

    output.write_text(payload, encoding="utf-8")
    console.print(f"[green]✓ Exported {len(data.memories)} memories to {output}[/green]")


def import_(ctx: typer.Context, path: Path = typer.Argument(help="Export JSON file")):
    """Import memories from an export file. Records with the same ID are replaced."""
    try:
        payload = path.read_text(encoding="utf-8")
    except OSError as e:
        fail(console, f"Failed to read {path}: {e}")

    try:
        count = open_service(ctx).import_json(payload)
    except MemkeepError as e:
        fail(console, f"Import failed: {e}")

    console.print(f"[green]✓ Imported {count} memories[/green]")


def register_memory_commands(app: typer.Typer) -> None:
    app.command("history")(history)
    app.command("show")(show)
    app.command("remember")(remember)
    app.command("restore")(restore)
    app.command("delete")(delete)
    app.command("search")(search)
    app.command("stats")(stats)
    app.command("export")(export)
    app.command("import")(import_)
