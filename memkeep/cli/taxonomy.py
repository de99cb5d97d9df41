"""Context and tag management CLI commands."""

import typer
from rich.console import Console
from rich.table import Table

from memkeep.exceptions import MemkeepError

from .helpers import fail, format_timestamp, open_service

console = Console()

contexts_app = typer.Typer(help="Manage memory contexts")
tags_app = typer.Typer(help="Manage tags")


@contexts_app.command("list")
def contexts_list(ctx: typer.Context):
    """List contexts with their memory counts."""
    contexts = open_service(ctx).registry.list_contexts()

    table = Table(title=f"Contexts ({len(contexts)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="green")
    table.add_column("Memories", justify="right")
    table.add_column("Updated", style="dim")
    table.add_column("Description")

    for context in contexts:
        table.add_row(
            context.id,
            context.name,
            str(context.memory_count),
            format_timestamp(context.updated_at),
            context.description,
        )
    console.print(table)


@contexts_app.command("create")
def contexts_create(
    ctx: typer.Context,
    context_id: str = typer.Argument(help="Context ID"),
    name: str = typer.Option("", "--name", help="Display name (defaults to the ID)"),
    description: str = typer.Option("", "--description", "-d", help="Description"),
):
    """Create a context."""
    try:
        open_service(ctx).registry.create_context(context_id, name, description)
    except MemkeepError as e:
        fail(console, str(e))

    console.print(f"[green]✓ Created context {context_id}[/green]")


@contexts_app.command("delete")
def contexts_delete(ctx: typer.Context, context_id: str = typer.Argument(help="Context ID")):
    """Delete a context. Memories keep their context ID."""
    try:
        open_service(ctx).registry.delete_context(context_id)
    except MemkeepError as e:
        fail(console, str(e))

    console.print(f"[green]✓ Deleted context {context_id}[/green]")


@tags_app.command("list")
def tags_list(ctx: typer.Context):
    """List tags with their memory counts."""
    tags = open_service(ctx).registry.list_tags()
    if not tags:
        console.print("[yellow]No tags defined[/yellow]")
        return

    table = Table(title=f"Tags ({len(tags)})")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Memories", justify="right")
    table.add_column("Color", style="dim")
    table.add_column("Description")

    for tag in tags:
        table.add_row(tag.name, str(tag.memory_count), tag.color or "-", tag.description)
    console.print(table)


@tags_app.command("create")
def tags_create(
    ctx: typer.Context,
    name: str = typer.Argument(help="Tag name (case-insensitive)"),
    description: str = typer.Option("", "--description", "-d", help="Description"),
    color: str = typer.Option("", "--color", help="Hex color for UIs"),
):
    """Create a tag."""
    try:
        tag = open_service(ctx).registry.create_tag(name, description, color)
    except MemkeepError as e:
        fail(console, str(e))

    console.print(f"[green]✓ Created tag {tag.name}[/green]")


@tags_app.command("delete")
def tags_delete(ctx: typer.Context, name: str = typer.Argument(help="Tag name")):
    """Delete a tag. Memories keep the tag string."""
    try:
        open_service(ctx).registry.delete_tag(name)
    except MemkeepError as e:
        fail(console, str(e))

    console.print(f"[green]✓ Deleted tag {name.strip().lower()}[/green]")
