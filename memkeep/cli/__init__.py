"""memkeep CLI application - main entry point."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from memkeep import __version__

app = typer.Typer(
    name="memkeep",
    help="Inspect and manage versioned agent memories",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool):
    if value:
        console.print(f"memkeep {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", envvar="MEMKEEP_DATA_DIR", help="Directory holding memory and registry files"
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config.json"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
):
    """memkeep: versioned long-term memory for agents."""
    ctx.obj = {"data_dir": data_dir, "config_path": config_path}


from .memories import register_memory_commands  # noqa: E402
from .taxonomy import contexts_app, tags_app  # noqa: E402

register_memory_commands(app)
app.add_typer(contexts_app, name="contexts")
app.add_typer(tags_app, name="tags")
