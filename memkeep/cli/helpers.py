"""CLI helper functions."""

import logging
import os
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console

from memkeep.config import load_config
from memkeep.models import parse_datetime
from memkeep.service import MemoryService


def open_service(ctx: typer.Context) -> MemoryService:
    """Open the memory service using the global CLI options."""
    options = ctx.obj or {}
    config = load_config(options.get("config_path"))
    # MEMKEEP_LOG_LEVEL has already configured logging in memkeep/__init__.py
    if not os.environ.get("MEMKEEP_LOG_LEVEL"):
        logging.getLogger("memkeep").setLevel(getattr(logging, config.log_level.upper(), logging.WARNING))
    if options.get("data_dir"):
        config.data_dir = options["data_dir"]
    return MemoryService.open(config)


def parse_date_option(value: Optional[str], option: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_datetime(value)
    except ValueError:
        raise typer.BadParameter(f"{option} must be an ISO date, got {value!r}")


def format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M")


def fail(console: Console, message: str) -> None:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(1)
