"""
CLI utility helpers — output formatting.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from kvbulk.core.errors import KvBulkError

console = Console()
err_console = Console(stderr=True)


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / pydantic model / dict to plain dict."""
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output(data: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a report as JSON or as a two-column Rich table."""
    payload = _to_dict(data)
    if as_json:
        console.print_json(json.dumps(payload, default=str))
        return
    table = Table(title=title or None, show_header=False, pad_edge=False)
    table.add_column("key", style="cyan")
    table.add_column("value", overflow="fold")
    for key, value in payload.items():
        table.add_row(key, str(value))
    console.print(table)


def fail(error: KvBulkError) -> None:
    """Print a kvbulk error and exit with status 1."""
    err_console.print(f"[bold red]Error[/bold red] ({error.category.value}): {error.message}")
    raise typer.Exit(code=1)
