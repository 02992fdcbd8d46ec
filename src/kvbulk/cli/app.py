"""
Root Typer application for the kvbulk CLI.

``kvbulk bench`` exercises the bulk engine end to end against an in-process
store; ``kvbulk config show`` prints the resolved settings.
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path

import typer
from typer import Typer

from kvbulk import __version__
from kvbulk.bulk import BulkOptions, export, fold, write
from kvbulk.cli.utils import console, fail, output
from kvbulk.core.errors import KvBulkError
from kvbulk.core.keys import KeyRange
from kvbulk.core.logging import configure_logging
from kvbulk.core.settings import get_settings
from kvbulk.storage.memory import MemoryDatabase

app = Typer(
    name="kvbulk",
    help="kvbulk — adaptive bulk transactions over an ordered key-value store.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

config_app = Typer(no_args_is_help=True)
app.add_typer(config_app, name="config", help="Configuration inspection.")

BENCH_PREFIX = b"bench/"


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"kvbulk {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(
        None, "--log-level", help="Log level (defaults to KVBULK_LOG_LEVEL)."
    ),
) -> None:
    """kvbulk CLI — benchmark bulk operations and inspect settings."""
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=settings.log_format == "json",
        stream=sys.stderr,
    )


# ── bench ────────────────────────────────────────────────────────────────


@dataclass
class BenchReport:
    count: int
    value_size: int
    written: int
    write_seconds: float
    write_rate: float
    total_bytes: int
    fold_seconds: float
    exported: int | None = None
    export_seconds: float | None = None
    export_path: str | None = None


async def _bench(
    count: int,
    value_size: int,
    batch_count: int | None,
    export_path: Path | None,
) -> BenchReport:
    db = MemoryDatabase()
    options = BulkOptions(batch_count=batch_count)
    keys = [BENCH_PREFIX + b"%010d" % i for i in range(count)]

    started = time.perf_counter()
    written = await write(db, ((key, os.urandom(value_size)) for key in keys), options=options)
    write_seconds = time.perf_counter() - started

    started = time.perf_counter()
    total_bytes = await fold(
        db,
        keys,
        init=lambda: 0,
        reducer=lambda total, key, value: total + (len(value) if value is not None else 0),
        options=BulkOptions(batch_count=batch_count),
    )
    fold_seconds = time.perf_counter() - started

    report = BenchReport(
        count=count,
        value_size=value_size,
        written=written,
        write_seconds=round(write_seconds, 4),
        write_rate=round(written / write_seconds, 1) if write_seconds > 0 else 0.0,
        total_bytes=total_bytes,
        fold_seconds=round(fold_seconds, 4),
    )

    if export_path is not None:
        started = time.perf_counter()
        with export_path.open("w", encoding="utf-8") as handle:

            def sink(pairs: list[tuple[bytes, bytes]], offset: int) -> None:
                for key, value in pairs:
                    handle.write(f"{key.hex()}\t{value.hex()}\n")

            report.exported = await export(
                db, KeyRange.starts_with(BENCH_PREFIX), sink, options=BulkOptions(batch_count=batch_count)
            )
        report.export_seconds = round(time.perf_counter() - started, 4)
        report.export_path = str(export_path)

    return report


@app.command("bench")
def bench(
    count: int = typer.Option(10_000, "--count", "-n", min=0, help="Number of pairs to write."),
    value_size: int = typer.Option(100, "--value-size", "-s", min=0, help="Bytes per value."),
    batch_count: int | None = typer.Option(
        None, "--batch-count", "-b", min=1, help="Fixed step instead of adaptive growth."
    ),
    export_path: Path | None = typer.Option(
        None, "--export", help="Export the written range to this text file."
    ),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Write, fold and optionally export random pairs in a fresh in-memory store."""
    try:
        report = asyncio.run(_bench(count, value_size, batch_count, export_path))
    except KvBulkError as exc:
        fail(exc)
    output(report, as_json=as_json, title="kvbulk bench")


# ── config ───────────────────────────────────────────────────────────────


@config_app.command("show")
def show_config(
    as_json: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Show the resolved bulk settings."""
    settings = get_settings()
    if as_json:
        console.print_json(settings.model_dump_json())
        return
    output(settings.model_dump(), title="kvbulk settings")
