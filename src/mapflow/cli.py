"""
Root Typer application for the ``mapflow`` command.

Commands:
    run        execute a mapping document over a JSON record or array
    validate   check a mapping document against its own schemas
    recommend  print the optimizer's execution strategy for a data size
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from mapflow.config.settings import get_settings
from mapflow.core.errors import MapflowError
from mapflow.core.logging import configure_logging

app = typer.Typer(
    name="mapflow",
    help="mapflow: declarative mapping execution engine.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        from mapflow import __version__

        try:
            v = pkg_version("mapflow")
        except PackageNotFoundError:
            v = __version__
        typer.echo(f"mapflow {v}")
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
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """mapflow CLI: run, validate and tune mappings."""
    settings = get_settings()
    configure_logging(
        level="DEBUG" if verbose else "WARNING",
        json_format=settings.log_json,
        service="mapflow-cli",
        stream=sys.stderr,
    )


# ── Helpers ──────────────────────────────────────────────────────────────


def _load_json(path: Path, what: str) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        err_console.print(f"[bold red]Error[/bold red]: {what} file not found: {path}")
        raise typer.Exit(code=2) from None
    except json.JSONDecodeError as e:
        err_console.print(f"[bold red]Error[/bold red]: {what} is not valid JSON: {e}")
        raise typer.Exit(code=2) from None


def _fail(error: MapflowError) -> None:
    kind = error.kind.value if hasattr(error.kind, "value") else error.kind
    err_console.print(f"[bold red]Error[/bold red] ({kind}): {error.message}")
    raise typer.Exit(code=1)


def _records_table(records: list[Any], title: str) -> Table:
    columns: list[str] = []
    for record in records:
        if isinstance(record, dict):
            columns.extend(k for k in record if k not in columns)
    table = Table(title=title, show_lines=False)
    for column in columns:
        table.add_column(column)
    for record in records:
        row = record if isinstance(record, dict) else {}
        table.add_row(*("" if row.get(c) is None else str(row.get(c)) for c in columns))
    return table


# ── Commands ─────────────────────────────────────────────────────────────


@app.command()
def run(
    mapping_file: Path = typer.Argument(..., help="Mapping document (JSON)"),
    data_file: Path = typer.Argument(..., help="Source record or array of records (JSON)"),
    executor: str | None = typer.Option(None, "--executor", "-e", help="sequential | batch | parallel | stream"),
    batch_size: int | None = typer.Option(None, "--batch-size", "-b", min=1),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write mapped records to this file"),
    json_out: bool = typer.Option(False, "--json", help="Print the full outcome as JSON"),
) -> None:
    """Execute a mapping over a JSON record or array."""
    from mapflow.engine import ExecutionOptions, MappingEngine

    mapping = _load_json(mapping_file, "Mapping")
    data = _load_json(data_file, "Data")
    options = ExecutionOptions(executor=executor, batch_size=batch_size)

    async def _run() -> tuple[dict[str, Any], dict[str, Any]]:
        async with MappingEngine() as engine:
            outcome = await engine.execute_mapping(mapping, data, options)
            return outcome.to_dict(), engine.metrics()

    try:
        result, metrics = asyncio.run(_run())
    except MapflowError as e:
        _fail(e)
        return

    if output is not None:
        output.write_text(json.dumps(result["data"], indent=2, default=str), encoding="utf-8")

    if json_out:
        console.print_json(json.dumps({**result, "metrics": metrics}, default=str))
        return

    records = result["data"] if isinstance(result["data"], list) else [result["data"]]
    console.print(_records_table(records, f"Mapping {result['context'].get('mappingId', '')}"))
    summary = result["context"]
    console.print(
        f"[green]{summary.get('recordsProcessed', 0)} processed[/green], "
        f"[red]{summary.get('recordsFailed', 0)} failed[/red] "
        f"in {result['executionTime']:.3f}s"
    )
    if output is not None:
        console.print(f"Wrote {len(records)} record(s) to {output}")


@app.command()
def validate(
    mapping_file: Path = typer.Argument(..., help="Mapping document (JSON)"),
    strict: bool = typer.Option(False, "--strict", help="Treat narrowing conversions as errors"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Check mapping rules against the mapping's own schemas."""
    from pydantic import ValidationError as PydanticValidationError

    from mapflow.mapping.models import Mapping
    from mapflow.validation.mapping_validators import FieldMappingValidator

    raw = _load_json(mapping_file, "Mapping")
    try:
        mapping = Mapping.model_validate(raw)
    except PydanticValidationError as e:
        err_console.print(f"[bold red]Invalid mapping document[/bold red]: {e.error_count()} error(s)")
        for error in e.errors():
            err_console.print(f"  {'.'.join(str(p) for p in error['loc'])}: {error['msg']}")
        raise typer.Exit(code=1) from None

    result = asyncio.run(FieldMappingValidator(strict_mode=strict).validate(mapping))

    if json_out:
        console.print_json(json.dumps(result.to_dict(), default=str))
    else:
        table = Table(title=f"Validation: {mapping.id}")
        table.add_column("Severity")
        table.add_column("Field")
        table.add_column("Code")
        table.add_column("Message")
        for severity, style, issues in (
            ("error", "red", result.errors),
            ("warning", "yellow", result.warnings),
            ("info", "cyan", result.suggestions),
        ):
            for issue in issues:
                table.add_row(f"[{style}]{severity}[/{style}]", issue.field, issue.code, issue.message)
        if result.errors or result.warnings or result.suggestions:
            console.print(table)
        status = "[green]valid[/green]" if result.valid else "[red]invalid[/red]"
        console.print(f"{mapping.id}: {status}")

    if not result.valid:
        raise typer.Exit(code=1)


@app.command()
def recommend(
    size: int = typer.Argument(..., min=0, help="Number of records"),
    complexity: float = typer.Option(0.5, "--complexity", "-c", min=0.0, max=1.0),
    available_memory: float | None = typer.Option(
        None, "--available-memory", min=0.0, max=1.0, help="Fraction of memory free (sampled when omitted)"
    ),
    cpu_usage: float | None = typer.Option(
        None, "--cpu-usage", min=0.0, max=1.0, help="CPU usage fraction (sampled when omitted)"
    ),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Print the recommended execution strategy for SIZE records."""
    from mapflow.performance.optimizer import PerformanceOptimizer

    optimizer = PerformanceOptimizer()
    env = None
    if available_memory is not None or cpu_usage is not None:
        snapshot = optimizer.monitor.sample()
        env = {
            "availableMemory": snapshot.available_memory if available_memory is None else available_memory,
            "cpuUsage": snapshot.cpu_usage if cpu_usage is None else cpu_usage,
        }
    rec = optimizer.optimize_execution_strategy(size, complexity, env)

    if json_out:
        console.print_json(json.dumps(rec.to_dict()))
        return
    table = Table(title=f"Strategy for {size} record(s)")
    table.add_column("Setting")
    table.add_column("Value")
    for key, value in rec.to_dict().items():
        if key != "reasons":
            table.add_row(key, str(value))
    console.print(table)
    for reason in rec.reasons:
        console.print(f"  - {reason}")


if __name__ == "__main__":
    app()
