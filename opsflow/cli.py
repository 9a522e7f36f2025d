"""Command line interface for running opsflow services and inspecting runs."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError

from .config import load_config
from .engine import Engine
from .errors import CallbackError, OpsflowError, RunNotFound

app = typer.Typer(help="CLI for opsflow workflow automation")

# Command groups
definitions_app = typer.Typer(help="Commands for managing workflow definitions")
runs_app = typer.Typer(help="Commands for inspecting and operating runs")
webhook_app = typer.Typer(help="Commands for webhook deliveries")

app.add_typer(definitions_app, name="definitions")
app.add_typer(runs_app, name="runs")
app.add_typer(webhook_app, name="webhook")


_config_path: Optional[str] = None


def _engine() -> Engine:
    return Engine(config=load_config(_config_path))


@app.callback()
def main(
    config: Optional[str] = typer.Option(None, help="Path to a YAML config file"),
    log_level: str = typer.Option("INFO", help="Logging level"),
) -> None:
    """opsflow CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    global _config_path
    _config_path = config


@app.command("worker")
def worker(lifespan: Optional[float] = None) -> None:
    """
    Run the executor worker pool.

    Workers consume run messages from the configured transport while a scan
    loop re-announces runs whose retry or wait time has elapsed.

    Example:
        opsflow worker --lifespan 300
    """
    engine = _engine()
    typer.echo(f"Starting {engine.config.executor.workers} worker(s)")
    asyncio.run(engine.executor.start(lifespan=lifespan))


@app.command("scheduler")
def scheduler(
    once: bool = typer.Option(False, help="Evaluate schedules once and exit"),
    lifespan: Optional[float] = None,
) -> None:
    """Run schedule ticks that create runs for due occurrences."""
    engine = _engine()
    if not once:
        asyncio.run(engine.scheduler.start(lifespan=lifespan))
        return
    due = asyncio.run(engine.scheduler.evaluate())
    if not due:
        typer.echo("No workflows due")
        return
    for item in due:
        typer.echo(f"{item.definition.id}\t{len(item.run_ids)} run(s)\t{item.skipped} skipped")


@definitions_app.command("load")
def definitions_load(path: Path) -> None:
    """Load workflow definitions from a YAML file into the store."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    engine = _engine()
    try:
        definitions = asyncio.run(engine.load_definitions(path))
    except (ValidationError, OpsflowError) as exc:
        typer.secho(f"Invalid definitions: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    for definition in definitions:
        typer.echo(f"Loaded {definition.id}\t{definition.name}")


@definitions_app.command("list")
def definitions_list() -> None:
    """List stored workflow definitions."""
    engine = _engine()
    definitions = asyncio.run(engine.repository.list_definitions())
    if not definitions:
        typer.echo("No workflows found")
        return
    for d in definitions:
        state = "enabled" if d.is_enabled else "disabled"
        typer.echo(f"{d.id}\t{d.organization_id}\t{d.trigger_type.value}\t{state}\t{d.name}")


@runs_app.command("list")
def runs_list(workflow: Optional[str] = typer.Option(None, help="Only runs of this workflow")) -> None:
    """
    List runs with their current status.

    Example:
        opsflow runs list --workflow 5f0c...
        # Output: 9b1e...    5f0c...    succeeded    evt-1
    """
    engine = _engine()
    runs = asyncio.run(engine.repository.list_runs(workflow))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.workflow_id}\t{run.status.value}\t{run.trigger_source}")


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """Show a run's status, context and step history."""
    engine = _engine()
    try:
        view = asyncio.run(engine.executor.get_run(run_id))
    except RunNotFound:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {view.id}: {view.status.value}")
    typer.echo(f"Context: {json.dumps(view.context, default=str)}")
    if view.last_error:
        typer.echo(f"Last error ({view.failing_step_id or '-'}): {view.last_error}")
    if view.callback_error:
        typer.echo(f"Callback error: {view.callback_error}")
    for attempt in view.history:
        line = f"- {attempt.step_id} #{attempt.attempt}: {attempt.status}"
        if attempt.error is not None:
            line += f" [{attempt.error.kind}] {attempt.error.message}"
        typer.echo(line)


@runs_app.command("cancel")
def runs_cancel(run_id: str, reason: str = "cancelled by operator") -> None:
    """Mark a live run failed."""
    engine = _engine()
    try:
        run = asyncio.run(engine.executor.cancel_run(run_id, reason))
    except RunNotFound:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.status.value}")


@runs_app.command("retry-callbacks")
def runs_retry_callbacks(run_id: str) -> None:
    """Re-apply the completion callbacks of a succeeded run."""
    engine = _engine()
    try:
        report = asyncio.run(engine.executor.retry_callbacks(run_id))
    except RunNotFound:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    except CallbackError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Applied {len(report.applied)} callback(s)")
    for error in report.errors:
        typer.secho(error, fg=typer.colors.RED)
    if not report.ok:
        raise typer.Exit(code=1)


@webhook_app.command("ingest")
def webhook_ingest(
    organization_id: str,
    trigger_key: str,
    path: Path,
    header: List[str] = typer.Option([], help="Request header as KEY=VALUE"),
) -> None:
    """Replay a webhook delivery from a file through the dispatcher."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    headers = {}
    for item in header:
        key, sep, value = item.partition("=")
        if not sep:
            typer.secho(f"Invalid header '{item}', expected KEY=VALUE", fg=typer.colors.RED)
            raise typer.Exit(code=2)
        headers[key.strip()] = value.strip()

    engine = _engine()
    result = asyncio.run(
        engine.dispatcher.ingest(organization_id, trigger_key, path.read_bytes(), headers)
    )
    typer.echo(result.model_dump_json())
    if not result.accepted:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
