"""Command line interface for starting, stopping and inspecting runs."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
import yaml

from autorun import AutorunError, RunDispatcher, ValidationError, load_config
from autorun.executors import build_executor

T = TypeVar("T")

app = typer.Typer(help="CLI for autorun automation runs")

run_app = typer.Typer(help="Commands for managing runs")

app.add_typer(run_app, name="run")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Python logging level"),
) -> None:
    """Autorun CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _dispatcher() -> RunDispatcher:
    config = load_config()
    return RunDispatcher(executor=build_executor(config.execution), config=config)


def _run(work: Callable[[RunDispatcher], Awaitable[T]]) -> T:
    """Run ``work`` against a fresh dispatcher, closing it afterwards."""

    async def _main() -> T:
        dispatcher = _dispatcher()
        try:
            return await work(dispatcher)
        finally:
            await dispatcher.aclose()

    return asyncio.run(_main())


def _fail(error: AutorunError) -> None:
    typer.secho(error.message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _load_steps(path: Path) -> list:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ValidationError(f"Could not read steps file {path}") from exc
    if isinstance(data, dict):
        data = data.get("steps")
    if not isinstance(data, list):
        raise ValidationError("Steps file must contain a list of steps")
    return data


@run_app.command("start")
def run_start(
    owner: str = typer.Option(..., help="Identity of the run owner"),
    steps: Path = typer.Option(..., help="YAML file with the ordered step list"),
    automation: Optional[str] = typer.Option(None, help="Stored automation id"),
    trigger: str = typer.Option("manual", help="manual or auto"),
) -> None:
    """
    Start a run and drive it to completion in this process.

    The steps file holds a list of ``{step_type, input}`` mappings, either at
    the top level or under a ``steps`` key. Each step type must have a route
    in ``execution.http.routes``.

    Example:
        autorun run start --owner alice --steps ./steps.yaml
        # Output: Run abc123 started with 3 steps
        #         Run abc123: completed
    """

    async def _start(dispatcher: RunDispatcher) -> None:
        handle = await dispatcher.start_run(
            owner, _load_steps(steps), automation_id=automation, trigger=trigger
        )
        typer.echo(f"Run {handle.run_id} started")
        snapshot = await handle.wait()
        typer.echo(f"Run {snapshot.run.id}: {snapshot.run.status.value}")
        for step in snapshot.steps:
            typer.echo(f"- [{step.ordinal}] {step.step_type}: {step.status.value}")

    try:
        _run(_start)
    except AutorunError as e:
        _fail(e)


@run_app.command("stop")
def run_stop(
    run_id: str,
    requester: str = typer.Option(..., help="Identity requesting the stop"),
) -> None:
    """
    Stop a run, cancelling its pending and running steps.

    Stopping a run that already finished succeeds without changing it.

    Example:
        autorun run stop abc123 --requester alice
    """
    try:
        result = _run(lambda d: d.stop_run(run_id, requester))
    except AutorunError as e:
        _fail(e)
    typer.echo(result.message)


@run_app.command("list")
def run_list(owner: Optional[str] = typer.Option(None, help="Only runs of this owner")) -> None:
    """List runs, newest first, with their status."""
    runs = _run(lambda d: d.list_runs(owner))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.owner_id}\t{run.status.value}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show a run and the status of each of its steps.

    Example:
        autorun run show abc123
        # Output: Run abc123: failed (owner alice)
        #         - [0] generate_image: succeeded
        #         - [1] generate_video: failed (Service returned HTTP 500)
        #         - [2] upload: cancelled
    """
    try:
        snapshot = _run(lambda d: d.get_run_status(run_id))
    except AutorunError as e:
        _fail(e)
    run = snapshot.run
    typer.echo(f"Run {run.id}: {run.status.value} (owner {run.owner_id})")
    if run.finished_at:
        typer.echo(f"Finished: {run.finished_at.isoformat()}")
    for step in snapshot.steps:
        line = f"- [{step.ordinal}] {step.step_type}: {step.status.value}"
        if step.error_message:
            line += f" ({step.error_message})"
        typer.echo(line)


@run_app.command("logs")
def run_logs(run_id: str) -> None:
    """Print the audit log of a run in order."""

    async def _logs(dispatcher: RunDispatcher) -> list:
        stream = await dispatcher.read_logs(run_id)
        return await stream.to_list()

    try:
        entries = _run(_logs)
    except AutorunError as e:
        _fail(e)
    for entry in entries:
        typer.echo(f"{entry.timestamp.isoformat()} [{entry.level.value}] {entry.message}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
