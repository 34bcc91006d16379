"""Command line interface for inspecting and signalling durastep executions."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import click
import typer

from durastep import DurastepConfig, ExecutionDriver, get_repository, get_transport, load_config
from durastep.contracts import SignalMessage
from durastep.errors import DefinitionError
from durastep.persistence import HistoryRepository
from durastep.signals import SignalListener, publish_signal
from durastep.statemachine import lint_definition

app = typer.Typer(help="CLI for durastep executions")

# Command groups
execution_app = typer.Typer(help="Commands for inspecting executions")
signal_app = typer.Typer(help="Commands for delivering callback signals")
statemachine_app = typer.Typer(help="Commands for state-machine definitions")

app.add_typer(execution_app, name="execution")
app.add_typer(signal_app, name="signal")
app.add_typer(statemachine_app, name="statemachine")


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", help="Path to a durastep YAML config file"
    ),
) -> None:
    """durastep CLI entry point."""
    ctx = click.get_current_context()
    settings = load_config(str(config) if config else None)
    ctx.obj = {"settings": settings, "explicit": config is not None}
    logging.basicConfig(
        level=settings.logging.level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _settings() -> DurastepConfig:
    obj = click.get_current_context().find_root().obj
    return obj["settings"] if obj else load_config()


def _repository() -> HistoryRepository:
    """Shared repository unless a config file was passed explicitly."""
    obj = click.get_current_context().find_root().obj
    if obj and obj["explicit"]:
        return get_repository(config=obj["settings"])
    return get_repository()


@execution_app.command("list")
def execution_list() -> None:
    """
    List all executions with their current status.

    Example:
        durastep execution list
        # Output: 3f1c...    price-albums    waiting
    """
    repo = _repository()
    executions = asyncio.run(repo.list_executions())
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.execution_id}\t{execution.workflow_name}\t{execution.status.value}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show the status, outcome and committed history of one execution.

    Example:
        durastep execution show 3f1c...
        # Output: Execution 3f1c...: waiting (wake at 2024-01-01T01:00:00+00:00)
        #         #1 process-image [step] succeeded
    """
    repo = _repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)

    header = f"Execution {execution.execution_id}: {execution.status.value}"
    if execution.wake_at:
        header += f" (wake at {execution.wake_at.isoformat()})"
    typer.echo(header)
    typer.echo(f"Workflow: {execution.workflow_name}")
    if execution.input is not None:
        typer.echo(f"Input: {json.dumps(execution.input)}")
    if execution.result is not None:
        typer.echo(f"Result: {json.dumps(execution.result)}")
    if execution.error is not None:
        typer.echo(f"Error: {execution.error.kind}: {execution.error.message}")
    for step in execution.history:
        name = f"{step.namespace}/{step.name}" if step.namespace else step.name
        line = f"#{step.sequence} {name} [{step.kind.value}] {step.status.value}"
        if step.attempts > 1:
            line += f" after {step.attempts} attempts"
        if step.error is not None:
            line += f": {step.error.kind}: {step.error.message}"
        typer.echo(line)


@signal_app.command("send")
def signal_send(
    callback_id: str,
    payload: Optional[str] = typer.Option(None, help="JSON payload for the signal"),
    transport: bool = typer.Option(
        False, "--transport", help="Publish on the signal transport instead of the store"
    ),
) -> None:
    """
    Deliver a signal to the execution waiting on ``callback_id``.

    Example:
        durastep signal send 7d0e... --payload '{"ok": true}'
        durastep signal send 7d0e... --payload '{"ok": true}' --transport
    """
    try:
        data = json.loads(payload) if payload else None
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    settings = _settings()
    if transport:
        async def _publish() -> SignalMessage:
            async with get_transport(config=settings) as signals:
                return await publish_signal(signals, callback_id, data)

        message = asyncio.run(_publish())
        typer.echo(f"Published signal {message.message_id} for {callback_id}")
        return

    driver = ExecutionDriver(_repository(), config=settings)
    result = asyncio.run(driver.signal(callback_id, data))
    if not result.accepted:
        typer.secho(f"Signal rejected: {result.reason}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Signal accepted for execution {result.execution_id}")


@signal_app.command("listen")
def signal_listen(
    lifespan: Optional[float] = typer.Option(
        None, help="Seconds to listen before exiting (default: run indefinitely)"
    ),
) -> None:
    """Resolve wait tokens for signals published on the configured transport."""
    settings = _settings()
    driver = ExecutionDriver(_repository(), config=settings)
    listener = SignalListener(get_transport(config=settings), driver)
    typer.echo("Listening for signals")
    asyncio.run(listener.start(lifespan=lifespan))
    accepted = sum(1 for r in listener.results if r.accepted)
    typer.echo(f"Processed {len(listener.results)} signal(s), {accepted} accepted")


@statemachine_app.command("lint")
def statemachine_lint(definition_path: Path) -> None:
    """
    Check a JSON state-machine definition for structural problems.

    Example:
        durastep statemachine lint ./definition.asl.json
    """
    if not definition_path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        machine = lint_definition(definition_path.read_text())
    except DefinitionError as exc:
        for problem in exc.problems:
            typer.secho(problem, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"{definition_path.name}: OK ({len(machine.states)} states)")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
