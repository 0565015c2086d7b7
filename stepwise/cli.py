"""Command line interface for running pollers and operating the action log."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from stepwise.clock import ensure_utc
from stepwise.config import StepwiseConfig, load_config
from stepwise.contracts import ActionAttempt, AttemptFilter, AttemptStatus, Correlation
from stepwise.engine import Engine
from stepwise.errors import StepwiseError
from stepwise.registry import registry_from_config

T = TypeVar("T")

app = typer.Typer(help="CLI for Stepwise scheduled workflow actions")

# Command groups
worker_app = typer.Typer(help="Commands for running pollers")
attempts_app = typer.Typer(help="Commands for inspecting and operating attempts")
workflows_app = typer.Typer(help="Commands for inspecting workflow definitions")

app.add_typer(worker_app, name="worker")
app.add_typer(attempts_app, name="attempts")
app.add_typer(workflows_app, name="workflows")

_state: dict[str, Any] = {}


@app.callback()
def main(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to YAML configuration"
    ),
) -> None:
    """Stepwise CLI entry point."""
    config = load_config(str(config_path) if config_path else None)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config"] = config


def _config() -> StepwiseConfig:
    return _state.get("config") or load_config()


def _run(fn: Callable[[Engine], Awaitable[T]]) -> T:
    """Run ``fn`` against a fresh engine, turning engine errors into exit code 1."""

    async def runner() -> T:
        async with Engine(_config()) as engine:
            return await fn(engine)

    try:
        return asyncio.run(runner())
    except StepwiseError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


def _format_attempt(attempt: ActionAttempt) -> str:
    return (
        f"{attempt.id}\t{attempt.status.value}\t{attempt.workflow_id}/{attempt.action_id}"
        f"\t{attempt.scheduled_at.isoformat()}\ttries={attempt.attempt_count}"
    )


@worker_app.command("run")
def worker_run(
    once: bool = typer.Option(False, help="Run a single polling cycle and exit"),
    lifespan: Optional[float] = typer.Option(
        None, help="Stop polling after this many seconds"
    ),
    owner: Optional[str] = typer.Option(None, help="Owner name recorded on claims"),
) -> None:
    """
    Run a poller that claims due attempts and dispatches their callbacks.

    Any number of pollers may run against the same database. SIGINT/SIGTERM
    finish the attempt in flight and hand the rest of the batch back.

    Example:
        stepwise worker run
        stepwise --config prod.yaml worker run --lifespan 3600
    """

    async def work(engine: Engine) -> None:
        scheduler = engine.scheduler
        if owner:
            scheduler.owner = owner
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, scheduler.request_stop)
            except (NotImplementedError, RuntimeError):
                pass
        if once:
            report = await scheduler.run_cycle()
            typer.echo(report.summary())
            return
        await scheduler.run(lifespan=lifespan)

    typer.echo("Starting poller")
    _run(work)


@app.command("trigger")
def trigger(
    kind: str = typer.Option(..., help="Related entity kind, e.g. 'bookings'"),
    entity_id: str = typer.Option(..., help="Related entity id"),
    workflow_id: Optional[str] = typer.Option(None, "--workflow-id", "-w"),
    trigger_name: Optional[str] = typer.Option(None, "--trigger", "-t"),
    meta: Optional[str] = typer.Option(None, help="JSON object passed to callbacks"),
    at: Optional[datetime] = typer.Option(None, help="Event time (defaults to now)"),
) -> None:
    """
    Expand a workflow for an event and schedule its actions.

    Example:
        stepwise trigger -t booking_created --kind bookings --entity-id 42
        stepwise trigger -w reminders --kind bookings --entity-id 42 --meta '{"email": "a@b.c"}'
    """
    meta_data = json.loads(meta) if meta else {}
    if not isinstance(meta_data, dict):
        typer.secho("--meta must be a JSON object", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    attempts = _run(
        lambda engine: engine.expander.expand(
            Correlation(kind=kind, id=entity_id),
            workflow_id=workflow_id,
            trigger=trigger_name,
            meta=meta_data,
            event_time=ensure_utc(at) if at else None,
        )
    )
    for attempt in attempts:
        typer.echo(_format_attempt(attempt))


@attempts_app.command("list")
def attempts_list(
    status: AttemptStatus = typer.Option(AttemptStatus.PENDING, help="Status to list"),
    kind: Optional[str] = typer.Option(None, help="Related entity kind"),
    entity_id: Optional[str] = typer.Option(None, help="Related entity id"),
    workflow_id: Optional[str] = typer.Option(None, help="Only this workflow"),
    min_attempts: Optional[int] = typer.Option(None, help="Minimum retry count"),
    limit: int = typer.Option(100, help="Maximum rows"),
) -> None:
    """
    List attempts by status, or every attempt of one correlation.

    Example:
        stepwise attempts list --status failed --min-attempts 3
        stepwise attempts list --kind bookings --entity-id 42
    """
    if (kind is None) != (entity_id is None):
        typer.secho("--kind and --entity-id go together", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    async def fetch(engine: Engine) -> list[ActionAttempt]:
        if kind is not None:
            return await engine.store.list_by_correlation(kind, entity_id)
        return await engine.store.list_by_status(
            status,
            AttemptFilter(
                workflow_id=workflow_id, min_attempt_count=min_attempts, limit=limit
            ),
        )

    attempts = _run(fetch)
    if not attempts:
        typer.echo("No attempts found")
        return
    for attempt in attempts:
        typer.echo(_format_attempt(attempt))


@attempts_app.command("show")
def attempts_show(attempt_id: str) -> None:
    """Show every field of one attempt."""
    attempt = _run(lambda engine: engine.store.get(attempt_id))
    if attempt is None:
        typer.echo("Attempt not found")
        raise typer.Exit(code=1)
    typer.echo(attempt.model_dump_json(indent=2))


@attempts_app.command("retry")
def attempts_retry(attempt_id: str) -> None:
    """Put a failed attempt back in the queue, due now."""
    attempt = _run(lambda engine: engine.resolver.retry(attempt_id))
    typer.echo(_format_attempt(attempt))


@attempts_app.command("stop")
def attempts_stop(
    attempt_id: str,
    reason: Optional[str] = typer.Option(None, help="Recorded as last_error"),
) -> None:
    """Cancel an attempt that has not finished."""
    attempt = _run(lambda engine: engine.resolver.stop(attempt_id, reason))
    typer.echo(_format_attempt(attempt))


@attempts_app.command("report")
def attempts_report(
    attempt_id: str,
    status: AttemptStatus,
    error: Optional[str] = typer.Option(None, help="Failure detail"),
) -> None:
    """
    Record the outcome of a dispatching attempt on behalf of its receiver.

    Example:
        stepwise attempts report 3f2c... completed
    """
    attempt = _run(lambda engine: engine.resolver.report(attempt_id, status, error))
    typer.echo(_format_attempt(attempt))


@attempts_app.command("stats")
def attempts_stats(
    workflow_id: Optional[str] = typer.Option(None, help="Only this workflow"),
) -> None:
    """Count attempts per status."""
    stats = _run(lambda engine: engine.statistics(workflow_id))
    for name, count in stats.items():
        typer.echo(f"{name}\t{count}")


@attempts_app.command("purge")
def attempts_purge(
    days: Optional[int] = typer.Option(None, help="Retention in days (default from config)"),
) -> None:
    """Delete completed and stopped attempts older than the retention window."""
    removed = _run(lambda engine: engine.purge_expired(days))
    typer.echo(f"Purged {removed} attempt(s)")


@workflows_app.command("list")
def workflows_list() -> None:
    """List configured workflows."""
    workflows = registry_from_config(_config()).list()
    if not workflows:
        typer.echo("No workflows configured")
        return
    for wf in workflows:
        state = "active" if wf.is_runnable else ("paused" if wf.is_active else "inactive")
        typer.echo(f"{wf.id}\t{wf.trigger}\t{wf.phase.value}\t{wf.interval_minutes}\t{state}")


@workflows_app.command("show")
def workflows_show(workflow_id: str) -> None:
    """Show one workflow definition with its actions."""
    wf = registry_from_config(_config()).find(workflow_id)
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(wf.model_dump_json(indent=2))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
