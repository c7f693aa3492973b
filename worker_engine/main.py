"""CLI entry point for the worker engine."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Callable, Coroutine
from datetime import timedelta
from pathlib import Path
from typing import Any, TypeVar

import click
import structlog

from worker_engine.config.settings import WorkerSettings, load_work_order
from worker_engine.engine.checkpointing import CheckpointStore
from worker_engine.engine.orchestrator import StepOrchestrator
from worker_engine.engine.results import ResultStore, serialize_result
from worker_engine.engine.verification import SelfVerificationLoop
from worker_engine.enums import ImplementationStatus
from worker_engine.exceptions import (
    ConfigurationError,
    EscalationRequiredError,
    MaxRetriesExceededError,
    WorkerEngineError,
)
from worker_engine.models.domain import ExecutionOptions, ImplementationResult
from worker_engine.utils.async_subprocess import CommandRunner
from worker_engine.utils.commands import CommandSanitizer
from worker_engine.utils.file_access import SecureFileAccess
from worker_engine.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

DEFAULT_CONFIG = "worker.yaml"

T = TypeVar("T")


def _load_settings(config: str | None) -> WorkerSettings:
    if config is not None:
        return WorkerSettings.from_yaml(config)
    if Path(DEFAULT_CONFIG).exists():
        return WorkerSettings.from_yaml(DEFAULT_CONFIG)
    return WorkerSettings()


def _checkpoint_store(settings: WorkerSettings) -> CheckpointStore:
    return CheckpointStore(
        settings.checkpoint_dir,
        max_age=timedelta(hours=settings.project.checkpoint_max_age_hours),
        resumable_steps=set(settings.project.resumable_steps),
    )


def _run(coro_factory: Callable[[], Coroutine[Any, Any, T]], event: str) -> T:
    """Run an async command body with the CLI's error handling."""
    try:
        return asyncio.run(coro_factory())
    except MaxRetriesExceededError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{event}_exhausted", **e.to_dict())
        sys.exit(1)
    except WorkerEngineError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{event}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


@click.group()
@click.option("--config", default=None, help=f"Path to configuration file (default: ./{DEFAULT_CONFIG} if present)")
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--json-logs/--console-logs", default=True, help="Log output format")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str, json_logs: bool) -> None:
    """worker-engine: Implement work orders with checkpointing and self-verification."""
    configure_logging(log_level, json_output=json_logs)

    try:
        settings = _load_settings(config)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.option(
    "--work-order",
    "work_order_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Work order YAML file",
)
@click.option("--skip-tests", is_flag=True, help="Skip test generation")
@click.option("--skip-verification", is_flag=True, help="Skip verification")
@click.option("--dry-run", is_flag=True, help="Do not commit changes")
@click.pass_context
def implement(
    ctx: click.Context,
    work_order_path: str,
    skip_tests: bool,
    skip_verification: bool,
    dry_run: bool,
) -> None:
    """Implement a work order."""
    settings: WorkerSettings = ctx.obj["settings"]
    options = ExecutionOptions(skip_tests=skip_tests, skip_verification=skip_verification, dry_run=dry_run)

    async def body() -> ImplementationResult:
        work_order = load_work_order(work_order_path)
        orchestrator = StepOrchestrator(settings)
        return await orchestrator.implement(work_order, options)

    result = _run(body, "implement")
    click.echo(serialize_result(result))
    if result.status != ImplementationStatus.COMPLETED:
        sys.exit(2)


@cli.command()
@click.option("--task-id", default="manual", help="Task identifier recorded on the report")
@click.pass_context
def verify(ctx: click.Context, task_id: str) -> None:
    """Run the self-verification loop on the project."""
    settings: WorkerSettings = ctx.obj["settings"]

    async def body() -> None:
        runner = CommandRunner(
            cwd=settings.project_root,
            timeout=settings.commands.timeout_seconds,
            sanitizer=CommandSanitizer(settings.commands.allowed_executables),
        )
        loop = SelfVerificationLoop(settings, runner)
        try:
            report = await loop.run(task_id)
        except EscalationRequiredError as e:
            click.echo(e.analysis)
            raise
        click.echo(json.dumps(report.to_dict(), indent=2))

    _run(body, "verify")


@cli.command("list-checkpoints")
@click.pass_context
def list_checkpoints(ctx: click.Context) -> None:
    """List saved checkpoints."""
    settings: WorkerSettings = ctx.obj["settings"]

    async def body() -> None:
        store = _checkpoint_store(settings)
        checkpoints = await store.list_checkpoints()
        if not checkpoints:
            click.echo("No checkpoints")
            return
        for checkpoint in checkpoints:
            expired = " (expired)" if store.is_expired(checkpoint) else ""
            click.echo(
                f"{checkpoint.work_order_id}  step={checkpoint.current_step.value}  "
                f"attempt={checkpoint.attempt_number}  {checkpoint.timestamp.isoformat()}{expired}"
            )

    _run(body, "list_checkpoints")


@cli.command("clear-checkpoint")
@click.option("--work-order-id", required=True, help="Work order whose checkpoint to delete")
@click.pass_context
def clear_checkpoint(ctx: click.Context, work_order_id: str) -> None:
    """Delete the checkpoint of a work order."""
    settings: WorkerSettings = ctx.obj["settings"]

    async def body() -> None:
        deleted = await _checkpoint_store(settings).delete_checkpoint(work_order_id)
        click.echo(f"Deleted checkpoint for {work_order_id}" if deleted else f"No checkpoint for {work_order_id}")

    _run(body, "clear_checkpoint")


@cli.command("cleanup-checkpoints")
@click.option("--max-age-hours", type=float, default=None, help="Delete checkpoints older than this")
@click.pass_context
def cleanup_checkpoints(ctx: click.Context, max_age_hours: float | None) -> None:
    """Delete stale checkpoints."""
    settings: WorkerSettings = ctx.obj["settings"]

    async def body() -> None:
        max_age = timedelta(hours=max_age_hours) if max_age_hours is not None else None
        deleted = await _checkpoint_store(settings).cleanup_old_checkpoints(max_age)
        click.echo(f"Deleted {deleted} checkpoint(s)")

    _run(body, "cleanup_checkpoints")


@cli.command("show-result")
@click.option("--work-order-id", required=True, help="Work order whose result to show")
@click.pass_context
def show_result(ctx: click.Context, work_order_id: str) -> None:
    """Print the saved result of a work order."""
    settings: WorkerSettings = ctx.obj["settings"]

    async def body() -> None:
        store = ResultStore(SecureFileAccess(settings.project_root), settings.results_dir)
        result = await store.load(work_order_id)
        click.echo(serialize_result(result))

    _run(body, "show_result")


if __name__ == "__main__":
    cli()
