from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from conveyor.config import ConveyorConfig, load_config, save_config
from conveyor.decisions import DecisionProvider, PresetDecisionProvider, PromptDecisionProvider
from conveyor.driver import Orchestrator
from conveyor.errors import ConveyorError, describe
from conveyor.report import RunReport
from conveyor.store import FileArtifactStore
from conveyor.workers import CommandWorker, Worker


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _configure_logging(config: ConveyorConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.logging.level.upper(), None)
    if not isinstance(level, int):
        raise click.ClickException(f"Unknown log level: {config.logging.level}")
    logging.basicConfig(level=level, format=config.logging.format, force=True)


def _build_worker(config: ConveyorConfig, root: Path) -> Worker:
    return CommandWorker(
        config.worker.agent,
        binary=config.worker.binary,
        model=config.worker.model,
        extra_args=config.worker.extra_args,
        working_directory=root,
    )


def _build_decisions(
    *,
    interactive: bool,
    approve_plan: bool = False,
    extend_bound: bool = False,
    skip_failing: bool = False,
) -> DecisionProvider:
    preset = PresetDecisionProvider(
        approve_plans=approve_plan, extend_bound=extend_bound, skip_failing=skip_failing
    )
    if interactive:
        return PromptDecisionProvider(preset)
    return preset


def _load_orchestrator(
    root: Path,
    config_path: Path,
    decisions: DecisionProvider,
    *,
    verbose: bool = False,
    extend_review: bool = False,
) -> Orchestrator:
    config = load_config(config_path)
    _configure_logging(config, verbose)
    store = FileArtifactStore(root, config.layout)
    worker = _build_worker(config, root)
    review_extension = config.loops.bound_extension if extend_review else 0
    return Orchestrator(store, worker, config, decisions, review_extension=review_extension)


def _echo_json(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _finish(report: RunReport) -> None:
    _echo_json(report.to_dict())
    if not report.succeeded:
        where = f" at {report.failed_stage}" if report.failed_stage else ""
        raise click.ClickException(f"Run {report.outcome}{where}: {report.reason}")


def _fail(exc: ConveyorError) -> click.ClickException:
    _echo_json(exc.report.to_dict() if exc.report is not None else describe(exc))
    message = str(exc)
    if exc.stage and not message.startswith(exc.stage):
        message = f"{exc.stage}: {message}"
    return click.ClickException(message)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log at DEBUG level.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Conveyor CLI."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command("init")
@click.option("--agent", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default="conveyor.toml", show_default=True)
def init_command(agent: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    if agent:
        config.worker.agent = agent  # type: ignore[assignment]
    save_config(config_path, config)

    click.echo(f"Initialized Conveyor in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.worker.agent}")


@cli.command("run")
@click.argument("unit", required=False)
@click.option("--no-commit", is_flag=True, default=False, help="Ask workers not to commit.")
@click.option(
    "--extend-bound",
    is_flag=True,
    default=False,
    help="Pre-approve one extension of the review loop bound.",
)
@click.option("--interactive/--non-interactive", default=False, show_default=True)
@click.option("--approve-plan", is_flag=True, default=False, help="Pre-approve a blocked plan.")
@click.option("--config", "config_value", default="conveyor.toml", show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    unit: str | None,
    no_commit: bool,
    extend_bound: bool,
    interactive: bool,
    approve_plan: bool,
    config_value: str,
) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    decisions = _build_decisions(
        interactive=interactive, approve_plan=approve_plan, extend_bound=extend_bound
    )
    orchestrator = _load_orchestrator(
        root,
        config_path,
        decisions,
        verbose=ctx.obj["verbose"],
        extend_review=extend_bound,
    )
    try:
        report = asyncio.run(orchestrator.run_unit(unit, commit=not no_commit))
    except ConveyorError as exc:
        raise _fail(exc) from exc
    _finish(report)


@cli.command("phases")
@click.option(
    "--extend-bound",
    is_flag=True,
    default=False,
    help="Pre-approve one extension of the phase loop bound.",
)
@click.option(
    "--skip-failing",
    is_flag=True,
    default=False,
    help="Skip a phase that keeps failing instead of stopping.",
)
@click.option("--interactive/--non-interactive", default=False, show_default=True)
@click.option("--config", "config_value", default="conveyor.toml", show_default=True)
@click.pass_context
def phases_command(
    ctx: click.Context,
    extend_bound: bool,
    skip_failing: bool,
    interactive: bool,
    config_value: str,
) -> None:
    root = Path.cwd().resolve()
    decisions = _build_decisions(
        interactive=interactive, extend_bound=extend_bound, skip_failing=skip_failing
    )
    orchestrator = _load_orchestrator(
        root,
        _resolve_config_path(root, config_value),
        decisions,
        verbose=ctx.obj["verbose"],
    )
    try:
        report = asyncio.run(orchestrator.run_phases())
    except ConveyorError as exc:
        raise _fail(exc) from exc
    _finish(report)


@cli.command("status")
@click.argument("unit", required=False)
@click.option("--config", "config_value", default="conveyor.toml", show_default=True)
@click.pass_context
def status_command(ctx: click.Context, unit: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    orchestrator = _load_orchestrator(
        root,
        _resolve_config_path(root, config_value),
        PresetDecisionProvider(),
        verbose=ctx.obj["verbose"],
    )
    try:
        payload = orchestrator.status(unit)
    except ConveyorError as exc:
        raise _fail(exc) from exc
    _echo_json(payload)


@cli.command("reconcile")
@click.option("--dry-run", is_flag=True, default=False, help="Report without writing.")
@click.option("--config", "config_value", default="conveyor.toml", show_default=True)
@click.pass_context
def reconcile_command(ctx: click.Context, dry_run: bool, config_value: str) -> None:
    root = Path.cwd().resolve()
    orchestrator = _load_orchestrator(
        root,
        _resolve_config_path(root, config_value),
        PresetDecisionProvider(),
        verbose=ctx.obj["verbose"],
    )
    try:
        reconciliation = orchestrator.reconcile(dry_run=dry_run)
    except ConveyorError as exc:
        raise _fail(exc) from exc
    _echo_json(reconciliation.to_dict())

