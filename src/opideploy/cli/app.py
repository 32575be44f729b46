# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/cli/app.py
from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import List, Optional

import typer

from opideploy.config.loader import load_config
from opideploy.config.models import Instance
from opideploy.config.settings import DeploySettings, load_settings
from opideploy.deploy.executor import TaskExecutor
from opideploy.deploy.orchestrator import DEFAULT_WORKERS, build_plans, deploy_all
from opideploy.deploy.planner import PlanError, describe
from opideploy.deploy.tasks import FAILED, DeployReport
from opideploy.errors import ConfigurationError, DeployError
from opideploy.state import SignatureStore
from opideploy.utils.execution import ExecutionContext

from opideploy.logging.log import init_logging
from opideploy.observers.console import ConsoleObserver
from opideploy.observers.dispatcher import EventBus
from opideploy.observers.jsonfile import JsonFileObserver
from opideploy.observers.logger import LoggerObserver
from opideploy.observers.events import new_ctx


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="OPI indexer deployment CLI")

EXIT_FAILED = 1
EXIT_CONFIG = 2


def _settings(settle_seconds: Optional[float] = None) -> DeploySettings:
    try:
        settings = load_settings()
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(EXIT_CONFIG)
    if settle_seconds is not None:
        settings = dataclasses.replace(settings, settle_seconds=settle_seconds)
    return settings


def _instances(
    settings: DeploySettings,
    config: Optional[Path],
    override: Optional[Path],
    only: Optional[List[str]] = None,
) -> List[Instance]:
    try:
        instances = load_config(config, override, settings)
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(EXIT_CONFIG)

    if only:
        known = {i.name for i in instances}
        unknown = sorted(set(only) - known)
        if unknown:
            raise typer.BadParameter(
                f"Unknown instances: {', '.join(unknown)}\n"
                f"Valid instances: {', '.join(sorted(known))}"
            )
        instances = [i for i in instances if i.name in only]
    return instances


def _print_report(report: DeployReport) -> None:
    typer.echo("")
    for r in report.instances:
        line = f"{r.name:<20} {r.host:<24} {r.status}"
        if r.status == FAILED:
            line += f"  (task: {r.failed_task or '-'})"
        typer.echo(line)
        if r.status == FAILED:
            if r.error:
                typer.echo(f"    error: {r.error}")
            if r.stderr:
                for s in r.stderr.rstrip().splitlines()[-20:]:
                    typer.echo(f"    | {s}")
    typer.echo(report.summary())


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def validate(
    config: Optional[Path] = typer.Option(None, "--config", help="Instance document"),
    override: Optional[Path] = typer.Option(None, "--override", help="Override document, used instead of --config when present"),
):
    """Load and validate the instance configuration."""
    settings = _settings()
    instances = _instances(settings, config, override)
    for i in instances:
        service = i.bitcoind_service
        typer.echo(f"{i.name:<20} {i.user}@{i.host}:{i.port}  data={i.data_path}  bitcoind={service.kind if service else '-'}")
    typer.echo(f"{len(instances)} instance(s) OK")


@app.command()
def plan(
    config: Optional[Path] = typer.Option(None, "--config"),
    override: Optional[Path] = typer.Option(None, "--override"),
    settle_seconds: Optional[float] = typer.Option(None, "--settle-seconds"),
    only: Optional[List[str]] = typer.Option(None, "--only", help="Restrict to the named instance (repeatable)"),
):
    """Print every instance's tasks in execution order."""
    settings = _settings(settle_seconds)
    instances = _instances(settings, config, override, only)
    try:
        plans = build_plans(instances, settings)
    except (ConfigurationError, PlanError) as e:
        typer.echo(f"Plan error: {e}", err=True)
        raise typer.Exit(EXIT_CONFIG)

    for p in plans:
        typer.echo(f"# {p.instance} ({p.host})")
        for line in describe(p):
            typer.echo(f"  {line}")


@app.command()
def up(
    config: Optional[Path] = typer.Option(None, "--config"),
    override: Optional[Path] = typer.Option(None, "--override"),
    state_file: Optional[Path] = typer.Option(None, "--state-file", help="Where task signatures are recorded"),
    workers: int = typer.Option(DEFAULT_WORKERS, "--workers", min=1, help="Instances deployed in parallel"),
    settle_seconds: Optional[float] = typer.Option(None, "--settle-seconds", help="Wait after reboot"),
    only: Optional[List[str]] = typer.Option(None, "--only", help="Restrict to the named instance (repeatable)"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Provision every instance and bring the OPI services up."""
    settings = _settings(settle_seconds)
    logger, run_id, log_path = init_logging(run_name=settings.run_name, verbose=verbose)

    observers = [
        ConsoleObserver(),
        LoggerObserver(logger),
        JsonFileObserver(Path.home() / ".opideploy/logs" / f"{run_id}.jsonl"),
    ]
    bus = EventBus(observers=observers)
    run_ctx = new_ctx(env=settings.run_name, run_id=run_id)

    instances = _instances(settings, config, override, only)
    try:
        plans = build_plans(instances, settings, bus=bus, run_ctx=run_ctx)
        store = SignatureStore(state_file or settings.state_file)
    except (ConfigurationError, PlanError) as e:
        logger.error("Plan error: %s", e)
        raise typer.Exit(EXIT_CONFIG)
    except DeployError as e:
        logger.error("%s", e)
        raise typer.Exit(EXIT_FAILED)

    executor = TaskExecutor(store, ctx=ExecutionContext(dry_run=dry_run))
    report = deploy_all(plans, executor, max_workers=workers, bus=bus, run_ctx=run_ctx)

    _print_report(report)
    typer.echo(f"Log file: {log_path}")
    if not report.ok:
        raise typer.Exit(EXIT_FAILED)


@app.command()
def forget(
    target: str = typer.Argument(..., help="Instance name or full task id"),
    state_file: Optional[Path] = typer.Option(None, "--state-file"),
):
    """Drop recorded signatures so the next `up` re-runs those tasks."""
    settings = _settings()
    try:
        store = SignatureStore(state_file or settings.state_file)
    except DeployError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(EXIT_FAILED)
    n = store.forget(target)
    typer.echo(f"Forgot {n} signature(s) for {target}")


if __name__ == "__main__":
    app()
