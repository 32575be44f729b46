# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/deploy/orchestrator.py

from __future__ import annotations

import concurrent.futures
import logging
from typing import Dict, List, Optional, Sequence

from ..config.models import Instance
from ..config.settings import DeploySettings
from ..state import SignatureStore
from ..utils.ssh import open_ssh
from .executor import Connector, InstanceSession, TaskExecutor
from .planner import Assets, build_plan, topological_order
from .tasks import (
    BLOCKED,
    FAILED,
    SKIPPED,
    SUCCEEDED,
    DeployReport,
    InstanceResult,
    Plan,
    TaskResult,
)

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import (
    DeploySummary,
    InstanceFinished,
    TaskBlocked,
    TaskFailed,
    TaskSkipped,
    TaskStarted,
    TaskSucceeded,
    new_ctx,
    scoped,
)

log = logging.getLogger("opideploy")

DEFAULT_WORKERS = 4


def run_plan(
    plan: Plan,
    executor: TaskExecutor,
    *,
    connect: Connector = open_ssh,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> InstanceResult:
    """
    Drive one instance's tasks in topological order.

    A task is dispatched only when every predecessor succeeded or was
    skipped; otherwise it is marked blocked and never touches the host.
    Tasks on other branches keep running after a failure.
    """
    bus = bus or EventBus()
    ctx = run_ctx or new_ctx(env="opideploy")
    outcome = InstanceResult(name=plan.instance, host=plan.host)
    results: Dict[str, TaskResult] = {}
    session = InstanceSession(plan.connection, connect)

    try:
        for task in topological_order(plan.tasks):
            unmet = [d for d in task.depends_on if not results[d].satisfied]
            if unmet:
                tr = TaskResult(task_id=task.id, status=BLOCKED, error=f"blocked by {unmet[0]}")
                log.warning("[%s] not dispatched, predecessor %s did not complete", task.id, unmet[0])
                bus.emit(TaskBlocked(task_id=task.id, blocked_by=unmet[0], **scoped(ctx, plan.instance)))
            else:
                bus.emit(TaskStarted(task_id=task.id, kind=task.kind, **scoped(ctx, plan.instance)))
                tr = executor.execute(task, session)
                _emit_result(bus, ctx, plan.instance, tr)
                if tr.status == FAILED and outcome.failed_task is None:
                    outcome.status = FAILED
                    outcome.failed_task = task.id
                    outcome.stderr = tr.stderr
                    outcome.error = tr.error

            results[task.id] = tr
            outcome.results.append(tr)
    finally:
        session.close()

    bus.emit(
        InstanceFinished(
            name=plan.instance,
            host=plan.host,
            status=outcome.status,
            failed_task=outcome.failed_task,
            **scoped(ctx, plan.instance),
        )
    )
    return outcome


def _emit_result(bus: EventBus, ctx: dict, instance: str, tr: TaskResult) -> None:
    c = scoped(ctx, instance)
    if tr.status == SKIPPED:
        bus.emit(TaskSkipped(task_id=tr.task_id, reason=tr.reason or "unchanged", **c))
    elif tr.status == SUCCEEDED:
        bus.emit(TaskSucceeded(task_id=tr.task_id, duration_ms=tr.duration_ms, **c))
    else:
        bus.emit(TaskFailed(task_id=tr.task_id, error=tr.error or "", stderr=tr.stderr, **c))


def deploy_all(
    plans: Sequence[Plan],
    executor: TaskExecutor,
    *,
    max_workers: int = DEFAULT_WORKERS,
    connect: Connector = open_ssh,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> DeployReport:
    """
    Run every plan; instances share nothing but the signature store, so
    they run in parallel. Results keep the order of ``plans``.
    """
    bus = bus or EventBus()
    ctx = run_ctx or new_ctx(env="opideploy")
    report = DeployReport()
    if not plans:
        return report

    workers = max(1, min(max_workers, len(plans)))
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=workers, thread_name_prefix="opideploy"
    ) as pool:
        futures = [
            pool.submit(run_plan, plan, executor, connect=connect, bus=bus, run_ctx=ctx)
            for plan in plans
        ]
        for plan, fut in zip(plans, futures):
            try:
                report.add(fut.result())
            except Exception as e:
                # a bug in one instance's run must not hide the others
                log.exception("[%s] run aborted", plan.instance)
                report.add(InstanceResult(name=plan.instance, host=plan.host, status=FAILED, error=str(e)))

    ok = sum(1 for i in report.instances if i.status == SUCCEEDED)
    failed = sum(1 for i in report.instances if i.status == FAILED)
    bus.emit(DeploySummary(ok=ok, failed=failed, **scoped(ctx, None)))
    return report


def build_plans(
    instances: Sequence[Instance],
    settings: DeploySettings,
    assets: Optional[Assets] = None,
    *,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> List[Plan]:
    """Build every plan up front so a bad record stops the run before any host is touched."""
    return [build_plan(i, settings, assets, bus=bus, run_ctx=run_ctx) for i in instances]


def build_and_run(
    instance: Instance,
    settings: DeploySettings,
    store: SignatureStore,
    *,
    assets: Optional[Assets] = None,
    executor: Optional[TaskExecutor] = None,
    connect: Connector = open_ssh,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> InstanceResult:
    plan = build_plan(instance, settings, assets, bus=bus, run_ctx=run_ctx)
    executor = executor or TaskExecutor(store)
    return run_plan(plan, executor, connect=connect, bus=bus, run_ctx=run_ctx)
