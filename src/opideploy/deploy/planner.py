# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/deploy/planner.py

from __future__ import annotations

import shlex
from collections import deque
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set

from ..config.models import ExternalBitcoind, Instance, LocalBitcoind, default_bitcoind, BitcoindConfig
from ..config.settings import DeploySettings
from ..errors import ConfigurationError, TemplateError
from ..fingerprint import DirectoryInput, hash_values
from ..templating import render_file
from ..utils.ssh import Connection
from .tasks import LOCAL, REBOOT, REMOTE, SETTLE, Plan, Task

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import PlanComputed, PlanFailed, new_ctx, scoped

ASSETS_DIR = Path(__file__).resolve().parents[1] / "assets"

HEREDOC_DELIMITER = "EOL"
REBOOT_TIMEOUT = 120


class PlanError(ValueError):
    pass


class DuplicateTaskError(PlanError):
    pass


class UnknownDependencyError(PlanError):
    pass


class CyclicDependencyError(PlanError):
    pass


@dataclass(frozen=True)
class Assets:
    """Where the scripts, compose templates and synced configs live."""

    scripts_dir: Path
    compose_dir: Path
    configs_dir: Path

    @classmethod
    def default(cls, settings: DeploySettings) -> "Assets":
        return cls(
            scripts_dir=ASSETS_DIR / "scripts",
            compose_dir=ASSETS_DIR / "compose",
            configs_dir=settings.workspace_root / "configs",
        )


# ---------------------------------------------------------------------
# Graph checks and ordering
# ---------------------------------------------------------------------

def _validate_dependencies(tasks: Sequence[Task]) -> None:
    names: Set[str] = set()
    for t in tasks:
        if t.id in names:
            raise DuplicateTaskError(f"Task '{t.id}' is declared twice")
        names.add(t.id)
    for t in tasks:
        for d in t.depends_on:
            if d not in names:
                raise UnknownDependencyError(
                    f"Task '{t.id}' depends on unknown task '{d}'"
                )


def topological_order(tasks: Sequence[Task]) -> List[Task]:
    """
    Stable topological sort of tasks based on ``depends_on``.
    Ties are broken by declaration order. Raises on unknown predecessors
    and on cycles.
    """
    _validate_dependencies(tasks)

    position: Dict[str, int] = {t.id: i for i, t in enumerate(tasks)}
    by_id: Dict[str, Task] = {t.id: t for t in tasks}
    indeg: Dict[str, int] = {t.id: len(set(t.depends_on)) for t in tasks}
    dependents: Dict[str, List[str]] = {t.id: [] for t in tasks}
    for t in tasks:
        for d in set(t.depends_on):
            dependents[d].append(t.id)

    queue = deque(sorted((n for n, deg in indeg.items() if deg == 0), key=position.get))
    order: List[Task] = []

    while queue:
        n = queue.popleft()
        order.append(by_id[n])
        for m in dependents[n]:
            indeg[m] -= 1
            if indeg[m] == 0:
                queue.append(m)
                queue = deque(sorted(queue, key=position.get))  # deterministic

    if len(order) != len(tasks):
        stuck = sorted(n for n, deg in indeg.items() if deg > 0)
        raise CyclicDependencyError(
            f"Cyclic dependency detected among tasks: {', '.join(stuck)}"
        )
    return order


def describe(plan: Plan) -> List[str]:
    lines = []
    for t in topological_order(plan.tasks):
        deps = ", ".join(t.depends_on) if t.depends_on else "-"
        lines.append(f"{t.id}  [{t.kind}]  <- {deps}")
    return lines


# ---------------------------------------------------------------------
# Instance environment
# ---------------------------------------------------------------------

def _bitcoind_config(instance: Instance, settings: DeploySettings) -> BitcoindConfig:
    if instance.bitcoind is not None:
        return instance.bitcoind
    return BitcoindConfig.model_validate(default_bitcoind(settings))


def instance_environment(instance: Instance, settings: Optional[DeploySettings] = None) -> Dict[str, str]:
    """Variables exported into every remote command of ``instance``."""
    settings = settings or DeploySettings()
    service = _bitcoind_config(instance, settings).service

    if isinstance(service, LocalBitcoind):
        return {
            "DEPLOY_BITCOIND": "true",
            "BITCOIN_RPC_PORT": str(service.port),
            "BITCOIN_RPC_USER": service.rpc_user,
            "BITCOIN_RPC_PASSWD": service.rpc_password,
            "BITCOIN_ZMQ_PORT": str(service.zmq_port),
            "BITCOIN_DB_CACHE": str(service.db_cache),
        }
    return {
        "DEPLOY_BITCOIND": "false",
        "BITCOIN_RPC_URL": service.rpc_url,
        "BITCOIN_RPC_USER": service.rpc_user,
        "BITCOIN_RPC_PASSWD": service.rpc_password,
        "BITCOIN_ZMQ_PORT": str(service.zmq_port),
    }


def connection_for(instance: Instance, settings: Optional[DeploySettings] = None) -> Connection:
    return Connection(
        host=instance.host,
        user=instance.user,
        key_path=instance.ssh_key_path,
        port=instance.port,
        environment=instance_environment(instance, settings),
    )


# ---------------------------------------------------------------------
# Compose files
# ---------------------------------------------------------------------

def restore_compose_values(instance: Instance, settings: DeploySettings) -> Dict[str, str]:
    dp = instance.data_path
    return {
        "OPI_PG_DATA_PATH": f"{dp}/pg_data",
        "OPI_IMAGE": settings.require("opi_image"),
        "DB_USER": settings.require("db_user"),
        "DB_PASSWD": settings.require("db_passwd"),
        "DB_DATABASE": settings.require("db_database"),
        "WORKSPACE_ROOT": dp,
        "ORD_DATADIR": f"{dp}/ord_data",
    }


def service_compose_values(instance: Instance, settings: DeploySettings) -> Dict[str, str]:
    dp = instance.data_path
    service = _bitcoind_config(instance, settings).service
    if isinstance(service, ExternalBitcoind):
        rpc_url = service.rpc_url
    else:
        rpc_url = f"http://bitcoind:{service.port}"

    values = restore_compose_values(instance, settings)
    values.update(
        {
            "OPI_BITCOIND_PATH": f"{dp}/bitcoind_data",
            "BITCOIND_IMAGE": settings.require("bitcoind_image"),
            "BITCOIN_RPC_USER": service.rpc_user,
            "BITCOIN_RPC_PASSWD": service.rpc_password,
            "BITCOIN_RPC_PORT": str(service.port),
            "BITCOIN_RPC_URL": rpc_url,
            "BITCOIN_ZMQ_PORT": str(service.zmq_port),
            "BITCOIN_CHAIN_FOLDER": f"{dp}/bitcoind_data/datadir",
        }
    )
    return values


def heredoc_write(directory: str, filename: str, content: str, *, create_dir: bool = False) -> str:
    """Shell snippet writing ``content`` verbatim to ``directory/filename``."""
    if any(line == HEREDOC_DELIMITER for line in content.splitlines()):
        raise TemplateError(f"{filename}: content contains the heredoc delimiter line '{HEREDOC_DELIMITER}'")
    d = shlex.quote(directory)
    prefix = f"mkdir -p {d} && cd {d}" if create_dir else f"cd {d}"
    body = content if content.endswith("\n") else content + "\n"
    return (
        f"{prefix} && cat > {shlex.quote(filename)} << '{HEREDOC_DELIMITER}'\n"
        f"{body}{HEREDOC_DELIMITER}\n"
    )


# ---------------------------------------------------------------------
# Plan construction
# ---------------------------------------------------------------------

def _read_script(assets: Assets, name: str) -> str:
    path = assets.scripts_dir / name
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        raise ConfigurationError(f"File not found: {path}") from None


def _script_task(
    instance: Instance,
    assets: Assets,
    script: str,
    depends_on: Iterable[str] = (),
    *,
    cwd: Optional[str] = None,
) -> Task:
    marker = "run:remote[d]" if cwd else "run:remote"
    return Task(
        id=f"{instance.name}:{marker}: {script}",
        kind=REMOTE,
        command=_read_script(assets, script),
        cwd=cwd,
        depends_on=tuple(depends_on),
        triggers=(f"scripts/{script}",),
    )


def _settle_label(seconds: float) -> str:
    return f"wait{seconds:g}Seconds"


def _provision_tasks(instance: Instance, settings: DeploySettings, assets: Assets) -> List[Task]:
    name = instance.name
    apt = _script_task(instance, assets, "configure-apt.sh")
    setup = _script_task(instance, assets, "setup.sh", [apt.id])

    reboot = Task(
        id=f"{name}:reboot",
        kind=REBOOT,
        command="sudo reboot",
        timeout=REBOOT_TIMEOUT,
        depends_on=(setup.id,),
    )
    settle = Task(
        id=f"{name}:{_settle_label(settings.settle_seconds)}",
        kind=SETTLE,
        delay=settings.settle_seconds,
        depends_on=(reboot.id,),
        triggers=(f"delay={settings.settle_seconds:g}",),
    )
    cleanup = _script_task(instance, assets, "cleanup.sh", [settle.id])
    return [apt, setup, reboot, settle, cleanup]


def _rsync_command(instance: Instance, local_dir: Path) -> str:
    ssh = f"ssh -i {shlex.quote(instance.ssh_key_path)} -p {instance.port} -o StrictHostKeyChecking=accept-new"
    target = f"{instance.user}@{instance.host}:{instance.data_path}"
    return f"rsync -avP -e {shlex.quote(ssh)} {shlex.quote(str(local_dir))} {shlex.quote(target)}"


def plan_tasks(instance: Instance, settings: DeploySettings, assets: Assets) -> List[Task]:
    """
    The task graph of one instance:

    configure-apt -> setup -> reboot -> settle -> cleanup -> create-data-dir
    -> {restore compose, config sync} -> restore -> service compose -> start.
    The swap file only needs the provisioned host (cleanup).
    """
    name = instance.name
    dp = instance.data_path

    provision = _provision_tasks(instance, settings, assets)
    cleanup = provision[-1]

    create_data_dir = Task(
        id=f"{name}:create-data-dir",
        kind=REMOTE,
        command=f"mkdir -p {shlex.quote(dp)}",
        depends_on=(cleanup.id,),
    )

    restore_compose = Task(
        id=f"{name}:cp:restore-docker-compose",
        kind=REMOTE,
        command=heredoc_write(
            dp,
            "restore.docker-compose.yaml",
            render_file(assets.compose_dir / "restore.docker-compose.yaml",
                        restore_compose_values(instance, settings)),
            create_dir=True,
        ),
        depends_on=(create_data_dir.id,),
    )

    configs = assets.configs_dir
    copy_configs = Task(
        id=f"{name}:copyFiles {configs.name}",
        kind=LOCAL,
        command=_rsync_command(instance, configs),
        depends_on=(create_data_dir.id,),
        triggers=(DirectoryInput(configs), str(configs), dp),
    )

    mkswap = _script_task(instance, assets, "mkswap.sh", [cleanup.id])

    restore = _script_task(
        instance,
        assets,
        "restore.sh",
        [create_data_dir.id, restore_compose.id, copy_configs.id],
        cwd=dp,
    )

    service_compose = render_file(
        assets.compose_dir / "opi.docker-compose.yaml",
        service_compose_values(instance, settings),
    )
    write_service_compose = Task(
        id=f"{name}:cp:opi-docker-compose",
        kind=REMOTE,
        command=heredoc_write(dp, "opi.docker-compose.yaml", service_compose),
        depends_on=(restore.id,),
    )

    # bitcoind sits behind a compose profile; only a local node starts it
    profile = "--profile bitcoind " if isinstance(_bitcoind_config(instance, settings).service, LocalBitcoind) else ""
    compose = f"docker-compose {profile}-f opi.docker-compose.yaml"
    start = Task(
        id=f"{name}:start-opi",
        kind=REMOTE,
        command=f"cd {shlex.quote(dp)} && {compose} pull && {compose} up -d",
        depends_on=(write_service_compose.id,),
        triggers=(hash_values(service_compose),),
        always_run=True,
    )

    tasks = [
        *provision,
        create_data_dir,
        restore_compose,
        copy_configs,
        mkswap,
        restore,
        write_service_compose,
        start,
    ]
    target = target_triggers(instance, settings)
    return [t if t.kind == LOCAL else replace(t, triggers=t.triggers + target) for t in tasks]


def target_triggers(instance: Instance, settings: DeploySettings) -> tuple:
    """
    Where a host-side task runs and with which exported variables. Part of
    every remote, reboot and settle signature, so pointing an instance at
    another host or changing its bitcoind wiring re-runs them.
    """
    env = instance_environment(instance, settings)
    return (
        f"target={instance.user}@{instance.host}:{instance.port}",
        hash_values(*(f"{k}={v}" for k, v in sorted(env.items()))),
    )


def build_plan(
    instance: Instance,
    settings: Optional[DeploySettings] = None,
    assets: Optional[Assets] = None,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> Plan:
    """
    Build and check the task graph of one instance.
    Emits PlanComputed / PlanFailed if an EventBus is provided.
    """
    settings = settings or DeploySettings()
    assets = assets or Assets.default(settings)
    ctx = scoped(run_ctx, instance.name) if run_ctx else new_ctx(env=settings.run_name, context=instance.name)
    try:
        tasks = plan_tasks(instance, settings, assets)
        order = topological_order(tasks)
        plan = Plan(
            instance=instance.name,
            host=instance.host,
            connection=connection_for(instance, settings),
            tasks=tuple(tasks),
        )
        if bus:
            bus.emit(PlanComputed(order=[t.id for t in order], **ctx))
        return plan

    except Exception as e:
        if bus:
            bus.emit(PlanFailed(error=str(e), **ctx))
        raise
