# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/deploy/tasks.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..fingerprint import Signature, Trigger, compute_signature
from ..utils.ssh import Connection

# task kinds
REMOTE = "remote"      # script fed to the instance's shell
LOCAL = "local"        # command run on the controller
REBOOT = "reboot"      # remote command expected to drop the connection
SETTLE = "settle"      # wait for a rebooted host to come back

KINDS = (REMOTE, LOCAL, REBOOT, SETTLE)

# task states
SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"
BLOCKED = "blocked"    # never dispatched, a predecessor failed

DEFAULT_TIMEOUT = 4 * 60 * 60


@dataclass(frozen=True)
class Task:
    id: str                                   # "<instance>:<purpose>"
    kind: str
    command: str = ""
    cwd: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT
    depends_on: Tuple[str, ...] = ()
    triggers: Tuple[Trigger, ...] = ()
    always_run: bool = False                  # run even when the signature is unchanged
    delay: float = 0.0                        # settle tasks only

    def __post_init__(self) -> None:
        if self.kind not in KINDS:
            raise ValueError(f"Task '{self.id}' has unknown kind '{self.kind}'")

    def signature(self) -> Signature:
        """
        Signature over the payload and the tracked inputs. Raises
        ``FingerprintError`` when a tracked file cannot be read.
        """
        return compute_signature((self.kind, self.command, self.cwd or "", *self.triggers))


@dataclass
class TaskResult:
    task_id: str
    status: str
    signature: Optional[str] = None
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None
    reason: Optional[str] = None              # why a task was skipped
    duration_ms: int = 0

    @property
    def satisfied(self) -> bool:
        return self.status in (SUCCEEDED, SKIPPED)


@dataclass(frozen=True)
class Plan:
    """The task graph of one instance, in declaration order."""

    instance: str
    host: str
    connection: Connection
    tasks: Tuple[Task, ...]

    def by_id(self) -> Dict[str, Task]:
        return {t.id: t for t in self.tasks}


@dataclass
class InstanceResult:
    name: str
    host: str
    status: str = SUCCEEDED                   # "succeeded" | "failed"
    failed_task: Optional[str] = None
    stderr: str = ""
    error: Optional[str] = None
    results: List[TaskResult] = field(default_factory=list)

    def result_for(self, task_id: str) -> Optional[TaskResult]:
        for r in self.results:
            if r.task_id == task_id:
                return r
        return None


@dataclass
class DeployReport:
    instances: List[InstanceResult] = field(default_factory=list)

    def add(self, result: InstanceResult) -> None:
        self.instances.append(result)

    @property
    def ok(self) -> bool:
        return all(i.status == SUCCEEDED for i in self.instances)

    def summary(self) -> str:
        ok = sum(1 for i in self.instances if i.status == SUCCEEDED)
        failed = sum(1 for i in self.instances if i.status == FAILED)
        return f"OK={ok} FAILED={failed}"
