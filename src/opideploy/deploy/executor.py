# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/deploy/executor.py

from __future__ import annotations

import logging
import shlex
import time
from typing import Callable, Mapping, Optional, Tuple

import paramiko

from ..errors import (
    DeployError,
    FingerprintError,
    HostConnectionError,
    RemoteExecutionError,
    TaskTimeoutError,
)
from ..state import SignatureStore
from ..utils.execution import ExecutionContext
from ..utils.retry import RetryError, retry
from ..utils.shell import run_local
from ..utils.ssh import Connection, open_ssh
from ..utils.ssh_runner import SSHRunner
from .tasks import (
    FAILED,
    LOCAL,
    REBOOT,
    REMOTE,
    SETTLE,
    SKIPPED,
    SUCCEEDED,
    Task,
    TaskResult,
)

log = logging.getLogger("opideploy")

Connector = Callable[[Connection], SSHRunner]

# transport failures raised mid-command
_TRANSPORT_ERRORS = (paramiko.SSHException, EOFError, OSError)

PROBE_ATTEMPTS = 30
PROBE_DELAY = 10.0


class InstanceSession:
    """
    The SSH session of one instance, opened on first use.

    Tasks of an instance run one after the other, so a session is never
    used from two threads. A reboot discards it; the next task reconnects.
    """

    def __init__(self, connection: Connection, connect: Connector = open_ssh):
        self.connection = connection
        self._connect = connect
        self._runner: Optional[SSHRunner] = None

    def runner(self) -> SSHRunner:
        if self._runner is None:
            log.debug("[%s] connecting as %s", self.connection.host, self.connection.user)
            self._runner = self._connect(self.connection)
        return self._runner

    def reset(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        try:
            runner.close()
        except _TRANSPORT_ERRORS as exc:
            log.debug("[%s] error closing session: %s", self.connection.host, exc)

    close = reset


def build_script(body: str, environment: Mapping[str, str], cwd: Optional[str] = None) -> str:
    """Prefix ``body`` with the instance's exports and optional working directory."""
    lines = [f"export {k}={shlex.quote(str(v))}" for k, v in environment.items()]
    if cwd:
        q = shlex.quote(cwd)
        lines.append(f"mkdir -p {q}")
        lines.append(f"cd {q}")
    lines.append(body)
    script = "\n".join(lines)
    return script if script.endswith("\n") else script + "\n"


class TaskExecutor:
    """
    Runs single tasks, skipping those whose signature matches the last
    successful run. Failures are returned as ``TaskResult``s, never raised.
    """

    def __init__(
        self,
        store: SignatureStore,
        *,
        ctx: Optional[ExecutionContext] = None,
        sleep: Callable[[float], None] = time.sleep,
        probe_attempts: int = PROBE_ATTEMPTS,
        probe_delay: float = PROBE_DELAY,
    ):
        self.store = store
        self.ctx = ctx or ExecutionContext()
        self.sleep = sleep
        self.probe_attempts = probe_attempts
        self.probe_delay = probe_delay

    def execute(self, task: Task, session: InstanceSession) -> TaskResult:
        try:
            signature = task.signature()
        except FingerprintError as e:
            log.error("[%s] cannot compute change signature: %s", task.id, e)
            return TaskResult(task_id=task.id, status=FAILED, error=str(e))

        if not task.always_run and self.store.matches(task.id, signature):
            log.info("[%s] unchanged, skipping", task.id)
            return TaskResult(task_id=task.id, status=SKIPPED, signature=signature, reason="unchanged")

        if self.ctx.dry_run:
            log.info("[%s] dry-run: would run %s task", task.id, task.kind)
            return TaskResult(task_id=task.id, status=SKIPPED, signature=signature, reason="dry-run")

        log.info("[%s] running (%s)", task.id, task.kind)
        t0 = time.time()
        result = TaskResult(task_id=task.id, status=FAILED, signature=signature)
        try:
            rc, out, err = self._dispatch(task, session)
            result.exit_code, result.stdout, result.stderr = rc, out, err
        except TaskTimeoutError as e:
            result.stdout, result.stderr, result.error = e.stdout, e.stderr, str(e)
        except RemoteExecutionError as e:
            result.exit_code = e.exit_code
            result.stdout, result.stderr, result.error = e.stdout, e.stderr, str(e)
        except HostConnectionError as e:
            result.error = str(e)
        result.duration_ms = int((time.time() - t0) * 1000)

        if result.error is not None:
            log.error("[%s] failed: %s", task.id, result.error)
            if result.stderr:
                log.error("[%s][stderr]\n%s", task.id, result.stderr.rstrip())
            return result

        try:
            self.store.record(task.id, signature)
        except DeployError as e:
            result.error = str(e)
            log.error("[%s] ran but its signature was not recorded: %s", task.id, e)
            return result
        result.status = SUCCEEDED
        log.info("[%s] done in %.1fs", task.id, result.duration_ms / 1000)
        return result

    # ------------------ dispatch ------------------

    def _dispatch(self, task: Task, session: InstanceSession) -> Tuple[int, str, str]:
        if task.kind == LOCAL:
            rc, out, err = run_local(task.command, label=task.id, timeout=task.timeout)
        elif task.kind == REMOTE:
            rc, out, err = self._run_remote(task, session)
        elif task.kind == REBOOT:
            return self._reboot(task, session)
        elif task.kind == SETTLE:
            return self._settle(task, session)
        else:
            raise ValueError(f"unknown task kind '{task.kind}'")

        if rc != 0:
            raise RemoteExecutionError(
                f"[{task.id}] exited with status {rc}",
                exit_code=rc,
                stdout=out,
                stderr=err,
            )
        return rc, out, err

    def _run_remote(self, task: Task, session: InstanceSession) -> Tuple[int, str, str]:
        runner = session.runner()
        script = build_script(task.command, session.connection.environment, task.cwd)
        try:
            return runner.run_script(script, timeout=task.timeout)
        except TaskTimeoutError:
            session.reset()
            raise
        except _TRANSPORT_ERRORS as e:
            session.reset()
            raise HostConnectionError(f"[{task.id}] lost connection to {session.connection.host}: {e}") from e

    def _reboot(self, task: Task, session: InstanceSession) -> Tuple[int, str, str]:
        """
        The reboot kills the remote shell, so a dropped connection, a missing
        exit status or a hung channel all count as success. Only an explicit
        non-zero status (e.g. sudo refused) fails the task.
        """
        runner = session.runner()
        script = build_script(task.command, session.connection.environment, task.cwd)
        try:
            rc, out, err = runner.run_script(script, timeout=task.timeout)
        except TaskTimeoutError:
            log.info("[%s] no exit status before timeout, assuming host is rebooting", task.id)
            return 0, "", ""
        except _TRANSPORT_ERRORS as e:
            log.info("[%s] connection dropped as expected: %s", task.id, e)
            return 0, "", ""
        finally:
            session.reset()

        if rc > 0:
            raise RemoteExecutionError(
                f"[{task.id}] exited with status {rc}", exit_code=rc, stdout=out, stderr=err
            )
        return 0, out, err

    def _settle(self, task: Task, session: InstanceSession) -> Tuple[int, str, str]:
        """Wait ``task.delay`` seconds, then poll until the host accepts SSH again."""
        log.info("[%s] waiting %gs for %s to settle", task.id, task.delay, session.connection.host)
        self.sleep(task.delay)
        if self.probe_attempts <= 0:
            return 0, "", ""

        def _on_retry(attempt: int, exc: Exception) -> None:
            log.info("[%s] host not reachable yet (attempt %d/%d): %s",
                     task.id, attempt, self.probe_attempts, exc)

        @retry(
            retries=self.probe_attempts,
            delay=self.probe_delay,
            retry_on=(HostConnectionError,),
            on_retry=_on_retry,
            sleep=self.sleep,
        )
        def _probe() -> None:
            runner = session.runner()
            try:
                rc, _, err = runner.run("true", timeout=30)
            except _TRANSPORT_ERRORS as e:
                session.reset()
                raise HostConnectionError(str(e)) from e
            if rc != 0:
                session.reset()
                raise HostConnectionError(f"probe exited with status {rc}: {err.strip()}")

        try:
            _probe()
        except RetryError as e:
            raise HostConnectionError(
                f"[{task.id}] {session.connection.host} unreachable after "
                f"{self.probe_attempts} attempts: {e.__cause__}"
            ) from e
        return 0, "", ""
