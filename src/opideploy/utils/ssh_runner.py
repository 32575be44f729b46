# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/utils/ssh_runner.py

from __future__ import annotations

import logging
import shlex
import time
import uuid
from typing import Optional

import paramiko

from ..errors import TaskTimeoutError

log = logging.getLogger("opideploy")

_RECV = 32768

SCRIPT_DIR = "/tmp"


def script_command(remote_path: str) -> str:
    """Run an uploaded script with ``bash -e``, remove it, keep its exit status."""
    q = shlex.quote(remote_path)
    return f"bash -e {q}; rc=$?; rm -f {q}; exit $rc"


class SSHRunner:
    """
    One SSH session to an instance.

    Commands are run one at a time; callers never share a runner across
    threads.
    """

    def __init__(self, client: paramiko.SSHClient, *, label: Optional[str] = None, poll_interval: float = 0.2):
        self.client = client
        self.label = label or "ssh"
        self.poll_interval = poll_interval

    def run(self, cmd: str, *, timeout: Optional[int] = None) -> tuple[int, str, str]:
        stdin, stdout, stderr = self.client.exec_command(cmd, timeout=timeout)
        out = stdout.read().decode("utf-8", "replace")
        err = stderr.read().decode("utf-8", "replace")
        rc = stdout.channel.recv_exit_status()
        return rc, out, err

    def put_text(self, content: str, remote_path: str) -> None:
        sftp = self.client.open_sftp()
        try:
            with sftp.open(remote_path, "w") as f:
                f.write(content)
        finally:
            sftp.close()

    def run_script(self, script: str, *, timeout: float) -> tuple[int, str, str]:
        """
        Upload ``script`` over SFTP and run it with ``bash -e``.

        The script is a file, not stdin, so commands in it that read stdin
        get EOF instead of the rest of the script. Output is drained while
        polling so long-running scripts do not stall on a full window. Past
        ``timeout`` seconds the channel is closed and ``TaskTimeoutError``
        raised; the remote process may keep running. Returns
        ``(rc, stdout, stderr)``; ``rc`` is -1 when the host went away
        without reporting a status.
        """
        remote_path = f"{SCRIPT_DIR}/opideploy-{uuid.uuid4().hex}.sh"
        self.put_text(script, remote_path)

        stdin, stdout, stderr = self.client.exec_command(script_command(remote_path))
        stdin.channel.shutdown_write()

        channel = stdout.channel
        out_chunks: list[str] = []
        err_chunks: list[str] = []
        deadline = time.monotonic() + timeout

        def _drain() -> None:
            while channel.recv_ready():
                out_chunks.append(channel.recv(_RECV).decode("utf-8", "replace"))
            while channel.recv_stderr_ready():
                err_chunks.append(channel.recv_stderr(_RECV).decode("utf-8", "replace"))

        while not channel.exit_status_ready():
            _drain()
            if time.monotonic() >= deadline:
                channel.close()
                raise TaskTimeoutError(
                    f"[{self.label}] command timed out after {timeout}s",
                    timeout=timeout,
                    stdout="".join(out_chunks),
                    stderr="".join(err_chunks),
                )
            time.sleep(self.poll_interval)

        _drain()
        rc = channel.recv_exit_status()

        out_rem = stdout.read().decode("utf-8", "replace")
        err_rem = stderr.read().decode("utf-8", "replace")
        if out_rem:
            out_chunks.append(out_rem)
        if err_rem:
            err_chunks.append(err_rem)

        log.debug("[%s] exit %s", self.label, rc)
        return rc, "".join(out_chunks), "".join(err_chunks)

    def close(self) -> None:
        self.client.close()
