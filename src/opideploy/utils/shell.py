# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/utils/shell.py

from __future__ import annotations

import logging
import subprocess
import time
from pathlib import Path
from typing import Mapping, Optional, Tuple

from ..errors import TaskTimeoutError

log = logging.getLogger("opideploy")


def run_local(
    cmd: str,
    *,
    label: str,
    timeout: float,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
) -> Tuple[int, str, str]:
    """
    Run a shell command on the controller.

    Returns ``(rc, stdout, stderr)``; raises ``TaskTimeoutError`` when the
    command outlives ``timeout``.
    """
    log.debug("[%s] $ %s", label, cmd)
    start = time.time()

    try:
        result = subprocess.run(
            cmd,
            shell=True,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=dict(env) if env is not None else None,
            cwd=str(cwd) if cwd else None,
        )
    except subprocess.TimeoutExpired as e:
        raise TaskTimeoutError(
            f"[{label}] command timed out after {timeout}s",
            timeout=timeout,
            stdout=_text(e.stdout),
            stderr=_text(e.stderr),
        ) from e

    elapsed = round(time.time() - start, 2)
    if result.stdout:
        log.debug("[%s][stdout]\n%s", label, result.stdout.rstrip())
    if result.stderr:
        log.debug("[%s][stderr]\n%s", label, result.stderr.rstrip())
    log.debug("[%s][exit %s] (%ss)", label, result.returncode, elapsed)

    return result.returncode, result.stdout, result.stderr


def _text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", "replace")
    return data
