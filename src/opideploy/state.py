# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/state.py

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional

from .errors import DeployError

log = logging.getLogger("opideploy")


class SignatureStore:
    """
    Records the signature of every task's last successful run.

    Shared by all instances of a run, so every access goes through one lock.
    With a ``path`` the records are persisted as JSON after each change; without
    one the store lives in memory only.
    """

    def __init__(self, path: Optional[str | Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._records: Dict[str, str] = {}
        if self.path and self.path.exists():
            self._records = self._read(self.path)

    @staticmethod
    def _read(path: Path) -> Dict[str, str]:
        try:
            data = json.loads(path.read_text() or "{}")
        except (OSError, ValueError) as e:
            raise DeployError(f"cannot read state file {path}: {e}") from e
        if not isinstance(data, dict):
            raise DeployError(f"state file {path} must hold a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    def _flush(self) -> None:
        if not self.path:
            return
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(self._records, indent=2, sort_keys=True))
            os.replace(tmp, self.path)
        except OSError as e:
            raise DeployError(f"cannot write state file {self.path}: {e}") from e

    def get(self, task_id: str) -> Optional[str]:
        with self._lock:
            return self._records.get(task_id)

    def matches(self, task_id: str, signature: str) -> bool:
        with self._lock:
            return self._records.get(task_id) == signature

    def record(self, task_id: str, signature: str) -> None:
        """Raises DeployError, leaving the previous record, when the file cannot be written."""
        with self._lock:
            previous = self._records.get(task_id)
            self._records[task_id] = signature
            try:
                self._flush()
            except DeployError:
                if previous is None:
                    del self._records[task_id]
                else:
                    self._records[task_id] = previous
                raise

    def forget(self, prefix: str) -> int:
        """
        Drop every record whose task id equals ``prefix`` or starts with
        ``prefix + ":"``. Returns how many were removed.
        """
        with self._lock:
            doomed = [k for k in self._records if k == prefix or k.startswith(prefix + ":")]
            for k in doomed:
                del self._records[k]
            if doomed:
                self._flush()
        log.debug("Forgot %d signature(s) for %s", len(doomed), prefix)
        return len(doomed)

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._records)
