# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/errors.py
from __future__ import annotations

from typing import Optional


class DeployError(RuntimeError):
    """Base class for opideploy failures."""


class ConfigurationError(DeployError):
    """Raised when an instance record or a required setting is invalid."""

    def __init__(self, message: str, *, service: Optional[str] = None):
        self.service = service
        if service:
            message = f"Invalid instance data for '{service}': {message}"
        super().__init__(message)


class TemplateError(ConfigurationError):
    """Raised when a compose template keeps a placeholder with no value."""


class FingerprintError(DeployError):
    """Raised when an input to change detection cannot be read."""


class HostConnectionError(DeployError, ConnectionError):
    """Raised when a host is unreachable or rejects authentication."""


class RemoteExecutionError(DeployError):
    """Raised when a command exits non-zero."""

    def __init__(self, message: str, *, exit_code: int, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class TaskTimeoutError(DeployError, TimeoutError):
    """Raised when a task runs past its wall-clock bound."""

    def __init__(self, message: str, *, timeout: float, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr
