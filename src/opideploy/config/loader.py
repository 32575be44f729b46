# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/config/loader.py

import logging
import os
from pathlib import Path
from typing import List, Optional

import yaml

from ..errors import ConfigurationError
from .models import Instance, validate
from .settings import DeploySettings

log = logging.getLogger("opideploy")

DEFAULT_CONFIG = Path("deploy") / "config.yaml"
DEFAULT_OVERRIDE = Path("deploy") / "config.user.yaml"


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    try:
        raw = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"cannot read {path}: {e}") from e
    expanded = os.path.expandvars(raw)
    try:
        return yaml.safe_load(expanded) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{path} is not valid YAML: {e}") from e


def resolve_config_path(
    path: Optional[str | Path] = None,
    override_path: Optional[str | Path] = None,
    settings: Optional[DeploySettings] = None,
) -> Path:
    """
    Pick the document to read.

    The override (``deploy/config.user.yaml`` by default) wins whenever it
    exists; the base document is only read when there is no override.
    """
    root = settings.workspace_root if settings else Path.cwd()
    base = Path(path) if path else root / DEFAULT_CONFIG
    override = Path(override_path) if override_path else root / DEFAULT_OVERRIDE

    if override.is_file():
        log.debug("Using override config %s", override)
        return override
    if not base.is_file():
        raise ConfigurationError(f"File not found: {base}")
    return base


def load_config(
    path: Optional[str | Path] = None,
    override_path: Optional[str | Path] = None,
    settings: Optional[DeploySettings] = None,
) -> List[Instance]:
    """Load and validate the instance document."""
    chosen = resolve_config_path(path, override_path, settings)
    data = _load_yaml(chosen)
    instances = validate(data, settings)
    log.debug("Loaded %d instance(s) from %s", len(instances), chosen)
    return instances
