# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/config/settings.py

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

from ..errors import ConfigurationError

# attribute -> environment variable
ENV_VARS: Dict[str, str] = {
    "db_user": "DB_USER",
    "db_passwd": "DB_PASSWD",
    "db_database": "DB_DATABASE",
    "bitcoin_rpc_user": "BITCOIN_RPC_USER",
    "bitcoin_rpc_passwd": "BITCOIN_RPC_PASSWD",
    "bitcoin_rpc_port": "BITCOIN_RPC_PORT",
    "opi_image": "OPI_IMAGE",
    "bitcoind_image": "BITCOIND_IMAGE",
    "ssh_key_path": "OPIDEPLOY_SSH_KEY_PATH",
    "run_name": "OPIDEPLOY_RUN_NAME",
    "state_file": "OPIDEPLOY_STATE_FILE",
    "settle_seconds": "OPIDEPLOY_SETTLE_SECONDS",
    "workspace_root": "WORKSPACE_ROOT",
}


@dataclass(frozen=True)
class DeploySettings:
    """
    Per-run values taken from the environment.

    Values that only some code paths need stay ``None`` until ``require``
    is called for them, so a missing image name fails the run instead of
    being baked into a remote command as an empty string.
    """

    db_user: Optional[str] = None
    db_passwd: Optional[str] = None
    db_database: Optional[str] = None
    bitcoin_rpc_user: str = "bitcoin"
    bitcoin_rpc_passwd: str = "password"
    bitcoin_rpc_port: int = 8332
    opi_image: Optional[str] = None
    bitcoind_image: Optional[str] = None
    ssh_key_path: Optional[str] = None
    run_name: str = "opideploy"
    state_file: Path = Path.home() / ".opideploy" / "state.json"
    settle_seconds: float = 60.0
    workspace_root: Path = Path.cwd()

    def require(self, name: str) -> str:
        value = getattr(self, name)
        if value in (None, ""):
            raise ConfigurationError(
                f"{ENV_VARS.get(name, name)} is required but not set"
            )
        return str(value)


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None


def load_settings(env: Optional[Mapping[str, str]] = None) -> DeploySettings:
    env = os.environ if env is None else env
    defaults = DeploySettings()
    workspace = Path(env.get("WORKSPACE_ROOT") or Path.cwd())

    state_file = env.get("OPIDEPLOY_STATE_FILE")
    return DeploySettings(
        db_user=env.get("DB_USER") or None,
        db_passwd=env.get("DB_PASSWD") or None,
        db_database=env.get("DB_DATABASE") or None,
        bitcoin_rpc_user=env.get("BITCOIN_RPC_USER") or defaults.bitcoin_rpc_user,
        bitcoin_rpc_passwd=env.get("BITCOIN_RPC_PASSWD") or defaults.bitcoin_rpc_passwd,
        bitcoin_rpc_port=_int(env, "BITCOIN_RPC_PORT", defaults.bitcoin_rpc_port),
        opi_image=env.get("OPI_IMAGE") or None,
        bitcoind_image=env.get("BITCOIND_IMAGE") or None,
        ssh_key_path=env.get("OPIDEPLOY_SSH_KEY_PATH") or None,
        run_name=env.get("OPIDEPLOY_RUN_NAME") or defaults.run_name,
        state_file=Path(state_file) if state_file else defaults.state_file,
        settle_seconds=_float(env, "OPIDEPLOY_SETTLE_SECONDS", defaults.settle_seconds),
        workspace_root=workspace,
    )
