# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

import paramiko

from ..errors import HostConnectionError
from .ssh_runner import SSHRunner


@dataclass(frozen=True)
class Connection:
    """
    Where and how to reach one instance.

    ``environment`` is exported into the shell of every remote command run
    for the instance.
    """
    host: str
    user: str
    key_path: Optional[str] = None
    port: int = 22
    environment: Dict[str, str] = field(default_factory=dict)


def _load_key(key_path: str):
    last_exc: Optional[Exception] = None
    for key_cls in (
        paramiko.Ed25519Key,
        paramiko.RSAKey,
        paramiko.ECDSAKey,
    ):
        try:
            return key_cls.from_private_key_file(key_path)
        except paramiko.SSHException as exc:
            last_exc = exc
            continue
        except OSError as exc:
            raise HostConnectionError(f"cannot read private key {key_path}: {exc}") from exc
    raise HostConnectionError(f"unsupported private key format for {key_path}: {last_exc}")


def open_ssh(
    connection: Connection,
    *,
    connect_timeout: float = 20.0,
) -> SSHRunner:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    pkey = _load_key(connection.key_path) if connection.key_path else None

    try:
        client.connect(
            hostname=connection.host,
            port=connection.port,
            username=connection.user,
            pkey=pkey,
            timeout=connect_timeout,
            banner_timeout=connect_timeout,
            allow_agent=pkey is None,
            look_for_keys=pkey is None,
        )
    except (paramiko.SSHException, OSError) as exc:
        client.close()
        raise HostConnectionError(
            f"cannot connect to {connection.user}@{connection.host}:{connection.port}: {exc}"
        ) from exc

    return SSHRunner(client, label=connection.host)
