# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/opideploy/config/models.py

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
    model_validator,
)

from ..errors import ConfigurationError
from .settings import DeploySettings

Port = Annotated[StrictInt, Field(ge=1, le=65535)]

DEFAULT_ZMQ_PORT = 18543
DEFAULT_DB_CACHE = 12000


class LocalBitcoind(BaseModel):
    """bitcoind deployed on the instance itself."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["local"] = "local"
    port: Port
    rpc_user: StrictStr
    rpc_password: StrictStr
    zmq_port: Port
    db_cache: Annotated[StrictInt, Field(gt=0)]


class ExternalBitcoind(BaseModel):
    """bitcoind reached over the network."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["external"] = "external"
    host: StrictStr
    port: Port
    rpc_user: StrictStr
    rpc_password: StrictStr
    zmq_port: Port

    @property
    def rpc_url(self) -> str:
        return f"http://{self.host}:{self.port}"


BitcoindService = Union[LocalBitcoind, ExternalBitcoind]


class BitcoindConfig(BaseModel):
    """
    ``deploy`` selects the branch: ``true`` needs ``local``, ``false`` needs
    ``external``. The other branch must be absent.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    deploy: StrictBool
    local: Optional[LocalBitcoind] = None
    external: Optional[ExternalBitcoind] = None

    @model_validator(mode="after")
    def _exactly_one_branch(self) -> "BitcoindConfig":
        if self.deploy:
            if self.local is None:
                raise ValueError("'local' config is required when deploy is true")
            if self.external is not None:
                raise ValueError("'external' config must not be set when deploy is true")
        else:
            if self.external is None:
                raise ValueError("'external' config is required when deploy is false")
            if self.local is not None:
                raise ValueError("'local' config must not be set when deploy is false")
        return self

    @property
    def service(self) -> BitcoindService:
        if self.deploy:
            assert self.local is not None
            return self.local
        assert self.external is not None
        return self.external


class Instance(BaseModel):
    """One managed host."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: Annotated[StrictStr, Field(min_length=1)]
    host: Annotated[StrictStr, Field(min_length=1)]
    user: Annotated[StrictStr, Field(min_length=1)]
    ssh_key_path: Annotated[StrictStr, Field(min_length=1)]
    data_path: Annotated[StrictStr, Field(min_length=1)]
    port: Port = 22
    bitcoind: Optional[BitcoindConfig] = None

    @property
    def bitcoind_service(self) -> Optional[BitcoindService]:
        return self.bitcoind.service if self.bitcoind else None


def default_bitcoind(settings: Optional[DeploySettings] = None) -> Dict[str, Any]:
    """Local bitcoind block used when a record declares none."""
    settings = settings or DeploySettings()
    return {
        "deploy": True,
        "local": {
            "port": settings.bitcoin_rpc_port,
            "rpc_user": settings.bitcoin_rpc_user,
            "rpc_password": settings.bitcoin_rpc_passwd,
            "zmq_port": DEFAULT_ZMQ_PORT,
            "db_cache": DEFAULT_DB_CACHE,
        },
    }


def _describe(err: ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e["loc"]) or "record"
        parts.append(f"{loc}: {e['msg']}")
    return ", ".join(parts)


def validate(raw: Any, settings: Optional[DeploySettings] = None) -> List[Instance]:
    """
    Validate a configuration document and return its instances in
    declaration order.

    ``raw`` is either the whole document (instances under ``services``) or the
    bare ``services`` mapping. Raises ``ConfigurationError`` naming the
    offending service on the first invalid record.
    """
    if not isinstance(raw, Mapping):
        raise ConfigurationError("configuration document must be a mapping")

    services = raw["services"] if "services" in raw else raw
    if not isinstance(services, Mapping):
        raise ConfigurationError("'services' must be a mapping of name to instance record")
    if not services:
        raise ConfigurationError("no services declared")

    instances: List[Instance] = []
    for name, record in services.items():
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"service names must be non-empty strings, got {name!r}")
        if not isinstance(record, Mapping):
            raise ConfigurationError("instance record must be a mapping", service=name)

        data = dict(record)
        if data.get("name", name) != name:
            raise ConfigurationError(
                f"name: record name {data['name']!r} does not match service key", service=name
            )
        data["name"] = name
        if not data.get("ssh_key_path") and settings and settings.ssh_key_path:
            data["ssh_key_path"] = settings.ssh_key_path
        if data.get("bitcoind") is None:
            data["bitcoind"] = default_bitcoind(settings)

        try:
            instances.append(Instance.model_validate(data))
        except ValidationError as e:
            raise ConfigurationError(_describe(e), service=name) from None

    return instances
