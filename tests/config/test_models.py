from __future__ import annotations

import pytest

from opideploy.config.models import ExternalBitcoind, LocalBitcoind, validate
from opideploy.config.settings import DeploySettings
from opideploy.deploy.planner import instance_environment
from opideploy.errors import ConfigurationError


def _record(**overrides):
    rec = {
        "host": "10.0.0.5",
        "user": "root",
        "ssh_key_path": "/keys/id_ed25519",
        "data_path": "/mnt/data",
    }
    rec.update(overrides)
    return rec


LOCAL = {
    "deploy": True,
    "local": {"port": 8332, "rpc_user": "u", "rpc_password": "p", "zmq_port": 18543, "db_cache": 12000},
}

EXTERNAL = {
    "deploy": False,
    "external": {"host": "btc.example", "port": 8332, "rpc_user": "u", "rpc_password": "p", "zmq_port": 18543},
}


def test_local_bitcoind_environment():
    [inst] = validate({"services": {"opi-1": _record(bitcoind=LOCAL)}})
    assert isinstance(inst.bitcoind_service, LocalBitcoind)

    env = instance_environment(inst)
    assert env["DEPLOY_BITCOIND"] == "true"
    assert env["BITCOIN_RPC_PORT"] == "8332"
    assert env["BITCOIN_DB_CACHE"] == "12000"
    assert "BITCOIN_RPC_URL" not in env


def test_external_bitcoind_environment():
    [inst] = validate({"services": {"opi-1": _record(bitcoind=EXTERNAL)}})
    assert isinstance(inst.bitcoind_service, ExternalBitcoind)

    env = instance_environment(inst)
    assert env["DEPLOY_BITCOIND"] == "false"
    assert env["BITCOIN_RPC_URL"] == "http://btc.example:8332"
    assert "BITCOIN_DB_CACHE" not in env


def test_deploy_true_without_local_is_rejected():
    with pytest.raises(ConfigurationError) as ei:
        validate({"services": {"opi-1": _record(bitcoind={"deploy": True, "external": EXTERNAL["external"]})}})
    assert "opi-1" in str(ei.value)
    assert "'local' config is required" in str(ei.value)


def test_deploy_false_with_local_is_rejected():
    bad = {"deploy": False, "local": LOCAL["local"], "external": EXTERNAL["external"]}
    with pytest.raises(ConfigurationError) as ei:
        validate({"services": {"opi-1": _record(bitcoind=bad)}})
    assert "'local' config must not be set" in str(ei.value)


def test_deploy_true_with_external_is_rejected():
    bad = {"deploy": True, "local": LOCAL["local"], "external": EXTERNAL["external"]}
    with pytest.raises(ConfigurationError) as ei:
        validate({"services": {"opi-1": _record(bitcoind=bad)}})
    assert "opi-1" in str(ei.value)
    assert "'external' config must not be set" in str(ei.value)


def test_deploy_discriminator_is_never_defaulted():
    with pytest.raises(ConfigurationError) as ei:
        validate({"services": {"opi-1": _record(bitcoind={"local": LOCAL["local"]})}})
    assert "deploy" in str(ei.value)


def test_string_deploy_flag_is_not_coerced():
    bad = dict(LOCAL, deploy="yes")
    with pytest.raises(ConfigurationError):
        validate({"services": {"opi-1": _record(bitcoind=bad)}})


@pytest.mark.parametrize("port", [0, 65536, "22"])
def test_bad_ports_are_rejected(port):
    with pytest.raises(ConfigurationError) as ei:
        validate({"services": {"opi-1": _record(port=port)}})
    assert "port" in str(ei.value)


def test_missing_required_field_names_service_and_field():
    rec = _record()
    del rec["data_path"]
    with pytest.raises(ConfigurationError) as ei:
        validate({"services": {"opi-2": rec}})
    msg = str(ei.value)
    assert msg.startswith("Invalid instance data for 'opi-2'")
    assert "data_path" in msg


def test_unknown_field_is_rejected():
    with pytest.raises(ConfigurationError):
        validate({"services": {"opi-1": _record(colour="blue")}})


def test_defaults_fill_port_key_and_bitcoind():
    settings = DeploySettings(ssh_key_path="/env/key", bitcoin_rpc_user="rpc", bitcoin_rpc_port=9000)
    rec = _record()
    del rec["ssh_key_path"]

    [inst] = validate({"services": {"opi-1": rec}}, settings)
    assert inst.port == 22
    assert inst.ssh_key_path == "/env/key"
    svc = inst.bitcoind_service
    assert isinstance(svc, LocalBitcoind)
    assert svc.rpc_user == "rpc"
    assert svc.port == 9000


def test_declaration_order_is_kept_and_bare_mapping_accepted():
    doc = {"b": _record(), "a": _record(host="10.0.0.6")}
    names = [i.name for i in validate(doc)]
    assert names == ["b", "a"]


def test_record_name_must_match_key():
    with pytest.raises(ConfigurationError):
        validate({"services": {"opi-1": _record(name="opi-2")}})


def test_empty_document_is_rejected():
    with pytest.raises(ConfigurationError):
        validate({"services": {}})
    with pytest.raises(ConfigurationError):
        validate(["not", "a", "mapping"])


def test_instances_are_frozen():
    [inst] = validate({"services": {"opi-1": _record()}})
    with pytest.raises(Exception):
        inst.host = "elsewhere"


def test_two_instances_share_one_bitcoind():
    doc = {"services": {
        "a": _record(host="10.0.0.10", bitcoind=LOCAL),
        "b": _record(host="10.0.0.11", bitcoind={
            "deploy": False,
            "external": {"host": "10.0.0.10", "port": 8332, "rpc_user": "u", "rpc_password": "p", "zmq_port": 18543},
        }),
    }}
    a, b = validate(doc)
    assert instance_environment(a)["DEPLOY_BITCOIND"] == "true"
    env_b = instance_environment(b)
    assert env_b["DEPLOY_BITCOIND"] == "false"
    assert env_b["BITCOIN_RPC_URL"] == "http://10.0.0.10:8332"
