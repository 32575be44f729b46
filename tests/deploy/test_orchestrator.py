from __future__ import annotations

import threading
from pathlib import Path

import pytest

from opideploy.config.models import validate
from opideploy.config.settings import DeploySettings
from opideploy.deploy import executor as executor_mod
from opideploy.deploy.executor import TaskExecutor
from opideploy.deploy.orchestrator import build_and_run, build_plans, deploy_all, run_plan
from opideploy.deploy.planner import ASSETS_DIR, Assets, topological_order
from opideploy.deploy.tasks import BLOCKED, FAILED, SKIPPED, SUCCEEDED
from opideploy.observers.dispatcher import EventBus
from opideploy.observers.events import DeploySummary, InstanceFinished, TaskBlocked, TaskSkipped
from opideploy.state import SignatureStore
from opideploy.utils.execution import ExecutionContext

class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)


# ---- Fakes for the SSH sessions of several hosts ----

class FakeRunner:
    def __init__(self, host, log, responses):
        self.host = host
        self.log = log
        self._responses = responses

    def _answer(self, text):
        for key, resp in self._responses.items():
            if key in text:
                return resp
        return 0, "", ""

    def run_script(self, script, *, timeout):
        self.log.append((self.host, script))
        return self._answer(script)

    def run(self, cmd, *, timeout=None):
        return 0, "", ""

    def close(self):
        pass


class FakeFleet:
    """Connector handing out one FakeRunner per connection, answers keyed by host."""
    def __init__(self, responses=None):
        self.responses = responses or {}
        self.log = []
        self._lock = threading.Lock()

    def __call__(self, connection):
        return FakeRunner(connection.host, _Locked(self.log, self._lock), self.responses.get(connection.host, {}))


class _Locked:
    def __init__(self, items, lock):
        self._items, self._lock = items, lock
    def append(self, x):
        with self._lock:
            self._items.append(x)


SETTINGS = DeploySettings(
    db_user="opi",
    db_passwd="secret",
    db_database="opi_db",
    opi_image="opi:latest",
    bitcoind_image="bitcoind:27",
)

RESTORE_MARKER = ".restore-complete"   # only appears in restore.sh


@pytest.fixture
def assets(tmp_path: Path) -> Assets:
    configs = tmp_path / "configs"
    configs.mkdir()
    (configs / "ord.yaml").write_text("chain: mainnet\n")
    return Assets(scripts_dir=ASSETS_DIR / "scripts", compose_dir=ASSETS_DIR / "compose", configs_dir=configs)


@pytest.fixture(autouse=True)
def fake_rsync(monkeypatch):
    calls = []

    def fake_run_local(cmd, *, label, timeout, env=None, cwd=None):
        calls.append(label)
        return 0, "", ""

    monkeypatch.setattr(executor_mod, "run_local", fake_run_local)
    return calls


def _instances():
    rec = {"user": "root", "ssh_key_path": "/keys/id", "data_path": "/mnt/opi"}
    return validate({"services": {
        "opi-1": dict(rec, host="10.0.0.1"),
        "opi-2": dict(rec, host="10.0.0.2"),
    }})


def _executor(store, **kw):
    return TaskExecutor(store, sleep=lambda s: None, probe_attempts=1, **kw)


def _statuses(result):
    return {r.task_id.split(":", 1)[1]: r.status for r in result.results}


def test_all_instances_succeed_and_rerun_only_starts_services(assets):
    store = SignatureStore()
    fleet = FakeFleet()
    plans = build_plans(_instances(), SETTINGS, assets)

    report = deploy_all(plans, _executor(store), connect=fleet)
    assert report.ok
    assert report.summary() == "OK=2 FAILED=0"
    assert [i.name for i in report.instances] == ["opi-1", "opi-2"]
    assert all(r.status == SUCCEEDED for i in report.instances for r in i.results)

    cap = Capture()
    fleet.log.clear()
    again = deploy_all(plans, _executor(store), connect=fleet, bus=EventBus([cap]))
    assert again.ok
    for inst in again.instances:
        st = _statuses(inst)
        assert st.pop("start-opi") == SUCCEEDED
        assert set(st.values()) == {SKIPPED}
    assert len(fleet.log) == 2
    assert all("docker-compose --profile bitcoind -f opi.docker-compose.yaml pull" in s for _, s in fleet.log)
    assert all(e.reason == "unchanged" for e in cap.events if isinstance(e, TaskSkipped))


def test_moving_an_instance_to_a_new_host_reruns_everything(assets):
    store = SignatureStore()
    rec = {"user": "root", "ssh_key_path": "/keys/id", "data_path": "/mnt/opi"}
    [old] = build_plans(validate({"services": {"a": dict(rec, host="10.0.0.1")}}), SETTINGS, assets)
    assert run_plan(old, _executor(store), connect=FakeFleet()).status == SUCCEEDED

    fleet = FakeFleet()
    [moved] = build_plans(validate({"services": {"a": dict(rec, host="10.9.9.9")}}), SETTINGS, assets)
    result = run_plan(moved, _executor(store), connect=fleet)

    assert set(_statuses(result).values()) == {SUCCEEDED}
    assert {h for h, _ in fleet.log} == {"10.9.9.9"}
    assert any("configure-apt" in r.task_id for r in result.results)


def test_bitcoind_wiring_change_reruns_host_tasks(assets):
    store = SignatureStore()
    rec = {"host": "10.0.0.1", "user": "root", "ssh_key_path": "/keys/id", "data_path": "/mnt/opi"}
    [local] = build_plans(validate({"services": {"a": rec}}), SETTINGS, assets)
    run_plan(local, _executor(store), connect=FakeFleet())

    external = dict(rec, bitcoind={
        "deploy": False,
        "external": {"host": "btc.lan", "port": 8332, "rpc_user": "u", "rpc_password": "p", "zmq_port": 18543},
    })
    [plan] = build_plans(validate({"services": {"a": external}}), SETTINGS, assets)
    st = _statuses(run_plan(plan, _executor(store), connect=FakeFleet()))
    assert st["run:remote: setup.sh"] == SUCCEEDED
    assert st["copyFiles configs"] == SKIPPED


def test_failure_blocks_dependents_only_on_that_instance(assets):
    store = SignatureStore()
    fleet = FakeFleet({"10.0.0.1": {RESTORE_MARKER: (1, "", "pg_restore: error: out of space\n")}})
    cap = Capture()
    plans = build_plans(_instances(), SETTINGS, assets)

    report = deploy_all(plans, _executor(store), connect=fleet, bus=EventBus([cap]))
    assert not report.ok
    assert report.summary() == "OK=1 FAILED=1"

    bad, good = report.instances
    assert bad.status == FAILED
    assert bad.failed_task == "opi-1:run:remote[d]: restore.sh"
    assert "out of space" in bad.stderr

    st = _statuses(bad)
    assert st["run:remote[d]: restore.sh"] == FAILED
    assert st["cp:opi-docker-compose"] == BLOCKED
    assert st["start-opi"] == BLOCKED
    assert st["run:remote: mkswap.sh"] == SUCCEEDED
    assert bad.result_for("opi-1:start-opi").error == "blocked by opi-1:cp:opi-docker-compose"

    assert good.status == SUCCEEDED
    assert all(r.status == SUCCEEDED for r in good.results)

    # blocked tasks never reach the host
    assert not any("opi.docker-compose.yaml" in s for h, s in fleet.log if h == "10.0.0.1")
    assert store.get("opi-1:run:remote[d]: restore.sh") is None

    blocked = [e for e in cap.events if isinstance(e, TaskBlocked)]
    assert {e.task_id for e in blocked} == {"opi-1:cp:opi-docker-compose", "opi-1:start-opi"}
    finished = {e.name: e.status for e in cap.events if isinstance(e, InstanceFinished)}
    assert finished == {"opi-1": FAILED, "opi-2": SUCCEEDED}
    [summary] = [e for e in cap.events if isinstance(e, DeploySummary)]
    assert (summary.ok, summary.failed) == (1, 1)


def test_rerun_after_fix_resumes_at_failed_task(assets):
    store = SignatureStore()
    plans = build_plans(_instances()[:1], SETTINGS, assets)
    deploy_all(plans, _executor(store), connect=FakeFleet({"10.0.0.1": {RESTORE_MARKER: (1, "", "boom")}}))

    fleet = FakeFleet()
    [result] = deploy_all(plans, _executor(store), connect=fleet).instances
    st = _statuses(result)
    assert result.status == SUCCEEDED
    assert st["run:remote: setup.sh"] == SKIPPED
    assert st["reboot"] == SKIPPED
    assert st["run:remote[d]: restore.sh"] == SUCCEEDED
    assert st["cp:opi-docker-compose"] == SUCCEEDED


def test_tasks_run_in_dependency_order(assets):
    fleet = FakeFleet()
    [plan] = build_plans(_instances()[:1], SETTINGS, assets)
    result = run_plan(plan, _executor(SignatureStore()), connect=fleet)

    done = [r.task_id for r in result.results]
    assert done == [t.id for t in topological_order(plan.tasks)]
    position = {tid: i for i, tid in enumerate(done)}
    for t in plan.tasks:
        for d in t.depends_on:
            assert position[d] < position[t.id]


def test_rsync_runs_on_controller(assets, fake_rsync):
    [plan] = build_plans(_instances()[:1], SETTINGS, assets)
    run_plan(plan, _executor(SignatureStore()), connect=FakeFleet())
    assert fake_rsync == ["opi-1:copyFiles configs"]


def test_config_change_reruns_sync(assets, fake_rsync):
    store = SignatureStore()
    [plan] = build_plans(_instances()[:1], SETTINGS, assets)
    run_plan(plan, _executor(store), connect=FakeFleet())

    (assets.configs_dir / "ord.yaml").write_text("chain: testnet\n")
    [plan] = build_plans(_instances()[:1], SETTINGS, assets)
    result = run_plan(plan, _executor(store), connect=FakeFleet())

    assert fake_rsync == ["opi-1:copyFiles configs", "opi-1:copyFiles configs"]
    assert _statuses(result)["copyFiles configs"] == SUCCEEDED
    assert _statuses(result)["run:remote: setup.sh"] == SKIPPED


def test_dry_run_records_nothing(assets):
    store = SignatureStore()
    fleet = FakeFleet()
    plans = build_plans(_instances(), SETTINGS, assets)
    report = deploy_all(plans, _executor(store, ctx=ExecutionContext(dry_run=True)), connect=fleet)
    assert report.ok
    assert fleet.log == []
    assert store.snapshot() == {}


def test_unexpected_error_fails_only_that_instance(assets):
    class Exploding(TaskExecutor):
        def execute(self, task, session):
            if session.connection.host == "10.0.0.1":
                raise RuntimeError("bug")
            return super().execute(task, session)

    plans = build_plans(_instances(), SETTINGS, assets)
    report = deploy_all(plans, Exploding(SignatureStore(), sleep=lambda s: None, probe_attempts=1), connect=FakeFleet())
    bad, good = report.instances
    assert bad.status == FAILED and bad.error == "bug"
    assert good.status == SUCCEEDED


def test_build_and_run_single_instance(assets):
    inst = _instances()[0]
    result = build_and_run(inst, SETTINGS, SignatureStore(), assets=assets,
                           executor=_executor(SignatureStore()), connect=FakeFleet())
    assert result.status == SUCCEEDED
    assert result.name == "opi-1"
