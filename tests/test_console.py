import base64

import httpx
import pytest
from fastapi.testclient import TestClient

from lso.console import create_console_app
from lso.gateway import Gateway, RequestJournal, RuleStore
from lso.models import RuleSpec, StackSpec
from lso.orchestrator import GatewayUnreachable, Orchestrator
from lso.runtime import UnitState
from lso.secrets import SecretFetchError, SecretResolutionError
from main import create_app


class FakeSource:
    def __init__(self, secrets):
        self.secrets = secrets

    def fetch(self, namespace, secret_name):
        if (namespace, secret_name) not in self.secrets:
            raise SecretFetchError(secret_name, "not found")
        return dict(self.secrets[(namespace, secret_name)])


GOOD = {("justice", "postgres"): {"password": base64.b64encode(b"pw").decode("ascii")}}


def _orch(tmp_path, factory, secrets=GOOD):
    stack = StackSpec.model_validate(
        {
            "name": "console-test",
            "secrets": [
                {
                    "name": "db-credentials",
                    "namespace": "justice",
                    "secret_name": "postgres",
                    "keys": ["password"],
                    "destination": str(tmp_path / "db.env"),
                }
            ],
            "units": [
                {"name": "db", "kind": "container", "image": "postgres:16", "secrets": ["db-credentials"],
                 "probe": {"interval_s": 0.02}},
                {"name": "api", "kind": "process", "command": "uvicorn app:app", "depends_on": ["db"],
                 "probe": {"interval_s": 0.02}},
            ],
        }
    )
    gw = Gateway(
        RuleStore(specs=[RuleSpec(name="stub", path="/ref/*", mock={"body": {"ok": True}})]),
        RequestJournal(20),
        transport=httpx.MockTransport(lambda r: httpx.Response(200)),
    )
    return Orchestrator(stack, secret_source=FakeSource(secrets), supervisor_factory=factory, gateway=gw, strict_secrets=True)


@pytest.fixture
def live(tmp_path, fake_factory):
    orch = _orch(tmp_path, fake_factory)
    with TestClient(create_app(orch)) as client:
        assert orch.scheduler.wait_settled(timeout=5)
        yield client, orch


def test_status_lists_every_unit(live):
    client, _ = live
    rows = client.get("/status").json()
    assert [r["name"] for r in rows] == ["db", "api"]
    assert {r["state"] for r in rows} == {"Ready"}
    assert rows[1]["depends_on"] == ["db"]
    assert rows[0]["last_probe"]["ok"] is True


def test_logs_and_history(live):
    client, _ = live
    body = client.get("/units/db/logs", params={"tail": 5}).json()
    assert body == {"unit": "db", "lines": ["db started"], "dropped": 0}
    assert client.get("/units/nope/logs").status_code == 404

    history = client.get("/units/db/history").json()
    assert history[0]["to_state"] == "Ready"
    assert [h["to_state"] for h in reversed(history)] == ["Starting", "AwaitingReady", "Ready"]


def test_log_stream_follows_new_output(live):
    client, orch = live
    db = orch.scheduler.supervisors["db"]

    def is_running():
        # New output arrives once while the stream is open, then the unit exits.
        if "late line" not in db.logs.tail(10):
            db.logs.append("late line")
            return True
        return False

    db.is_running = is_running
    r = client.get("/units/db/logs/stream", params={"tail": 5})

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert r.text == "db started\nlate line\n"
    assert client.get("/units/nope/logs/stream").status_code == 404


def test_journal_and_events(live):
    client, orch = live
    orch.gateway.handle("GET", "/ref/courts")
    orch.gateway.handle("GET", "/unrouted")

    calls = client.get("/journal", params={"limit": 5}).json()
    assert [c["outcome"] for c in calls] == ["NoMatch", "200"]
    assert calls[1]["rule"] == "stub"

    events = client.get("/events", params={"unit": "db"}).json()
    assert events
    assert all(e["unit_name"] == "db" for e in events)


def test_dashboard_renders(live):
    client, _ = live
    page = client.get("/")
    assert page.status_code == 200
    assert "console-test" in page.text
    assert "Ready" in page.text


def test_control_restart(live):
    client, orch = live
    r = client.post("/control/units/db/restart")
    assert r.status_code == 200
    assert r.json()["unit"] == "db"
    assert client.post("/control/units/nope/restart").status_code == 404
    assert orch.scheduler.wait_for("api", {UnitState.READY}, timeout=5)


def test_control_secret_refresh(live):
    client, _ = live
    r = client.post("/control/secrets/refresh", json={"bundles": ["db-credentials"]})
    assert r.status_code == 200
    assert r.json()[0]["ok"] is True
    assert client.post("/control/secrets/refresh", json={"bundles": ["nope"]}).status_code == 404


def test_startup_aborts_on_unresolvable_secret(tmp_path, fake_factory):
    orch = _orch(tmp_path, fake_factory, secrets={})
    with pytest.raises(SecretResolutionError):
        with TestClient(create_app(orch)):
            pass
    assert all(u.start_count == 0 for u in fake_factory.built.values())
    orch.down()


def test_console_before_stack_is_up(tmp_path, fake_factory, monkeypatch):
    orch = _orch(tmp_path, fake_factory)
    client = TestClient(create_console_app(orch))
    assert client.get("/status").status_code == 503
    assert client.get("/units/api/logs/stream").status_code == 503
    assert client.get("/").status_code == 200

    def unreachable(limit=100):
        raise GatewayUnreachable("http://127.0.0.1:8090: ConnectError")

    monkeypatch.setattr(orch, "journal", unreachable)
    assert client.get("/journal").status_code == 503
