import base64
import json
import os

import cli

EXAMPLES = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples")


def test_validate_prints_start_layers(capsys):
    assert cli.main(["validate", "--stack", os.path.join(EXAMPLES, "stack.json")]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["layers"][0] == ["db", "cache", "queue", "gateway"]
    assert out["layers"][-1] == ["ui-citizen", "ui-staff"]


def test_validate_reports_cycles(tmp_path, capsys):
    stack = {
        "units": [
            {"name": "a", "kind": "process", "command": ["x"], "depends_on": ["b"]},
            {"name": "b", "kind": "process", "command": ["x"], "depends_on": ["a"]},
        ]
    }
    path = tmp_path / "stack.json"
    path.write_text(json.dumps(stack))
    assert cli.main(["validate", "--stack", str(path)]) == 1
    assert "cycle" in capsys.readouterr().err


def test_secrets_command_with_env_source(tmp_path, monkeypatch, capsys):
    dest = tmp_path / "db.env"
    stack = {
        "secrets": [
            {"name": "db", "namespace": "justice", "secret_name": "pg", "keys": ["password"], "destination": str(dest)}
        ],
        "units": [{"name": "db", "kind": "container", "image": "postgres:16", "secrets": ["db"]}],
    }
    path = tmp_path / "stack.json"
    path.write_text(json.dumps(stack))
    monkeypatch.setenv("LSO_SECRET__JUSTICE__PG__PASSWORD", base64.b64encode(b"pw").decode("ascii"))

    assert cli.main(["secrets", "--stack", str(path), "--source", "env"]) == 0
    assert dest.read_text() == "PASSWORD=pw\n"
    assert json.loads(capsys.readouterr().out)[0]["ok"] is True


class _Resp:
    def __init__(self, payload, ok=True):
        self._payload = payload
        self.ok = ok

    def json(self):
        return self._payload


def test_status_calls_console_api(monkeypatch, capsys):
    calls = []

    def fake_get(url, **kwargs):
        calls.append(url)
        return _Resp([{"name": "db", "state": "Ready"}])

    monkeypatch.setattr(cli.requests, "get", fake_get)
    assert cli.main(["--api", "http://console.local:8000/", "status"]) == 0
    assert calls == ["http://console.local:8000/status"]
    assert json.loads(capsys.readouterr().out)[0]["state"] == "Ready"


def test_restart_reports_failure(monkeypatch, capsys):
    monkeypatch.setattr(cli.requests, "post", lambda url, **kw: _Resp({"detail": "Unknown unit 'x'"}, ok=False))
    assert cli.main(["restart", "x"]) == 1


class _StreamResp(_Resp):
    def __init__(self, lines):
        super().__init__(None)
        self.lines = lines
        self.closed = False

    def iter_lines(self, decode_unicode=False):
        yield from self.lines

    def close(self):
        self.closed = True


def test_logs_follow_prints_streamed_lines(monkeypatch, capsys):
    calls = []
    resp = _StreamResp(["db started", "ready to accept connections"])

    def fake_get(url, **kwargs):
        calls.append((url, kwargs))
        return resp

    monkeypatch.setattr(cli.requests, "get", fake_get)
    assert cli.main(["logs", "db", "--follow", "--tail", "5"]) == 0

    url, kwargs = calls[0]
    assert url == "http://localhost:8000/units/db/logs/stream"
    assert kwargs["params"] == {"tail": 5}
    assert kwargs["stream"] is True
    assert capsys.readouterr().out == "db started\nready to accept connections\n"
    assert resp.closed
