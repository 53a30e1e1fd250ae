import os
import sys
import threading
import time
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import lso...` and `import main` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from lso import db  # noqa: E402
from lso.supervisor import LaunchError, Supervisor  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test writes its event log to its own sqlite file."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "events.db")))
    db.init_db()
    yield


class FakeUnit(Supervisor):
    """In-memory supervisor driven by the test.

    ready_after: seconds after start() before the probe succeeds (None = never).
    """

    kind = "fake"

    def __init__(self, spec, clock, ready_after=0.0, fail_launch=False, env=None, stop_log=None):
        super().__init__(spec, env=env, log_lines=50)
        self.stop_log = stop_log if stop_log is not None else []
        self.clock = clock
        self.ready_after = ready_after
        self.fail_launch = fail_launch
        self.running = False
        self.code = None
        self.started_at = None
        self.ready_at = None
        self.start_count = 0
        self.stop_count = 0
        self.probe_ok = True
        self._lock = threading.Lock()

    def start(self):
        with self._lock:
            self.start_count += 1
            if self.fail_launch:
                self.code = 2
                raise LaunchError(self.name, "boom", exit_code=2, output="bad config")
            self.running = True
            self.code = None
            self.started_at = self.clock()
            self.ready_at = None
        self.logs.append(f"{self.name} started")

    def is_running(self):
        return self.running

    def exit_code(self):
        return self.code

    def probe(self):
        if not self.running:
            return False, "not running", None
        if self.ready_after is None or not self.probe_ok:
            return False, "not ready", 0.1
        if self.clock() - self.started_at >= self.ready_after:
            if self.ready_at is None:
                self.ready_at = self.clock()
            return True, "ok", 0.1
        return False, "warming up", 0.1

    def stop(self, grace_s=None):
        with self._lock:
            self.stop_count += 1
            if self.running:
                self.stop_log.append(self.name)
            self.running = False

    def crash(self, code=1):
        self.running = False
        self.code = code


@pytest.fixture
def clock():
    return time.monotonic


@pytest.fixture
def fake_units(clock):
    def _build(specs, **overrides):
        out = {}
        for s in specs:
            kwargs = overrides.get(s.name, {})
            out[s.name] = FakeUnit(s, clock, **kwargs)
        return out

    return _build


@pytest.fixture
def fake_factory(clock):
    """Supervisor factory for the orchestrator; built units land in ``.built``."""

    class _Factory:
        def __init__(self):
            self.built = {}
            self.overrides = {}

        def __call__(self, spec, env):
            unit = FakeUnit(spec, clock, env=env, **self.overrides.get(spec.name, {}))
            self.built[spec.name] = unit
            return unit

    return _Factory()
