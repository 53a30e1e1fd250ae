import pytest

from lso.graph import GraphCycleError
from lso.models import ProbeSpec, UnitSpec
from lso.runtime import UnitState
from lso.scheduler import Scheduler


def _unit(name, deps=(), interval=0.02, max_attempts=500, threshold=1):
    return UnitSpec(
        name=name,
        kind="process",
        command=["true"],
        depends_on=list(deps),
        probe=ProbeSpec(protocol="none", interval_s=interval, max_attempts=max_attempts, success_threshold=threshold),
    )


def _scheduler(specs, sups, **kwargs):
    kwargs.setdefault("max_concurrency", 0)
    kwargs.setdefault("watch_interval_s", 0)
    kwargs.setdefault("stop_grace_s", 0.1)
    return Scheduler(specs, sups, **kwargs)


@pytest.fixture
def chain(fake_units):
    """db <- api <- ui"""
    specs = [_unit("db"), _unit("api", ["db"]), _unit("ui", ["api"])]
    sups = fake_units(specs, db={"ready_after": 0.2}, api={"ready_after": 0.3}, ui={"ready_after": 0.2})
    sched = _scheduler(specs, sups)
    yield sched, sups
    sched.shutdown(grace_s=0.1)


def test_start_waits_for_dependency_readiness(chain):
    sched, sups = chain
    sched.run()
    assert sched.wait_settled(timeout=10)

    assert [sched.state_of(n) for n in ("db", "api", "ui")] == [UnitState.READY] * 3
    assert sups["api"].started_at >= sups["db"].ready_at
    assert sups["ui"].started_at >= sups["api"].ready_at


def test_start_order_respects_every_dependency(fake_units):
    specs = [
        _unit("db"),
        _unit("cache"),
        _unit("queue"),
        _unit("gateway"),
        _unit("api", ["db", "cache", "queue", "gateway"]),
        _unit("worker", ["queue", "db"]),
        _unit("ui-a", ["api"]),
        _unit("ui-b", ["api", "worker"]),
    ]
    delays = {"db": 0.15, "cache": 0.05, "queue": 0.1, "gateway": 0.02, "api": 0.1, "worker": 0.05}
    sups = fake_units(specs, **{k: {"ready_after": v} for k, v in delays.items()})
    sched = _scheduler(specs, sups)
    try:
        sched.run()
        assert sched.wait_settled(timeout=10)
        for s in specs:
            assert sched.state_of(s.name) == UnitState.READY
            for d in s.depends_on:
                assert sups[s.name].started_at >= sups[d].ready_at, f"{s.name} started before {d} was ready"
    finally:
        sched.shutdown(grace_s=0.1)


def test_cycle_fails_validation_and_starts_nothing(fake_units):
    specs = [_unit("a", ["c"]), _unit("b", ["a"]), _unit("c", ["b"]), _unit("free")]
    sups = fake_units(specs)
    with pytest.raises(GraphCycleError) as exc:
        _scheduler(specs, sups)
    assert set(exc.value.cycle) == {"a", "b", "c"}
    assert exc.value.cycle[0] == exc.value.cycle[-1]
    assert all(s.start_count == 0 for s in sups.values())


def test_launch_failure_is_terminal_and_blocks_dependents(fake_units):
    specs = [_unit("db"), _unit("api", ["db"]), _unit("ui", ["api"])]
    sups = fake_units(specs, db={"fail_launch": True})
    sched = _scheduler(specs, sups)
    try:
        sched.run()
        assert sched.wait_settled(timeout=5)
        db = sched.runtime.get("db")
        assert db.state == UnitState.FAILED
        assert "exit code 2" in db.error
        assert "bad config" in db.error
        assert sched.state_of("api") == UnitState.PENDING
        assert sched.state_of("ui") == UnitState.PENDING
        assert sups["api"].start_count == 0
        assert sups["db"].start_count == 1  # never retried by the scheduler
    finally:
        sched.shutdown(grace_s=0.1)


def test_max_attempts_exhausted_marks_failed_and_stops_unit(fake_units):
    specs = [_unit("db", max_attempts=5), _unit("api", ["db"])]
    sups = fake_units(specs, db={"ready_after": None})
    sched = _scheduler(specs, sups)
    try:
        sched.run()
        assert sched.wait_settled(timeout=5)
        db = sched.runtime.get("db")
        assert db.state == UnitState.FAILED
        assert db.attempts == 5
        assert db.ever_ready_at is None
        assert sups["db"].running is False
        assert sched.state_of("api") == UnitState.PENDING
    finally:
        sched.shutdown(grace_s=0.1)


def test_success_threshold_requires_consecutive_successes(fake_units):
    specs = [_unit("db", threshold=3)]
    sups = fake_units(specs)
    sched = _scheduler(specs, sups)
    try:
        sched.run()
        assert sched.wait_settled(timeout=5)
        assert sched.state_of("db") == UnitState.READY
        assert sched.runtime.get("db").attempts == 3
    finally:
        sched.shutdown(grace_s=0.1)


def test_exit_while_ready_degrades_one_hop(chain):
    sched, sups = chain
    sched.run()
    assert sched.wait_settled(timeout=10)

    sups["db"].crash(code=137)
    sched.check_units()

    db = sched.runtime.get("db")
    assert db.state == UnitState.DEGRADED
    assert db.exited is True
    assert "137" in db.error
    assert sched.state_of("api") == UnitState.DEGRADED
    assert sched.runtime.get("api").degraded_by == {"db"}
    assert sched.state_of("ui") == UnitState.READY
    # Nothing is restarted or stopped automatically.
    assert sups["db"].start_count == 1
    assert sups["api"].stop_count == 0

    # An exited unit does not recover by itself.
    sched.check_units()
    assert sched.state_of("db") == UnitState.DEGRADED


def test_restart_degrades_direct_dependents_without_stopping_them(chain):
    sched, sups = chain
    sched.run()
    assert sched.wait_settled(timeout=10)

    sups["db"].ready_after = 0.3
    sched.restart("db")

    assert sched.state_of("api") == UnitState.DEGRADED
    assert sups["api"].running is True
    assert sups["api"].stop_count == 0
    assert sched.state_of("ui") == UnitState.READY

    assert sched.wait_for("db", {UnitState.READY}, timeout=5)
    assert sups["db"].start_count == 2
    # Dependency is back: the dependent is promoted without being restarted.
    assert sched.wait_for("api", {UnitState.READY}, timeout=5)
    assert sups["api"].start_count == 1
    assert sched.runtime.get("api").degraded_by == set()


def test_restart_after_exit_recovers_dependents(chain):
    sched, sups = chain
    sched.run()
    assert sched.wait_settled(timeout=10)

    sups["db"].crash()
    sched.check_units()
    assert sched.state_of("api") == UnitState.DEGRADED

    sched.restart("db")
    assert sched.wait_for("api", {UnitState.READY}, timeout=5)
    db = sched.runtime.get("db")
    assert db.state == UnitState.READY
    assert db.exited is False


def test_probe_failure_degrades_unit_only_and_recovers(chain):
    sched, sups = chain
    sched.run()
    assert sched.wait_settled(timeout=10)

    sups["api"].probe_ok = False
    sched.check_units()
    assert sched.state_of("api") == UnitState.DEGRADED
    assert sched.state_of("ui") == UnitState.READY
    assert sched.runtime.get("api").last_probe.ok is False

    sups["api"].probe_ok = True
    sched.check_units()
    assert sched.state_of("api") == UnitState.READY


def test_dependent_waits_for_both_causes_before_promotion(fake_units):
    specs = [_unit("db"), _unit("cache"), _unit("api", ["db", "cache"])]
    sups = fake_units(specs)
    sched = _scheduler(specs, sups)
    try:
        sched.run()
        assert sched.wait_settled(timeout=5)
        sups["db"].crash()
        sups["cache"].crash()
        sched.check_units()
        assert sched.runtime.get("api").degraded_by == {"db", "cache"}

        sched.restart("db")
        assert sched.wait_for("db", {UnitState.READY}, timeout=5)
        assert sched.state_of("api") == UnitState.DEGRADED

        sched.restart("cache")
        assert sched.wait_for("api", {UnitState.READY}, timeout=5)
    finally:
        sched.shutdown(grace_s=0.1)


def test_blocked_unit_stays_pending_until_unblocked(chain):
    sched, sups = chain
    sched.block("api", "secret bundle(s) unresolved: db-credentials")
    sched.run()
    assert sched.wait_settled(timeout=5)

    assert sched.state_of("db") == UnitState.READY
    assert sched.state_of("api") == UnitState.PENDING
    assert sched.state_of("ui") == UnitState.PENDING
    assert sched.runtime.get("api").blocked_reason.startswith("secret bundle")
    assert sups["api"].start_count == 0

    sched.unblock("api")
    assert sched.wait_for("ui", {UnitState.READY}, timeout=5)


def test_concurrency_limit_bounds_parallel_starts(fake_units):
    specs = [_unit(f"svc-{i}") for i in range(4)]
    sups = fake_units(specs, **{s.name: {"ready_after": 0.2} for s in specs})
    sched = _scheduler(specs, sups, max_concurrency=2)
    try:
        sched.run()
        assert sched.wait_settled(timeout=10)
        starts = sorted(s.started_at for s in sups.values())
        first_ready = min(s.ready_at for s in sups.values())
        assert starts[2] >= first_ready
    finally:
        sched.shutdown(grace_s=0.1)


def test_shutdown_stops_dependents_before_dependencies(fake_units, clock):
    stop_log = []
    specs = [_unit("db"), _unit("cache"), _unit("api", ["db", "cache"]), _unit("ui", ["api"])]
    sups = fake_units(specs, **{s.name: {"stop_log": stop_log} for s in specs})
    sched = _scheduler(specs, sups)
    sched.run()
    assert sched.wait_settled(timeout=5)

    sched.shutdown(grace_s=0.1)

    assert stop_log.index("ui") < stop_log.index("api")
    assert stop_log.index("api") < stop_log.index("db")
    assert stop_log.index("api") < stop_log.index("cache")
    assert all(sched.state_of(s.name) == UnitState.STOPPED for s in specs)


def test_restart_rejects_unknown_unit(chain):
    sched, _ = chain
    with pytest.raises(KeyError):
        sched.restart("nope")


def test_exit_seen_while_restart_is_stopping_the_unit_is_ignored(chain):
    sched, sups = chain
    sched.run()
    assert sched.wait_settled(timeout=10)

    def stopped_by_restart():
        # The restart claims the unit and stops it between the watch pass's
        # state read and its liveness check.
        sched._in_flight.add("db")
        sups["db"].running = False
        return False

    sups["db"].is_running = stopped_by_restart
    try:
        sched.check_units()
    finally:
        sched._in_flight.discard("db")
        del sups["db"].is_running

    db = sched.runtime.get("db")
    assert db.state == UnitState.READY
    assert db.exited is False
    assert sched.state_of("api") == UnitState.READY


def test_probe_failure_seen_while_restart_is_in_flight_is_ignored(chain):
    sched, sups = chain
    sched.run()
    assert sched.wait_settled(timeout=10)

    def probe_during_restart():
        sched._in_flight.add("api")
        return False, "connection refused", None

    sups["api"].probe = probe_during_restart
    try:
        sched.check_units()
    finally:
        sched._in_flight.discard("api")
        del sups["api"].probe

    assert sched.state_of("api") == UnitState.READY
    assert sched.runtime.get("api").self_degraded is False
