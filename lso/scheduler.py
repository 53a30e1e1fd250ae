from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from threading import Event, Thread
from typing import Mapping, Sequence

from . import db
from .graph import dependents_map, shutdown_order, validate_graph
from .models import UnitSpec
from .runtime import IN_FLIGHT_STATES, LIVE_STATES, ProbeSnapshot, RuntimeState, UnitState
from .settings import settings
from .supervisor import LaunchError, Supervisor


class Scheduler:
    """Starts units in dependency order, gating each on its dependencies' readiness.

    This is a layered topological execution driven by observed state rather
    than a one-shot sort: a dispatch thread starts every Pending unit whose
    dependencies are all Ready, a bounded worker pool launches units and polls
    their readiness probes, and a watch thread re-probes running units to
    detect exits and probe failures.

    Recovery policy: a unit degraded only because of its dependencies is
    promoted back to Ready once all of them are Ready again. A unit degraded
    by its own probe is promoted when the probe succeeds again. A unit whose
    process exited stays Degraded until the operator restarts it.
    """

    def __init__(
        self,
        units: Sequence[UnitSpec],
        supervisors: Mapping[str, Supervisor],
        max_concurrency: int | None = None,
        watch_interval_s: float | None = None,
        stop_grace_s: float | None = None,
    ):
        # Graph errors are fatal and raised before any state exists.
        self.deps = validate_graph(units)
        self.specs = {u.name: u for u in units}
        missing = [n for n in self.specs if n not in supervisors]
        if missing:
            raise ValueError(f"No supervisor for unit(s): {', '.join(missing)}")
        self.supervisors = dict(supervisors)
        self.dependents = dependents_map(self.deps)
        self.runtime = RuntimeState(self.specs)

        limit = settings.max_concurrency if max_concurrency is None else max_concurrency
        self.max_concurrency = max(0, int(limit))
        self.watch_interval_s = settings.watch_interval_s if watch_interval_s is None else watch_interval_s
        self.stop_grace_s = settings.stop_grace_s if stop_grace_s is None else stop_grace_s

        self._cancel = Event()
        self._pool = ThreadPoolExecutor(
            max_workers=self.max_concurrency or max(1, len(self.specs)), thread_name_prefix="lso-start"
        )
        self._in_flight: set[str] = set()
        self._blocked: dict[str, str] = {}
        self._dispatcher: Thread | None = None
        self._watcher: Thread | None = None

    # -- public API -------------------------------------------------------

    def run(self) -> None:
        """Begin scheduling in the background. Returns immediately."""
        if self._dispatcher and self._dispatcher.is_alive():
            return
        db.log_event("INFO", f"Scheduler started ({len(self.specs)} units, max_concurrency={self.max_concurrency or 'unbounded'})")
        self._dispatcher = Thread(target=self._dispatch_loop, name="lso-dispatch", daemon=True)
        self._dispatcher.start()
        if self.watch_interval_s > 0:
            self._watcher = Thread(target=self._watch_loop, name="lso-watch", daemon=True)
            self._watcher.start()

    def block(self, name: str, reason: str) -> None:
        """Keep a unit Pending (e.g. its configuration could not be produced)."""
        with self.runtime.cond:
            self._blocked[name] = reason
            self.runtime.update(name, blocked_reason=reason)
        db.log_event("ERROR", f"Blocked: {reason}", unit_name=name)

    def unblock(self, name: str) -> None:
        with self.runtime.cond:
            self._blocked.pop(name, None)
            self.runtime.update(name, blocked_reason=None)

    def status(self) -> list[dict]:
        return self.runtime.snapshot()

    def state_of(self, name: str) -> UnitState:
        return self.runtime.state_of(name)

    def wait_settled(self, timeout: float | None = None) -> bool:
        """Block until nothing is starting and nothing more can start."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self.runtime.cond:
            while not self._settled():
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self.runtime.cond.wait(timeout=0.5 if remaining is None else min(0.5, remaining))
            return True

    def wait_for(self, name: str, states: set[UnitState], timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        with self.runtime.cond:
            while self.runtime.units[name].state not in states:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self.runtime.cond.wait(timeout=min(0.5, remaining))
            return True

    def restart(self, name: str) -> None:
        """Operator restart of one unit.

        Direct dependents that are Ready are flagged Degraded but left running;
        nothing is restarted in cascade.
        """
        if name not in self.specs:
            raise KeyError(name)
        with self.runtime.cond:
            if name in self._in_flight:
                raise RuntimeError(f"Unit '{name}' is already starting")
            self._in_flight.add(name)
            for d in self.dependents[name]:
                self._degrade_dependent(d, cause=name)
        db.log_event("INFO", "Restart requested", unit_name=name)
        try:
            self.supervisors[name].stop(self.stop_grace_s)
        finally:
            with self.runtime.cond:
                self.runtime.transition(
                    name,
                    UnitState.PENDING,
                    detail="restart",
                    attempts=0,
                    error=None,
                    exited=False,
                    self_degraded=False,
                    degraded_by=set(),
                )
                self._in_flight.discard(name)

    def check_units(self) -> None:
        """One watch pass over Ready/Degraded units."""
        for name in self.specs:
            with self.runtime.cond:
                u = self.runtime.units[name]
                if u.state not in (UnitState.READY, UnitState.DEGRADED) or name in self._in_flight or u.exited:
                    continue
            sup = self.supervisors[name]
            if not sup.is_running():
                self._mark_exited(name, sup.exit_code())
                continue
            ok, msg, latency = sup.probe()
            self.runtime.update(name, last_probe=ProbeSnapshot(ok, msg, latency))
            if ok:
                self._probe_recovered(name)
            else:
                self._probe_failed(name, msg)

    def shutdown(self, grace_s: float | None = None) -> None:
        """Stop issuing starts, then stop live units dependents-first."""
        grace_s = self.stop_grace_s if grace_s is None else grace_s
        self._cancel.set()
        self.runtime.notify()
        for t in (self._dispatcher, self._watcher):
            if t is not None:
                t.join(timeout=5)
        self._pool.shutdown(wait=True, cancel_futures=True)

        for name in shutdown_order(self.deps):
            state = self.runtime.state_of(name)
            if state not in LIVE_STATES and not self.supervisors[name].is_running():
                continue
            try:
                self.supervisors[name].stop(grace_s)
            finally:
                self.runtime.transition(name, UnitState.STOPPED, detail="shutdown")
        db.log_event("INFO", "Scheduler stopped")

    # -- dispatch ---------------------------------------------------------

    def _eligible(self) -> list[str]:
        units = self.runtime.units
        out = []
        for name, u in units.items():
            if u.state != UnitState.PENDING or name in self._in_flight or name in self._blocked:
                continue
            if all(units[d].state == UnitState.READY for d in self.deps[name]):
                out.append(name)
        return out

    def _settled(self) -> bool:
        if self._in_flight:
            return False
        if any(u.state in IN_FLIGHT_STATES for u in self.runtime.units.values()):
            return False
        return not self._eligible()

    def _capacity(self) -> int:
        if not self.max_concurrency:
            return len(self.specs)
        return self.max_concurrency - len(self._in_flight)

    def _dispatch_loop(self) -> None:
        while not self._cancel.is_set():
            try:
                with self.runtime.cond:
                    batch = self._eligible()[: max(0, self._capacity())]
                    if not batch:
                        self.runtime.cond.wait(timeout=0.5)
                        continue
                    for name in batch:
                        self._in_flight.add(name)
                        self.runtime.transition(name, UnitState.STARTING, detail="dependencies ready")
                for name in batch:
                    self._pool.submit(self._launch, name)
            except RuntimeError as e:
                # Pool already shut down while we were dispatching.
                if self._cancel.is_set():
                    return
                db.log_event("ERROR", f"Dispatch failed: {e}")

    def _launch(self, name: str) -> None:
        sup = self.supervisors[name]
        try:
            db.log_event("INFO", f"Starting {sup.kind} unit", unit_name=name)
            try:
                sup.start()
            except LaunchError as e:
                self._fail(name, e.diagnostics(), stop=False)
                return
            if self._cancel.is_set():
                return
            self.runtime.transition(name, UnitState.AWAITING_READY, detail="launched")
            self._await_ready(name, sup)
        except Exception as e:
            self._fail(name, f"{type(e).__name__}: {e}", stop=True)
        finally:
            with self.runtime.cond:
                self._in_flight.discard(name)
                self.runtime.cond.notify_all()

    def _await_ready(self, name: str, sup: Supervisor) -> None:
        probe = self.specs[name].probe
        successes = 0
        msg = "no probe run"
        for attempt in range(1, probe.max_attempts + 1):
            if self._cancel.is_set():
                return
            if not sup.is_running():
                self._fail(name, f"Exited with code {sup.exit_code()} before becoming ready", stop=True)
                return
            ok, msg, latency = sup.probe()
            self.runtime.update(name, attempts=attempt, last_probe=ProbeSnapshot(ok, msg, latency))
            if ok:
                successes += 1
                if successes >= probe.success_threshold:
                    self._mark_ready(name, detail=f"probe ok after {attempt} attempt(s)")
                    return
            else:
                successes = 0
            if self._cancel.wait(probe.interval_s):
                return
        self._fail(name, f"Not ready after {probe.max_attempts} attempts: {msg}", stop=True)

    def _fail(self, name: str, error: str, stop: bool) -> None:
        self.runtime.transition(name, UnitState.FAILED, detail=error, error=error)
        db.log_event("ERROR", f"Failed: {error}", unit_name=name)
        blocked = [d for d in self.dependents[name] if self.runtime.state_of(d) == UnitState.PENDING]
        if blocked:
            db.log_event("WARN", f"Dependents stay Pending: {', '.join(blocked)}", unit_name=name)
        if stop:
            self.supervisors[name].stop(self.stop_grace_s)

    # -- readiness bookkeeping --------------------------------------------

    def _mark_ready(self, name: str, detail: str) -> None:
        with self.runtime.cond:
            self.runtime.transition(name, UnitState.READY, detail=detail, error=None)
            for d in self.dependents[name]:
                du = self.runtime.units[d]
                if name not in du.degraded_by:
                    continue
                du.degraded_by.discard(name)
                if du.state == UnitState.DEGRADED and not du.degraded_by and not du.self_degraded:
                    self._mark_ready(d, detail=f"dependency {name} ready again")
        db.log_event("INFO", f"Ready ({detail})", unit_name=name)

    def _degrade_dependent(self, name: str, cause: str) -> None:
        with self.runtime.cond:
            u = self.runtime.units[name]
            if u.state not in (UnitState.READY, UnitState.DEGRADED):
                return
            u.degraded_by.add(cause)
            if u.state == UnitState.READY:
                self.runtime.transition(name, UnitState.DEGRADED, detail=f"dependency {cause} unavailable")
                db.log_event("WARN", f"Degraded: dependency {cause} unavailable", unit_name=name)

    def _mark_exited(self, name: str, code: int | None) -> None:
        with self.runtime.cond:
            u = self.runtime.units[name]
            if u.state not in (UnitState.READY, UnitState.DEGRADED) or u.exited or name in self._in_flight:
                return
            err = f"Exited unexpectedly with code {code}"
            self.runtime.transition(name, UnitState.DEGRADED, detail=err, exited=True, self_degraded=True, error=err)
            # One hop only: dependents of dependents are left alone.
            for d in self.dependents[name]:
                self._degrade_dependent(d, cause=name)
        db.log_event("ERROR", err, unit_name=name)

    def _probe_failed(self, name: str, msg: str) -> None:
        with self.runtime.cond:
            u = self.runtime.units[name]
            if u.state not in (UnitState.READY, UnitState.DEGRADED) or u.self_degraded or name in self._in_flight:
                return
            u.self_degraded = True
            if u.state == UnitState.READY:
                self.runtime.transition(name, UnitState.DEGRADED, detail=f"probe failed: {msg}")
        db.log_event("WARN", f"Probe failed while running: {msg}", unit_name=name)

    def _probe_recovered(self, name: str) -> None:
        with self.runtime.cond:
            u = self.runtime.units[name]
            if not u.self_degraded or u.exited:
                return
            u.self_degraded = False
            if u.state == UnitState.DEGRADED and not u.degraded_by:
                self._mark_ready(name, detail="probe recovered")

    def _watch_loop(self) -> None:
        while not self._cancel.wait(self.watch_interval_s):
            try:
                self.check_units()
            except Exception as e:
                db.log_event("ERROR", f"Watch pass failed: {type(e).__name__}: {e}")
