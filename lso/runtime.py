from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from threading import Condition
from typing import Any, Iterable

from . import db
from .db import utc_now


class UnitState(str, Enum):
    PENDING = "Pending"
    STARTING = "Starting"
    AWAITING_READY = "AwaitingReady"
    READY = "Ready"
    DEGRADED = "Degraded"
    STOPPED = "Stopped"
    FAILED = "Failed"


LIVE_STATES = {UnitState.STARTING, UnitState.AWAITING_READY, UnitState.READY, UnitState.DEGRADED}
IN_FLIGHT_STATES = {UnitState.STARTING, UnitState.AWAITING_READY}


@dataclass
class ProbeSnapshot:
    ok: bool
    message: str
    latency_ms: float | None
    ts: str = field(default_factory=utc_now)


@dataclass
class UnitStatus:
    name: str
    state: UnitState = UnitState.PENDING
    attempts: int = 0
    error: str | None = None
    last_probe: ProbeSnapshot | None = None
    started_at: str | None = None
    ever_ready_at: str | None = None
    degraded_by: set[str] = field(default_factory=set)  # dependency names
    self_degraded: bool = False
    exited: bool = False
    blocked_reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "attempts": self.attempts,
            "error": self.error,
            "last_probe": None
            if self.last_probe is None
            else {
                "ok": self.last_probe.ok,
                "message": self.last_probe.message,
                "latency_ms": self.last_probe.latency_ms,
                "ts": self.last_probe.ts,
            },
            "started_at": self.started_at,
            "ever_ready_at": self.ever_ready_at,
            "degraded_by": sorted(self.degraded_by),
            "self_degraded": self.self_degraded,
            "exited": self.exited,
            "blocked_reason": self.blocked_reason,
        }


class RuntimeState:
    """Lock-guarded lifecycle state of every unit.

    All reads and writes go through the condition's lock; ``wait_for`` lets
    the scheduler sleep until some unit changes state.
    """

    def __init__(self, names: Iterable[str]) -> None:
        self.cond = Condition()
        self.units: dict[str, UnitStatus] = {n: UnitStatus(name=n) for n in names}

    def get(self, name: str) -> UnitStatus:
        with self.cond:
            return self.units[name]

    def state_of(self, name: str) -> UnitState:
        with self.cond:
            return self.units[name].state

    def snapshot(self) -> list[dict[str, Any]]:
        with self.cond:
            return [u.as_dict() for u in self.units.values()]

    def transition(self, name: str, new: UnitState, detail: str | None = None, **changes: Any) -> UnitState:
        """Move a unit to ``new``, apply attribute changes, wake waiters.

        Returns the previous state.
        """
        with self.cond:
            u = self.units[name]
            prev = u.state
            u.state = new
            for k, v in changes.items():
                setattr(u, k, v)
            if new == UnitState.STARTING:
                u.started_at = utc_now()
            if new == UnitState.READY and u.ever_ready_at is None:
                u.ever_ready_at = utc_now()
            self.cond.notify_all()
        if prev != new:
            db.record_transition(name, prev.value, new.value, detail)
        return prev

    def update(self, name: str, **changes: Any) -> None:
        with self.cond:
            u = self.units[name]
            for k, v in changes.items():
                setattr(u, k, v)
            self.cond.notify_all()

    def notify(self) -> None:
        with self.cond:
            self.cond.notify_all()
