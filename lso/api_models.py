from __future__ import annotations

from pydantic import BaseModel, Field


class ProbeOut(BaseModel):
    ok: bool
    message: str
    latency_ms: float | None = None
    ts: str


class UnitStatusOut(BaseModel):
    name: str
    kind: str
    state: str = Field(..., description="Pending|Starting|AwaitingReady|Ready|Degraded|Stopped|Failed")
    depends_on: list[str] = Field(default_factory=list)
    url: str | None = None
    attempts: int = 0
    error: str | None = None
    last_probe: ProbeOut | None = None
    started_at: str | None = None
    ever_ready_at: str | None = None
    degraded_by: list[str] = Field(default_factory=list)
    self_degraded: bool = False
    exited: bool = False
    blocked_reason: str | None = None
    logs_dropped: int = 0


class JournalEntryOut(BaseModel):
    id: int
    ts: str
    method: str
    path: str
    query: str = ""
    rule: str | None = None
    disposition: str | None = Field(None, description="proxy|mock, or null when no rule matched")
    outcome: str = Field(..., description="Upstream/mock status code, or NoMatch|GatewayTimeout|UpstreamUnavailable")
    status: int
    upstream: str | None = None
    latency_ms: float | None = None


class LogTailOut(BaseModel):
    unit: str
    lines: list[str]
    dropped: int = 0


class RefreshRequest(BaseModel):
    bundles: list[str] | None = Field(None, description="Bundle names; all bundles when omitted")


class BundleResultOut(BaseModel):
    name: str
    ok: bool
    destination: str
    error: str | None = None
