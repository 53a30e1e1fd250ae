from __future__ import annotations

import itertools
import json
import os
import re
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from string import Template
from threading import Lock
from typing import Any, Iterable, Mapping, Sequence

import httpx
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from starlette.types import Receive, Scope, Send

from .db import log_event, utc_now
from .models import MockPayload, RuleSpec, load_rules
from .settings import settings


HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}
FAULT_HEADER = "X-Gateway-Fault"


class NoMatch(Exception):
    def __init__(self, method: str, path: str):
        self.method = method
        self.path = path
        super().__init__(f"No routing rule matches {method} {path}")


@dataclass(frozen=True)
class RoutingRule:
    name: str
    method: str
    path: str
    priority: int
    order: int
    upstream: str | None = None
    mock: MockPayload | None = None
    _regex: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        pattern = "^" + ".*".join(re.escape(part) for part in self.path.split("*")) + "$"
        object.__setattr__(self, "_regex", re.compile(pattern))

    @property
    def disposition(self) -> str:
        return "proxy" if self.upstream is not None else "mock"

    @property
    def specificity(self) -> int:
        """Length of the literal prefix before the first wildcard."""
        idx = self.path.find("*")
        return len(self.path) if idx < 0 else idx

    def matches(self, method: str, path: str) -> bool:
        if self.method != "*" and self.method != method.upper():
            return False
        return self._regex.match(path) is not None

    def describe(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "method": self.method,
            "path": self.path,
            "priority": self.priority,
            "order": self.order,
            "disposition": self.disposition,
        }
        if self.upstream is not None:
            out["proxy_to"] = self.upstream
        else:
            out["mock"] = self.mock.model_dump() if self.mock else None
        return out


def rules_from_specs(specs: Iterable[RuleSpec]) -> tuple[RoutingRule, ...]:
    out = []
    for i, s in enumerate(specs):
        out.append(
            RoutingRule(
                name=s.name or f"rule-{i}",
                method=s.method,
                path=s.path,
                priority=s.priority,
                order=i,
                upstream=s.proxy_to,
                mock=s.mock,
            )
        )
    return tuple(out)


def resolve(rules: Sequence[RoutingRule], method: str, path: str) -> RoutingRule:
    """Pick exactly one rule for (method, path).

    Precedence: highest priority, then most specific path (longest literal
    prefix), then earliest declaration. Pure function over an immutable rule
    tuple, safe to call from any number of request threads.
    """
    candidates = [r for r in rules if r.matches(method, path)]
    if not candidates:
        raise NoMatch(method, path)
    return min(candidates, key=lambda r: (-r.priority, -r.specificity, r.order))


@dataclass(frozen=True)
class RuleSet:
    rules: tuple[RoutingRule, ...]
    version: int
    source: str
    loaded_at: str = field(default_factory=utc_now)


class RuleStore:
    """Holds the current RuleSet and swaps it atomically on reload.

    When backed by a file, every ``current()`` call checks the file's mtime so
    edits are seen by the next request without restarting anything. A file
    that fails to parse leaves the previous rule set in place.
    """

    def __init__(self, path: str | None = None, specs: Iterable[RuleSpec] | None = None):
        self.path = path
        self._lock = Lock()
        self._versions = itertools.count(1)
        self._mtime: int | None = None
        self._ruleset = RuleSet(rules=rules_from_specs(specs or []), version=next(self._versions), source="inline")
        if path:
            self._maybe_reload()

    def current(self) -> RuleSet:
        if self.path:
            self._maybe_reload()
        return self._ruleset

    def replace(self, specs: Iterable[RuleSpec], source: str = "api") -> RuleSet:
        new = RuleSet(rules=rules_from_specs(specs), version=next(self._versions), source=source)
        with self._lock:
            self._ruleset = new
        log_event("INFO", f"Routing rules replaced from {source} ({len(new.rules)} rules, v{new.version})")
        return new

    def _maybe_reload(self) -> None:
        if not self.path:
            return
        try:
            mtime = os.stat(self.path).st_mtime_ns
        except OSError:
            return
        if mtime == self._mtime:
            return
        with self._lock:
            if mtime == self._mtime:
                return
            self._mtime = mtime
            try:
                specs = load_rules(self.path)
            except (OSError, ValueError, ValidationError) as e:
                log_event("ERROR", f"Ignoring invalid rules file {self.path}: {e}")
                return
            self._ruleset = RuleSet(rules=rules_from_specs(specs), version=next(self._versions), source=self.path)
        log_event("INFO", f"Loaded {len(self._ruleset.rules)} routing rules from {self.path} (v{self._ruleset.version})")


@dataclass
class JournalEntry:
    id: int
    ts: str
    method: str
    path: str
    query: str
    rule: str | None
    disposition: str | None
    outcome: str  # HTTP status as text, or a fault name
    status: int
    upstream: str | None = None
    latency_ms: float | None = None


class RequestJournal:
    """Bounded in-memory record of handled calls; oldest evicted first."""

    def __init__(self, size: int | None = None):
        self._entries: deque[JournalEntry] = deque(maxlen=max(1, size or settings.journal_size))
        self._lock = Lock()
        self._ids = itertools.count(1)

    def record(self, **fields: Any) -> JournalEntry:
        with self._lock:
            entry = JournalEntry(id=next(self._ids), ts=utc_now(), **fields)
            self._entries.append(entry)
        return entry

    def query(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._entries)
        return [asdict(e) for e in reversed(items)][: max(0, limit)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class Gateway:
    def __init__(
        self,
        store: RuleStore,
        journal: RequestJournal | None = None,
        upstreams: Mapping[str, str] | None = None,
        timeout_s: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.store = store
        self.journal = journal or RequestJournal()
        self.upstreams = dict(upstreams or {})
        self.timeout_s = timeout_s or settings.gateway_timeout_s
        self.client = httpx.Client(timeout=self.timeout_s, follow_redirects=False, transport=transport)

    def close(self) -> None:
        self.client.close()

    def upstream_base(self, target: str) -> str | None:
        """A proxy target is either a unit name from the stack or an absolute URL."""
        if target in self.upstreams:
            return self.upstreams[target]
        if target.startswith(("http://", "https://")):
            return target
        return None

    def _fault(self, fault: str, status: int, method: str, path: str, detail: str) -> JSONResponse:
        return JSONResponse(
            {"fault": fault, "method": method, "path": path, "detail": detail},
            status_code=status,
            headers={FAULT_HEADER: fault},
        )

    def handle(
        self,
        method: str,
        path: str,
        query: str = "",
        headers: Sequence[tuple[bytes, bytes]] = (),
        body: bytes = b"",
    ) -> Response:
        start = time.time()
        ruleset = self.store.current()
        try:
            rule = resolve(ruleset.rules, method, path)
        except NoMatch as e:
            self.journal.record(
                method=method, path=path, query=query, rule=None, disposition=None, outcome="NoMatch", status=404
            )
            return self._fault("NoMatch", 404, method, path, str(e))

        if rule.mock is not None:
            resp = self._mock(rule.mock, method, path, query)
            resp.headers["X-Gateway-Rule"] = rule.name
            self.journal.record(
                method=method,
                path=path,
                query=query,
                rule=rule.name,
                disposition="mock",
                outcome=str(resp.status_code),
                status=resp.status_code,
                latency_ms=round((time.time() - start) * 1000.0, 2),
            )
            return resp
        return self._proxy(rule, method, path, query, headers, body, start)

    def _mock(self, payload: MockPayload, method: str, path: str, query: str) -> Response:
        headers = dict(payload.headers)
        body = payload.body
        if body is None:
            content = b""
        elif isinstance(body, str):
            content = Template(body).safe_substitute(method=method, path=path, query=query).encode("utf-8")
        else:
            content = json.dumps(body).encode("utf-8")
            if not any(k.lower() == "content-type" for k in headers):
                headers["content-type"] = "application/json"
        return Response(content=content, status_code=payload.status, headers=headers)

    def _proxy(
        self,
        rule: RoutingRule,
        method: str,
        path: str,
        query: str,
        headers: Sequence[tuple[bytes, bytes]],
        body: bytes,
        start: float,
    ) -> Response:
        def record(outcome: str, status: int, upstream: str | None) -> None:
            self.journal.record(
                method=method,
                path=path,
                query=query,
                rule=rule.name,
                disposition="proxy",
                outcome=outcome,
                status=status,
                upstream=upstream,
                latency_ms=round((time.time() - start) * 1000.0, 2),
            )

        base = self.upstream_base(str(rule.upstream))
        if base is None:
            record("UpstreamUnavailable", 502, rule.upstream)
            return self._fault("UpstreamUnavailable", 502, method, path, f"Unknown upstream '{rule.upstream}'")

        url = base.rstrip("/") + path + (f"?{query}" if query else "")
        fwd = [(k, v) for k, v in headers if k.decode("latin-1").lower() not in HOP_BY_HOP | {"host", "content-length"}]
        request = self.client.build_request(method, url, headers=fwd, content=body)
        try:
            upstream = self.client.send(request, stream=True)
        except httpx.TimeoutException as e:
            record("GatewayTimeout", 504, base)
            return self._fault("GatewayTimeout", 504, method, path, f"{base} did not answer in {self.timeout_s}s: {e}")
        except httpx.HTTPError as e:
            record("UpstreamUnavailable", 502, base)
            return self._fault("UpstreamUnavailable", 502, method, path, f"{base}: {type(e).__name__}: {e}")

        record(str(upstream.status_code), upstream.status_code, base)
        out = StreamingResponse(
            upstream.iter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.close),
        )
        out.raw_headers = [(k.lower(), v) for k, v in upstream.headers.raw if k.decode("latin-1").lower() not in HOP_BY_HOP]
        return out


class _Intercept:
    """Catch-all ASGI endpoint, mounted without a method list so every verb
    (TRACE and custom ones included) reaches the rules and the journal."""

    def __init__(self, gateway: Gateway):
        self.gateway = gateway

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        body = await request.body()
        response = await run_in_threadpool(
            self.gateway.handle,
            request.method,
            request.url.path,
            request.url.query,
            request.headers.raw,
            body,
        )
        await response(scope, receive, send)


def create_gateway_app(gateway: Gateway) -> FastAPI:
    app = FastAPI(title="LSO mock/proxy gateway")

    @app.get("/__gateway/health")
    def health() -> dict[str, Any]:
        rs = gateway.store.current()
        return {"status": "healthy", "rules": len(rs.rules), "version": rs.version}

    @app.get("/__gateway/rules")
    def list_rules() -> dict[str, Any]:
        rs = gateway.store.current()
        return {
            "version": rs.version,
            "source": rs.source,
            "loaded_at": rs.loaded_at,
            "rules": [r.describe() for r in rs.rules],
        }

    @app.put("/__gateway/rules")
    def put_rules(specs: list[RuleSpec] = Body(...)) -> dict[str, Any]:
        rs = gateway.store.replace(specs)
        return {"version": rs.version, "rules": len(rs.rules)}

    @app.get("/__gateway/journal")
    def journal(limit: int = 100) -> list[dict[str, Any]]:
        if limit < 0:
            raise HTTPException(status_code=400, detail="limit must be >= 0")
        return gateway.journal.query(limit)

    # Registered last so the admin routes above take precedence.
    app.add_route("/{full_path:path}", _Intercept(gateway), include_in_schema=False)

    @app.on_event("shutdown")
    def _close() -> None:
        gateway.close()

    return app


def build_gateway(rules_file: str | None = None, upstreams: Mapping[str, str] | None = None) -> Gateway:
    path = rules_file or settings.rules_file
    if not os.path.exists(path):
        log_event("WARN", f"Rules file {path} not found; every call is NoMatch until it is created")
    store = RuleStore(path=path)
    return Gateway(store, RequestJournal(settings.journal_size), upstreams=upstreams)
