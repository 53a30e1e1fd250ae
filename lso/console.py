"""Operator console: read-only views of units, logs (snapshot or followed
stream) and the gateway journal.

Operator actions (restart, secret refresh) live on a separate control router
so the console views never drive the stack.
"""
from __future__ import annotations

import html
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse, StreamingResponse

from . import db
from .api_models import BundleResultOut, JournalEntryOut, LogTailOut, RefreshRequest, UnitStatusOut
from .orchestrator import GatewayUnreachable, Orchestrator


STATE_COLORS = {
    "Pending": "#94a3b8",
    "Starting": "#60a5fa",
    "AwaitingReady": "#facc15",
    "Ready": "#4ade80",
    "Degraded": "#fb923c",
    "Stopped": "#64748b",
    "Failed": "#f87171",
}


def _status_or_503(orch: Orchestrator) -> list[dict[str, Any]]:
    try:
        return orch.status()
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e


def console_router(orch: Orchestrator) -> APIRouter:
    r = APIRouter()

    @r.get("/status", response_model=list[UnitStatusOut])
    def status() -> list[dict[str, Any]]:
        return _status_or_503(orch)

    @r.get("/units/{name}/logs", response_model=LogTailOut)
    def logs(name: str, tail: int = Query(100, ge=0, le=10000)) -> dict[str, Any]:
        if name not in orch.units:
            raise HTTPException(status_code=404, detail=f"Unknown unit '{name}'")
        try:
            lines = orch.logs(name, tail)
        except RuntimeError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        sup = orch.scheduler.supervisors[name] if orch.scheduler else None
        return {"unit": name, "lines": lines, "dropped": sup.logs.dropped if sup else 0}

    @r.get("/units/{name}/logs/stream")
    def logs_stream(name: str, tail: int = Query(100, ge=0, le=10000)) -> StreamingResponse:
        if name not in orch.units:
            raise HTTPException(status_code=404, detail=f"Unknown unit '{name}'")
        try:
            lines = orch.follow_logs(name, tail)
        except RuntimeError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        return StreamingResponse((f"{line}\n" for line in lines), media_type="text/plain; charset=utf-8")

    @r.get("/units/{name}/history")
    def history(name: str, limit: int = Query(50, ge=1, le=1000)) -> list[dict[str, Any]]:
        if name not in orch.units:
            raise HTTPException(status_code=404, detail=f"Unknown unit '{name}'")
        return db.unit_history(name, limit)

    @r.get("/journal", response_model=list[JournalEntryOut])
    def journal(limit: int = Query(100, ge=0, le=10000)) -> list[dict[str, Any]]:
        try:
            return orch.journal(limit)
        except GatewayUnreachable as e:
            raise HTTPException(status_code=503, detail=str(e)) from e

    @r.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), unit: str | None = None) -> list[dict[str, Any]]:
        return db.latest_events(limit, unit_name=unit)

    @r.get("/", response_class=HTMLResponse)
    def dashboard() -> str:
        try:
            rows = orch.status()
        except RuntimeError:
            rows = []
        unit_rows = "".join(
            "<tr>"
            f"<td>{html.escape(u['name'])}</td>"
            f"<td>{html.escape(u['kind'])}</td>"
            f"<td><b style='color:{STATE_COLORS.get(u['state'], '#fff')}'>{u['state']}</b></td>"
            f"<td>{html.escape(', '.join(u['depends_on']))}</td>"
            f"<td>{html.escape(u['last_probe']['message']) if u['last_probe'] else ''}</td>"
            f"<td>{html.escape(u['error'] or u['blocked_reason'] or '')}</td>"
            "</tr>"
            for u in rows
        )
        try:
            calls = orch.journal(15)
        except GatewayUnreachable:
            calls = []
        call_rows = "".join(
            "<tr>"
            f"<td>{html.escape(c['ts'])}</td>"
            f"<td>{html.escape(c['method'])} {html.escape(c['path'])}</td>"
            f"<td>{html.escape(c['rule'] or '-')}</td>"
            f"<td>{html.escape(c['disposition'] or '-')}</td>"
            f"<td>{html.escape(c['outcome'])}</td>"
            "</tr>"
            for c in calls
        )
        return f"""
        <!DOCTYPE html>
        <html lang="en">
        <head>
            <meta charset="UTF-8">
            <title>{html.escape(orch.stack.name)} - local stack</title>
            <style>
                body {{ background-color: #020617; color: #f8fafc; font-family: 'Segoe UI', monospace; padding: 20px; }}
                .card {{ background: #1e293b; border-radius: 12px; padding: 20px; border: 1px solid #334155; margin-bottom: 20px; }}
                h3 {{ border-bottom: 2px solid #334155; padding-bottom: 10px; }}
                table {{ width: 100%; border-collapse: collapse; }}
                th {{ color: #94a3b8; text-align: left; }}
                td, th {{ padding: 4px 8px; border-bottom: 1px solid #334155; }}
            </style>
        </head>
        <body>
            <h2>Stack: {html.escape(orch.stack.name)}</h2>
            <div class="card">
                <h3>Units</h3>
                <table><thead><tr><th>Unit</th><th>Kind</th><th>State</th><th>Depends on</th><th>Last probe</th><th>Error</th></tr></thead>
                <tbody>{unit_rows}</tbody></table>
            </div>
            <div class="card">
                <h3>Gateway journal (newest first)</h3>
                <table><thead><tr><th>Time</th><th>Call</th><th>Rule</th><th>Disposition</th><th>Outcome</th></tr></thead>
                <tbody>{call_rows}</tbody></table>
            </div>
            <script>setTimeout(() => {{ window.location.reload(); }}, 3000);</script>
        </body>
        </html>
        """

    return r


def control_router(orch: Orchestrator) -> APIRouter:
    r = APIRouter(prefix="/control")

    @r.post("/units/{name}/restart")
    def restart(name: str) -> dict[str, str]:
        if name not in orch.units:
            raise HTTPException(status_code=404, detail=f"Unknown unit '{name}'")
        try:
            orch.restart(name)
        except RuntimeError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return {"unit": name, "state": orch.scheduler.state_of(name).value if orch.scheduler else "Pending"}

    @r.post("/secrets/refresh", response_model=list[BundleResultOut])
    def refresh(req: RefreshRequest | None = None) -> list[dict[str, Any]]:
        try:
            results = orch.refresh_secrets(req.bundles if req else None)
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except RuntimeError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return [
            {"name": res.name, "ok": res.ok, "destination": res.destination, "error": res.error}
            for res in results.values()
        ]

    return r


def create_console_app(orch: Orchestrator) -> FastAPI:
    app = FastAPI(title=f"LSO console ({orch.stack.name})")
    app.include_router(console_router(orch))
    app.include_router(control_router(orch))
    return app
