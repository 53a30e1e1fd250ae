from __future__ import annotations

from fastapi import FastAPI

from lso import db
from lso.console import create_console_app
from lso.orchestrator import Orchestrator
from lso.secrets import SecretResolutionError


def create_app(orch: Orchestrator | None = None) -> FastAPI:
    """Console app that brings the stack up on startup and down on shutdown.

    Run with: uvicorn main:create_app --factory --port 8000
    """
    orch = orch or Orchestrator.from_file()
    app = create_console_app(orch)
    app.state.orchestrator = orch

    @app.on_event("startup")
    def startup() -> None:
        try:
            orch.up()
        except SecretResolutionError as e:
            db.log_event("ERROR", f"Startup aborted: {e}")
            raise

    @app.on_event("shutdown")
    def shutdown() -> None:
        orch.down()

    return app
