from __future__ import annotations

import os

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse


VERSION = os.getenv("VERSION", "dev")
GATEWAY_URL = os.getenv("LSO_GATEWAY_URL", "http://127.0.0.1:8090")
# Touch this file to make /health fail (watch the unit go Degraded), remove it to recover.
UNHEALTHY_FLAG = os.getenv("UNHEALTHY_FLAG", ".lso/api.unhealthy")

app = FastAPI(title=f"Stand-in case API {VERSION}")


@app.get("/health")
def health():
    if os.path.exists(UNHEALTHY_FLAG):
        return JSONResponse({"status": "unhealthy"}, status_code=503)
    return {"status": "healthy"}


@app.get("/version")
def version() -> dict[str, str]:
    return {"version": VERSION, "gateway": GATEWAY_URL}


@app.get("/cases/{case_id}")
def get_case(case_id: str) -> dict:
    """Looks a case up in the external reference-data API, through the gateway."""
    try:
        resp = httpx.get(f"{GATEWAY_URL}/reference-data/cases/{case_id}", timeout=5.0)
    except httpx.HTTPError as e:
        raise HTTPException(status_code=502, detail=f"gateway unreachable: {e}") from e
    fault = resp.headers.get("X-Gateway-Fault")
    if fault:
        raise HTTPException(status_code=resp.status_code, detail=fault)
    return {"case_id": case_id, "reference": resp.json()}
