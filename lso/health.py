from __future__ import annotations

import socket
import subprocess
import time

import httpx

from .models import ProbeSpec


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000.0, 2)


def check_http(
    url: str,
    timeout_s: float = 2.0,
    expect_status: int | None = None,
    transport: httpx.BaseTransport | None = None,
) -> tuple[bool, str, float | None]:
    """Call a readiness endpoint.

    Any 2xx counts as ready unless ``expect_status`` pins an exact code. A
    JSON body of the form {"status": ...} must say "healthy"/"ok"/"up"/"ready" when present.
    Returns (is_ready, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(url)
        latency_ms = _elapsed_ms(start)
        if expect_status is not None:
            if resp.status_code != expect_status:
                return False, f"HTTP {resp.status_code} (expected {expect_status})", latency_ms
        elif not 200 <= resp.status_code < 300:
            return False, f"HTTP {resp.status_code}", latency_ms
        if "json" in resp.headers.get("content-type", ""):
            try:
                data = resp.json()
            except ValueError:
                return False, "Invalid JSON", latency_ms
            if isinstance(data, dict) and "status" in data:
                if str(data["status"]).lower() not in {"healthy", "ok", "up", "ready"}:
                    return False, f"Unhealthy payload: {data!r}", latency_ms
        return True, f"HTTP {resp.status_code}", latency_ms
    except httpx.TimeoutException:
        return False, "Timed out", _elapsed_ms(start)
    except httpx.ConnectError:
        return False, "No response", _elapsed_ms(start)
    except httpx.HTTPError as e:
        return False, f"Error: {type(e).__name__}: {e}", _elapsed_ms(start)


def check_tcp(target: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    host, _, port = target.rpartition(":")
    start = time.time()
    try:
        with socket.create_connection((host or "127.0.0.1", int(port)), timeout=timeout_s):
            pass
        return True, "Port open", _elapsed_ms(start)
    except socket.timeout:
        return False, "Timed out", _elapsed_ms(start)
    except OSError as e:
        return False, f"Connect failed: {e.strerror or e}", _elapsed_ms(start)


def check_command(argv: list[str], timeout_s: float = 2.0, cwd: str | None = None) -> tuple[bool, str, float | None]:
    start = time.time()
    try:
        proc = subprocess.run(argv, cwd=cwd, capture_output=True, timeout=timeout_s, check=False)
    except subprocess.TimeoutExpired:
        return False, "Timed out", _elapsed_ms(start)
    except OSError as e:
        return False, f"Cannot run probe: {e}", _elapsed_ms(start)
    if proc.returncode == 0:
        return True, "Exit 0", _elapsed_ms(start)
    tail = (proc.stderr or proc.stdout or b"").decode("utf-8", "replace").strip()[-200:]
    return False, f"Exit {proc.returncode}: {tail}" if tail else f"Exit {proc.returncode}", _elapsed_ms(start)


def run_probe(probe: ProbeSpec, cwd: str | None = None) -> tuple[bool, str, float | None]:
    """Run a host-side probe. Container command probes are executed by the supervisor."""
    if probe.protocol == "none":
        return True, "No probe configured", None
    if probe.protocol == "http":
        return check_http(str(probe.target), probe.timeout_s, probe.expect_status)
    if probe.protocol == "tcp":
        return check_tcp(str(probe.target), probe.timeout_s)
    return check_command(list(probe.target or []), probe.timeout_s, cwd=cwd)
