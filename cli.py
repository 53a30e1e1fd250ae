from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _cmd_up(args: argparse.Namespace) -> int:
    import uvicorn

    from lso.orchestrator import Orchestrator
    from main import create_app

    orch = Orchestrator.from_file(args.stack, strict_secrets=not args.keep_going)
    uvicorn.run(create_app(orch), host=args.host, port=args.port, log_level="warning")
    return 0


def _cmd_gateway(args: argparse.Namespace) -> int:
    import uvicorn

    from lso import db
    from lso.gateway import build_gateway, create_gateway_app
    from lso.models import load_stack
    from lso.orchestrator import gateway_upstreams
    from lso.settings import settings

    db.init_db()
    upstreams = gateway_upstreams(load_stack(args.stack)) if args.stack else {}
    gw = build_gateway(args.rules, upstreams=upstreams)
    uvicorn.run(
        create_gateway_app(gw),
        host=args.host or settings.gateway_host,
        port=args.port or settings.gateway_port,
        log_level="warning",
    )
    return 0


def _cmd_secrets(args: argparse.Namespace) -> int:
    from lso import db
    from lso.models import load_stack
    from lso.secrets import SecretResolver, build_source

    db.init_db()
    stack = load_stack(args.stack)
    resolver = SecretResolver(stack.secrets, build_source(args.source))
    results = resolver.refresh(args.bundle or None)
    _print([{"name": r.name, "ok": r.ok, "destination": r.destination, "error": r.error} for r in results.values()])
    return 0 if all(r.ok for r in results.values()) else 1


def _follow_logs(base: str, unit: str, tail: int) -> int:
    r = requests.get(f"{base}/units/{unit}/logs/stream", params={"tail": tail}, stream=True, timeout=(10, None))
    try:
        if not r.ok:
            _print(r.json())
            return 1
        for line in r.iter_lines(decode_unicode=True):
            print(line, flush=True)
    except KeyboardInterrupt:
        pass
    finally:
        r.close()
    return 0


def _cmd_validate(args: argparse.Namespace) -> int:
    from lso.graph import GraphError, layers, validate_graph
    from lso.models import load_stack

    stack = load_stack(args.stack)
    try:
        deps = validate_graph(stack.units)
    except GraphError as e:
        print(f"invalid: {e}", file=sys.stderr)
        return 1
    _print({"stack": stack.name, "layers": layers(deps)})
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Local Stack Orchestrator CLI")
    p.add_argument("--api", default="http://localhost:8000", help="Console API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_up = sub.add_parser("up", help="Bring the stack up and serve the console (foreground)")
    s_up.add_argument("--stack", default=None, help="Stack file (default: $LSO_STACK_FILE)")
    s_up.add_argument("--host", default="127.0.0.1")
    s_up.add_argument("--port", type=int, default=8000)
    s_up.add_argument("--keep-going", action="store_true", help="Start units whose secrets resolved even if others failed")

    s_gw = sub.add_parser("gateway", help="Serve the mock/proxy gateway (foreground)")
    s_gw.add_argument("--rules", default=None, help="Rules file (default: $LSO_RULES_FILE)")
    s_gw.add_argument("--stack", default=None, help="Stack file, to resolve unit names used as proxy targets")
    s_gw.add_argument("--host", default=None)
    s_gw.add_argument("--port", type=int, default=None)

    s_sec = sub.add_parser("secrets", help="Resolve secret bundles without starting anything")
    s_sec.add_argument("--stack", required=True)
    s_sec.add_argument("--bundle", action="append", help="Bundle name (repeatable); all when omitted")
    s_sec.add_argument("--source", default=None, help="kubectl|env (default: $LSO_SECRET_SOURCE)")

    s_val = sub.add_parser("validate", help="Check a stack file and print its start layers")
    s_val.add_argument("--stack", required=True)

    sub.add_parser("status", help="Show unit states")

    s_logs = sub.add_parser("logs", help="Tail a unit's output")
    s_logs.add_argument("unit")
    s_logs.add_argument("--tail", type=int, default=100)
    s_logs.add_argument("-f", "--follow", action="store_true", help="Keep printing new lines until the unit stops")

    s_j = sub.add_parser("journal", help="Show gateway calls, newest first")
    s_j.add_argument("--limit", type=int, default=20)

    s_ev = sub.add_parser("events", help="Show orchestrator events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--unit", default=None)

    s_rs = sub.add_parser("restart", help="Restart one unit")
    s_rs.add_argument("unit")

    s_rf = sub.add_parser("refresh", help="Re-fetch secret bundles in the running stack")
    s_rf.add_argument("--bundle", action="append")

    args = p.parse_args(argv)

    if args.cmd == "up":
        return _cmd_up(args)
    if args.cmd == "gateway":
        return _cmd_gateway(args)
    if args.cmd == "secrets":
        return _cmd_secrets(args)
    if args.cmd == "validate":
        return _cmd_validate(args)

    base = args.api.rstrip("/")

    if args.cmd == "status":
        _print(requests.get(f"{base}/status", timeout=10).json())
        return 0

    if args.cmd == "logs" and args.follow:
        return _follow_logs(base, args.unit, args.tail)

    if args.cmd == "logs":
        r = requests.get(f"{base}/units/{args.unit}/logs", params={"tail": args.tail}, timeout=10)
        if not r.ok:
            _print(r.json())
            return 1
        print("\n".join(r.json()["lines"]))
        return 0

    if args.cmd == "journal":
        r = requests.get(f"{base}/journal", params={"limit": args.limit}, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.unit:
            params["unit"] = args.unit
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "restart":
        r = requests.post(f"{base}/control/units/{args.unit}/restart", timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "refresh":
        r = requests.post(f"{base}/control/secrets/refresh", json={"bundles": args.bundle}, timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
