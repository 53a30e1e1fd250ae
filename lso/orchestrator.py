from __future__ import annotations

import os
import re
import time
from typing import Any, Callable, Iterator, Mapping

import docker
import httpx
from dotenv import dotenv_values

from . import db
from .docker_ops import docker_available
from .gateway import Gateway
from .graph import validate_graph
from .models import StackSpec, UnitSpec, load_stack
from .runtime import UnitState
from .scheduler import Scheduler
from .secrets import BundleResult, SecretResolutionError, SecretResolver, SecretSource, build_source
from .settings import settings
from .supervisor import Supervisor, build_supervisor


class GatewayUnreachable(Exception):
    pass


SupervisorFactory = Callable[[UnitSpec, dict[str, str]], Supervisor]


def _env_key(name: str) -> str:
    return re.sub(r"[^A-Z0-9]", "_", name.upper())


class Orchestrator:
    """Brings a stack up: secrets first, then units in dependency order.

    The orchestrator owns no lifecycle logic of its own; it resolves
    configuration, builds one supervisor per unit and hands them to the
    scheduler.
    """

    def __init__(
        self,
        stack: StackSpec,
        secret_source: SecretSource | None = None,
        supervisor_factory: SupervisorFactory | None = None,
        docker_client: docker.DockerClient | None = None,
        gateway: Gateway | None = None,
        strict_secrets: bool | None = None,
    ):
        self.stack = stack
        self.deps = validate_graph(stack.units)
        self.resolver = SecretResolver(stack.secrets, secret_source or build_source())
        self._docker_client = docker_client
        self._factory = supervisor_factory or self._default_factory
        self.gateway = gateway
        self.strict_secrets = settings.strict_secrets if strict_secrets is None else strict_secrets
        self.scheduler: Scheduler | None = None
        self.secret_results: dict[str, BundleResult] = {}

    @classmethod
    def from_file(cls, path: str | None = None, **kwargs: Any) -> "Orchestrator":
        return cls(load_stack(path or settings.stack_file), **kwargs)

    def _default_factory(self, spec: UnitSpec, env: dict[str, str]) -> Supervisor:
        return build_supervisor(spec, env=env, client=self._docker_client, stack=self.stack.name)

    @property
    def units(self) -> dict[str, UnitSpec]:
        return {u.name: u for u in self.stack.units}

    @property
    def gateway_url(self) -> str | None:
        if not self.stack.gateway_unit:
            return None
        return self.units[self.stack.gateway_unit].url

    def upstreams(self) -> dict[str, str]:
        return dict(gateway_upstreams(self.stack))

    def unit_env(self, spec: UnitSpec) -> dict[str, str]:
        env: dict[str, str] = {}
        for path in spec.env_files:
            env.update({k: v for k, v in dotenv_values(path).items() if v is not None})
        bundles = {b.name: b for b in self.stack.secrets}
        for name in spec.secrets:
            dest = os.path.abspath(bundles[name].destination)
            env[f"LSO_SECRET_FILE_{_env_key(name)}"] = dest
            if dest.endswith(".env") and os.path.exists(dest):
                env.update({k: v for k, v in dotenv_values(dest).items() if v is not None})
        if self.gateway_url and spec.name != self.stack.gateway_unit:
            env["LSO_GATEWAY_URL"] = self.gateway_url
        env.update(spec.env)
        return env

    def consumers_of(self, bundles: set[str]) -> list[str]:
        return [u.name for u in self.stack.units if bundles.intersection(u.secrets)]

    def up(self) -> Scheduler:
        """Resolve secrets, build supervisors and start scheduling.

        Raises SecretResolutionError (after blocking the affected units) when
        strict and any bundle failed; nothing is started in that case.
        """
        db.init_db()
        db.log_event("INFO", f"Bringing up stack '{self.stack.name}' ({len(self.stack.units)} units)")
        containers = [u.name for u in self.stack.units if u.kind == "container"]
        if containers and self._factory == self._default_factory and not docker_available(self._docker_client):
            db.log_event("ERROR", f"Docker daemon not reachable; container units will fail: {', '.join(containers)}")
        self.secret_results = self.resolver.resolve_all()
        failed = {n: r.error or "unknown error" for n, r in self.secret_results.items() if not r.ok}

        supervisors = {u.name: self._factory(u, self.unit_env(u)) for u in self.stack.units}
        self.scheduler = Scheduler(self.stack.units, supervisors)

        blocked = self.consumers_of(set(failed))
        for name in blocked:
            bundles = sorted(set(failed).intersection(self.units[name].secrets))
            self.scheduler.block(name, f"secret bundle(s) unresolved: {', '.join(bundles)}")
        if failed and self.strict_secrets:
            raise SecretResolutionError(failed, blocked)

        self.scheduler.run()
        return self.scheduler

    def down(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown()
        if self.gateway is not None:
            self.gateway.close()

    def restart(self, name: str) -> None:
        sched = self._require_scheduler()
        sup = sched.supervisors[name]
        sup.env = self.unit_env(self.units[name])
        sched.restart(name)

    def refresh_secrets(self, names: list[str] | None = None) -> dict[str, BundleResult]:
        """Re-fetch bundles; consumers of failed bundles that have not started stay Pending.

        Running units keep their current configuration until restarted.
        """
        sched = self._require_scheduler()
        results = self.resolver.refresh(names)
        self.secret_results.update(results)
        failed = {n for n, r in self.secret_results.items() if not r.ok}
        for name in self.consumers_of(set(results)):
            still_failed = failed.intersection(self.units[name].secrets)
            if still_failed:
                sched.block(name, f"secret bundle(s) unresolved: {', '.join(sorted(still_failed))}")
            else:
                sched.supervisors[name].env = self.unit_env(self.units[name])
                sched.unblock(name)
        return results

    def status(self) -> list[dict[str, Any]]:
        sched = self._require_scheduler()
        out = []
        for row in sched.status():
            spec = self.units[row["name"]]
            sup = sched.supervisors[spec.name]
            row.update(
                {
                    "kind": spec.kind,
                    "depends_on": list(spec.depends_on),
                    "url": spec.url,
                    "logs_dropped": sup.logs.dropped,
                }
            )
            out.append(row)
        return out

    def logs(self, name: str, tail: int = 100) -> list[str]:
        sched = self._require_scheduler()
        return sched.supervisors[name].logs.tail(tail)

    def follow_logs(self, name: str, tail: int = 100, poll_s: float = 0.25) -> Iterator[str]:
        """Last ``tail`` lines, then each new line as the unit writes it.

        The stream ends once the unit is Stopped or Failed, or its process has
        gone away after it started; a unit still waiting to start is followed
        until it does.
        """
        sched = self._require_scheduler()
        sup = sched.supervisors[name]

        def finished() -> bool:
            state = sched.state_of(name)
            if state in (UnitState.STOPPED, UnitState.FAILED):
                return True
            return state in (UnitState.READY, UnitState.DEGRADED) and not sup.is_running()

        def stream() -> Iterator[str]:
            lines, cursor = sup.logs.snapshot(tail)
            yield from lines
            while True:
                done = finished()
                lines, cursor = sup.logs.since(cursor)
                yield from lines
                if done:
                    return
                time.sleep(poll_s)

        return stream()

    def journal(self, limit: int = 100) -> list[dict[str, Any]]:
        if self.gateway is not None:
            return self.gateway.journal.query(limit)
        if not self.gateway_url:
            return []
        try:
            resp = httpx.get(f"{self.gateway_url.rstrip('/')}/__gateway/journal", params={"limit": limit}, timeout=5.0)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as e:
            raise GatewayUnreachable(f"{self.gateway_url}: {type(e).__name__}: {e}") from e

    def _require_scheduler(self) -> Scheduler:
        if self.scheduler is None:
            raise RuntimeError("Stack is not up")
        return self.scheduler


def gateway_upstreams(stack: StackSpec) -> Mapping[str, str]:
    """Unit name -> base URL, for routing rules that proxy to a unit."""
    return {u.name: u.url for u in stack.units if u.url}
