from __future__ import annotations

import os
import signal
import subprocess
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from threading import Lock, Thread
from typing import IO, Iterable

import docker
from docker.errors import DockerException

from . import docker_ops
from .db import log_event
from .health import run_probe
from .models import UnitSpec
from .settings import settings


class LaunchError(Exception):
    """A unit could not be launched (bad command, immediate exit, image pull failure)."""

    def __init__(self, unit: str, message: str, exit_code: int | None = None, output: str = ""):
        self.unit = unit
        self.exit_code = exit_code
        self.output = output
        super().__init__(message)

    def diagnostics(self) -> str:
        parts = [str(self)]
        if self.exit_code is not None:
            parts.append(f"exit code {self.exit_code}")
        if self.output:
            parts.append(f"output: {self.output[-500:]}")
        return "; ".join(parts)


class LogBuffer:
    """Bounded line buffer; when full the oldest lines are dropped."""

    def __init__(self, max_lines: int = 2000):
        self._lines: deque[str] = deque(maxlen=max(1, int(max_lines)))
        self._lock = Lock()
        self.dropped = 0
        self.total = 0

    def append(self, line: str) -> None:
        with self._lock:
            if len(self._lines) == self._lines.maxlen:
                self.dropped += 1
            self._lines.append(line)
            self.total += 1

    def extend(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.append(line)

    def tail(self, n: int = 100) -> list[str]:
        with self._lock:
            if n <= 0:
                return []
            return list(self._lines)[-n:]

    def snapshot(self, n: int = 100) -> tuple[list[str], int]:
        """Last ``n`` lines plus a cursor for ``since``."""
        with self._lock:
            lines = list(self._lines)[-n:] if n > 0 else []
            return lines, self.total

    def since(self, cursor: int) -> tuple[list[str], int]:
        """Lines appended after ``cursor`` that are still held, and the new cursor.

        Lines dropped in between are skipped, not replayed.
        """
        with self._lock:
            first = self.total - len(self._lines)
            return list(self._lines)[max(cursor, first) - first:], self.total


def _pump_lines(stream: IO[bytes], buf: LogBuffer) -> None:
    # Runs on its own thread so a slow console never blocks the unit's pipe.
    # ValueError: the pipe was closed under us during stop().
    with stream:
        try:
            for raw in iter(stream.readline, b""):
                buf.append(raw.decode("utf-8", "replace").rstrip("\r\n"))
        except (OSError, ValueError):
            return


class Supervisor:
    """Lifecycle of one unit: start, probe, stop, logs.

    Subclasses implement the launch mechanism; the scheduler only sees this
    contract.
    """

    kind = ""

    def __init__(self, spec: UnitSpec, env: dict[str, str] | None = None, log_lines: int | None = None):
        self.spec = spec
        self.env = dict(env or {})
        self.logs = LogBuffer(log_lines or settings.log_buffer_lines)

    @property
    def name(self) -> str:
        return self.spec.name

    def start(self) -> None:
        raise NotImplementedError

    def is_running(self) -> bool:
        raise NotImplementedError

    def exit_code(self) -> int | None:
        raise NotImplementedError

    def stop(self, grace_s: float | None = None) -> None:
        raise NotImplementedError

    def probe(self) -> tuple[bool, str, float | None]:
        return run_probe(self.spec.probe, cwd=self.spec.cwd)


class ProcessUnit(Supervisor):
    kind = "process"

    def __init__(
        self,
        spec: UnitSpec,
        env: dict[str, str] | None = None,
        log_lines: int | None = None,
        launch_check_s: float | None = None,
    ):
        super().__init__(spec, env, log_lines)
        self.launch_check_s = settings.launch_check_s if launch_check_s is None else launch_check_s
        self._proc: subprocess.Popen[bytes] | None = None
        self._reader: Thread | None = None
        self._last_exit: int | None = None

    def start(self) -> None:
        argv = list(self.spec.command or [])
        full_env = dict(os.environ)
        full_env.update(self.env)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=self.spec.cwd,
                env=full_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            raise LaunchError(self.name, f"Cannot execute {argv[0] if argv else '<empty>'}: {e}") from e

        self._proc = proc
        self._last_exit = None
        if proc.stdout is not None:
            self._reader = Thread(target=_pump_lines, args=(proc.stdout, self.logs), daemon=True)
            self._reader.start()

        if self.launch_check_s > 0:
            try:
                code = proc.wait(timeout=self.launch_check_s)
            except subprocess.TimeoutExpired:
                code = None
            if code is not None and code != 0:
                self._release()
                self._last_exit = code
                raise LaunchError(
                    self.name, "Process exited immediately", exit_code=code, output="\n".join(self.logs.tail(20))
                )
        log_event("INFO", f"Started process pid={proc.pid}: {' '.join(argv)}", unit_name=self.name)

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def exit_code(self) -> int | None:
        if self._proc is not None:
            return self._proc.poll()
        return self._last_exit

    def _signal(self, sig: int) -> None:
        if self._proc is None:
            return
        if os.name == "posix":
            try:
                os.killpg(self._proc.pid, sig)
                return
            except ProcessLookupError:
                return
            except PermissionError:
                pass
        if sig == signal.SIGTERM:
            self._proc.terminate()
        else:
            self._proc.kill()

    def stop(self, grace_s: float | None = None) -> None:
        grace_s = settings.stop_grace_s if grace_s is None else grace_s
        proc = self._proc
        if proc is None:
            return
        try:
            if proc.poll() is None:
                self._signal(signal.SIGTERM)
                try:
                    proc.wait(timeout=grace_s)
                except subprocess.TimeoutExpired:
                    log_event("WARN", f"Grace period ({grace_s}s) expired; killing", unit_name=self.name)
                    self._signal(signal.SIGKILL)
                    proc.wait(timeout=5)
        finally:
            self._last_exit = proc.poll()
            self._release()
            log_event("INFO", f"Stopped process (exit={self._last_exit})", unit_name=self.name)

    def _release(self) -> None:
        self._proc = None
        if self._reader is not None:
            self._reader.join(timeout=1.0)
            self._reader = None


class ContainerUnit(Supervisor):
    kind = "container"

    def __init__(
        self,
        spec: UnitSpec,
        env: dict[str, str] | None = None,
        log_lines: int | None = None,
        client: docker.DockerClient | None = None,
        stack: str = "local",
        launch_check_s: float | None = None,
    ):
        super().__init__(spec, env, log_lines)
        self._client = client
        self.stack = stack
        self.launch_check_s = settings.launch_check_s if launch_check_s is None else launch_check_s
        self.container: docker_ops.ContainerRef | None = None
        self._reader: Thread | None = None
        self._last_exit: int | None = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def start(self) -> None:
        name = docker_ops.container_name(self.stack, self.name)
        try:
            docker_ops.ensure_network(self.client)
            docker_ops.remove_stale(self.client, name)
            self.container = docker_ops.run_container(
                self.client,
                name=name,
                image=str(self.spec.image),
                labels={docker_ops.UNIT_LABEL: self.name, docker_ops.STACK_LABEL: self.stack},
                env=self.env,
                command=self.spec.command,
                ports=self.spec.ports,
                volumes=self.spec.volumes,
            )
        except DockerException as e:
            raise LaunchError(self.name, f"Cannot start container from {self.spec.image}: {e}") from e

        self._last_exit = None
        self._reader = Thread(target=self._follow, args=(self.container.id,), daemon=True)
        self._reader.start()

        if self.launch_check_s > 0:
            time.sleep(self.launch_check_s)
            status, code = docker_ops.container_state(self.client, self.container.id)
            if status in {"exited", "dead", "missing"} and code != 0:
                output = docker_ops.tail_logs(self.client, self.container.id)
                try:
                    docker_ops.stop_container(self.client, self.container.id, 0)
                finally:
                    self._release()
                self._last_exit = code
                raise LaunchError(self.name, f"Container {status} immediately", exit_code=code, output=output)
        log_event("INFO", f"Started container {name} from image {self.spec.image}", unit_name=self.name)

    def _follow(self, container_id: str) -> None:
        try:
            pending = ""
            for chunk in docker_ops.follow_logs(self.client, container_id):
                pending += chunk.decode("utf-8", "replace") if isinstance(chunk, bytes) else str(chunk)
                *lines, pending = pending.split("\n")
                self.logs.extend(line.rstrip("\r") for line in lines)
            if pending:
                self.logs.append(pending)
        except DockerException:
            return

    def is_running(self) -> bool:
        if self.container is None:
            return False
        status, _ = docker_ops.container_state(self.client, self.container.id)
        return status == "running"

    def exit_code(self) -> int | None:
        if self.container is None:
            return self._last_exit
        _, code = docker_ops.container_state(self.client, self.container.id)
        return code

    def probe(self) -> tuple[bool, str, float | None]:
        probe = self.spec.probe
        if probe.protocol != "command":
            return super().probe()
        if self.container is None:
            return False, "Container not started", None
        start = time.time()
        # exec_run has no timeout of its own; abandon the call instead of waiting on it.
        pool = ThreadPoolExecutor(max_workers=1)
        fut = pool.submit(docker_ops.exec_probe, self.client, self.container.id, list(probe.target or []))
        try:
            code, output = fut.result(timeout=probe.timeout_s)
        except FutureTimeout:
            return False, "Timed out", round((time.time() - start) * 1000.0, 2)
        except DockerException as e:
            return False, f"Exec failed: {e}", round((time.time() - start) * 1000.0, 2)
        finally:
            pool.shutdown(wait=False)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if code == 0:
            return True, "Exit 0", latency_ms
        return False, f"Exit {code}: {output.strip()[-200:]}", latency_ms

    def stop(self, grace_s: float | None = None) -> None:
        grace_s = settings.stop_grace_s if grace_s is None else grace_s
        if self.container is None:
            return
        try:
            _, self._last_exit = docker_ops.container_state(self.client, self.container.id)
            docker_ops.stop_container(self.client, self.container.id, grace_s)
        finally:
            self._release()
            log_event("INFO", "Stopped container", unit_name=self.name)

    def _release(self) -> None:
        self.container = None
        self._reader = None


def build_supervisor(
    spec: UnitSpec,
    env: dict[str, str] | None = None,
    client: docker.DockerClient | None = None,
    stack: str = "local",
) -> Supervisor:
    if spec.kind == "container":
        return ContainerUnit(spec, env=env, client=client, stack=stack)
    return ProcessUnit(spec, env=env)
