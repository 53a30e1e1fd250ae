from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .db import log_event
from .settings import settings


UNIT_LABEL = "lso.unit"
STACK_LABEL = "lso.stack"


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available(client: docker.DockerClient | None = None) -> bool:
    try:
        c = client or _client()
        c.ping()
        return True
    except DockerException:
        return False


def ensure_network(client: docker.DockerClient, network: str | None = None) -> None:
    network = network or settings.docker_network
    try:
        client.networks.get(network)
    except NotFound:
        client.networks.create(network, driver="bridge")
        log_event("INFO", f"Created docker network '{network}'.")


def container_name(stack: str, unit: str) -> str:
    return f"lso-{stack}-{unit}"


def remove_stale(client: docker.DockerClient, name: str) -> None:
    """Remove a leftover container with the same name from a previous run."""
    try:
        client.containers.get(name).remove(force=True)
        log_event("WARN", f"Removed stale container {name}")
    except NotFound:
        return


def run_container(
    client: docker.DockerClient,
    name: str,
    image: str,
    labels: dict[str, str],
    env: dict[str, str] | None = None,
    command: list[str] | None = None,
    ports: dict[str, int] | None = None,
    volumes: dict[str, str] | None = None,
    network: str | None = None,
) -> ContainerRef:
    """Pull (if needed), create and start a detached container.

    Raises DockerException subclasses on pull/run failure; the caller turns
    them into launch diagnostics.
    """
    try:
        client.images.get(image)
    except ImageNotFound:
        log_event("INFO", f"Pulling image {image}", unit_name=labels.get(UNIT_LABEL))
        client.images.pull(image)

    container = client.containers.run(
        image,
        command=command,
        detach=True,
        name=name,
        environment=env or {},
        network=network or settings.docker_network,
        labels=labels,
        ports=ports or {},
        volumes={host: {"bind": target, "mode": "rw"} for host, target in (volumes or {}).items()},
        # Restarts are an operator decision; keep docker's restart policy off.
        restart_policy={"Name": "no"},
    )
    return ContainerRef(id=container.id, name=name)


def container_state(client: docker.DockerClient, container_id: str) -> tuple[str, int | None]:
    """Return (status, exit_code). status is 'missing' when the container is gone."""
    try:
        cont = client.containers.get(container_id)
        cont.reload()
    except NotFound:
        return "missing", None
    state: dict[str, Any] = cont.attrs.get("State", {}) if isinstance(cont.attrs, dict) else {}
    exit_code = state.get("ExitCode")
    return cont.status, exit_code if cont.status in {"exited", "dead"} else None


def stop_container(client: docker.DockerClient, container_id: str, grace_s: float) -> None:
    """Graceful stop (SIGTERM, then SIGKILL after grace_s), then remove."""
    try:
        cont = client.containers.get(container_id)
    except NotFound:
        return
    try:
        cont.stop(timeout=int(max(0, grace_s)))
    except APIError as e:
        log_event("WARN", f"Graceful stop failed for {cont.name}: {e}")
    try:
        cont.remove(force=True)
    except NotFound:
        return


def follow_logs(client: docker.DockerClient, container_id: str) -> Iterator[bytes]:
    cont = client.containers.get(container_id)
    return cont.logs(stream=True, follow=True, stdout=True, stderr=True)


def exec_probe(client: docker.DockerClient, container_id: str, argv: list[str]) -> tuple[int, str]:
    cont = client.containers.get(container_id)
    exit_code, output = cont.exec_run(argv, stdout=True, stderr=True)
    text = output.decode("utf-8", "replace") if isinstance(output, (bytes, bytearray)) else str(output or "")
    return int(exit_code if exit_code is not None else -1), text


def tail_logs(client: docker.DockerClient, container_id: str, lines: int = 50) -> str:
    try:
        cont = client.containers.get(container_id)
        raw = cont.logs(stdout=True, stderr=True, tail=lines)
    except (NotFound, APIError):
        return ""
    return raw.decode("utf-8", "replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
