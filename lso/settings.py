from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("LSO_DB_PATH", ".lso/lso.db")
    stack_file: str = os.getenv("LSO_STACK_FILE", "stack.json")
    rules_file: str = os.getenv("LSO_RULES_FILE", "rules.json")
    docker_network: str = os.getenv("LSO_DOCKER_NETWORK", "lso")

    # Scheduling / supervision
    max_concurrency: int = _env_int("LSO_MAX_CONCURRENCY", 4)  # 0 = unbounded
    watch_interval_s: float = _env_float("LSO_WATCH_INTERVAL_S", 2.0)
    stop_grace_s: float = _env_float("LSO_STOP_GRACE_S", 10.0)
    launch_check_s: float = _env_float("LSO_LAUNCH_CHECK_S", 0.5)
    log_buffer_lines: int = _env_int("LSO_LOG_BUFFER_LINES", 2000)

    # Secrets abort startup when any bundle fails; False blocks only the consumers.
    strict_secrets: bool = _env_bool("LSO_STRICT_SECRETS", True)

    # Gateway
    gateway_host: str = os.getenv("LSO_GATEWAY_HOST", "127.0.0.1")
    gateway_port: int = _env_int("LSO_GATEWAY_PORT", 8090)
    gateway_timeout_s: float = _env_float("LSO_GATEWAY_TIMEOUT_S", 10.0)
    journal_size: int = _env_int("LSO_JOURNAL_SIZE", 500)

    # Secrets
    secret_source: str = os.getenv("LSO_SECRET_SOURCE", "kubectl")  # kubectl|env
    kubectl: str = os.getenv("LSO_KUBECTL", "kubectl")
    kube_context: str | None = os.getenv("LSO_KUBE_CONTEXT")
    kubectl_timeout_s: float = _env_float("LSO_KUBECTL_TIMEOUT_S", 20.0)


settings = Settings()
