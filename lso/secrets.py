"""Secret Resolver.

Fetches credential material for each declared SecretBundle and writes it into
local configuration files before the units that consume them may start.
Files are build artifacts: rewritten on every run, never diffed.
"""
from __future__ import annotations

import base64
import binascii
import json
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass
from string import Template
from typing import Iterable, Mapping, Protocol

from .db import log_event
from .models import SecretBundleSpec
from .settings import settings


def _norm(s: str) -> str:
    """Form a name takes inside an environment variable: A-Z, 0-9 and underscores."""
    return re.sub(r"[^A-Z0-9]", "_", s.upper())


class SecretFetchError(Exception):
    """The remote source could not provide a bundle (or one of its keys)."""

    def __init__(self, bundle: str, message: str):
        self.bundle = bundle
        super().__init__(f"Secret bundle '{bundle}': {message}")


class SecretResolutionError(Exception):
    """One or more bundles failed; startup must not continue."""

    def __init__(self, failures: Mapping[str, str], blocked_units: Iterable[str] = ()):
        self.failures = dict(failures)
        self.blocked_units = sorted(blocked_units)
        msg = "Unresolvable secret bundle(s): " + ", ".join(f"{b} ({e})" for b, e in sorted(self.failures.items()))
        if self.blocked_units:
            msg += f"; blocked units: {', '.join(self.blocked_units)}"
        super().__init__(msg)


class SecretSource(Protocol):
    def fetch(self, namespace: str, secret_name: str) -> dict[str, str]:
        """Return key -> base64-encoded value."""
        ...


class KubectlSecretSource:
    """Reads Kubernetes secrets through the kubectl binary."""

    def __init__(self, kubectl: str | None = None, context: str | None = None, timeout_s: float | None = None):
        self.kubectl = kubectl or settings.kubectl
        self.context = context if context is not None else settings.kube_context
        self.timeout_s = timeout_s or settings.kubectl_timeout_s

    def fetch(self, namespace: str, secret_name: str) -> dict[str, str]:
        argv = [self.kubectl, "get", "secret", secret_name, "-n", namespace, "-o", "json"]
        if self.context:
            argv[1:1] = ["--context", self.context]
        try:
            proc = subprocess.run(argv, capture_output=True, text=True, timeout=self.timeout_s, check=False)
        except subprocess.TimeoutExpired as e:
            raise SecretFetchError(secret_name, f"kubectl timed out after {self.timeout_s}s") from e
        except OSError as e:
            raise SecretFetchError(secret_name, f"cannot run kubectl: {e}") from e
        if proc.returncode != 0:
            raise SecretFetchError(secret_name, f"kubectl exit {proc.returncode}: {proc.stderr.strip()[:300]}")
        try:
            data = json.loads(proc.stdout).get("data") or {}
        except (ValueError, AttributeError) as e:
            raise SecretFetchError(secret_name, "kubectl returned malformed JSON") from e
        return {str(k): str(v) for k, v in data.items()}


class EnvSecretSource:
    """Local stand-in: LSO_SECRET__<NAMESPACE>__<NAME>__<KEY>=<base64 value>.

    Keys come back in their environment form (`API_KEY`, `PASSWORD`); the
    resolver matches bundle keys such as `password` or `api-key` to them.
    """

    PREFIX = "LSO_SECRET"

    def __init__(self, environ: Mapping[str, str] | None = None):
        self.environ = environ if environ is not None else os.environ

    def fetch(self, namespace: str, secret_name: str) -> dict[str, str]:
        prefix = f"{self.PREFIX}__{_norm(namespace)}__{_norm(secret_name)}__"
        out: dict[str, str] = {}
        for k, v in self.environ.items():
            if k.startswith(prefix):
                out[k[len(prefix):]] = v
        if not out:
            raise SecretFetchError(secret_name, f"no variables with prefix {prefix}")
        return out


def build_source(kind: str | None = None) -> SecretSource:
    kind = (kind or settings.secret_source).lower()
    if kind == "env":
        return EnvSecretSource()
    if kind == "kubectl":
        return KubectlSecretSource()
    raise ValueError(f"Unknown secret source '{kind}' (expected kubectl|env)")


def _pick_keys(bundle: str, raw: Mapping[str, str], keys: Iterable[str]) -> dict[str, str]:
    # Exact name first, then the environment-variable form of it.
    by_norm = {_norm(k): v for k, v in raw.items()}
    out: dict[str, str] = {}
    missing = []
    for key in keys:
        if key in raw:
            out[key] = raw[key]
        elif _norm(key) in by_norm:
            out[key] = by_norm[_norm(key)]
        else:
            missing.append(key)
    if missing:
        raise SecretFetchError(bundle, f"missing key(s): {', '.join(missing)}")
    return out


def _decode(bundle: str, key: str, value: str) -> str:
    try:
        return base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise SecretFetchError(bundle, f"key '{key}' is not valid base64 utf-8") from e


def _dotenv_value(value: str) -> str:
    if re.fullmatch(r"[A-Za-z0-9_./:@+\-]*", value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def render_bundle(bundle: SecretBundleSpec, values: Mapping[str, str]) -> str:
    """Produce the destination file body from decoded secret values."""
    mapping = {placeholder: values[key] for placeholder, key in bundle.substitutions.items()}
    if bundle.template is None:
        return "".join(f"{p}={_dotenv_value(v)}\n" for p, v in sorted(mapping.items()))
    try:
        return Template(bundle.template).substitute(mapping)
    except (KeyError, ValueError) as e:
        raise SecretFetchError(bundle.name, f"template placeholder not resolvable: {e}") from e


def write_atomic(path: str, content: str) -> None:
    """Write via a temp file in the same directory and rename over the target."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".lso-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


@dataclass(frozen=True)
class BundleResult:
    name: str
    ok: bool
    destination: str
    error: str | None = None


class SecretResolver:
    def __init__(self, bundles: Iterable[SecretBundleSpec], source: SecretSource):
        self.bundles = {b.name: b for b in bundles}
        self.source = source

    def resolve(self, name: str) -> BundleResult:
        """Fetch, render and write one bundle. All-or-nothing: no file on failure."""
        bundle = self.bundles[name]
        try:
            raw = self.source.fetch(bundle.namespace, bundle.secret_name)
            picked = _pick_keys(bundle.name, raw, bundle.keys)
            values = {k: _decode(bundle.name, k, v) for k, v in picked.items()}
            body = render_bundle(bundle, values)
            try:
                write_atomic(bundle.destination, body)
            except OSError as e:
                raise SecretFetchError(bundle.name, f"cannot write {bundle.destination}: {e}") from e
        except SecretFetchError as e:
            log_event("ERROR", f"Secret bundle '{name}' failed: {e}")
            return BundleResult(name=name, ok=False, destination=bundle.destination, error=str(e))
        # Values never reach the event log; key names only.
        log_event("INFO", f"Wrote secret bundle '{name}' ({len(values)} keys) to {bundle.destination}")
        return BundleResult(name=name, ok=True, destination=bundle.destination)

    def resolve_all(self) -> dict[str, BundleResult]:
        return {name: self.resolve(name) for name in self.bundles}

    def refresh(self, names: Iterable[str] | None = None) -> dict[str, BundleResult]:
        """Re-fetch bundles on operator request; same semantics as a first resolution."""
        targets = list(names) if names is not None else list(self.bundles)
        unknown = [n for n in targets if n not in self.bundles]
        if unknown:
            raise KeyError(f"unknown secret bundle(s): {', '.join(unknown)}")
        return {name: self.resolve(name) for name in targets}
