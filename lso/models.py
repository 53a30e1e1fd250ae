from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


UNIT_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
HTTP_METHODS = {"*", "GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE", "CONNECT"}


def validate_unit_name(name: str) -> str:
    if not UNIT_NAME_RE.match(name):
        raise ValueError(
            "Invalid unit name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )
    return name


class ProbeSpec(BaseModel):
    protocol: Literal["http", "tcp", "command", "none"] = "none"
    target: str | list[str] | None = Field(None, description="URL, host:port, or argv depending on protocol")
    interval_s: float = Field(1.0, gt=0, le=300)
    timeout_s: float = Field(2.0, gt=0, le=300)
    success_threshold: int = Field(1, ge=1, le=100)
    max_attempts: int = Field(30, ge=1, le=10000)
    expect_status: int | None = Field(None, ge=100, le=599, description="Exact HTTP status; default any 2xx")

    @model_validator(mode="after")
    def _check_target(self) -> "ProbeSpec":
        if self.protocol == "none":
            return self
        if self.target is None:
            raise ValueError(f"probe protocol '{self.protocol}' requires a target")
        if self.protocol == "command" and isinstance(self.target, str):
            self.target = self.target.split()
        if self.protocol in {"http", "tcp"} and not isinstance(self.target, str):
            raise ValueError(f"probe protocol '{self.protocol}' requires a string target")
        if self.protocol == "http" and not self.target.startswith(("http://", "https://")):
            raise ValueError("http probe target must be an absolute http(s) URL")
        if self.protocol == "tcp" and ":" not in self.target:
            raise ValueError("tcp probe target must be host:port")
        return self


class UnitSpec(BaseModel):
    name: str
    kind: Literal["container", "process"]
    image: str | None = None
    command: list[str] | None = None
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    env_files: list[str] = Field(default_factory=list)
    ports: dict[str, int] = Field(default_factory=dict, description="container port (e.g. '5432/tcp') -> host port")
    volumes: dict[str, str] = Field(default_factory=dict, description="host path -> container path")
    depends_on: list[str] = Field(default_factory=list)
    secrets: list[str] = Field(default_factory=list, description="SecretBundle names this unit consumes")
    probe: ProbeSpec = Field(default_factory=ProbeSpec)
    url: str | None = Field(None, description="Base URL used when a routing rule proxies to this unit")

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return validate_unit_name(v)

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.split()
        return v

    @model_validator(mode="after")
    def _check_kind(self) -> "UnitSpec":
        if self.kind == "container" and not self.image:
            raise ValueError(f"container unit '{self.name}' requires an image")
        if self.kind == "process" and not self.command:
            raise ValueError(f"process unit '{self.name}' requires a command")
        if self.name in self.depends_on:
            raise ValueError(f"unit '{self.name}' cannot depend on itself")
        return self


class SecretBundleSpec(BaseModel):
    name: str
    namespace: str
    secret_name: str
    keys: list[str] = Field(default_factory=list, description="Keys that must be present in the remote secret")
    destination: str
    template: str | None = Field(None, description="File body with ${PLACEHOLDER} markers; dotenv when omitted")
    substitutions: dict[str, str] = Field(default_factory=dict, description="placeholder -> secret key")

    @model_validator(mode="after")
    def _default_substitutions(self) -> "SecretBundleSpec":
        if not self.substitutions:
            self.substitutions = {k.upper().replace("-", "_").replace(".", "_"): k for k in self.keys}
        for key in self.substitutions.values():
            if key not in self.keys:
                self.keys.append(key)
        return self


class MockPayload(BaseModel):
    status: int = Field(200, ge=100, le=599)
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None


class RuleSpec(BaseModel):
    name: str | None = None
    method: str = "*"
    path: str
    priority: int = 0
    proxy_to: str | None = None
    mock: MockPayload | None = None

    @field_validator("method")
    @classmethod
    def _method(cls, v: str) -> str:
        v = v.upper()
        if v not in HTTP_METHODS:
            raise ValueError(f"unsupported method '{v}'")
        return v

    @field_validator("path")
    @classmethod
    def _path(cls, v: str) -> str:
        if not v.startswith("/") and v != "*":
            raise ValueError("rule path must start with '/' (or be '*')")
        return v

    @model_validator(mode="after")
    def _one_disposition(self) -> "RuleSpec":
        if (self.proxy_to is None) == (self.mock is None):
            raise ValueError(f"rule '{self.name or self.path}' needs exactly one of proxy_to / mock")
        return self


class StackSpec(BaseModel):
    name: str = "local"
    gateway_unit: str | None = Field(None, description="Unit that serves the mock/proxy gateway")
    units: list[UnitSpec]
    secrets: list[SecretBundleSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique(self) -> "StackSpec":
        seen: set[str] = set()
        for u in self.units:
            if u.name in seen:
                raise ValueError(f"duplicate unit name '{u.name}'")
            seen.add(u.name)
        bundles = {b.name for b in self.secrets}
        if len(bundles) != len(self.secrets):
            raise ValueError("duplicate secret bundle name")
        for u in self.units:
            for b in u.secrets:
                if b not in bundles:
                    raise ValueError(f"unit '{u.name}' references unknown secret bundle '{b}'")
        if self.gateway_unit and self.gateway_unit not in seen:
            raise ValueError(f"gateway_unit '{self.gateway_unit}' is not a declared unit")
        return self


def _read_json(path: str | Path) -> Any:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


def load_stack(path: str | Path) -> StackSpec:
    return StackSpec.model_validate(_read_json(path))


def load_rules(path: str | Path) -> list[RuleSpec]:
    data = _read_json(path)
    if isinstance(data, dict):
        data = data.get("rules", [])
    return [RuleSpec.model_validate(r) for r in data]
