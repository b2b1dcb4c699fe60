"""
Unit definition store.

Turns a raw topology document (already parsed into Python structures, or a
YAML/JSON file on disk) into an ordered tuple of immutable ``UnitSpec``
objects. Loading is a pure function of its input: it either returns the
validated specs in declaration order or raises ``ValidationError``.

Accepted layouts::

    units:                      # or "services", or no wrapper at all
      db:
        image: postgres:16
        healthcheck: tcp://localhost:5432
      backend:
        image: acme/backend:latest
        depends_on: [db]
        restart: on-failure:3
        healthcheck:
          kind: http
          target: http://localhost:8000/health
          interval: 5s
          retries: 3

A list of mappings that each carry a ``name`` key is accepted as well.
"""

from __future__ import annotations

import re
import shlex
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from service_orchestrator.config import STOP_GRACE_SEC
from service_orchestrator.core.errors import ValidationError

_DURATION_FULL_RE = re.compile(r"^(?:\d+(?:\.\d+)?(?:ms|us|h|m|s))+$")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|us|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001, "us": 0.000001}

_RESTART_ALIASES = {
    "no": "none",
    "none": "none",
    "on-failure": "on-failure",
    "always": "always",
    "unless-stopped": "always",
}


def parse_duration(value: Any) -> float:
    """Convert ``5``, ``"2.5"``, ``"500ms"`` or ``"1m30s"`` into seconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip().lower()
        try:
            return float(text)
        except ValueError:
            pass
        if _DURATION_FULL_RE.match(text):
            return sum(float(n) * _DURATION_UNITS[u] for n, u in _DURATION_PART_RE.findall(text))
    raise ValueError(f"invalid duration: {value!r}")


def split_host_port(target: str) -> Tuple[str, int]:
    """Parse a TCP probe target: ``host:port``, ``tcp://host:port`` or a bare port."""
    text = target.strip()
    if text.startswith("tcp://"):
        text = text[len("tcp://"):]
    if text.isdigit():
        host, port_text = "localhost", text
    else:
        host, sep, port_text = text.rpartition(":")
        if not sep or not host:
            raise ValueError(f"TCP target must be host:port, got {target!r}")
        host = host.strip("[]")
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid port in TCP target {target!r}") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"port out of range in TCP target {target!r}")
    return host, port


class ProbeKind(str, Enum):
    TCP = "tcp"
    HTTP = "http"
    COMMAND = "command"


class RestartPolicy(str, Enum):
    NONE = "none"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"


class HealthCheckSpec(BaseModel):
    """How to decide whether a started unit is ready to serve traffic."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ProbeKind
    target: str = Field(min_length=1)
    interval: float = Field(default=5.0, gt=0)
    timeout: float = Field(default=3.0, gt=0)
    retries: int = Field(default=3, ge=1)
    start_delay: float = Field(default=0.0, ge=0)
    expected_status: int = Field(default=200, ge=100, le=599)
    startup_timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _accept_compose_keys(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        if "start_period" in data and "start_delay" not in data:
            data["start_delay"] = data.pop("start_period")
        test = data.pop("test", None)
        if test is not None and "kind" not in data:
            # Compose style: ["CMD", "pg_isready"] or ["CMD-SHELL", "curl -f ..."]
            if isinstance(test, (list, tuple)):
                parts = [str(p) for p in test]
                if parts and parts[0] == "CMD-SHELL":
                    test = " ".join(parts[1:])
                elif parts and parts[0] == "CMD":
                    test = shlex.join(parts[1:])
                else:
                    test = shlex.join(parts)
            data["kind"] = ProbeKind.COMMAND.value
            data["target"] = test
        return data

    @field_validator("interval", "timeout", "start_delay", "startup_timeout", mode="before")
    @classmethod
    def _parse_durations(cls, value: Any) -> Any:
        if value is None:
            return None
        return parse_duration(value)

    @model_validator(mode="after")
    def _check_target(self) -> "HealthCheckSpec":
        if self.kind is ProbeKind.TCP:
            split_host_port(self.target)
        elif self.kind is ProbeKind.HTTP:
            if not self.target.startswith(("http://", "https://")):
                raise ValueError(f"HTTP target must be an http(s) URL, got {self.target!r}")
        return self

    @property
    def startup_budget(self) -> float:
        """Seconds a unit may spend awaiting health before it is failed."""
        if self.startup_timeout is not None:
            return self.startup_timeout
        return self.start_delay + 2 * self.retries * self.interval


def _coerce_health_check(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    text = value.strip()
    if text.startswith("tcp://"):
        return {"kind": ProbeKind.TCP.value, "target": text}
    if text.startswith(("http://", "https://")):
        return {"kind": ProbeKind.HTTP.value, "target": text}
    return {"kind": ProbeKind.COMMAND.value, "target": text}


class UnitSpec(BaseModel):
    """Declarative description of one service unit. Immutable once loaded."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    name: str = Field(min_length=1, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
    image: Optional[str] = None
    command: Optional[Union[str, Tuple[str, ...]]] = None
    depends_on: Tuple[str, ...] = ()
    health_check: Optional[HealthCheckSpec] = Field(default=None, alias="healthcheck")
    restart: RestartPolicy = RestartPolicy.NONE
    max_restarts: Optional[int] = Field(default=None, ge=0)
    ports: Tuple[str, ...] = ()
    volumes: Tuple[str, ...] = ()
    environment: Dict[str, str] = Field(default_factory=dict)
    stop_grace_period: float = Field(default=STOP_GRACE_SEC, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _normalize_restart(cls, data: Any) -> Any:
        if not isinstance(data, Mapping) or "restart" not in data:
            return data
        data = dict(data)
        raw = data["restart"]
        # YAML reads a bare `no` as False
        if raw is False or raw is None:
            data["restart"] = RestartPolicy.NONE.value
            return data
        if isinstance(raw, str):
            policy, _, limit = raw.strip().lower().partition(":")
            if policy not in _RESTART_ALIASES:
                raise ValueError(f"unknown restart policy {raw!r}")
            data["restart"] = _RESTART_ALIASES[policy]
            if limit:
                if policy != "on-failure":
                    raise ValueError(f"only on-failure accepts a retry limit, got {raw!r}")
                data.setdefault("max_restarts", limit)
        return data

    @field_validator("health_check", mode="before")
    @classmethod
    def _shorthand_health_check(cls, value: Any) -> Any:
        return _coerce_health_check(value)

    @field_validator("depends_on", mode="before")
    @classmethod
    def _normalize_depends_on(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        elif isinstance(value, Mapping):
            # Compose long form: {db: {condition: service_healthy}}
            value = list(value.keys())
        if isinstance(value, (list, tuple)):
            seen: List[Any] = []
            for dep in value:
                if dep not in seen:
                    seen.append(dep)
            return tuple(seen)
        return value

    @field_validator("ports", "volumes", mode="before")
    @classmethod
    def _stringify_entries(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(str(v) for v in value)
        return value

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, (list, tuple)):
            env: Dict[str, str] = {}
            for item in value:
                key, _, val = str(item).partition("=")
                env[key] = val
            return env
        if isinstance(value, Mapping):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @field_validator("command", mode="before")
    @classmethod
    def _normalize_command(cls, value: Any) -> Any:
        if isinstance(value, list):
            return tuple(str(v) for v in value)
        return value

    @field_validator("stop_grace_period", mode="before")
    @classmethod
    def _parse_grace(cls, value: Any) -> Any:
        return parse_duration(value)

    @model_validator(mode="after")
    def _check_runnable(self) -> "UnitSpec":
        if not self.image and not self.command:
            raise ValueError("a unit needs an image or a command")
        return self


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def _entries(raw: Any) -> Iterable[Tuple[str, Dict[str, Any]]]:
    body = raw
    if isinstance(raw, Mapping) and ("units" in raw or "services" in raw):
        body = raw.get("units", raw.get("services"))

    if isinstance(body, Mapping):
        for name, fields in body.items():
            if not isinstance(name, str):
                raise ValidationError(f"Unit names must be strings, got {name!r}")
            if fields is None:
                fields = {}
            if not isinstance(fields, Mapping):
                raise ValidationError(f"Definition of unit '{name}' must be a mapping")
            declared = fields.get("name", name)
            if declared != name:
                raise ValidationError(f"Unit '{name}' declares a different name '{declared}'")
            yield name, dict(fields)
    elif isinstance(body, (list, tuple)):
        for position, fields in enumerate(body):
            if not isinstance(fields, Mapping) or not isinstance(fields.get("name"), str):
                raise ValidationError(f"Unit #{position} must be a mapping with a string 'name'")
            yield fields["name"], dict(fields)
    else:
        raise ValidationError("Topology must be a mapping or a list of unit definitions")


def load(raw: Any) -> Tuple[UnitSpec, ...]:
    """
    Validate raw unit definitions.

    Returns:
        The unit specs in declaration order.

    Raises:
        ValidationError: on duplicate names, unknown dependencies or any
            malformed field (health-check descriptors included).
    """
    specs: List[UnitSpec] = []
    names = set()
    for name, fields in _entries(raw):
        if name in names:
            raise ValidationError(f"Duplicate unit name '{name}'")
        names.add(name)
        fields["name"] = name
        try:
            specs.append(UnitSpec.model_validate(fields))
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid definition for unit '{name}': {_describe(e)}") from e
        except ValueError as e:
            raise ValidationError(f"Invalid definition for unit '{name}': {e}") from e

    if not specs:
        raise ValidationError("Topology defines no units")

    for spec in specs:
        for dep in spec.depends_on:
            if dep not in names:
                raise ValidationError(f"Unit '{spec.name}' depends on unknown unit '{dep}'")

    return tuple(specs)


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys instead of overwriting."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise ValidationError(
                    f"Duplicate key '{key}' at line {key_node.start_mark.line + 1}"
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def load_file(path: Union[str, Path]) -> Tuple[UnitSpec, ...]:
    """Read a YAML or JSON topology document and validate it."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"Cannot read topology file {path}: {e}") from e
    try:
        raw = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise ValidationError(f"Topology file {path} is not valid YAML: {e}") from e
    return load(raw)


__all__ = [
    "HealthCheckSpec",
    "ProbeKind",
    "RestartPolicy",
    "UnitSpec",
    "load",
    "load_file",
    "parse_duration",
    "split_host_port",
]
