"""
Project model — the typed description of a devspin project.

Loaded from devspin.yaml by the config loader, this is the canonical
truth about which services exist, how they depend on each other, and
how each one is started and checked. The orchestration engine only ever
sees this validated structure, never raw YAML.
"""

from __future__ import annotations

import re
from pathlib import Path

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from devspin.core.errors import ConfigInvalid

# Built-in probe kinds. Anything else must be registered on the engine.
BUILTIN_CHECK_KINDS = ("port", "command", "http")

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class HealthCheckSpec(BaseModel):
    """A readiness probe for a service.

    ``interval`` and ``retries`` fall back to the orchestrator settings
    when left unset.
    """

    kind: str = Field(validation_alias=AliasChoices("kind", "type"))
    port: int | None = None
    command: str | None = None
    url: str | None = Field(default=None, validation_alias=AliasChoices("url", "http_target"))
    interval: float | None = None
    retries: int | None = None
    timeout: float = 2.0  # per-probe

    @model_validator(mode="after")
    def _check_required_target(self) -> HealthCheckSpec:
        if self.kind == "command" and not self.command:
            raise ValueError("command health check requires 'command'")
        if self.kind == "http" and not self.url:
            raise ValueError("http health check requires 'url'")
        if self.retries is not None and self.retries < 1:
            raise ValueError("health check 'retries' must be >= 1")
        if self.interval is not None and self.interval <= 0:
            raise ValueError("health check 'interval' must be > 0")
        return self

    @property
    def label(self) -> str:
        """Short description used in reports (``port:5432``, ``http``...)."""
        if self.kind == "port" and self.port:
            return f"port:{self.port}"
        return self.kind


class Service(BaseModel):
    """A long-running process that belongs to a project."""

    name: str
    command: str
    working_dir: str | None = None
    depends_on: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("depends_on", "dependencies"),
    )
    health_checks: list[HealthCheckSpec] = Field(
        default_factory=list,
        validation_alias=AliasChoices("health_checks", "health_check"),
    )
    ports: list[int] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    service_type: str = "process"

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _NAME_RE.match(value):
            raise ValueError(f"invalid service name: {value!r}")
        return value

    @field_validator("health_checks", mode="before")
    @classmethod
    def _wrap_single_check(cls, value: object) -> object:
        # The single-mapping form is accepted for older config files.
        if isinstance(value, dict):
            return [value]
        return value

    @field_validator("ports")
    @classmethod
    def _check_ports(cls, value: list[int]) -> list[int]:
        for port in value:
            if not 1 <= port <= 65535:
                raise ValueError(f"port out of range: {port}")
        if len(set(value)) != len(value):
            raise ValueError("duplicate port in service")
        return value

    @model_validator(mode="after")
    def _default_port_check(self) -> Service:
        for check in self.health_checks:
            if check.kind == "port" and check.port is None:
                if not self.ports:
                    raise ValueError(
                        f"port health check on '{self.name}' needs 'port' "
                        "or a declared service port"
                    )
                check.port = self.ports[0]
        return self


class Commands(BaseModel):
    """Top-level project commands (informational to the engine)."""

    dev: str = ""
    test: str | None = None
    build: str | None = None
    clean: str | None = None


class Hooks(BaseModel):
    """Shell commands run around start and stop."""

    pre_start: str | None = None
    post_start: str | None = None
    pre_stop: str | None = None
    post_stop: str | None = None


class Project(BaseModel):
    """Root project description — loaded from devspin.yaml.

    Service order is significant: it is the tie-break used when
    several services can start in the same stage.
    """

    name: str
    description: str = ""
    commands: Commands = Field(default_factory=Commands)
    services: list[Service] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    hooks: Hooks = Field(default_factory=Hooks)
    env_file: str | None = None

    # Directory of the config file; relative paths resolve against it.
    base_path: Path | None = Field(default=None, exclude=True)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _NAME_RE.match(value):
            raise ValueError(f"invalid project name: {value!r}")
        return value

    @property
    def service_names(self) -> list[str]:
        """Service names in declaration order."""
        return [s.name for s in self.services]

    def get_service(self, name: str) -> Service | None:
        """Look up a service by name."""
        for service in self.services:
            if service.name == name:
                return service
        return None

    def edges(self) -> list[tuple[str, str]]:
        """Dependency edges as ``(dependent, dependency)`` pairs."""
        return [(s.name, dep) for s in self.services for dep in s.depends_on]

    def resolve_path(self, relative: str | None) -> Path:
        """Resolve a working directory against the project base path."""
        base = self.base_path or Path.cwd()
        if not relative:
            return base
        path = Path(relative).expanduser()
        return path if path.is_absolute() else base / path

    def problems(self) -> list[str]:
        """Reference errors that the schema alone cannot catch."""
        errors: list[str] = []
        names = self.service_names

        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            errors.append(f"Duplicate service names: {', '.join(dupes)}")

        known = set(names)
        for service in self.services:
            for dep in service.depends_on:
                if dep == service.name:
                    errors.append(f"Service '{service.name}' depends on itself")
                elif dep not in known:
                    errors.append(
                        f"Service '{service.name}' depends on unknown service '{dep}'"
                    )
        return errors


def validate_project(project: Project) -> None:
    """Raise ConfigInvalid if the project violates its invariants."""
    errors = project.problems()
    if errors:
        raise ConfigInvalid("; ".join(errors))
