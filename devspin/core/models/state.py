"""
Run state — the snapshot persisted while a project is running.

A RunRecord is written to the per-user data directory when a project
starts, rewritten on every lifecycle transition, and deleted when the
project fully stops. Separate invocations (``status``, ``stop``) read it
to learn what is running without talking to the process that started it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Lifecycle(StrEnum):
    """Per-service process lifecycle."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"

    @property
    def terminal(self) -> bool:
        return self in (Lifecycle.STOPPED, Lifecycle.CRASHED)


class HealthResult(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ProcessState(BaseModel):
    """Lifecycle snapshot of one supervised process."""

    service: str
    pid: int | None = None
    state: Lifecycle = Lifecycle.PENDING
    started_at: str | None = None
    create_time: float | None = None  # OS start time, guards against pid reuse
    exit_code: int | None = None
    error: str | None = None


class HealthStatus(BaseModel):
    """Latest health result for one service."""

    service: str
    check: str = ""
    result: HealthResult = HealthResult.UNKNOWN
    consecutive_failures: int = 0
    attempts: int = 0
    last_checked_at: str | None = None
    last_error: str | None = None

    def record_success(self, check: str) -> None:
        self.check = check
        self.result = HealthResult.HEALTHY
        self.consecutive_failures = 0
        self.attempts += 1
        self.last_checked_at = _now_iso()
        self.last_error = None

    def record_failure(self, check: str, error: str) -> None:
        self.check = check
        self.result = HealthResult.UNHEALTHY
        self.consecutive_failures += 1
        self.attempts += 1
        self.last_checked_at = _now_iso()
        self.last_error = error


class ResourceLease(BaseModel):
    """An exclusive reservation of a host resource."""

    kind: str = "port"
    value: int
    owner: str
    project: str
    acquired_at: str = Field(default_factory=_now_iso)


class ServiceRecord(BaseModel):
    """Everything persisted about one service in a run."""

    name: str
    stage: int = 0
    process: ProcessState
    health: HealthStatus
    leases: list[ResourceLease] = Field(default_factory=list)

    @classmethod
    def pending(cls, name: str, stage: int) -> ServiceRecord:
        return cls(
            name=name,
            stage=stage,
            process=ProcessState(service=name),
            health=HealthStatus(service=name),
        )


class RunRecord(BaseModel):
    """Persisted state of one project's orchestration run."""

    # ── Schema ───────────────────────────────────────────────────
    schema_version: int = 1

    # ── Identity ─────────────────────────────────────────────────
    project: str
    config_path: str | None = None
    phase: str = "starting"  # starting, running, stopping, failed

    # ── Timestamps ───────────────────────────────────────────────
    started_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    # ── Component state ──────────────────────────────────────────
    stages: list[list[str]] = Field(default_factory=list)
    services: dict[str, ServiceRecord] = Field(default_factory=dict)

    # ── Extensible metadata ──────────────────────────────────────
    metadata: dict[str, Any] = Field(default_factory=dict)

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = _now_iso()

    def service(self, name: str) -> ServiceRecord:
        return self.services[name]

    @property
    def leases(self) -> list[ResourceLease]:
        return [lease for rec in self.services.values() for lease in rec.leases]

    @property
    def all_healthy(self) -> bool:
        return bool(self.services) and all(
            rec.process.state == Lifecycle.RUNNING
            and rec.health.result == HealthResult.HEALTHY
            for rec in self.services.values()
        )
