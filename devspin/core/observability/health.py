"""
Project health — aggregate per-service health into one status.

Used by ``status`` reports: a project is healthy only when every service
is running and passed its checks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from devspin.core.models.state import HealthResult, Lifecycle, RunRecord, ServiceRecord


@dataclass
class ServiceHealth:
    """Health of a single service."""

    name: str
    status: str = "unknown"  # healthy, degraded, unhealthy, unknown
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class ProjectHealth:
    """Aggregate health of a project run."""

    project: str
    status: str = "unknown"
    timestamp: str = ""
    services: list[ServiceHealth] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(UTC).isoformat()

    def add(self, service: ServiceHealth) -> None:
        self.services.append(service)
        self._recalculate()

    def _recalculate(self) -> None:
        statuses = [s.status for s in self.services]
        if any(s == "unhealthy" for s in statuses):
            self.status = "unhealthy"
        elif any(s == "degraded" for s in statuses):
            self.status = "degraded"
        elif statuses and all(s == "healthy" for s in statuses):
            self.status = "healthy"
        else:
            self.status = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "status": self.status,
            "timestamp": self.timestamp,
            "services": [s.to_dict() for s in self.services],
        }


def check_service(record: ServiceRecord) -> ServiceHealth:
    """Classify one service from its persisted record."""
    process, health = record.process, record.health
    details = {
        "state": str(process.state),
        "pid": process.pid,
        "check": health.check,
        "consecutive_failures": health.consecutive_failures,
    }

    if process.state == Lifecycle.CRASHED:
        return ServiceHealth(
            name=record.name,
            status="unhealthy",
            message=process.error or f"crashed (exit code {process.exit_code})",
            details=details,
        )
    if process.state != Lifecycle.RUNNING:
        return ServiceHealth(name=record.name, status="unknown", message=str(process.state), details=details)

    if health.result == HealthResult.HEALTHY:
        return ServiceHealth(name=record.name, status="healthy", message="running", details=details)
    if health.result == HealthResult.UNHEALTHY:
        return ServiceHealth(
            name=record.name,
            status="degraded",
            message=f"running, {health.check} failing: {health.last_error}",
            details=details,
        )
    return ServiceHealth(name=record.name, status="unknown", message="awaiting health", details=details)


def summarize(record: RunRecord) -> ProjectHealth:
    """Aggregate health for every service in a run record."""
    health = ProjectHealth(project=record.project)
    for name in (n for stage in record.stages for n in stage):
        if name in record.services:
            health.add(check_service(record.services[name]))
    return health
