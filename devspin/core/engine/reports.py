"""
Start/stop options and reports — what the controller hands back.

Reports never raise: a failed ``start`` is a StartReport with ``ok``
False that names the first failing service, the stage it failed in,
the cause, every rollback action taken, and every service that was
never attempted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from devspin.core.errors import DevspinError
from devspin.core.models.state import RunRecord


@dataclass
class StartOptions:
    """Knobs for one ``start`` call."""

    dry_run: bool = False
    only: list[str] | None = None
    skip: list[str] | None = None
    verbose: bool = False
    health_timeout: float | None = None


@dataclass
class StartReport:
    """Result of starting (or planning) a project."""

    project: str
    ok: bool = False
    dry_run: bool = False
    stages: list[list[str]] = field(default_factory=list)
    planned_ports: dict[str, list[int]] = field(default_factory=dict)
    started: list[str] = field(default_factory=list)
    failure: dict[str, Any] | None = None
    rollback: list[str] = field(default_factory=list)
    unattempted: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    record: RunRecord | None = None

    @property
    def status(self) -> str:
        if not self.ok:
            return "failed"
        return "planned" if self.dry_run else "ok"

    @property
    def failed_service(self) -> str | None:
        return self.failure.get("service") if self.failure else None

    def fail(self, error: DevspinError) -> None:
        self.ok = False
        self.failure = error.to_dict()

    def to_dict(self, verbose: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {
            "project": self.project,
            "status": self.status,
            "dry_run": self.dry_run,
            "stages": self.stages,
            "planned_ports": self.planned_ports,
            "started": self.started,
        }
        if self.failure:
            result["failure"] = self.failure
            result["rollback"] = self.rollback
            result["unattempted"] = self.unattempted
        if self.warnings:
            result["warnings"] = self.warnings
        if verbose and self.record is not None:
            result["record"] = self.record.model_dump(mode="json")
        return result


@dataclass
class StopReport:
    """Result of stopping a project."""

    project: str
    stopped: list[str] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)
    released_ports: list[int] = field(default_factory=list)
    record_deleted: bool = False
    error: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed and self.record_deleted

    @property
    def status(self) -> str:
        if self.ok:
            return "ok"
        if self.error is not None:
            return "failed"
        return "partial"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "project": self.project,
            "status": self.status,
            "stopped": self.stopped,
            "failed": self.failed,
            "released_ports": self.released_ports,
            "record_deleted": self.record_deleted,
        }
        if self.error:
            result["error"] = self.error
        if self.warnings:
            result["warnings"] = self.warnings
        return result
