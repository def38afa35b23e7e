"""
Error taxonomy — every failure the orchestrator can surface.

Components raise these at their seams. The orchestration controller is
the only place that catches them, turning them into report entries so
the caller always learns which service failed, at which stage, and why.
"""

from __future__ import annotations


class DevspinError(Exception):
    """Base class for all orchestration errors.

    Attributes:
        service: The offending service, if any.
        stage: The operation stage (validate, resolve, hook, reserve,
            spawn, health, supervise, abort, stop, state).
        cause: Human-readable cause string.
    """

    stage: str = ""

    def __init__(
        self,
        cause: str,
        *,
        service: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(cause)
        self.cause = cause
        self.service = service
        if stage is not None:
            self.stage = stage

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "service": self.service,
            "stage": self.stage,
            "cause": self.cause,
        }


class ConfigInvalid(DevspinError):
    """Schema or reference error in a project description."""

    stage = "validate"


class CycleDetected(DevspinError):
    """The service dependency graph contains a cycle."""

    stage = "resolve"

    def __init__(self, path: list[str]) -> None:
        self.path = path
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(path)}",
            service=path[0] if path else None,
        )


class AlreadyRunning(DevspinError):
    """A live run record already exists for the project."""

    stage = "validate"


class PortUnavailable(DevspinError):
    """A requested port is leased by another service or bound on the host."""

    stage = "reserve"

    def __init__(self, port: int, *, service: str, holder: str | None = None) -> None:
        self.port = port
        self.holder = holder
        where = f"leased by '{holder}'" if holder else "already bound on this host"
        super().__init__(f"Port {port} unavailable ({where})", service=service)


class SpawnFailed(DevspinError):
    """The OS process for a service could not be created or died at once."""

    stage = "spawn"


class ServiceCrashed(DevspinError):
    """A running service exited on its own."""

    stage = "supervise"

    def __init__(self, cause: str, *, service: str, exit_code: int | None = None) -> None:
        self.exit_code = exit_code
        super().__init__(cause, service=service)


class HealthCheckFailed(DevspinError):
    """A service did not become healthy within its retry budget."""

    stage = "health"

    def __init__(
        self,
        service: str,
        *,
        check: str,
        attempts: int,
        last_error: str,
    ) -> None:
        self.check = check
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Health check '{check}' failed after {attempts} attempt(s): {last_error}",
            service=service,
        )


class SignalFailed(DevspinError):
    """A process could not be terminated, even with a forceful signal."""

    stage = "stop"

    def __init__(self, cause: str, *, service: str, pid: int | None = None) -> None:
        self.pid = pid
        super().__init__(cause, service=service)


class StateStoreCorrupt(DevspinError):
    """A persisted run record exists but cannot be read."""

    stage = "state"


class RunRecordNotFound(DevspinError):
    """No persisted run record exists for the project (never started)."""

    stage = "state"
