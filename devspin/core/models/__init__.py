"""
Domain models — Pydantic types for devspin.

All models are re-exported here for convenient access:

    from devspin.core.models import Project, Service, RunRecord
"""

from devspin.core.models.project import (
    BUILTIN_CHECK_KINDS,
    Commands,
    HealthCheckSpec,
    Hooks,
    Project,
    Service,
    validate_project,
)
from devspin.core.models.state import (
    HealthResult,
    HealthStatus,
    Lifecycle,
    ProcessState,
    ResourceLease,
    RunRecord,
    ServiceRecord,
)

__all__ = [
    # project.py
    "BUILTIN_CHECK_KINDS",
    "Commands",
    "HealthCheckSpec",
    "Hooks",
    "Project",
    "Service",
    "validate_project",
    # state.py
    "HealthResult",
    "HealthStatus",
    "Lifecycle",
    "ProcessState",
    "ResourceLease",
    "RunRecord",
    "ServiceRecord",
]
