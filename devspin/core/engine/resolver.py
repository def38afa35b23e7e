"""
Dependency resolver — turn declared service dependencies into stages.

A stage is a set of services with no dependency relationship among
them; they may start concurrently. Stages run strictly in order.
Layering is Kahn-style: each pass takes every service whose
dependencies are already scheduled. Within a stage, services keep
their declaration order so plans are reproducible.

No I/O, no subprocess.
"""

from __future__ import annotations

from collections.abc import Iterable

from devspin.core.errors import ConfigInvalid, CycleDetected
from devspin.core.models.project import Project


def select_services(
    project: Project,
    only: Iterable[str] | None = None,
    skip: Iterable[str] | None = None,
) -> list[str]:
    """Apply ``only``/``skip`` filters and return service names in declaration order.

    ``only`` keeps the named services plus their transitive dependencies.
    ``skip`` drops the named services and fails if anything left depends
    on one of them.

    Raises:
        ConfigInvalid: Unknown or empty names, both filters at once, or a
            remaining service that depends on a skipped one.
    """
    only = list(only or [])
    skip = list(skip or [])
    if only and skip:
        raise ConfigInvalid("Cannot use both 'only' and 'skip' filters simultaneously")

    known = set(project.service_names)
    for label, names in (("only", only), ("skip", skip)):
        for name in names:
            if not name.strip():
                raise ConfigInvalid(f"Empty service name in '{label}' filter")
            if name not in known:
                raise ConfigInvalid(f"Unknown service '{name}' in '{label}' filter")

    if only:
        selected: set[str] = set()
        stack = list(only)
        while stack:
            name = stack.pop()
            if name in selected:
                continue
            selected.add(name)
            service = project.get_service(name)
            if service is not None:
                stack.extend(service.depends_on)
        return [n for n in project.service_names if n in selected]

    if skip:
        skipped = set(skip)
        for service in project.services:
            if service.name in skipped:
                continue
            blocked = [d for d in service.depends_on if d in skipped]
            if blocked:
                raise ConfigInvalid(
                    f"Service '{service.name}' depends on skipped service '{blocked[0]}'",
                    service=service.name,
                )
        return [n for n in project.service_names if n not in skipped]

    return project.service_names


def resolve(project: Project, include: Iterable[str] | None = None) -> list[list[str]]:
    """Partition services into ordered startup stages.

    Args:
        project: A validated project (no self-loops, no dangling refs).
        include: Optional subset of service names to schedule; dependencies
            outside the subset are ignored.

    Returns:
        Stages as lists of service names, each in declaration order.

    Raises:
        CycleDetected: The dependency graph has a cycle. No partial plan
            is ever returned.
    """
    names = project.service_names if include is None else [
        n for n in project.service_names if n in set(include)
    ]
    members = set(names)
    deps: dict[str, set[str]] = {}
    for name in names:
        service = project.get_service(name)
        assert service is not None
        deps[name] = {d for d in service.depends_on if d in members}

    stages: list[list[str]] = []
    scheduled: set[str] = set()
    remaining = list(names)

    while remaining:
        stage = [n for n in remaining if deps[n] <= scheduled]
        if not stage:
            raise CycleDetected(_find_cycle(remaining, deps))
        stages.append(stage)
        scheduled.update(stage)
        remaining = [n for n in remaining if n not in scheduled]

    return stages


def _find_cycle(remaining: list[str], deps: dict[str, set[str]]) -> list[str]:
    """Walk dependency links among unscheduled nodes until one repeats.

    Every unscheduled node still has an unscheduled dependency, so the
    walk always ends on a cycle. Returns it as ``[a, b, ..., a]``.
    """
    pending = set(remaining)
    order = {name: i for i, name in enumerate(remaining)}
    path: list[str] = []
    seen: dict[str, int] = {}
    node = remaining[0]
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        # deterministic: follow the earliest-declared pending dependency
        node = min(deps[node] & pending, key=order.__getitem__)
    return path[seen[node]:] + [node]


def stage_index(stages: list[list[str]]) -> dict[str, int]:
    """Map each service to the index of its stage."""
    return {name: i for i, stage in enumerate(stages) for name in stage}


def shutdown_order(stages: list[list[str]]) -> list[str]:
    """Dependents before dependencies: reverse stages, reverse within a stage."""
    return [name for stage in reversed(stages) for name in reversed(stage)]
