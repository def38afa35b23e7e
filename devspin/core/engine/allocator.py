"""
Resource allocator — exclusive port leases across all active projects.

Before a service is spawned, every port it declares is reserved here.
The lease table is process-global and lock-guarded: it is the only
state shared between projects orchestrated in the same process.

The OS probe (can we bind the port right now?) is best-effort. Another
program may grab the port between the probe and the spawn; a failed
spawn or health check is the backstop for that race.
"""

from __future__ import annotations

import errno
import logging
import socket
import threading

from devspin.core.errors import PortUnavailable
from devspin.core.models.state import ResourceLease

logger = logging.getLogger(__name__)

_PROBE_HOSTS = ("127.0.0.1", "0.0.0.0")


def port_bindable(port: int) -> bool:
    """Whether the port can be bound on loopback and all interfaces."""
    for host in _PROBE_HOSTS:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((host, port))
            except OSError as e:
                if e.errno not in (errno.EADDRINUSE, errno.EACCES):
                    logger.debug("Unexpected bind error on %s:%d: %s", host, port, e)
                return False
    return True


class PortAllocator:
    """Port lease table.

    Args:
        probe: Whether to check the OS for bindability before leasing.
    """

    def __init__(self, probe: bool = True) -> None:
        self.probe = probe
        self._leases: dict[int, ResourceLease] = {}
        self._lock = threading.Lock()

    def reserve(self, project: str, service: str, ports: list[int]) -> list[ResourceLease]:
        """Lease every port for the service, or none of them.

        Raises:
            PortUnavailable: First port that is leased elsewhere or bound
                on the host. No partial lease is left behind.
        """
        with self._lock:
            for port in ports:
                held = self._leases.get(port)
                if held is not None and (held.project, held.owner) != (project, service):
                    raise PortUnavailable(
                        port, service=service, holder=f"{held.project}/{held.owner}"
                    )
            if self.probe:
                for port in ports:
                    if port not in self._leases and not port_bindable(port):
                        raise PortUnavailable(port, service=service)

            leases = []
            for port in ports:
                lease = self._leases.get(port) or ResourceLease(
                    value=port, owner=service, project=project
                )
                self._leases[port] = lease
                leases.append(lease)

        if leases:
            logger.info(
                "Leased port(s) %s to %s/%s",
                ", ".join(str(p) for p in ports),
                project,
                service,
            )
        return leases

    def release(self, leases: list[ResourceLease]) -> None:
        """Release specific leases. Unknown or foreign leases are ignored."""
        with self._lock:
            for lease in leases:
                held = self._leases.get(lease.value)
                if held is not None and (held.project, held.owner) == (lease.project, lease.owner):
                    del self._leases[lease.value]
                    logger.debug("Released port %d from %s/%s", lease.value, lease.project, lease.owner)

    def release_owner(self, project: str, service: str) -> list[ResourceLease]:
        """Release every lease held by one service."""
        with self._lock:
            freed = [
                lease for lease in self._leases.values()
                if lease.project == project and lease.owner == service
            ]
            for lease in freed:
                del self._leases[lease.value]
        return freed

    def release_project(self, project: str) -> list[ResourceLease]:
        """Release every lease held by a project."""
        with self._lock:
            freed = [lease for lease in self._leases.values() if lease.project == project]
            for lease in freed:
                del self._leases[lease.value]
        if freed:
            logger.info("Released %d lease(s) for project %s", len(freed), project)
        return freed

    def adopt(self, leases: list[ResourceLease]) -> None:
        """Re-register leases restored from a persisted run record."""
        with self._lock:
            for lease in leases:
                self._leases.setdefault(lease.value, lease)

    def leases(self, project: str | None = None) -> list[ResourceLease]:
        """Snapshot of active leases, optionally for one project."""
        with self._lock:
            return [
                lease for lease in self._leases.values()
                if project is None or lease.project == project
            ]


_allocator: PortAllocator | None = None
_allocator_lock = threading.Lock()


def get_allocator() -> PortAllocator:
    """Process-wide allocator shared by every orchestrator."""
    global _allocator
    with _allocator_lock:
        if _allocator is None:
            _allocator = PortAllocator()
        return _allocator
