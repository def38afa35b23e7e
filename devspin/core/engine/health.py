"""
Health check engine — wait for a started service to become ready.

Every configured check must pass. Each check is polled with a bounded
retry budget and a capped, monotonically growing delay between
attempts. A failed attempt bumps the service's failure counter; a
success resets it. The wait gives up early when the abort event is
set, when the overall timeout elapses, or when the supervised process
dies underneath it.

Probes return ``(ok, error_message)``. Built-in kinds:

    port     TCP connect to host:port
    command  shell command exits 0
    http     GET returns a 2xx/3xx status

Extra kinds can be registered with ``register_probe``.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from devspin.adapters.shell.command import run_command
from devspin.core.errors import HealthCheckFailed
from devspin.core.models.project import HealthCheckSpec
from devspin.core.models.state import HealthStatus
from devspin.core.reliability.backoff import Backoff

logger = logging.getLogger(__name__)


@dataclass
class ProbeTarget:
    """What a probe needs to know about the service under test."""

    service: str
    cwd: Path | None = None
    env: dict[str, str] | None = None
    host: str = "127.0.0.1"


Probe = Callable[[HealthCheckSpec, ProbeTarget], tuple[bool, str]]


def probe_port(check: HealthCheckSpec, target: ProbeTarget) -> tuple[bool, str]:
    """Succeeds once something accepts TCP connections on the port."""
    assert check.port is not None
    try:
        with socket.create_connection((target.host, check.port), timeout=check.timeout):
            return True, ""
    except OSError as e:
        return False, f"{target.host}:{check.port} not accepting connections ({e})"


def probe_command(check: HealthCheckSpec, target: ProbeTarget) -> tuple[bool, str]:
    """Succeeds when the command exits with status 0."""
    assert check.command is not None
    result = run_command(check.command, cwd=target.cwd, env=target.env, timeout=check.timeout)
    return result.ok, "" if result.ok else f"'{check.command}' {result.summary()}"


def probe_http(check: HealthCheckSpec, target: ProbeTarget) -> tuple[bool, str]:
    """Succeeds on any 2xx/3xx response."""
    assert check.url is not None
    try:
        with urllib.request.urlopen(check.url, timeout=check.timeout) as resp:
            if resp.status < 400:
                return True, ""
            return False, f"{check.url} returned HTTP {resp.status}"
    except urllib.error.HTTPError as e:
        return False, f"{check.url} returned HTTP {e.code}"
    except (urllib.error.URLError, OSError) as e:
        reason = getattr(e, "reason", e)
        return False, f"{check.url} unreachable ({reason})"


@dataclass
class HealthCheckEngine:
    """Polls health checks with bounded retry.

    Args:
        interval: Default first delay between attempts.
        retries: Default attempt budget per check.
        backoff_cap: Upper bound for any single delay.
        timeout: Default overall wait per service.
    """

    interval: float = 0.5
    retries: int = 30
    backoff_cap: float = 5.0
    timeout: float = 60.0
    probes: dict[str, Probe] = field(default_factory=lambda: {
        "port": probe_port,
        "command": probe_command,
        "http": probe_http,
    })

    def register_probe(self, kind: str, probe: Probe) -> None:
        """Add or replace a probe kind."""
        self.probes[kind] = probe

    def supports(self, kind: str) -> bool:
        return kind in self.probes

    def await_healthy(
        self,
        target: ProbeTarget,
        checks: list[HealthCheckSpec],
        timeout: float | None = None,
        cancel: threading.Event | None = None,
        is_alive: Callable[[], bool] | None = None,
        on_update: Callable[[HealthStatus], None] | None = None,
    ) -> HealthStatus:
        """Block until every check passes.

        Args:
            target: Service under test.
            checks: Checks to satisfy, in order.
            timeout: Overall deadline (default: engine timeout).
            cancel: Abort event; when set the wait ends promptly.
            is_alive: Returns False once the supervised process has exited.
            on_update: Called whenever the health result changes.

        Returns:
            A healthy HealthStatus.

        Raises:
            HealthCheckFailed: Retry budget exhausted, timed out, cancelled,
                or the process died.
        """
        status = HealthStatus(service=target.service)
        cancel = cancel or threading.Event()
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)

        if not checks:
            status.record_success("running")
            self._notify(on_update, status)
            return status

        for check in checks:
            self._await_check(target, check, status, deadline, cancel, is_alive, on_update)

        self._notify(on_update, status)
        logger.info("%s is healthy", target.service)
        return status

    def _await_check(
        self,
        target: ProbeTarget,
        check: HealthCheckSpec,
        status: HealthStatus,
        deadline: float,
        cancel: threading.Event,
        is_alive: Callable[[], bool] | None,
        on_update: Callable[[HealthStatus], None] | None,
    ) -> None:
        probe = self.probes.get(check.kind)
        if probe is None:
            raise HealthCheckFailed(
                target.service,
                check=check.label,
                attempts=0,
                last_error=f"no probe registered for kind '{check.kind}'",
            )

        backoff = Backoff(
            base_delay=check.interval or self.interval,
            max_delay=self.backoff_cap,
            max_attempts=check.retries or self.retries,
        )
        label = check.label

        def fail(error: str) -> HealthCheckFailed:
            return HealthCheckFailed(
                target.service,
                check=label,
                attempts=status.consecutive_failures,
                last_error=error,
            )

        while True:
            if cancel.is_set():
                raise fail(f"cancelled ({status.last_error or 'no probe completed'})")
            if is_alive is not None and not is_alive():
                raise fail("process exited while awaiting health")

            ok, error = probe(check, target)
            previous = status.result
            if ok:
                status.record_success(label)
                logger.debug("%s: %s passed", target.service, label)
                return

            status.record_failure(label, error)
            logger.debug(
                "%s: %s failed (attempt %d): %s",
                target.service,
                label,
                status.consecutive_failures,
                error,
            )
            if previous != status.result:
                self._notify(on_update, status)

            delay = backoff.next_delay()
            if backoff.exhausted:
                raise fail(error)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise fail(f"timed out: {error}")
            if cancel.wait(min(delay, remaining)):
                raise fail(f"cancelled: {error}")

    @staticmethod
    def _notify(on_update: Callable[[HealthStatus], None] | None, status: HealthStatus) -> None:
        if on_update is not None:
            on_update(status.model_copy())

