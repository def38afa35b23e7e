"""
Process supervisor — spawn, signal, wait for and reap service processes.

Per service:

    pending → starting → running → stopping → stopped
                  │          └────────────→ crashed
                  └──────→ crashed (spawn error)

Stopping is a timed two-phase transition: SIGTERM to the process group,
wait up to the grace period, then SIGKILL and wait for the OS to
confirm. Every transition is pushed to the listener so the controller
can persist it.

Each service runs in its own session (``start_new_session=True``) so
signals reach the whole process group, including children of the
shell. Processes started by an earlier invocation are stopped by pid
with psutil.
"""

from __future__ import annotations

import logging
import os
import signal as _signal
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Literal

import psutil

from devspin.core.errors import SignalFailed, SpawnFailed
from devspin.core.models.state import Lifecycle, ProcessState

logger = logging.getLogger(__name__)

SignalKind = Literal["term", "kill"]

_SIGNALS: dict[str, int] = {"term": _signal.SIGTERM, "kill": _signal.SIGKILL}

# Tolerance when comparing a recorded create_time with the live process
_CREATE_TIME_SLACK = 1.0

Listener = Callable[[ProcessState], None]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class ExitOutcome:
    """How a supervised process ended."""

    service: str
    exit_code: int
    state: Lifecycle


@dataclass
class StopOutcome:
    """Result of stopping one process."""

    service: str
    pid: int | None
    state: Lifecycle
    forced: bool = False
    already_exited: bool = False
    exit_code: int | None = None

    def describe(self) -> str:
        if self.already_exited:
            return f"{self.service}: already exited (code {self.exit_code})"
        how = "killed (SIGKILL after grace period)" if self.forced else "stopped"
        return f"{self.service}: {how}"


@dataclass
class ProcessHandle:
    """Live OS handle for one supervised service."""

    service: str
    popen: subprocess.Popen
    state: ProcessState
    log_file: IO[bytes] | None = None
    stop_requested: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def pid(self) -> int:
        return self.popen.pid


class ProcessSupervisor:
    """Owns the OS handles of one project's services.

    Args:
        project: Project name (used for log file paths and log lines).
        logs_dir: Directory for per-service output logs. None discards output.
        spawn_settle: Seconds to watch a fresh process for an immediate exit.
        listener: Called with a ProcessState snapshot on every transition.
    """

    def __init__(
        self,
        project: str,
        logs_dir: Path | None = None,
        spawn_settle: float = 0.05,
        listener: Listener | None = None,
    ) -> None:
        self.project = project
        self.logs_dir = logs_dir
        self.spawn_settle = spawn_settle
        self.listener = listener
        self._handles: dict[str, ProcessHandle] = {}
        self._lock = threading.Lock()

    # ── Registry ────────────────────────────────────────────────

    def get(self, service: str) -> ProcessHandle | None:
        with self._lock:
            return self._handles.get(service)

    @property
    def handles(self) -> list[ProcessHandle]:
        """Tracked handles in spawn order."""
        with self._lock:
            return list(self._handles.values())

    def forget(self, service: str) -> None:
        """Drop a terminated handle from the registry."""
        with self._lock:
            handle = self._handles.pop(service, None)
        if handle is not None and handle.log_file is not None:
            handle.log_file.close()

    # ── Transitions ─────────────────────────────────────────────

    def _transition(self, state: ProcessState, new: Lifecycle, **changes: object) -> None:
        old = state.state
        state.state = new
        for key, value in changes.items():
            setattr(state, key, value)
        logger.info("%s/%s: %s → %s", self.project, state.service, old, new)
        if self.listener is not None:
            self.listener(state.model_copy())

    def _record_exit(self, handle: ProcessHandle, code: int) -> ExitOutcome:
        with handle.lock:
            if not handle.state.state.terminal:
                if handle.stop_requested:
                    self._transition(handle.state, Lifecycle.STOPPED, exit_code=code)
                else:
                    logger.warning(
                        "%s/%s exited unexpectedly with code %d",
                        self.project,
                        handle.service,
                        code,
                    )
                    self._transition(
                        handle.state,
                        Lifecycle.CRASHED,
                        exit_code=code,
                        error=f"exited unexpectedly with code {code}",
                    )
            return ExitOutcome(handle.service, code, handle.state.state)

    # ── Operations ──────────────────────────────────────────────

    def spawn(
        self,
        service: str,
        command: str,
        env: dict[str, str] | None = None,
        working_dir: Path | None = None,
    ) -> ProcessHandle:
        """Start a service process.

        Raises:
            SpawnFailed: The process could not be created, or exited
                within the settle window.
        """
        state = ProcessState(service=service)
        self._transition(state, Lifecycle.STARTING)

        if working_dir is not None and not working_dir.is_dir():
            cause = f"Working directory does not exist: {working_dir}"
            self._transition(state, Lifecycle.CRASHED, error=cause)
            raise SpawnFailed(cause, service=service)

        log_file = self._open_log(service)
        try:
            popen = subprocess.Popen(
                command,
                shell=True,
                cwd=working_dir,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_file if log_file is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            if log_file is not None:
                log_file.close()
            cause = f"Failed to spawn '{command}': {e}"
            self._transition(state, Lifecycle.CRASHED, error=cause)
            raise SpawnFailed(cause, service=service) from e

        handle = ProcessHandle(service=service, popen=popen, state=state, log_file=log_file)
        with self._lock:
            self._handles[service] = handle

        self._transition(
            state,
            Lifecycle.RUNNING,
            pid=popen.pid,
            started_at=_now_iso(),
            create_time=_create_time(popen.pid),
        )

        outcome = self.wait(handle, timeout=self.spawn_settle)
        if outcome is not None:
            raise SpawnFailed(
                f"'{command}' exited immediately with code {outcome.exit_code}",
                service=service,
            )
        return handle

    def signal(self, handle: ProcessHandle, kind: SignalKind) -> None:
        """Send SIGTERM or SIGKILL to the service's process group.

        Raises:
            SignalFailed: The OS refused the signal.
        """
        signum = _SIGNALS[kind]
        try:
            os.killpg(handle.pid, signum)
        except ProcessLookupError:
            logger.debug("%s: process group %d already gone", handle.service, handle.pid)
        except PermissionError as e:
            raise SignalFailed(
                f"Not permitted to signal pid {handle.pid}: {e}",
                service=handle.service,
                pid=handle.pid,
            ) from e

    def poll(self, handle: ProcessHandle) -> ExitOutcome | None:
        """Non-blocking check. Returns the outcome if the process has exited."""
        code = handle.popen.poll()
        if code is None:
            return None
        return self._record_exit(handle, code)

    def wait(self, handle: ProcessHandle, timeout: float) -> ExitOutcome | None:
        """Block up to ``timeout`` seconds for the process to exit."""
        try:
            code = handle.popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        return self._record_exit(handle, code)

    def stop(self, handle: ProcessHandle, grace: float, kill_timeout: float) -> StopOutcome:
        """Gracefully stop a service, escalating to SIGKILL after ``grace``.

        Raises:
            SignalFailed: The process survived SIGKILL for ``kill_timeout``.
        """
        exited = self.poll(handle)
        if exited is not None:
            # exited out-of-band (or already stopped)
            return StopOutcome(
                service=handle.service,
                pid=handle.pid,
                state=exited.state,
                already_exited=True,
                exit_code=exited.exit_code,
            )

        with handle.lock:
            handle.stop_requested = True
            if handle.state.state == Lifecycle.RUNNING:
                self._transition(handle.state, Lifecycle.STOPPING)

        self.signal(handle, "term")
        outcome = self.wait(handle, timeout=grace)
        forced = False

        if outcome is None:
            logger.warning(
                "%s/%s did not exit within %.1fs, sending SIGKILL",
                self.project,
                handle.service,
                grace,
            )
            forced = True
            self.signal(handle, "kill")
            outcome = self.wait(handle, timeout=kill_timeout)
            if outcome is None:
                raise SignalFailed(
                    f"pid {handle.pid} survived SIGKILL for {kill_timeout}s",
                    service=handle.service,
                    pid=handle.pid,
                )

        _sweep_group(handle.pid)
        return StopOutcome(
            service=handle.service,
            pid=handle.pid,
            state=outcome.state,
            forced=forced,
            exit_code=outcome.exit_code,
        )

    def stop_all(self, grace: float, kill_timeout: float) -> tuple[list[StopOutcome], list[SignalFailed]]:
        """Stop every tracked process, most recently spawned first."""
        stopped: list[StopOutcome] = []
        failed: list[SignalFailed] = []
        for handle in reversed(self.handles):
            try:
                stopped.append(self.stop(handle, grace, kill_timeout))
            except SignalFailed as e:
                failed.append(e)
                continue
            self.forget(handle.service)
        return stopped, failed

    def reap(self) -> list[ProcessState]:
        """Poll every tracked process; report the ones that died on their own."""
        crashed = []
        for handle in self.handles:
            if handle.state.state.terminal or handle.stop_requested:
                continue
            outcome = self.poll(handle)
            if outcome is not None and outcome.state == Lifecycle.CRASHED:
                crashed.append(handle.state.model_copy())
        return crashed

    def _open_log(self, service: str) -> IO[bytes] | None:
        if self.logs_dir is None:
            return None
        directory = self.logs_dir / self.project
        directory.mkdir(parents=True, exist_ok=True)
        return open(directory / f"{service}.log", "ab")


# ── Processes from earlier invocations ──────────────────────────


def _create_time(pid: int) -> float | None:
    try:
        return psutil.Process(pid).create_time()
    except psutil.Error:
        return None


def _matching_process(pid: int, create_time: float | None) -> psutil.Process | None:
    """The live process for a recorded pid, or None if it is gone or reused."""
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return None
        if create_time is not None and abs(proc.create_time() - create_time) > _CREATE_TIME_SLACK:
            return None
        return proc
    except psutil.NoSuchProcess:
        return None


def pid_alive(pid: int | None, create_time: float | None = None) -> bool:
    """Whether a recorded process is still running."""
    if pid is None:
        return False
    return _matching_process(pid, create_time) is not None


def _sweep_group(pgid: int) -> None:
    """Kill stragglers left in a process group after its leader exited."""
    try:
        os.killpg(pgid, _signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        return
    logger.debug("Killed leftover members of process group %d", pgid)


def terminate_pid(
    service: str,
    pid: int,
    grace: float,
    kill_timeout: float,
    create_time: float | None = None,
) -> StopOutcome:
    """Stop a process recorded by an earlier invocation.

    Raises:
        SignalFailed: The process (or one of its children) survived SIGKILL.
    """
    proc = _matching_process(pid, create_time)
    if proc is None:
        logger.info("%s: pid %d already gone", service, pid)
        return StopOutcome(service=service, pid=pid, state=Lifecycle.CRASHED, already_exited=True)

    try:
        procs = [proc, *proc.children(recursive=True)]
    except psutil.NoSuchProcess:
        procs = [proc]

    try:
        os.killpg(pid, _signal.SIGTERM)
    except ProcessLookupError:
        pass
    except PermissionError:
        # not a group leader we may signal; fall back to the tree
        for p in procs:
            try:
                p.terminate()
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                raise SignalFailed(f"Not permitted to signal pid {p.pid}", service=service, pid=p.pid) from e

    _gone, alive = psutil.wait_procs(procs, timeout=grace)
    forced = False
    if alive:
        logger.warning("%s: pid %d did not exit within %.1fs, sending SIGKILL", service, pid, grace)
        forced = True
        for p in alive:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                raise SignalFailed(f"Not permitted to kill pid {p.pid}", service=service, pid=p.pid) from e
        _gone, alive = psutil.wait_procs(alive, timeout=kill_timeout)
        if alive:
            raise SignalFailed(
                f"pid(s) {', '.join(str(p.pid) for p in alive)} survived SIGKILL",
                service=service,
                pid=pid,
            )

    return StopOutcome(service=service, pid=pid, state=Lifecycle.STOPPED, forced=forced)
