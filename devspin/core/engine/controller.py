"""
Orchestration controller — start, stop, and report on a project.

The controller is the sole writer of cross-component transitions. It
takes the resolver's stages and, stage by stage, drives the allocator,
supervisor and health engine for every service in the stage
concurrently, persisting the run record on each transition.

Flow:
    validate → select/resolve → (dry run stops here) → pre_start hook
    → per stage: reserve → spawn → await health → persist
    → stage barrier → ... → post_start hook

On the first failure the abort event is set: in-flight health waits are
cancelled, no further spawns are issued, spawns already issued finish
and are tracked, and everything started is stopped in reverse stage
order before the report is returned. A stop issued while a start is in
progress raises the same abort and waits for that rollback.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from devspin.adapters.shell.command import run_command
from devspin.core.config.loader import service_environment
from devspin.core.config.settings import Settings
from devspin.core.engine.allocator import PortAllocator, get_allocator
from devspin.core.engine.health import HealthCheckEngine, ProbeTarget
from devspin.core.engine.reports import StartOptions, StartReport, StopReport
from devspin.core.engine.resolver import resolve, select_services, shutdown_order
from devspin.core.engine.supervisor import (
    ProcessSupervisor,
    StopOutcome,
    pid_alive,
    terminate_pid,
)
from devspin.core.errors import (
    AlreadyRunning,
    ConfigInvalid,
    DevspinError,
    HealthCheckFailed,
    RunRecordNotFound,
    ServiceCrashed,
    SignalFailed,
    StateStoreCorrupt,
)
from devspin.core.models.project import Project, Service, validate_project
from devspin.core.models.state import (
    HealthResult,
    HealthStatus,
    Lifecycle,
    ProcessState,
    RunRecord,
    ServiceRecord,
)
from devspin.core.persistence.state_file import StateStore

logger = logging.getLogger(__name__)

_LIVE_STATES = (Lifecycle.STARTING, Lifecycle.RUNNING, Lifecycle.STOPPING)


@dataclass
class _Run:
    """In-process state of one project run. Owned by the controller."""

    project: Project
    record: RunRecord
    options: StartOptions
    abort: threading.Event = field(default_factory=threading.Event)
    finished: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)
    supervisor: ProcessSupervisor | None = None
    failure: DevspinError | None = None
    attempted: set[str] = field(default_factory=set)
    stopped: list[str] = field(default_factory=list)
    released: list[int] = field(default_factory=list)

    def fail(self, error: DevspinError) -> None:
        """Record the first failure and signal the abort."""
        with self.lock:
            if self.failure is None:
                self.failure = error
                logger.error(
                    "%s: %s failed at %s: %s",
                    self.project.name,
                    error.service or "?",
                    error.stage,
                    error.cause,
                )
        self.abort.set()


class Orchestrator:
    """Coordinates allocator, supervisor, health engine and state store.

    Args:
        settings: Runtime settings (default: from ``DEVSPIN_*`` env vars).
        store: Run-record store (default: under ``settings.home``).
        allocator: Port allocator (default: the process-wide one).
        health: Health check engine (default: built from settings).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        store: StateStore | None = None,
        allocator: PortAllocator | None = None,
        health: HealthCheckEngine | None = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.store = store or StateStore(self.settings.runs_dir)
        if allocator is None:
            allocator = get_allocator() if self.settings.probe_ports else PortAllocator(probe=False)
        self.allocator = allocator
        self.health = health or HealthCheckEngine(
            interval=self.settings.health_interval,
            retries=self.settings.health_retries,
            backoff_cap=self.settings.backoff_cap,
            timeout=self.settings.health_timeout,
        )
        self._runs: dict[str, _Run] = {}
        self._runs_lock = threading.Lock()

    # ── start ───────────────────────────────────────────────────

    def start_project(self, project: Project, options: StartOptions | None = None) -> StartReport:
        """Start every selected service, stage by stage."""
        options = options or StartOptions()
        report = StartReport(project=project.name, dry_run=options.dry_run)

        try:
            self._validate(project)
            names = select_services(project, options.only, options.skip)
            stages = resolve(project, include=names)
        except DevspinError as e:
            report.fail(e)
            report.unattempted = project.service_names
            return report

        report.stages = stages
        report.planned_ports = {
            s.name: list(s.ports) for s in project.services if s.name in names and s.ports
        }

        if options.dry_run:
            logger.info("Dry run for %s: %d stage(s)", project.name, len(stages))
            report.ok = True
            return report

        run = self._new_run(project, stages, options)
        try:
            self._claim(run)
        except DevspinError as e:
            report.fail(e)
            report.unattempted = names
            return report

        try:
            return self._launch(run, report, names)
        except BaseException:
            run.abort.set()
            self._rollback(run)
            raise
        finally:
            run.finished.set()

    def _new_run(self, project: Project, stages: list[list[str]], options: StartOptions) -> _Run:
        record = RunRecord(
            project=project.name,
            config_path=str(project.base_path) if project.base_path else None,
            stages=stages,
            services={
                name: ServiceRecord.pending(name, index)
                for index, stage in enumerate(stages)
                for name in stage
            },
            metadata={
                "hooks": project.hooks.model_dump(),
                "base_path": str(project.resolve_path(None)),
            },
        )
        run = _Run(project=project, record=record, options=options)
        run.supervisor = ProcessSupervisor(
            project.name,
            logs_dir=self.settings.logs_dir,
            spawn_settle=self.settings.spawn_settle,
            listener=lambda state: self._on_process(run, state),
        )
        return run

    def _launch(self, run: _Run, report: StartReport, names: list[str]) -> StartReport:
        project, record = run.project, run.record

        if project.hooks.pre_start:
            error = self._run_hook(project, "pre_start", project.hooks.pre_start)
            if error:
                self._forget(run)
                report.fail(error)
                report.unattempted = names
                return report

        self._adopt_persisted_leases(exclude=project.name)
        with run.lock:
            self.store.persist(record)

        self._run_stages(run, record.stages)

        if run.failure is not None:
            report.fail(run.failure)
            report.rollback = self._rollback(run)
            report.unattempted = [n for n in names if n not in run.attempted]
            return report

        with run.lock:
            record.phase = "running"
            self.store.persist(record)
            report.record = record.model_copy(deep=True)
        report.started = [n for stage in record.stages for n in stage]
        report.ok = True

        if project.hooks.post_start:
            error = self._run_hook(project, "post_start", project.hooks.post_start)
            if error:
                report.warnings.append(error.cause)

        logger.info("Project %s started: %d service(s)", project.name, len(report.started))
        return report

    def _validate(self, project: Project) -> None:
        validate_project(project)
        for service in project.services:
            for check in service.health_checks:
                if not self.health.supports(check.kind):
                    raise ConfigInvalid(
                        f"Unknown health check kind '{check.kind}'",
                        service=service.name,
                    )

    def _claim(self, run: _Run) -> None:
        """Register ``run`` as the project's only run, or refuse if one is live."""
        name = run.project.name
        with self._runs_lock:
            if name in self._runs:
                raise AlreadyRunning(f"Project '{name}' is already running")
            self._runs[name] = run
        try:
            self._discard_stale_record(name)
        except BaseException:
            self._forget(run)
            raise

    def _forget(self, run: _Run) -> None:
        with self._runs_lock:
            if self._runs.get(run.project.name) is run:
                del self._runs[run.project.name]

    def _discard_stale_record(self, name: str) -> None:
        try:
            existing = self.store.load(name)
        except RunRecordNotFound:
            return
        live = [
            rec.name for rec in existing.services.values()
            if rec.process.state in _LIVE_STATES
            and pid_alive(rec.process.pid, rec.process.create_time)
        ]
        if live:
            raise AlreadyRunning(
                f"Project '{name}' is already running ({', '.join(live)}); stop it first"
            )
        logger.warning("Discarding stale run record for %s", name)
        self.store.delete(name)

    def _adopt_persisted_leases(self, exclude: str) -> None:
        """Make ports of projects started by other invocations unavailable."""
        for name in self.store.list_names():
            if name == exclude:
                continue
            try:
                record = self.store.load(name)
            except DevspinError as e:
                logger.warning("Ignoring leases of %s: %s", name, e.cause)
                continue
            self.allocator.adopt([
                lease for rec in record.services.values()
                if pid_alive(rec.process.pid, rec.process.create_time)
                for lease in rec.leases
            ])

    def _run_stages(self, run: _Run, stages: list[list[str]]) -> None:
        assert run.supervisor is not None
        for index, stage in enumerate(stages):
            if run.abort.is_set():
                break
            logger.info("%s: starting stage %d: %s", run.project.name, index, ", ".join(stage))

            workers = min(len(stage), self.settings.max_workers)
            with ThreadPoolExecutor(
                max_workers=workers,
                thread_name_prefix=f"devspin-{run.project.name}",
            ) as pool:
                futures = {
                    pool.submit(self._start_service, run, run.project.get_service(name)): name
                    for name in stage
                }
                for future in as_completed(futures):
                    try:
                        future.result()
                    except DevspinError as e:
                        run.fail(e)
                    except Exception as e:
                        run.fail(DevspinError(str(e), service=futures[future], stage="start"))
                        raise

            # barrier: anything that died since it became healthy fails the run
            for state in run.supervisor.reap():
                run.fail(ServiceCrashed(
                    state.error or "exited unexpectedly",
                    service=state.service,
                    exit_code=state.exit_code,
                ))

    def _start_service(self, run: _Run, service: Service | None) -> None:
        assert service is not None and run.supervisor is not None
        if run.abort.is_set():
            return
        run.attempted.add(service.name)
        name = run.project.name

        env = service_environment(run.project, service)
        cwd = run.project.resolve_path(service.working_dir)

        leases = self.allocator.reserve(name, service.name, service.ports)
        with run.lock:
            rec = run.record.services.get(service.name)
            if rec is not None:
                rec.leases = leases
                self.store.persist(run.record)

        # a missing entry means the run is being torn down
        if rec is None or run.abort.is_set():
            self.allocator.release(leases)
            with run.lock:
                if rec is not None:
                    rec.leases = []
                    self.store.persist(run.record)
            return

        handle = run.supervisor.spawn(service.name, service.command, env=env, working_dir=cwd)
        supervisor = run.supervisor

        try:
            self.health.await_healthy(
                ProbeTarget(service=service.name, cwd=cwd, env=env),
                service.health_checks,
                timeout=run.options.health_timeout,
                cancel=run.abort,
                is_alive=lambda: supervisor.poll(handle) is None,
                on_update=lambda status: self._on_health(run, status),
            )
        except HealthCheckFailed as e:
            with run.lock:
                rec = run.record.services.get(service.name)
                if rec is not None:
                    rec.health.result = HealthResult.UNHEALTHY
                    rec.health.last_error = e.last_error
                    self.store.persist(run.record)
            if handle.state.state == Lifecycle.CRASHED:
                raise ServiceCrashed(
                    f"exited with code {handle.state.exit_code} before becoming healthy",
                    service=service.name,
                    exit_code=handle.state.exit_code,
                ) from e
            raise

    def _on_process(self, run: _Run, state: ProcessState) -> None:
        with run.lock:
            rec = run.record.services.get(state.service)
            if rec is None:
                return
            rec.process = state
            if state.state.terminal and rec.leases:
                self.allocator.release(rec.leases)
                rec.leases = []
            self.store.persist(run.record)

    def _on_health(self, run: _Run, status: HealthStatus) -> None:
        with run.lock:
            rec = run.record.services.get(status.service)
            if rec is None:
                return
            rec.health = status
            self.store.persist(run.record)

    def _rollback(self, run: _Run) -> list[str]:
        """Stop everything a failed start left behind. Returns the actions taken."""
        assert run.supervisor is not None
        actions: list[str] = []
        survivors: list[str] = []
        name = run.project.name
        with run.lock:
            held = {lease.value: lease for lease in run.record.leases}

        for service in shutdown_order(run.record.stages):
            handle = run.supervisor.get(service)
            if handle is None:
                continue
            try:
                outcome = run.supervisor.stop(
                    handle, self.settings.grace_period, self.settings.kill_timeout
                )
            except SignalFailed as e:
                actions.append(f"failed to stop {service}: {e.cause}")
                survivors.append(service)
                continue
            run.supervisor.forget(service)
            run.stopped.append(outcome.describe())
            actions.append(outcome.describe())

        for lease in self.allocator.leases(name):
            held.setdefault(lease.value, lease)
        for port, lease in sorted(held.items()):
            if lease.owner in survivors:
                continue
            self.allocator.release([lease])
            run.released.append(port)
            actions.append(f"released port {port} ({lease.owner})")

        with run.lock:
            if survivors:
                run.record.phase = "failed"
                run.record.services = {
                    k: v for k, v in run.record.services.items() if k in survivors
                }
                self.store.persist(run.record)
                actions.append("kept run record for surviving services")
            else:
                self.store.delete(name)
                actions.append("deleted run record")

        if not survivors:
            self._forget(run)
        return actions

    # ── stop ────────────────────────────────────────────────────

    def stop_project(self, name: str) -> StopReport:
        """Stop every service of a project, dependents first."""
        report = StopReport(project=name)

        with self._runs_lock:
            run = self._runs.get(name)

        if run is not None and not run.finished.is_set():
            # the start path owns its handles until it has rolled back
            logger.info("%s: stop requested during start; aborting", name)
            run.fail(DevspinError("stop requested during start", stage="abort"))
            run.finished.wait()
            with self._runs_lock:
                current = self._runs.get(name)
            if current is not run:
                report.stopped.extend(run.stopped)
                report.released_ports.extend(sorted(run.released))
                report.record_deleted = not self.store.exists(name)
                logger.info("Project %s stopped", name)
                return report

        try:
            record = run.record if run is not None else self.store.load(name)
        except DevspinError as e:
            report.error = e.to_dict()
            return report

        hooks = record.metadata.get("hooks") or {}
        hook_cwd = Path(record.metadata.get("base_path") or ".")
        lock = run.lock if run is not None else threading.Lock()

        with lock:
            record.phase = "stopping"
            self.store.persist(record)

        if hooks.get("pre_stop"):
            self._run_stop_hook(report, "pre_stop", hooks["pre_stop"], hook_cwd)

        order = [n for n in shutdown_order(record.stages) if n in record.services]
        order += [n for n in record.services if n not in order]

        for service in order:
            rec = record.services[service]
            held = {lease.value for lease in rec.leases}
            try:
                outcome = self._stop_service(run, rec)
            except SignalFailed as e:
                logger.error("%s: could not stop %s: %s", name, service, e.cause)
                report.failed.append(e.to_dict())
                continue
            if outcome is not None:
                report.stopped.append(outcome.describe())

            freed = {lease.value for lease in self.allocator.release_owner(name, service)}
            report.released_ports.extend(sorted(freed | held))
            with lock:
                del record.services[service]
                self.store.persist(record)

        if record.services:
            logger.warning(
                "%s: %d service(s) could not be stopped", name, len(record.services)
            )
            return report

        self.allocator.release_project(name)
        report.record_deleted = True
        self.store.delete(name)
        if run is not None:
            self._forget(run)

        if hooks.get("post_stop"):
            self._run_stop_hook(report, "post_stop", hooks["post_stop"], hook_cwd)

        logger.info("Project %s stopped", name)
        return report

    def _stop_service(self, run: _Run | None, rec: ServiceRecord) -> StopOutcome | None:
        grace, kill_timeout = self.settings.grace_period, self.settings.kill_timeout
        handle = run.supervisor.get(rec.name) if run is not None and run.supervisor else None
        if handle is not None:
            assert run is not None and run.supervisor is not None
            outcome = run.supervisor.stop(handle, grace, kill_timeout)
            run.supervisor.forget(rec.name)
            return outcome
        if rec.process.pid is None or rec.process.state.terminal:
            return None
        return terminate_pid(
            rec.name,
            rec.process.pid,
            grace,
            kill_timeout,
            create_time=rec.process.create_time,
        )

    # ── hooks ───────────────────────────────────────────────────

    def _run_hook(self, project: Project, hook: str, command: str) -> DevspinError | None:
        logger.info("%s: running %s hook", project.name, hook)
        result = run_command(
            command,
            cwd=project.resolve_path(None),
            env=service_environment(project, Service(name="hooks", command=command)),
            timeout=self.settings.health_timeout,
        )
        if result.ok:
            return None
        return DevspinError(f"{hook} hook failed: {result.summary()}", stage="hook")

    def _run_stop_hook(self, report: StopReport, hook: str, command: str, cwd: Path) -> None:
        result = run_command(command, cwd=cwd, timeout=self.settings.health_timeout)
        if not result.ok:
            report.warnings.append(f"{hook} hook failed: {result.summary()}")

    # ── status / list ───────────────────────────────────────────

    def status(self, name: str | None = None) -> RunRecord | list[RunRecord]:
        """Current run record(s), with liveness refreshed from the OS.

        Raises:
            RunRecordNotFound: ``name`` was never started.
            StateStoreCorrupt: ``name`` has an unreadable record.
        """
        if name is not None:
            return self._refresh(self.store.load(name))

        records = []
        for project in self.store.list_names():
            try:
                records.append(self._refresh(self.store.load(project)))
            except StateStoreCorrupt as e:
                logger.warning("Skipping %s: %s", project, e.cause)
        return records

    def list_projects(self) -> list[str]:
        """Names of all projects with a persisted run record."""
        return self.store.list_names()

    def reap(self, name: str) -> list[ProcessState]:
        """Poll a project's in-process services; returns the ones that crashed."""
        with self._runs_lock:
            run = self._runs.get(name)
        if run is None or run.supervisor is None:
            return []
        return run.supervisor.reap()

    def supervise(self, name: str, stop_event: threading.Event, interval: float = 1.0) -> list[ProcessState]:
        """Reap periodically until ``stop_event`` is set or every service has exited."""
        crashed: list[ProcessState] = []
        while not stop_event.wait(interval):
            crashed.extend(self.reap(name))
            with self._runs_lock:
                run = self._runs.get(name)
            if run is None or run.supervisor is None:
                break
            if all(h.state.state.terminal for h in run.supervisor.handles):
                logger.warning("%s: every service has exited", name)
                break
        return crashed

    def _refresh(self, record: RunRecord) -> RunRecord:
        with self._runs_lock:
            run = self._runs.get(record.project)
        if run is not None and run.supervisor is not None:
            run.supervisor.reap()
            with run.lock:
                return run.record.model_copy(deep=True)

        for rec in record.services.values():
            if rec.process.state in _LIVE_STATES and not pid_alive(
                rec.process.pid, rec.process.create_time
            ):
                rec.process.state = Lifecycle.CRASHED
                rec.process.error = "process no longer running"
        return record


# ── Module-level convenience ────────────────────────────────────

_default: Orchestrator | None = None
_default_lock = threading.Lock()


def get_orchestrator() -> Orchestrator:
    """Process-wide orchestrator built from environment settings."""
    global _default
    with _default_lock:
        if _default is None:
            _default = Orchestrator()
        return _default


def start(project: Project, options: StartOptions | None = None) -> StartReport:
    return get_orchestrator().start_project(project, options)


def stop(name: str) -> StopReport:
    return get_orchestrator().stop_project(name)


def status(name: str | None = None) -> RunRecord | list[RunRecord]:
    return get_orchestrator().status(name)


def list_projects() -> list[str]:
    return get_orchestrator().list_projects()
