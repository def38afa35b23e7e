"""
Tests for the orchestration controller — start, stop, status, rollback.

End-to-end against real child processes; every test stops what it starts.
"""

import os
import signal
import sys
import threading
import time

import pytest

from devspin.core.config.loader import load_project
from devspin.core.engine.controller import Orchestrator
from devspin.core.engine.reports import StartOptions
from devspin.core.errors import RunRecordNotFound, SignalFailed
from devspin.core.models import HealthResult, Lifecycle, Project, Service
from devspin.core.engine.supervisor import ProcessSupervisor, pid_alive


def _listen(port: int) -> str:
    """Command for a service that accepts TCP connections on ``port``."""
    return f"{sys.executable} -m http.server {port} --bind 127.0.0.1"


@pytest.fixture
def web_project(write_project, free_port):
    """db → api → frontend, each healthy once its port accepts connections."""
    db_port, api_port, fe_port = free_port(), free_port(), free_port()
    path = write_project(f"""\
        name: web
        services:
          - name: db
            command: {_listen(db_port)}
            ports: [{db_port}]
            health_checks:
              - type: port
          - name: api
            command: {_listen(api_port)}
            depends_on: [db]
            ports: [{api_port}]
            health_checks:
              - type: port
          - name: frontend
            command: {_listen(fe_port)}
            depends_on: [api]
            ports: [{fe_port}]
            health_checks:
              - type: port
    """)
    return load_project(path)


def _sleepers(tmp_path, *specs: tuple[str, list[str]], ports: dict[str, list[int]] | None = None) -> Project:
    ports = ports or {}
    return Project(
        name="sleepers",
        base_path=tmp_path,
        services=[
            Service(name=n, command="sleep 30", depends_on=d, ports=ports.get(n, []))
            for n, d in specs
        ],
    )


# ── Start ────────────────────────────────────────────────────────────


class TestStart:
    def test_start_status_stop(self, orchestrator: Orchestrator, web_project):
        report = orchestrator.start_project(web_project)
        assert report.ok, report.failure
        assert report.status == "ok"
        assert report.stages == [["db"], ["api"], ["frontend"]]
        assert report.started == ["db", "api", "frontend"]

        record = orchestrator.status("web")
        assert record.all_healthy
        assert record.phase == "running"
        for rec in record.services.values():
            assert rec.process.state == Lifecycle.RUNNING
            assert rec.health.result == HealthResult.HEALTHY
            assert pid_alive(rec.process.pid)
        assert len(record.leases) == 3
        pids = [rec.process.pid for rec in record.services.values()]

        stop = orchestrator.stop_project("web")
        assert stop.ok
        assert stop.stopped[0].startswith("frontend")
        assert stop.stopped[-1].startswith("db")
        assert len(stop.released_ports) == 3
        assert orchestrator.allocator.leases() == []
        assert orchestrator.list_projects() == []
        assert not any(pid_alive(pid) for pid in pids)

    def test_record_persisted_while_running(self, orchestrator, store, tmp_path):
        project = _sleepers(tmp_path, ("db", []), ("api", ["db"]))
        assert orchestrator.start_project(project).ok

        persisted = store.load("sleepers")
        assert persisted.stages == [["db"], ["api"]]
        assert all(r.process.pid for r in persisted.services.values())
        assert orchestrator.list_projects() == ["sleepers"]

    def test_dry_run(self, orchestrator, store, web_project):
        report = orchestrator.start_project(web_project, StartOptions(dry_run=True))
        assert report.ok
        assert report.status == "planned"
        assert report.stages == [["db"], ["api"], ["frontend"]]
        assert sorted(report.planned_ports) == ["api", "db", "frontend"]
        assert report.started == []
        assert not store.exists("web")
        assert orchestrator.allocator.leases() == []

    def test_only_starts_dependencies_too(self, orchestrator, tmp_path):
        project = _sleepers(tmp_path, ("db", []), ("api", ["db"]), ("frontend", ["api"]))
        report = orchestrator.start_project(project, StartOptions(only=["api"]))
        assert report.ok
        assert report.started == ["db", "api"]
        assert set(orchestrator.status("sleepers").services) == {"db", "api"}

    def test_already_running(self, orchestrator, tmp_path):
        project = _sleepers(tmp_path, ("db", []))
        assert orchestrator.start_project(project).ok
        again = orchestrator.start_project(project)
        assert not again.ok
        assert again.failure["error"] == "AlreadyRunning"

    def test_already_running_across_invocations(self, orchestrator, settings, store, tmp_path):
        project = _sleepers(tmp_path, ("db", []))
        assert orchestrator.start_project(project).ok
        other = Orchestrator(settings=settings, store=store)
        report = other.start_project(project)
        assert report.failure["error"] == "AlreadyRunning"

    def test_stale_record_replaced(self, orchestrator, settings, store, tmp_path):
        project = _sleepers(tmp_path, ("db", []))
        assert orchestrator.start_project(project).ok
        pid = store.load("sleepers").service("db").process.pid
        os.killpg(pid, signal.SIGKILL)

        fresh = Orchestrator(settings=settings, store=store)
        deadline = time.monotonic() + 5
        while pid_alive(pid):
            assert time.monotonic() < deadline
            time.sleep(0.05)
        report = fresh.start_project(project)
        assert report.ok, report.failure
        fresh.stop_project("sleepers")

    def test_concurrent_starts_of_one_project(self, orchestrator, tmp_path):
        project = _sleepers(tmp_path, ("db", []))
        project.hooks.pre_start = "sleep 0.5"
        reports = []

        def _start():
            reports.append(orchestrator.start_project(project))

        threads = [threading.Thread(target=_start) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=20)

        assert sorted(r.ok for r in reports) == [False, True]
        loser = next(r for r in reports if not r.ok)
        assert loser.failure["error"] == "AlreadyRunning"
        assert loser.rollback == []

        record = orchestrator.status("sleepers")
        pid = record.service("db").process.pid
        assert orchestrator.stop_project("sleepers").ok
        assert not pid_alive(pid)

    def test_claim_released_after_failed_pre_start(self, orchestrator, tmp_path):
        project = _sleepers(tmp_path, ("db", []))
        project.hooks.pre_start = "exit 1"
        assert not orchestrator.start_project(project).ok

        project.hooks.pre_start = None
        assert orchestrator.start_project(project).ok


# ── Failures and rollback ────────────────────────────────────────────


class TestStartFailures:
    def test_health_failure_stops_downstream(self, orchestrator, store, tmp_path):
        project = Project(
            name="web",
            base_path=tmp_path,
            services=[
                Service(
                    name="db",
                    command="sleep 30",
                    health_checks=[{"type": "command", "command": "exit 1", "retries": 3}],
                ),
                Service(name="api", command="sleep 30", depends_on=["db"]),
                Service(name="frontend", command="sleep 30", depends_on=["api"]),
            ],
        )
        report = orchestrator.start_project(project)

        assert not report.ok
        assert report.failed_service == "db"
        assert report.failure["stage"] == "health"
        assert report.failure["error"] == "HealthCheckFailed"
        assert report.unattempted == ["api", "frontend"]
        assert any(a.startswith("db") for a in report.rollback)
        assert not store.exists("web")
        assert orchestrator.list_projects() == []

    def test_duplicate_port_same_stage(self, orchestrator, free_port, tmp_path):
        port = free_port()
        project = _sleepers(tmp_path, ("api", []), ("admin", []), ports={"api": [port], "admin": [port]})
        report = orchestrator.start_project(project)

        assert not report.ok
        assert report.failure["error"] == "PortUnavailable"
        assert report.failure["stage"] == "reserve"
        assert report.failed_service in ("api", "admin")
        assert orchestrator.allocator.leases() == []

    def test_duplicate_port_later_stage_rolls_back_first(self, orchestrator, free_port, tmp_path):
        port = free_port()
        project = _sleepers(tmp_path, ("api", []), ("admin", ["api"]), ports={"api": [port], "admin": [port]})
        report = orchestrator.start_project(project)

        assert report.failed_service == "admin"
        assert report.failure["error"] == "PortUnavailable"
        assert any(a.startswith("api: stopped") for a in report.rollback)
        assert f"released port {port} (api)" in report.rollback
        assert orchestrator.allocator.leases() == []

    def test_spawn_failure(self, orchestrator, tmp_path):
        project = Project(
            name="web",
            base_path=tmp_path,
            services=[
                Service(name="db", command="sleep 30"),
                Service(name="api", command="exit 4", depends_on=["db"]),
            ],
        )
        report = orchestrator.start_project(project)
        assert report.failed_service == "api"
        assert report.failure["stage"] == "spawn"
        assert "code 4" in report.failure["cause"]

    def test_crash_while_awaiting_health(self, orchestrator, tmp_path):
        project = Project(
            name="web",
            base_path=tmp_path,
            services=[
                Service(
                    name="db",
                    command="sleep 0.5; exit 9",
                    health_checks=[{"type": "command", "command": "exit 1"}],
                ),
            ],
        )
        report = orchestrator.start_project(project)
        assert report.failure["error"] == "ServiceCrashed"
        assert "code 9" in report.failure["cause"]

    def test_cycle_reported_without_state(self, orchestrator, store, tmp_path):
        project = _sleepers(tmp_path, ("a", ["b"]), ("b", ["a"]))
        report = orchestrator.start_project(project)
        assert report.failure["error"] == "CycleDetected"
        assert report.failure["stage"] == "resolve"
        assert report.rollback == []
        assert not store.exists("sleepers")

    def test_invalid_project(self, orchestrator, tmp_path):
        project = _sleepers(tmp_path, ("api", ["db"]))
        report = orchestrator.start_project(project)
        assert report.failure["stage"] == "validate"

    def test_unknown_probe_kind(self, orchestrator, tmp_path):
        project = Project(
            name="web",
            base_path=tmp_path,
            services=[Service(name="db", command="sleep 30", health_checks=[{"type": "grpc"}])],
        )
        report = orchestrator.start_project(project)
        assert report.failure["error"] == "ConfigInvalid"
        assert report.failed_service == "db"

    def test_failed_start_can_be_retried(self, orchestrator, tmp_path):
        bad = _sleepers(tmp_path, ("db", []), ("api", ["db"]))
        bad.services[1].command = "exit 1"
        assert not orchestrator.start_project(bad).ok

        good = _sleepers(tmp_path, ("db", []), ("api", ["db"]))
        assert orchestrator.start_project(good).ok

    def test_unexpected_worker_error_cancels_siblings(self, orchestrator, store, monkeypatch, tmp_path):
        project = Project(
            name="web",
            base_path=tmp_path,
            services=[
                Service(
                    name="db",
                    command="sleep 30",
                    health_checks=[{"type": "command", "command": "exit 1"}],
                ),
                Service(name="cache", command="sleep 30"),
            ],
        )
        reserve = orchestrator.allocator.reserve

        def _reserve(name, service, ports):
            if service == "cache":
                raise OSError("disk full")
            return reserve(name, service, ports)

        monkeypatch.setattr(orchestrator.allocator, "reserve", _reserve)

        began = time.monotonic()
        with pytest.raises(OSError):
            orchestrator.start_project(project)
        assert time.monotonic() - began < 3
        assert not store.exists("web")
        assert orchestrator.list_projects() == []

        monkeypatch.undo()
        assert orchestrator.start_project(_sleepers(tmp_path, ("db", []))).ok


# ── Stop ─────────────────────────────────────────────────────────────


class TestStop:
    def test_stop_unknown_project(self, orchestrator):
        report = orchestrator.stop_project("ghost")
        assert not report.ok
        assert report.error["error"] == "RunRecordNotFound"

    def test_out_of_band_exit(self, orchestrator, free_port, store, tmp_path):
        port = free_port()
        project = _sleepers(tmp_path, ("db", []), ("api", ["db"]), ports={"db": [port]})
        assert orchestrator.start_project(project).ok

        db_pid = store.load("sleepers").service("db").process.pid
        os.killpg(db_pid, signal.SIGKILL)
        time.sleep(0.2)

        report = orchestrator.stop_project("sleepers")
        assert report.ok
        assert any("already exited" in line for line in report.stopped)
        assert port in report.released_ports
        assert not store.exists("sleepers")
        assert orchestrator.allocator.leases() == []

    def test_stop_from_another_invocation(self, orchestrator, settings, store, tmp_path):
        project = _sleepers(tmp_path, ("db", []), ("api", ["db"]))
        assert orchestrator.start_project(project).ok
        pids = [r.process.pid for r in store.load("sleepers").services.values()]

        other = Orchestrator(settings=settings, store=store)
        report = other.stop_project("sleepers")
        assert report.ok
        assert not store.exists("sleepers")
        assert not any(pid_alive(pid) for pid in pids)

    def test_stop_escalates(self, orchestrator, settings, tmp_path):
        settings.grace_period = 0.3
        project = Project(
            name="stubborn",
            base_path=tmp_path,
            services=[Service(name="db", command="trap '' TERM; while true; do sleep 0.1; done")],
        )
        assert orchestrator.start_project(project).ok
        time.sleep(0.2)
        report = orchestrator.stop_project("stubborn")
        assert report.ok
        assert "SIGKILL" in report.stopped[0]

    def test_stop_during_start(self, orchestrator, store, tmp_path):
        project = Project(
            name="slow",
            base_path=tmp_path,
            services=[
                Service(
                    name="a",
                    command="sleep 30",
                    health_checks=[{"type": "command", "command": "sleep 1"}],
                ),
                Service(name="b", command="sleep 30", depends_on=["a"]),
            ],
        )
        reports = []
        starter = threading.Thread(target=lambda: reports.append(orchestrator.start_project(project)))
        starter.start()

        deadline = time.monotonic() + 5
        while not (store.exists("slow") and store.load("slow").service("a").process.pid):
            assert time.monotonic() < deadline
            time.sleep(0.05)
        pid = store.load("slow").service("a").process.pid

        stop = orchestrator.stop_project("slow")
        starter.join(timeout=10)

        assert stop.ok
        assert any(line.startswith("a: ") for line in stop.stopped)
        assert not pid_alive(pid)
        assert not store.exists("slow")

        [report] = reports
        assert not report.ok
        assert report.failure["stage"] == "abort"
        assert report.unattempted == ["b"]
        assert orchestrator.allocator.leases() == []

    def test_partial_stop_keeps_survivor(self, orchestrator, store, free_port, monkeypatch, tmp_path):
        db_port, api_port = free_port(), free_port()
        project = _sleepers(
            tmp_path, ("db", []), ("api", ["db"]), ports={"db": [db_port], "api": [api_port]}
        )
        assert orchestrator.start_project(project).ok

        real_stop = ProcessSupervisor.stop

        def _stop(self, handle, grace, kill_timeout):
            if handle.service == "api":
                raise SignalFailed("still alive after SIGKILL", service="api", pid=handle.pid)
            return real_stop(self, handle, grace, kill_timeout)

        monkeypatch.setattr(ProcessSupervisor, "stop", _stop)
        report = orchestrator.stop_project("sleepers")

        assert report.status == "partial"
        assert not report.record_deleted
        assert [f["service"] for f in report.failed] == ["api"]
        assert db_port in report.released_ports
        assert api_port not in report.released_ports
        assert [lease.value for lease in orchestrator.allocator.leases()] == [api_port]
        assert set(store.load("sleepers").services) == {"api"}

        monkeypatch.undo()
        retry = orchestrator.stop_project("sleepers")
        assert retry.ok
        assert api_port in retry.released_ports
        assert not store.exists("sleepers")


# ── Status ───────────────────────────────────────────────────────────


class TestStatus:
    def test_status_unknown(self, orchestrator):
        with pytest.raises(RunRecordNotFound):
            orchestrator.status("ghost")

    def test_status_all(self, orchestrator, tmp_path):
        assert orchestrator.status() == []
        assert orchestrator.start_project(_sleepers(tmp_path, ("db", []))).ok
        records = orchestrator.status()
        assert [r.project for r in records] == ["sleepers"]

    def test_status_marks_dead_service(self, orchestrator, settings, store, tmp_path):
        assert orchestrator.start_project(_sleepers(tmp_path, ("db", []))).ok
        pid = store.load("sleepers").service("db").process.pid
        os.killpg(pid, signal.SIGKILL)
        time.sleep(0.2)

        record = orchestrator.status("sleepers")
        assert record.service("db").process.state == Lifecycle.CRASHED

    def test_status_skips_corrupt_record(self, orchestrator, settings):
        settings.runs_dir.mkdir(parents=True, exist_ok=True)
        (settings.runs_dir / "broken.json").write_text("{")
        assert orchestrator.status() == []


class TestHooks:
    def test_hooks_run_in_project_dir(self, orchestrator, tmp_path):
        project = _sleepers(tmp_path, ("db", []))
        project.hooks.pre_start = "touch pre_start"
        project.hooks.post_start = "touch post_start"
        project.hooks.pre_stop = "touch pre_stop"
        project.hooks.post_stop = "touch post_stop"

        assert orchestrator.start_project(project).ok
        assert (tmp_path / "pre_start").exists()
        assert (tmp_path / "post_start").exists()

        assert orchestrator.stop_project("sleepers").ok
        assert (tmp_path / "pre_stop").exists()
        assert (tmp_path / "post_stop").exists()

    def test_failing_pre_start_aborts(self, orchestrator, store, tmp_path):
        project = _sleepers(tmp_path, ("db", []))
        project.hooks.pre_start = "exit 1"
        report = orchestrator.start_project(project)
        assert not report.ok
        assert report.failure["stage"] == "hook"
        assert report.unattempted == ["db"]
        assert not store.exists("sleepers")
