"""
Tests for observability — project health aggregation + logging setup.
"""

import logging

import pytest

from devspin.core.models import Lifecycle, RunRecord, ServiceRecord
from devspin.core.observability.health import (
    ProjectHealth,
    ServiceHealth,
    check_service,
    summarize,
)
from devspin.core.observability.logging_config import configure, resolve_level, setup_logging


def _service(name: str, state: Lifecycle, healthy: bool | None = None) -> ServiceRecord:
    rec = ServiceRecord.pending(name, 0)
    rec.process.state = state
    rec.process.pid = 100 if state == Lifecycle.RUNNING else None
    if healthy is True:
        rec.health.record_success("port:5432")
    elif healthy is False:
        rec.health.record_failure("port:5432", "refused")
    return rec


class TestCheckService:
    def test_running_healthy(self):
        h = check_service(_service("db", Lifecycle.RUNNING, healthy=True))
        assert h.status == "healthy"
        assert h.details["pid"] == 100

    def test_running_failing_check(self):
        h = check_service(_service("db", Lifecycle.RUNNING, healthy=False))
        assert h.status == "degraded"
        assert "refused" in h.message

    def test_crashed(self):
        rec = _service("db", Lifecycle.CRASHED)
        rec.process.exit_code = 3
        h = check_service(rec)
        assert h.status == "unhealthy"
        assert "3" in h.message

    def test_starting_is_unknown(self):
        assert check_service(_service("db", Lifecycle.STARTING)).status == "unknown"


class TestProjectHealth:
    def test_empty_is_unknown(self):
        assert ProjectHealth(project="web").status == "unknown"

    def test_worst_status_wins(self):
        h = ProjectHealth(project="web")
        h.add(ServiceHealth(name="db", status="healthy"))
        assert h.status == "healthy"
        h.add(ServiceHealth(name="api", status="degraded"))
        assert h.status == "degraded"
        h.add(ServiceHealth(name="web", status="unhealthy"))
        assert h.status == "unhealthy"

    def test_summarize_in_stage_order(self):
        record = RunRecord(project="web", stages=[["db"], ["api"]])
        record.services["api"] = _service("api", Lifecycle.RUNNING, healthy=True)
        record.services["db"] = _service("db", Lifecycle.RUNNING, healthy=True)
        summary = summarize(record)
        assert [s.name for s in summary.services] == ["db", "api"]
        assert summary.status == "healthy"
        d = summary.to_dict()
        assert d["project"] == "web"
        assert d["timestamp"]


# ── Logging ──────────────────────────────────────────────────────────


class TestLogging:
    @pytest.fixture(autouse=True)
    def _restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_flags_take_precedence(self, monkeypatch):
        monkeypatch.setenv("DEVSPIN_LOG_LEVEL", "ERROR")
        assert resolve_level(debug=True) == "DEBUG"
        assert resolve_level(verbose=True) == "INFO"
        assert resolve_level(quiet=True) == "ERROR"

    def test_env_fallback(self, monkeypatch):
        monkeypatch.setenv("DEVSPIN_LOG_LEVEL", "info")
        assert resolve_level() == "info"
        monkeypatch.delenv("DEVSPIN_LOG_LEVEL")
        assert resolve_level() == "WARNING"

    def test_setup_console(self):
        setup_logging(level="INFO")
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1

    def test_invalid_level_falls_back(self):
        setup_logging(level="LOUD")
        assert logging.getLogger().level == logging.WARNING

    def test_log_file(self, tmp_path):
        log_file = tmp_path / "devspin.log"
        setup_logging(level="WARNING", log_file=str(log_file), log_file_level="DEBUG")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        logging.getLogger("devspin.test").debug("probe attempt")
        for handler in root.handlers:
            handler.flush()
        assert "probe attempt" in log_file.read_text()
        for handler in root.handlers:
            if isinstance(handler, logging.FileHandler):
                handler.close()

    def test_console_format_follows_level(self):
        setup_logging(level="ERROR")
        [console] = logging.getLogger().handlers
        assert console.formatter._fmt == "%(message)s"

        setup_logging(level="DEBUG")
        [console] = logging.getLogger().handlers
        assert "%(threadName)s" in console.formatter._fmt

    def test_configure_reads_env(self, monkeypatch, tmp_path):
        log_file = tmp_path / "devspin.log"
        monkeypatch.setenv("DEVSPIN_LOG_LEVEL", "ERROR")
        monkeypatch.setenv("DEVSPIN_LOG_FILE", str(log_file))
        monkeypatch.setenv("DEVSPIN_LOG_FILE_LEVEL", "INFO")
        configure()

        root = logging.getLogger()
        assert root.level == logging.INFO
        assert [h.level for h in root.handlers] == [logging.ERROR, logging.INFO]
        for handler in root.handlers:
            if isinstance(handler, logging.FileHandler):
                handler.close()
