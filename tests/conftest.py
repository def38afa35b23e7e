"""
Shared test fixtures and configuration.
"""

import socket
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

from devspin.core.config.settings import Settings
from devspin.core.engine.allocator import PortAllocator
from devspin.core.engine.controller import Orchestrator
from devspin.core.persistence.state_file import StateStore


@pytest.fixture
def devspin_home(tmp_path: Path) -> Path:
    """Return a temporary per-user data directory."""
    home = tmp_path / "home"
    home.mkdir()
    return home


@pytest.fixture
def settings(devspin_home: Path) -> Settings:
    """Settings tuned for fast tests."""
    return Settings(
        home=devspin_home,
        grace_period=2.0,
        kill_timeout=2.0,
        health_timeout=5.0,
        health_interval=0.05,
        health_retries=40,
        backoff_cap=0.2,
        spawn_settle=0.2,
    )


@pytest.fixture
def store(settings: Settings) -> StateStore:
    return StateStore(settings.runs_dir)


@pytest.fixture
def orchestrator(settings: Settings, store: StateStore):
    """Orchestrator with a private allocator, so tests never share leases."""
    orch = Orchestrator(settings=settings, store=store, allocator=PortAllocator())
    yield orch
    for name in orch.list_projects():
        orch.stop_project(name)


@pytest.fixture
def free_port() -> Callable[[], int]:
    """Return a function that yields a currently-unused TCP port."""

    def _pick() -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return sock.getsockname()[1]

    return _pick


@pytest.fixture
def write_project(tmp_path: Path) -> Callable[[str], Path]:
    """Write a devspin.yaml into a project directory and return its path."""

    def _write(content: str, directory: str = "project") -> Path:
        root = tmp_path / directory
        root.mkdir(exist_ok=True)
        path = root / "devspin.yaml"
        path.write_text(textwrap.dedent(content))
        return path

    return _write
