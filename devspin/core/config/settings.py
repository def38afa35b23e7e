"""
Runtime settings — timeouts, retry budgets and storage location.

Defaults suit local development. Every value can be overridden through
a ``DEVSPIN_<NAME>`` environment variable, e.g. ``DEVSPIN_GRACE_PERIOD=10``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from devspin.core.errors import ConfigInvalid

logger = logging.getLogger(__name__)

ENV_PREFIX = "DEVSPIN_"


def default_home() -> Path:
    """Per-user application-data directory.

    ``DEVSPIN_HOME`` > ``$XDG_DATA_HOME/devspin`` > ``~/.local/share/devspin``.
    """
    explicit = os.environ.get("DEVSPIN_HOME")
    if explicit:
        return Path(explicit).expanduser()
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg).expanduser() / "devspin"
    return Path.home() / ".local" / "share" / "devspin"


class Settings(BaseModel):
    """Orchestrator tuning knobs."""

    home: Path = Field(default_factory=default_home)

    # ── Shutdown ─────────────────────────────────────────────────
    grace_period: float = 5.0     # SIGTERM → SIGKILL
    kill_timeout: float = 5.0     # SIGKILL → give up

    # ── Health checks ────────────────────────────────────────────
    health_timeout: float = 60.0
    health_interval: float = 0.5
    health_retries: int = 30
    backoff_cap: float = 5.0

    # ── Scheduling ───────────────────────────────────────────────
    max_workers: int = Field(default=8, ge=1)
    spawn_settle: float = 0.05    # window to catch an immediate exit
    probe_ports: bool = True

    @property
    def runs_dir(self) -> Path:
        return self.home / "runs"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides: Any) -> Settings:
        """Build settings from ``DEVSPIN_*`` variables plus explicit overrides."""
        environ = dict(os.environ) if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        try:
            settings = cls.model_validate(values)
        except ValidationError as e:
            raise ConfigInvalid(f"Invalid DEVSPIN_* setting: {e}") from e
        logger.debug("Settings resolved: home=%s", settings.home)
        return settings
