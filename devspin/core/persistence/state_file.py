"""
State store — atomic read/write of RunRecords.

One JSON file per active project lives in ``<home>/runs/<project>.json``.
Writes are atomic (write to temp file, then rename) so a concurrent
``status`` call never observes a half-written record.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from devspin.core.errors import RunRecordNotFound, StateStoreCorrupt
from devspin.core.models.state import RunRecord

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".json"


class StateStore:
    """File-backed store of RunRecords keyed by project name."""

    def __init__(self, runs_dir: Path) -> None:
        self.runs_dir = runs_dir

    def path_for(self, project: str) -> Path:
        return self.runs_dir / f"{project}{RECORD_SUFFIX}"

    def exists(self, project: str) -> bool:
        return self.path_for(project).is_file()

    def load(self, project: str) -> RunRecord:
        """Load a project's run record.

        Raises:
            RunRecordNotFound: The project was never started (or fully stopped).
            StateStoreCorrupt: A record exists but cannot be parsed.
        """
        path = self.path_for(project)
        if not path.is_file():
            raise RunRecordNotFound(f"No run record for project '{project}'")

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            record = RunRecord.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise StateStoreCorrupt(
                f"Run record {path} is unreadable: {e}. "
                "Inspect or delete it to recover."
            ) from e

        logger.debug("Loaded run record %s (updated_at=%s)", path, record.updated_at)
        return record

    def persist(self, record: RunRecord) -> None:
        """Save a run record (atomic write)."""
        record.touch()
        path = self.path_for(record.project)
        path.parent.mkdir(parents=True, exist_ok=True)

        content = json.dumps(record.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"

        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".run_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except Exception:
            tmp.unlink(missing_ok=True)
            logger.error("Failed to save run record to %s", path)
            raise
        logger.debug("Run record saved to %s", path)

    def delete(self, project: str) -> bool:
        """Remove a project's record. Returns False if there was none."""
        path = self.path_for(project)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Run record deleted: %s", path)
        return True

    def list_names(self) -> list[str]:
        """Names of all projects with a persisted record, sorted."""
        if not self.runs_dir.is_dir():
            return []
        return sorted(
            p.name[: -len(RECORD_SUFFIX)]
            for p in self.runs_dir.iterdir()
            if p.is_file() and p.name.endswith(RECORD_SUFFIX) and not p.name.startswith(".")
        )
