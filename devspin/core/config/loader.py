"""
Configuration loader — reads devspin.yaml into domain models.

This is the primary entry point for loading project configuration.
It reads YAML, validates against Pydantic schemas, checks cross-service
references, and returns a typed Project. It also merges the layered
environment each service process receives.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from devspin.core.errors import ConfigInvalid
from devspin.core.models.project import Project, Service, validate_project

logger = logging.getLogger(__name__)

# Config filenames, in lookup order
PROJECT_CONFIG_FILES = ("devspin.yaml", "devspin.yml")


def find_project_file(start_dir: Path | None = None) -> Path | None:
    """Search for devspin.yaml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to the config file, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        for filename in PROJECT_CONFIG_FILES:
            candidate = current / filename
            if candidate.is_file():
                return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def locate_project(target: str | Path | None) -> Path:
    """Turn a CLI target (file, directory, or nothing) into a config path.

    Raises:
        ConfigInvalid: If no config file can be found.
    """
    if target is None:
        found = find_project_file()
    else:
        path = Path(target)
        if path.is_file():
            return path
        if path.is_dir():
            found = next(
                (path / f for f in PROJECT_CONFIG_FILES if (path / f).is_file()),
                None,
            )
        else:
            found = None

    if found is None:
        raise ConfigInvalid(
            f"No {PROJECT_CONFIG_FILES[0]} found"
            + (f" at {target}" if target is not None else "")
        )
    return found


def load_project(path: Path | None = None) -> Project:
    """Load and validate project configuration.

    Args:
        path: Explicit path to devspin.yaml. If None, searches upward.

    Returns:
        Validated Project model with ``base_path`` set to the file's directory.

    Raises:
        ConfigInvalid: If the file is missing or invalid.
    """
    if path is None:
        path = find_project_file()

    if path is None:
        raise ConfigInvalid(f"No {PROJECT_CONFIG_FILES[0]} found.")

    if not path.is_file():
        raise ConfigInvalid(f"Config file not found: {path}")

    logger.debug("Loading project config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigInvalid(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigInvalid(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigInvalid(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    # The original layout nested commands under "start"
    commands = data.get("commands")
    if isinstance(commands, dict) and isinstance(commands.get("start"), dict):
        data["commands"] = commands["start"]

    try:
        project = Project.model_validate(data)
    except ValidationError as e:
        raise ConfigInvalid(f"Invalid project configuration in {path}: {e}") from e

    project.base_path = path.parent.resolve()
    validate_project(project)

    logger.info("Loaded project '%s' with %d services", project.name, len(project.services))
    return project


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse a .env file into a key/value dict.

    Handles:
    - KEY=value
    - KEY="value"
    - KEY='value'
    - export KEY=value
    - Comments (#)
    - Empty lines

    Raises:
        ConfigInvalid: If the file cannot be read.
    """
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigInvalid(f"Cannot read env file {path}: {e}") from e

    result: dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        if line.startswith("export "):
            line = line[7:].strip()

        if "=" not in line:
            continue

        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()

        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]

        if key:
            result[key] = value

    return result


def service_environment(
    project: Project,
    service: Service,
    base: dict[str, str] | None = None,
) -> dict[str, str]:
    """Build the environment a service process is spawned with.

    Precedence (later wins): process environment, env file,
    project ``environment``, service ``environment``.
    """
    env = dict(os.environ if base is None else base)
    if project.env_file:
        env.update(parse_env_file(project.resolve_path(project.env_file)))
    env.update(project.environment)
    env.update(service.environment)
    return env
