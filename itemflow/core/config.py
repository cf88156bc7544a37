"""Engine configuration loading.

Settings are merged from YAML files with this precedence (first wins):
1. Project: ``.itemflow/config.yaml`` in the project directory
2. User: ``~/.itemflow/config.yaml``
3. Built-in defaults
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from itemflow.core.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".itemflow"
CONFIG_FILE_NAME = "config.yaml"


class EngineConfig(BaseModel):
    """Tunable engine behavior."""

    model_config = ConfigDict(extra="forbid")

    composite_key_separator: str = Field(default="::", min_length=1)
    write_plain_keys: bool = True  # Keep bare-label keys for older readers
    task_refs_key: str = "plannerTasks"  # item.data key for listener task references
    max_conflict_retries: int = Field(default=3, ge=0)
    require_assignment: bool = True
    store_dir: Path = Path(".itemflow/flows")
    lock_timeout: float = Field(default=30, gt=0)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    # Allow both a bare mapping and an "engine:" section
    section = raw.get("engine", raw)
    if not isinstance(section, dict):
        raise ConfigError(f"{path}: 'engine' must be a mapping")
    _validate_section(section, path)
    return section


def _validate_section(section: dict[str, Any], source_path: Path) -> None:
    """Check one file against the EngineConfig schema so errors name the file."""
    try:
        jsonschema.validate(section, EngineConfig.model_json_schema())
    except jsonschema.ValidationError as e:
        location = " -> ".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigError(
            f"Engine config validation failed in {source_path}: {e.message}\n"
            f"Path: {location}"
        ) from e


def config_search_paths(project_dir: Path | None = None) -> list[Path]:
    """Candidate config files, highest precedence first."""
    project_dir = project_dir or Path.cwd()
    return [
        project_dir / CONFIG_DIR_NAME / CONFIG_FILE_NAME,
        Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME,
    ]


def load_config(
    project_dir: Path | None = None, search_paths: list[Path] | None = None
) -> EngineConfig:
    """Merge config files over defaults.

    Raises:
        ConfigError: On unreadable YAML, unknown keys or invalid values.
    """
    paths = search_paths if search_paths is not None else config_search_paths(project_dir)
    merged: dict[str, Any] = {}
    # Lowest precedence first so higher ones overwrite
    for path in reversed(paths):
        if path.is_file():
            logger.debug(f"Loading engine config from {path}")
            merged.update(_read_yaml(path))

    try:
        return EngineConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid engine configuration: {e}") from e
