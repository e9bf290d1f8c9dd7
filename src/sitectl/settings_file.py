"""App settings file loading with validation.

Settings files are flat YAML (or JSON, which is valid YAML) mappings of
setting name to value:

    FUNCTIONS_WORKER_RUNTIME: python
    WEBSITE_RUN_FROM_PACKAGE: 1

A Kubernetes-style wrapper with a `settings:` section is accepted too.
Scalar values are coerced to strings since ARM stores every setting as one.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError, field_validator

from .config import MAX_SETTINGS_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)


class SettingsFileError(Exception):
    """Raised when a settings file cannot be loaded or fails validation."""

    pass


class AppSettingsFile(BaseModel):
    """Validated contents of a settings file."""

    model_config = {"extra": "forbid"}

    settings: dict[str, str]

    @field_validator("settings", mode="before")
    @classmethod
    def coerce_values(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        coerced: dict[str, Any] = {}
        for key, value in v.items():
            if not isinstance(key, str) or not key.strip():
                raise ValueError(f"setting names must be non-empty strings: {key!r}")
            if isinstance(value, bool):
                coerced[key] = "true" if value else "false"
            elif isinstance(value, (int, float)):
                coerced[key] = str(value)
            elif value is None:
                coerced[key] = ""
            else:
                coerced[key] = value
        return coerced


def load_settings_file(path: Path) -> dict[str, str]:
    """Load and validate an app settings file.

    Raises:
        SettingsFileError: If the file is missing, too large, not a mapping
            or contains non-scalar values.
    """
    if not path.exists():
        raise SettingsFileError(f"Settings file not found: {path}")

    # Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SettingsFileError(f"Failed to stat settings file {path}: {e}") from e

    if file_size > MAX_SETTINGS_FILE_SIZE_BYTES:
        raise SettingsFileError(
            f"Settings file exceeds maximum size of {MAX_SETTINGS_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SettingsFileError(f"Failed to read settings file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SettingsFileError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise SettingsFileError(f"Settings file must contain a mapping: {path}")

    if "apiVersion" in raw_data and "settings" in raw_data:
        settings_data = raw_data.get("settings") or {}
    else:
        settings_data = raw_data

    try:
        parsed = AppSettingsFile.model_validate({"settings": settings_data})
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise SettingsFileError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded %d settings from %s", len(parsed.settings), path)
    return parsed.settings
