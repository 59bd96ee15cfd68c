"""Packager configuration.

Configuration is optional: every pipeline stage works with the defaults.
A project may override them with a ``bmad-packager.yaml`` file or a dict.

Usage:
    from bmad_packager.core.config import get_config, load_config

    load_config(Path("bmad-packager.yaml"))
    extension = get_config().archive_extension
"""

import logging
from pathlib import Path
from threading import Lock
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from bmad_packager.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "bmad-packager.yaml"


class PackagerConfig(BaseModel):
    """Export pipeline settings.

    Attributes:
        schema_version: Version written into every v1.1 document.
        default_version: Package version used when the caller gives none.
        archive_extension: Extension appended to the sanitized project name.
        max_filename_length: Truncation limit for the archive base name.
        untitled_name: Fallback for blank project and workflow names.
        default_agent_icon: Placeholder glyph for agents without an icon.
        zip_compression: Zip member compression ("deflated" or "stored").
        validate_before_archive: Run the bundle validator before zipping.

    Example:
        >>> PackagerConfig(archive_extension=".zip").archive_extension
        '.zip'

    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    schema_version: str = "1.1"
    default_version: str = Field(default="0.1.0", min_length=1)
    archive_extension: str = ".bmad"
    max_filename_length: int = Field(default=120, ge=1)
    untitled_name: str = Field(default="Untitled", min_length=1)
    default_agent_icon: str = Field(default="\U0001f9e9", min_length=1)
    zip_compression: Literal["deflated", "stored"] = "deflated"
    validate_before_archive: bool = True

    @field_validator("archive_extension")
    @classmethod
    def ensure_leading_dot(cls, v: str) -> str:
        """Accept "bmad" as shorthand for ".bmad"."""
        v = v.strip()
        if v and not v.startswith("."):
            return f".{v}"
        return v


_config: PackagerConfig | None = None
_config_lock = Lock()


def load_config(source: dict[str, Any] | Path | None = None) -> PackagerConfig:
    """Load and install the process-wide configuration.

    Args:
        source: Mapping of settings, path to a YAML file, or None for defaults.

    Returns:
        The installed PackagerConfig.

    Raises:
        ConfigError: If the file cannot be read or the values are invalid.

    """
    global _config

    if source is None:
        raw: dict[str, Any] = {}
    elif isinstance(source, Path):
        raw = _read_config_file(source)
    else:
        raw = dict(source)

    try:
        config = PackagerConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid packager configuration:\n{e}") from e

    with _config_lock:
        _config = config
    logger.debug("Loaded packager config: %s", config.model_dump())
    return config


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(
            f"Config file not found: {path}\n"
            f"  How to fix: create {CONFIG_FILENAME} or omit --config to use defaults"
        )
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {path}\n  Error: {e}") from e

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        line_info = ""
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            line_info = f"\n  Line {mark.line + 1}, column {mark.column + 1}"
        raise ConfigError(f"Invalid YAML in {path}:{line_info}\n  {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid configuration in {path}:\n"
            f"  Root element must be a mapping, got {type(data).__name__}"
        )
    return data


def get_config() -> PackagerConfig:
    """Return the installed configuration, installing defaults on first use."""
    global _config
    with _config_lock:
        if _config is None:
            _config = PackagerConfig()
        return _config


def _reset_config() -> None:
    """Drop the installed configuration. Used by tests."""
    global _config
    with _config_lock:
        _config = None
