"""Job configuration file loading.

A run is described by one JSON or YAML file listing the sources to discover
jobs from::

    {
      "log_level": "INFO",
      "max_concurrent_jobs": 4,
      "sources": [
        {
          "name": "lectures",
          "type": "ytdlp",
          "destination_folder": "/media/lectures",
          "properties": {"Url": "https://www.youtube.com/@someone/videos"}
        }
      ]
    }

Keys may also be written in PascalCase (``Sources``, ``DestinationFolder``),
which is how older configuration files spell them.

``load_config`` raises ``ConfigurationError`` for a missing file, content
that cannot be parsed, or content that does not match the schema. Problems
with an individual source's properties are detected later, when the source
is constructed, and only disable that source.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_pascal

from runspine.core.errors import ConfigurationError, ErrorContext

# Level names accepted in addition to the standard logging names.
_LEVEL_ALIASES = {
    "TRACE": "DEBUG",
    "INFORMATION": "INFO",
    "WARN": "WARNING",
}


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_pascal,
        populate_by_name=True,
        extra="ignore",
    )


class SourceConfig(_ConfigModel):
    """One configured job source."""

    name: str
    type: str | None = None
    destination_folder: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)

    def get_property(self, key: str, default: Any = None) -> Any:
        """Case-insensitive property lookup."""
        if key in self.properties:
            return self.properties[key]
        lowered = key.lower()
        for name, value in self.properties.items():
            if name.lower() == lowered:
                return value
        return default

    def require_property(self, key: str) -> Any:
        """Return a property or raise ``ConfigurationError`` if it is missing."""
        value = self.get_property(key)
        if value is None or value == "":
            raise ConfigurationError(
                f'Source "{self.name}" is missing required property {key}',
                context=ErrorContext(source_name=self.name, source_type=self.type),
            )
        return value


class AppConfig(_ConfigModel):
    """Top-level job configuration."""

    log_level: str | None = None
    max_concurrent_jobs: int | None = Field(default=None, ge=1)
    sources: list[SourceConfig] = Field(default_factory=list)

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str | None) -> str | None:
        if value is None:
            return None
        upper = value.strip().upper()
        return _LEVEL_ALIASES.get(upper, upper)


def parse_config(data: Any) -> AppConfig:
    """Validate already-decoded configuration data."""
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a mapping at the top level")
    try:
        return AppConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}", cause=exc) from exc


def load_config(path: str | Path) -> AppConfig:
    """Load and validate a JSON or YAML configuration file.

    Args:
        path: File path; ``.yaml``/``.yml`` files are read as YAML, anything
            else as JSON.

    Raises:
        ConfigurationError: The file is missing, unreadable or invalid.
    """
    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigurationError(f"Path to config does not exist: {config_path}")

    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Could not read config {config_path}: {exc}", cause=exc) from exc

    try:
        if config_path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Could not parse config {config_path}: {exc}", cause=exc) from exc

    return parse_config(data)
