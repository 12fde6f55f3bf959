"""discourse_etl.config

Run configuration for the topic importer.

Precedence (lowest → highest):
  1. ImportConfig defaults
  2. YAML file passed with --config
  3. Explicit CLI options

Example YAML:

    csv_path: imports/                 # file, or directory → newest *.csv
    log_path: artifacts/import_errors.log
    layout: content_only
    default_category_id: 5
    default_creator_email: system@example.com
    default_replier_email: support@example.com
    tag_delimiter: "|"
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from discourse_etl.normalize import (
    DEFAULT_DATETIME_FORMAT,
    DEFAULT_TAG_DELIMITER,
    normalize_email,
)

LAYOUT_FULL = "full"
LAYOUT_CONTENT_ONLY = "content_only"
VALID_LAYOUTS = (LAYOUT_FULL, LAYOUT_CONTENT_ONLY)


class ConfigError(ValueError):
    """Raised when a config file or option combination is invalid."""


@dataclass
class ImportConfig:
    csv_path: Path | None = None
    log_path: Path = Path("./artifacts/import_errors.log")
    layout: str = LAYOUT_FULL
    default_category_id: int | None = None
    default_creator_email: str | None = None
    default_replier_email: str | None = None
    tag_delimiter: str = DEFAULT_TAG_DELIMITER
    datetime_format: str = DEFAULT_DATETIME_FORMAT
    write_delay_seconds: float = 0.5
    max_tag_length: int = 20

    def validate(self) -> None:
        """Raise ConfigError if the combination of settings cannot run."""
        if self.csv_path is None:
            raise ConfigError("csv_path is required (file or directory)")
        if self.layout not in VALID_LAYOUTS:
            raise ConfigError(
                f"layout must be one of {', '.join(VALID_LAYOUTS)}; got {self.layout!r}"
            )
        if not self.tag_delimiter:
            raise ConfigError("tag_delimiter must not be empty")
        if self.write_delay_seconds < 0:
            raise ConfigError("write_delay_seconds must be >= 0")
        if self.max_tag_length < 1:
            raise ConfigError("max_tag_length must be >= 1")
        if self.layout == LAYOUT_CONTENT_ONLY:
            missing = [
                name
                for name in (
                    "default_category_id",
                    "default_creator_email",
                    "default_replier_email",
                )
                if not getattr(self, name)
            ]
            if missing:
                raise ConfigError(
                    f"layout {LAYOUT_CONTENT_ONLY} requires {', '.join(missing)}"
                )


_FIELDS = {f.name: f for f in dataclasses.fields(ImportConfig)}
_PATH_FIELDS = {"csv_path", "log_path"}
_INT_FIELDS = {"default_category_id", "max_tag_length"}
_FLOAT_FIELDS = {"write_delay_seconds"}
_EMAIL_FIELDS = {"default_creator_email", "default_replier_email"}


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    try:
        if name in _PATH_FIELDS:
            return Path(str(value))
        if name in _INT_FIELDS:
            return int(value)
        if name in _FLOAT_FIELDS:
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {name}: {value!r}") from exc
    if name in _EMAIL_FIELDS:
        return normalize_email(str(value))
    return str(value)


def apply_overrides(config: ImportConfig, overrides: dict[str, Any]) -> ImportConfig:
    """Return a copy of config with non-None overrides applied.

    Unknown keys raise ConfigError.
    """
    unknown = sorted(set(overrides) - set(_FIELDS))
    if unknown:
        raise ConfigError(f"unknown config keys: {unknown}")
    changes = {
        name: _coerce(name, value)
        for name, value in overrides.items()
        if value is not None
    }
    return dataclasses.replace(config, **changes)


def load_config(yaml_path: Path | None, **cli_overrides: Any) -> ImportConfig:
    """Build an ImportConfig from defaults, an optional YAML file and CLI options.

    Raises:
        ConfigError: on unknown keys, bad values or an invalid combination.
        FileNotFoundError: if yaml_path does not exist.
    """
    config = ImportConfig()
    if yaml_path is not None:
        data = yaml.safe_load(yaml_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{yaml_path}: top level must be a mapping")
        config = apply_overrides(config, data)
    config = apply_overrides(config, cli_overrides)
    config.validate()
    return config
