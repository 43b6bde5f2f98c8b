"""YAML configuration loading and validation utilities."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ssllaunch.config.schemas import LauncherConfig

CONFIG_ENV_VAR = "SSLLAUNCH_CONFIG"


class ConfigLoadError(Exception):
    """Raised when config loading or validation fails."""

    def __init__(self, message: str, details: str | None = None, errors: list[Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details
        self.errors = errors or []


def resolve_config_path(config_path: str) -> tuple[str, Path]:
    """Return the provided config path and its absolute resolved path."""
    if not config_path or not config_path.strip():
        raise ConfigLoadError("config path must be a non-empty string")

    path = Path(config_path).expanduser()
    resolved = path if path.is_absolute() else (Path.cwd() / path)
    return config_path, resolved.resolve()


def load_yaml_config(config_path: Path) -> Any:
    """Parse a YAML file, mapping parse and IO failures to ConfigLoadError."""
    try:
        with config_path.open(encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigLoadError(f"YAML parse error in {config_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {config_path}: {exc}") from exc

    return {} if data is None else data


def validate_config(raw_config: Any, *, source: str = "<defaults>") -> LauncherConfig:
    """Validate an already-parsed mapping against the launcher schema."""
    if not isinstance(raw_config, dict):
        raise ConfigLoadError(f"top-level config must be a mapping: {source}")

    try:
        return LauncherConfig.model_validate(raw_config)
    except ValidationError as exc:
        raise ConfigLoadError(
            f"validation failed for {source}",
            details=str(exc),
            errors=exc.errors(),
        ) from exc


def load_and_validate_config(config_path: str) -> tuple[LauncherConfig, str, Path]:
    """Load YAML config, validate with Pydantic, and return config + paths."""
    raw_path, resolved_path = resolve_config_path(config_path)
    raw_config = load_yaml_config(resolved_path)
    return validate_config(raw_config, source=str(resolved_path)), raw_path, resolved_path


def load_launcher_config(
    config_path: str | None,
    environ: Mapping[str, str] | None = None,
) -> LauncherConfig:
    """Return the validated launcher config.

    Without an explicit path, ``SSLLAUNCH_CONFIG`` is consulted so batch
    scripts can pin a config without editing the launch line; when neither
    is set the built-in defaults apply.
    """
    env = os.environ if environ is None else environ
    path = config_path or env.get(CONFIG_ENV_VAR) or None
    if path is None:
        return validate_config({})
    config, _, _ = load_and_validate_config(path)
    return config
