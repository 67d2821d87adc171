"""Workspace settings loader."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import ValidationError
from ruamel.yaml import YAML

from reconciler.config.schema import EngineSettings, Workspace
from reconciler.errors import EngineError

logger = logging.getLogger(__name__)

SETTINGS_FILE = "reconcile.yaml"


class ConfigError(EngineError):
    """Raised for workspace settings loading / validation errors."""


# Field name -> environment variable.
_SETTINGS_ENV_MAP: dict[str, str] = {
    name: f"RECONCILE_{name.upper()}" for name in EngineSettings.model_fields
}


def _resolve_settings(raw: dict[str, Any], root: Path) -> dict[str, Any]:
    """Resolve settings fields from YAML, env vars, and ``.env`` file.

    Priority (highest wins): YAML value > env var > ``.env`` file.
    """
    env_file = root / ".env"
    dotenv_vals = dotenv_values(env_file, encoding="utf-8-sig") if env_file.is_file() else {}

    resolved: dict[str, Any] = {}
    for field, env_key in _SETTINGS_ENV_MAP.items():
        if field in raw:
            # An explicit null in YAML is a value (e.g. no operation timeout).
            resolved[field] = raw[field]
            continue
        val = os.environ.get(env_key)
        if val is None:
            val = dotenv_vals.get(env_key)
        if val is not None:
            resolved[field] = val
    return resolved


def _read_settings_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        raw = YAML(typ="safe").load(path)
    except Exception as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected a mapping of settings")
    unknown = sorted(set(raw) - set(EngineSettings.model_fields))
    if unknown:
        raise ConfigError(f"{path}: unknown setting(s): {', '.join(unknown)}")
    return raw


def load_workspace(root: Path | str) -> Workspace:
    """Load the workspace rooted at *root*.

    Raises:
        ConfigError: On YAML parse errors or invalid setting values.
    """
    root = Path(root)
    if not root.is_dir():
        raise ConfigError(f"Workspace root {root} is not a directory")

    path = root / SETTINGS_FILE
    raw = _read_settings_file(path)
    try:
        settings = EngineSettings.model_validate(_resolve_settings(raw, root))
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in e["loc"]) for e in exc.errors())
        raise ConfigError(f"Invalid settings for workspace {root} ({fields}): {exc}") from exc

    logger.info("Loaded workspace %s (state: %s)", root, settings.state_path)
    return Workspace(root=root, settings=settings)
