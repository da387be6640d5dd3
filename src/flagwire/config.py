"""Settings resolution and XDG-aware directories.

This module handles everything flagwire reads from the environment:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.flagwire/`` on macOS and Windows. See :func:`get_cache_dir` and
  :func:`get_data_dir`.
* **Project config** -- an optional ``flagwire.json`` in the working
  directory, loaded by :func:`load_project_config`.
* **Precedence resolution** -- :func:`resolve_settings` merges explicit
  overrides, ``FLAGWIRE_*`` environment variables and the project file
  into a :class:`~flagwire.models.ClientSettings`.

Environment variables::

    FLAGWIRE_API_KEY            environment key
    FLAGWIRE_BASE_URL           API root URL
    FLAGWIRE_REQUEST_TIMEOUT    seconds (float)
    FLAGWIRE_RESOURCE_TIMEOUT   seconds (float)
    FLAGWIRE_USE_CACHE          true/false
    FLAGWIRE_CACHE_TTL          seconds (float)
    FLAGWIRE_SKIP_API           true/false
    FLAGWIRE_CACHE_DIR          cache directory override
"""

from __future__ import annotations

import json
import os
import platform
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from flagwire.exceptions import ConfigError
from flagwire.models import ClientSettings

_APP_NAME = "flagwire"
_PROJECT_CONFIG_FILENAME = "flagwire.json"
_ENV_PREFIX = "FLAGWIRE_"

_ENV_FIELDS = {
    "API_KEY": "api_key",
    "BASE_URL": "base_url",
    "REQUEST_TIMEOUT": "request_timeout",
    "RESOURCE_TIMEOUT": "resource_timeout",
    "USE_CACHE": "use_cache",
    "CACHE_TTL": "cache_ttl",
    "SKIP_API": "skip_api",
    "CACHE_DIR": "cache_dir",
}


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_cache_dir() -> Path:
    """Return the cache directory, creating it if necessary.

    ``FLAGWIRE_CACHE_DIR`` wins when set. Otherwise, on Linux/BSD:
    ``$XDG_CACHE_HOME/flagwire/`` (default ``~/.cache/flagwire/``); on
    macOS/Windows: ``~/.flagwire/cache/``.

    Returns:
        Absolute path to the cache directory (guaranteed to exist).
    """
    override = os.environ.get(f"{_ENV_PREFIX}CACHE_DIR", "")
    if override:
        path = Path(override)
    elif _is_xdg_platform():
        path = _xdg_base("XDG_CACHE_HOME", (".cache",)) / _APP_NAME
    else:
        path = _fallback_base_dir() / "cache"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/flagwire/`` (default
    ``~/.local/share/flagwire/``). On macOS/Windows: ``~/.flagwire/logs/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Project config ---


def load_project_config(directory: Optional[Path] = None) -> dict[str, Any]:
    """Load ``flagwire.json`` from *directory* (default: the working directory).

    Returns:
        The parsed JSON object, or an empty dict if the file does not exist.

    Raises:
        ConfigError: If the file exists but is not a JSON object.
    """
    path = (directory or Path.cwd()) / _PROJECT_CONFIG_FILENAME
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return data


def _env_overrides() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for suffix, field_name in _ENV_FIELDS.items():
        raw = os.environ.get(f"{_ENV_PREFIX}{suffix}")
        if raw is not None and raw != "":
            values[field_name] = raw
    return values


def resolve_settings(
    overrides: Optional[dict[str, Any]] = None,
    project_dir: Optional[Path] = None,
) -> ClientSettings:
    """Resolve client settings from all sources.

    Precedence (highest first):

    1. *overrides* -- explicit values, ``None`` entries ignored
    2. ``FLAGWIRE_*`` environment variables
    3. ``flagwire.json`` in *project_dir*
    4. model defaults

    Returns:
        The validated :class:`~flagwire.models.ClientSettings`.

    Raises:
        ConfigError: If a value cannot be coerced (e.g.
            ``FLAGWIRE_REQUEST_TIMEOUT=soon``).
    """
    merged: dict[str, Any] = {}
    merged.update(load_project_config(project_dir))
    merged.update(_env_overrides())
    merged.update({k: v for k, v in (overrides or {}).items() if v is not None})
    try:
        return ClientSettings.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid flagwire settings: {exc}") from exc
