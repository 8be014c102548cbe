"""Configuration resolution for client-wide defaults.

:func:`resolve_config` builds the :class:`~querycache.models.ClientConfig`
a :class:`~querycache.client.QueryClient` starts from. Each layer may set
any subset of fields; later layers win field by field:

1. Model defaults.
2. User config: ``$XDG_CONFIG_HOME/querycache/config.json`` on Linux/BSD
   (default ``~/.config/querycache/config.json``), ``~/.querycache/config.json``
   elsewhere. See :func:`get_config_dir`.
3. Project config: ``./querycache.json``.
4. Environment variables (``QUERYCACHE_STALE_TIME``, ``QUERYCACHE_BASE_URL``, ...;
   see :data:`ENV_VARS`).
5. Explicit overrides passed by the caller (the CLI's flags).

Files are JSON objects shaped like ``ClientConfig``::

    {"queries": {"stale_time": 30, "retry": 1}, "api": {"page_size": 5}}

Invalid JSON or values that fail validation raise
:class:`~querycache.exceptions.ConfigurationError`.
"""

from __future__ import annotations

import json
import os
import platform
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from querycache.exceptions import ConfigurationError
from querycache.models import ClientConfig

_APP_NAME = "querycache"
_CONFIG_FILENAME = "config.json"
_PROJECT_CONFIG_FILENAME = "querycache.json"

# environment variable -> (section, field); section None means top level
ENV_VARS: dict[str, tuple[Optional[str], str]] = {
    "QUERYCACHE_STALE_TIME": ("queries", "stale_time"),
    "QUERYCACHE_GC_TIME": ("queries", "gc_time"),
    "QUERYCACHE_RETRY": ("queries", "retry"),
    "QUERYCACHE_RETRY_BASE_DELAY": (None, "retry_base_delay"),
    "QUERYCACHE_RETRY_MAX_DELAY": (None, "retry_max_delay"),
    "QUERYCACHE_BASE_URL": ("api", "base_url"),
    "QUERYCACHE_USERS_URL": ("api", "users_url"),
    "QUERYCACHE_TIMEOUT": ("api", "timeout"),
    "QUERYCACHE_PAGE_SIZE": ("api", "page_size"),
}


# --- Paths ---


def _is_xdg_platform() -> bool:
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def get_config_dir() -> Path:
    """Return the user configuration directory. It is not created."""
    if _is_xdg_platform():
        env_value = os.environ.get("XDG_CONFIG_HOME", "")
        base = Path(env_value) if env_value else Path.home() / ".config"
        return base / _APP_NAME
    return Path.home() / f".{_APP_NAME}"


def user_config_path() -> Path:
    return get_config_dir() / _CONFIG_FILENAME


def project_config_path() -> Path:
    return Path.cwd() / _PROJECT_CONFIG_FILENAME


# --- Layers ---


def _load_json(path: Path, label: str) -> Optional[dict[str, Any]]:
    """Load a JSON object from *path*, or ``None`` if the file does not exist.

    Raises:
        ConfigurationError: If the file is not valid JSON or not an object.
    """
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {label} config at {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid {label} config at {path}: expected a JSON object")
    return data


def load_user_config() -> Optional[dict[str, Any]]:
    return _load_json(user_config_path(), "user")


def load_project_config() -> Optional[dict[str, Any]]:
    """Load ``./querycache.json``, or ``None`` if there is none."""
    return _load_json(project_config_path(), "project")


def env_overrides(environ: Optional[dict[str, str]] = None) -> dict[str, Any]:
    """Collect ``QUERYCACHE_*`` variables into a nested override dict.

    Values stay strings; pydantic coerces them during validation.
    """
    environ = os.environ if environ is None else environ
    result: dict[str, Any] = {}
    for name, (section, field) in ENV_VARS.items():
        value = environ.get(name)
        if not value:
            continue
        target = result.setdefault(section, {}) if section else result
        target[field] = value
    return result


def _merge(base: dict[str, Any], layer: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in layer.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# --- Precedence resolution ---


def resolve_config(overrides: Optional[dict[str, Any]] = None) -> ClientConfig:
    """Resolve the effective :class:`ClientConfig`.

    Precedence (high to low):
        1. *overrides*
        2. Environment variables (``QUERYCACHE_*``)
        3. Project config (``./querycache.json``)
        4. User config (``~/.config/querycache/config.json``)
        5. Defaults

    Raises:
        ConfigurationError: If any layer is unreadable or the merged
            values fail validation.
    """
    merged: dict[str, Any] = {}
    for layer in (load_user_config(), load_project_config(), env_overrides(), overrides):
        if layer:
            merged = _merge(merged, layer)
    try:
        return ClientConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
