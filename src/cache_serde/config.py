"""Configuration resolution for cached call sites.

Each decorated function gets one :class:`~cache_serde.models.CacheConfig`,
resolved the first time it is needed and then fixed for the lifetime of
the call site.

Precedence (high to low):
    1. Explicit arguments (decorator keywords that are not ``None``)
    2. Environment variables (``CACHE_SERDE_ROOT``, ``CACHE_SERDE_INTERVAL``,
       ``CACHE_SERDE_BACKEND``, ``CACHE_SERDE_DISABLED``)
    3. Project config (``./cache_serde.json``)
    4. Defaults

The cache root may be a template: ``"./cache/{user_id}"`` is formatted
with the bound arguments of each call by :func:`render_cache_root`. Each
placeholder fills exactly one directory name.
"""

from __future__ import annotations

import json
import os
import string
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from cache_serde.exceptions import ConfigError
from cache_serde.models import CacheConfig

_PROJECT_CONFIG_FILENAME = "cache_serde.json"

_FORMATTER = string.Formatter()

ENV_ROOT = "CACHE_SERDE_ROOT"
ENV_INTERVAL = "CACHE_SERDE_INTERVAL"
ENV_BACKEND = "CACHE_SERDE_BACKEND"
ENV_DISABLED = "CACHE_SERDE_DISABLED"

_TRUTHY = {"1", "true", "yes", "on"}


# --- Project-local config ---


def load_project_config(directory: Optional[Path] = None) -> Optional[dict[str, Any]]:
    """Load project-local configuration from ``cache_serde.json``.

    Args:
        directory: Where to look; defaults to the current working directory.

    Returns:
        The parsed JSON object, or ``None`` if the file does not exist.

    Raises:
        ConfigError: If the file is not valid JSON or not a JSON object.
    """
    path = (directory or Path.cwd()) / _PROJECT_CONFIG_FILENAME
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Invalid project config at {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid project config at {path}: expected a JSON object")
    return data


# --- Environment ---


def _env_overrides() -> dict[str, Any]:
    """Collect config fields set through ``CACHE_SERDE_*`` environment variables."""
    overrides: dict[str, Any] = {}
    if root := os.environ.get(ENV_ROOT):
        overrides["cache_root"] = root
    if interval := os.environ.get(ENV_INTERVAL):
        overrides["invalidation_interval"] = interval
    if backend := os.environ.get(ENV_BACKEND):
        overrides["backend"] = backend
    disabled = os.environ.get(ENV_DISABLED, "")
    if disabled.strip().lower() in _TRUTHY:
        overrides["enabled"] = False
    return overrides


# --- Precedence resolution ---


def resolve_config(**overrides: Any) -> CacheConfig:
    """Resolve a :class:`CacheConfig` through the full precedence chain.

    Args:
        **overrides: Explicit field values. ``None`` means "not set" and
            falls through to the next layer.

    Raises:
        ConfigError: If the merged values fail validation (negative
            interval, unknown backend, unknown field).
    """
    data: dict[str, Any] = {}

    # 3. Project-local file
    project = load_project_config()
    if project is not None:
        data.update(project)

    # 2. Environment
    data.update(_env_overrides())

    # 1. Explicit arguments
    data.update({name: value for name, value in overrides.items() if value is not None})

    try:
        return CacheConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid cache configuration: {exc}") from exc


def render_cache_root(template: str, arguments: Mapping[str, Any]) -> Path:
    """Format a cache-root template with call arguments and expand ``~``.

    Placeholders must be plain argument names, optionally with a
    conversion or format spec (``{user_id}``, ``{day:%Y-%m-%d}``).
    Attribute and index lookups are rejected, and so is any formatted
    value that is empty, ``.`` or ``..``, or that contains a path
    separator: each placeholder fills exactly one directory name.

    Example::

        render_cache_root("~/.cache/users/{user_id}", {"user_id": 7})
        # PosixPath('/home/me/.cache/users/7')

    Raises:
        ConfigError: If the template references an unknown name, uses a
            lookup, renders an unsafe segment, or is malformed.
    """
    if "{" in template:
        parts: list[str] = []
        try:
            for literal, name, spec, conversion in _FORMATTER.parse(template):
                parts.append(literal)
                if name is None:
                    continue
                if not name.isidentifier():
                    raise ConfigError(
                        f"Cannot format cache root {template!r}: {{{name}}} is not a plain argument name"
                    )
                if name not in arguments:
                    raise ConfigError(f"Cannot format cache root {template!r}: no argument named {name!r}")
                value = _FORMATTER.convert_field(arguments[name], conversion)
                parts.append(_segment(template, name, _FORMATTER.format_field(value, spec or "")))
        except (ValueError, TypeError) as exc:
            raise ConfigError(f"Cannot format cache root {template!r}: {exc}") from exc
        template = "".join(parts)
    return Path(template).expanduser()


def _segment(template: str, name: str, text: str) -> str:
    separators = {"/", "\\", os.sep} | ({os.altsep} if os.altsep else set())
    if text in ("", ".", "..") or any(sep in text for sep in separators):
        raise ConfigError(
            f"Cannot format cache root {template!r}: argument {name!r} renders as {text!r}, "
            "which is not a single directory name"
        )
    return text
