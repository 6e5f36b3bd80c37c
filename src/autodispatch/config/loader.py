"""
Runtime config loader for autodispatch.

Layers, lowest first: built-in defaults, ``autodispatch.toml``, the selected profile,
``AUTODISPATCH_<SECTION>_<KEY>`` environment variables, then CLI overrides. Environment
values are coerced by the field's declared schema kind; list fields take a comma
separated value. Relative paths resolve against the directory holding the config file
(the working directory when there is none).
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from autodispatch.config.schema import (
    PATH_FIELDS,
    FieldKind,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    iter_fields,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "autodispatch.toml"
ENV_PREFIX: Final[str] = "AUTODISPATCH_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """The config file or an override could not be read or coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    ``cli_overrides`` maps dotted keys (``"dispatch.slot_count"``) to values; the special
    ``"profile"`` key selects a profile when ``profile`` is not given.
    """

    path = _config_file(config_path)
    overrides = dict(cli_overrides or {})
    env = os.environ if environ is None else environ
    profile_name = _pick_profile(profile, overrides.pop("profile", None), env)

    config = assert_valid_config(
        merge_config(default_config(), _read_toml(path, required=config_path is not None))
    )
    if profile_name is not None:
        config = apply_profile_overlay(config, profile_name)
    config = merge_config(config, env_overrides(env))
    config = merge_config(config, _nest_overrides(overrides))
    config = normalize_paths(config, base_dir=path.parent)
    return assert_valid_config(config, active_profile=profile_name)


def env_overrides(environ: Mapping[str, str]) -> dict[str, dict[str, object]]:
    """Collect ``AUTODISPATCH_*`` values for every declared field except ``meta``."""

    layer: dict[str, dict[str, object]] = {}
    for section, key, kind in iter_fields():
        if section == "meta":
            continue
        name = f"{ENV_PREFIX}{section.upper()}_{key.upper()}"
        raw = environ.get(name)
        if raw is not None:
            layer.setdefault(section, {})[key] = _coerce(raw.strip(), kind, name)
    return layer


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with path fields, including profile overlays, made absolute."""

    normalized = merge_config({}, config)
    tables: list[dict[str, Any]] = [normalized]
    profiles = normalized.get("profiles")
    if isinstance(profiles, dict):
        tables.extend(overlay for overlay in profiles.values() if isinstance(overlay, dict))
    for table in tables:
        for section, key in PATH_FIELDS:
            values = table.get(section)
            if isinstance(values, dict) and isinstance(values.get(key), str):
                values[key] = _absolute(values[key], base_dir)
    return normalized


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Compact, key-sorted JSON of the redacted config."""

    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return Path.cwd().resolve() / DEFAULT_CONFIG_FILE
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _pick_profile(
    explicit: str | None, from_cli: object, environ: Mapping[str, str]
) -> str | None:
    if from_cli is not None and not isinstance(from_cli, str):
        raise ConfigLoadError("cli override 'profile' must be a string")
    for candidate in (explicit, from_cli, environ.get(PROFILE_ENV)):
        if candidate is not None:
            return candidate.strip() or None
    return None


def _coerce(value: str, kind: FieldKind, env_name: str) -> object:
    if kind == "str_list":
        return [part.strip() for part in value.split(",") if part.strip()]
    if kind == "int":
        try:
            return int(value)
        except ValueError:
            raise ConfigLoadError(f"{env_name} must be an integer, got {value!r}") from None
    if kind == "float":
        try:
            return float(value)
        except ValueError:
            raise ConfigLoadError(f"{env_name} must be a number, got {value!r}") from None
    if kind == "bool":
        lowered = value.lower()
        if lowered in _TRUE_WORDS or lowered in _FALSE_WORDS:
            return lowered in _TRUE_WORDS
        raise ConfigLoadError(f"{env_name} must be a boolean (true/false, yes/no, on/off, 1/0)")
    return value


def _nest_overrides(overrides: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for dotted in sorted(overrides):
        value = overrides[dotted]
        if value is None:
            continue
        parts = [part for part in dotted.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        cursor = nested
        for part in parts[:-1]:
            child = cursor.get(part)
            if not isinstance(child, dict):
                child = cursor[part] = {}
            cursor = child
        cursor[parts[-1]] = value
    return nested


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV",
    "dump_effective_config",
    "effective_config",
    "env_overrides",
    "load_config",
    "normalize_paths",
]
