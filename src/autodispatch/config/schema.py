"""
Configuration schema and validation for autodispatch.

Every section is a table of typed fields. Validation walks the payload against those
tables and collects one ``ConfigValidationIssue`` per problem, addressed by dotted
path, so a bad file reports everything wrong with it at once. Profiles are partial
overlays of the same sections.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal

from autodispatch.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BASELINE_BRANCH,
    DEFAULT_EXCLUDED_LABELS,
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_ITEM_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_SLOT_COUNT,
    DEFAULT_WORK_BRANCH_PREFIX,
    LEARNING_STORE_FILE,
    LOCK_TABLE_FILE,
    STATE_DIR,
    WORKER_LOG_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("ci", "careful", "fast")
REDACTED: Final[str] = "<redacted>"

_PROFILE_NAME = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
# Matched against snake_cased keys, so ``clientSecret`` and ``client-secret`` both hit.
_SENSITIVE_KEY = re.compile(
    r"(?:^|_)(?:api_?key|access_token|client_secret|private(?:_key)?|secret|token"
    r"|passw(?:or)?d|passphrase|authorization|credentials?)(?:_|$)"
)

FieldKind = Literal["str", "text", "path", "int", "float", "bool", "enum", "str_list"]


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


class _Issues(list[ConfigValidationIssue]):
    def add(self, path: str, message: str) -> None:
        self.append(ConfigValidationIssue(path=path, message=message))


@dataclass(frozen=True, slots=True)
class _Field:
    kind: FieldKind
    minimum: float | None = None
    choices: tuple[str, ...] = ()

    def check(self, value: object, path: str, issues: _Issues) -> object | None:
        """Return the normalized value, or ``None`` after recording an issue."""

        if self.kind == "text":
            # Free-form and may be empty; an empty worker command means "none configured".
            if not isinstance(value, str):
                issues.add(path, f"expected string, got {type(value).__name__}")
                return None
            return value.strip()
        if self.kind in ("str", "path", "enum"):
            text = _nonempty_text(value, path, issues)
            if text is None:
                return None
            if self.kind == "path" and "\x00" in text:
                issues.add(path, "must not contain NUL bytes")
                return None
            if self.kind == "enum" and text not in self.choices:
                expected = ", ".join(sorted(self.choices))
                issues.add(path, f"invalid value {text!r}; expected one of: {expected}")
                return None
            return text
        if self.kind == "bool":
            if isinstance(value, bool):
                return value
            issues.add(path, f"expected boolean, got {type(value).__name__}")
            return None
        if self.kind in ("int", "float"):
            return self._check_number(value, path, issues)
        if isinstance(value, str) or not isinstance(value, Sequence):
            issues.add(path, f"expected list of strings, got {type(value).__name__}")
            return None
        checked = [_nonempty_text(item, f"{path}[{i}]", issues) for i, item in enumerate(value)]
        return [item for item in checked if item is not None]

    def _check_number(self, value: object, path: str, issues: _Issues) -> int | float | None:
        integral = self.kind == "int"
        if (
            isinstance(value, bool)
            or not isinstance(value, (int, float))
            or (integral and isinstance(value, float))
        ):
            expected = "integer" if integral else "number"
            issues.add(path, f"expected {expected}, got {type(value).__name__}")
            return None
        number = value if integral else float(value)
        if not math.isfinite(number):
            issues.add(path, "must be finite")
            return None
        if self.minimum is not None and number < self.minimum:
            bound = int(self.minimum) if integral else self.minimum
            issues.add(path, f"must be >= {bound}")
            return None
        return number


_SECTION_FIELDS: Final[Mapping[str, Mapping[str, _Field]]] = {
    "meta": {
        "schema_version": _Field("int", minimum=1),
    },
    "dispatch": {
        "slot_count": _Field("int", minimum=1),
        "heartbeat_seconds": _Field("float", minimum=0.0),
        "item_timeout_seconds": _Field("float", minimum=1.0),
        "max_cycles": _Field("int", minimum=0),
        "excluded_labels": _Field("str_list"),
    },
    "retry": {
        "max_attempts": _Field("int", minimum=1),
    },
    "validation": {
        "unit_command": _Field("str"),
        "integration_suite_command": _Field("str"),
        "full_command": _Field("str"),
        "keyword_command": _Field("str"),
        "test_timeout_seconds": _Field("float", minimum=1.0),
        "integration_command": _Field("text"),
        "quality_commands": _Field("str_list"),
        "quality_blocking": _Field("bool"),
        "regression_sample": _Field("bool"),
        "regression_seed": _Field("int", minimum=0),
    },
    "learning": {
        "enabled": _Field("bool"),
        "window_seconds": _Field("float", minimum=1.0),
        "trend_threshold": _Field("int", minimum=1),
        "top_k": _Field("int", minimum=1),
    },
    "collaborators": {
        "dependency_store": _Field("enum", choices=("beads", "memory")),
        "beads_executable": _Field("str"),
        "graph_analyzer": _Field("enum", choices=("local", "beads-viewer", "none")),
        "viewer_executable": _Field("str"),
        "command_timeout_seconds": _Field("float", minimum=1.0),
    },
    "git": {
        "enabled": _Field("bool"),
        "baseline_branch": _Field("str"),
        "work_branch_prefix": _Field("str"),
    },
    "worker": {
        "command": _Field("text"),
    },
    "paths": {
        "repo": _Field("path"),
        "state_dir": _Field("path"),
        "lock_file": _Field("path"),
        "learning_store": _Field("path"),
        "worker_log_dir": _Field("path"),
        "worktree_root": _Field("path"),
    },
    "observability": {
        "log_level": _Field("enum", choices=("DEBUG", "INFO", "WARNING", "ERROR")),
        "log_format": _Field("enum", choices=("json", "text")),
        "log_dir": _Field("path"),
        "log_to_stdout": _Field("bool"),
    },
}

_OVERLAY_SECTIONS: Final[frozenset[str]] = frozenset(_SECTION_FIELDS) - {"meta"}

# Relative values of these fields resolve against the config file's directory.
PATH_FIELDS: Final[tuple[tuple[str, str], ...]] = tuple(
    (section, key)
    for section, fields in _SECTION_FIELDS.items()
    for key, field in fields.items()
    if field.kind == "path"
)



DEFAULT_CONFIG: Final[dict[str, Any]] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "dispatch": {
        "slot_count": DEFAULT_SLOT_COUNT,
        "heartbeat_seconds": DEFAULT_HEARTBEAT_SECONDS,
        "item_timeout_seconds": DEFAULT_ITEM_TIMEOUT_SECONDS,
        "max_cycles": 0,
        "excluded_labels": list(DEFAULT_EXCLUDED_LABELS),
    },
    "retry": {
        "max_attempts": DEFAULT_MAX_ATTEMPTS,
    },
    "validation": {
        "unit_command": "pytest tests/unit -q",
        "integration_suite_command": "pytest tests/integration -q",
        "full_command": "pytest -q",
        "keyword_command": "pytest tests/unit -q -k {keywords}",
        "test_timeout_seconds": 1800.0,
        "integration_command": "",
        "quality_commands": [],
        "quality_blocking": False,
        "regression_sample": True,
        "regression_seed": 0,
    },
    "learning": {
        "enabled": True,
        "window_seconds": 86400.0,
        "trend_threshold": 3,
        "top_k": 3,
    },
    "collaborators": {
        "dependency_store": "beads",
        "beads_executable": "bd",
        "graph_analyzer": "local",
        "viewer_executable": "bv",
        "command_timeout_seconds": 60.0,
    },
    "git": {
        "enabled": True,
        "baseline_branch": DEFAULT_BASELINE_BRANCH,
        "work_branch_prefix": DEFAULT_WORK_BRANCH_PREFIX,
    },
    "worker": {
        "command": "",
    },
    "paths": {
        "repo": ".",
        "state_dir": STATE_DIR.as_posix(),
        "lock_file": LOCK_TABLE_FILE.as_posix(),
        "learning_store": LEARNING_STORE_FILE.as_posix(),
        "worker_log_dir": WORKER_LOG_DIR.as_posix(),
        "worktree_root": (STATE_DIR / "worktrees").as_posix(),
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": (STATE_DIR / "logs").as_posix(),
        "log_to_stdout": False,
    },
    "profiles": {
        "ci": {
            "dispatch": {"slot_count": 2, "heartbeat_seconds": 1.0},
            "validation": {"quality_blocking": True},
            "observability": {"log_to_stdout": True},
        },
        "careful": {
            "retry": {"max_attempts": 2},
            "validation": {"quality_blocking": True},
        },
        "fast": {
            "dispatch": {"heartbeat_seconds": 2.0},
            "validation": {"regression_sample": False},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Normalized config when valid, otherwise every issue found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "- <root>: unknown failure"))


def iter_fields() -> Iterator[tuple[str, str, FieldKind]]:
    """Yield ``(section, key, kind)`` for every declared field in sorted order."""

    for section in sorted(_SECTION_FIELDS):
        fields = _SECTION_FIELDS[section]
        for key in sorted(fields):
            yield section, key, fields[key].kind


def default_config() -> dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade autodispatch.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the autodispatch runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base`` into a new, key-sorted dict."""

    merged: dict[str, Any] = {}
    for key in sorted({*base, *overlay}):
        if key not in overlay:
            merged[key] = _plain_copy(base[key])
            continue
        ours, theirs = base.get(key), overlay[key]
        if isinstance(ours, Mapping) and isinstance(theirs, Mapping):
            merged[key] = merge_config(ours, theirs)
        else:
            merged[key] = _plain_copy(theirs)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile over ``config`` and validate the result."""

    name = (profile or "").strip()
    if not name:
        return merge_config({}, config)
    profiles = config.get("profiles")
    overlay = profiles.get(name) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", f"profile {name!r} is not defined")]
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=name)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    issues = _Issues()
    normalized = _check_root(config, issues)

    name = (active_profile or "").strip()
    if name and normalized is not None and name not in normalized.get("profiles", {}):
        issues.add("profiles", f"profile {name!r} is not defined")

    if normalized is None or issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` with every sensitive-looking key's value replaced."""

    if not isinstance(config, Mapping):
        return {}
    return {
        key: REDACTED if is_sensitive_key(key) else _redact(config[key])
        for key in sorted(config)
    }


def is_sensitive_key(key: str) -> bool:
    snake = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _SENSITIVE_KEY.search(_NON_ALNUM.sub("_", snake.lower()).strip("_")) is not None


def _check_root(payload: object, issues: _Issues) -> dict[str, Any] | None:
    root = _as_table(payload, "<root>", issues)
    if root is None:
        return None
    _check_keys(root, {*_SECTION_FIELDS, "profiles"}, "", issues)

    out: dict[str, Any] = {}
    for section in sorted(_SECTION_FIELDS):
        if section not in root:
            issues.add(section, "missing required field")
            continue
        table = _as_table(root[section], section, issues)
        if table is not None:
            out[section] = _check_section(table, section, section, issues, partial=False)

    version = out.get("meta", {}).get("schema_version")
    if isinstance(version, int) and version != ConfigSchemaVersion:
        issues.add("meta.schema_version", migration_guidance(version))

    if "profiles" in root:
        profiles = _as_table(root["profiles"], "profiles", issues)
        if profiles is not None:
            out["profiles"] = _check_profiles(profiles, issues)
    return out


def _check_section(
    table: Mapping[str, object],
    section: str,
    path: str,
    issues: _Issues,
    *,
    partial: bool,
) -> dict[str, Any]:
    fields = _SECTION_FIELDS[section]
    _check_keys(table, set(fields), path, issues)
    out: dict[str, Any] = {}
    for key in sorted(fields):
        if key not in table:
            if not partial:
                issues.add(f"{path}.{key}", "missing required field")
            continue
        value = fields[key].check(table[key], f"{path}.{key}", issues)
        if value is not None:
            out[key] = value
    return out


def _check_profiles(profiles: Mapping[str, object], issues: _Issues) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(profiles):
        path = f"profiles.{name}"
        if not _PROFILE_NAME.fullmatch(name):
            issues.add(path, f"profile name must match {_PROFILE_NAME.pattern}")
            continue
        overlay = _as_table(profiles[name], path, issues)
        if overlay is None:
            continue
        _check_keys(overlay, set(_OVERLAY_SECTIONS), path, issues)
        checked: dict[str, Any] = {}
        for section in sorted(_OVERLAY_SECTIONS & set(overlay)):
            table = _as_table(overlay[section], f"{path}.{section}", issues)
            if table is not None:
                checked[section] = _check_section(
                    table, section, f"{path}.{section}", issues, partial=True
                )
        out[name] = checked
    return out


def _check_keys(table: Mapping[str, object], allowed: set[str], path: str, issues: _Issues) -> None:
    for key in sorted(set(table) - allowed):
        key_path = f"{path}.{key}" if path else key
        if is_sensitive_key(key):
            issues.add(
                key_path, "embedded secret values are forbidden; pass them through the environment"
            )
        else:
            issues.add(key_path, "unknown field")


def _as_table(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    bad_keys = [key for key in value if not isinstance(key, str)]
    for key in bad_keys:
        issues.add(path, f"object key must be string, got {type(key).__name__}")
    return {key: item for key, item in value.items() if isinstance(key, str)}


def _nonempty_text(value: object, path: str, issues: _Issues) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    text = value.strip()
    if not text:
        issues.add(path, "must not be empty")
        return None
    return text


def _plain_copy(value: object) -> Any:
    if isinstance(value, Mapping):
        return merge_config({}, value)
    if isinstance(value, list):
        return [_plain_copy(item) for item in value]
    return copy.deepcopy(value)


def _redact(value: object) -> object:
    if isinstance(value, Mapping):
        return redact_config(value)
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "FieldKind",
    "PATH_FIELDS",
    "REDACTED",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "is_sensitive_key",
    "iter_fields",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
