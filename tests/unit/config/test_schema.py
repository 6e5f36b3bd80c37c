"""
Unit tests for config schema validation.

Coverage
- The repository's own autodispatch.toml and the built-in defaults validate.
- Unknown keys, embedded secrets, bad types, enums and minimums report dotted paths.
- Schema version mismatches carry migration guidance.
- Profile overlays and recursive redaction.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

from autodispatch.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

pytestmark = pytest.mark.unit

REPO_ROOT = Path(__file__).resolve().parents[3]


def _messages(config: object) -> dict[str, str]:
    result = validate_config(config)
    assert not result.is_valid
    return {issue.path: issue.message for issue in result.issues}


def test_repository_config_file_validates() -> None:
    with (REPO_ROOT / "autodispatch.toml").open("rb") as handle:
        payload = tomllib.load(handle)

    result = validate_config(payload)

    assert result.is_valid, result.issues
    assert result.config is not None
    assert result.config["meta"]["schema_version"] == ConfigSchemaVersion
    assert sorted(result.config["profiles"]) == sorted(BUILTIN_PROFILE_NAMES)


def test_defaults_validate_and_are_copied() -> None:
    first = default_config()
    first["dispatch"]["slot_count"] = 99
    second = default_config()

    assert assert_valid_config(second) == second
    assert second["dispatch"]["slot_count"] != 99
    assert second["collaborators"]["dependency_store"] == "beads"
    assert second["worker"]["command"] == ""


def test_unknown_and_missing_fields_are_reported() -> None:
    config = default_config()
    config["dispatch"]["slots"] = 4
    config["extras"] = {}
    del config["retry"]["max_attempts"]

    messages = _messages(config)

    assert messages["dispatch.slots"] == "unknown field"
    assert messages["extras"] == "unknown field"
    assert messages["retry.max_attempts"] == "missing required field"


@pytest.mark.parametrize("key", ["api_key", "clientSecret", "worker_token", "password"])
def test_embedded_secrets_are_rejected(key: str) -> None:
    config = default_config()
    config["worker"][key] = "hunter2"

    messages = _messages(config)

    assert messages[f"worker.{key}"] == (
        "embedded secret values are forbidden; pass them through the environment"
    )


def test_type_enum_and_minimum_errors() -> None:
    config = default_config()
    config["dispatch"]["slot_count"] = 0
    config["dispatch"]["heartbeat_seconds"] = "soon"
    config["validation"]["quality_blocking"] = "yes"
    config["retry"]["max_attempts"] = True
    config["collaborators"]["dependency_store"] = "sqlite"
    config["dispatch"]["excluded_labels"] = "failed"
    config["git"]["baseline_branch"] = "   "

    messages = _messages(config)

    assert messages["dispatch.slot_count"] == "must be >= 1"
    assert messages["dispatch.heartbeat_seconds"] == "expected number, got str"
    assert messages["validation.quality_blocking"] == "expected boolean, got str"
    assert messages["retry.max_attempts"] == "expected integer, got bool"
    assert messages["collaborators.dependency_store"] == (
        "invalid value 'sqlite'; expected one of: beads, memory"
    )
    assert messages["dispatch.excluded_labels"] == "expected list of strings, got str"
    assert messages["git.baseline_branch"] == "must not be empty"


def test_empty_worker_command_is_allowed() -> None:
    config = default_config()
    config["worker"]["command"] = "  "
    config["validation"]["integration_command"] = ""

    validated = assert_valid_config(config)

    assert validated["worker"]["command"] == ""


def test_schema_version_mismatch_guides_migration() -> None:
    config = default_config()
    config["meta"]["schema_version"] = ConfigSchemaVersion + 1

    messages = _messages(config)

    assert "upgrade the autodispatch runtime" in messages["meta.schema_version"]
    assert "upgrade autodispatch.toml" in migration_guidance(0)
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


def test_error_renders_every_issue() -> None:
    config = default_config()
    config["dispatch"]["slot_count"] = -1
    config["learning"]["top_k"] = 0

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    rendered = str(excinfo.value)
    assert rendered.startswith("invalid config:\n")
    assert "- dispatch.slot_count: must be >= 1" in rendered
    assert "- learning.top_k: must be >= 1" in rendered
    assert len(excinfo.value.issues) == 2


def test_profile_overlay_applies_and_revalidates() -> None:
    careful = apply_profile_overlay(default_config(), "careful")
    assert careful["retry"]["max_attempts"] == 2
    assert careful["validation"]["quality_blocking"] is True

    unchanged = apply_profile_overlay(default_config(), None)
    assert unchanged == default_config()

    with pytest.raises(ConfigValidationError, match="profile 'turbo' is not defined"):
        apply_profile_overlay(default_config(), "turbo")


def test_profile_overlays_are_validated() -> None:
    config = default_config()
    config["profiles"]["Bad Name"] = {}
    config["profiles"]["night"] = {"meta": {"schema_version": 1}, "retry": {"max_attempts": 0}}

    messages = _messages(config)

    assert messages["profiles.Bad Name"] == "profile name must match ^[a-z][a-z0-9_-]*$"
    assert messages["profiles.night.meta"] == "unknown field"
    assert messages["profiles.night.retry.max_attempts"] == "must be >= 1"


def test_merge_is_deep_and_leaves_inputs_alone() -> None:
    base = default_config()
    overlay = {"dispatch": {"slot_count": 7}, "validation": {"quality_commands": ["ruff check"]}}

    merged = merge_config(base, overlay)

    assert merged["dispatch"]["slot_count"] == 7
    assert merged["dispatch"]["max_cycles"] == base["dispatch"]["max_cycles"]
    assert merged["validation"]["quality_commands"] == ["ruff check"]
    assert base["dispatch"]["slot_count"] == default_config()["dispatch"]["slot_count"]
    assert list(merged) == sorted(merged)


def test_redaction_is_recursive_and_non_destructive() -> None:
    config = {"worker": {"command": "agent", "apiKey": "abc"}, "items": [{"token": "t"}]}

    redacted = redact_config(config)

    assert redacted == {
        "items": [{"token": "<redacted>"}],
        "worker": {"apiKey": "<redacted>", "command": "agent"},
    }
    assert config["worker"]["apiKey"] == "abc"
    assert redact_config(["not", "a", "mapping"]) == {}
