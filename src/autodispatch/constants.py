"""Stable constants shared across dispatch planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Git refs.
DEFAULT_BASELINE_BRANCH: Final[str] = "main"
DEFAULT_WORK_BRANCH_PREFIX: Final[str] = "work"
WORK_ITEM_TRAILER: Final[str] = "Work-Item"

# Schema versions for persisted state.
CONFIG_SCHEMA_VERSION: Final[int] = 1
LOCK_TABLE_SCHEMA_VERSION: Final[int] = 1
LEARNING_STORE_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".autodispatch")
LOCK_TABLE_FILE: Final[PurePosixPath] = STATE_DIR / "locks.json"
LEARNING_STORE_FILE: Final[PurePosixPath] = STATE_DIR / "learning.yaml"
WORKER_LOG_DIR: Final[PurePosixPath] = STATE_DIR / "workers"

# Dispatch defaults.
DEFAULT_SLOT_COUNT: Final[int] = 5
DEFAULT_HEARTBEAT_SECONDS: Final[float] = 10.0
DEFAULT_ITEM_TIMEOUT_SECONDS: Final[float] = 4 * 60 * 60.0
DEFAULT_MAX_ATTEMPTS: Final[int] = 3

# Labels with control-flow meaning.
LABEL_FAILED: Final[str] = "failed"
LABEL_NEEDS_HUMAN: Final[str] = "needs-human"
LABEL_SERIALIZED: Final[str] = "serialized"
LABEL_ESCALATED: Final[str] = "escalated"
LABEL_CONFLICT_RETRY: Final[str] = "conflict-retry"
LABEL_CONFLICT_ANALYSIS: Final[str] = "conflict-analysis"
LABEL_FAILURE_ANALYSIS: Final[str] = "failure-analysis"
LABEL_STUCK: Final[str] = "stuck"
LABEL_REGRESSION_REOPENED: Final[str] = "regression-reopened"
ATTEMPT_LABEL_PREFIX: Final[str] = "attempt-"
DISCOVERED_FROM_LABEL_PREFIX: Final[str] = "discovered-from:"
WORKER_LABEL_PREFIX: Final[str] = "worker:"

DEFAULT_EXCLUDED_LABELS: Final[tuple[str, ...]] = (LABEL_FAILED, LABEL_NEEDS_HUMAN)

__all__ = [
    "ATTEMPT_LABEL_PREFIX",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_BASELINE_BRANCH",
    "DEFAULT_EXCLUDED_LABELS",
    "DEFAULT_HEARTBEAT_SECONDS",
    "DEFAULT_ITEM_TIMEOUT_SECONDS",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_SLOT_COUNT",
    "DEFAULT_WORK_BRANCH_PREFIX",
    "DISCOVERED_FROM_LABEL_PREFIX",
    "LABEL_CONFLICT_ANALYSIS",
    "LABEL_CONFLICT_RETRY",
    "LABEL_ESCALATED",
    "LABEL_FAILED",
    "LABEL_FAILURE_ANALYSIS",
    "LABEL_NEEDS_HUMAN",
    "LABEL_REGRESSION_REOPENED",
    "LABEL_SERIALIZED",
    "LABEL_STUCK",
    "LEARNING_STORE_FILE",
    "LEARNING_STORE_SCHEMA_VERSION",
    "LOCK_TABLE_FILE",
    "LOCK_TABLE_SCHEMA_VERSION",
    "STATE_DIR",
    "WORKER_LABEL_PREFIX",
    "WORKER_LOG_DIR",
    "WORK_ITEM_TRAILER",
]
