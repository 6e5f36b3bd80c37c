"""Integration plane: trial merges, baseline integration and conflict resolution."""

from autodispatch.integration_plane.conflict_resolution import (
    ConflictCategory,
    ConflictRegion,
    ConflictReport,
    ConflictResolution,
    ConflictResolver,
    ConflictTier,
    categorize_conflict,
    parse_conflict_markers,
)
from autodispatch.integration_plane.git_engine import (
    CommandResult,
    GitCommandError,
    GitEngine,
    GitEngineError,
    RepoInitResult,
)

__all__ = [
    "CommandResult",
    "ConflictCategory",
    "ConflictRegion",
    "ConflictReport",
    "ConflictResolution",
    "ConflictResolver",
    "ConflictTier",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "RepoInitResult",
    "categorize_conflict",
    "parse_conflict_markers",
]
