"""
Persistence layer: the Dependency Store protocol and its adapters.

The dispatch loop owns no work-item state of its own; items, statuses, labels and
blocking edges live in the dependency store.
"""

from autodispatch.persistence.beads_cli import BeadsCliStore, CliResult
from autodispatch.persistence.dependency_store import (
    DependencyStore,
    DependencyStoreError,
    InMemoryDependencyStore,
    InvalidTransitionError,
    ItemNotFoundError,
    advance_attempt,
)

__all__ = [
    "BeadsCliStore",
    "CliResult",
    "DependencyStore",
    "DependencyStoreError",
    "InMemoryDependencyStore",
    "InvalidTransitionError",
    "ItemNotFoundError",
    "advance_attempt",
]
