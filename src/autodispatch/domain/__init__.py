"""
Domain types shared across planes: WorkItem, Lock, ErrorPattern and graph helpers.

The domain layer is free of IO side effects; every object here is immutable and
round-trips through plain dictionaries.
"""

from autodispatch.domain.graph import (
    build_dependency_maps,
    downstream_counts,
    find_cycles,
    hierarchy_violations,
    index_items,
    is_ready,
    parallel_tracks,
    ready_item_ids,
    would_create_cycle,
)
from autodispatch.domain.models import (
    IN_FLIGHT_STATUSES,
    TERMINAL_LOOKING_STATUSES,
    ErrorPattern,
    GateReason,
    Lock,
    Trend,
    WorkItem,
    WorkItemKind,
    WorkItemStatus,
    attempt_label,
    truncate_comment,
    utc_now,
)

__all__ = [
    "ErrorPattern",
    "GateReason",
    "IN_FLIGHT_STATUSES",
    "Lock",
    "TERMINAL_LOOKING_STATUSES",
    "Trend",
    "WorkItem",
    "WorkItemKind",
    "WorkItemStatus",
    "attempt_label",
    "build_dependency_maps",
    "downstream_counts",
    "find_cycles",
    "hierarchy_violations",
    "index_items",
    "is_ready",
    "parallel_tracks",
    "ready_item_ids",
    "truncate_comment",
    "utc_now",
    "would_create_cycle",
]
