"""
Deterministic conflict reporting and three-tier resolution policy.

Purpose
- Describe a failed trial merge: overlapping regions per path and a coarse category.
- Resolve a conflicting item by escalating through three tiers, each only after the
  previous one has been tried:

  1. conflict-aware retry: re-dispatch with the overlapping regions in the context;
  2. serialization: block the item behind the item whose integrated change it
     collided with, then release it automatically once that item is closed;
  3. manual escalation: open a ``needs-human`` analysis item and park the original.

Non-functional requirements
- Serialization never adds a blocking edge that would close a cycle.
- Stable output ordering for reports and rendered context.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePosixPath
from types import MappingProxyType
from typing import Any, Final

import structlog

from autodispatch.constants import (
    LABEL_CONFLICT_ANALYSIS,
    LABEL_CONFLICT_RETRY,
    LABEL_ESCALATED,
    LABEL_NEEDS_HUMAN,
    LABEL_SERIALIZED,
)
from autodispatch.domain import graph
from autodispatch.domain.models import WorkItem, WorkItemKind, WorkItemStatus
from autodispatch.persistence.dependency_store import (
    DependencyStore,
    advance_attempt,
)

_MAX_REGION_TEXT: Final[int] = 4_000
_MAX_CONTEXT_REGIONS: Final[int] = 12

_CONFIG_SUFFIXES: Final[frozenset[str]] = frozenset(
    {".toml", ".yaml", ".yml", ".json", ".ini", ".cfg", ".conf", ".env", ".lock"}
)
_CONFIG_NAMES: Final[frozenset[str]] = frozenset(
    {"Makefile", "Dockerfile", "setup.py", "package.json", "go.mod", "Cargo.toml"}
)
_EXPORT_FILE_NAMES: Final[frozenset[str]] = frozenset(
    {"__init__.py", "index.ts", "index.js", "mod.rs", "lib.rs"}
)
_EXPORT_RE = re.compile(
    r"(^\s*__all__\s*=|^\s*export\s+(\{|\*)|^\s*pub\s+use\s)",
    re.M,
)
_TYPE_RE = re.compile(
    r"(^\s*class\s+\w+|^\s*(export\s+)?(interface|type)\s+\w+"
    r"|^\s*(pub\s+)?(struct|enum|trait)\s+\w+"
    r"|@dataclass|\bTypedDict\b|\bProtocol\b|\bNamedTuple\b)",
    re.M,
)
_TYPE_FILE_RE = re.compile(r"(^|/)(types?|models?|schemas?)\.\w+$|\.d\.ts$")


class ConflictCategory(StrEnum):
    """Coarse conflict categories used for resolution hints."""

    SHARED_TYPE_DEFINITION = "shared-type-definition"
    SHARED_EXPORT_LIST = "shared-export-list"
    SHARED_CONFIGURATION = "shared-configuration"
    GENERIC_CODE = "generic-code"


class ConflictTier(StrEnum):
    """Resolution tier applied to a conflicting item."""

    RETRY = "conflict-retry"
    SERIALIZED = "serialized"
    ESCALATED = "escalated"


_CATEGORY_HINTS: Final[Mapping[ConflictCategory, str]] = MappingProxyType(
    {
        ConflictCategory.SHARED_TYPE_DEFINITION: (
            "Both sides changed a shared type; merge the fields or members from each side "
            "and update every use site."
        ),
        ConflictCategory.SHARED_EXPORT_LIST: (
            "Both sides extended an export or import list; keep the union of entries."
        ),
        ConflictCategory.SHARED_CONFIGURATION: (
            "Both sides edited shared configuration; keep both settings unless they "
            "contradict, then prefer the baseline value."
        ),
        ConflictCategory.GENERIC_CODE: (
            "Both sides edited the same code; reapply your change on top of the baseline."
        ),
    }
)


@dataclass(frozen=True, slots=True)
class ConflictRegion:
    """One overlapping hunk: our side (baseline) against theirs (work branch)."""

    path: str
    start_line: int
    ours: str
    theirs: str

    def __post_init__(self) -> None:
        if not self.path.strip():
            raise ValueError("ConflictRegion.path must be non-empty")
        if self.start_line < 1:
            raise ValueError("ConflictRegion.start_line must be >= 1")
        object.__setattr__(self, "ours", self.ours[:_MAX_REGION_TEXT])
        object.__setattr__(self, "theirs", self.theirs[:_MAX_REGION_TEXT])


@dataclass(frozen=True, slots=True)
class ConflictReport:
    """Result of a trial merge that did not apply cleanly."""

    branch: str
    paths: tuple[str, ...]
    regions: tuple[ConflictRegion, ...] = ()
    categories: Mapping[str, ConflictCategory] = field(default_factory=dict)
    sources: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "paths", tuple(sorted(set(self.paths))))
        object.__setattr__(
            self,
            "regions",
            tuple(sorted(self.regions, key=lambda region: (region.path, region.start_line))),
        )
        object.__setattr__(
            self,
            "categories",
            MappingProxyType(
                {path: ConflictCategory(self.categories[path]) for path in sorted(self.categories)}
            ),
        )

    @property
    def primary_category(self) -> ConflictCategory:
        for category in ConflictCategory:
            if category in self.categories.values():
                return category
        return ConflictCategory.GENERIC_CODE

    def with_sources(self, sources: Sequence[str]) -> ConflictReport:
        return ConflictReport(
            branch=self.branch,
            paths=self.paths,
            regions=self.regions,
            categories=dict(self.categories),
            sources=tuple(dict.fromkeys(sources)),
        )

    def summary(self) -> str:
        listed = ", ".join(
            f"{path} ({self.categories.get(path, ConflictCategory.GENERIC_CODE).value})"
            for path in self.paths
        )
        return f"merge conflict on {len(self.paths)} path(s): {listed}"

    def render_context(self) -> str:
        """Markdown description of the overlapping regions with reconcile hints."""

        lines: list[str] = []
        for region in self.regions[:_MAX_CONTEXT_REGIONS]:
            category = self.categories.get(region.path, ConflictCategory.GENERIC_CODE)
            lines.append(f"### {region.path} (line {region.start_line}, {category.value})")
            lines.append(_CATEGORY_HINTS[category])
            lines.append("Baseline version:")
            lines.append("```")
            lines.append(region.ours.rstrip("\n"))
            lines.append("```")
            lines.append("Your version:")
            lines.append("```")
            lines.append(region.theirs.rstrip("\n"))
            lines.append("```")
            lines.append("")
        omitted = len(self.regions) - _MAX_CONTEXT_REGIONS
        if omitted > 0:
            lines.append(f"({omitted} more region(s) omitted)")
        regionless = [path for path in self.paths if path not in {r.path for r in self.regions}]
        for path in regionless:
            lines.append(f"### {path}: conflicting change without text markers (binary/rename)")
        return "\n".join(lines).strip()

    def to_dict(self) -> dict[str, object]:
        return {
            "branch": self.branch,
            "paths": list(self.paths),
            "categories": {path: category.value for path, category in self.categories.items()},
            "regions": [
                {
                    "path": region.path,
                    "start_line": region.start_line,
                    "ours": region.ours,
                    "theirs": region.theirs,
                }
                for region in self.regions
            ],
            "sources": list(self.sources),
        }


@dataclass(frozen=True, slots=True)
class ConflictResolution:
    """Outcome of resolving one conflicting item."""

    item_id: str
    tier: ConflictTier
    reason: str
    attempt: int
    blocker_id: str | None = None
    analysis_item_id: str | None = None
    conflict_context: str | None = None


def parse_conflict_markers(path: str, text: str) -> tuple[ConflictRegion, ...]:
    """Extract ``<<<<<<<`` / ``=======`` / ``>>>>>>>`` regions (diff3 base sections dropped)."""

    regions: list[ConflictRegion] = []
    state = "outside"
    start_line = 0
    ours: list[str] = []
    theirs: list[str] = []
    for line_number, line in enumerate(text.splitlines(keepends=True), start=1):
        if state == "outside":
            if line.startswith("<<<<<<<"):
                state = "ours"
                start_line = line_number
                ours, theirs = [], []
            continue
        if state == "ours":
            if line.startswith("|||||||"):
                state = "base"
            elif line.startswith("======="):
                state = "theirs"
            else:
                ours.append(line)
            continue
        if state == "base":
            if line.startswith("======="):
                state = "theirs"
            continue
        if line.startswith(">>>>>>>"):
            regions.append(
                ConflictRegion(
                    path=path,
                    start_line=start_line,
                    ours="".join(ours),
                    theirs="".join(theirs),
                )
            )
            state = "outside"
        else:
            theirs.append(line)
    return tuple(regions)


def categorize_conflict(path: str, regions: Sequence[ConflictRegion] = ()) -> ConflictCategory:
    """Classify one conflicting path: configuration, export list, type definition or code."""

    posix = PurePosixPath(path)
    if posix.suffix.lower() in _CONFIG_SUFFIXES or posix.name in _CONFIG_NAMES:
        return ConflictCategory.SHARED_CONFIGURATION
    region_text = "".join(region.ours + region.theirs for region in regions)
    if posix.name in _EXPORT_FILE_NAMES or _EXPORT_RE.search(region_text):
        return ConflictCategory.SHARED_EXPORT_LIST
    if _TYPE_RE.search(region_text) or _TYPE_FILE_RE.search(posix.as_posix()):
        return ConflictCategory.SHARED_TYPE_DEFINITION
    return ConflictCategory.GENERIC_CODE


class ConflictResolver:
    """Apply the three-tier strategy to an item whose trial merge conflicted."""

    def __init__(
        self,
        store: DependencyStore,
        *,
        max_attempts: int,
        logger: Any | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._store = store
        self._max_attempts = max_attempts
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def resolve(self, item: WorkItem, report: ConflictReport) -> ConflictResolution:
        if item.has_label(LABEL_SERIALIZED):
            return self._escalate(item, report, reason="conflict persisted after serialization")
        if not item.has_label(LABEL_CONFLICT_RETRY) and item.attempt < self._max_attempts:
            return self._retry(item, report)

        blocker_id, skip_reason = self._pick_blocker(item, report)
        if blocker_id is None:
            return self._escalate(item, report, reason=skip_reason)
        return self._serialize(item, report, blocker_id)

    def _retry(self, item: WorkItem, report: ConflictReport) -> ConflictResolution:
        attempt = advance_attempt(self._store, item)
        self._store.add_label(item.id, LABEL_CONFLICT_RETRY)
        self._store.add_comment(
            item.id,
            f"Conflict-aware retry (attempt {attempt}): {report.summary()}. "
            "The next attempt receives the overlapping regions to reconcile.",
        )
        self._store.update_status(item.id, WorkItemStatus.OPEN)
        self._log(item, ConflictTier.RETRY, report, attempt=attempt)
        return ConflictResolution(
            item_id=item.id,
            tier=ConflictTier.RETRY,
            reason="conflict-aware retry",
            attempt=attempt,
            conflict_context=report.render_context(),
        )

    def _pick_blocker(
        self, item: WorkItem, report: ConflictReport
    ) -> tuple[str | None, str]:
        candidates = [source for source in report.sources if source != item.id]
        if not candidates:
            return None, "no integrated source item found for the conflicting paths"
        snapshot = graph.index_items(self._store.list_items())
        for source_id in candidates:
            if source_id not in snapshot:
                continue
            if graph.would_create_cycle(snapshot, blocker_id=source_id, blocked_id=item.id):
                self._logger.warning(
                    "serialization_edge_rejected",
                    item_id=item.id,
                    blocker_id=source_id,
                    reason="cycle",
                )
                continue
            return source_id, ""
        return None, "serializing behind the source item would create a dependency cycle"

    def _serialize(
        self, item: WorkItem, report: ConflictReport, blocker_id: str
    ) -> ConflictResolution:
        if blocker_id not in item.blocked_by:
            self._store.add_dependency(blocker_id, item.id)
        self._store.add_label(item.id, LABEL_SERIALIZED)
        self._store.add_comment(
            item.id,
            f"Serialized behind {blocker_id} after {report.summary()}. "
            f"Released automatically once {blocker_id} is closed.",
        )
        self._store.update_status(item.id, WorkItemStatus.BLOCKED)
        self._log(item, ConflictTier.SERIALIZED, report, blocker_id=blocker_id)
        return ConflictResolution(
            item_id=item.id,
            tier=ConflictTier.SERIALIZED,
            reason=f"serialized behind {blocker_id}",
            attempt=item.attempt,
            blocker_id=blocker_id,
            conflict_context=report.render_context(),
        )

    def _escalate(
        self, item: WorkItem, report: ConflictReport, *, reason: str
    ) -> ConflictResolution:
        description = "\n\n".join(
            [
                f"Work item {item.id} ({item.title}) could not be merged into the baseline: "
                f"{reason}.",
                report.summary(),
                report.render_context(),
                "Resolution options:\n"
                "- merge both versions by hand on the work branch and reopen the item;\n"
                "- split the item so the overlapping part lands separately;\n"
                "- drop one side and close the other item as superseded.",
            ]
        )
        analysis = self._store.create_item(
            f"Resolve merge conflict for {item.id}: {item.title}"[:500],
            kind=WorkItemKind.INTEGRATION,
            priority=item.priority,
            labels=(LABEL_CONFLICT_ANALYSIS, LABEL_NEEDS_HUMAN),
            description=description,
            discovered_from=item.id,
        )
        self._store.add_label(item.id, LABEL_ESCALATED)
        self._store.add_comment(
            item.id,
            f"Escalated for manual resolution ({reason}); see {analysis.id}.",
        )
        self._store.update_status(item.id, WorkItemStatus.BLOCKED)
        self._log(item, ConflictTier.ESCALATED, report, analysis_item_id=analysis.id)
        return ConflictResolution(
            item_id=item.id,
            tier=ConflictTier.ESCALATED,
            reason=reason,
            attempt=item.attempt,
            analysis_item_id=analysis.id,
        )

    def _log(
        self,
        item: WorkItem,
        tier: ConflictTier,
        report: ConflictReport,
        **fields: object,
    ) -> None:
        self._logger.info(
            "conflict_resolved",
            item_id=item.id,
            tier=tier.value,
            paths=list(report.paths),
            category=report.primary_category.value,
            **fields,
        )


__all__ = [
    "ConflictCategory",
    "ConflictRegion",
    "ConflictReport",
    "ConflictResolution",
    "ConflictResolver",
    "ConflictTier",
    "categorize_conflict",
    "parse_conflict_markers",
]
