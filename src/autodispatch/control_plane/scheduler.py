"""Deterministic ranking of ready work items for the dispatch loop."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from autodispatch.constants import DEFAULT_EXCLUDED_LABELS
from autodispatch.domain.models import WorkItemStatus
from autodispatch.knowledge_plane.graph_analyzer import GraphAnalyzerUnavailable

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable, Mapping, Sequence

    from autodispatch.domain.models import WorkItem
    from autodispatch.knowledge_plane.graph_analyzer import GraphAnalyzer


@dataclass(frozen=True, slots=True)
class ScheduleDecision:
    """Ranked candidates for one dispatch cycle."""

    ranked: tuple[str, ...]
    excluded: tuple[str, ...]
    skipped_locked: tuple[str, ...]
    impact: Mapping[str, float]
    degraded: bool
    awaiting_blockers: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class _Candidate:
    item_id: str
    impact: float
    priority: int
    sequence: int


class Scheduler:
    """Impact-first ranking with priority and insertion-order tie-breaks.

    When the graph analyzer is unavailable every impact score is treated as zero,
    which degrades the order to FIFO-by-priority.
    """

    __slots__ = ("_analyzer", "_excluded_labels", "_logger")

    def __init__(
        self,
        analyzer: GraphAnalyzer | None = None,
        *,
        excluded_labels: Iterable[str] = DEFAULT_EXCLUDED_LABELS,
        logger: Any | None = None,
    ) -> None:
        self._analyzer = analyzer
        self._excluded_labels = frozenset(excluded_labels)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def excluded_labels(self) -> frozenset[str]:
        return self._excluded_labels

    def schedule(
        self,
        ready_items: Sequence[WorkItem],
        *,
        locked: Collection[str] = (),
        in_flight: Collection[str] = (),
    ) -> ScheduleDecision:
        """Rank ``ready_items``.

        ``in_flight`` holds items still owned by a slot or lock. The store may already
        report such an item closed; anything it blocks waits until it has passed
        validation and left its slot.
        """

        eligible: list[WorkItem] = []
        excluded: list[str] = []
        skipped_locked: list[str] = []
        awaiting: list[str] = []
        for item in ready_items:
            if item.status is not WorkItemStatus.OPEN:
                continue
            if self._excluded_labels.intersection(item.labels):
                excluded.append(item.id)
                continue
            if item.id in locked:
                skipped_locked.append(item.id)
                continue
            if any(blocker_id in in_flight for blocker_id in item.blocked_by):
                awaiting.append(item.id)
                continue
            eligible.append(item)

        impact, degraded = self._impact_scores([item.id for item in eligible])
        candidates = [
            _Candidate(
                item_id=item.id,
                impact=impact.get(item.id, 0.0),
                priority=item.priority,
                sequence=item.sequence,
            )
            for item in eligible
        ]
        ordered = sorted(candidates, key=_candidate_sort_key)
        return ScheduleDecision(
            ranked=tuple(candidate.item_id for candidate in ordered),
            excluded=tuple(excluded),
            skipped_locked=tuple(skipped_locked),
            impact=impact,
            degraded=degraded,
            awaiting_blockers=tuple(awaiting),
        )

    def _impact_scores(self, item_ids: list[str]) -> tuple[dict[str, float], bool]:
        if not item_ids:
            return {}, False
        if self._analyzer is None:
            return {}, True
        try:
            return dict(self._analyzer.impact_scores(item_ids)), False
        except GraphAnalyzerUnavailable as exc:
            self._logger.warning("graph_analyzer_unavailable", error=str(exc), fallback="fifo")
            return {}, True


def _candidate_sort_key(candidate: _Candidate) -> tuple[object, ...]:
    return (-candidate.impact, candidate.priority, candidate.sequence, candidate.item_id)


__all__ = ["ScheduleDecision", "Scheduler"]
