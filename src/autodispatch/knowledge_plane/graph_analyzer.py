"""
Graph Analyzer protocol and adapters.

The analyzer answers whole-graph questions the scheduler and the run report need:
cycles, independent parallel tracks, downstream impact, and a diff against an earlier
reference. Every failure surfaces as :class:`GraphAnalyzerUnavailable`; callers degrade
(FIFO-by-priority ranking, skipped reports) instead of halting.
"""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from autodispatch.domain import graph
from autodispatch.domain.models import WorkItem, WorkItemStatus
from autodispatch.persistence.dependency_store import DependencyStore, DependencyStoreError


class GraphAnalyzerUnavailable(RuntimeError):
    """Raised when the graph analyzer cannot answer a query."""


@dataclass(frozen=True, slots=True)
class GraphDiff:
    """Changes between a reference snapshot and the current graph."""

    since_ref: str
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    status_changes: tuple[tuple[str, str, str], ...] = ()
    new_cycles: tuple[tuple[str, ...], ...] = ()
    resolved_cycles: tuple[tuple[str, ...], ...] = ()

    @property
    def has_new_cycles(self) -> bool:
        return bool(self.new_cycles)

    def to_dict(self) -> dict[str, object]:
        return {
            "since_ref": self.since_ref,
            "added": list(self.added),
            "removed": list(self.removed),
            "status_changes": [list(change) for change in self.status_changes],
            "new_cycles": [list(cycle) for cycle in self.new_cycles],
            "resolved_cycles": [list(cycle) for cycle in self.resolved_cycles],
        }


@runtime_checkable
class GraphAnalyzer(Protocol):
    def detect_cycles(self) -> tuple[tuple[str, ...], ...]: ...

    def parallel_tracks(self, item_ids: Sequence[str]) -> tuple[tuple[str, ...], ...]: ...

    def impact_scores(self, item_ids: Sequence[str]) -> dict[str, float]: ...

    def diff(self, since_ref: str) -> GraphDiff: ...


@dataclass(frozen=True, slots=True)
class _Checkpoint:
    statuses: Mapping[str, WorkItemStatus]
    cycles: tuple[tuple[str, ...], ...] = field(default_factory=tuple)


class LocalGraphAnalyzer:
    """In-process analyzer computed over dependency-store snapshots.

    ``checkpoint(name)`` records the current statuses and cycles under a name that
    ``diff(name)`` later compares against.
    """

    def __init__(self, store: DependencyStore, *, logger: Any | None = None) -> None:
        self._store = store
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._checkpoints: dict[str, _Checkpoint] = {}

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        return graph.find_cycles(self._snapshot())

    def parallel_tracks(self, item_ids: Sequence[str]) -> tuple[tuple[str, ...], ...]:
        return graph.parallel_tracks(self._snapshot(), item_ids)

    def impact_scores(self, item_ids: Sequence[str]) -> dict[str, float]:
        counts = graph.downstream_counts(self._snapshot(), item_ids)
        return {item_id: float(count) for item_id, count in counts.items()}

    def checkpoint(self, name: str) -> str:
        if not name.strip():
            raise ValueError("checkpoint name must be non-empty")
        snapshot = self._snapshot()
        self._checkpoints[name] = _Checkpoint(
            statuses={item_id: item.status for item_id, item in snapshot.items()},
            cycles=graph.find_cycles(snapshot),
        )
        self._logger.debug("graph_checkpoint_recorded", ref=name, items=len(snapshot))
        return name

    def diff(self, since_ref: str) -> GraphDiff:
        baseline = self._checkpoints.get(since_ref)
        if baseline is None:
            raise GraphAnalyzerUnavailable(f"unknown graph reference: {since_ref}")
        snapshot = self._snapshot()
        current_cycles = graph.find_cycles(snapshot)
        before = set(baseline.statuses)
        after = set(snapshot)
        status_changes = tuple(
            (item_id, baseline.statuses[item_id].value, snapshot[item_id].status.value)
            for item_id in sorted(before & after)
            if baseline.statuses[item_id] is not snapshot[item_id].status
        )
        return GraphDiff(
            since_ref=since_ref,
            added=tuple(sorted(after - before)),
            removed=tuple(sorted(before - after)),
            status_changes=status_changes,
            new_cycles=tuple(cycle for cycle in current_cycles if cycle not in baseline.cycles),
            resolved_cycles=tuple(
                cycle for cycle in baseline.cycles if cycle not in current_cycles
            ),
        )

    def _snapshot(self) -> dict[str, WorkItem]:
        try:
            return graph.index_items(self._store.list_items())
        except DependencyStoreError as exc:
            raise GraphAnalyzerUnavailable(f"dependency store snapshot failed: {exc}") from exc


AnalyzerRunner = Callable[[Sequence[str], Path], str]


class BeadsViewerAnalyzer:
    """Adapter over the ``bv`` graph viewer's machine-readable ``--robot-*`` modes."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        executable: str = "bv",
        timeout_seconds: float = 60.0,
        runner: AnalyzerRunner | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.executable = executable
        self.timeout_seconds = timeout_seconds
        self._runner = runner if runner is not None else self._subprocess_runner

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        payload = self._run_json(["--robot-insights"])
        return _normalize_cycles(_lookup(payload, "cycles", "Cycles") or ())

    def parallel_tracks(self, item_ids: Sequence[str]) -> tuple[tuple[str, ...], ...]:
        payload = self._run_json(["--robot-plan"])
        plan = _lookup(payload, "plan") or payload
        raw_tracks = _lookup(plan, "tracks") or ()
        wanted = set(item_ids)
        tracks: list[tuple[str, ...]] = []
        assigned: set[str] = set()
        for raw_track in _as_sequence(raw_tracks):
            members = (
                _lookup(raw_track, "items", "issues")
                if isinstance(raw_track, Mapping)
                else raw_track
            )
            ids = sorted(
                {_entry_id(entry) for entry in _as_sequence(members or ())} & wanted - assigned
            )
            if ids:
                tracks.append(tuple(ids))
                assigned.update(ids)
        tracks.extend((item_id,) for item_id in sorted(wanted - assigned))
        return tuple(sorted(tracks))

    def impact_scores(self, item_ids: Sequence[str]) -> dict[str, float]:
        payload = self._run_json(["--robot-insights"])
        raw_scores = _lookup(payload, "impact", "Impact", "unblocks", "PageRank")
        if raw_scores is None:
            raise GraphAnalyzerUnavailable("bv insights carried no impact scores")
        scores = _score_map(raw_scores)
        return {item_id: scores.get(item_id, 0.0) for item_id in item_ids}

    def diff(self, since_ref: str) -> GraphDiff:
        payload = self._run_json(["--robot-diff", "--diff-since", since_ref])
        body = _lookup(payload, "diff") or payload
        status_changes: list[tuple[str, str, str]] = []
        for entry in _as_sequence(_lookup(body, "status_changes", "modified_issues") or ()):
            if not isinstance(entry, Mapping):
                continue
            old = entry.get("old_status") or entry.get("from")
            new = entry.get("new_status") or entry.get("to")
            if old is None or new is None or old == new:
                continue
            status_changes.append((_entry_id(entry), str(old), str(new)))
        return GraphDiff(
            since_ref=since_ref,
            added=tuple(
                sorted(
                    _entry_id(entry)
                    for entry in _as_sequence(_lookup(body, "new_issues", "added") or ())
                )
            ),
            removed=tuple(
                sorted(
                    _entry_id(entry)
                    for entry in _as_sequence(_lookup(body, "removed_issues", "removed") or ())
                )
            ),
            status_changes=tuple(sorted(status_changes)),
            new_cycles=_normalize_cycles(_lookup(body, "new_cycles") or ()),
            resolved_cycles=_normalize_cycles(_lookup(body, "resolved_cycles") or ()),
        )

    def _run_json(self, args: Sequence[str]) -> object:
        command = (self.executable, *args)
        try:
            output = self._runner(command, self.repo_path)
        except (OSError, subprocess.SubprocessError) as exc:
            raise GraphAnalyzerUnavailable(f"bv command failed: {exc}") from exc
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise GraphAnalyzerUnavailable(f"bv returned invalid JSON: {exc.msg}") from exc

    def _subprocess_runner(self, command: Sequence[str], cwd: Path) -> str:
        completed = subprocess.run(
            list(command),
            cwd=cwd,
            text=True,
            capture_output=True,
            timeout=self.timeout_seconds,
            check=False,
        )
        if completed.returncode != 0:
            raise GraphAnalyzerUnavailable(
                f"bv exited {completed.returncode}: {completed.stderr.strip()}"
            )
        return completed.stdout


def _lookup(payload: object, *keys: str) -> Any:
    if not isinstance(payload, Mapping):
        return None
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def _as_sequence(value: object) -> Sequence[object]:
    if isinstance(value, (list, tuple)):
        return value
    return ()


def _entry_id(entry: object) -> str:
    if isinstance(entry, Mapping):
        return str(entry.get("id") or entry.get("issue_id") or "")
    return str(entry)


def _normalize_cycles(raw: Iterable[object]) -> tuple[tuple[str, ...], ...]:
    cycles: set[tuple[str, ...]] = set()
    for entry in raw:
        members = _lookup(entry, "members", "ids") if isinstance(entry, Mapping) else entry
        ids = tuple(sorted({_entry_id(member) for member in _as_sequence(members)}))
        if len(ids) > 1:
            cycles.add(ids)
    return tuple(sorted(cycles))


def _score_map(raw: object) -> dict[str, float]:
    scores: dict[str, float] = {}
    if isinstance(raw, Mapping):
        for key, value in raw.items():
            try:
                scores[str(key)] = float(value)
            except (TypeError, ValueError):
                continue
        return scores
    for entry in _as_sequence(raw):
        if not isinstance(entry, Mapping):
            continue
        value = entry.get("score", entry.get("value"))
        try:
            scores[_entry_id(entry)] = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            continue
    return scores


__all__ = [
    "BeadsViewerAnalyzer",
    "GraphAnalyzer",
    "GraphAnalyzerUnavailable",
    "GraphDiff",
    "LocalGraphAnalyzer",
]
