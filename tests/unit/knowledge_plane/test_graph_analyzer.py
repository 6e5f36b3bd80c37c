"""Unit tests for the graph analyzer adapters."""

from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest

from autodispatch.domain.models import WorkItem, WorkItemStatus
from autodispatch.knowledge_plane.graph_analyzer import (
    BeadsViewerAnalyzer,
    GraphAnalyzer,
    GraphAnalyzerUnavailable,
    LocalGraphAnalyzer,
)
from autodispatch.persistence.dependency_store import InMemoryDependencyStore

pytestmark = pytest.mark.unit


def _store() -> InMemoryDependencyStore:
    return InMemoryDependencyStore(
        [
            WorkItem(id="a", title="A"),
            WorkItem(id="b", title="B", blocked_by=("a",)),
            WorkItem(id="c", title="C", blocked_by=("b",)),
            WorkItem(id="x", title="X"),
        ]
    )


def test_local_analyzer_satisfies_protocol() -> None:
    assert isinstance(LocalGraphAnalyzer(_store()), GraphAnalyzer)
    assert isinstance(BeadsViewerAnalyzer(".", runner=lambda cmd, cwd: "{}"), GraphAnalyzer)


def test_local_impact_and_tracks() -> None:
    analyzer = LocalGraphAnalyzer(_store())
    assert analyzer.impact_scores(["a", "x"]) == {"a": 2.0, "x": 0.0}
    assert analyzer.parallel_tracks(["a", "x"]) == (("a",), ("x",))
    assert analyzer.detect_cycles() == ()


def test_local_diff_against_checkpoint() -> None:
    store = _store()
    analyzer = LocalGraphAnalyzer(store)
    analyzer.checkpoint("run-start")

    store.update_status("a", WorkItemStatus.CLOSED)
    store.create_item("Follow-up", discovered_from="a")
    store.add_dependency("c", "x")
    store.add_dependency("x", "a")

    diff = analyzer.diff("run-start")
    assert diff.added == ("ad-1",)
    assert diff.removed == ()
    assert diff.status_changes == (("a", "open", "closed"),)
    assert diff.has_new_cycles
    assert diff.new_cycles == (("a", "b", "c", "x"),)
    assert diff.to_dict()["since_ref"] == "run-start"


def test_local_diff_unknown_reference() -> None:
    analyzer = LocalGraphAnalyzer(_store())
    with pytest.raises(GraphAnalyzerUnavailable, match="unknown graph reference"):
        analyzer.diff("nope")
    with pytest.raises(ValueError):
        analyzer.checkpoint(" ")


class ScriptedBv:
    def __init__(self, payloads: dict[str, object]) -> None:
        self.payloads = payloads
        self.commands: list[tuple[str, ...]] = []

    def __call__(self, command: Sequence[str], cwd: Path) -> str:
        self.commands.append(tuple(command))
        return json.dumps(self.payloads[command[1]])


def test_bv_insights_cycles_and_impact(tmp_path: Path) -> None:
    bv = ScriptedBv(
        {
            "--robot-insights": {
                "Cycles": [["b", "a"], {"members": [{"id": "c"}, {"id": "d"}]}, ["solo"]],
                "impact": [{"id": "a", "score": 3}, {"id": "b", "value": "1.5"}, {"id": "z"}],
            }
        }
    )
    analyzer = BeadsViewerAnalyzer(tmp_path, runner=bv)

    assert analyzer.detect_cycles() == (("a", "b"), ("c", "d"))
    assert analyzer.impact_scores(["a", "b", "q"]) == {"a": 3.0, "b": 1.5, "q": 0.0}
    assert bv.commands[0] == ("bv", "--robot-insights")


def test_bv_plan_tracks_cover_every_requested_item(tmp_path: Path) -> None:
    bv = ScriptedBv(
        {"--robot-plan": {"plan": {"tracks": [{"items": ["b", "a", "zz"]}, {"issues": ["c"]}]}}}
    )
    tracks = BeadsViewerAnalyzer(tmp_path, runner=bv).parallel_tracks(["a", "b", "c", "d"])
    assert tracks == (("a", "b"), ("c",), ("d",))


def test_bv_diff(tmp_path: Path) -> None:
    bv = ScriptedBv(
        {
            "--robot-diff": {
                "diff": {
                    "new_issues": [{"id": "n2"}, {"id": "n1"}],
                    "removed_issues": ["r1"],
                    "modified_issues": [
                        {"issue_id": "m1", "old_status": "open", "new_status": "closed"},
                        {"issue_id": "m2", "old_status": "open", "new_status": "open"},
                    ],
                    "new_cycles": [["p", "q"]],
                }
            }
        }
    )
    diff = BeadsViewerAnalyzer(tmp_path, runner=bv).diff("HEAD~3")
    assert diff.added == ("n1", "n2")
    assert diff.removed == ("r1",)
    assert diff.status_changes == (("m1", "open", "closed"),)
    assert diff.new_cycles == (("p", "q"),)
    assert bv.commands[0] == ("bv", "--robot-diff", "--diff-since", "HEAD~3")


def test_bv_failures_become_unavailable(tmp_path: Path) -> None:
    def missing(command: Sequence[str], cwd: Path) -> str:
        raise FileNotFoundError("bv")

    def timeout(command: Sequence[str], cwd: Path) -> str:
        raise subprocess.TimeoutExpired(list(command), 1.0)

    for runner in (missing, timeout, lambda command, cwd: "not json"):
        with pytest.raises(GraphAnalyzerUnavailable):
            BeadsViewerAnalyzer(tmp_path, runner=runner).detect_cycles()

    no_scores = BeadsViewerAnalyzer(tmp_path, runner=lambda command, cwd: "{}")
    with pytest.raises(GraphAnalyzerUnavailable, match="no impact scores"):
        no_scores.impact_scores(["a"])
