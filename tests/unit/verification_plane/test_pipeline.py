"""
Unit tests for the validation pipeline.

Coverage
- Gates run in order; the first blocking failure stops the run.
- Soft failures are commented on the item and do not block.
- Regression failures reopen the sampled item.
- Every failure is fed to the learning store under the item's worker kind.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from autodispatch.domain.models import GateReason, WorkItem, WorkItemStatus
from autodispatch.knowledge_plane.learning_store import LearningStore
from autodispatch.persistence.dependency_store import InMemoryDependencyStore
from autodispatch.synthesis_plane.dispatch import WorkerOutcome
from autodispatch.verification_plane.gates import (
    FunctionalTestGate,
    IntegrationGate,
    QualityGate,
    RegressionGate,
)
from autodispatch.verification_plane.pipeline import ValidationPipeline

from ..control_plane import FakeRunner

pytestmark = pytest.mark.unit


def _pipeline(
    store: InMemoryDependencyStore,
    runner: FakeRunner,
    tmp_path: Path,
    *,
    learning_store: LearningStore | None = None,
    quality: tuple[str, ...] = ("ruff check .",),
) -> ValidationPipeline:
    return ValidationPipeline(
        [
            FunctionalTestGate(runner),
            IntegrationGate(store, runner),
            RegressionGate(store, runner, seed=0),
            QualityGate(runner, quality),
        ],
        store=store,
        learning_store=learning_store,
        default_workspace=tmp_path,
    )


def test_all_gates_pass(tmp_path: Path) -> None:
    store = InMemoryDependencyStore([WorkItem(id="a", title="Add totals")])
    pipeline = _pipeline(store, FakeRunner(), tmp_path)

    result = pipeline.validate(store.show("a"), WorkerOutcome(success=True))

    assert result.passed
    assert result.reason is None
    assert [outcome.gate for outcome in result.outcomes] == list(pipeline.gate_names)
    assert pipeline.gate_names == (
        "functional-tests",
        "integration-check",
        "regression-sample",
        "quality-checks",
    )


def test_blocking_failure_stops_later_gates(tmp_path: Path) -> None:
    store = InMemoryDependencyStore([WorkItem(id="a", title="Add totals")])
    runner = FakeRunner({"totals"})
    learning = LearningStore()

    result = _pipeline(store, runner, tmp_path, learning_store=learning).validate(
        store.show("a"), WorkerOutcome(success=True)
    )

    assert not result.passed
    assert result.reason is GateReason.TESTS_FAILED
    assert len(result.outcomes) == 1
    assert len(runner.calls) == 1
    assert "AssertionError" in result.details
    patterns = learning.patterns
    assert patterns
    assert all(pattern.kinds == ("feature",) for pattern in patterns)
    assert learning.history("a")[0].startswith("attempt 1: tests-failed")


def test_soft_failures_are_commented_and_do_not_block(tmp_path: Path) -> None:
    store = InMemoryDependencyStore(
        [
            WorkItem(id="p", title="Parent"),
            WorkItem(id="a", title="Add totals", blocked_by=("p",)),
        ]
    )
    result = _pipeline(store, FakeRunner({"ruff"}), tmp_path).validate(
        store.show("a"), WorkerOutcome(success=True)
    )

    assert result.passed
    assert [outcome.gate for outcome in result.soft_failures] == [
        "integration-check",
        "quality-checks",
    ]
    comments = store.show("a").comments
    assert comments[0].startswith("Non-blocking integration-check failure (integration-soft):")
    assert comments[1].startswith("Non-blocking quality-checks failure (quality-soft):")


def test_regression_failure_reopens_sampled_item(tmp_path: Path) -> None:
    store = InMemoryDependencyStore(
        [
            WorkItem(id="d", title="Render invoices", status=WorkItemStatus.CLOSED),
            WorkItem(id="e", title="Add totals", status=WorkItemStatus.VALIDATING),
        ]
    )
    learning = LearningStore()
    pipeline = _pipeline(store, FakeRunner({"invoices"}), tmp_path, learning_store=learning)

    result = pipeline.validate(store.show("e"), WorkerOutcome(success=True))

    sampled = store.show("d")
    assert not result.passed
    assert result.reason is GateReason.REGRESSION
    assert result.reopened == ("d",)
    assert sampled.status is WorkItemStatus.OPEN
    assert sampled.has_label("regression-reopened")
    assert sampled.comments[-1].startswith("Reopened: regression sample failed while validating e.")
    assert sampled.attempt == 1
    assert "broken-downstream" in {pattern.category for pattern in learning.patterns}
    assert result.to_dict()["reopened"] == ["d"]


def test_worker_workspace_overrides_default(tmp_path: Path) -> None:
    store = InMemoryDependencyStore([WorkItem(id="a", title="Add totals")])
    seen: list[Path] = []

    class CwdRunner(FakeRunner):
        def run(self, argv, *, cwd, timeout_seconds=None):  # type: ignore[no-untyped-def]
            seen.append(cwd)
            return super().run(argv, cwd=cwd, timeout_seconds=timeout_seconds)

    worker_tree = tmp_path / "worktree"
    _pipeline(store, CwdRunner(), tmp_path, quality=()).validate(
        store.show("a"), WorkerOutcome(success=True, workspace=worker_tree)
    )
    assert seen == [worker_tree]
