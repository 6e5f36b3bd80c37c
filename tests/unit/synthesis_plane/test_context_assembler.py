"""Unit tests for worker context rendering."""

from __future__ import annotations

from pathlib import Path

import pytest

from autodispatch.domain.models import GateReason, WorkItem
from autodispatch.knowledge_plane.learning_store import LearningStore
from autodispatch.synthesis_plane.context_assembler import (
    ContextAssembler,
    WorkerContext,
    work_branch_name,
)
from autodispatch.synthesis_plane.work_item_classifier import WorkerKind

pytestmark = pytest.mark.unit


def test_branch_name_encodes_item_and_attempt() -> None:
    assert work_branch_name("ad-4", 2) == "work/ad-4/attempt-2"
    assert work_branch_name("ad-4", 1, prefix="agents") == "agents/ad-4/attempt-1"
    assert work_branch_name("ad-4", 2, serialized=True) == "work/ad-4/attempt-2-serial"


def test_serialized_item_gets_a_fresh_branch_for_the_same_attempt() -> None:
    item = WorkItem(id="ad-5", title="Reword totals", labels=("attempt-2", "serialized"))
    context = ContextAssembler().assemble(item, conflict_context="### totals.txt\n")

    assert context.attempt == 2
    assert context.branch == "work/ad-5/attempt-2-serial"
    assert "## Reconcile with baseline" in context.text


def test_first_attempt_context() -> None:
    item = WorkItem(
        id="ad-1",
        title="Implement CSV export",
        description="Export the ledger as CSV.",
        discovered_from="ad-0",
    )
    context = ContextAssembler().assemble(item)

    assert context.attempt == 1
    assert context.branch == "work/ad-1/attempt-1"
    assert context.worker_kind is WorkerKind.FEATURE
    assert context.text.startswith("# Work item ad-1: Implement CSV export\n")
    assert "- discovered from: ad-0" in context.text
    assert "## Description\nExport the ledger as CSV." in context.text
    assert "## Reconcile with baseline" not in context.text
    assert "close work item ad-1 when done" in context.text


def test_conflict_context_adds_reconcile_section() -> None:
    item = WorkItem(id="ad-2", title="Tune timeout", labels=("attempt-2",))
    context = ContextAssembler(branch_prefix="agents").assemble(
        item, conflict_context="### src/settings.py (line 1, generic-code)\n"
    )
    assert context.branch == "agents/ad-2/attempt-2"
    assert "## Reconcile with baseline" in context.text
    assert "### src/settings.py (line 1, generic-code)" in context.text


def test_learned_guidance_is_included() -> None:
    learning = LearningStore()
    item = WorkItem(id="ad-3", title="Fix rounding bug", labels=("attempt-2",))
    learning.record_failure(
        item.with_changes(labels=()),
        GateReason.TESTS_FAILED,
        "AssertionError: assert 0.1 == 0.2",
        kind="bugfix",
    )

    context = ContextAssembler(learning).assemble(item)

    assert "## Known failure patterns" in context.text
    assert "## Failed before" in context.text
    assert "- attempt 1: tests-failed (assertion-failure:" in context.text


def test_rendering_is_deterministic_and_writable(tmp_path: Path) -> None:
    item = WorkItem(id="ad-5", title="Polish wording")
    first = ContextAssembler().assemble(item)
    second = ContextAssembler().assemble(item)
    assert first == second
    assert first.digest == second.digest

    written = first.write(tmp_path / "ctx" / "attempt-1.context.md")
    assert written.read_text(encoding="utf-8") == first.text
    assert isinstance(first, WorkerContext)
