"""Unit tests for bounded retry and permanent-failure escalation."""

from __future__ import annotations

import pytest

from autodispatch.control_plane.retry import RetryAction, RetryPolicy
from autodispatch.domain.models import GateReason, WorkItem, WorkItemKind, WorkItemStatus
from autodispatch.persistence.dependency_store import InMemoryDependencyStore

pytestmark = pytest.mark.unit


def _store() -> InMemoryDependencyStore:
    return InMemoryDependencyStore(
        [
            WorkItem(id="f", title="Flaky parser", priority=1, status=WorkItemStatus.VALIDATING),
            WorkItem(id="g", title="Consumer", blocked_by=("f",)),
        ]
    )


def test_retry_advances_attempt_and_reopens() -> None:
    store = _store()
    decision = RetryPolicy(store, max_attempts=3).handle_failure(
        store.show("f"), GateReason.TESTS_FAILED, "AssertionError: boom"
    )

    item = store.show("f")
    assert decision.action is RetryAction.RETRY
    assert decision.attempt == 2
    assert item.status is WorkItemStatus.OPEN
    assert item.attempt == 2
    assert item.priority == 1
    assert "Attempt 1 failed (tests-failed); retrying as attempt 2." in item.comments[-1]
    assert "AssertionError: boom" in item.comments[-1]


def test_exhausted_item_fails_permanently_with_analysis_item() -> None:
    store = _store()
    policy = RetryPolicy(store, max_attempts=3)
    for _ in range(2):
        policy.handle_failure(store.show("f"), GateReason.TESTS_FAILED, "boom")
    decision = policy.handle_failure(
        store.show("f"),
        GateReason.REGRESSION,
        "sampled broke",
        history=("attempt 1: tests-failed", "attempt 2: tests-failed"),
    )

    failed = store.show("f")
    assert decision.action is RetryAction.FAILED
    assert decision.attempt == 3
    assert failed.status is WorkItemStatus.FAILED
    assert failed.has_label("failed")
    assert failed.priority == 1

    analysis = store.show(decision.analysis_item_id or "")
    assert analysis.kind is WorkItemKind.INTEGRATION
    assert analysis.discovered_from == "f"
    assert {"failure-analysis", "needs-human"} <= set(analysis.labels)
    assert "attempt 2: tests-failed" in analysis.description
    assert "Last failure: regression" in analysis.description

    assert [item.id for item in store.ready()] == [analysis.id]
    assert store.show("g").status is WorkItemStatus.OPEN


def test_single_attempt_budget_fails_immediately() -> None:
    store = _store()
    decision = RetryPolicy(store, max_attempts=1).handle_failure(
        store.show("f"), "worker-failed"
    )
    assert decision.action is RetryAction.FAILED
    assert decision.reason is GateReason.WORKER_FAILED
    assert "(no recorded history)" in store.show(decision.analysis_item_id or "").description


def test_long_details_are_excerpted_from_the_tail() -> None:
    store = _store()
    details = "head-" + "x" * 5000 + "-tail"
    RetryPolicy(store).handle_failure(store.show("f"), GateReason.TESTS_FAILED, details)
    comment = store.show("f").comments[-1]
    assert comment.endswith("-tail")
    assert "head-" not in comment


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(InMemoryDependencyStore(), max_attempts=0)
