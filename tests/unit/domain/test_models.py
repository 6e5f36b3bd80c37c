"""Unit tests for domain model validation and derived properties."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from autodispatch.domain.models import (
    ErrorPattern,
    GateReason,
    Lock,
    WorkItem,
    WorkItemKind,
    WorkItemStatus,
    attempt_label,
    truncate_comment,
)

pytestmark = pytest.mark.unit


def test_attempt_defaults_to_one_and_reads_highest_label() -> None:
    assert WorkItem(id="ad-1", title="Parse config").attempt == 1
    item = WorkItem(id="ad-1", title="Parse config", labels=("attempt-2", "attempt-3", "x"))
    assert item.attempt == 3


def test_labels_are_stripped_deduplicated_and_sorted() -> None:
    item = WorkItem(id="ad-1", title="t", labels=(" b ", "a", "b", ""))
    assert item.labels == ("a", "b")


def test_item_cannot_block_itself() -> None:
    with pytest.raises(ValueError, match="cannot block itself"):
        WorkItem(id="ad-1", title="t", blocked_by=("ad-1",))


def test_blank_title_is_rejected() -> None:
    with pytest.raises(ValueError, match="title"):
        WorkItem(id="ad-1", title="   ")


def test_provenance_prefers_field_then_label() -> None:
    labelled = WorkItem(id="ad-2", title="t", labels=("discovered-from:ad-1",))
    assert labelled.provenance == "ad-1"
    explicit = WorkItem(id="ad-3", title="t", discovered_from="ad-9", labels=labelled.labels)
    assert explicit.provenance == "ad-9"


def test_worker_label_and_permanent_failure_flags() -> None:
    item = WorkItem(id="ad-1", title="t", labels=("worker:docs", "failed"))
    assert item.worker_label == "docs"
    assert item.permanently_failed


def test_work_item_dict_round_trip_keeps_every_field() -> None:
    item = WorkItem(
        id="ad-4",
        title="Wire scheduler",
        kind=WorkItemKind.COMPOSITE,
        status=WorkItemStatus.BLOCKED,
        priority=1,
        labels=("serialized",),
        comments=("first",),
        blocked_by=("ad-2", "ad-1"),
        discovered_from="ad-1",
        description="body",
        sequence=7,
    )
    restored = WorkItem.from_dict(item.to_dict())
    assert restored == item
    assert restored.blocked_by == ("ad-1", "ad-2")


def test_from_dict_reports_missing_fields() -> None:
    with pytest.raises(ValueError, match="missing required field 'title'"):
        WorkItem.from_dict({"id": "ad-1"})


def test_lock_requires_timezone_aware_timestamp() -> None:
    with pytest.raises(ValueError, match="timezone-aware"):
        Lock(item_id="ad-1", slot_id=0, acquired_at=datetime(2026, 1, 1), owner_pid=1)


def test_lock_age_is_never_negative() -> None:
    now = datetime(2026, 1, 1, tzinfo=UTC)
    lock = Lock(item_id="ad-1", slot_id=0, acquired_at=now, owner_pid=1)
    assert lock.age_seconds(now + timedelta(seconds=30)) == 30.0
    assert lock.age_seconds(now - timedelta(seconds=30)) == 0.0


def test_soft_gate_reasons_are_not_blocking() -> None:
    assert not GateReason.INTEGRATION_SOFT.blocking
    assert not GateReason.QUALITY_SOFT.blocking
    assert GateReason.TESTS_FAILED.blocking
    assert GateReason.REGRESSION.blocking
    assert GateReason.QUALITY_FAILED.blocking


def test_error_pattern_rejects_inverted_timestamps() -> None:
    now = datetime(2026, 1, 1, tzinfo=UTC)
    with pytest.raises(ValueError, match="last_seen"):
        ErrorPattern(
            category="syntax-error",
            message="m",
            recommended_fix="f",
            occurrences=1,
            first_seen=now,
            last_seen=now - timedelta(seconds=1),
        )


def test_error_pattern_parses_naive_timestamps_as_utc() -> None:
    pattern = ErrorPattern.from_dict(
        {
            "category": "syntax-error",
            "message": "m",
            "occurrences": 2,
            "first_seen": "2026-01-01T00:00:00",
            "last_seen": "2026-01-02T00:00:00",
            "kinds": ["test", "docs", "test"],
        }
    )
    assert pattern.first_seen.tzinfo is not None
    assert pattern.kinds == ("docs", "test")


def test_attempt_label_and_comment_truncation() -> None:
    assert attempt_label(2) == "attempt-2"
    with pytest.raises(ValueError):
        attempt_label(0)
    long_text = "x" * 20_000
    truncated = truncate_comment(long_text)
    assert len(truncated) == 16 * 1024
    assert truncated.endswith("...[truncated]")
