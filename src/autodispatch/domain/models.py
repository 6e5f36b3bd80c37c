"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import NoReturn

from autodispatch.constants import (
    ATTEMPT_LABEL_PREFIX,
    DISCOVERED_FROM_LABEL_PREFIX,
    LABEL_FAILED,
    WORKER_LABEL_PREFIX,
)

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_TITLE = 512
_MAX_COMMENT = 16 * 1024


class WorkItemKind(StrEnum):
    """Strict hierarchy: atoms -> composites -> assemblies -> integration."""

    ATOM = "atom"
    COMPOSITE = "composite"
    ASSEMBLY = "assembly"
    INTEGRATION = "integration"

    @property
    def level(self) -> int:
        return _KIND_LEVEL[self]


_KIND_LEVEL: dict[WorkItemKind, int] = {
    WorkItemKind.ATOM: 0,
    WorkItemKind.COMPOSITE: 1,
    WorkItemKind.ASSEMBLY: 2,
    WorkItemKind.INTEGRATION: 3,
}


class WorkItemStatus(StrEnum):
    OPEN = "open"
    CLAIMED = "claimed"
    VALIDATING = "validating"
    CLOSED = "closed"
    BLOCKED = "blocked"
    FAILED = "failed"

    def can_become(self, target: WorkItemStatus) -> bool:
        """Whether a store may move an item from this status to ``target``."""

        return target is self or target in _TRANSITIONS[self]


# Workers may settle their own item; regression checks reopen closed ones.
_TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    WorkItemStatus.OPEN: frozenset(
        {
            WorkItemStatus.CLAIMED,
            WorkItemStatus.CLOSED,
            WorkItemStatus.BLOCKED,
            WorkItemStatus.FAILED,
        }
    ),
    WorkItemStatus.CLAIMED: frozenset(
        {
            WorkItemStatus.OPEN,
            WorkItemStatus.VALIDATING,
            WorkItemStatus.CLOSED,
            WorkItemStatus.BLOCKED,
            WorkItemStatus.FAILED,
        }
    ),
    WorkItemStatus.VALIDATING: frozenset(
        {
            WorkItemStatus.OPEN,
            WorkItemStatus.CLOSED,
            WorkItemStatus.BLOCKED,
            WorkItemStatus.FAILED,
        }
    ),
    WorkItemStatus.CLOSED: frozenset(
        {WorkItemStatus.OPEN, WorkItemStatus.VALIDATING, WorkItemStatus.FAILED}
    ),
    WorkItemStatus.BLOCKED: frozenset(
        {WorkItemStatus.OPEN, WorkItemStatus.CLOSED, WorkItemStatus.FAILED}
    ),
    WorkItemStatus.FAILED: frozenset({WorkItemStatus.OPEN}),
}


IN_FLIGHT_STATUSES: frozenset[WorkItemStatus] = frozenset(
    {WorkItemStatus.CLAIMED, WorkItemStatus.VALIDATING}
)
TERMINAL_LOOKING_STATUSES: frozenset[WorkItemStatus] = frozenset(
    {WorkItemStatus.CLOSED, WorkItemStatus.FAILED}
)


class GateReason(StrEnum):
    """Reason codes produced by validation gates and worker monitoring."""

    TESTS_FAILED = "tests-failed"
    INTEGRATION_SOFT = "integration-soft"
    CONFLICT = "conflict"
    REGRESSION = "regression"
    QUALITY_SOFT = "quality-soft"
    QUALITY_FAILED = "quality-failed"
    WORKER_FAILED = "worker-failed"

    @property
    def blocking(self) -> bool:
        return self not in _SOFT_REASONS


_SOFT_REASONS: frozenset[GateReason] = frozenset(
    {GateReason.INTEGRATION_SOFT, GateReason.QUALITY_SOFT}
)


class Trend(StrEnum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


@dataclass(frozen=True, slots=True)
class WorkItem:
    """Snapshot of one tracked unit of work as seen in the dependency store."""

    id: str
    title: str
    kind: WorkItemKind = WorkItemKind.ATOM
    status: WorkItemStatus = WorkItemStatus.OPEN
    priority: int = 2
    labels: tuple[str, ...] = ()
    comments: tuple[str, ...] = ()
    blocked_by: tuple[str, ...] = ()
    discovered_from: str | None = None
    description: str = ""
    sequence: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            _fail("WorkItem.id", "must be a non-empty string")
        title = self.title.strip() if isinstance(self.title, str) else ""
        if not title:
            _fail(f"WorkItem[{self.id}].title", "must be a non-empty string")
        if len(title) > _MAX_TITLE:
            _fail(f"WorkItem[{self.id}].title", f"must be <= {_MAX_TITLE} characters")
        object.__setattr__(self, "title", title)
        object.__setattr__(self, "kind", WorkItemKind(self.kind))
        object.__setattr__(self, "status", WorkItemStatus(self.status))
        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            _fail(f"WorkItem[{self.id}].priority", "must be an integer")
        if self.priority < 0:
            _fail(f"WorkItem[{self.id}].priority", "must be >= 0")
        object.__setattr__(self, "labels", _normalize_labels(self.labels))
        object.__setattr__(self, "comments", tuple(str(item) for item in self.comments))
        blockers = tuple(sorted({str(item) for item in self.blocked_by}))
        if self.id in blockers:
            _fail(f"WorkItem[{self.id}].blocked_by", "an item cannot block itself")
        object.__setattr__(self, "blocked_by", blockers)
        if self.discovered_from is not None and not self.discovered_from.strip():
            _fail(f"WorkItem[{self.id}].discovered_from", "must be non-empty when provided")
        if self.sequence < 0:
            _fail(f"WorkItem[{self.id}].sequence", "must be >= 0")

    @property
    def attempt(self) -> int:
        """Current attempt number, derived from ``attempt-N`` labels (default 1)."""

        attempts = [
            int(label[len(ATTEMPT_LABEL_PREFIX) :])
            for label in self.labels
            if label.startswith(ATTEMPT_LABEL_PREFIX)
            and label[len(ATTEMPT_LABEL_PREFIX) :].isdigit()
        ]
        return max(attempts, default=1)

    @property
    def permanently_failed(self) -> bool:
        return LABEL_FAILED in self.labels

    @property
    def worker_label(self) -> str | None:
        for label in self.labels:
            if label.startswith(WORKER_LABEL_PREFIX):
                return label[len(WORKER_LABEL_PREFIX) :]
        return None

    @property
    def provenance(self) -> str | None:
        if self.discovered_from is not None:
            return self.discovered_from
        for label in self.labels:
            if label.startswith(DISCOVERED_FROM_LABEL_PREFIX):
                return label[len(DISCOVERED_FROM_LABEL_PREFIX) :]
        return None

    def has_label(self, label: str) -> bool:
        return label in self.labels

    def with_changes(self, **changes: object) -> WorkItem:
        return replace(self, **changes)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "title": self.title,
            "kind": self.kind.value,
            "status": self.status.value,
            "priority": self.priority,
            "labels": list(self.labels),
            "comments": list(self.comments),
            "blocked_by": list(self.blocked_by),
            "discovered_from": self.discovered_from,
            "description": self.description,
            "sequence": self.sequence,
        }

    def to_json(self) -> str:
        return _canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkItem:
        if not isinstance(data, Mapping):
            _fail("WorkItem", f"expected object, got {type(data).__name__}")
        try:
            return cls(
                id=str(data["id"]),
                title=str(data["title"]),
                kind=WorkItemKind(str(data.get("kind", WorkItemKind.ATOM.value))),
                status=WorkItemStatus(str(data.get("status", WorkItemStatus.OPEN.value))),
                priority=int(data.get("priority", 2)),  # type: ignore[call-overload]
                labels=_str_tuple(data.get("labels", ())),
                comments=_str_tuple(data.get("comments", ())),
                blocked_by=_str_tuple(data.get("blocked_by", ())),
                discovered_from=_optional_str(data.get("discovered_from")),
                description=str(data.get("description", "") or ""),
                sequence=int(data.get("sequence", 0)),  # type: ignore[call-overload]
            )
        except KeyError as exc:
            _fail("WorkItem", f"missing required field {exc.args[0]!r}")


@dataclass(frozen=True, slots=True)
class Lock:
    """Exclusive, time-bounded ownership of one work item by one worker slot."""

    item_id: str
    slot_id: int
    acquired_at: datetime
    owner_pid: int

    def __post_init__(self) -> None:
        if not self.item_id.strip():
            _fail("Lock.item_id", "must be non-empty")
        if self.slot_id < 0:
            _fail("Lock.slot_id", "must be >= 0")
        if self.acquired_at.tzinfo is None:
            _fail("Lock.acquired_at", "must be timezone-aware")
        if self.owner_pid <= 0:
            _fail("Lock.owner_pid", "must be > 0")

    def age_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.acquired_at).total_seconds())

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "item_id": self.item_id,
            "slot_id": self.slot_id,
            "acquired_at": self.acquired_at.isoformat(),
            "owner_pid": self.owner_pid,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Lock:
        try:
            acquired_raw = data["acquired_at"]
            if not isinstance(acquired_raw, str):
                _fail("Lock.acquired_at", "must be an ISO-8601 string")
            return cls(
                item_id=str(data["item_id"]),
                slot_id=int(data["slot_id"]),  # type: ignore[call-overload]
                acquired_at=datetime.fromisoformat(acquired_raw),
                owner_pid=int(data["owner_pid"]),  # type: ignore[call-overload]
            )
        except KeyError as exc:
            _fail("Lock", f"missing required field {exc.args[0]!r}")


@dataclass(frozen=True, slots=True)
class ErrorPattern:
    """Learned, categorized, counted description of a recurring failure."""

    category: str
    message: str
    recommended_fix: str
    occurrences: int
    first_seen: datetime
    last_seen: datetime
    trend: Trend = Trend.STABLE
    recent: tuple[datetime, ...] = ()
    kinds: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.category.strip():
            _fail("ErrorPattern.category", "must be non-empty")
        if self.occurrences < 1:
            _fail("ErrorPattern.occurrences", "must be >= 1")
        if self.last_seen < self.first_seen:
            _fail("ErrorPattern.last_seen", "must not precede first_seen")
        object.__setattr__(self, "trend", Trend(self.trend))
        object.__setattr__(self, "kinds", tuple(sorted(set(self.kinds))))

    @property
    def key(self) -> tuple[str, str]:
        return (self.category, self.message)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "category": self.category,
            "message": self.message,
            "recommended_fix": self.recommended_fix,
            "occurrences": self.occurrences,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "trend": self.trend.value,
            "recent": [stamp.isoformat() for stamp in self.recent],
            "kinds": list(self.kinds),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ErrorPattern:
        try:
            return cls(
                category=str(data["category"]),
                message=str(data["message"]),
                recommended_fix=str(data.get("recommended_fix", "") or ""),
                occurrences=int(data["occurrences"]),  # type: ignore[call-overload]
                first_seen=_parse_timestamp(data["first_seen"], "ErrorPattern.first_seen"),
                last_seen=_parse_timestamp(data["last_seen"], "ErrorPattern.last_seen"),
                trend=Trend(str(data.get("trend", Trend.STABLE.value))),
                recent=tuple(
                    _parse_timestamp(item, "ErrorPattern.recent")
                    for item in _as_list(data.get("recent"))
                ),
                kinds=_str_tuple(data.get("kinds", ())),
            )
        except KeyError as exc:
            _fail("ErrorPattern", f"missing required field {exc.args[0]!r}")


def utc_now() -> datetime:
    return datetime.now(UTC)


def attempt_label(attempt: int) -> str:
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return f"{ATTEMPT_LABEL_PREFIX}{attempt}"


def truncate_comment(text: str) -> str:
    if len(text) <= _MAX_COMMENT:
        return text
    return text[: _MAX_COMMENT - 15] + "\n...[truncated]"


def _normalize_labels(labels: Iterable[str]) -> tuple[str, ...]:
    normalized: set[str] = set()
    for label in labels:
        candidate = str(label).strip()
        if candidate:
            normalized.add(candidate)
    return tuple(sorted(normalized))


def _str_tuple(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, Iterable):
        return tuple(str(item) for item in value)
    _fail("value", f"expected a sequence of strings, got {type(value).__name__}")


def _as_list(value: object) -> list[object]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail("value", f"expected a list, got {type(value).__name__}")


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_timestamp(value: object, path: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            _fail(path, f"invalid ISO-8601 timestamp: {value!r}")
    else:
        _fail(path, f"expected timestamp, got {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "ErrorPattern",
    "GateReason",
    "IN_FLIGHT_STATUSES",
    "JSONValue",
    "Lock",
    "TERMINAL_LOOKING_STATUSES",
    "Trend",
    "WorkItem",
    "WorkItemKind",
    "WorkItemStatus",
    "attempt_label",
    "truncate_comment",
    "utc_now",
]
