"""
Dependency Store protocol and the in-process reference implementation.

The dependency store is the system of record for work items, their statuses, labels,
comments and blocking edges. Production deployments wrap an external issue tracker
(see :mod:`autodispatch.persistence.beads_cli`); the in-memory store backs tests and
embedded use.

Every store failure is a :class:`DependencyStoreError`; the dispatch loop treats it as
fatal and leaves state resumable.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Sequence
from typing import Protocol, runtime_checkable

from autodispatch.constants import ATTEMPT_LABEL_PREFIX, DISCOVERED_FROM_LABEL_PREFIX
from autodispatch.domain.graph import index_items, is_ready
from autodispatch.domain.models import (
    WorkItem,
    WorkItemKind,
    WorkItemStatus,
    attempt_label,
    truncate_comment,
)


class DependencyStoreError(RuntimeError):
    """Raised when the dependency store cannot serve a request."""


class ItemNotFoundError(DependencyStoreError):
    """Raised when a requested work item does not exist."""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"work item not found: {item_id}")
        self.item_id = item_id


class InvalidTransitionError(DependencyStoreError):
    """Raised when a status change skips the work-item lifecycle."""

    def __init__(self, item_id: str, current: WorkItemStatus, target: WorkItemStatus) -> None:
        super().__init__(
            f"work item {item_id} cannot move from {current.value} to {target.value}"
        )
        self.item_id = item_id
        self.current = current
        self.target = target


@runtime_checkable
class DependencyStore(Protocol):
    """Typed surface the dispatch loop needs from the dependency store."""

    def list_items(
        self,
        *,
        status: WorkItemStatus | None = None,
        label: str | None = None,
    ) -> list[WorkItem]: ...

    def ready(self) -> list[WorkItem]: ...

    def show(self, item_id: str) -> WorkItem: ...

    def update_status(self, item_id: str, status: WorkItemStatus) -> WorkItem: ...

    def add_label(self, item_id: str, label: str) -> WorkItem: ...

    def remove_label(self, item_id: str, label: str) -> WorkItem: ...

    def add_comment(self, item_id: str, text: str) -> WorkItem: ...

    def create_item(
        self,
        title: str,
        *,
        kind: WorkItemKind = WorkItemKind.ATOM,
        priority: int = 2,
        labels: Iterable[str] = (),
        description: str = "",
        discovered_from: str | None = None,
        blocks: Sequence[str] = (),
    ) -> WorkItem: ...

    def add_dependency(self, blocker_id: str, blocked_id: str) -> None: ...


class InMemoryDependencyStore:
    """Thread-safe dictionary-backed dependency store."""

    def __init__(self, items: Iterable[WorkItem] = (), *, id_prefix: str = "ad") -> None:
        if not id_prefix.strip():
            raise ValueError("id_prefix must be non-empty")
        self._lock = threading.RLock()
        self._items: dict[str, WorkItem] = {}
        self._next_sequence = 0
        self._next_id = 1
        self._id_prefix = id_prefix.strip()
        for item in items:
            self.add_item(item)

    def add_item(self, item: WorkItem) -> WorkItem:
        """Insert an existing snapshot, assigning the next insertion sequence."""

        with self._lock:
            if item.id in self._items:
                raise DependencyStoreError(f"duplicate work item id: {item.id}")
            stored = item.with_changes(sequence=self._next_sequence)
            self._next_sequence += 1
            self._items[stored.id] = stored
            return stored

    def list_items(
        self,
        *,
        status: WorkItemStatus | None = None,
        label: str | None = None,
    ) -> list[WorkItem]:
        with self._lock:
            items = sorted(self._items.values(), key=lambda item: item.sequence)
        if status is not None:
            items = [item for item in items if item.status is WorkItemStatus(status)]
        if label is not None:
            items = [item for item in items if item.has_label(label)]
        return items

    def ready(self) -> list[WorkItem]:
        with self._lock:
            snapshot = dict(self._items)
        return sorted(
            (item for item in snapshot.values() if is_ready(item, snapshot)),
            key=lambda item: item.sequence,
        )

    def show(self, item_id: str) -> WorkItem:
        with self._lock:
            item = self._items.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    def update_status(self, item_id: str, status: WorkItemStatus) -> WorkItem:
        with self._lock:
            item = self._require(item_id)
            target = WorkItemStatus(status)
            if not item.status.can_become(target):
                raise InvalidTransitionError(item_id, item.status, target)
            updated = item.with_changes(status=target)
            self._items[item_id] = updated
            return updated

    def add_label(self, item_id: str, label: str) -> WorkItem:
        with self._lock:
            item = self._require(item_id)
            updated = item.with_changes(labels=(*item.labels, label))
            self._items[item_id] = updated
            return updated

    def remove_label(self, item_id: str, label: str) -> WorkItem:
        with self._lock:
            item = self._require(item_id)
            updated = item.with_changes(
                labels=tuple(existing for existing in item.labels if existing != label)
            )
            self._items[item_id] = updated
            return updated

    def add_comment(self, item_id: str, text: str) -> WorkItem:
        with self._lock:
            item = self._require(item_id)
            updated = item.with_changes(comments=(*item.comments, truncate_comment(text)))
            self._items[item_id] = updated
            return updated

    def create_item(
        self,
        title: str,
        *,
        kind: WorkItemKind = WorkItemKind.ATOM,
        priority: int = 2,
        labels: Iterable[str] = (),
        description: str = "",
        discovered_from: str | None = None,
        blocks: Sequence[str] = (),
    ) -> WorkItem:
        with self._lock:
            if discovered_from is not None:
                self._require(discovered_from)
            for blocked_id in blocks:
                self._require(blocked_id)
            item_id = self._allocate_id()
            label_set = list(labels)
            if discovered_from is not None:
                label_set.append(f"{DISCOVERED_FROM_LABEL_PREFIX}{discovered_from}")
            created = WorkItem(
                id=item_id,
                title=title,
                kind=kind,
                priority=priority,
                labels=tuple(label_set),
                description=description,
                discovered_from=discovered_from,
                sequence=self._next_sequence,
            )
            self._next_sequence += 1
            self._items[item_id] = created
            for blocked_id in blocks:
                self._link(item_id, blocked_id)
            return created

    def add_dependency(self, blocker_id: str, blocked_id: str) -> None:
        with self._lock:
            self._require(blocker_id)
            self._require(blocked_id)
            if blocker_id == blocked_id:
                raise DependencyStoreError(f"work item cannot block itself: {blocker_id}")
            self._link(blocker_id, blocked_id)

    def snapshot(self) -> dict[str, WorkItem]:
        with self._lock:
            return index_items(self._items.values())

    def _link(self, blocker_id: str, blocked_id: str) -> None:
        blocked = self._items[blocked_id]
        self._items[blocked_id] = blocked.with_changes(
            blocked_by=(*blocked.blocked_by, blocker_id)
        )

    def _require(self, item_id: str) -> WorkItem:
        item = self._items.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    def _allocate_id(self) -> str:
        while True:
            candidate = f"{self._id_prefix}-{self._next_id}"
            self._next_id += 1
            if candidate not in self._items:
                return candidate


def advance_attempt(store: DependencyStore, item: WorkItem) -> int:
    """Replace the item's ``attempt-N`` label with ``attempt-(N+1)``; returns N+1."""

    next_attempt = item.attempt + 1
    for label in item.labels:
        if label.startswith(ATTEMPT_LABEL_PREFIX):
            store.remove_label(item.id, label)
    store.add_label(item.id, attempt_label(next_attempt))
    return next_attempt


__all__ = [
    "DependencyStore",
    "DependencyStoreError",
    "InMemoryDependencyStore",
    "InvalidTransitionError",
    "ItemNotFoundError",
    "advance_attempt",
]
