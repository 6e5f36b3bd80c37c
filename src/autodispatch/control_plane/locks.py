"""Lock table: exclusive ownership of work items by worker slots.

At most one lock exists per item. Claim and release are compare-and-swap operations
guarded by a ``threading.Lock``; the table is optionally mirrored to a JSON state file
written atomically (temp file + replace). The file is safe to discard: it only speeds
up recovery of orphaned items after a crash.
"""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import psutil
import structlog

from autodispatch.constants import LOCK_TABLE_SCHEMA_VERSION
from autodispatch.domain.models import Lock, utc_now

_REQUIRED_STATE_KEYS = ("schema_version", "locks")


class LockTableStateError(ValueError):
    """Raised when the persisted lock table cannot be parsed."""


class LockManager:
    """In-memory lock table with optional JSON persistence."""

    def __init__(
        self,
        state_file: str | Path | None = None,
        *,
        owner_pid: int | None = None,
        clock: Callable[[], datetime] = utc_now,
        pid_exists: Callable[[int], bool] = psutil.pid_exists,
        logger: Any | None = None,
    ) -> None:
        self._state_file = (
            Path(state_file).expanduser().resolve() if state_file is not None else None
        )
        self._owner_pid = owner_pid if owner_pid is not None else os.getpid()
        self._clock = clock
        self._pid_exists = pid_exists
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._guard = threading.Lock()
        self._locks: dict[str, Lock] = {}

    @property
    def owner_pid(self) -> int:
        return self._owner_pid

    @property
    def locks(self) -> tuple[Lock, ...]:
        with self._guard:
            return tuple(self._locks[item_id] for item_id in sorted(self._locks))

    def try_acquire(self, item_id: str, slot_id: int) -> Lock | None:
        """Atomically claim ``item_id`` for ``slot_id``; ``None`` when already held."""

        with self._guard:
            if item_id in self._locks:
                return None
            lock = Lock(
                item_id=item_id,
                slot_id=slot_id,
                acquired_at=self._clock(),
                owner_pid=self._owner_pid,
            )
            self._locks[item_id] = lock
            self._persist_locked()
        self._logger.debug("lock_acquired", item_id=item_id, slot_id=slot_id)
        return lock

    def release(self, item_id: str, *, slot_id: int | None = None) -> bool:
        """Drop the lock on ``item_id``; with ``slot_id`` only when that slot holds it."""

        with self._guard:
            lock = self._locks.get(item_id)
            if lock is None:
                return False
            if slot_id is not None and lock.slot_id != slot_id:
                return False
            del self._locks[item_id]
            self._persist_locked()
        self._logger.debug("lock_released", item_id=item_id, slot_id=lock.slot_id)
        return True

    def holder(self, item_id: str) -> Lock | None:
        with self._guard:
            return self._locks.get(item_id)

    def is_locked(self, item_id: str) -> bool:
        with self._guard:
            return item_id in self._locks

    def is_live(self, lock: Lock) -> bool:
        try:
            return bool(self._pid_exists(lock.owner_pid))
        except (OSError, psutil.Error):
            return False

    def reclaim_stale(self, *, include_own: bool = False) -> tuple[Lock, ...]:
        """Remove locks whose owner process is gone.

        ``include_own`` also drops locks recorded under this process id; a freshly
        started loop holds no slots, so such locks cannot belong to it.
        """

        with self._guard:
            stale = [
                lock
                for lock in self._locks.values()
                if not self.is_live(lock) or (include_own and lock.owner_pid == self._owner_pid)
            ]
            for lock in stale:
                del self._locks[lock.item_id]
            if stale:
                self._persist_locked()
        for lock in stale:
            self._logger.info(
                "lock_reclaimed",
                item_id=lock.item_id,
                slot_id=lock.slot_id,
                owner_pid=lock.owner_pid,
            )
        return tuple(sorted(stale, key=lambda lock: lock.item_id))

    def clear(self) -> None:
        with self._guard:
            self._locks.clear()
            self._persist_locked()

    def load(self) -> tuple[Lock, ...]:
        """Replace the in-memory table with the persisted one (no-op without a file)."""

        if self._state_file is None or not self._state_file.exists():
            return ()
        try:
            payload_raw = self._state_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise LockTableStateError(
                f"failed to read lock table {self._state_file}: {exc}"
            ) from exc
        try:
            parsed = json.loads(payload_raw)
        except json.JSONDecodeError as exc:
            raise LockTableStateError(
                f"invalid JSON in lock table {self._state_file}: {exc.msg}"
            ) from exc

        loaded = self._parse_payload(parsed)
        with self._guard:
            self._locks = {lock.item_id: lock for lock in loaded}
        return tuple(sorted(loaded, key=lambda lock: lock.item_id))

    def _parse_payload(self, parsed: object) -> list[Lock]:
        if not isinstance(parsed, dict):
            raise LockTableStateError("lock table root must be an object")
        missing_keys = [key for key in _REQUIRED_STATE_KEYS if key not in parsed]
        if missing_keys:
            missing_summary = ", ".join(missing_keys)
            raise LockTableStateError(f"lock table missing required keys: {missing_summary}")
        if parsed["schema_version"] != LOCK_TABLE_SCHEMA_VERSION:
            raise LockTableStateError(
                f"unsupported lock table schema version {parsed['schema_version']!r}; "
                f"expected {LOCK_TABLE_SCHEMA_VERSION}"
            )
        raw_locks = parsed["locks"]
        if not isinstance(raw_locks, list):
            raise LockTableStateError("lock table locks must be a list")

        loaded: list[Lock] = []
        seen: set[str] = set()
        for entry in raw_locks:
            if not isinstance(entry, dict):
                raise LockTableStateError("lock table entries must be objects")
            try:
                lock = Lock.from_dict(entry)
            except (TypeError, ValueError) as exc:
                raise LockTableStateError(f"invalid lock table entry: {exc}") from exc
            if lock.item_id in seen:
                raise LockTableStateError(f"lock table holds duplicate item: {lock.item_id}")
            seen.add(lock.item_id)
            loaded.append(lock)
        return loaded

    def _persist_locked(self) -> None:
        if self._state_file is None:
            return
        payload = {
            "schema_version": LOCK_TABLE_SCHEMA_VERSION,
            "locks": [self._locks[item_id].to_dict() for item_id in sorted(self._locks)],
        }
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_state_file = self._state_file.with_suffix(f"{self._state_file.suffix}.tmp")
        tmp_state_file.write_text(
            json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        tmp_state_file.replace(self._state_file)


__all__ = ["LockManager", "LockTableStateError"]
