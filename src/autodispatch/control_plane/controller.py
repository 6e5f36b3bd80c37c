"""
Dispatch loop: claim ready work, poll workers, validate, integrate, retry or escalate.

The loop is single-threaded and never blocks on a worker. Each iteration runs
``monitor_cycle`` (finish work), ``release_serialized`` (unblock serialized items whose
blockers closed) and ``dispatch_cycle`` (fill empty slots), then sleeps one heartbeat.
Only :class:`DependencyStoreError` stops the loop; all other failures become data on
the affected item and the loop keeps going.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from autodispatch.constants import (
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_ITEM_TIMEOUT_SECONDS,
    DEFAULT_SLOT_COUNT,
    LABEL_ESCALATED,
    LABEL_SERIALIZED,
    LABEL_STUCK,
)
from autodispatch.control_plane.retry import RetryAction
from autodispatch.domain import graph
from autodispatch.domain.models import (
    IN_FLIGHT_STATUSES,
    TERMINAL_LOOKING_STATUSES,
    GateReason,
    WorkItemStatus,
    utc_now,
)
from autodispatch.integration_plane.conflict_resolution import ConflictTier
from autodispatch.integration_plane.git_engine import GitEngineError
from autodispatch.knowledge_plane.graph_analyzer import GraphAnalyzerUnavailable
from autodispatch.persistence.dependency_store import ItemNotFoundError
from autodispatch.synthesis_plane.context_assembler import ContextRenderError
from autodispatch.synthesis_plane.dispatch import WorkerLaunchError
from autodispatch.synthesis_plane.work_item_classifier import classify_work_item

if TYPE_CHECKING:
    from autodispatch.control_plane.locks import LockManager
    from autodispatch.control_plane.retry import RetryPolicy
    from autodispatch.control_plane.scheduler import Scheduler
    from autodispatch.domain.models import WorkItem
    from autodispatch.integration_plane.conflict_resolution import ConflictResolver
    from autodispatch.integration_plane.git_engine import GitEngine
    from autodispatch.knowledge_plane.graph_analyzer import GraphAnalyzer, GraphDiff
    from autodispatch.knowledge_plane.learning_store import LearningStore
    from autodispatch.persistence.dependency_store import DependencyStore
    from autodispatch.synthesis_plane.context_assembler import ContextAssembler
    from autodispatch.synthesis_plane.dispatch import TaskHandle, WorkerLauncher, WorkerOutcome
    from autodispatch.verification_plane.pipeline import ValidationPipeline


@dataclass(frozen=True, slots=True)
class DispatchSettings:
    slot_count: int = DEFAULT_SLOT_COUNT
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    item_timeout_seconds: float = DEFAULT_ITEM_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.slot_count < 1:
            raise ValueError("slot_count must be >= 1")
        if self.heartbeat_seconds < 0:
            raise ValueError("heartbeat_seconds must be >= 0")
        if self.item_timeout_seconds <= 0:
            raise ValueError("item_timeout_seconds must be > 0")


@dataclass(slots=True)
class WorkerSlot:
    """One entry of the fixed-size worker pool."""

    slot_id: int
    item_id: str | None = None
    handle: TaskHandle | None = None
    started_at: datetime | None = None
    stuck_reported: bool = False

    @property
    def is_empty(self) -> bool:
        return self.item_id is None

    def assign(self, item_id: str, handle: TaskHandle, started_at: datetime) -> None:
        if not self.is_empty:
            raise RuntimeError(f"slot {self.slot_id} is already assigned to {self.item_id}")
        self.item_id = item_id
        self.handle = handle
        self.started_at = started_at
        self.stuck_reported = False

    def clear(self) -> None:
        self.item_id = None
        self.handle = None
        self.started_at = None
        self.stuck_reported = False


@dataclass(frozen=True, slots=True)
class RunReport:
    """Summary of one ``run()`` invocation."""

    closed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    escalated: tuple[str, ...] = ()
    serialized: tuple[str, ...] = ()
    retried: tuple[str, ...] = ()
    reopened: tuple[str, ...] = ()
    recovered: tuple[str, ...] = ()
    cycles_detected: tuple[tuple[str, ...], ...] = ()
    inverted_edges: tuple[tuple[str, str], ...] = ()
    dispatch_cycles: int = 0
    graph_diff: GraphDiff | None = None

    @property
    def has_failures(self) -> bool:
        return bool(self.failed or self.escalated or self.cycles_detected)

    def to_dict(self) -> dict[str, object]:
        return {
            "closed": list(self.closed),
            "failed": list(self.failed),
            "escalated": list(self.escalated),
            "serialized": list(self.serialized),
            "retried": list(self.retried),
            "reopened": list(self.reopened),
            "recovered": list(self.recovered),
            "cycles_detected": [list(cycle) for cycle in self.cycles_detected],
            "inverted_edges": [list(edge) for edge in self.inverted_edges],
            "dispatch_cycles": self.dispatch_cycles,
            "graph_diff": self.graph_diff.to_dict() if self.graph_diff is not None else None,
        }


@dataclass(slots=True)
class _Tally:
    closed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    serialized: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    reopened: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)


class DispatchLoop:
    """Owns the worker slots and drives every item through its lifecycle."""

    def __init__(
        self,
        *,
        store: DependencyStore,
        launcher: WorkerLauncher,
        lock_manager: LockManager,
        scheduler: Scheduler,
        pipeline: ValidationPipeline,
        retry_policy: RetryPolicy,
        conflict_resolver: ConflictResolver,
        assembler: ContextAssembler,
        git_engine: GitEngine | None = None,
        analyzer: GraphAnalyzer | None = None,
        learning_store: LearningStore | None = None,
        settings: DispatchSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._launcher = launcher
        self._locks = lock_manager
        self._scheduler = scheduler
        self._pipeline = pipeline
        self._retry = retry_policy
        self._resolver = conflict_resolver
        self._assembler = assembler
        self._git_engine = git_engine
        self._analyzer = analyzer
        self._learning_store = learning_store
        self._settings = settings if settings is not None else DispatchSettings()
        self._clock = clock
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._slots = [WorkerSlot(slot_id=index) for index in range(self._settings.slot_count)]
        self._conflict_contexts: dict[str, str] = {}
        self._tally = _Tally()
        self._dispatch_cycles = 0

    @property
    def slots(self) -> tuple[WorkerSlot, ...]:
        return tuple(self._slots)

    @property
    def occupied(self) -> int:
        return sum(1 for slot in self._slots if not slot.is_empty)

    def pending_conflict_context(self, item_id: str) -> str | None:
        return self._conflict_contexts.get(item_id)

    # --- dispatch -------------------------------------------------------------------

    def dispatch_cycle(self) -> int:
        """Fill empty slots in slot order with the best-ranked ready items."""

        self._dispatch_cycles += 1
        empty = [slot for slot in self._slots if slot.is_empty]
        if not empty:
            return 0
        locked = {lock.item_id for lock in self._locks.locks}
        in_flight = locked | {slot.item_id for slot in self._slots if slot.item_id is not None}
        decision = self._scheduler.schedule(
            self._store.ready(), locked=locked, in_flight=in_flight
        )
        candidates = iter(decision.ranked)
        dispatched = 0
        for slot in empty:
            for item_id in candidates:
                if self._try_assign(slot, item_id):
                    dispatched += 1
                    break
            else:
                break
        if dispatched:
            self._logger.debug(
                "dispatch_cycle_complete",
                dispatched=dispatched,
                degraded=decision.degraded,
                occupied=self.occupied,
            )
        return dispatched

    def _try_assign(self, slot: WorkerSlot, item_id: str) -> bool:
        if self._locks.try_acquire(item_id, slot.slot_id) is None:
            return False
        try:
            item = self._store.show(item_id)
        except ItemNotFoundError:
            self._locks.release(item_id, slot_id=slot.slot_id)
            self._logger.info("dispatch_race", item_id=item_id, cause="vanished")
            return False
        if item.status is not WorkItemStatus.OPEN:
            self._locks.release(item_id, slot_id=slot.slot_id)
            self._logger.info("dispatch_race", item_id=item_id, cause=item.status.value)
            return False

        item = self._store.update_status(item_id, WorkItemStatus.CLAIMED)
        try:
            context = self._assembler.assemble(
                item, conflict_context=self._conflict_contexts.get(item_id)
            )
            handle = self._launcher.launch(item, context)
        except (ContextRenderError, WorkerLaunchError, GitEngineError) as exc:
            self._locks.release(item_id, slot_id=slot.slot_id)
            self._logger.error("worker_launch_failed", item_id=item_id, error=str(exc))
            self._record_learning(item, GateReason.WORKER_FAILED, str(exc))
            self._apply_retry(item, GateReason.WORKER_FAILED, str(exc))
            return False

        self._conflict_contexts.pop(item_id, None)
        slot.assign(item_id, handle, self._clock())
        self._logger.info(
            "item_dispatched",
            item_id=item_id,
            slot_id=slot.slot_id,
            attempt=context.attempt,
            worker_kind=context.worker_kind.value,
            branch=context.branch,
        )
        return True

    # --- monitor --------------------------------------------------------------------

    def monitor_cycle(self) -> int:
        """Poll every occupied slot once; returns the number of slots finished."""

        finished = 0
        for slot in self._slots:
            if slot.is_empty or slot.handle is None or slot.item_id is None:
                continue
            outcome = slot.handle.poll()
            if outcome is None:
                self._check_timeout(slot)
                continue
            try:
                self._finish(slot.item_id, outcome)
            finally:
                slot.handle.close()
                self._locks.release(slot.item_id, slot_id=slot.slot_id)
                slot.clear()
            finished += 1
        return finished

    def _check_timeout(self, slot: WorkerSlot) -> None:
        if slot.stuck_reported or slot.started_at is None or slot.item_id is None:
            return
        elapsed = (self._clock() - slot.started_at).total_seconds()
        if elapsed <= self._settings.item_timeout_seconds:
            return
        slot.stuck_reported = True
        item = self._store.show(slot.item_id)
        if not item.has_label(LABEL_STUCK):
            self._store.add_label(item.id, LABEL_STUCK)
        self._store.add_comment(
            item.id,
            f"Worker has been running for {int(elapsed)}s, longer than the "
            f"{int(self._settings.item_timeout_seconds)}s budget; it is left running.",
        )
        self._logger.warning(
            "item_stuck",
            item_id=item.id,
            slot_id=slot.slot_id,
            elapsed_seconds=round(elapsed, 1),
        )

    def _finish(self, item_id: str, outcome: WorkerOutcome) -> None:
        try:
            item = self._store.show(item_id)
        except ItemNotFoundError:
            self._logger.warning("finished_item_vanished", item_id=item_id)
            return

        if not outcome.success or item.status is not WorkItemStatus.CLOSED:
            details = outcome.output
            if outcome.success and item.status in TERMINAL_LOOKING_STATUSES:
                details = f"worker marked the item {item.status.value} itself\n{outcome.output}"
            elif outcome.success:
                details = (
                    f"worker exited without marking the item done (status {item.status.value})\n"
                    f"{outcome.output}"
                )
            self._logger.info(
                "worker_failed",
                item_id=item.id,
                exit_code=outcome.exit_code,
                status=item.status.value,
            )
            self._record_learning(item, GateReason.WORKER_FAILED, details)
            self._apply_retry(item, GateReason.WORKER_FAILED, details)
            return

        item = self._store.update_status(item.id, WorkItemStatus.VALIDATING)
        try:
            result = self._pipeline.validate(item, outcome)
        except GitEngineError as exc:
            self._logger.error("validation_git_error", item_id=item.id, error=str(exc))
            self._record_learning(item, GateReason.WORKER_FAILED, str(exc))
            self._apply_retry(item, GateReason.WORKER_FAILED, str(exc))
            return
        self._tally.reopened.extend(result.reopened)

        if result.passed:
            self._integrate(item, outcome)
            return
        if result.reason is GateReason.CONFLICT and result.conflict is not None:
            resolution = self._resolver.resolve(item, result.conflict)
            if resolution.conflict_context:
                self._conflict_contexts[item.id] = resolution.conflict_context
            if resolution.tier is ConflictTier.RETRY:
                self._tally.retried.append(item.id)
            elif resolution.tier is ConflictTier.SERIALIZED:
                self._tally.serialized.append(item.id)
            else:
                self._tally.escalated.append(item.id)
            return
        reason = result.reason if result.reason is not None else GateReason.WORKER_FAILED
        self._apply_retry(item, reason, result.details)

    def _integrate(self, item: WorkItem, outcome: WorkerOutcome) -> None:
        commit: str | None = None
        if (
            self._git_engine is not None
            and outcome.branch
            and self._git_engine.branch_exists(outcome.branch)
        ):
            try:
                commit = self._git_engine.integrate(
                    outcome.branch, item_id=item.id, title=item.title
                )
            except GitEngineError as exc:
                self._logger.error("integration_failed", item_id=item.id, error=str(exc))
                self._record_learning(item, GateReason.CONFLICT, str(exc))
                self._apply_retry(item, GateReason.CONFLICT, str(exc))
                return
        self._store.update_status(item.id, WorkItemStatus.CLOSED)
        note = f" as {commit[:12]}" if commit else ""
        self._store.add_comment(item.id, f"Validated and integrated into the baseline{note}.")
        self._tally.closed.append(item.id)
        self._logger.info("item_closed", item_id=item.id, commit=commit)
        if self._learning_store is not None:
            self._learning_store.record_recovery(item, kind=classify_work_item(item).value)

    def _apply_retry(self, item: WorkItem, reason: GateReason, details: str) -> None:
        history = (
            self._learning_store.history(item.id) if self._learning_store is not None else ()
        )
        decision = self._retry.handle_failure(
            self._store.show(item.id), reason, details, history=history
        )
        if decision.action is RetryAction.FAILED:
            self._tally.failed.append(item.id)
        else:
            self._tally.retried.append(item.id)

    def _record_learning(self, item: WorkItem, reason: GateReason, output: str) -> None:
        if self._learning_store is None:
            return
        self._learning_store.record_failure(
            item, reason, output, kind=classify_work_item(item).value
        )

    # --- serialized release ---------------------------------------------------------

    def release_serialized(self) -> tuple[str, ...]:
        """Reopen serialized items whose blockers are all closed."""

        released: list[str] = []
        snapshot = graph.index_items(self._store.list_items())
        for item in sorted(snapshot.values(), key=lambda entry: entry.sequence):
            if item.status is not WorkItemStatus.BLOCKED:
                continue
            if not item.has_label(LABEL_SERIALIZED) or item.has_label(LABEL_ESCALATED):
                continue
            if not all(
                blocker_id in snapshot and snapshot[blocker_id].status is WorkItemStatus.CLOSED
                for blocker_id in item.blocked_by
            ):
                continue
            self._store.update_status(item.id, WorkItemStatus.OPEN)
            self._store.add_comment(item.id, "Released: every blocker is closed.")
            released.append(item.id)
        if released:
            self._logger.info("serialized_released", item_ids=released)
        return tuple(released)

    # --- recovery -------------------------------------------------------------------

    def recover(self) -> tuple[str, ...]:
        """Reset orphaned in-flight items after a crash; safe to call repeatedly."""

        for slot in self._slots:
            if slot.handle is not None:
                slot.handle.close()
            slot.clear()
        self._locks.load()
        self._locks.reclaim_stale(include_own=True)
        live = {lock.item_id for lock in self._locks.locks}

        reset: list[str] = []
        for status in sorted(IN_FLIGHT_STATUSES):
            for item in self._store.list_items(status=status):
                if item.id in live:
                    continue
                self._store.update_status(item.id, WorkItemStatus.OPEN)
                self._store.add_comment(
                    item.id,
                    f"Recovered after restart: reset from {status.value} to open.",
                )
                reset.append(item.id)
        if reset:
            self._logger.warning("orphans_reset", item_ids=reset)
        self._tally.recovered.extend(reset)
        return tuple(reset)

    # --- run ------------------------------------------------------------------------

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        cycles: tuple[tuple[str, ...], ...]
        if self._analyzer is not None:
            try:
                cycles = self._analyzer.detect_cycles()
            except GraphAnalyzerUnavailable as exc:
                self._logger.warning("graph_analyzer_unavailable", error=str(exc))
                cycles = graph.find_cycles(graph.index_items(self._store.list_items()))
        else:
            cycles = graph.find_cycles(graph.index_items(self._store.list_items()))
        if cycles:
            self._logger.warning("dependency_cycles_detected", cycles=[list(c) for c in cycles])
        return cycles

    def check_hierarchy(self) -> tuple[tuple[str, str], ...]:
        """Blocking edges that run against the kind hierarchy; logged, never fatal."""

        inverted = graph.hierarchy_violations(graph.index_items(self._store.list_items()))
        if inverted:
            self._logger.warning(
                "inverted_hierarchy_edges", edges=[list(edge) for edge in inverted]
            )
        return inverted

    def run(self, *, max_cycles: int | None = None, diff_since: str | None = None) -> RunReport:
        """Recover, then loop until idle or ``max_cycles`` iterations have run."""

        if max_cycles is not None and max_cycles < 1:
            raise ValueError("max_cycles must be >= 1")
        self._tally = _Tally()
        self._dispatch_cycles = 0
        self.recover()
        cycles = self.detect_cycles()
        inverted = self.check_hierarchy()

        iterations = 0
        while True:
            finished = self.monitor_cycle()
            if finished:
                self._persist_learning()
            self.release_serialized()
            dispatched = self.dispatch_cycle()
            iterations += 1
            if self.occupied == 0 and dispatched == 0:
                self._logger.info("dispatch_idle", iterations=iterations)
                break
            if max_cycles is not None and iterations >= max_cycles:
                self._logger.info("dispatch_cycle_limit", iterations=iterations)
                break
            self._sleep(self._settings.heartbeat_seconds)

        diff = self._graph_diff(diff_since)
        report = RunReport(
            closed=tuple(self._tally.closed),
            failed=tuple(self._tally.failed),
            escalated=tuple(self._tally.escalated),
            serialized=tuple(self._tally.serialized),
            retried=tuple(self._tally.retried),
            reopened=tuple(self._tally.reopened),
            recovered=tuple(self._tally.recovered),
            cycles_detected=cycles,
            inverted_edges=inverted,
            dispatch_cycles=self._dispatch_cycles,
            graph_diff=diff,
        )
        self._logger.info(
            "run_complete",
            closed=len(report.closed),
            failed=len(report.failed),
            escalated=len(report.escalated),
            dispatch_cycles=report.dispatch_cycles,
        )
        return report

    def _persist_learning(self) -> None:
        if self._learning_store is not None:
            self._learning_store.save()

    def _graph_diff(self, since_ref: str | None) -> GraphDiff | None:
        if since_ref is None or self._analyzer is None:
            return None
        try:
            diff = self._analyzer.diff(since_ref)
        except GraphAnalyzerUnavailable as exc:
            self._logger.warning("graph_diff_unavailable", ref=since_ref, error=str(exc))
            return None
        if diff.has_new_cycles:
            self._logger.warning(
                "new_dependency_cycles",
                ref=since_ref,
                cycles=[list(cycle) for cycle in diff.new_cycles],
            )
        return diff


__all__ = ["DispatchLoop", "DispatchSettings", "RunReport", "WorkerSlot"]
