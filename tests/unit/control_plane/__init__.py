"""Shared deterministic fakes and builders for dispatch-loop tests."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Final, Literal

from autodispatch.control_plane.controller import DispatchLoop, DispatchSettings
from autodispatch.control_plane.locks import LockManager
from autodispatch.control_plane.retry import RetryPolicy
from autodispatch.control_plane.scheduler import Scheduler
from autodispatch.domain.models import WorkItem, WorkItemStatus
from autodispatch.integration_plane.conflict_resolution import ConflictResolver
from autodispatch.synthesis_plane.context_assembler import ContextAssembler
from autodispatch.synthesis_plane.dispatch import WorkerOutcome
from autodispatch.verification_plane.gates import (
    CommandResult,
    ConflictGate,
    FunctionalTestGate,
    Gate,
    IntegrationGate,
    QualityGate,
    RegressionGate,
    TestCommands,
)
from autodispatch.verification_plane.pipeline import ValidationPipeline

if TYPE_CHECKING:
    from autodispatch.integration_plane.git_engine import GitEngine
    from autodispatch.knowledge_plane.graph_analyzer import GraphAnalyzer
    from autodispatch.knowledge_plane.learning_store import LearningStore
    from autodispatch.persistence.dependency_store import InMemoryDependencyStore
    from autodispatch.synthesis_plane.context_assembler import WorkerContext

Behavior = Literal["close", "crash", "leave-open", "give-up"]

_BASE_TS: Final[datetime] = datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)
FAILING_TEST_OUTPUT: Final[str] = (
    "FAILED tests/unit/test_render.py::test_totals - AssertionError: assert 3 == 4"
)


class FakeClock:
    def __init__(self, start: datetime = _BASE_TS) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedHandle:
    """Runs its worker body on the first poll, unless the launcher holds it."""

    def __init__(self, item_id: str, body: Callable[[], WorkerOutcome | None]) -> None:
        self.item_id = item_id
        self.closed = False
        self._body = body
        self._outcome: WorkerOutcome | None = None

    def poll(self) -> WorkerOutcome | None:
        if self._outcome is None:
            self._outcome = self._body()
        return self._outcome

    def close(self) -> None:
        self.closed = True


class ScriptedLauncher:
    """Synchronous stand-in for a worker pool.

    Each item pops its next behavior from ``scripts`` (default ``close``): ``close``
    marks the item closed and reports success, ``crash`` reports a failed exit,
    ``leave-open`` exits cleanly without closing the item, and ``give-up`` marks the
    item failed before a clean exit.
    """

    def __init__(
        self,
        store: InMemoryDependencyStore,
        scripts: dict[str, list[Behavior]] | None = None,
        *,
        branches: dict[str, str] | None = None,
    ) -> None:
        self.store = store
        self.scripts = {item_id: list(steps) for item_id, steps in (scripts or {}).items()}
        self.branches = dict(branches or {})
        self.held: set[str] = set()
        self.launched: list[tuple[str, int]] = []
        self.contexts: list[WorkerContext] = []
        self.handles: list[ScriptedHandle] = []

    def launch(self, item: WorkItem, context: WorkerContext) -> ScriptedHandle:
        self.launched.append((item.id, context.attempt))
        self.contexts.append(context)
        handle = ScriptedHandle(item.id, lambda: self._work(item.id, context))
        self.handles.append(handle)
        return handle

    def attempts(self, item_id: str) -> list[int]:
        return [attempt for launched_id, attempt in self.launched if launched_id == item_id]

    def _work(self, item_id: str, context: WorkerContext) -> WorkerOutcome | None:
        if item_id in self.held:
            return None
        steps = self.scripts.get(item_id) or []
        behavior = steps.pop(0) if steps else "close"
        branch = self.branches.get(item_id, context.branch)
        if behavior == "crash":
            return WorkerOutcome(
                success=False,
                output="Traceback (most recent call last):\nTypeError: unsupported operand",
                branch=branch,
                exit_code=1,
            )
        if behavior == "leave-open":
            return WorkerOutcome(success=True, output="nothing to do", branch=branch, exit_code=0)
        if behavior == "give-up":
            self.store.update_status(item_id, WorkItemStatus.FAILED)
            return WorkerOutcome(success=True, output="cannot do this", branch=branch, exit_code=0)
        self.store.update_status(item_id, WorkItemStatus.CLOSED)
        return WorkerOutcome(success=True, output="done", branch=branch, exit_code=0)


@dataclass
class FakeRunner:
    """Command runner whose result fails when the command line mentions a keyword."""

    failing_keywords: set[str] = field(default_factory=set)
    calls: list[tuple[str, ...]] = field(default_factory=list)

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        command = tuple(argv)
        self.calls.append(command)
        joined = " ".join(command)
        if any(keyword in joined for keyword in self.failing_keywords):
            return CommandResult(
                argv=command, exit_code=1, output=FAILING_TEST_OUTPUT, duration_ms=0
            )
        return CommandResult(argv=command, exit_code=0, output="1 passed", duration_ms=0)


@dataclass
class Harness:
    loop: DispatchLoop
    store: InMemoryDependencyStore
    launcher: ScriptedLauncher
    runner: FakeRunner
    locks: LockManager
    clock: FakeClock


def build_harness(
    store: InMemoryDependencyStore,
    *,
    launcher: ScriptedLauncher | None = None,
    runner: FakeRunner | None = None,
    slot_count: int = 2,
    max_attempts: int = 3,
    item_timeout_seconds: float = 3600.0,
    regression_seed: int | None = None,
    git_engine: GitEngine | None = None,
    analyzer: GraphAnalyzer | None = None,
    learning_store: LearningStore | None = None,
    lock_manager: LockManager | None = None,
    workspace: Path | None = None,
    excluded_labels: Iterable[str] = ("failed", "needs-human"),
) -> Harness:
    """Wire a loop with the standard gate order and no real subprocesses."""

    scripted = launcher if launcher is not None else ScriptedLauncher(store)
    fake_runner = runner if runner is not None else FakeRunner()
    clock = FakeClock()
    locks = lock_manager if lock_manager is not None else LockManager(clock=clock)
    commands = TestCommands()
    gates: list[Gate] = [
        FunctionalTestGate(fake_runner, commands),
        IntegrationGate(store, fake_runner),
    ]
    if git_engine is not None:
        gates.append(ConflictGate(git_engine))
    if regression_seed is not None:
        gates.append(RegressionGate(store, fake_runner, commands, seed=regression_seed))
    gates.append(QualityGate(fake_runner, ()))
    loop = DispatchLoop(
        store=store,
        launcher=scripted,
        lock_manager=locks,
        scheduler=Scheduler(analyzer, excluded_labels=excluded_labels),
        pipeline=ValidationPipeline(
            gates,
            store=store,
            learning_store=learning_store,
            default_workspace=workspace,
        ),
        retry_policy=RetryPolicy(store, max_attempts=max_attempts),
        conflict_resolver=ConflictResolver(store, max_attempts=max_attempts),
        assembler=ContextAssembler(learning_store),
        git_engine=git_engine,
        analyzer=analyzer,
        learning_store=learning_store,
        settings=DispatchSettings(
            slot_count=slot_count,
            heartbeat_seconds=0.0,
            item_timeout_seconds=item_timeout_seconds,
        ),
        clock=clock,
        sleep=lambda seconds: None,
    )
    return Harness(
        loop=loop,
        store=store,
        launcher=scripted,
        runner=fake_runner,
        locks=locks,
        clock=clock,
    )


def chain(*titles: str, prefix: str = "t") -> list[WorkItem]:
    """Items where each one blocks the next, ids ``<prefix>-1`` onward."""

    items: list[WorkItem] = []
    for index, title in enumerate(titles, start=1):
        blocked_by = (f"{prefix}-{index - 1}",) if index > 1 else ()
        items.append(WorkItem(id=f"{prefix}-{index}", title=title, blocked_by=blocked_by))
    return items


__all__ = [
    "FAILING_TEST_OUTPUT",
    "FakeClock",
    "FakeRunner",
    "Harness",
    "ScriptedHandle",
    "ScriptedLauncher",
    "build_harness",
    "chain",
]
