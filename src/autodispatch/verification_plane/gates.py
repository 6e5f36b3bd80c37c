"""
Validation gates: functional tests, integration check, conflict detection, regression
sample and quality checks.

Functional requirements:
- Each gate returns a :class:`GateOutcome`; gate failures are data, never exceptions.
- Test scope is the narrowest that covers the item: keyword-selected unit tests for
  atoms, the unit suite for composites, the integration suite for assemblies and the
  full suite for integration items.
- The regression gate samples one previously closed item with a seeded RNG.

Non-functional requirements:
- Commands run with a timeout; a timed-out command is a failure.
- Output is captured and truncated deterministically.
"""

from __future__ import annotations

import os
import random
import re
import shlex
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

from autodispatch.domain.models import GateReason, WorkItemKind, WorkItemStatus

if TYPE_CHECKING:
    from autodispatch.domain.models import WorkItem
    from autodispatch.integration_plane.conflict_resolution import ConflictReport
    from autodispatch.integration_plane.git_engine import GitEngine
    from autodispatch.persistence.dependency_store import DependencyStore
    from autodispatch.synthesis_plane.dispatch import WorkerOutcome

_MAX_OUTPUT_CHARS = 200_000
_NO_TESTS_COLLECTED = 5
_KEYWORD_RE = re.compile(r"[A-Za-z][A-Za-z0-9_]{3,}")
_STOPWORDS = frozenset(
    (
        "about after also before from have implement into item items make more only over "
        "should support test tests that their them then there these this update when where "
        "which while with work"
    ).split()
)
_MAX_KEYWORDS = 4


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Deterministic command execution outcome."""

    argv: tuple[str, ...]
    exit_code: int | None
    output: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.error is None and self.exit_code == 0

    def describe(self) -> str:
        command = shlex.join(self.argv)
        if self.error is not None:
            return f"$ {command}\n{self.error}"
        if self.timed_out:
            return f"$ {command}\ntimed out\n{self.output}".rstrip()
        return f"$ {command}\nexit code {self.exit_code}\n{self.output}".rstrip()


@runtime_checkable
class CommandRunner(Protocol):
    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        timeout_seconds: float | None = None,
    ) -> CommandResult: ...


class LocalCommandRunner:
    """Blocking local subprocess runner with combined, truncated output."""

    def __init__(
        self,
        *,
        default_timeout_seconds: float | None = 1_800.0,
        max_output_chars: int = _MAX_OUTPUT_CHARS,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._default_timeout_seconds = default_timeout_seconds
        self._max_output_chars = max_output_chars
        self._env = dict(env or {})

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        command = tuple(argv)
        timeout = timeout_seconds if timeout_seconds is not None else self._default_timeout_seconds
        env = os.environ.copy()
        env.update(self._env)
        started_ns = time.monotonic_ns()
        try:
            completed = subprocess.run(
                command,
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            return CommandResult(
                argv=command,
                exit_code=None,
                output=self._normalize(exc.output),
                duration_ms=_elapsed_ms(started_ns),
                timed_out=True,
            )
        except OSError as exc:
            return CommandResult(
                argv=command,
                exit_code=None,
                output="",
                duration_ms=_elapsed_ms(started_ns),
                error=str(exc),
            )
        return CommandResult(
            argv=command,
            exit_code=completed.returncode,
            output=self._normalize(completed.stdout),
            duration_ms=_elapsed_ms(started_ns),
        )

    def _normalize(self, raw: bytes | str | None) -> str:
        if raw is None:
            return ""
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        if len(text) <= self._max_output_chars:
            return text
        omitted = len(text) - self._max_output_chars
        return f"...[truncated {omitted} chars]\n{text[-self._max_output_chars:]}"


@dataclass(frozen=True, slots=True)
class GateOutcome:
    """Result of one gate for one item."""

    gate: str
    passed: bool
    reason: GateReason | None = None
    details: str = ""
    reopened: tuple[str, ...] = ()
    conflict: ConflictReport | None = None

    @property
    def blocking(self) -> bool:
        return not self.passed and self.reason is not None and self.reason.blocking

    def to_dict(self) -> dict[str, object]:
        return {
            "gate": self.gate,
            "passed": self.passed,
            "reason": self.reason.value if self.reason is not None else None,
            "blocking": self.blocking,
            "details": self.details,
            "reopened": list(self.reopened),
        }


@dataclass(frozen=True, slots=True)
class TestCommands:
    """Shell-style command templates per test scope."""

    __test__ = False

    unit: str = "pytest tests/unit -q"
    integration: str = "pytest tests/integration -q"
    full: str = "pytest -q"
    keyword: str = "pytest tests/unit -q -k {keywords}"
    timeout_seconds: float | None = 1_800.0


@dataclass(frozen=True, slots=True)
class TestScope:
    """Concrete test command chosen for one item."""

    __test__ = False

    name: str
    argv: tuple[str, ...]
    fallback: tuple[str, ...] | None = None


def title_keywords(title: str) -> tuple[str, ...]:
    words: list[str] = []
    for match in _KEYWORD_RE.finditer(title):
        word = match.group(0).lower()
        if word in _STOPWORDS or word in words:
            continue
        words.append(word)
        if len(words) >= _MAX_KEYWORDS:
            break
    return tuple(words)


def select_test_scope(item: WorkItem, commands: TestCommands) -> TestScope:
    """Narrowest test scope for the item kind; atoms select unit tests by title keywords."""

    if item.kind is WorkItemKind.INTEGRATION:
        return TestScope(name="full", argv=tuple(shlex.split(commands.full)))
    if item.kind is WorkItemKind.ASSEMBLY:
        return TestScope(name="integration", argv=tuple(shlex.split(commands.integration)))
    unit = tuple(shlex.split(commands.unit))
    if item.kind is WorkItemKind.COMPOSITE:
        return TestScope(name="unit", argv=unit)
    keywords = title_keywords(item.title)
    if not keywords:
        return TestScope(name="unit", argv=unit)
    expression = " or ".join(keywords)
    argv = tuple(
        part.replace("{keywords}", expression) for part in shlex.split(commands.keyword)
    )
    return TestScope(name="keyword", argv=argv, fallback=unit)


def run_test_scope(
    runner: CommandRunner,
    scope: TestScope,
    *,
    cwd: Path,
    timeout_seconds: float | None,
) -> CommandResult:
    """Run ``scope``; a keyword selection that collects nothing falls back to the unit suite."""

    result = runner.run(scope.argv, cwd=cwd, timeout_seconds=timeout_seconds)
    if result.exit_code == _NO_TESTS_COLLECTED and scope.fallback is not None:
        return runner.run(scope.fallback, cwd=cwd, timeout_seconds=timeout_seconds)
    return result


@dataclass(slots=True)
class GateContext:
    """Inputs every gate sees for one validation run."""

    item: WorkItem
    outcome: WorkerOutcome
    workspace: Path
    extras: dict[str, object] = field(default_factory=dict)


class Gate(Protocol):
    name: str

    def evaluate(self, context: GateContext) -> GateOutcome: ...


class FunctionalTestGate:
    name = "functional-tests"

    def __init__(self, runner: CommandRunner, commands: TestCommands | None = None) -> None:
        self._runner = runner
        self._commands = commands if commands is not None else TestCommands()

    def evaluate(self, context: GateContext) -> GateOutcome:
        scope = select_test_scope(context.item, self._commands)
        result = run_test_scope(
            self._runner,
            scope,
            cwd=context.workspace,
            timeout_seconds=self._commands.timeout_seconds,
        )
        if result.succeeded:
            return GateOutcome(gate=self.name, passed=True, details=f"scope={scope.name}")
        return GateOutcome(
            gate=self.name,
            passed=False,
            reason=GateReason.TESTS_FAILED,
            details=result.describe(),
        )


class IntegrationGate:
    """Declared blockers must be closed; an optional command runs in the workspace."""

    name = "integration-check"

    def __init__(
        self,
        store: DependencyStore,
        runner: CommandRunner,
        *,
        command: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._argv = tuple(shlex.split(command)) if command else ()
        self._timeout_seconds = timeout_seconds

    def evaluate(self, context: GateContext) -> GateOutcome:
        problems: list[str] = []
        for blocker_id in context.item.blocked_by:
            blocker = self._store.show(blocker_id)
            if blocker.status is not WorkItemStatus.CLOSED:
                problems.append(f"blocker {blocker_id} is {blocker.status.value}")
        if self._argv:
            result = self._runner.run(
                self._argv, cwd=context.workspace, timeout_seconds=self._timeout_seconds
            )
            if not result.succeeded:
                problems.append(result.describe())
        if not problems:
            return GateOutcome(gate=self.name, passed=True)
        return GateOutcome(
            gate=self.name,
            passed=False,
            reason=GateReason.INTEGRATION_SOFT,
            details="\n".join(problems),
        )


class ConflictGate:
    """Trial-merge the worker branch into the baseline without committing."""

    name = "conflict-detection"

    def __init__(self, git_engine: GitEngine) -> None:
        self._git_engine = git_engine

    def evaluate(self, context: GateContext) -> GateOutcome:
        branch = context.outcome.branch
        if not branch or not self._git_engine.branch_exists(branch):
            return GateOutcome(gate=self.name, passed=True, details="no work branch to merge")
        report = self._git_engine.trial_merge(branch)
        if report is None:
            return GateOutcome(gate=self.name, passed=True)
        return GateOutcome(
            gate=self.name,
            passed=False,
            reason=GateReason.CONFLICT,
            details=report.summary(),
            conflict=report,
        )


class RegressionGate:
    """Re-run the narrow scope of one uniformly sampled, previously closed item."""

    name = "regression-sample"

    def __init__(
        self,
        store: DependencyStore,
        runner: CommandRunner,
        commands: TestCommands | None = None,
        *,
        seed: int | None = None,
        rng: random.Random | None = None,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._commands = commands if commands is not None else TestCommands()
        self._rng = rng if rng is not None else random.Random(seed)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def evaluate(self, context: GateContext) -> GateOutcome:
        closed = [
            item
            for item in self._store.list_items(status=WorkItemStatus.CLOSED)
            if item.id != context.item.id
        ]
        if not closed:
            return GateOutcome(gate=self.name, passed=True, details="no closed item to sample")
        closed.sort(key=lambda item: (item.sequence, item.id))
        sampled = self._rng.choice(closed)
        scope = select_test_scope(sampled, self._commands)
        self._logger.debug(
            "regression_sampled",
            item_id=context.item.id,
            sampled_item_id=sampled.id,
            scope=scope.name,
        )
        result = run_test_scope(
            self._runner,
            scope,
            cwd=context.workspace,
            timeout_seconds=self._commands.timeout_seconds,
        )
        if result.succeeded:
            return GateOutcome(gate=self.name, passed=True, details=f"sampled={sampled.id}")
        return GateOutcome(
            gate=self.name,
            passed=False,
            reason=GateReason.REGRESSION,
            details=f"sampled {sampled.id} ({sampled.title}) broke\n{result.describe()}",
            reopened=(sampled.id,),
        )


class QualityGate:
    name = "quality-checks"

    def __init__(
        self,
        runner: CommandRunner,
        commands: Sequence[str] = (),
        *,
        blocking: bool = False,
        timeout_seconds: float | None = None,
    ) -> None:
        self._runner = runner
        self._commands = tuple(tuple(shlex.split(command)) for command in commands if command)
        self._blocking = blocking
        self._timeout_seconds = timeout_seconds

    def evaluate(self, context: GateContext) -> GateOutcome:
        failures = [
            result.describe()
            for result in (
                self._runner.run(argv, cwd=context.workspace, timeout_seconds=self._timeout_seconds)
                for argv in self._commands
            )
            if not result.succeeded
        ]
        if not failures:
            return GateOutcome(gate=self.name, passed=True)
        return GateOutcome(
            gate=self.name,
            passed=False,
            reason=GateReason.QUALITY_FAILED if self._blocking else GateReason.QUALITY_SOFT,
            details="\n\n".join(failures),
        )


def _elapsed_ms(started_ns: int) -> int:
    return max(0, (time.monotonic_ns() - started_ns) // 1_000_000)


__all__ = [
    "CommandResult",
    "CommandRunner",
    "ConflictGate",
    "FunctionalTestGate",
    "Gate",
    "GateContext",
    "GateOutcome",
    "IntegrationGate",
    "LocalCommandRunner",
    "QualityGate",
    "RegressionGate",
    "TestCommands",
    "TestScope",
    "run_test_scope",
    "select_test_scope",
    "title_keywords",
]
