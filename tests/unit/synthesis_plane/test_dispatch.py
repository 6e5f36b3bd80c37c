"""
Unit tests for worker launchers and task handles.

Covers the thread-pool launcher used for in-process workers and the command launcher
that starts an external agent per item, with and without per-attempt git worktrees.
"""

from __future__ import annotations

import time
from pathlib import Path

import pytest

from autodispatch.domain.models import WorkItem
from autodispatch.integration_plane.git_engine import GitEngine
from autodispatch.synthesis_plane.context_assembler import ContextAssembler, WorkerContext
from autodispatch.synthesis_plane.dispatch import (
    CallableWorkerLauncher,
    CommandWorkerLauncher,
    ProcessTaskHandle,
    TaskHandle,
    WorkerLaunchError,
    WorkerOutcome,
)

pytestmark = pytest.mark.unit


def _item_and_context(item_id: str = "ad-1") -> tuple[WorkItem, WorkerContext]:
    item = WorkItem(id=item_id, title="Implement CSV export")
    return item, ContextAssembler().assemble(item)


def _wait(handle: TaskHandle, timeout: float = 10.0) -> WorkerOutcome:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        outcome = handle.poll()
        if outcome is not None:
            return outcome
        time.sleep(0.02)
    raise AssertionError(f"worker for {handle.item_id} did not finish")


def test_callable_launcher_reports_worker_outcome() -> None:
    def worker(item: WorkItem, context: WorkerContext) -> WorkerOutcome:
        return WorkerOutcome(success=True, output=f"{item.id}@{context.attempt}")

    launcher = CallableWorkerLauncher(worker, max_workers=2)
    item, context = _item_and_context()
    handle = launcher.launch(item, context)
    launcher.shutdown()

    outcome = _wait(handle)
    assert outcome.success
    assert outcome.output == "ad-1@1"
    assert isinstance(handle, TaskHandle)


def test_callable_launcher_turns_exceptions_into_failures() -> None:
    def worker(item: WorkItem, context: WorkerContext) -> WorkerOutcome:
        raise ValueError("boom")

    launcher = CallableWorkerLauncher(worker)
    item, context = _item_and_context()
    handle = launcher.launch(item, context)
    launcher.shutdown()

    outcome = _wait(handle)
    assert not outcome.success
    assert outcome.output == "ValueError: boom"
    assert outcome.branch == "work/ad-1/attempt-1"


def test_callable_launcher_validates_pool_size() -> None:
    with pytest.raises(ValueError):
        CallableWorkerLauncher(lambda item, context: WorkerOutcome(success=True), max_workers=0)


def test_command_launcher_substitutes_placeholders_and_env(tmp_path: Path) -> None:
    launcher = CommandWorkerLauncher(
        'sh -c "echo started {item_id} $AUTODISPATCH_WORKER_KIND $AUTODISPATCH_ATTEMPT"',
        log_dir=tmp_path / "logs",
        cwd=tmp_path,
    )
    item, context = _item_and_context()

    handle = launcher.launch(item, context)
    outcome = _wait(handle)
    handle.close()

    assert isinstance(handle, ProcessTaskHandle)
    assert outcome.success
    assert outcome.exit_code == 0
    assert outcome.output.strip() == "started ad-1 feature 1"
    assert outcome.workspace == tmp_path.resolve()
    assert handle.log_path == (tmp_path / "logs" / "ad-1" / "attempt-1.log").resolve()
    context_file = tmp_path / "logs" / "ad-1" / "attempt-1.context.md"
    assert context_file.read_text(encoding="utf-8") == context.text


def test_command_launcher_reports_nonzero_exit(tmp_path: Path) -> None:
    launcher = CommandWorkerLauncher('sh -c "echo nope; exit 4"', log_dir=tmp_path, cwd=tmp_path)
    item, context = _item_and_context()
    outcome = _wait(launcher.launch(item, context))
    assert not outcome.success
    assert outcome.exit_code == 4
    assert "nope" in outcome.output


def test_command_launcher_launch_errors(tmp_path: Path) -> None:
    item, context = _item_and_context()
    with pytest.raises(WorkerLaunchError, match="failed to start worker"):
        CommandWorkerLauncher("no-such-agent-binary-xyz", log_dir=tmp_path).launch(item, context)
    with pytest.raises(WorkerLaunchError, match="invalid worker command template"):
        CommandWorkerLauncher("agent {unknown}", log_dir=tmp_path).launch(item, context)
    with pytest.raises(ValueError):
        CommandWorkerLauncher("   ", log_dir=tmp_path)


def test_command_launcher_uses_per_attempt_worktree(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    engine = GitEngine(tmp_path / "repo")
    engine.init_or_open()
    launcher = CommandWorkerLauncher(
        "git rev-parse --abbrev-ref HEAD",
        log_dir=tmp_path / "state" / "workers",
        git_engine=engine,
    )
    item, context = _item_and_context("ad-9")

    handle = launcher.launch(item, context)
    outcome = _wait(handle)
    workspace = tmp_path / "state" / "worktrees" / "ad-9" / "attempt-1"

    assert outcome.success
    assert outcome.output.strip() == "work/ad-9/attempt-1"
    assert outcome.workspace == workspace.resolve()
    assert workspace.exists()

    handle.close()
    assert not workspace.exists()
    assert engine.branch_exists("work/ad-9/attempt-1")


def test_invalid_template_leaves_no_worktree_behind(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    engine = GitEngine(tmp_path / "repo")
    engine.init_or_open()
    launcher = CommandWorkerLauncher(
        "agent --target {unknown}",
        log_dir=tmp_path / "state" / "workers",
        git_engine=engine,
    )
    item, context = _item_and_context("ad-8")

    with pytest.raises(WorkerLaunchError, match="invalid worker command template"):
        launcher.launch(item, context)

    assert not (tmp_path / "state" / "worktrees" / "ad-8").exists()
    assert not engine.branch_exists("work/ad-8/attempt-1")
