"""
Unit tests for the git engine over local temporary repositories.

Purpose
- Trial merges never move the baseline or touch any checked-out tree.
- Integration leaves a traceable ``Work-Item:`` trailer that conflict attribution reads.
"""

from __future__ import annotations

import os
import subprocess
from typing import TYPE_CHECKING

import pytest

from autodispatch.integration_plane.conflict_resolution import ConflictCategory
from autodispatch.integration_plane.git_engine import (
    GitCommandError,
    GitEngine,
    GitEngineError,
)

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.unit


def run_git(cwd: Path, *args: str) -> str:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if completed.returncode != 0:
        raise AssertionError(f"git {' '.join(args)} failed:\n{completed.stderr}")
    return completed.stdout


@pytest.fixture(autouse=True)
def isolated_git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    xdg = tmp_path / "xdg"
    home.mkdir()
    xdg.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")


def init_engine(tmp_path: Path) -> tuple[GitEngine, Path]:
    repo = tmp_path / "repo"
    engine = GitEngine(repo)
    engine.init_or_open()
    return engine, repo


def commit_file(worktree: Path, rel_path: str, content: str, message: str) -> str:
    path = worktree / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    run_git(worktree, "add", "--all")
    run_git(worktree, "commit", "-m", message)
    return run_git(worktree, "rev-parse", "HEAD").strip()


def work_branch(engine: GitEngine, tmp_path: Path, name: str) -> Path:
    return engine.prepare_work_branch(name, tmp_path / "worktrees" / name.replace("/", "-"))


def test_init_creates_baseline_with_local_identity(tmp_path: Path) -> None:
    engine, repo = init_engine(tmp_path)
    assert engine.branch_exists("main")
    assert run_git(repo, "config", "--local", "user.name").strip() == "autodispatch"
    assert not engine.init_or_open().created


def test_prepare_work_branch_refuses_baseline(tmp_path: Path) -> None:
    engine, _ = init_engine(tmp_path)
    with pytest.raises(GitEngineError, match="baseline"):
        engine.prepare_work_branch("main", tmp_path / "wt")


def test_prepare_work_branch_is_idempotent(tmp_path: Path) -> None:
    engine, _ = init_engine(tmp_path)
    first = work_branch(engine, tmp_path, "work/ad-1/attempt-1")
    second = work_branch(engine, tmp_path, "work/ad-1/attempt-1")
    assert first == second
    assert run_git(first, "rev-parse", "--abbrev-ref", "HEAD").strip() == "work/ad-1/attempt-1"


def test_clean_trial_merge_leaves_baseline_untouched(tmp_path: Path) -> None:
    engine, repo = init_engine(tmp_path)
    commit_file(repo, "README.md", "hello\n", "base")
    worktree = work_branch(engine, tmp_path, "work/ad-1/attempt-1")
    commit_file(worktree, "feature.py", "x = 1\n", "feature")
    (repo / "scratch.txt").write_text("uncommitted\n", encoding="utf-8")
    before = engine.head()
    status_before = run_git(repo, "status", "--porcelain")

    assert engine.trial_merge("work/ad-1/attempt-1") is None

    assert engine.head() == before
    assert run_git(repo, "status", "--porcelain") == status_before
    assert not (repo / "feature.py").exists()


def test_conflicting_trial_merge_reports_regions_and_sources(tmp_path: Path) -> None:
    engine, repo = init_engine(tmp_path)
    commit_file(repo, "src/settings.py", "TIMEOUT = 10\n", "base")
    first = work_branch(engine, tmp_path, "work/ad-1/attempt-1")
    second = work_branch(engine, tmp_path, "work/ad-2/attempt-1")
    commit_file(first, "src/settings.py", "TIMEOUT = 30\n", "tune timeout")
    commit_file(second, "src/settings.py", "TIMEOUT = 45\n", "other timeout")
    engine.integrate("work/ad-1/attempt-1", item_id="ad-1", title="Tune timeout")
    before = engine.head()

    report = engine.trial_merge("work/ad-2/attempt-1")

    assert report is not None
    assert report.paths == ("src/settings.py",)
    assert report.sources == ("ad-1",)
    assert report.categories["src/settings.py"] is ConflictCategory.GENERIC_CODE
    assert report.regions[0].ours == "TIMEOUT = 30\n"
    assert report.regions[0].theirs == "TIMEOUT = 45\n"
    assert engine.head() == before
    assert (repo / "src/settings.py").read_text(encoding="utf-8") == "TIMEOUT = 30\n"


def test_integrate_adds_work_item_trailer(tmp_path: Path) -> None:
    engine, repo = init_engine(tmp_path)
    worktree = work_branch(engine, tmp_path, "work/ad-7/attempt-2")
    commit_file(worktree, "docs/guide.md", "guide\n", "write guide")

    head = engine.integrate("work/ad-7/attempt-2", item_id="ad-7", title="Write   the guide")

    message = run_git(repo, "log", "-1", "--format=%B", head)
    assert message.startswith("Write the guide")
    assert "Work-Item: ad-7" in message
    assert run_git(repo, "rev-list", "--parents", "-n", "1", head).count(" ") == 2
    assert engine.find_conflict_sources(["docs/guide.md"], "work/ad-7/attempt-2") == ("ad-7",)


def test_integrate_preserves_uncommitted_baseline_edits(tmp_path: Path) -> None:
    engine, repo = init_engine(tmp_path)
    commit_file(repo, "notes.txt", "one\n", "base")
    worktree = work_branch(engine, tmp_path, "work/ad-1/attempt-1")
    commit_file(worktree, "other.txt", "two\n", "other")
    (repo / "notes.txt").write_text("edited locally\n", encoding="utf-8")

    engine.integrate("work/ad-1/attempt-1", item_id="ad-1", title="Add other")

    assert (repo / "notes.txt").read_text(encoding="utf-8") == "edited locally\n"
    assert (repo / "other.txt").exists()


def test_failed_integration_aborts_and_keeps_baseline(tmp_path: Path) -> None:
    engine, repo = init_engine(tmp_path)
    commit_file(repo, "value.txt", "base\n", "base")
    worktree = work_branch(engine, tmp_path, "work/ad-1/attempt-1")
    commit_file(worktree, "value.txt", "branch\n", "branch edit")
    commit_file(repo, "value.txt", "baseline\n", "baseline edit")
    before = engine.head()

    with pytest.raises(GitCommandError):
        engine.integrate("work/ad-1/attempt-1", item_id="ad-1", title="Edit value")

    assert engine.head() == before
    assert run_git(repo, "status", "--porcelain") == ""


def test_find_conflict_sources_reads_trailers_newest_first(tmp_path: Path) -> None:
    engine, repo = init_engine(tmp_path)
    commit_file(repo, "shared.py", "a = 1\n", "base")
    work_branch(engine, tmp_path, "work/ad-9/attempt-1")
    for item_id in ("ad-1", "ad-2"):
        branch = f"work/{item_id}/attempt-1"
        worktree = work_branch(engine, tmp_path, branch)
        commit_file(worktree, "shared.py", f"a = '{item_id}'\n", item_id)
        engine.integrate(branch, item_id=item_id, title=f"Change for {item_id}")

    sources = engine.find_conflict_sources(["shared.py"], "work/ad-9/attempt-1")

    assert sources == ("ad-2", "ad-1")
    assert engine.find_conflict_sources(["unrelated.py"], "work/ad-9/attempt-1") == ()
    assert engine.find_conflict_sources([], "work/ad-9/attempt-1") == ()


def test_unknown_branch_is_rejected(tmp_path: Path) -> None:
    engine, _ = init_engine(tmp_path)
    with pytest.raises(GitEngineError, match="does not exist"):
        engine.trial_merge("work/missing/attempt-1")
