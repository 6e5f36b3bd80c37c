"""Deterministic Git helpers for trial merges and baseline integration."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from autodispatch.constants import DEFAULT_BASELINE_BRANCH, WORK_ITEM_TRAILER
from autodispatch.integration_plane.conflict_resolution import (
    ConflictRegion,
    ConflictReport,
    categorize_conflict,
    parse_conflict_markers,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

_TRAILER_RE = re.compile(rf"^{WORK_ITEM_TRAILER}:\s*(\S+)\s*$", re.M)
_LOG_RECORD_SEPARATOR = "\x1e"


class GitEngineError(RuntimeError):
    """Base error for git engine failures."""


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for deterministic git wrapper behavior."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True, slots=True)
class RepoInitResult:
    """Result for repository open/initialization."""

    repo_path: Path
    created: bool
    baseline_branch: str


class GitEngine:
    """Wrapper around the git CLI owning every touch of the shared baseline."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        baseline_branch: str = DEFAULT_BASELINE_BRANCH,
        env_overrides: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.baseline_branch = baseline_branch
        self._env_overrides = dict(env_overrides or {})
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def init_or_open(self) -> RepoInitResult:
        """Open a repository or initialize it, always ensuring the baseline branch."""
        self.repo_path.mkdir(parents=True, exist_ok=True)
        created = not (self.repo_path / ".git").exists()

        if created:
            self._run_git(["init", "--initial-branch", self.baseline_branch], cwd=self.repo_path)
        else:
            self._run_git(["rev-parse", "--git-dir"], cwd=self.repo_path)

        self._ensure_local_identity()

        if self._run_git(["rev-parse", "--verify", "HEAD"], check=False).returncode != 0:
            self._run_git(["symbolic-ref", "HEAD", f"refs/heads/{self.baseline_branch}"])
            self._run_git(["commit", "--allow-empty", "-m", "Initialize repository"])

        if not self._branch_exists(self.baseline_branch):
            self._run_git(["branch", self.baseline_branch, "HEAD"])

        return RepoInitResult(
            repo_path=self.repo_path,
            created=created,
            baseline_branch=self.baseline_branch,
        )

    def head(self, ref: str | None = None) -> str:
        return self._rev_parse(ref if ref is not None else self.baseline_branch)

    def branch_exists(self, branch: str) -> bool:
        return self._branch_exists(branch)

    def prepare_work_branch(self, branch: str, worktree_path: Path | str) -> Path:
        """Create ``branch`` from the baseline if missing and check it out at ``worktree_path``."""
        self._require_branch(self.baseline_branch)
        if branch == self.baseline_branch:
            raise GitEngineError(f"refusing to hand the baseline branch to a worker: {branch}")
        if not self._branch_exists(branch):
            self._run_git(["branch", branch, self.baseline_branch])

        path = Path(worktree_path).resolve()
        existing = self._existing_worktree_for_branch(branch)
        if existing is not None:
            if existing == path:
                return path
            self.remove_worktree(existing)
        if path.exists():
            self._run_git(["worktree", "remove", "--force", str(path)], check=False)
            shutil.rmtree(path, ignore_errors=True)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._run_git(["worktree", "add", "--force", str(path), branch])
        self._logger.debug("worktree_prepared", branch=branch, path=str(path))
        return path

    def remove_worktree(self, worktree_path: Path | str) -> None:
        """Remove a worktree path and prune stale entries."""
        path = Path(worktree_path)
        self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        self._run_git(["worktree", "prune"], check=False)

    def trial_merge(self, branch: str) -> ConflictReport | None:
        """Merge ``branch`` into the baseline without committing; ``None`` when clean.

        The merge runs in a throw-away detached worktree, so neither the baseline ref nor
        any checked-out working tree (including uncommitted edits) is touched.
        """
        self._require_branch(branch)
        self._require_branch(self.baseline_branch)
        baseline_before = self._rev_parse(self.baseline_branch)

        report: ConflictReport | None = None
        with self._detached_worktree(baseline_before) as temp_worktree:
            merge_result = self._run_git(
                ["merge", "--no-commit", "--no-ff", branch],
                cwd=temp_worktree,
                check=False,
            )
            if merge_result.returncode != 0:
                report = self._collect_conflicts(branch, temp_worktree, merge_result)
            self._run_git(["merge", "--abort"], cwd=temp_worktree, check=False)
            self._run_git(["reset", "--hard", "HEAD"], cwd=temp_worktree, check=False)

        if self._rev_parse(self.baseline_branch) != baseline_before:
            raise GitEngineError("trial merge modified the baseline branch unexpectedly")

        if report is not None:
            report = report.with_sources(self.find_conflict_sources(report.paths, branch))
            self._logger.info(
                "trial_merge_conflict",
                branch=branch,
                paths=list(report.paths),
                sources=list(report.sources),
            )
        return report

    def integrate(self, branch: str, *, item_id: str, title: str) -> str:
        """Merge ``branch`` into the baseline with a ``Work-Item:`` trailer."""
        self._require_branch(branch)
        self._require_branch(self.baseline_branch)
        subject = " ".join(title.split()) or f"Integrate {item_id}"
        trailer = f"{WORK_ITEM_TRAILER}: {item_id}"

        checked_out = self._existing_worktree_for_branch(self.baseline_branch)
        if checked_out is not None:
            with self._stashed(checked_out):
                self._merge_or_abort(branch, checked_out, subject=subject, trailer=trailer)
        else:
            with self._branch_worktree(self.baseline_branch) as temp_worktree:
                self._merge_or_abort(branch, temp_worktree, subject=subject, trailer=trailer)

        new_head = self._rev_parse(self.baseline_branch)
        self._logger.info("branch_integrated", branch=branch, item_id=item_id, head=new_head)
        return new_head

    def find_conflict_sources(self, paths: Sequence[str], branch: str) -> tuple[str, ...]:
        """Item ids from ``Work-Item:`` trailers of baseline commits touching ``paths``.

        Only commits integrated since ``branch`` diverged from the baseline are
        considered; most recent first, de-duplicated.
        """
        if not paths:
            return ()
        merge_base = self._run_git(
            ["merge-base", self.baseline_branch, branch], check=False
        ).stdout.strip()
        revision = f"{merge_base}..{self.baseline_branch}" if merge_base else self.baseline_branch
        output = self._run_git(
            [
                "log",
                "--first-parent",
                "--diff-merges=first-parent",
                "--name-only",
                f"--format={_LOG_RECORD_SEPARATOR}%H%x00%B%x00",
                revision,
            ],
            check=False,
        ).stdout

        wanted = set(paths)
        sources: list[str] = []
        for record in output.split(_LOG_RECORD_SEPARATOR):
            _, _, rest = record.partition("\x00")
            body, _, names = rest.partition("\x00")
            touched = {line.strip() for line in names.splitlines() if line.strip()}
            if not touched & wanted:
                continue
            for match in _TRAILER_RE.finditer(body):
                if match.group(1) not in sources:
                    sources.append(match.group(1))
        return tuple(sources)

    def _collect_conflicts(
        self, branch: str, worktree: Path, merge_result: CommandResult
    ) -> ConflictReport:
        conflict_output = self._run_git(
            ["diff", "--name-only", "--diff-filter=U"],
            cwd=worktree,
            check=False,
        ).stdout
        paths = [line.strip() for line in conflict_output.splitlines() if line.strip()]
        if not paths:
            raise GitCommandError(
                command=merge_result.command,
                returncode=merge_result.returncode,
                stdout=merge_result.stdout,
                stderr=merge_result.stderr,
            )

        regions: list[ConflictRegion] = []
        categories = {}
        for path in paths:
            file_path = worktree / path
            try:
                text = file_path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                text = ""
            path_regions = parse_conflict_markers(path, text)
            regions.extend(path_regions)
            categories[path] = categorize_conflict(path, path_regions)
        return ConflictReport(
            branch=branch,
            paths=tuple(paths),
            regions=tuple(regions),
            categories=categories,
        )

    def _merge_or_abort(self, branch: str, worktree: Path, *, subject: str, trailer: str) -> None:
        result = self._run_git(
            ["merge", "--no-ff", "--no-edit", "-m", subject, "-m", trailer, branch],
            cwd=worktree,
            check=False,
        )
        if result.returncode != 0:
            self._run_git(["merge", "--abort"], cwd=worktree, check=False)
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

    @contextmanager
    def _stashed(self, worktree: Path) -> Iterator[None]:
        dirty = bool(
            self._run_git(["status", "--porcelain"], cwd=worktree, check=False).stdout.strip()
        )
        if dirty:
            self._run_git(
                ["stash", "push", "--include-untracked", "-m", "autodispatch-integrate"],
                cwd=worktree,
            )
        try:
            yield
        finally:
            if dirty:
                popped = self._run_git(["stash", "pop", "--index"], cwd=worktree, check=False)
                if popped.returncode != 0:
                    raise GitEngineError(
                        "failed to restore uncommitted baseline changes; "
                        f"they remain in the stash: {popped.stderr.strip()}"
                    )

    @contextmanager
    def _detached_worktree(self, commit: str) -> Iterator[Path]:
        temp_path = Path(tempfile.mkdtemp(prefix="autodispatch-trial-"))
        added = False
        try:
            self._run_git(["worktree", "add", "--force", "--detach", str(temp_path), commit])
            added = True
            yield temp_path
        finally:
            if added:
                self._run_git(["worktree", "remove", "--force", str(temp_path)], check=False)
                self._run_git(["worktree", "prune"], check=False)
            shutil.rmtree(temp_path, ignore_errors=True)

    @contextmanager
    def _branch_worktree(self, branch: str) -> Iterator[Path]:
        temp_path = Path(tempfile.mkdtemp(prefix="autodispatch-integrate-"))
        added = False
        try:
            self._run_git(["worktree", "add", "--force", str(temp_path), branch])
            added = True
            yield temp_path
        finally:
            if added:
                self._run_git(["worktree", "remove", "--force", str(temp_path)], check=False)
                self._run_git(["worktree", "prune"], check=False)
            shutil.rmtree(temp_path, ignore_errors=True)

    def _ensure_local_identity(self) -> None:
        if self._run_git(["config", "--local", "--get", "user.name"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.name", "autodispatch"])
        if self._run_git(["config", "--local", "--get", "user.email"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.email", "autodispatch@example.invalid"])

    def _require_branch(self, branch: str) -> None:
        if not self._branch_exists(branch):
            raise GitEngineError(f"Branch does not exist: {branch}")

    def _branch_exists(self, branch: str) -> bool:
        ref = f"refs/heads/{branch}"
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    def _rev_parse(self, ref: str) -> str:
        return self._run_git(["rev-parse", ref]).stdout.strip()

    def _existing_worktree_for_branch(self, branch: str) -> Path | None:
        output = self._run_git(["worktree", "list", "--porcelain"], check=False).stdout
        branch_ref = f"refs/heads/{branch}"

        current_worktree: Path | None = None
        for line in [*output.splitlines(), ""]:
            if not line:
                current_worktree = None
                continue
            key, _, value = line.partition(" ")
            value = value.strip()
            if key == "worktree":
                current_worktree = Path(value).resolve(strict=False)
            elif key == "branch" and value == branch_ref and current_worktree is not None:
                return current_worktree
        return None

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (cwd if cwd is not None else self.repo_path).resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        completed = subprocess.run(
            command,
            cwd=run_cwd,
            env=env,
            text=True,
            capture_output=True,
            check=False,
        )

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


__all__ = [
    "CommandResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "RepoInitResult",
]
