"""
Worker launchers and non-blocking task handles.

The dispatch loop never waits on a worker: it starts one through a launcher and later
polls the returned :class:`TaskHandle`. ``poll()`` returns ``None`` while the worker is
running and a :class:`WorkerOutcome` once it has finished.

- :class:`CommandWorkerLauncher` runs an external agent command per item.
- :class:`CallableWorkerLauncher` runs a Python callable on a thread pool.
"""

from __future__ import annotations

import os
import shlex
import subprocess
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

if TYPE_CHECKING:
    from autodispatch.domain.models import WorkItem
    from autodispatch.integration_plane.git_engine import GitEngine
    from autodispatch.synthesis_plane.context_assembler import WorkerContext

_OUTPUT_TAIL_BYTES = 64 * 1024


class WorkerLaunchError(RuntimeError):
    """Raised when a worker cannot be started."""


@dataclass(frozen=True, slots=True)
class WorkerOutcome:
    """What a finished worker reports back."""

    success: bool
    output: str = ""
    branch: str | None = None
    workspace: Path | None = None
    exit_code: int | None = None


@runtime_checkable
class TaskHandle(Protocol):
    item_id: str

    def poll(self) -> WorkerOutcome | None: ...

    def close(self) -> None: ...


@runtime_checkable
class WorkerLauncher(Protocol):
    def launch(self, item: WorkItem, context: WorkerContext) -> TaskHandle: ...


class ProcessTaskHandle:
    """Handle over one ``subprocess.Popen`` worker whose output goes to a log file."""

    def __init__(
        self,
        item_id: str,
        process: subprocess.Popen[bytes],
        *,
        log_path: Path,
        log_handle: IO[bytes],
        branch: str,
        workspace: Path,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.item_id = item_id
        self.log_path = log_path
        self._process = process
        self._log_handle = log_handle
        self._branch = branch
        self._workspace = workspace
        self._on_close = on_close
        self._outcome: WorkerOutcome | None = None

    @property
    def pid(self) -> int:
        return self._process.pid

    def poll(self) -> WorkerOutcome | None:
        if self._outcome is not None:
            return self._outcome
        returncode = self._process.poll()
        if returncode is None:
            return None
        self._log_handle.close()
        self._outcome = WorkerOutcome(
            success=returncode == 0,
            output=_read_tail(self.log_path),
            branch=self._branch,
            workspace=self._workspace,
            exit_code=returncode,
        )
        return self._outcome

    def close(self) -> None:
        if not self._log_handle.closed:
            self._log_handle.close()
        if self._on_close is not None:
            callback, self._on_close = self._on_close, None
            callback()


class CommandWorkerLauncher:
    """Start an external agent command for each dispatched item.

    ``command`` is a shell-style template; ``{item_id}``, ``{attempt}``, ``{branch}``,
    ``{context_file}`` and ``{workspace}`` are substituted after splitting. The same
    values are exported as ``AUTODISPATCH_*`` environment variables. With a
    ``git_engine`` each attempt gets its own branch and worktree under
    ``workspace_root``; otherwise the worker runs in ``cwd``.
    """

    def __init__(
        self,
        command: str,
        *,
        log_dir: Path | str,
        cwd: Path | str | None = None,
        git_engine: GitEngine | None = None,
        workspace_root: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        if not command.strip():
            raise ValueError("command must be non-empty")
        self._command = command
        self._log_dir = Path(log_dir).expanduser().resolve()
        self._cwd = Path(cwd).resolve() if cwd is not None else Path.cwd()
        self._git_engine = git_engine
        self._workspace_root = (
            Path(workspace_root).expanduser().resolve()
            if workspace_root is not None
            else self._log_dir.parent / "worktrees"
        )
        self._env = dict(env or {})
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def launch(self, item: WorkItem, context: WorkerContext) -> ProcessTaskHandle:
        attempt_dir = self._log_dir / item.id
        context_file = context.write(attempt_dir / f"attempt-{context.attempt}.context.md")
        log_path = attempt_dir / f"attempt-{context.attempt}.log"

        workspace = self._cwd
        if self._git_engine is not None:
            workspace = self._workspace_root / item.id / context.branch.rsplit("/", 1)[-1]
        values = {
            "item_id": item.id,
            "attempt": str(context.attempt),
            "branch": context.branch,
            "context_file": str(context_file),
            "workspace": str(workspace),
        }
        try:
            argv = [part.format(**values) for part in shlex.split(self._command)]
        except (KeyError, ValueError) as exc:
            raise WorkerLaunchError(f"invalid worker command template: {exc}") from exc

        on_close: Callable[[], None] | None = None
        if self._git_engine is not None:
            self._git_engine.prepare_work_branch(context.branch, workspace)
            engine = self._git_engine

            def _cleanup(path: Path = workspace) -> None:
                engine.remove_worktree(path)

            on_close = _cleanup

        env = os.environ.copy()
        env.update(self._env)
        env.update(
            {
                "AUTODISPATCH_ITEM_ID": item.id,
                "AUTODISPATCH_ATTEMPT": str(context.attempt),
                "AUTODISPATCH_BRANCH": context.branch,
                "AUTODISPATCH_CONTEXT_FILE": str(context_file),
                "AUTODISPATCH_WORKSPACE": str(workspace),
                "AUTODISPATCH_WORKER_KIND": context.worker_kind.value,
            }
        )

        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_handle = log_path.open("wb")
        try:
            process = subprocess.Popen(
                argv,
                cwd=workspace,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            log_handle.close()
            if on_close is not None:
                on_close()
            raise WorkerLaunchError(f"failed to start worker for {item.id}: {exc}") from exc

        self._logger.info(
            "worker_started",
            item_id=item.id,
            attempt=context.attempt,
            pid=process.pid,
            branch=context.branch,
            log_path=str(log_path),
        )
        return ProcessTaskHandle(
            item.id,
            process,
            log_path=log_path,
            log_handle=log_handle,
            branch=context.branch,
            workspace=workspace,
            on_close=on_close,
        )


WorkerCallable = Callable[["WorkItem", "WorkerContext"], WorkerOutcome]


class FutureTaskHandle:
    """Handle over a callable submitted to a thread pool."""

    def __init__(self, item_id: str, future: Future[WorkerOutcome], *, branch: str) -> None:
        self.item_id = item_id
        self._future = future
        self._branch = branch

    def poll(self) -> WorkerOutcome | None:
        if not self._future.done():
            return None
        exc = self._future.exception()
        if exc is not None:
            return WorkerOutcome(
                success=False,
                output=f"{type(exc).__name__}: {exc}",
                branch=self._branch,
            )
        return self._future.result()

    def close(self) -> None:
        return None


class CallableWorkerLauncher:
    """Run a Python callable per item on a ``ThreadPoolExecutor``."""

    def __init__(self, worker: WorkerCallable, *, max_workers: int = 5) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._worker = worker
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="autodispatch-worker"
        )

    def launch(self, item: WorkItem, context: WorkerContext) -> FutureTaskHandle:
        future = self._executor.submit(self._worker, item, context)
        return FutureTaskHandle(item.id, future, branch=context.branch)

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _read_tail(path: Path) -> str:
    try:
        with path.open("rb") as handle:
            handle.seek(0, os.SEEK_END)
            size = handle.tell()
            handle.seek(max(0, size - _OUTPUT_TAIL_BYTES))
            return handle.read().decode("utf-8", errors="replace")
    except OSError:
        return ""


__all__ = [
    "CallableWorkerLauncher",
    "CommandWorkerLauncher",
    "FutureTaskHandle",
    "ProcessTaskHandle",
    "TaskHandle",
    "WorkerCallable",
    "WorkerLaunchError",
    "WorkerLauncher",
    "WorkerOutcome",
]
