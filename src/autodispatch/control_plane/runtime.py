"""Build a fully wired :class:`DispatchLoop` from an effective config mapping."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

import structlog

from autodispatch.config.schema import ConfigValidationError, ConfigValidationIssue
from autodispatch.control_plane.controller import DispatchLoop, DispatchSettings
from autodispatch.control_plane.locks import LockManager
from autodispatch.control_plane.retry import RetryPolicy
from autodispatch.control_plane.scheduler import Scheduler
from autodispatch.integration_plane.conflict_resolution import ConflictResolver
from autodispatch.integration_plane.git_engine import GitEngine
from autodispatch.knowledge_plane.graph_analyzer import (
    BeadsViewerAnalyzer,
    GraphAnalyzer,
    LocalGraphAnalyzer,
)
from autodispatch.knowledge_plane.learning_store import LearningStore
from autodispatch.persistence.beads_cli import BeadsCliStore
from autodispatch.persistence.dependency_store import DependencyStore, InMemoryDependencyStore
from autodispatch.synthesis_plane.context_assembler import ContextAssembler
from autodispatch.synthesis_plane.dispatch import (
    CommandWorkerLauncher,
    TaskHandle,
    WorkerLaunchError,
    WorkerLauncher,
)
from autodispatch.verification_plane.gates import (
    ConflictGate,
    FunctionalTestGate,
    Gate,
    IntegrationGate,
    LocalCommandRunner,
    QualityGate,
    RegressionGate,
    TestCommands,
)
from autodispatch.verification_plane.pipeline import ValidationPipeline

if TYPE_CHECKING:
    from autodispatch.domain.models import WorkItem
    from autodispatch.synthesis_plane.context_assembler import WorkerContext


@dataclass(frozen=True, slots=True)
class DispatchRuntime:
    """Every collaborator of one loop, kept together so commands can inspect them."""

    loop: DispatchLoop
    store: DependencyStore
    lock_manager: LockManager
    scheduler: Scheduler
    pipeline: ValidationPipeline
    launcher: WorkerLauncher
    analyzer: GraphAnalyzer | None
    learning_store: LearningStore | None
    git_engine: GitEngine | None
    max_cycles: int | None


def build_store(config: Mapping[str, object]) -> DependencyStore:
    collaborators = _section(config, "collaborators")
    if collaborators["dependency_store"] == "memory":
        return InMemoryDependencyStore()
    return BeadsCliStore(
        _path(config, "repo"),
        executable=str(collaborators["beads_executable"]),
        timeout_seconds=_float(collaborators, "command_timeout_seconds"),
    )


def build_analyzer(config: Mapping[str, object], store: DependencyStore) -> GraphAnalyzer | None:
    collaborators = _section(config, "collaborators")
    kind = collaborators["graph_analyzer"]
    if kind == "none":
        return None
    if kind == "beads-viewer":
        return BeadsViewerAnalyzer(
            _path(config, "repo"),
            executable=str(collaborators["viewer_executable"]),
            timeout_seconds=_float(collaborators, "command_timeout_seconds"),
        )
    return LocalGraphAnalyzer(store)


def build_learning_store(config: Mapping[str, object]) -> LearningStore | None:
    learning = _section(config, "learning")
    if not learning["enabled"]:
        return None
    store = LearningStore(
        _path(config, "learning_store"),
        window_seconds=_float(learning, "window_seconds"),
        trend_threshold=_int(learning, "trend_threshold"),
        top_k=_int(learning, "top_k"),
    )
    store.load()
    return store


def build_runtime(
    config: Mapping[str, object],
    *,
    store: DependencyStore | None = None,
    launcher: WorkerLauncher | None = None,
    require_worker: bool = True,
    logger: Any | None = None,
) -> DispatchRuntime:
    """Wire every collaborator from ``config``.

    ``store`` and ``launcher`` may be injected (embedding, tests); otherwise they are
    built from the ``collaborators`` and ``worker`` sections. Commands that never dispatch
    (recovery, planning) pass ``require_worker=False`` so an empty ``worker.command`` is
    accepted.
    """

    log = logger if logger is not None else structlog.get_logger(__name__)
    dispatch = _section(config, "dispatch")
    retry = _section(config, "retry")
    validation = _section(config, "validation")
    git_cfg = _section(config, "git")
    repo = _path(config, "repo")

    dependency_store = store if store is not None else build_store(config)
    analyzer = build_analyzer(config, dependency_store)
    learning_store = build_learning_store(config)

    git_engine: GitEngine | None = None
    if git_cfg["enabled"]:
        git_engine = GitEngine(repo, baseline_branch=str(git_cfg["baseline_branch"]))
        if require_worker:
            repo_state = git_engine.init_or_open()
            log.info(
                "repository_ready",
                repo_path=str(repo_state.repo_path),
                created=repo_state.created,
                baseline_branch=repo_state.baseline_branch,
            )

    max_attempts = _int(retry, "max_attempts")
    runner = LocalCommandRunner(
        default_timeout_seconds=_float(validation, "test_timeout_seconds")
    )
    commands = TestCommands(
        unit=str(validation["unit_command"]),
        integration=str(validation["integration_suite_command"]),
        full=str(validation["full_command"]),
        keyword=str(validation["keyword_command"]),
        timeout_seconds=_float(validation, "test_timeout_seconds"),
    )
    gates: list[Gate] = [
        FunctionalTestGate(runner, commands),
        IntegrationGate(
            dependency_store,
            runner,
            command=str(validation["integration_command"]) or None,
            timeout_seconds=commands.timeout_seconds,
        ),
    ]
    if git_engine is not None:
        gates.append(ConflictGate(git_engine))
    if validation["regression_sample"]:
        gates.append(
            RegressionGate(
                dependency_store,
                runner,
                commands,
                seed=_int(validation, "regression_seed"),
            )
        )
    gates.append(
        QualityGate(
            runner,
            cast(Sequence[str], validation["quality_commands"]),
            blocking=bool(validation["quality_blocking"]),
            timeout_seconds=commands.timeout_seconds,
        )
    )

    if launcher is None:
        launcher = _build_launcher(config, git_engine, required=require_worker)

    pipeline = ValidationPipeline(
        gates, store=dependency_store, learning_store=learning_store, default_workspace=repo
    )
    lock_manager = LockManager(_path(config, "lock_file"))
    scheduler = Scheduler(
        analyzer,
        excluded_labels=tuple(cast(Sequence[str], dispatch["excluded_labels"])),
    )
    loop = DispatchLoop(
        store=dependency_store,
        launcher=launcher,
        lock_manager=lock_manager,
        scheduler=scheduler,
        pipeline=pipeline,
        retry_policy=RetryPolicy(dependency_store, max_attempts=max_attempts),
        conflict_resolver=ConflictResolver(dependency_store, max_attempts=max_attempts),
        assembler=ContextAssembler(
            learning_store, branch_prefix=str(git_cfg["work_branch_prefix"])
        ),
        git_engine=git_engine,
        analyzer=analyzer,
        learning_store=learning_store,
        settings=DispatchSettings(
            slot_count=_int(dispatch, "slot_count"),
            heartbeat_seconds=_float(dispatch, "heartbeat_seconds"),
            item_timeout_seconds=_float(dispatch, "item_timeout_seconds"),
        ),
    )
    max_cycles = _int(dispatch, "max_cycles")
    log.debug(
        "runtime_built",
        repo=repo.as_posix(),
        gates=list(pipeline.gate_names),
        analyzer=type(analyzer).__name__ if analyzer is not None else None,
    )
    return DispatchRuntime(
        loop=loop,
        store=dependency_store,
        lock_manager=lock_manager,
        scheduler=scheduler,
        pipeline=pipeline,
        launcher=launcher,
        analyzer=analyzer,
        learning_store=learning_store,
        git_engine=git_engine,
        max_cycles=max_cycles or None,
    )


def _build_launcher(
    config: Mapping[str, object], git_engine: GitEngine | None, *, required: bool
) -> WorkerLauncher:
    command = str(_section(config, "worker")["command"])
    if not command and not required:
        return _UnconfiguredLauncher()
    if not command:
        raise ConfigValidationError(
            (ConfigValidationIssue("worker.command", "a worker command is required to run"),)
        )
    return CommandWorkerLauncher(
        command,
        log_dir=_path(config, "worker_log_dir"),
        cwd=_path(config, "repo"),
        git_engine=git_engine,
        workspace_root=_path(config, "worktree_root"),
    )


class _UnconfiguredLauncher:
    def launch(self, item: WorkItem, context: WorkerContext) -> TaskHandle:
        raise WorkerLaunchError(f"no worker command configured; cannot launch {item.id}")


def _section(config: Mapping[str, object], name: str) -> Mapping[str, object]:
    section = config.get(name)
    if not isinstance(section, Mapping):
        raise ConfigValidationError((ConfigValidationIssue(name, "missing config section"),))
    return cast("Mapping[str, object]", section)


def _int(section: Mapping[str, object], key: str) -> int:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigValidationError((ConfigValidationIssue(key, "expected integer"),))
    return value


def _float(section: Mapping[str, object], key: str) -> float:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigValidationError((ConfigValidationIssue(key, "expected number"),))
    return float(value)


def _path(config: Mapping[str, object], key: str) -> Path:
    value = _section(config, "paths").get(key)
    if not isinstance(value, str):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"paths.{key}", "expected a path string"),)
        )
    return Path(value).expanduser()


__all__ = [
    "DispatchRuntime",
    "build_analyzer",
    "build_learning_store",
    "build_runtime",
    "build_store",
]
