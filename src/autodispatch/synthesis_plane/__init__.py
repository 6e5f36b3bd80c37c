"""Synthesis plane: worker routing, worker context rendering and worker launchers."""

from autodispatch.synthesis_plane.context_assembler import (
    ContextAssembler,
    ContextRenderError,
    WorkerContext,
    work_branch_name,
)
from autodispatch.synthesis_plane.dispatch import (
    CallableWorkerLauncher,
    CommandWorkerLauncher,
    FutureTaskHandle,
    ProcessTaskHandle,
    TaskHandle,
    WorkerLauncher,
    WorkerLaunchError,
    WorkerOutcome,
)
from autodispatch.synthesis_plane.work_item_classifier import (
    WorkerKind,
    classify_title,
    classify_work_item,
)

__all__ = [
    "CallableWorkerLauncher",
    "CommandWorkerLauncher",
    "ContextAssembler",
    "ContextRenderError",
    "FutureTaskHandle",
    "ProcessTaskHandle",
    "TaskHandle",
    "WorkerContext",
    "WorkerKind",
    "WorkerLaunchError",
    "WorkerLauncher",
    "WorkerOutcome",
    "classify_title",
    "classify_work_item",
    "work_branch_name",
]
