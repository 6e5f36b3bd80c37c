"""Control plane: scheduling, locking, retries and the dispatch loop."""

from autodispatch.control_plane.controller import (
    DispatchLoop,
    DispatchSettings,
    RunReport,
    WorkerSlot,
)
from autodispatch.control_plane.locks import LockManager, LockTableStateError
from autodispatch.control_plane.retry import RetryAction, RetryDecision, RetryPolicy
from autodispatch.control_plane.runtime import DispatchRuntime, build_runtime
from autodispatch.control_plane.scheduler import ScheduleDecision, Scheduler

__all__ = [
    "DispatchLoop",
    "DispatchRuntime",
    "DispatchSettings",
    "LockManager",
    "LockTableStateError",
    "RetryAction",
    "RetryDecision",
    "RetryPolicy",
    "RunReport",
    "ScheduleDecision",
    "Scheduler",
    "WorkerSlot",
    "build_runtime",
]
