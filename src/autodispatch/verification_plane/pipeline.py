"""
Validation pipeline: ordered gates with fail-fast on blocking failures.

Gate order is fixed (functional tests, integration check, conflict detection, regression
sample, quality checks). Soft failures are logged, commented on the item and recorded
in the learning store, then the pipeline continues. A blocking failure stops the run;
later gates never execute. Items broken by a regression sample are reopened here.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from autodispatch.constants import LABEL_REGRESSION_REOPENED
from autodispatch.domain.models import GateReason, WorkItemStatus, truncate_comment
from autodispatch.synthesis_plane.work_item_classifier import classify_work_item
from autodispatch.verification_plane.gates import GateContext, GateOutcome

if TYPE_CHECKING:
    from autodispatch.domain.models import WorkItem
    from autodispatch.integration_plane.conflict_resolution import ConflictReport
    from autodispatch.knowledge_plane.learning_store import LearningStore
    from autodispatch.persistence.dependency_store import DependencyStore
    from autodispatch.synthesis_plane.dispatch import WorkerOutcome
    from autodispatch.verification_plane.gates import Gate


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Aggregate outcome of one pipeline run."""

    item_id: str
    passed: bool
    reason: GateReason | None = None
    details: str = ""
    outcomes: tuple[GateOutcome, ...] = ()
    reopened: tuple[str, ...] = ()
    conflict: ConflictReport | None = None

    @property
    def soft_failures(self) -> tuple[GateOutcome, ...]:
        return tuple(
            outcome for outcome in self.outcomes if not outcome.passed and not outcome.blocking
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "item_id": self.item_id,
            "passed": self.passed,
            "reason": self.reason.value if self.reason is not None else None,
            "details": self.details,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "reopened": list(self.reopened),
        }


class ValidationPipeline:
    def __init__(
        self,
        gates: Sequence[Gate],
        *,
        store: DependencyStore,
        learning_store: LearningStore | None = None,
        default_workspace: Path | str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._gates = tuple(gates)
        self._store = store
        self._learning_store = learning_store
        self._default_workspace = (
            Path(default_workspace).resolve() if default_workspace is not None else Path.cwd()
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def gate_names(self) -> tuple[str, ...]:
        return tuple(gate.name for gate in self._gates)

    def validate(self, item: WorkItem, outcome: WorkerOutcome) -> ValidationResult:
        workspace = outcome.workspace if outcome.workspace is not None else self._default_workspace
        context = GateContext(item=item, outcome=outcome, workspace=Path(workspace))
        outcomes: list[GateOutcome] = []
        for gate in self._gates:
            result = gate.evaluate(context)
            outcomes.append(result)
            if result.passed:
                self._logger.debug("gate_passed", item_id=item.id, gate=gate.name)
                continue

            self._record_failure(item, result)
            reason = result.reason.value if result.reason is not None else "unknown"
            if not result.blocking:
                self._logger.warning(
                    "gate_soft_failure", item_id=item.id, gate=gate.name, reason=reason
                )
                self._store.add_comment(
                    item.id,
                    f"Non-blocking {gate.name} failure ({reason}):\n{result.details}",
                )
                continue

            reopened = self._reopen(item, result)
            self._logger.info(
                "validation_failed",
                item_id=item.id,
                gate=gate.name,
                reason=reason,
                reopened=list(reopened),
            )
            return ValidationResult(
                item_id=item.id,
                passed=False,
                reason=result.reason,
                details=result.details,
                outcomes=tuple(outcomes),
                reopened=reopened,
                conflict=result.conflict,
            )

        self._logger.info("validation_passed", item_id=item.id, gates=len(outcomes))
        return ValidationResult(item_id=item.id, passed=True, outcomes=tuple(outcomes))

    def _record_failure(self, item: WorkItem, result: GateOutcome) -> None:
        if self._learning_store is None or result.reason is None:
            return
        self._learning_store.record_failure(
            item,
            result.reason,
            result.details,
            kind=classify_work_item(item).value,
        )

    def _reopen(self, item: WorkItem, result: GateOutcome) -> tuple[str, ...]:
        reopened: list[str] = []
        for sampled_id in result.reopened:
            sampled = self._store.show(sampled_id)
            if sampled.status is not WorkItemStatus.CLOSED:
                continue
            self._store.update_status(sampled_id, WorkItemStatus.OPEN)
            if not sampled.has_label(LABEL_REGRESSION_REOPENED):
                self._store.add_label(sampled_id, LABEL_REGRESSION_REOPENED)
            self._store.add_comment(
                sampled_id,
                truncate_comment(
                    f"Reopened: regression sample failed while validating {item.id}.\n"
                    f"{result.details}"
                ),
            )
            reopened.append(sampled_id)
        return tuple(reopened)


__all__ = ["ValidationPipeline", "ValidationResult"]
