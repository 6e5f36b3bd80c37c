"""Bounded retry and permanent-failure escalation for blocking gate failures."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from autodispatch.constants import (
    DEFAULT_MAX_ATTEMPTS,
    LABEL_FAILED,
    LABEL_FAILURE_ANALYSIS,
    LABEL_NEEDS_HUMAN,
)
from autodispatch.domain.models import GateReason, WorkItemKind, WorkItemStatus
from autodispatch.persistence.dependency_store import advance_attempt

if TYPE_CHECKING:
    from collections.abc import Sequence

    from autodispatch.domain.models import WorkItem
    from autodispatch.persistence.dependency_store import DependencyStore

_DETAIL_EXCERPT = 2_000


class RetryAction(StrEnum):
    RETRY = "retry"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class RetryDecision:
    """What the policy did with one failed item."""

    item_id: str
    action: RetryAction
    reason: GateReason
    attempt: int
    analysis_item_id: str | None = None


class RetryPolicy:
    """Retry an item while attempts remain, otherwise mark it permanently failed.

    A retry bumps the ``attempt-N`` label, records the failure as a comment and reopens
    the item without touching its priority. Once the budget is spent the item gets
    status and label ``failed`` plus a linked ``needs-human`` analysis item; items it
    blocks stay blocked.
    """

    def __init__(
        self,
        store: DependencyStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        logger: Any | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._store = store
        self._max_attempts = max_attempts
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def handle_failure(
        self,
        item: WorkItem,
        reason: GateReason | str,
        details: str = "",
        *,
        history: Sequence[str] = (),
    ) -> RetryDecision:
        gate_reason = GateReason(reason)
        excerpt = _excerpt(details)
        if item.attempt < self._max_attempts:
            attempt = advance_attempt(self._store, item)
            self._store.add_comment(
                item.id,
                f"Attempt {item.attempt} failed ({gate_reason.value}); "
                f"retrying as attempt {attempt}.\n\n{excerpt}".rstrip(),
            )
            self._store.update_status(item.id, WorkItemStatus.OPEN)
            self._logger.info(
                "item_retry_scheduled",
                item_id=item.id,
                reason=gate_reason.value,
                attempt=attempt,
            )
            return RetryDecision(
                item_id=item.id,
                action=RetryAction.RETRY,
                reason=gate_reason,
                attempt=attempt,
            )
        return self._fail_permanently(item, gate_reason, excerpt, history=history)

    def _fail_permanently(
        self,
        item: WorkItem,
        reason: GateReason,
        excerpt: str,
        *,
        history: Sequence[str],
    ) -> RetryDecision:
        self._store.add_label(item.id, LABEL_FAILED)
        self._store.update_status(item.id, WorkItemStatus.FAILED)
        self._store.add_comment(
            item.id,
            f"Permanently failed after {item.attempt} attempt(s); last failure: "
            f"{reason.value}.\n\n{excerpt}".rstrip(),
        )

        past = "\n".join(f"- {line}" for line in history) or "- (no recorded history)"
        description = (
            f"Work item {item.id} ({item.title}) exhausted {self._max_attempts} attempt(s).\n\n"
            f"Last failure: {reason.value}\n\n{excerpt}\n\n"
            f"Failure history:\n{past}\n\n"
            "Decide whether to rescope the item, fix the underlying problem by hand or "
            "drop it; items it blocks stay blocked until then."
        )
        analysis = self._store.create_item(
            f"Investigate failed work item {item.id}: {item.title}"[:500],
            kind=WorkItemKind.INTEGRATION,
            priority=item.priority,
            labels=(LABEL_FAILURE_ANALYSIS, LABEL_NEEDS_HUMAN),
            description=description,
            discovered_from=item.id,
        )
        self._logger.warning(
            "item_failed_permanently",
            item_id=item.id,
            reason=reason.value,
            attempts=item.attempt,
            analysis_item_id=analysis.id,
        )
        return RetryDecision(
            item_id=item.id,
            action=RetryAction.FAILED,
            reason=reason,
            attempt=item.attempt,
            analysis_item_id=analysis.id,
        )


def _excerpt(details: str) -> str:
    text = details.strip()
    if len(text) <= _DETAIL_EXCERPT:
        return text
    return "..." + text[-_DETAIL_EXCERPT:]


__all__ = ["RetryAction", "RetryDecision", "RetryPolicy"]
