"""Work item classifier for worker routing.

Purpose
- Map a work item to the kind of worker best suited to it (tests, docs, bug fixes...).
- Pure-function classifier: deterministic and total, same input = same output.

An explicit ``worker:<kind>`` label on the item always wins over the title rules.
"""

from __future__ import annotations

import enum
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from autodispatch.domain.models import WorkItem


class WorkerKind(enum.StrEnum):
    """Specialized worker kinds; ``GENERAL`` is the explicit fallback."""

    TEST = "test"
    DOCS = "docs"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    INFRA = "infra"
    FEATURE = "feature"
    GENERAL = "general"


# --- Title rules, evaluated in order; first match wins ---
_TITLE_RULES: tuple[tuple[re.Pattern[str], WorkerKind], ...] = (
    (
        re.compile(r"\b(tests?|testing|coverage|pytest|spec(s)? for)\b", re.IGNORECASE),
        WorkerKind.TEST,
    ),
    (
        re.compile(r"\b(docs?|documentation|readme|docstrings?|changelog|guide)\b", re.IGNORECASE),
        WorkerKind.DOCS,
    ),
    (
        re.compile(r"\b(fix(es|ed)?|bug|crash|regression|broken|error|hotfix)\b", re.IGNORECASE),
        WorkerKind.BUGFIX,
    ),
    (
        re.compile(r"\b(refactor|rename|extract|cleanup|clean up|simplify|restructure)\b", re.I),
        WorkerKind.REFACTOR,
    ),
    (
        re.compile(
            r"\b(ci|cd|pipeline|deploy|docker(file)?|build system"
            r"|infra(structure)?|config(ure)?)\b",
            re.IGNORECASE,
        ),
        WorkerKind.INFRA,
    ),
    (
        re.compile(r"\b(add|implement|introduce|support|create|new|feature)\b", re.IGNORECASE),
        WorkerKind.FEATURE,
    ),
)


def classify_title(title: str) -> WorkerKind:
    """Classify a bare title; ``GENERAL`` when no rule matches."""
    for pattern, kind in _TITLE_RULES:
        if pattern.search(title):
            return kind
    return WorkerKind.GENERAL


def classify_work_item(work_item: WorkItem) -> WorkerKind:
    """Classify a work item, honoring a ``worker:<kind>`` label override.

    Unknown label values fall through to the title rules.
    """
    override = work_item.worker_label
    if override is not None:
        try:
            return WorkerKind(override.strip().lower())
        except ValueError:
            pass
    return classify_title(work_item.title)


__all__ = ["WorkerKind", "classify_title", "classify_work_item"]
