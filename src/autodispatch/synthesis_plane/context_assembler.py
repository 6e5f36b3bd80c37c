"""
Worker context rendering.

Builds the text handed to a worker for one attempt: the item header and description,
a reconcile block when the previous attempt hit a merge conflict, and the learning
store's guidance. Rendering uses Jinja2 with ``StrictUndefined`` so a missing variable
fails loudly instead of producing a silently empty section.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

from jinja2 import Environment, StrictUndefined, TemplateError

from autodispatch.constants import DEFAULT_WORK_BRANCH_PREFIX, LABEL_SERIALIZED
from autodispatch.synthesis_plane.work_item_classifier import WorkerKind, classify_work_item

if TYPE_CHECKING:
    from autodispatch.domain.models import WorkItem
    from autodispatch.knowledge_plane.learning_store import LearningStore

_WORKER_TEMPLATE: Final[str] = """\
# Work item {{ item.id }}: {{ item.title }}

- kind: {{ item.kind.value }}
- worker: {{ worker_kind.value }}
- attempt: {{ attempt }}
- branch: {{ branch }}
{% if item.provenance %}
- discovered from: {{ item.provenance }}
{% endif %}

{% if item.description %}
## Description
{{ item.description }}

{% endif %}
{% if conflict_context %}
## Reconcile with baseline
Your previous attempt conflicted with work already integrated into the baseline.
Rebase onto the current baseline and keep both sides' intent in these regions:

{{ conflict_context }}

{% endif %}
{% if guidance %}
{{ guidance }}
{% endif %}
## Finish
Commit your changes on `{{ branch }}` and close work item {{ item.id }} when done.
"""


class ContextRenderError(RuntimeError):
    """Raised when the worker context template cannot be rendered."""


@dataclass(frozen=True, slots=True)
class WorkerContext:
    """Rendered context for one dispatch attempt."""

    item_id: str
    attempt: int
    worker_kind: WorkerKind
    branch: str
    text: str

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.text.encode("utf-8")).hexdigest()

    def write(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.text, encoding="utf-8")
        return path


def work_branch_name(
    item_id: str,
    attempt: int,
    *,
    prefix: str = DEFAULT_WORK_BRANCH_PREFIX,
    serialized: bool = False,
) -> str:
    """Branch for one attempt; a serialized re-dispatch gets its own fresh branch."""

    suffix = "-serial" if serialized else ""
    return f"{prefix}/{item_id}/attempt-{attempt}{suffix}"


class ContextAssembler:
    """Render worker contexts from an item, learned guidance and conflict details."""

    def __init__(
        self,
        learning_store: LearningStore | None = None,
        *,
        branch_prefix: str = DEFAULT_WORK_BRANCH_PREFIX,
    ) -> None:
        self._learning_store = learning_store
        self._branch_prefix = branch_prefix
        self._environment = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._template = self._environment.from_string(_WORKER_TEMPLATE)

    def assemble(self, item: WorkItem, *, conflict_context: str | None = None) -> WorkerContext:
        worker_kind = classify_work_item(item)
        attempt = item.attempt
        branch = work_branch_name(
            item.id,
            attempt,
            prefix=self._branch_prefix,
            serialized=item.has_label(LABEL_SERIALIZED),
        )
        guidance = ""
        if self._learning_store is not None:
            guidance = self._learning_store.build_context(
                worker_kind.value, attempt, item_id=item.id
            )
        try:
            text = self._template.render(
                item=item,
                worker_kind=worker_kind,
                attempt=attempt,
                branch=branch,
                conflict_context=(conflict_context or "").strip(),
                guidance=guidance.strip(),
            )
        except TemplateError as exc:
            raise ContextRenderError(f"failed to render context for {item.id}: {exc}") from exc
        return WorkerContext(
            item_id=item.id,
            attempt=attempt,
            worker_kind=worker_kind,
            branch=branch,
            text=text,
        )


__all__ = [
    "ContextAssembler",
    "ContextRenderError",
    "WorkerContext",
    "work_branch_name",
]
