"""Dependency store adapter over the ``bd`` issue-tracker CLI (``bd ... --json``).

``bd`` knows the statuses ``open``, ``in_progress``, ``blocked`` and ``closed``. The
extended dispatch statuses (``claimed``, ``validating``, ``failed``) are carried as a
``state:<status>`` label next to the closest native status, and the work-item kind as a
``kind:<kind>`` label.
"""

from __future__ import annotations

import json
import os
import subprocess
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from autodispatch.domain.models import (
    WorkItem,
    WorkItemKind,
    WorkItemStatus,
    truncate_comment,
)
from autodispatch.persistence.dependency_store import (
    DependencyStoreError,
    InvalidTransitionError,
    ItemNotFoundError,
)

STATE_LABEL_PREFIX = "state:"
KIND_LABEL_PREFIX = "kind:"

_NATIVE_STATUS: dict[WorkItemStatus, str] = {
    WorkItemStatus.OPEN: "open",
    WorkItemStatus.CLAIMED: "in_progress",
    WorkItemStatus.VALIDATING: "in_progress",
    WorkItemStatus.CLOSED: "closed",
    WorkItemStatus.BLOCKED: "blocked",
    # Stays non-closed so downstream items remain blocked.
    WorkItemStatus.FAILED: "blocked",
}
_EXTENDED_STATUSES = frozenset(
    {WorkItemStatus.CLAIMED, WorkItemStatus.VALIDATING, WorkItemStatus.FAILED}
)
_FROM_NATIVE: dict[str, WorkItemStatus] = {
    "open": WorkItemStatus.OPEN,
    "in_progress": WorkItemStatus.CLAIMED,
    "blocked": WorkItemStatus.BLOCKED,
    "closed": WorkItemStatus.CLOSED,
    "tombstone": WorkItemStatus.CLOSED,
}
_BLOCKING_DEPENDENCY_TYPES = frozenset({"blocks", ""})
_NOT_FOUND_MARKERS = ("not found", "no issue", "does not exist")


@dataclass(frozen=True, slots=True)
class CliResult:
    """Normalized subprocess result for the ``bd`` wrapper."""

    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


CommandRunner = Callable[[Sequence[str], Path], CliResult]


class BeadsCliStore:
    """Typed :class:`~autodispatch.persistence.dependency_store.DependencyStore` over ``bd``."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        executable: str = "bd",
        timeout_seconds: float = 30.0,
        runner: CommandRunner | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.executable = executable
        self.timeout_seconds = timeout_seconds
        self._runner = runner if runner is not None else self._subprocess_runner

    def list_items(
        self,
        *,
        status: WorkItemStatus | None = None,
        label: str | None = None,
    ) -> list[WorkItem]:
        args = ["list", "--json"]
        if label is not None:
            args.extend(["--label", label])
        items = self._parse_items(self._run_json(args))
        if status is not None:
            items = [item for item in items if item.status is WorkItemStatus(status)]
        return items

    def ready(self) -> list[WorkItem]:
        items = self._parse_items(self._run_json(["ready", "--json"]))
        # bd reports in_progress-free open items; extended states still need filtering.
        return [item for item in items if item.status is WorkItemStatus.OPEN]

    def show(self, item_id: str) -> WorkItem:
        return self._parse_item(self._show_payload(item_id), sequence=0)

    def update_status(self, item_id: str, status: WorkItemStatus) -> WorkItem:
        target = WorkItemStatus(status)
        payload = self._show_payload(item_id)
        current = self._parse_item(payload, sequence=0).status
        if not current.can_become(target):
            raise InvalidTransitionError(item_id, current, target)
        # Parsed items hide state labels, so read them from the raw payload.
        raw_labels = payload.get("labels")
        for label in raw_labels if isinstance(raw_labels, list) else ():
            if str(label).startswith(STATE_LABEL_PREFIX):
                self._run(["label", "remove", item_id, str(label)], item_id=item_id)
        if target is WorkItemStatus.CLOSED:
            self._run(["close", item_id], item_id=item_id)
        else:
            self._run(
                ["update", item_id, "--status", _NATIVE_STATUS[target]], item_id=item_id
            )
        if target in _EXTENDED_STATUSES:
            self._run(
                ["label", "add", item_id, f"{STATE_LABEL_PREFIX}{target.value}"],
                item_id=item_id,
            )
        return self.show(item_id)

    def add_label(self, item_id: str, label: str) -> WorkItem:
        self._run(["label", "add", item_id, label], item_id=item_id)
        return self.show(item_id)

    def remove_label(self, item_id: str, label: str) -> WorkItem:
        self._run(["label", "remove", item_id, label], item_id=item_id)
        return self.show(item_id)

    def add_comment(self, item_id: str, text: str) -> WorkItem:
        self._run(["comments", "add", item_id, truncate_comment(text)], item_id=item_id)
        return self.show(item_id)

    def create_item(
        self,
        title: str,
        *,
        kind: WorkItemKind = WorkItemKind.ATOM,
        priority: int = 2,
        labels: Iterable[str] = (),
        description: str = "",
        discovered_from: str | None = None,
        blocks: Sequence[str] = (),
    ) -> WorkItem:
        label_list = [f"{KIND_LABEL_PREFIX}{WorkItemKind(kind).value}", *labels]
        args = [
            "create",
            title,
            "--priority",
            str(priority),
            "--labels",
            ",".join(label_list),
            "--json",
        ]
        if description:
            args.extend(["--description", description])
        if discovered_from is not None:
            args.extend(["--deps", f"discovered-from:{discovered_from}"])
        payload = self._run_json(args)
        if isinstance(payload, list):
            payload = payload[0] if payload else {}
        if not isinstance(payload, Mapping) or "id" not in payload:
            raise DependencyStoreError("bd create returned no issue id")
        item_id = str(payload["id"])
        for blocked_id in blocks:
            self.add_dependency(item_id, blocked_id)
        return self.show(item_id)

    def add_dependency(self, blocker_id: str, blocked_id: str) -> None:
        if blocker_id == blocked_id:
            raise DependencyStoreError(f"work item cannot block itself: {blocker_id}")
        # bd dep add <issue> <depends-on>: the blocked item depends on its blocker.
        self._run(["dep", "add", blocked_id, blocker_id, "--type", "blocks"], item_id=blocked_id)

    def _show_payload(self, item_id: str) -> Mapping[str, object]:
        payload = self._run_json(["show", item_id, "--json"], item_id=item_id)
        if isinstance(payload, list):
            if not payload:
                raise ItemNotFoundError(item_id)
            payload = payload[0]
        if not isinstance(payload, Mapping):
            raise DependencyStoreError(
                f"bd returned unexpected issue type {type(payload).__name__}"
            )
        return payload

    def _parse_items(self, payload: object) -> list[WorkItem]:
        if isinstance(payload, Mapping):
            payload = payload.get("issues", [])
        if not isinstance(payload, list):
            raise DependencyStoreError(
                f"bd returned unexpected payload type {type(payload).__name__}"
            )
        return [
            self._parse_item(entry, sequence=index) for index, entry in enumerate(payload)
        ]

    def _parse_item(self, payload: object, *, sequence: int) -> WorkItem:
        if not isinstance(payload, Mapping):
            raise DependencyStoreError(
                f"bd returned unexpected issue type {type(payload).__name__}"
            )
        try:
            labels = [str(label) for label in payload.get("labels") or ()]
            status = _FROM_NATIVE.get(str(payload.get("status", "open")), WorkItemStatus.OPEN)
            kind = WorkItemKind.ATOM
            kept_labels: list[str] = []
            for label in labels:
                if label.startswith(STATE_LABEL_PREFIX):
                    status = WorkItemStatus(label[len(STATE_LABEL_PREFIX) :])
                elif label.startswith(KIND_LABEL_PREFIX):
                    kind = WorkItemKind(label[len(KIND_LABEL_PREFIX) :])
                else:
                    kept_labels.append(label)
            blocked_by, discovered_from = _parse_dependencies(payload)
            return WorkItem(
                id=str(payload["id"]),
                title=str(payload.get("title") or payload["id"]),
                kind=kind,
                status=status,
                priority=int(payload.get("priority", 2)),
                labels=tuple(kept_labels),
                comments=_parse_comments(payload.get("comments")),
                blocked_by=blocked_by,
                discovered_from=discovered_from,
                description=str(payload.get("description") or ""),
                sequence=sequence,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DependencyStoreError(f"bd returned a malformed issue: {exc}") from exc

    def _run_json(self, args: Sequence[str], *, item_id: str | None = None) -> object:
        result = self._run(args, item_id=item_id)
        text = result.stdout.strip()
        if not text:
            return []
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise DependencyStoreError(
                f"bd returned invalid JSON for {' '.join(args[:1])}: {exc}"
            ) from exc

    def _run(self, args: Sequence[str], *, item_id: str | None = None) -> CliResult:
        command = (self.executable, *args)
        try:
            result = self._runner(command, self.repo_path)
        except (OSError, subprocess.SubprocessError) as exc:
            raise DependencyStoreError(f"bd command could not run: {exc}") from exc
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if item_id is not None and any(
                marker in stderr.lower() for marker in _NOT_FOUND_MARKERS
            ):
                raise ItemNotFoundError(item_id)
            message = f"bd command failed ({result.returncode}): {' '.join(command)}"
            if stderr:
                message = f"{message}: {stderr}"
            raise DependencyStoreError(message)
        return result

    def _subprocess_runner(self, command: Sequence[str], cwd: Path) -> CliResult:
        env = os.environ.copy()
        env.setdefault("BD_NO_DAEMON", "1")
        completed = subprocess.run(
            list(command),
            cwd=cwd,
            env=env,
            text=True,
            capture_output=True,
            timeout=self.timeout_seconds,
            check=False,
        )
        return CliResult(
            command=tuple(command),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )


def _parse_dependencies(payload: Mapping[str, object]) -> tuple[tuple[str, ...], str | None]:
    blockers: list[str] = []
    discovered_from: str | None = None
    raw = payload.get("dependencies") or ()
    if not isinstance(raw, list):
        return (), None
    for entry in raw:
        if isinstance(entry, str):
            blockers.append(entry)
            continue
        if not isinstance(entry, Mapping):
            continue
        target = entry.get("depends_on_id") or entry.get("id")
        if target is None:
            continue
        dep_type = str(entry.get("type") or entry.get("dependency_type") or "")
        if dep_type == "discovered-from":
            discovered_from = str(target)
        elif dep_type in _BLOCKING_DEPENDENCY_TYPES:
            blockers.append(str(target))
    return tuple(blockers), discovered_from


def _parse_comments(raw: object) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    comments: list[str] = []
    for entry in raw:
        if isinstance(entry, Mapping):
            comments.append(str(entry.get("text") or entry.get("body") or ""))
        else:
            comments.append(str(entry))
    return tuple(comments)


__all__ = [
    "BeadsCliStore",
    "CliResult",
    "CommandRunner",
    "KIND_LABEL_PREFIX",
    "STATE_LABEL_PREFIX",
]
