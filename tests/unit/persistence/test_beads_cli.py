"""
Unit tests for the ``bd`` CLI dependency-store adapter.

A scripted runner stands in for the executable, so these tests pin the exact
command lines and the JSON parsing without ``bd`` installed.
"""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from autodispatch.domain.models import WorkItemKind, WorkItemStatus
from autodispatch.persistence.beads_cli import BeadsCliStore, CliResult
from autodispatch.persistence.dependency_store import (
    DependencyStore,
    DependencyStoreError,
    InvalidTransitionError,
    ItemNotFoundError,
)

pytestmark = pytest.mark.unit

_ISSUE = {
    "id": "bd-7",
    "title": "Wire the scheduler",
    "status": "in_progress",
    "priority": 1,
    "labels": ["state:validating", "kind:composite", "attempt-2"],
    "dependencies": [
        {"depends_on_id": "bd-3", "type": "blocks"},
        {"depends_on_id": "bd-1", "type": "discovered-from"},
        {"depends_on_id": "bd-4", "type": "related"},
    ],
    "comments": [{"text": "first"}, "second"],
    "description": "details",
}


class ScriptedBd:
    """Records every command and answers from a per-subcommand handler table."""

    def __init__(self, handlers: dict[str, Callable[[Sequence[str]], CliResult]]) -> None:
        self.calls: list[tuple[str, ...]] = []
        self._handlers = handlers

    def __call__(self, command: Sequence[str], cwd: Path) -> CliResult:
        self.calls.append(tuple(command))
        handler = self._handlers.get(command[1])
        if handler is None:
            return _ok(command, "")
        return handler(command)


def _ok(command: Sequence[str], stdout: object) -> CliResult:
    text = stdout if isinstance(stdout, str) else json.dumps(stdout)
    return CliResult(command=tuple(command), returncode=0, stdout=text, stderr="")


def _store(runner: ScriptedBd, tmp_path: Path) -> BeadsCliStore:
    return BeadsCliStore(tmp_path, runner=runner)


def test_adapter_satisfies_protocol(tmp_path: Path) -> None:
    assert isinstance(_store(ScriptedBd({}), tmp_path), DependencyStore)


def test_list_parses_extended_status_kind_and_dependencies(tmp_path: Path) -> None:
    runner = ScriptedBd({"list": lambda command: _ok(command, [_ISSUE])})
    [item] = _store(runner, tmp_path).list_items()

    assert item.id == "bd-7"
    assert item.status is WorkItemStatus.VALIDATING
    assert item.kind is WorkItemKind.COMPOSITE
    assert item.labels == ("attempt-2",)
    assert item.attempt == 2
    assert item.blocked_by == ("bd-3",)
    assert item.discovered_from == "bd-1"
    assert item.comments == ("first", "second")
    assert runner.calls == [("bd", "list", "--json")]


def test_list_filters_by_label_and_status(tmp_path: Path) -> None:
    open_issue = {"id": "bd-2", "title": "Open one", "status": "open", "labels": ["x"]}
    runner = ScriptedBd({"list": lambda command: _ok(command, {"issues": [open_issue, _ISSUE]})})
    store = _store(runner, tmp_path)

    items = store.list_items(status=WorkItemStatus.OPEN, label="x")

    assert [item.id for item in items] == ["bd-2"]
    assert runner.calls[-1] == ("bd", "list", "--json", "--label", "x")


def test_ready_drops_items_in_extended_states(tmp_path: Path) -> None:
    claimed = {"id": "bd-5", "title": "Claimed", "status": "open", "labels": ["state:claimed"]}
    fresh = {"id": "bd-6", "title": "Fresh", "status": "open"}
    runner = ScriptedBd({"ready": lambda command: _ok(command, [claimed, fresh])})
    assert [item.id for item in _store(runner, tmp_path).ready()] == ["bd-6"]


def test_update_to_failed_keeps_native_status_non_closed(tmp_path: Path) -> None:
    runner = ScriptedBd({"show": lambda command: _ok(command, [_ISSUE])})
    _store(runner, tmp_path).update_status("bd-7", WorkItemStatus.FAILED)

    assert ("bd", "label", "remove", "bd-7", "state:validating") in runner.calls
    assert ("bd", "update", "bd-7", "--status", "blocked") in runner.calls
    assert ("bd", "label", "add", "bd-7", "state:failed") in runner.calls


def test_update_to_closed_uses_close(tmp_path: Path) -> None:
    runner = ScriptedBd({"show": lambda command: _ok(command, [_ISSUE])})
    _store(runner, tmp_path).update_status("bd-7", WorkItemStatus.CLOSED)
    assert ("bd", "close", "bd-7") in runner.calls
    assert not any(call[1] == "update" for call in runner.calls)



def test_failed_item_cannot_be_closed_without_reopening(tmp_path: Path) -> None:
    failed = {**_ISSUE, "status": "blocked", "labels": ["state:failed"]}
    runner = ScriptedBd({"show": lambda command: _ok(command, [failed])})

    with pytest.raises(InvalidTransitionError, match="from failed to closed"):
        _store(runner, tmp_path).update_status("bd-7", WorkItemStatus.CLOSED)
    assert all(call[1] == "show" for call in runner.calls)

def test_add_dependency_orders_blocked_before_blocker(tmp_path: Path) -> None:
    runner = ScriptedBd({})
    store = _store(runner, tmp_path)
    store.add_dependency("bd-1", "bd-2")
    assert runner.calls == [("bd", "dep", "add", "bd-2", "bd-1", "--type", "blocks")]
    with pytest.raises(DependencyStoreError, match="cannot block itself"):
        store.add_dependency("bd-1", "bd-1")


def test_create_item_encodes_kind_and_provenance(tmp_path: Path) -> None:
    created = {"id": "bd-9", "title": "Investigate", "labels": ["kind:integration", "needs-human"]}
    runner = ScriptedBd(
        {
            "create": lambda command: _ok(command, created),
            "show": lambda command: _ok(command, created),
        }
    )
    item = _store(runner, tmp_path).create_item(
        "Investigate",
        kind=WorkItemKind.INTEGRATION,
        labels=("needs-human",),
        discovered_from="bd-7",
        blocks=("bd-8",),
    )

    create_call = runner.calls[0]
    assert create_call[:2] == ("bd", "create")
    assert "kind:integration,needs-human" in create_call
    assert create_call[-2:] == ("--deps", "discovered-from:bd-7")
    assert ("bd", "dep", "add", "bd-8", "bd-9", "--type", "blocks") in runner.calls
    assert item.kind is WorkItemKind.INTEGRATION
    assert item.labels == ("needs-human",)


def test_not_found_stderr_maps_to_item_not_found(tmp_path: Path) -> None:
    def missing(command: Sequence[str]) -> CliResult:
        return CliResult(tuple(command), 1, "", "Error: issue bd-404 not found")

    with pytest.raises(ItemNotFoundError):
        _store(ScriptedBd({"show": missing}), tmp_path).show("bd-404")


def test_failed_command_and_bad_json_raise_store_errors(tmp_path: Path) -> None:
    def broken(command: Sequence[str]) -> CliResult:
        return CliResult(tuple(command), 2, "", "database locked")

    with pytest.raises(DependencyStoreError, match="database locked"):
        _store(ScriptedBd({"list": broken}), tmp_path).list_items()
    with pytest.raises(DependencyStoreError, match="invalid JSON"):
        _store(ScriptedBd({"list": lambda command: _ok(command, "{oops")}), tmp_path).list_items()


def test_runner_exceptions_become_store_errors(tmp_path: Path) -> None:
    def unavailable(command: Sequence[str], cwd: Path) -> CliResult:
        raise subprocess.TimeoutExpired(list(command), 30)

    with pytest.raises(DependencyStoreError, match="could not run"):
        BeadsCliStore(tmp_path, runner=unavailable).ready()
