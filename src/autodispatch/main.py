"""Console entrypoint: runs the CLI and turns every outcome into a process exit code."""

from __future__ import annotations

import sys
import traceback
from collections.abc import Iterator, Sequence
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    RUN_FAILURES = 1
    CONFIG_ERROR = 2
    COLLABORATOR_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint for ``python -m autodispatch`` and the ``autodispatch`` script.

    Config problems exit 2 and unreachable collaborators (dependency store, graph
    analyzer, git, learning store, lock table) exit 3, with the message on stderr.
    Anything else is a bug: exit 4 with the traceback.
    """

    try:
        from autodispatch.ui import cli

        return _normalize_exit_code(cli.run_cli(argv))
    except SystemExit as exc:
        # argparse reports usage errors this way, already using code 2.
        return _normalize_exit_code(exc.code)
    except Exception as exc:  # noqa: BLE001
        code = _classify(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            _stderr(str(exc).strip() or type(exc).__name__)
        return int(code)


def _normalize_exit_code(raw_code: object) -> int:
    if raw_code is None:
        return ExitCode.SUCCESS
    if isinstance(raw_code, int) and raw_code in set(ExitCode):
        return raw_code
    if isinstance(raw_code, str) and raw_code.strip():
        _stderr(raw_code.strip())
    return ExitCode.INTERNAL_ERROR


def _classify(exc: BaseException) -> ExitCode:
    from autodispatch.config import ConfigLoadError, ConfigValidationError
    from autodispatch.control_plane.locks import LockTableStateError
    from autodispatch.integration_plane.git_engine import GitEngineError
    from autodispatch.knowledge_plane.graph_analyzer import GraphAnalyzerUnavailable
    from autodispatch.knowledge_plane.learning_store import LearningStoreError
    from autodispatch.persistence.dependency_store import DependencyStoreError

    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((ConfigLoadError, ConfigValidationError), ExitCode.CONFIG_ERROR),
        (
            (
                DependencyStoreError,
                GraphAnalyzerUnavailable,
                GitEngineError,
                LearningStoreError,
                LockTableStateError,
            ),
            ExitCode.COLLABORATOR_ERROR,
        ),
    )
    for link in _causes(exc):
        for types, code in routes:
            if isinstance(link, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _causes(exc: BaseException) -> Iterator[BaseException]:
    """``exc`` then its explicit or implicit causes, stopping on a loop."""

    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def _stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
