"""Command-line interface router for autodispatch."""

from __future__ import annotations

import argparse
import sys
import tomllib
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from autodispatch.config import (
    ConfigLoadError,
    effective_config,
    load_config,
)
from autodispatch.control_plane.runtime import build_runtime
from autodispatch.domain import graph
from autodispatch.knowledge_plane.graph_analyzer import (
    GraphAnalyzerUnavailable,
    LocalGraphAnalyzer,
)
from autodispatch.observability import setup_logging, shutdown_logging
from autodispatch.ui.render import CLIRenderer

if TYPE_CHECKING:
    from collections.abc import Mapping

    from autodispatch.control_plane.runtime import DispatchRuntime

_RUN_START_CHECKPOINT = "run-start"


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="autodispatch",
        description=(
            "autodispatch: dependency-aware autonomous work dispatch.\n\n"
            "Common workflows:\n"
            "  autodispatch plan            Show ready work in dispatch order\n"
            "  autodispatch run             Dispatch until no work remains\n"
            "  autodispatch recover         Reset items orphaned by a crash\n"
            "  autodispatch patterns        Show learned failure patterns\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to autodispatch TOML config (default: ./autodispatch.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override one config value, e.g. --set dispatch.slot_count=2 (repeatable).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    common.add_argument("--verbose", "-v", action="store_true", help="Show detailed output.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", parents=[common], help="Run the dispatch loop until idle"
    )
    run_parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Stop after this many loop iterations (overrides dispatch.max_cycles).",
    )
    run_parser.add_argument(
        "--diff-since",
        default=None,
        help="Graph analyzer ref to diff against once the loop stops.",
    )
    run_parser.add_argument("--run-id", default=None, help="Explicit run id for log files.")
    run_parser.set_defaults(handler=_cmd_run)

    recover_parser = subparsers.add_parser(
        "recover", parents=[common], help="Reset orphaned in-flight items and stale locks"
    )
    recover_parser.set_defaults(handler=_cmd_recover)

    plan_parser = subparsers.add_parser(
        "plan", parents=[common], help="Show ready items in the order they would dispatch"
    )
    plan_parser.set_defaults(handler=_cmd_plan)

    patterns_parser = subparsers.add_parser(
        "patterns", parents=[common], help="Show the top learned failure patterns"
    )
    patterns_parser.add_argument("--kind", default=None, help="Only patterns seen for a kind.")
    patterns_parser.set_defaults(handler=_cmd_patterns)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Show the effective (redacted) configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    try:
        return int(namespace.handler(namespace))
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = args.run_id or _new_run_id()
    handle = setup_logging(_mapping(config, "observability"), run_id=run_id)
    logger = structlog.get_logger(__name__)
    try:
        runtime = build_runtime(config)
        max_cycles = args.max_cycles if args.max_cycles is not None else runtime.max_cycles
        diff_since = args.diff_since
        if isinstance(runtime.analyzer, LocalGraphAnalyzer) and diff_since is None:
            diff_since = runtime.analyzer.checkpoint(_RUN_START_CHECKPOINT)
        logger.info("run_started", run_id=run_id, max_cycles=max_cycles)
        report = runtime.loop.run(max_cycles=max_cycles, diff_since=diff_since)
    finally:
        shutdown_logging(handle)

    exit_code = 1 if report.has_failures else 0
    renderer = _renderer(args)
    if args.json:
        renderer.json({"command": "run", "run_id": run_id, **report.to_dict()})
        return exit_code

    renderer.kv("Run ID", run_id)
    renderer.kv("Log", handle.log_path.as_posix())
    renderer.kv("Dispatch cycles", report.dispatch_cycles)
    for label, ids in (
        ("Closed", report.closed),
        ("Retried", report.retried),
        ("Serialized", report.serialized),
        ("Escalated", report.escalated),
        ("Failed", report.failed),
        ("Reopened", report.reopened),
        ("Recovered", report.recovered),
    ):
        renderer.kv(label, ", ".join(ids) if ids else "-")
    if report.cycles_detected:
        renderer.section("Dependency cycles:")
        renderer.items([" -> ".join(cycle) for cycle in report.cycles_detected])
    if report.inverted_edges:
        renderer.section("Inverted hierarchy edges (blocker -> blocked):")
        renderer.items([" -> ".join(edge) for edge in report.inverted_edges])
    if report.graph_diff is not None and report.graph_diff.has_new_cycles:
        renderer.section("New cycles since run start:")
        renderer.items([" -> ".join(cycle) for cycle in report.graph_diff.new_cycles])
    return exit_code


def _cmd_recover(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = _new_run_id()
    handle = setup_logging(_mapping(config, "observability"), run_id=run_id)
    try:
        runtime = build_runtime(config, require_worker=False)
        reset = runtime.loop.recover()
    finally:
        shutdown_logging(handle)

    renderer = _renderer(args)
    if args.json:
        renderer.json({"command": "recover", "reset": list(reset)})
        return 0
    renderer.kv("Reset to open", ", ".join(reset) if reset else "-")
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    runtime = build_runtime(config, require_worker=False)
    runtime.lock_manager.load()
    locked = {lock.item_id for lock in runtime.lock_manager.locks}
    ready = runtime.store.ready()
    decision = runtime.scheduler.schedule(ready, locked=locked, in_flight=locked)
    tracks = _parallel_tracks(runtime, decision.ranked)
    snapshot = graph.index_items(runtime.store.list_items())
    cycles = graph.find_cycles(snapshot)
    inverted = graph.hierarchy_violations(snapshot)
    titles = {item.id: item.title for item in ready}

    renderer = _renderer(args)
    if args.json:
        renderer.json(
            {
                "command": "plan",
                "ranked": list(decision.ranked),
                "impact": dict(decision.impact),
                "excluded": list(decision.excluded),
                "locked": list(decision.skipped_locked),
                "awaiting_blockers": list(decision.awaiting_blockers),
                "degraded": decision.degraded,
                "parallel_tracks": [list(track) for track in tracks],
                "cycles": [list(cycle) for cycle in cycles],
                "inverted_edges": [list(edge) for edge in inverted],
            }
        )
        return 0

    renderer.kv("Ready", len(ready))
    if decision.degraded:
        renderer.text("Graph analyzer unavailable: ordering by priority only.")
    renderer.table(
        ["ID", "IMPACT", "TITLE"],
        [
            [item_id, f"{decision.impact.get(item_id, 0.0):g}", _truncate(titles[item_id], 60)]
            for item_id in decision.ranked
        ],
        title="Dispatch order:",
    )
    if len(tracks) > 1:
        renderer.section("Parallel tracks:")
        renderer.items([", ".join(track) for track in tracks])
    if decision.excluded:
        renderer.section("Excluded by label:")
        renderer.items(list(decision.excluded))
    if decision.skipped_locked:
        renderer.section("Locked by a running loop:")
        renderer.items(list(decision.skipped_locked))
    if cycles:
        renderer.section("Dependency cycles:")
        renderer.items([" -> ".join(cycle) for cycle in cycles])
    if inverted:
        renderer.section("Inverted hierarchy edges (blocker -> blocked):")
        renderer.items([" -> ".join(edge) for edge in inverted])
    return 0


def _cmd_patterns(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    runtime = build_runtime(config, require_worker=False)
    if runtime.learning_store is None:
        raise CLIError("learning store is disabled (learning.enabled = false)", exit_code=2)
    grouped = runtime.learning_store.top_patterns(args.kind)

    renderer = _renderer(args)
    if args.json:
        renderer.json(
            {
                "command": "patterns",
                "kind": args.kind,
                "patterns": {
                    category: [pattern.to_dict() for pattern in patterns]
                    for category, patterns in grouped.items()
                },
            }
        )
        return 0

    rows = [
        [
            category,
            str(pattern.occurrences),
            pattern.trend.value,
            _truncate(pattern.message, 60),
        ]
        for category, patterns in sorted(grouped.items())
        for pattern in patterns
    ]
    if not rows:
        renderer.text("No failure patterns recorded.")
        return 0
    renderer.table(["CATEGORY", "COUNT", "TREND", "MESSAGE"], rows, title="Top patterns:")
    if args.verbose:
        renderer.section("Recommended fixes:")
        renderer.items(
            [
                f"{pattern.category}: {pattern.recommended_fix}"
                for patterns in grouped.values()
                for pattern in patterns
            ]
        )
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    redacted = effective_config(config)
    renderer = _renderer(args)
    if args.json:
        renderer.json({"command": "config", "active_profile": args.profile, "config": redacted})
        return 0
    renderer.kv("Active profile", args.profile or "(default)")
    for section in sorted(redacted):
        if section == "profiles":
            continue
        renderer.section(f"[{section}]")
        values = redacted[section]
        if isinstance(values, dict):
            for key in sorted(values):
                renderer.kv(f"  {key}", values[key])
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, object]:
    return load_config(
        args.config_path,
        profile=args.profile,
        cli_overrides=_parse_overrides(args.overrides),
    )


def _parse_overrides(raw_overrides: Sequence[str]) -> dict[str, object]:
    """Parse ``KEY=VALUE`` pairs; values are TOML literals, bare words stay strings."""

    overrides: dict[str, object] = {}
    for raw in raw_overrides:
        key, sep, value = raw.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ConfigLoadError(f"invalid --set value {raw!r}; expected KEY=VALUE")
        try:
            overrides[key] = tomllib.loads(f"value = {value.strip()}")["value"]
        except tomllib.TOMLDecodeError:
            overrides[key] = value.strip()
    return overrides


def _parallel_tracks(
    runtime: DispatchRuntime, item_ids: Sequence[str]
) -> tuple[tuple[str, ...], ...]:
    if runtime.analyzer is None or not item_ids:
        return ()
    try:
        return runtime.analyzer.parallel_tracks(item_ids)
    except GraphAnalyzerUnavailable:
        return ()


def _mapping(config: Mapping[str, object], key: str) -> Mapping[str, object]:
    value = config.get(key)
    return value if isinstance(value, dict) else {}


def _renderer(args: argparse.Namespace) -> CLIRenderer:
    return CLIRenderer(verbose=bool(args.verbose))


def _new_run_id() -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


__all__ = ["CLIError", "build_parser", "run_cli"]
