"""
CLI subprocess smoke contracts for ``python -m autodispatch``.

Purpose
- Exercise the real entrypoint: argument parsing, config loading, exit codes and
  deterministic JSON output, with a memory-backed dependency store and git disabled.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

pytestmark = pytest.mark.integration

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"
LOCAL = ("--set", "collaborators.dependency_store=memory", "--set", "git.enabled=false")


def _run_cli(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = str(SRC_PATH) if not existing else f"{SRC_PATH}{os.pathsep}{existing}"
    for name in [key for key in env if key.startswith("AUTODISPATCH_")]:
        del env[name]
    return subprocess.run(
        [sys.executable, "-m", "autodispatch", *args],
        cwd=cwd,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )


def test_config_json_reports_effective_values(tmp_path: Path) -> None:
    completed = _run_cli(tmp_path, "config", "--json", *LOCAL, "--profile", "ci")

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert payload["command"] == "config"
    assert payload["active_profile"] == "ci"
    assert payload["config"]["dispatch"]["slot_count"] == 2
    assert payload["config"]["collaborators"]["dependency_store"] == "memory"
    assert payload["config"]["paths"]["repo"] == tmp_path.resolve().as_posix()


def test_plan_on_an_empty_store(tmp_path: Path) -> None:
    completed = _run_cli(tmp_path, "plan", "--json", *LOCAL)

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert payload["ranked"] == []
    assert payload["cycles"] == []


def test_run_with_nothing_ready_is_idle(tmp_path: Path) -> None:
    completed = _run_cli(
        tmp_path, "run", "--json", *LOCAL, "--set", "worker.command=true", "--run-id", "smoke"
    )

    assert completed.returncode == 0, completed.stderr
    payload = json.loads(completed.stdout)
    assert payload["run_id"] == "smoke"
    assert payload["closed"] == []
    assert payload["dispatch_cycles"] == 1
    assert (tmp_path / ".autodispatch" / "logs" / "smoke" / "autodispatch.jsonl").is_file()


def test_run_without_worker_command_is_a_config_error(tmp_path: Path) -> None:
    completed = _run_cli(tmp_path, "run", *LOCAL)

    assert completed.returncode == 2
    assert "worker.command" in completed.stderr


def test_unknown_config_key_is_a_config_error(tmp_path: Path) -> None:
    (tmp_path / "autodispatch.toml").write_text("[dispatch]\nslots = 2\n", encoding="utf-8")

    completed = _run_cli(tmp_path, "plan", *LOCAL)

    assert completed.returncode == 2
    assert "dispatch.slots: unknown field" in completed.stderr
