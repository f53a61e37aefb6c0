from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Any

CLI_SCRIPT = "cli_invoice.py"
STORE_NAME = "store.json"
# поля, которые finalize_json_payload добавляет в любой JSON-ответ
ENVELOPE_KEYS = ("success", "errors", "count_failed")


def repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def fixture_path(name: str) -> Path:
    return repo_root() / "tests" / "fixtures" / name


def store_path(workdir: Path) -> Path:
    return workdir / STORE_NAME


def job_args(workdir: Path, stats: str = "stats_single.json", presets: str | None = "presets.json") -> list[str]:
    """Аргументы обычного расчёта: статистика, пресеты и отдельное хранилище профилей в workdir."""
    args = ["--stats", str(fixture_path(stats))]
    if presets:
        args += ["--presets", str(fixture_path(presets))]
    return [*args, "--store", str(store_path(workdir))]


def run_cli(args: list[str], cwd: Path) -> subprocess.CompletedProcess:
    # UTF-8 на stdout независимо от локали машины: в отчёте и ошибках есть кириллица
    env = {**os.environ, "PYTHONIOENCODING": "utf-8"}
    return subprocess.run(
        [sys.executable, str(repo_root() / CLI_SCRIPT), *args],
        cwd=cwd,
        env=env,
        text=True,
        encoding="utf-8",
        capture_output=True,
        check=False,
    )


def read_payload(completed: subprocess.CompletedProcess) -> dict[str, Any]:
    """stdout --json -> dict; падает с понятным текстом и stderr CLI, если контракт нарушен."""
    out, err = completed.stdout, completed.stderr
    if not out.strip():
        raise AssertionError(f"{CLI_SCRIPT} printed nothing (rc={completed.returncode}); stderr:\n{err}")
    try:
        payload = json.loads(out)
    except json.JSONDecodeError as exc:
        raise AssertionError(f"{CLI_SCRIPT} stdout is not JSON: {exc}\nstdout:\n{out[:400]}\nstderr:\n{err}") from exc
    if not isinstance(payload, dict):
        raise AssertionError(f"expected JSON object, got {type(payload).__name__}; stderr:\n{err}")
    missing = [k for k in ENVELOPE_KEYS if k not in payload]
    if missing:
        raise AssertionError(f"JSON payload lacks {missing}; stderr:\n{err}")
    return payload


def run_cli_json(args: list[str], cwd: Path) -> tuple[int, dict[str, Any], str]:
    completed = run_cli([*args, "--json"], cwd)
    return completed.returncode, read_payload(completed), completed.stderr
