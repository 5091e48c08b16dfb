from __future__ import annotations

import csv
import json
import platform
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from .config import HarnessSettings, KernelConfig, load_schema
from .model import Run, TimingRecord, TrialResult

SCHEMA_VERSION = "0.1.0"
TABLE_PLACEHOLDER = "table_name"

SQL_COLUMNS: tuple[str, ...] = (
    "kernel",
    "host",
    "device",
    "matrix",
    "experiment_id",
    "kind",
    "trial",
    "iteration",
    "duration_ns",
    "correctness",
    "global_size",
    "local_size",
)

CSV_COLUMNS: tuple[str, ...] = (
    "run",
    "kind",
    "trial",
    "iteration",
    "duration_ns",
    "correctness",
    "global",
    "local",
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def validate_results_schema(results: dict[str, Any]) -> None:
    Draft202012Validator(load_schema("results.schema.json")).validate(results)


def _dims(d: Sequence[int]) -> str:
    return "x".join(str(v) for v in d)


def _trial_failures(trial: TrialResult) -> list[str]:
    reasons: list[str] = []
    if trial.correctness in ("bad_length", "bad_values"):
        reasons.append(trial.correctness)
    if not trial.converged:
        reasons.append("did_not_converge")
    return reasons


def build_results(
    benchmarks: Sequence[tuple[Run, Sequence[TrialResult]]],
    *,
    experiment_id: str,
    host_name: str,
    device_name: str,
    backend: str,
    kernel_cfg: KernelConfig,
    matrix: dict[str, Any],
    settings: HarnessSettings,
    final_timeout_ms: int,
    git: dict[str, Any],
    started_at: str,
    artifacts_dir: Path,
) -> dict[str, Any]:
    runs: list[dict[str, Any]] = []
    failures: list[str] = []
    for run, trials in benchmarks:
        runs.append({"run": run.to_dict(), "trials": [t.to_dict() for t in trials]})
        for t in trials:
            failures += [f"{run} trial {t.trial}: {reason}" for reason in _trial_failures(t)]

    run_obj = {
        "experiment_id": experiment_id,
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        "status": "fail" if failures else "pass",
        "failure_reason": "; ".join(failures),
        "git": git,
        "environment": {
            "platform": {"os": platform.system().lower(), "arch": platform.machine().lower()},
            "host": host_name,
            "device_name": device_name,
            "backend": backend,
        },
        "kernel": kernel_cfg.to_dict(),
        "matrix": matrix,
        "settings": settings.to_dict(),
        "final_timeout_ms": final_timeout_ms,
        "artifacts_dir": str(artifacts_dir),
    }
    out = {"schema_version": SCHEMA_VERSION, "run": run_obj, "runs": runs}
    validate_results_schema(out)
    return out


def write_results(path: Path, results: dict[str, Any]) -> None:
    path.write_text(json.dumps(results, indent=2, sort_keys=True) + "\n")


def iter_records(results: dict[str, Any]) -> Iterable[tuple[dict[str, Any], dict[str, Any]]]:
    """Yield (run, record) pairs from a results payload in emission order."""
    for entry in results.get("runs", []):
        for trial in entry.get("trials", []):
            for rec in trial.get("records", []):
                yield entry["run"], rec


def write_timings_csv(path: Path, results: dict[str, Any]) -> None:
    with path.open("w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_COLUMNS)
        for run, rec in iter_records(results):
            writer.writerow(
                [
                    f"{_dims(run['global'])}/{_dims(run['local'])}",
                    rec["kind"],
                    rec["trial"],
                    "" if rec["iteration"] is None else rec["iteration"],
                    rec["duration_ns"],
                    rec["correctness"],
                    _dims(rec["global"]),
                    _dims(rec["local"]),
                ]
            )


def _sql_literal(v: Any) -> str:
    if v is None:
        return "NULL"
    if isinstance(v, bool):
        return "1" if v else "0"
    if isinstance(v, (int, float)):
        return str(v)
    return "'" + str(v).replace("'", "''") + "'"


def make_sql_command(
    records: Sequence[TimingRecord],
    *,
    kernel_name: str,
    host_name: str,
    device_name: str,
    matrix_name: str,
    experiment_id: str,
    table: str = TABLE_PLACEHOLDER,
) -> str:
    """One multi-row INSERT statement for the records of a single trial."""
    rows = []
    for r in records:
        values = (
            kernel_name,
            host_name,
            device_name,
            matrix_name,
            experiment_id,
            r.kind,
            r.trial,
            r.iteration,
            r.duration_ns,
            r.correctness,
            _dims(r.global_size),
            _dims(r.local_size),
        )
        rows.append("(" + ", ".join(_sql_literal(v) for v in values) + ")")
    return f"INSERT INTO {table} ({', '.join(SQL_COLUMNS)}) VALUES " + ", ".join(rows) + ";"


def build_query(results_dir: Path, table: str) -> str:
    """Collect INSERT statements from every query.sql below `results_dir`, retargeted at `table`."""
    statements: list[str] = []
    for path in sorted(results_dir.rglob("query.sql")):
        for line in path.read_text().splitlines():
            idx = line.find("INSERT")
            if idx < 0:
                continue
            statement = line[idx:]
            statements.append(statement.replace(f"INSERT INTO {TABLE_PLACEHOLDER} ", f"INSERT INTO {table} ", 1))
    return "\n".join(statements) + ("\n" if statements else "")
