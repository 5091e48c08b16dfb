from __future__ import annotations

import logging
import socket
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import numpy as np

from .arguments import bfs_arguments, load_gold, load_matrix, reference_levels
from .config import DEFAULT_MAX_ALLOC_BYTES, HarnessSettings, KernelConfig, load_kernel_config, load_runfile
from .device import open_device
from .export import build_results, make_sql_command, utc_now_iso, write_results, write_timings_csv
from .harness import Harness
from .model import Run, TrialResult
from .report import generate_report

logger = logging.getLogger(__name__)

GOLD_REFERENCE = "reference"


def find_repo_root() -> Path:
    start = Path(__file__).resolve()
    for parent in start.parents:
        if (parent / "pyproject.toml").is_file():
            return parent
    return Path.cwd()


def git_info(repo_root: Path) -> dict[str, Any]:
    def _run(cmd: list[str]) -> str:
        out = subprocess.check_output(cmd, cwd=repo_root, stderr=subprocess.DEVNULL)
        return out.decode().strip()

    try:
        branch = _run(["git", "rev-parse", "--abbrev-ref", "HEAD"])
        commit = _run(["git", "rev-parse", "HEAD"])
        dirty = bool(_run(["git", "status", "--porcelain=v1"]))
        return {"branch": branch, "commit": commit, "dirty": dirty}
    except (OSError, subprocess.CalledProcessError):
        return {"branch": "unknown", "commit": "unknown", "dirty": False}


def default_experiment_id(repo_root: Path) -> str:
    """`<commit>-<timestamp>`, unique per invocation."""
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%SZ")
    return f"{git_info(repo_root)['commit']}-{now}"


def resolve_gold(gold: str | None, matrix: Any, kernel_cfg: KernelConfig) -> np.ndarray | None:
    if gold is None:
        return None
    if gold == GOLD_REFERENCE:
        return reference_levels(matrix, dtype=kernel_cfg.semiring_dtype)
    return load_gold(Path(gold), dtype=kernel_cfg.semiring_dtype)


def benchmark_run(
    *,
    out_dir: Path,
    matrix_path: Path,
    kernel_path: Path,
    runfile: Path,
    settings: HarnessSettings,
    backend: str,
    device_index: int = 0,
    matrix_name: str | None = None,
    host_name: str | None = None,
    experiment_id: str | None = None,
    gold: str | None = None,
    max_alloc: int = DEFAULT_MAX_ALLOC_BYTES,
    artifacts_dir: Path | None = None,
) -> int:
    """Benchmark one matrix x kernel pair over every Run in `runfile`.

    Artifacts (results.json, timings.csv, query.sql, report.md) are written
    only once every Run has finished; a device failure leaves `out_dir` empty.
    """
    started_at = utc_now_iso()
    repo_root = find_repo_root()
    matrix_name = matrix_name or matrix_path.stem
    host_name = host_name or socket.gethostname()
    experiment_id = experiment_id or default_experiment_id(repo_root)

    kernel_cfg = load_kernel_config(kernel_path)
    runs = load_runfile(runfile)
    matrix = load_matrix(matrix_path)
    args = bfs_arguments(kernel_cfg, matrix, max_alloc=max_alloc)
    gold_vect = resolve_gold(gold, matrix, kernel_cfg)

    device = open_device(backend, device_index=device_index)
    harness = Harness(device, kernel_cfg, args, settings)

    benchmarks: list[tuple[Run, list[TrialResult]]] = []
    statements: list[str] = []
    for run in runs:
        print(f"Benchmarking run: {run}")
        trials = harness.benchmark(run, gold_vect)
        benchmarks.append((run, trials))
        for t in trials:
            statements.append(
                make_sql_command(
                    t.records,
                    kernel_name=kernel_cfg.name,
                    host_name=host_name,
                    device_name=harness.device_name,
                    matrix_name=matrix_name,
                    experiment_id=experiment_id,
                )
            )

    results = build_results(
        benchmarks,
        experiment_id=experiment_id,
        host_name=host_name,
        device_name=harness.device_name,
        backend=backend,
        kernel_cfg=kernel_cfg,
        matrix={"name": matrix_name, "path": str(matrix_path), "rows": matrix.shape[0], "cols": matrix.shape[1], "nnz": int(matrix.nnz)},
        settings=settings,
        final_timeout_ms=harness.timeout_ms,
        git=git_info(repo_root),
        started_at=started_at,
        artifacts_dir=out_dir if artifacts_dir is None else artifacts_dir,
    )

    out_dir.mkdir(parents=True, exist_ok=True)
    write_results(out_dir / "results.json", results)
    write_timings_csv(out_dir / "timings.csv", results)
    (out_dir / "query.sql").write_text("\n".join(statements) + "\n")
    (out_dir / "report.md").write_text(generate_report(results))
    logger.info("Wrote results for %d runs to %s", len(runs), out_dir)

    return 0 if results["run"]["status"] == "pass" else 1
