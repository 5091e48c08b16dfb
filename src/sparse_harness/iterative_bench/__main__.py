from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .config import (
    COMPARISON_MODES,
    DEFAULT_FLOAT_DELTA,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_TRIALS,
    HarnessSettings,
    default_backend,
)
from .device import BACKENDS, DeviceError
from .export import build_query
from .report import report_run
from .runner import benchmark_run
from .sweep import sweep_run


def _abs_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _add_benchmark_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--runs", type=_abs_path, required=True, help="Runfile: one work shape per line (g1,l1 / g1,g2,l1,l2 / g1,g2,g3,l1,l2,l3).")
    p.add_argument("--backend", default=default_backend(), choices=list(BACKENDS), help="Device backend (env: SPARSE_HARNESS_BACKEND).")
    p.add_argument("--device", type=int, default=0, help="Device index within the backend.")
    p.add_argument("--trials", type=int, default=DEFAULT_TRIALS)
    p.add_argument("--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS, help="Initial (advisory) timeout, lowered from observed timings.")
    p.add_argument("--float-delta", type=float, default=DEFAULT_FLOAT_DELTA, help="Tolerance for --comparison tolerance.")
    p.add_argument("--comparison", default="exact", choices=list(COMPARISON_MODES), help="Fixed-point test between iterations.")
    p.add_argument("--max-iterations", type=int, default=DEFAULT_MAX_ITERATIONS, help="Iteration ceiling per trial (0 = unbounded).")
    p.add_argument("--hostname", default=None, help="Host name recorded in results (default: this host).")
    p.add_argument("--experiment-id", default=None, help="Experiment id (default: <git commit>-<timestamp>).")
    p.add_argument("--gold", default=None, help="Gold vector file (.npy or text), or 'reference' to compute BFS levels.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sparse_harness.iterative_bench",
        description="Iterative sparse-matrix kernel benchmark (fixed-point iteration, per-iteration timings).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Benchmark one matrix with one kernel over a runfile.")
    run.add_argument("--out-dir", type=_abs_path, required=True)
    run.add_argument("--matrix", type=_abs_path, required=True, help="Matrix Market (.mtx) file.")
    run.add_argument("--matrix-name", default=None, help="Name recorded in results (default: file stem).")
    run.add_argument("--kernel", type=_abs_path, required=True, help="Kernel config JSON.")
    _add_benchmark_args(run)

    sweep = sub.add_parser("sweep", help="Benchmark every dataset x kernel pair.")
    sweep.add_argument("--out-dir", type=_abs_path, required=True)
    sweep.add_argument("--datasets", type=_abs_path, required=True, help="Folder with datasets.txt and <name>/<name>.mtx.")
    sweep.add_argument("--kernels", type=_abs_path, required=True, help="Folder of kernel config JSON files.")
    _add_benchmark_args(sweep)

    report = sub.add_parser("report", help="Regenerate report.md from results.json (no benchmark run).")
    report.add_argument("--out-dir", type=_abs_path, required=True)

    query = sub.add_parser("query", help="Collect INSERT statements from a results folder into one SQL file.")
    query.add_argument("--results", type=_abs_path, required=True)
    query.add_argument("--table", required=True)
    query.add_argument("--out", type=_abs_path, default=None, help="Output file (default: stdout).")

    return parser


def _settings(ns: argparse.Namespace) -> HarnessSettings:
    return HarnessSettings(
        trials=ns.trials,
        timeout_ms=ns.timeout_ms,
        float_delta=ns.float_delta,
        comparison=ns.comparison,
        max_iterations=ns.max_iterations or None,
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    ns = parser.parse_args(argv)
    _configure_logging(ns.verbose)

    try:
        if ns.cmd == "run":
            return benchmark_run(
                out_dir=ns.out_dir,
                matrix_path=ns.matrix,
                kernel_path=ns.kernel,
                runfile=ns.runs,
                settings=_settings(ns),
                backend=ns.backend,
                device_index=ns.device,
                matrix_name=ns.matrix_name,
                host_name=ns.hostname,
                experiment_id=ns.experiment_id,
                gold=ns.gold,
            )
        if ns.cmd == "sweep":
            return sweep_run(
                out_dir=ns.out_dir,
                datasets_dir=ns.datasets,
                kernels_dir=ns.kernels,
                runfile=ns.runs,
                settings=_settings(ns),
                backend=ns.backend,
                device_index=ns.device,
                host_name=ns.hostname,
                experiment_id=ns.experiment_id,
                gold=ns.gold,
            )
    except DeviceError as e:
        print(f"Device failure: {e}", file=sys.stderr)
        return 1

    if ns.cmd == "report":
        return report_run(out_dir=ns.out_dir)
    if ns.cmd == "query":
        sql = build_query(ns.results, ns.table)
        if ns.out is None:
            sys.stdout.write(sql)
        else:
            ns.out.write_text(sql)
        return 0

    raise AssertionError(f"Unhandled cmd: {ns.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
