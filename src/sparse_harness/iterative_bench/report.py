from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from mdutils.mdutils import MdUtils  # type: ignore[import-untyped]

REPORT_TITLE = "Iterative Sparse Benchmark Report"

TRIAL_HEADER = ["trial", "iterations", "converged", "median_ns", "sum_ns", "correctness"]


def _load_results(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text())


def _dims(d: list[int]) -> str:
    return "x".join(str(v) for v in d)


def _best(trials: list[dict[str, Any]], key: str) -> int | None:
    values = [int(t[key]) for t in trials if key in t]
    return min(values) if values else None


def generate_report(results: dict[str, Any]) -> str:
    run = results.get("run", {})
    env = run.get("environment", {})
    kernel = run.get("kernel", {})
    matrix = run.get("matrix", {})

    md = MdUtils(file_name="report", title=REPORT_TITLE)
    md.new_list(
        [
            f"Experiment: `{run.get('experiment_id', '')}`",
            f"Kernel: `{kernel.get('name', '')}`",
            f"Matrix: `{matrix.get('name', '')}`",
            f"Device: `{env.get('device_name', '')}` ({env.get('backend', '')})",
            f"Host: `{env.get('host', '')}`",
            f"Commit: `{run.get('git', {}).get('commit', '')}`",
            f"Status: `{run.get('status', '')}`",
        ]
    )
    if run.get("failure_reason"):
        md.new_paragraph(f"Failures: {run['failure_reason']}")

    md.new_header(level=1, title="Summary")
    summary_header = ["global", "local", "trials", "best_median_ns", "best_sum_ns"]
    cells: list[str] = list(summary_header)
    for entry in results.get("runs", []):
        trials = entry.get("trials", [])
        best_median = _best(trials, "median_ns")
        best_sum = _best(trials, "sum_ns")
        cells += [
            _dims(entry["run"]["global"]),
            _dims(entry["run"]["local"]),
            str(len(trials)),
            "NA" if best_median is None else str(best_median),
            "NA" if best_sum is None else str(best_sum),
        ]
    md.new_table(columns=len(summary_header), rows=len(cells) // len(summary_header), text=cells, text_align="left")

    for entry in results.get("runs", []):
        md.new_header(level=2, title=f"Run global={_dims(entry['run']['global'])} local={_dims(entry['run']['local'])}")
        trial_cells: list[str] = list(TRIAL_HEADER)
        for t in entry.get("trials", []):
            trial_cells += [
                str(t["trial"]),
                str(t["iterations"]),
                "yes" if t["converged"] else "no",
                str(t["median_ns"]),
                str(t["sum_ns"]),
                t["correctness"],
            ]
        md.new_table(
            columns=len(TRIAL_HEADER), rows=len(trial_cells) // len(TRIAL_HEADER), text=trial_cells, text_align="left"
        )

    return md.get_md_text()


def report_run(*, out_dir: Path) -> int:
    results_path = out_dir / "results.json"
    if not results_path.exists():
        raise FileNotFoundError(f"Missing results.json: {results_path}")

    results = _load_results(results_path)
    (out_dir / "report.md").write_text(generate_report(results))
    return 0
