from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path

from .config import HarnessSettings
from .device import DeviceError
from .runner import benchmark_run, default_experiment_id, find_repo_root

logger = logging.getLogger(__name__)

DATASETS_INDEX = "datasets.txt"


def list_datasets(datasets_dir: Path) -> list[str]:
    index = datasets_dir / DATASETS_INDEX
    if not index.exists():
        raise FileNotFoundError(f"Missing dataset index: {index}")
    return [ln.strip() for ln in index.read_text().splitlines() if ln.strip() and not ln.lstrip().startswith("#")]


def list_kernels(kernels_dir: Path) -> list[Path]:
    kernels = sorted(kernels_dir.glob("*.json"))
    if not kernels:
        raise FileNotFoundError(f"No kernel configs (*.json) in {kernels_dir}")
    return kernels


def sweep_run(
    *,
    out_dir: Path,
    datasets_dir: Path,
    kernels_dir: Path,
    runfile: Path,
    settings: HarnessSettings,
    backend: str,
    device_index: int = 0,
    host_name: str | None = None,
    experiment_id: str | None = None,
    gold: str | None = None,
) -> int:
    """Benchmark every dataset x kernel pair into `<out_dir>/results-<experiment_id>/<matrix>/<kernel>/`.

    Pairs are written under `results-<experiment_id>.partial/` and the folder is
    renamed once every pair has finished. A device failure removes it.
    """
    experiment_id = experiment_id or default_experiment_id(find_repo_root())
    datasets = list_datasets(datasets_dir)
    kernels = list_kernels(kernels_dir)
    root = out_dir / f"results-{experiment_id}"
    staging = out_dir / f"results-{experiment_id}.partial"
    if staging.exists():
        shutil.rmtree(staging)
    task_count = len(datasets) * len(kernels)
    print(f"taskcount: {task_count}")

    start = time.monotonic()
    failed: list[str] = []
    task = 0
    try:
        for matrix_name in datasets:
            matrix_path = datasets_dir / matrix_name / f"{matrix_name}.mtx"
            for kernel_path in kernels:
                print(f"Processing matrix: {matrix_name} - {task}/{task_count} with kernel {kernel_path.stem}")
                run_start = time.monotonic()
                rc = benchmark_run(
                    out_dir=staging / matrix_name / kernel_path.stem,
                    matrix_path=matrix_path,
                    kernel_path=kernel_path,
                    runfile=runfile,
                    settings=settings,
                    backend=backend,
                    device_index=device_index,
                    matrix_name=matrix_name,
                    host_name=host_name,
                    experiment_id=experiment_id,
                    gold=gold,
                    artifacts_dir=root / matrix_name / kernel_path.stem,
                )
                if rc != 0:
                    failed.append(f"{matrix_name}/{kernel_path.stem}")
                now = time.monotonic()
                print(f"Run took {now - run_start:.1f} seconds, total time of {now - start:.1f} seconds")
                task += 1
    except DeviceError:
        logger.error("Device failure; discarding partial results in %s", staging)
        shutil.rmtree(staging, ignore_errors=True)
        raise

    if root.exists():
        shutil.rmtree(root)
    if staging.exists():
        staging.rename(root)

    if failed:
        logger.warning("%d of %d tasks reported failures: %s", len(failed), task_count, ", ".join(failed))
    print("finished experiments")
    return 0 if not failed else 1
