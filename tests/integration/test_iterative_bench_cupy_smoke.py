from __future__ import annotations

import importlib.util
import json
from pathlib import Path

import numpy as np
import pytest
import scipy.io
import scipy.sparse

from sparse_harness.iterative_bench.config import HarnessSettings
from sparse_harness.iterative_bench.export import validate_results_schema
from sparse_harness.iterative_bench.runner import benchmark_run

REPO_ROOT = Path(__file__).resolve().parents[2]


def _has_cuda_device() -> bool:
    if importlib.util.find_spec("cupy") is None:
        return False
    import cupy

    try:
        return cupy.cuda.runtime.getDeviceCount() > 0
    except cupy.cuda.runtime.CUDARuntimeError:
        return False


@pytest.mark.integration
def test_cupy_bfs_smoke(tmp_path: Path) -> None:
    if not _has_cuda_device():
        pytest.skip("requires cupy and a CUDA device")

    n = 64
    rows = np.arange(1, n)
    cols = np.arange(0, n - 1)
    matrix = scipy.sparse.coo_matrix((np.ones(2 * (n - 1)), (np.r_[rows, cols], np.r_[cols, rows])), shape=(n, n))
    matrix_path = tmp_path / "chain.mtx"
    scipy.io.mmwrite(str(matrix_path), matrix)
    runfile = tmp_path / "runs.csv"
    runfile.write_text("64,32\n")

    out_dir = tmp_path / "out"
    rc = benchmark_run(
        out_dir=out_dir,
        matrix_path=matrix_path,
        kernel_path=REPO_ROOT / "kernels" / "bfs_ell_cuda.json",
        runfile=runfile,
        settings=HarnessSettings(trials=2),
        backend="cupy",
        experiment_id="cupy-smoke",
        gold="reference",
    )

    assert rc == 0
    results = json.loads((out_dir / "results.json").read_text())
    validate_results_schema(results)
    assert results["run"]["environment"]["backend"] == "cupy"
    [entry] = results["runs"]
    assert all(t["iterations"] == n for t in entry["trials"])
    assert all(t["correctness"] == "correct" for t in entry["trials"])
