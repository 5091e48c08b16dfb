from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import scipy.io
import scipy.sparse

from sparse_harness.iterative_bench.arguments import (
    bfs_arguments,
    build_arg_container,
    encode_ell,
    initial_distances,
    load_gold,
    load_matrix,
    reference_levels,
)
from sparse_harness.iterative_bench.config import HarnessSettings, KernelConfig, TempGlobalSpec
from sparse_harness.iterative_bench.device import HostDevice
from sparse_harness.iterative_bench.harness import Harness
from sparse_harness.iterative_bench.model import Run

BFS_KERNEL = KernelConfig(
    name="bfs_ell_host",
    entry="sparse_harness.iterative_bench.kernels:bfs_ell_step",
    temp_globals=(TempGlobalSpec(scale="one", element_bytes=4),),
)


def _path_graph() -> scipy.sparse.csr_matrix:
    """0-1-2-3 undirected chain plus an isolated vertex 4."""
    edges = [(0, 1), (1, 2), (2, 3)]
    rows = [a for a, b in edges] + [b for a, b in edges]
    cols = [b for a, b in edges] + [a for a, b in edges]
    return scipy.sparse.csr_matrix((np.ones(len(rows)), (rows, cols)), shape=(5, 5))


def test_encode_ell_pads_short_rows() -> None:
    ell = encode_ell(_path_graph())

    assert ell.width == 2
    assert ell.rows == 5 and ell.cols == 5 and ell.nnz == 6
    assert ell.idxs.tolist() == [[1, -1], [0, 2], [1, 3], [2, -1], [-1, -1]]
    assert ell.vals[4].tolist() == [0, 0]
    assert ell.sizes()["one"] == 1


def test_initial_distances_mark_only_the_source() -> None:
    assert initial_distances(4).tolist() == [1, 0, 0, 0]
    assert initial_distances(0).tolist() == []


def test_reference_levels_count_from_one() -> None:
    assert reference_levels(_path_graph()).tolist() == [1, 2, 3, 4, 0]


def test_reference_levels_follow_row_to_source_direction() -> None:
    # Row 1 lists column 0: vertex 1 is reached from vertex 0, not the other way round.
    m = scipy.sparse.csr_matrix(([1.0], ([1], [0])), shape=(2, 2))
    assert reference_levels(m).tolist() == [1, 2]
    assert reference_levels(m.T).tolist() == [1, 0]


def test_arg_container_sizes_follow_kernel_config() -> None:
    args = bfs_arguments(BFS_KERNEL, _path_graph())

    assert args.output_bytes == 5 * 4
    assert args.temp_globals == (4,)
    assert args.size_args == (5, 2)
    assert len(args.m_idxs) == 5 * 2 * 4
    assert np.frombuffer(args.x_vect, dtype=np.int32).tolist() == [1, 0, 0, 0, 0]
    assert args.semiring_dtype == "int32"


def test_allocation_limit_is_enforced() -> None:
    ell = encode_ell(_path_graph())
    x = initial_distances(5)
    with pytest.raises(ValueError, match="allocation limit"):
        build_arg_container(BFS_KERNEL, ell, x_vect=x, y_vect=x, max_alloc=16)


def test_bfs_on_host_device_matches_reference() -> None:
    matrix = _path_graph()
    harness = Harness(HostDevice(), BFS_KERNEL, bfs_arguments(BFS_KERNEL, matrix), HarnessSettings(trials=2))

    trials = harness.benchmark(Run(global_size=[8], local_size=[4]), reference_levels(matrix))

    assert [t.iterations for t in trials] == [4, 4]
    assert all(t.converged for t in trials)
    assert all(t.correctness == "correct" for t in trials)
    assert np.frombuffer(harness.buffers.output_shadow, dtype=np.int32).tolist() == [1, 2, 3, 4, 0]


def test_load_matrix_reads_matrix_market(tmp_path: Path) -> None:
    path = tmp_path / "chain.mtx"
    scipy.io.mmwrite(str(path), _path_graph())

    m = load_matrix(path)
    assert m.shape == (5, 5)
    assert m.nnz == 6

    with pytest.raises(FileNotFoundError):
        load_matrix(tmp_path / "missing.mtx")


def test_load_gold_reads_text_and_npy(tmp_path: Path) -> None:
    txt = tmp_path / "gold.txt"
    txt.write_text("1\n2\n0\n")
    assert load_gold(txt).tolist() == [1, 2, 0]

    npy = tmp_path / "gold.npy"
    np.save(npy, np.array([[1, 2], [3, 4]]))
    assert load_gold(npy).tolist() == [1, 2, 3, 4]
