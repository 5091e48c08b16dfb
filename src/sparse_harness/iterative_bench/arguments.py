"""Build the kernel Argument Container from a sparse matrix and vector generators."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import attrs
import numpy as np
import scipy.io
import scipy.sparse
from scipy.sparse import csgraph

from .config import DEFAULT_MAX_ALLOC_BYTES, KernelConfig
from .model import ArgContainer

logger = logging.getLogger(__name__)


@attrs.define(frozen=True, slots=True)
class EllMatrix:
    """ELLPACK encoding: row-major `rows x width` index/value planes, padded with -1 / 0."""

    idxs: np.ndarray
    vals: np.ndarray
    rows: int
    cols: int
    nnz: int

    @property
    def width(self) -> int:
        return int(self.idxs.shape[1])

    def sizes(self) -> dict[str, int]:
        return {"rows": self.rows, "cols": self.cols, "width": self.width, "nnz": self.nnz, "one": 1}


def load_matrix(path: Path) -> scipy.sparse.csr_matrix:
    if not path.exists():
        raise FileNotFoundError(f"Matrix file not found: {path}")
    m = scipy.sparse.csr_matrix(scipy.io.mmread(str(path)))
    m.sum_duplicates()
    m.eliminate_zeros()
    m.sort_indices()
    logger.info("Loaded matrix %s: %dx%d, %d non-zeros", path.name, m.shape[0], m.shape[1], m.nnz)
    return m


def encode_ell(matrix: Any, *, dtype: str = "int32") -> EllMatrix:
    csr = scipy.sparse.csr_matrix(matrix)
    csr.sum_duplicates()
    csr.sort_indices()
    rows, cols = csr.shape
    row_nnz = np.diff(csr.indptr)
    width = max(int(row_nnz.max(initial=0)), 1)

    idxs = np.full((rows, width), -1, dtype=np.int32)
    vals = np.zeros((rows, width), dtype=np.dtype(dtype))
    row_of = np.repeat(np.arange(rows), row_nnz)
    slot = np.arange(csr.nnz) - np.repeat(csr.indptr[:-1], row_nnz)
    idxs[row_of, slot] = csr.indices
    vals[row_of, slot] = csr.data.astype(dtype, copy=False)
    return EllMatrix(idxs=idxs, vals=vals, rows=int(rows), cols=int(cols), nnz=int(csr.nnz))


def initial_distances(length: int, *, dtype: str = "int32", source: int = 0, fill: int = 0) -> np.ndarray:
    """BFS start vector: 1 at `source`, `fill` everywhere else."""
    v = np.full(length, fill, dtype=np.dtype(dtype))
    if length:
        v[source] = 1
    return v


def reference_levels(matrix: Any, *, source: int = 0, dtype: str = "int32") -> np.ndarray:
    """Gold BFS levels (1 for the source, distance + 1 when reached, 0 otherwise).

    Row i of the matrix lists the vertices that vertex i is reached from.
    """
    csr = scipy.sparse.csr_matrix(matrix)
    dist = csgraph.shortest_path(csr.T.tocsr(), method="D", directed=True, unweighted=True, indices=source)
    levels = np.where(np.isinf(dist), 0, dist + 1)
    return levels.astype(np.dtype(dtype))


def load_gold(path: Path, *, dtype: str = "int32") -> np.ndarray:
    if not path.exists():
        raise FileNotFoundError(f"Gold vector not found: {path}")
    if path.suffix == ".npy":
        return np.load(path).astype(np.dtype(dtype), copy=False).ravel()
    return np.loadtxt(path, dtype=np.dtype(dtype), ndmin=1)


def _check_alloc(name: str, nbytes: int, max_alloc: int) -> None:
    if nbytes > max_alloc:
        raise ValueError(f"{name} needs {nbytes} bytes, above the {max_alloc}-byte allocation limit")


def build_arg_container(
    kernel_cfg: KernelConfig,
    ell: EllMatrix,
    *,
    x_vect: np.ndarray,
    y_vect: np.ndarray,
    alpha: int | float = 1,
    beta: int | float = 0,
    max_alloc: int = DEFAULT_MAX_ALLOC_BYTES,
) -> ArgContainer:
    dtype = np.dtype(kernel_cfg.semiring_dtype)
    sizes = ell.sizes()

    m_idxs = np.ascontiguousarray(ell.idxs, dtype=np.int32).tobytes()
    m_vals = np.ascontiguousarray(ell.vals, dtype=dtype).tobytes()
    x_bytes = np.ascontiguousarray(x_vect, dtype=dtype).tobytes()
    y_bytes = np.ascontiguousarray(y_vect, dtype=dtype).tobytes()
    output_bytes = ell.rows * dtype.itemsize
    temp_globals = tuple(t.nbytes(sizes) for t in kernel_cfg.temp_globals)

    for name, nbytes in [
        ("matrix indices", len(m_idxs)),
        ("matrix values", len(m_vals)),
        ("x vector", len(x_bytes)),
        ("y vector", len(y_bytes)),
        ("output", output_bytes),
        *((f"temp global {i}", n) for i, n in enumerate(temp_globals)),
    ]:
        _check_alloc(name, nbytes, max_alloc)

    return ArgContainer(
        m_idxs=m_idxs,
        m_vals=m_vals,
        x_vect=x_bytes,
        y_vect=y_bytes,
        alpha=alpha,
        beta=beta,
        output_bytes=output_bytes,
        temp_globals=temp_globals,
        temp_locals=kernel_cfg.temp_locals,
        size_args=tuple(sizes[name] for name in kernel_cfg.size_args),
        semiring_dtype=dtype.name,
    )


def bfs_arguments(kernel_cfg: KernelConfig, matrix: Any, *, max_alloc: int = DEFAULT_MAX_ALLOC_BYTES) -> ArgContainer:
    """Arguments for level-synchronous BFS from vertex 0 (alpha=1, beta=0)."""
    ell = encode_ell(matrix, dtype=kernel_cfg.semiring_dtype)
    x = initial_distances(ell.cols, dtype=kernel_cfg.semiring_dtype)
    y = initial_distances(ell.cols, dtype=kernel_cfg.semiring_dtype)
    return build_arg_container(kernel_cfg, ell, x_vect=x, y_vect=y, alpha=1, beta=0, max_alloc=max_alloc)
