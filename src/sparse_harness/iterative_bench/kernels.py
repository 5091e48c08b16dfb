"""Host (NumPy) kernels for the `host` backend.

Kernels follow the fixed parameter layout bound by `binding.ArgumentLayout`:
``(m_idxs, m_vals, x, y, alpha, beta, output, *temp_globals, *temp_locals, *size_args)``.
Buffers arrive as raw ``uint8`` arrays and are reinterpreted here.
"""

from __future__ import annotations

from typing import Any

import numpy as np


def bfs_ell_step(
    m_idxs: np.ndarray,
    m_vals: np.ndarray,
    x: np.ndarray,
    y: np.ndarray,
    alpha: Any,
    beta: Any,
    output: np.ndarray,
    *rest: Any,
    global_size: tuple[int, int, int],
    local_size: tuple[int, int, int],
) -> None:
    """One level-synchronous BFS step over an ELL matrix.

    Expects ``size_args = (rows, width)`` and an optional first temporary
    global buffer that receives the number of newly reached vertices.
    The whole matrix is processed regardless of the work shape.
    """
    rows, width = int(rest[-2]), int(rest[-1])
    temps = rest[:-2]

    idxs = m_idxs.view(np.int32).reshape(rows, width)
    dist_in = x.view(np.int32)
    dist_out = output.view(np.int32)

    valid = idxs >= 0
    neighbour = np.where(valid, dist_in[np.where(valid, idxs, 0)], 0)
    reached = np.where(neighbour > 0, neighbour, np.iinfo(np.int32).max).min(axis=1)
    own = dist_in[:rows]
    new_level = np.where(reached < np.iinfo(np.int32).max, reached + 1, 0)
    dist_out[:rows] = np.where(own > 0, own, new_level)

    if temps and isinstance(temps[0], np.ndarray) and temps[0].size >= 4:
        counter = temps[0][:4].view(np.int32)
        counter[0] += int(np.count_nonzero((own == 0) & (new_level > 0)))
