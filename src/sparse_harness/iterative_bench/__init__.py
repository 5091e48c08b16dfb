"""Iterative sparse-matrix kernel benchmark.

This package drives an externally supplied accelerator kernel (e.g. BFS as
repeated sparse matrix-vector semiring products) to its fixed point, swapping
input/output buffers between launches, and records per-iteration device
timings plus per-trial median and sum for downstream reporting.
"""

from __future__ import annotations
