from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import numpy as np

from .model import Correctness

logger = logging.getLogger(__name__)

MAX_REPORTED_MISMATCHES = 20


def check_result(output: bytes | bytearray, gold: Sequence[Any] | np.ndarray | None, *, dtype: str = "int32") -> Correctness:
    """Compare a downloaded output buffer against an optional gold vector.

    Mismatches are logged (expected/actual/index); the scan stops after
    `MAX_REPORTED_MISMATCHES` of them.
    """
    if gold is None or len(gold) == 0:
        logger.info("No gold vector supplied; result not checked")
        return "not_checked"

    dt = np.dtype(dtype)
    actual = np.frombuffer(output, dtype=dt, count=len(output) // dt.itemsize)
    expected = np.asarray(gold, dtype=dt)
    if actual.size < expected.size:
        logger.error("Output holds %d elements, gold has %d", actual.size, expected.size)
        return "bad_length"

    errors = 0
    for i in np.flatnonzero(actual[: expected.size] != expected):
        logger.error("Expected gold value %s at index %d, found %s instead", expected[i], i, actual[i])
        errors += 1
        if errors == MAX_REPORTED_MISMATCHES:
            break
    if errors > 0:
        return "bad_values"
    return "correct"
