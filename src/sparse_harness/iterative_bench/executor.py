"""
Iterate a kernel to its fixed point.

One trial walks the states

    Resetting -> Executing-Iteration -> Checking-Termination
              -> (Swapping-Roles -> Executing-Iteration)* -> Terminated

Every device step blocks, so the termination check always sees the fully
downloaded output of the launch that just finished.
"""

from __future__ import annotations

import abc
import logging

import attrs
import numpy as np

from .binding import KernelArgumentBinder
from .buffers import DeviceBufferSet
from .invoker import KernelInvoker
from .model import ComparisonMode, Run, TimingRecord

logger = logging.getLogger(__name__)


@attrs.define(frozen=True, slots=True)
class RunOutcome:
    raw: tuple[TimingRecord, ...]
    iterations: int
    converged: bool


def _as_vector(buf: bytes | bytearray, dtype: np.dtype) -> np.ndarray:
    return np.frombuffer(buf, dtype=dtype, count=len(buf) // dtype.itemsize)


def vectors_equal(input_buf: bytes | bytearray, output_buf: bytes | bytearray, dtype: str | np.dtype) -> bool:
    """Bitwise equality of the common prefix of two vectors of `dtype` elements."""
    dt = np.dtype(dtype)
    n = min(len(input_buf), len(output_buf)) // dt.itemsize * dt.itemsize
    return memoryview(input_buf)[:n] == memoryview(output_buf)[:n]


def vectors_close(
    input_buf: bytes | bytearray, output_buf: bytes | bytearray, dtype: str | np.dtype, delta: float
) -> bool:
    """True when every paired element of the common prefix differs by at most `delta`."""
    dt = np.dtype(dtype)
    a = _as_vector(input_buf, dt)
    b = _as_vector(output_buf, dt)
    n = min(a.size, b.size)
    diff = np.abs(a[:n].astype(np.float64) - b[:n].astype(np.float64))
    return bool(np.all(diff <= delta))


class RunStrategy(abc.ABC):
    """How one trial of a Run is executed and when it stops."""

    @abc.abstractmethod
    def execute_one_run(self, run: Run, trial: int) -> RunOutcome: ...

    @abc.abstractmethod
    def should_terminate(self, input_buf: bytes | bytearray, output_buf: bytes | bytearray) -> bool: ...


class FixedPointStrategy(RunStrategy):
    """Relaunch with swapped input/output buffers until the output stops changing."""

    def __init__(
        self,
        buffers: DeviceBufferSet,
        binder: KernelArgumentBinder,
        invoker: KernelInvoker,
        *,
        comparison: ComparisonMode = "exact",
        float_delta: float = 0.0,
        max_iterations: int | None = None,
    ) -> None:
        if comparison not in ("exact", "tolerance"):
            raise ValueError(f"Unknown comparison mode: {comparison!r}")
        self.buffers = buffers
        self.binder = binder
        self.invoker = invoker
        self.comparison = comparison
        self.float_delta = float_delta
        self.max_iterations = max_iterations
        self.dtype = np.dtype(buffers.args.semiring_dtype)

    def should_terminate(self, input_buf: bytes | bytearray, output_buf: bytes | bytearray) -> bool:
        if self.comparison == "tolerance":
            return vectors_close(input_buf, output_buf, self.dtype, self.float_delta)
        return vectors_equal(input_buf, output_buf, self.dtype)

    def reset(self) -> None:
        self.buffers.reset()
        self.binder.rebind_roles()

    def execute_one_run(self, run: Run, trial: int) -> RunOutcome:
        buffers = self.buffers
        self.reset()

        raw: list[TimingRecord] = []
        iteration = 0
        while self.max_iterations is None or iteration < self.max_iterations:
            logger.debug("Trial %d iteration %d", trial, iteration)

            buffers.snapshot_output()
            buffers.reset_temp_buffers()
            duration = self.invoker.invoke(run)
            raw.append(
                TimingRecord(
                    duration_ns=duration,
                    correctness="not_checked",
                    global_size=run.global_size,
                    local_size=run.local_size,
                    kind="raw",
                    trial=trial,
                    iteration=iteration,
                )
            )
            buffers.download_output()
            if not buffers.output_changed():
                logger.debug("Output buffer unchanged by iteration %d", iteration)

            if self.should_terminate(buffers.input_shadow, buffers.output_shadow):
                logger.debug("Trial %d reached its fixed point after %d iterations", trial, iteration + 1)
                return RunOutcome(raw=tuple(raw), iterations=iteration + 1, converged=True)

            buffers.swap_roles()
            self.binder.rebind_roles()
            iteration += 1

        logger.warning("Trial %d did not converge within %d iterations", trial, self.max_iterations)
        return RunOutcome(raw=tuple(raw), iterations=iteration, converged=False)
