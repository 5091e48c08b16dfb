from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import numpy as np

from .binding import ArgumentLayout, KernelArgumentBinder
from .buffers import DeviceBufferSet
from .config import HarnessSettings, KernelConfig
from .correctness import check_result
from .device import Device
from .executor import FixedPointStrategy, RunStrategy
from .invoker import KernelInvoker
from .model import ArgContainer, Correctness, Run, TimingRecord, TrialResult

logger = logging.getLogger(__name__)

NS_PER_MS = 1_000_000


def median_duration(durations: Sequence[int]) -> int:
    """Middle element after sorting; for even counts the upper of the two middle elements."""
    if not durations:
        raise ValueError("median of an empty trial")
    return sorted(durations)[len(durations) // 2]


def aggregate_trial(raw: Sequence[TimingRecord], run: Run, trial: int, correctness: Correctness = "not_checked") -> tuple[TimingRecord, ...]:
    """Append the median and sum records to a trial's raw records."""
    durations = [r.duration_ns for r in raw]
    median = TimingRecord(
        duration_ns=median_duration(durations),
        correctness=correctness,
        global_size=run.global_size,
        local_size=run.local_size,
        kind="median",
        trial=trial,
    )
    total = TimingRecord(
        duration_ns=sum(durations),
        correctness=correctness,
        global_size=run.global_size,
        local_size=run.local_size,
        kind="sum",
        trial=trial,
    )
    return (*raw, median, total)


class Harness:
    """Owns one device context, kernel and buffer set; benchmarks Runs against them."""

    def __init__(self, device: Device, kernel_cfg: KernelConfig, args: ArgContainer, settings: HarnessSettings | None = None) -> None:
        self.device = device
        self.kernel_cfg = kernel_cfg
        self.args = args
        self.settings = HarnessSettings() if settings is None else settings
        self.timeout_ms = self.settings.timeout_ms

        logger.info("Running on device: %s", device.name)
        self.kernel = device.create_kernel(kernel_cfg)
        self.buffers = DeviceBufferSet(device, args)
        self.buffers.allocate()
        self.layout = ArgumentLayout.for_args(args)
        self.binder = KernelArgumentBinder(device, self.kernel, self.layout, self.buffers)
        self.binder.bind_all()
        self.invoker = KernelInvoker(device, self.kernel)
        self.strategy: RunStrategy = FixedPointStrategy(
            self.buffers,
            self.binder,
            self.invoker,
            comparison=self.settings.comparison,
            float_delta=self.settings.float_delta,
            max_iterations=self.settings.max_iterations,
        )

    @property
    def device_name(self) -> str:
        return self.device.name

    def lower_timeout(self, measured_ns: int) -> None:
        """Lower the tracked timeout to twice `measured_ns` (whole ms, at least 1) when smaller.

        A 2x margin absorbs run-to-run noise. The timeout is advisory; nothing
        in the iteration loop enforces it.
        """
        doubled_ms = max(1, (measured_ns // NS_PER_MS) * 2)
        if doubled_ms < self.timeout_ms:
            logger.debug("Lowering timeout from %d ms to %d ms", self.timeout_ms, doubled_ms)
            self.timeout_ms = doubled_ms

    def check_result(self, gold: Sequence[Any] | np.ndarray | None) -> Correctness:
        return check_result(self.buffers.output_shadow, gold, dtype=self.args.semiring_dtype)

    def benchmark(self, run: Run, gold: Sequence[Any] | np.ndarray | None = None) -> list[TrialResult]:
        results: list[TrialResult] = []
        for trial in range(self.settings.trials):
            outcome = self.strategy.execute_one_run(run, trial)
            correctness = self.check_result(gold)
            records = aggregate_trial(outcome.raw, run, trial, correctness)
            result = TrialResult(
                trial=trial,
                records=records,
                iterations=outcome.iterations,
                converged=outcome.converged,
                correctness=correctness,
            )
            self.lower_timeout(result.summary("sum").duration_ns)
            logger.info(
                "Trial %d: %d iterations, median %d ns, sum %d ns, %s%s",
                trial,
                result.iterations,
                result.summary("median").duration_ns,
                result.summary("sum").duration_ns,
                correctness,
                "" if result.converged else " (did not converge)",
            )
            results.append(result)
        return results
