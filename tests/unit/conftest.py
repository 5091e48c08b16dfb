from __future__ import annotations

from collections.abc import Callable
from typing import Any

import numpy as np
import pytest

from sparse_harness.iterative_bench.config import HarnessSettings, KernelConfig
from sparse_harness.iterative_bench.device import HostDevice
from sparse_harness.iterative_bench.harness import Harness
from sparse_harness.iterative_bench.model import ArgContainer


class FakeClock:
    """Device clock that only advances when a scripted kernel says so."""

    def __init__(self) -> None:
        self.now = 0

    def __call__(self) -> int:
        return self.now


class RecordingHostDevice(HostDevice):
    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.set_arg_calls: list[tuple[int, Any]] = []

    def set_arg(self, kernel: Any, index: int, value: Any) -> None:
        self.set_arg_calls.append((index, value))
        super().set_arg(kernel, index, value)


def int_vector_args(
    x: list[int],
    *,
    temp_globals: tuple[int, ...] = (),
    temp_locals: tuple[int, ...] = (),
    size_args: tuple[int, ...] = (),
) -> ArgContainer:
    x_bytes = np.asarray(x, dtype=np.int32).tobytes()
    return ArgContainer(
        m_idxs=np.zeros(4, dtype=np.int32).tobytes(),
        m_vals=np.zeros(4, dtype=np.int32).tobytes(),
        x_vect=x_bytes,
        y_vect=x_bytes,
        alpha=1,
        beta=0,
        output_bytes=len(x_bytes),
        temp_globals=temp_globals,
        temp_locals=temp_locals,
        size_args=size_args,
        semiring_dtype="int32",
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_harness(fake_clock: FakeClock) -> Callable[..., Harness]:
    """Build a Harness on a RecordingHostDevice running `kernel_fn` as kernel "scripted"."""

    def _make(kernel_fn: Callable[..., Any], args: ArgContainer, **settings: Any) -> Harness:
        device = RecordingHostDevice(kernels={"scripted": kernel_fn}, clock=fake_clock)
        cfg = KernelConfig(name="scripted", entry="unused:unused")
        return Harness(device, cfg, args, HarnessSettings(**settings))

    return _make
