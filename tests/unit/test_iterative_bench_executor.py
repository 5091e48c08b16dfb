from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import numpy as np
import pytest

from conftest import FakeClock, int_vector_args
from sparse_harness.iterative_bench.device import DeviceError
from sparse_harness.iterative_bench.harness import Harness
from sparse_harness.iterative_bench.model import ArgContainer, Run

RUN = Run(global_size=[4], local_size=[2])


def _count_up_to(cap: int, clock: FakeClock, tick_ns: int = 10) -> Callable[..., None]:
    """Kernel writing min(x + 1, cap); reaches its fixed point at launch cap + 1 from zeros."""

    def _kernel(m_idxs, m_vals, x, y, alpha, beta, out, *rest, global_size, local_size) -> None:
        clock.now += tick_ns
        out.view(np.int32)[:] = np.minimum(x.view(np.int32) + 1, cap)

    return _kernel


def test_fixed_point_at_launch_k_yields_k_raw_records(make_harness: Callable[..., Harness], fake_clock: FakeClock) -> None:
    harness = make_harness(_count_up_to(3, fake_clock), int_vector_args([0, 0, 0, 0]), trials=1)

    [trial] = harness.benchmark(RUN)

    assert trial.iterations == 4
    assert trial.converged
    assert [r.iteration for r in trial.raw] == [0, 1, 2, 3]
    assert [r.kind for r in trial.records] == ["raw"] * 4 + ["median", "sum"]
    assert trial.summary("median").duration_ns == 10
    assert trial.summary("sum").duration_ns == 40
    assert np.frombuffer(harness.buffers.output_shadow, dtype=np.int32).tolist() == [3, 3, 3, 3]


def test_immediate_fixed_point_yields_one_record(make_harness: Callable[..., Harness], fake_clock: FakeClock) -> None:
    def _copy(m_idxs, m_vals, x, y, alpha, beta, out, *rest, global_size, local_size) -> None:
        fake_clock.now += 7
        out[:] = x

    harness = make_harness(_copy, int_vector_args([1, 2, 3, 4]), trials=3)

    trials = harness.benchmark(RUN)

    assert [t.iterations for t in trials] == [1, 1, 1]
    assert all(len(t.raw) == 1 for t in trials)
    assert all(t.summary("sum").duration_ns == 7 for t in trials)


def test_every_trial_restarts_from_initial_vectors(make_harness: Callable[..., Harness], fake_clock: FakeClock) -> None:
    harness = make_harness(_count_up_to(5, fake_clock), int_vector_args([0, 0, 0, 0]), trials=3)

    trials = harness.benchmark(RUN)

    assert [t.iterations for t in trials] == [6, 6, 6]
    assert [t.trial for t in trials] == [0, 1, 2]
    assert all(r.trial == t.trial for t in trials for r in t.records)


def test_roles_alternate_between_the_pingpong_pair(make_harness: Callable[..., Harness], fake_clock: FakeClock) -> None:
    launches: list[tuple[int, int]] = []
    step = _count_up_to(3, fake_clock)

    def _tracking(m_idxs, m_vals, x, y, alpha, beta, out, *rest, global_size, local_size) -> None:
        launches.append((x.ctypes.data, out.ctypes.data))
        step(m_idxs, m_vals, x, y, alpha, beta, out, *rest, global_size=global_size, local_size=local_size)

    harness = make_harness(_tracking, int_vector_args([0, 0, 0, 0]), trials=2)
    harness.benchmark(RUN)

    assert len(launches) == 8
    first_input, first_output = launches[0]
    assert first_input != first_output
    for prev, cur in zip(launches[:4], launches[1:4]):
        assert cur[0] == prev[1]
        assert cur[1] == prev[0]
    # The second trial starts from the initial roles again.
    assert launches[4] == (first_input, first_output)


def test_only_the_two_role_slots_are_rebound(make_harness: Callable[..., Harness], fake_clock: FakeClock) -> None:
    harness = make_harness(_count_up_to(3, fake_clock), int_vector_args([0, 0, 0, 0]), trials=1)
    device: Any = harness.device
    assert [i for i, _ in device.set_arg_calls] == list(range(len(harness.layout.slots)))

    device.set_arg_calls.clear()
    harness.benchmark(RUN)

    # Reset rebinds once, then each of the three swaps rebinds both roles.
    assert len(device.set_arg_calls) == 8
    assert {i for i, _ in device.set_arg_calls} == {2, 6}


def test_temp_globals_are_zero_before_every_launch(make_harness: Callable[..., Harness], fake_clock: FakeClock) -> None:
    seen: list[np.ndarray] = []
    step = _count_up_to(2, fake_clock)

    def _dirtying(m_idxs, m_vals, x, y, alpha, beta, out, temp, scratch, *sizes, global_size, local_size) -> None:
        seen.append(temp.copy())
        seen.append(scratch.copy())
        temp[:] = 0xFF
        scratch[:] = 0xFF
        step(m_idxs, m_vals, x, y, alpha, beta, out, global_size=global_size, local_size=local_size)

    args = int_vector_args([0, 0, 0, 0], temp_globals=(16,), temp_locals=(8,), size_args=(4,))
    harness = make_harness(_dirtying, args, trials=2)
    harness.benchmark(RUN)

    assert len(seen) == 2 * 2 * 3
    assert all(not buf.any() for buf in seen)


def test_iteration_ceiling_reports_non_convergence(
    make_harness: Callable[..., Harness], fake_clock: FakeClock, caplog: pytest.LogCaptureFixture
) -> None:
    def _diverge(m_idxs, m_vals, x, y, alpha, beta, out, *rest, global_size, local_size) -> None:
        fake_clock.now += 1
        out.view(np.int32)[:] = x.view(np.int32) + 1

    harness = make_harness(_diverge, int_vector_args([0, 0]), trials=1, max_iterations=5)
    with caplog.at_level(logging.WARNING):
        [trial] = harness.benchmark(Run(global_size=[2], local_size=[1]))

    assert not trial.converged
    assert trial.iterations == 5
    assert len(trial.raw) == 5
    assert trial.summary("sum").duration_ns == 5
    assert any("did not converge" in r.getMessage() for r in caplog.records)


def test_tolerance_comparison_stops_within_delta(make_harness: Callable[..., Harness], fake_clock: FakeClock) -> None:
    def _halve(m_idxs, m_vals, x, y, alpha, beta, out, *rest, global_size, local_size) -> None:
        fake_clock.now += 1
        out.view(np.float32)[:] = x.view(np.float32) * np.float32(0.5)

    vec = np.asarray([1.0, 1.0], dtype=np.float32).tobytes()
    args = ArgContainer(
        m_idxs=b"\x00" * 4,
        m_vals=b"\x00" * 4,
        x_vect=vec,
        y_vect=vec,
        alpha=1.0,
        beta=0.0,
        output_bytes=len(vec),
        semiring_dtype="float32",
    )
    run = Run(global_size=[2], local_size=[2])

    tolerant = make_harness(_halve, args, trials=1, comparison="tolerance", float_delta=0.1)
    [trial] = tolerant.benchmark(run)
    assert trial.converged
    assert trial.iterations == 4

    exact = make_harness(_halve, args, trials=1, max_iterations=10)
    [trial] = exact.benchmark(run)
    assert not trial.converged


def test_non_complete_event_status_is_logged(
    make_harness: Callable[..., Harness], caplog: pytest.LogCaptureFixture
) -> None:
    def _flaky(m_idxs, m_vals, x, y, alpha, beta, out, *rest, global_size, local_size) -> str:
        out[:] = x
        return "error"

    harness = make_harness(_flaky, int_vector_args([1, 1]), trials=1)
    with caplog.at_level(logging.WARNING, logger="sparse_harness.iterative_bench.invoker"):
        [trial] = harness.benchmark(Run(global_size=[2], local_size=[1]))

    assert len(trial.raw) == 1
    assert any("'error'" in r.getMessage() for r in caplog.records)


def test_kernel_exception_surfaces_as_device_error(make_harness: Callable[..., Harness]) -> None:
    def _broken(*args: Any, global_size: Any, local_size: Any) -> None:
        raise IndexError("out of range")

    harness = make_harness(_broken, int_vector_args([0, 0]), trials=1)
    with pytest.raises(DeviceError, match="out of range"):
        harness.benchmark(Run(global_size=[2], local_size=[1]))


def test_work_shape_must_divide_evenly(make_harness: Callable[..., Harness], fake_clock: FakeClock) -> None:
    harness = make_harness(_count_up_to(1, fake_clock), int_vector_args([0, 0]), trials=1)
    with pytest.raises(DeviceError, match="not a multiple"):
        harness.benchmark(Run(global_size=[3], local_size=[2]))
