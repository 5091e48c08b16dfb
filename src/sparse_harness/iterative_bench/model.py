from __future__ import annotations

from typing import Any, Literal

import attrs

Correctness = Literal["not_checked", "correct", "bad_length", "bad_values"]
RecordKind = Literal["raw", "median", "sum"]
EventStatus = Literal["queued", "submitted", "running", "complete", "error"]
ComparisonMode = Literal["exact", "tolerance"]

Dim3 = tuple[int, int, int]


def _dim3(value: Any) -> Dim3:
    dims = tuple(int(v) for v in value)
    if not 1 <= len(dims) <= 3:
        raise ValueError(f"Expected 1 to 3 dimensions, got {len(dims)}")
    return dims + (1,) * (3 - len(dims))  # type: ignore[return-value]


def _positive_dims(_inst: Any, attribute: attrs.Attribute, value: Dim3) -> None:
    if any(d < 1 for d in value):
        raise ValueError(f"{attribute.name} must be >= 1 in every dimension, got {value}")


@attrs.define(frozen=True, slots=True)
class Run:
    """One work-shape configuration (global and local sizes in work items)."""

    global_size: Dim3 = attrs.field(converter=_dim3, validator=_positive_dims)
    local_size: Dim3 = attrs.field(converter=_dim3, validator=_positive_dims)

    def __str__(self) -> str:
        g = ",".join(str(d) for d in self.global_size)
        loc = ",".join(str(d) for d in self.local_size)
        return f"global=({g}) local=({loc})"

    def to_dict(self) -> dict[str, Any]:
        return {"global": list(self.global_size), "local": list(self.local_size)}


@attrs.define(frozen=True, slots=True)
class ArgContainer:
    """Encoded kernel inputs for one benchmark program run.

    The matrix buffers and the two vectors are raw bytes; `temp_globals` and
    `temp_locals` hold byte sizes and `size_args` the integer size parameters
    passed after them.
    """

    m_idxs: bytes
    m_vals: bytes
    x_vect: bytes
    y_vect: bytes
    alpha: int | float
    beta: int | float
    output_bytes: int
    temp_globals: tuple[int, ...] = attrs.field(default=(), converter=tuple)
    temp_locals: tuple[int, ...] = attrs.field(default=(), converter=tuple)
    size_args: tuple[int, ...] = attrs.field(default=(), converter=tuple)
    semiring_dtype: str = "int32"


@attrs.define(frozen=True, slots=True)
class TimingRecord:
    duration_ns: int
    correctness: Correctness
    global_size: Dim3
    local_size: Dim3
    kind: RecordKind
    trial: int
    iteration: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_ns": self.duration_ns,
            "correctness": self.correctness,
            "global": list(self.global_size),
            "local": list(self.local_size),
            "kind": self.kind,
            "trial": self.trial,
            "iteration": self.iteration,
        }


@attrs.define(frozen=True, slots=True)
class TrialResult:
    trial: int
    records: tuple[TimingRecord, ...]
    iterations: int
    converged: bool
    correctness: Correctness = "not_checked"

    @property
    def raw(self) -> tuple[TimingRecord, ...]:
        return tuple(r for r in self.records if r.kind == "raw")

    def summary(self, kind: RecordKind) -> TimingRecord:
        for r in self.records:
            if r.kind == kind:
                return r
        raise KeyError(f"Trial {self.trial} has no {kind!r} record")

    def to_dict(self) -> dict[str, Any]:
        return {
            "trial": self.trial,
            "iterations": self.iterations,
            "converged": self.converged,
            "correctness": self.correctness,
            "median_ns": self.summary("median").duration_ns,
            "sum_ns": self.summary("sum").duration_ns,
            "records": [r.to_dict() for r in self.records],
        }


@attrs.define(frozen=True, slots=True)
class TransferTiming:
    """Device-measured duration of a buffer operation (diagnostics only)."""

    op: str
    nbytes: int
    elapsed_ns: int
