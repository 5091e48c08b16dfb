from __future__ import annotations

import csv
import json
import os
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Literal

import attrs
import numpy as np
from jsonschema import Draft202012Validator

from .model import ComparisonMode, Run

SizeName = Literal["rows", "cols", "width", "nnz", "one"]

SIZE_NAMES: tuple[str, ...] = ("rows", "cols", "width", "nnz", "one")
COMPARISON_MODES: tuple[str, ...] = ("exact", "tolerance")

DEFAULT_TRIALS = 10
DEFAULT_TIMEOUT_MS = 1000
DEFAULT_FLOAT_DELTA = 0.0
DEFAULT_MAX_ITERATIONS = 10_000
DEFAULT_MAX_ALLOC_BYTES = 1 * 1024 * 1024 * 1024  # 1 GiB per buffer
DEFAULT_BACKEND_ENV = "SPARSE_HARNESS_BACKEND"

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"


def default_backend() -> str:
    return os.environ.get(DEFAULT_BACKEND_ENV, "host")


def _positive(_inst: Any, attribute: attrs.Attribute, value: int) -> None:
    if value < 1:
        raise ValueError(f"{attribute.name} must be >= 1, got {value}")


def _optional_positive(_inst: Any, attribute: attrs.Attribute, value: int | None) -> None:
    if value is not None and value < 1:
        raise ValueError(f"{attribute.name} must be >= 1 or None, got {value}")


@attrs.define(frozen=True, slots=True)
class HarnessSettings:
    trials: int = attrs.field(default=DEFAULT_TRIALS, validator=_positive)
    timeout_ms: int = attrs.field(default=DEFAULT_TIMEOUT_MS, validator=_positive)
    # Only used by the "tolerance" comparison.
    float_delta: float = DEFAULT_FLOAT_DELTA
    comparison: ComparisonMode = attrs.field(default="exact", validator=attrs.validators.in_(COMPARISON_MODES))
    # None means iterate until the fixed point, however long that takes.
    max_iterations: int | None = attrs.field(default=DEFAULT_MAX_ITERATIONS, validator=_optional_positive)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trials": self.trials,
            "timeout_ms": self.timeout_ms,
            "float_delta": self.float_delta,
            "comparison": self.comparison,
            "max_iterations": self.max_iterations,
        }


@attrs.define(frozen=True, slots=True)
class TempGlobalSpec:
    """Size of a temporary global buffer: `element_bytes` per `scale` unit."""

    scale: SizeName
    element_bytes: int

    def nbytes(self, sizes: dict[str, int]) -> int:
        return sizes[self.scale] * self.element_bytes


@attrs.define(frozen=True, slots=True)
class KernelConfig:
    name: str
    entry: str
    source_path: Path | None = None
    semiring_dtype: str = "int32"
    temp_globals: tuple[TempGlobalSpec, ...] = ()
    temp_locals: tuple[int, ...] = ()
    size_args: tuple[SizeName, ...] = ("rows", "width")

    def __attrs_post_init__(self) -> None:
        np.dtype(self.semiring_dtype)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "entry": self.entry,
            "source": None if self.source_path is None else str(self.source_path),
            "semiring_dtype": self.semiring_dtype,
            "temp_globals": [{"scale": t.scale, "element_bytes": t.element_bytes} for t in self.temp_globals],
            "temp_locals": list(self.temp_locals),
            "size_args": list(self.size_args),
        }


def load_schema(name: str) -> dict[str, Any]:
    return json.loads((SCHEMAS_DIR / name).read_text())


def kernel_config_from_dict(obj: dict[str, Any], *, base_dir: Path | None = None) -> KernelConfig:
    Draft202012Validator(load_schema("kernel.schema.json")).validate(obj)

    source_path: Path | None = None
    if obj.get("source"):
        source_path = Path(obj["source"]).expanduser()
        if not source_path.is_absolute() and base_dir is not None:
            source_path = base_dir / source_path
        source_path = source_path.resolve()

    return KernelConfig(
        name=obj["name"],
        entry=obj["entry"],
        source_path=source_path,
        semiring_dtype=obj.get("semiring_dtype", "int32"),
        temp_globals=tuple(TempGlobalSpec(scale=t["scale"], element_bytes=t["element_bytes"]) for t in obj.get("temp_globals", [])),
        temp_locals=tuple(obj.get("temp_locals", [])),
        size_args=tuple(obj.get("size_args", ["rows", "width"])),
    )


def load_kernel_config(path: Path) -> KernelConfig:
    """Load and validate a kernel config JSON; relative sources resolve against its folder."""
    if not path.exists():
        raise FileNotFoundError(f"Kernel config not found: {path}")
    return kernel_config_from_dict(json.loads(path.read_text()), base_dir=path.parent)


def parse_run_row(values: list[str]) -> Run:
    """Parse `g1,l1`, `g1,g2,l1,l2` or `g1,g2,g3,l1,l2,l3` into a Run."""
    dims = [int(v) for v in values]
    if len(dims) not in (2, 4, 6):
        raise ValueError(f"Invalid run row {values!r}: expected 2, 4 or 6 integers")
    half = len(dims) // 2
    return Run(global_size=dims[:half], local_size=dims[half:])


def iter_runs(lines: Iterable[str]) -> Iterable[Run]:
    for row in csv.reader(lines):
        cells = [c.strip() for c in row]
        if not cells or not cells[0] or cells[0].startswith("#"):
            continue
        yield parse_run_row(cells)


def load_runfile(path: Path) -> list[Run]:
    if not path.exists():
        raise FileNotFoundError(f"Runfile not found: {path}")
    with path.open(newline="") as f:
        runs = list(iter_runs(f))
    if not runs:
        raise ValueError(f"Runfile contains no runs: {path}")
    return runs
