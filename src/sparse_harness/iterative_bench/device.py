"""
Single-queue accelerator abstraction used by the iterative benchmark.

Every operation is blocking: it returns only after the device has finished and
hands back a `DeviceEvent` carrying the device-measured start/end timestamps.
Failures raise `DeviceError` at the failing call; there is no deferred error
state to inspect later.

Two backends are provided:

- `HostDevice`: NumPy-backed emulation. Buffers are `uint8` arrays and kernels
  are Python callables. Used for tests and as a CPU baseline.
- `CupyDevice`: CUDA via CuPy (`pip install sparse-harness[cuda]`). Kernels are
  compiled from the kernel config's source with `cupy.RawKernel` and timed with
  CUDA events.
"""

from __future__ import annotations

import abc
import importlib
import itertools
import logging
import math
import time
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, cast

import attrs
import numpy as np

from .model import Dim3, EventStatus

if TYPE_CHECKING:
    from .config import KernelConfig

logger = logging.getLogger(__name__)

BACKENDS: tuple[str, ...] = ("host", "cupy")

HostKernelFn = Callable[..., Any]


class DeviceError(RuntimeError):
    """Unrecoverable failure reported by the device API."""


@attrs.define(frozen=True, slots=True)
class BufferHandle:
    id: int
    nbytes: int
    read_only: bool = False


@attrs.define(frozen=True, slots=True)
class LocalArg:
    """Work-group local (scratch) memory, bound by size only."""

    nbytes: int


@attrs.define(frozen=True, slots=True)
class DeviceEvent:
    status: EventStatus
    start_ns: int
    end_ns: int

    @property
    def elapsed_ns(self) -> int:
        if self.end_ns < self.start_ns:
            raise DeviceError(f"Profiling timestamps out of order: start={self.start_ns} end={self.end_ns}")
        return self.end_ns - self.start_ns


class Device(abc.ABC):
    """In-order, single-queue device. All calls block until completion."""

    @property
    @abc.abstractmethod
    def name(self) -> str: ...

    @abc.abstractmethod
    def create_buffer(self, nbytes: int, *, read_only: bool = False) -> BufferHandle: ...

    @abc.abstractmethod
    def write_buffer(self, handle: BufferHandle, data: bytes | bytearray | memoryview) -> DeviceEvent: ...

    @abc.abstractmethod
    def read_buffer(self, handle: BufferHandle, out: bytearray) -> DeviceEvent: ...

    @abc.abstractmethod
    def fill_buffer(self, handle: BufferHandle, nbytes: int, pattern: int = 0) -> DeviceEvent: ...

    @abc.abstractmethod
    def create_kernel(self, kernel_cfg: KernelConfig) -> Any: ...

    @abc.abstractmethod
    def set_arg(self, kernel: Any, index: int, value: Any) -> None: ...

    @abc.abstractmethod
    def enqueue_kernel(self, kernel: Any, global_size: Dim3, local_size: Dim3) -> DeviceEvent: ...


def resolve_entry(entry: str) -> HostKernelFn:
    """Resolve a `"package.module:function"` entry point to a callable."""
    module_name, sep, attr = entry.partition(":")
    if not sep or not module_name or not attr:
        raise DeviceError(f"Host kernel entry must look like 'module:function', got {entry!r}")
    try:
        module = importlib.import_module(module_name)
        fn = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise DeviceError(f"Cannot load host kernel {entry!r}: {e}") from e
    if not callable(fn):
        raise DeviceError(f"Host kernel {entry!r} is not callable")
    return cast(HostKernelFn, fn)


@attrs.define(slots=True)
class HostKernel:
    name: str
    fn: HostKernelFn
    args: dict[int, Any] = attrs.field(factory=dict)


class HostDevice(Device):
    """NumPy-backed device emulation.

    Host kernels are called as ``fn(*args, global_size=..., local_size=...)``
    where global buffers arrive as ``uint8`` arrays (read-only buffers as
    non-writeable views), local args as fresh zeroed ``uint8`` arrays and
    scalars unchanged. A kernel may return an `EventStatus` string to report a
    non-complete launch status; returning None means "complete".
    """

    def __init__(
        self,
        *,
        name: str = "host-numpy",
        kernels: Mapping[str, HostKernelFn] | None = None,
        clock: Callable[[], int] = time.perf_counter_ns,
    ) -> None:
        self._name = name
        self._kernels = dict(kernels or {})
        self._clock = clock
        self._ids = itertools.count()
        self._storage: dict[int, np.ndarray] = {}

    @property
    def name(self) -> str:
        return self._name

    def _array(self, handle: BufferHandle) -> np.ndarray:
        try:
            return self._storage[handle.id]
        except KeyError:
            raise DeviceError(f"Invalid buffer handle: {handle}") from None

    def _timed(self, op: Callable[[], Any]) -> tuple[DeviceEvent, Any]:
        start = self._clock()
        result = op()
        end = self._clock()
        status: EventStatus = "complete" if result is None else cast(EventStatus, result)
        return DeviceEvent(status=status, start_ns=start, end_ns=end), result

    def create_buffer(self, nbytes: int, *, read_only: bool = False) -> BufferHandle:
        if nbytes < 0:
            raise DeviceError(f"Invalid buffer size: {nbytes}")
        handle = BufferHandle(id=next(self._ids), nbytes=nbytes, read_only=read_only)
        self._storage[handle.id] = np.zeros(nbytes, dtype=np.uint8)
        return handle

    def write_buffer(self, handle: BufferHandle, data: bytes | bytearray | memoryview) -> DeviceEvent:
        arr = self._array(handle)
        src = np.frombuffer(data, dtype=np.uint8)
        if src.size > arr.size:
            raise DeviceError(f"Write of {src.size} bytes exceeds buffer of {arr.size} bytes")

        def _op() -> None:
            arr[: src.size] = src

        event, _ = self._timed(_op)
        return event

    def read_buffer(self, handle: BufferHandle, out: bytearray) -> DeviceEvent:
        arr = self._array(handle)
        if len(out) > arr.size:
            raise DeviceError(f"Read of {len(out)} bytes exceeds buffer of {arr.size} bytes")

        def _op() -> None:
            out[:] = arr[: len(out)].tobytes()

        event, _ = self._timed(_op)
        return event

    def fill_buffer(self, handle: BufferHandle, nbytes: int, pattern: int = 0) -> DeviceEvent:
        arr = self._array(handle)
        if nbytes > arr.size:
            raise DeviceError(f"Fill of {nbytes} bytes exceeds buffer of {arr.size} bytes")

        def _op() -> None:
            arr[:nbytes] = pattern

        event, _ = self._timed(_op)
        return event

    def create_kernel(self, kernel_cfg: KernelConfig) -> HostKernel:
        fn = self._kernels.get(kernel_cfg.name) or resolve_entry(kernel_cfg.entry)
        return HostKernel(name=kernel_cfg.name, fn=fn)

    def set_arg(self, kernel: HostKernel, index: int, value: Any) -> None:
        if isinstance(value, BufferHandle):
            self._array(value)
        kernel.args[index] = value

    def _materialize(self, value: Any) -> Any:
        if isinstance(value, BufferHandle):
            arr = self._array(value)
            if value.read_only:
                view = arr.view()
                view.flags.writeable = False
                return view
            return arr
        if isinstance(value, LocalArg):
            return np.zeros(value.nbytes, dtype=np.uint8)
        return value

    def enqueue_kernel(self, kernel: HostKernel, global_size: Dim3, local_size: Dim3) -> DeviceEvent:
        for g, loc in zip(global_size, local_size):
            if g % loc != 0:
                raise DeviceError(f"Global size {global_size} is not a multiple of local size {local_size}")
        n_args = max(kernel.args, default=-1) + 1
        missing = [i for i in range(n_args) if i not in kernel.args]
        if missing:
            raise DeviceError(f"Kernel {kernel.name!r} has unset arguments: {missing}")
        args = [self._materialize(kernel.args[i]) for i in range(n_args)]

        def _op() -> Any:
            try:
                return kernel.fn(*args, global_size=global_size, local_size=local_size)
            except Exception as e:
                raise DeviceError(f"Kernel {kernel.name!r} failed: {e}") from e

        event, _ = self._timed(_op)
        return event


@attrs.define(slots=True)
class CupyKernel:
    name: str
    raw: Any
    args: dict[int, Any] = attrs.field(factory=dict)


class CupyDevice(Device):
    """CUDA device driven through CuPy.

    Local (scratch) arguments are folded into the launch's dynamic shared
    memory and are not passed positionally. Global sizes are in work items and
    converted to a grid of ``ceil(global / local)`` blocks.
    """

    def __init__(self, device_index: int = 0) -> None:
        try:
            import cupy
        except ImportError as e:
            raise DeviceError("The cupy backend needs CuPy: pip install 'sparse-harness[cuda]'") from e

        self._cp = cupy
        self._cuda_errors = (cupy.cuda.runtime.CUDARuntimeError, cupy.cuda.driver.CUDADriverError)
        try:
            count = cupy.cuda.runtime.getDeviceCount()
        except self._cuda_errors as e:
            raise DeviceError(f"No CUDA devices available: {e}") from e
        if count == 0:
            raise DeviceError("No CUDA devices found!")
        if not 0 <= device_index < count:
            raise DeviceError(f"Device index {device_index} out of range (found {count} devices)")
        logger.debug("Found %d CUDA devices", count)

        self._device = cupy.cuda.Device(device_index)
        self._device.use()
        props = cupy.cuda.runtime.getDeviceProperties(device_index)
        raw_name = props.get("name", b"unknown")
        self._name = raw_name.decode(errors="replace") if isinstance(raw_name, bytes) else str(raw_name)
        self._stream = cupy.cuda.Stream(non_blocking=False)
        self._ids = itertools.count()
        self._storage: dict[int, Any] = {}

    @property
    def name(self) -> str:
        return self._name

    def _array(self, handle: BufferHandle) -> Any:
        try:
            return self._storage[handle.id]
        except KeyError:
            raise DeviceError(f"Invalid buffer handle: {handle}") from None

    def _timed(self, op: Callable[[], None]) -> DeviceEvent:
        cp = self._cp
        start = cp.cuda.Event()
        end = cp.cuda.Event()
        try:
            with self._stream:
                start.record(self._stream)
                op()
                end.record(self._stream)
            end.synchronize()
            elapsed_ms = cp.cuda.get_elapsed_time(start, end)
        except self._cuda_errors as e:
            raise DeviceError(str(e)) from e
        status: EventStatus = "complete" if end.done else "running"
        return DeviceEvent(status=status, start_ns=0, end_ns=int(round(elapsed_ms * 1e6)))

    def create_buffer(self, nbytes: int, *, read_only: bool = False) -> BufferHandle:
        try:
            arr = self._cp.empty(nbytes, dtype=self._cp.uint8)
        except (self._cp.cuda.memory.OutOfMemoryError, *self._cuda_errors) as e:
            raise DeviceError(f"Failed to allocate {nbytes} bytes: {e}") from e
        handle = BufferHandle(id=next(self._ids), nbytes=nbytes, read_only=read_only)
        self._storage[handle.id] = arr
        return handle

    def write_buffer(self, handle: BufferHandle, data: bytes | bytearray | memoryview) -> DeviceEvent:
        arr = self._array(handle)
        src = np.frombuffer(data, dtype=np.uint8)
        if src.size > arr.size:
            raise DeviceError(f"Write of {src.size} bytes exceeds buffer of {arr.size} bytes")
        return self._timed(lambda: arr[: src.size].set(src, stream=self._stream))

    def read_buffer(self, handle: BufferHandle, out: bytearray) -> DeviceEvent:
        arr = self._array(handle)
        if len(out) > arr.size:
            raise DeviceError(f"Read of {len(out)} bytes exceeds buffer of {arr.size} bytes")
        host = np.empty(len(out), dtype=np.uint8)
        event = self._timed(lambda: arr[: len(out)].get(stream=self._stream, out=host))
        out[:] = host.tobytes()
        return event

    def fill_buffer(self, handle: BufferHandle, nbytes: int, pattern: int = 0) -> DeviceEvent:
        arr = self._array(handle)
        if nbytes > arr.size:
            raise DeviceError(f"Fill of {nbytes} bytes exceeds buffer of {arr.size} bytes")
        return self._timed(lambda: arr[:nbytes].fill(pattern))

    def create_kernel(self, kernel_cfg: KernelConfig) -> CupyKernel:
        if kernel_cfg.source_path is None:
            raise DeviceError(f"Kernel {kernel_cfg.name!r} has no source file for the cupy backend")
        source = kernel_cfg.source_path.read_text()
        try:
            raw = self._cp.RawKernel(source, kernel_cfg.entry)
            raw.compile()
        except Exception as e:
            raise DeviceError(f"Failed to build kernel {kernel_cfg.name!r}: {e}") from e
        return CupyKernel(name=kernel_cfg.name, raw=raw)

    def set_arg(self, kernel: CupyKernel, index: int, value: Any) -> None:
        kernel.args[index] = value

    def enqueue_kernel(self, kernel: CupyKernel, global_size: Dim3, local_size: Dim3) -> DeviceEvent:
        n_args = max(kernel.args, default=-1) + 1
        missing = [i for i in range(n_args) if i not in kernel.args]
        if missing:
            raise DeviceError(f"Kernel {kernel.name!r} has unset arguments: {missing}")

        positional: list[Any] = []
        shared_mem = 0
        for i in range(n_args):
            value = kernel.args[i]
            if isinstance(value, LocalArg):
                shared_mem += value.nbytes
            elif isinstance(value, BufferHandle):
                positional.append(self._array(value))
            else:
                positional.append(value)

        grid = tuple(math.ceil(g / loc) for g, loc in zip(global_size, local_size))
        # RawKernel launches on the current stream, which _timed has entered.
        return self._timed(lambda: kernel.raw(grid, tuple(local_size), tuple(positional), shared_mem=shared_mem))


def open_device(backend: str, *, device_index: int = 0, host_kernels: Mapping[str, HostKernelFn] | None = None) -> Device:
    if backend == "host":
        return HostDevice(kernels=host_kernels)
    if backend == "cupy":
        return CupyDevice(device_index)
    raise DeviceError(f"Unknown backend {backend!r}. Known: {list(BACKENDS)}")
