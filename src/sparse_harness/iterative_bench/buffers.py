from __future__ import annotations

import logging
from collections import deque

from .device import BufferHandle, Device, DeviceEvent, LocalArg
from .model import ArgContainer, TransferTiming

logger = logging.getLogger(__name__)

# Positions of the ping-pong pair; roles are indices into these two slots.
X_SLOT = 0
OUTPUT_SLOT = 1

MAX_DIAGNOSTICS = 4096


class DeviceBufferSet:
    """Device-resident buffers for one harness plus their host shadows.

    The ping-pong pair is the `x` vector buffer and the `output` buffer. The
    input/output roles are integer indices into that fixed pair and are swapped
    by exchanging the indices; buffer ownership never moves.
    """

    def __init__(self, device: Device, args: ArgContainer) -> None:
        self.device = device
        self.args = args

        self.matrix_idxs: BufferHandle | None = None
        self.matrix_vals: BufferHandle | None = None
        self.y_vect: BufferHandle | None = None
        self.pingpong: tuple[BufferHandle, BufferHandle] | None = None
        self.temp_globals: list[BufferHandle] = []
        self.temp_locals: list[LocalArg] = [LocalArg(n) for n in args.temp_locals]

        self.shadows: tuple[bytearray, bytearray] = (bytearray(args.x_vect), bytearray(args.output_bytes))
        self.compare_buffer = bytearray(args.output_bytes)

        self.input_index = X_SLOT
        self.output_index = OUTPUT_SLOT

        self.diagnostics: deque[TransferTiming] = deque(maxlen=MAX_DIAGNOSTICS)

    # -- roles ---------------------------------------------------------------

    @property
    def input_handle(self) -> BufferHandle:
        return self._pair()[self.input_index]

    @property
    def output_handle(self) -> BufferHandle:
        return self._pair()[self.output_index]

    @property
    def input_shadow(self) -> bytearray:
        return self.shadows[self.input_index]

    @property
    def output_shadow(self) -> bytearray:
        return self.shadows[self.output_index]

    def swap_roles(self) -> None:
        self.input_index, self.output_index = self.output_index, self.input_index

    def reset_roles(self) -> None:
        self.input_index = X_SLOT
        self.output_index = OUTPUT_SLOT

    def _pair(self) -> tuple[BufferHandle, BufferHandle]:
        if self.pingpong is None:
            raise RuntimeError("Buffers not allocated; call allocate() first")
        return self.pingpong

    def _y_handle(self) -> BufferHandle:
        if self.y_vect is None:
            raise RuntimeError("Buffers not allocated; call allocate() first")
        return self.y_vect

    # -- device operations ---------------------------------------------------

    def _record(self, op: str, nbytes: int, event: DeviceEvent) -> None:
        elapsed = event.elapsed_ns
        logger.debug("%s of %d bytes took %d ns", op, nbytes, elapsed)
        self.diagnostics.append(TransferTiming(op=op, nbytes=nbytes, elapsed_ns=elapsed))

    def _upload(self, handle: BufferHandle, data: bytes | bytearray) -> None:
        self._record("write", len(data), self.device.write_buffer(handle, data))

    def _create_and_upload(self, data: bytes, *, read_only: bool) -> BufferHandle:
        handle = self.device.create_buffer(len(data), read_only=read_only)
        self._upload(handle, data)
        return handle

    def _zero(self, handle: BufferHandle) -> None:
        self._record("fill", handle.nbytes, self.device.fill_buffer(handle, handle.nbytes, 0))

    def allocate(self) -> None:
        args = self.args
        logger.debug("allocating matrix buffers")
        self.matrix_idxs = self._create_and_upload(args.m_idxs, read_only=True)
        self.matrix_vals = self._create_and_upload(args.m_vals, read_only=True)

        logger.debug("allocating vector buffers")
        x_vect = self._create_and_upload(args.x_vect, read_only=False)
        self.y_vect = self._create_and_upload(args.y_vect, read_only=False)
        output = self.device.create_buffer(args.output_bytes)
        self._zero(output)
        self.pingpong = (x_vect, output)

        logger.debug("allocating %d temp global buffers", len(args.temp_globals))
        self.temp_globals = []
        for size in args.temp_globals:
            handle = self.device.create_buffer(size)
            self._zero(handle)
            self.temp_globals.append(handle)

    def reset(self) -> None:
        """Restore vectors, shadows and roles to their generator-produced state."""
        pair = self._pair()
        self.shadows[X_SLOT][:] = self.args.x_vect
        self.shadows[OUTPUT_SLOT][:] = bytes(self.args.output_bytes)
        self.reset_roles()

        self._upload(pair[X_SLOT], self.args.x_vect)
        self._upload(self._y_handle(), self.args.y_vect)
        self._zero(pair[OUTPUT_SLOT])
        self.reset_temp_buffers()

    def reset_temp_buffers(self) -> None:
        for handle in self.temp_globals:
            self._zero(handle)

    def download_output(self) -> None:
        shadow = self.output_shadow
        self._record("read", len(shadow), self.device.read_buffer(self.output_handle, shadow))

    def snapshot_output(self) -> None:
        self.compare_buffer[:] = self.output_shadow

    def output_changed(self) -> bool:
        return self.compare_buffer != self.output_shadow
