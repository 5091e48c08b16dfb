from __future__ import annotations

import logging
from typing import Any, Literal

import attrs
import numpy as np

from .buffers import DeviceBufferSet
from .device import Device
from .model import ArgContainer

logger = logging.getLogger(__name__)

ArgKind = Literal["global", "scalar", "local", "size"]
ArgBinding = Literal["static", "input", "output"]


@attrs.define(frozen=True, slots=True)
class ArgSlot:
    index: int
    role: str
    kind: ArgKind
    binding: ArgBinding = "static"

    @property
    def dynamic(self) -> bool:
        return self.binding != "static"


@attrs.define(frozen=True, slots=True)
class ArgumentLayout:
    """Ordered kernel parameter table, built once per Argument Container.

    Order: m_idxs, m_vals, x, y, alpha, beta, output, temp_global[i]...,
    temp_local[i]..., size[i].... The `x` slot follows the input role and the
    `output` slot follows the output role; everything else is static.
    """

    slots: tuple[ArgSlot, ...]

    @classmethod
    def for_args(cls, args: ArgContainer) -> ArgumentLayout:
        entries: list[tuple[str, ArgKind, ArgBinding]] = [
            ("m_idxs", "global", "static"),
            ("m_vals", "global", "static"),
            ("x", "global", "input"),
            ("y", "global", "static"),
            ("alpha", "scalar", "static"),
            ("beta", "scalar", "static"),
            ("output", "global", "output"),
        ]
        entries += [(f"temp_global[{i}]", "global", "static") for i in range(len(args.temp_globals))]
        entries += [(f"temp_local[{i}]", "local", "static") for i in range(len(args.temp_locals))]
        entries += [(f"size[{i}]", "size", "static") for i in range(len(args.size_args))]
        return cls(slots=tuple(ArgSlot(index=i, role=r, kind=k, binding=b) for i, (r, k, b) in enumerate(entries)))

    @property
    def dynamic_slots(self) -> tuple[ArgSlot, ...]:
        return tuple(s for s in self.slots if s.dynamic)

    def slot(self, role: str) -> ArgSlot:
        for s in self.slots:
            if s.role == role:
                return s
        raise KeyError(f"No argument slot with role {role!r}")


def _indexed(role: str) -> int:
    return int(role[role.index("[") + 1 : -1])


class KernelArgumentBinder:
    def __init__(self, device: Device, kernel: Any, layout: ArgumentLayout, buffers: DeviceBufferSet) -> None:
        self.device = device
        self.kernel = kernel
        self.layout = layout
        self.buffers = buffers

    def _value(self, slot: ArgSlot) -> Any:
        buffers = self.buffers
        args = buffers.args
        if slot.binding == "input":
            return buffers.input_handle
        if slot.binding == "output":
            return buffers.output_handle
        if slot.role == "m_idxs":
            return buffers.matrix_idxs
        if slot.role == "m_vals":
            return buffers.matrix_vals
        if slot.role == "y":
            return buffers.y_vect
        if slot.role in ("alpha", "beta"):
            return np.dtype(args.semiring_dtype).type(getattr(args, slot.role))
        if slot.role.startswith("temp_global["):
            return buffers.temp_globals[_indexed(slot.role)]
        if slot.role.startswith("temp_local["):
            return buffers.temp_locals[_indexed(slot.role)]
        if slot.role.startswith("size["):
            return np.uint32(args.size_args[_indexed(slot.role)])
        raise KeyError(f"Unknown argument role {slot.role!r}")

    def _set(self, slot: ArgSlot) -> None:
        value = self._value(slot)
        logger.debug("setting arg %d (%s, %s)", slot.index, slot.role, slot.kind)
        self.device.set_arg(self.kernel, slot.index, value)

    def bind_all(self) -> None:
        for slot in self.layout.slots:
            self._set(slot)

    def rebind_roles(self) -> None:
        """Re-point the input and output slots at the buffers currently holding those roles."""
        for slot in self.layout.dynamic_slots:
            self._set(slot)
