from __future__ import annotations

import logging
from typing import Any

from .device import Device
from .model import Run

logger = logging.getLogger(__name__)

_IN_FLIGHT = ("queued", "submitted", "running", "complete")


class KernelInvoker:
    """Launch the bound kernel once and return its device-measured duration."""

    def __init__(self, device: Device, kernel: Any) -> None:
        self.device = device
        self.kernel = kernel

    def invoke(self, run: Run) -> int:
        event = self.device.enqueue_kernel(self.kernel, run.global_size, run.local_size)
        if event.status in _IN_FLIGHT:
            logger.debug("Event %s", event.status)
        else:
            logger.warning("Kernel event finished with status %r", event.status)
        elapsed = event.elapsed_ns
        logger.debug("kernel took %d ns", elapsed)
        return elapsed
