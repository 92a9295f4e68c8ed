"""
Device memory coordinator that mirrors host NumPy arrays on the device.

`HostMirroredMemoryCoordinator` gives the convolution layer device pointers for
host arrays by staging them on the GPU for the duration of one action:

1. `prepare_action` allocates one device buffer per distinct array and copies
   the array's memory span host-to-device.
2. `get_pointer` returns the device address of the array's first element.
3. `register_action` copies the span of every array that was both declared a
   write and reported modified back device-to-host, then frees all buffers.

Memory spans
------------
The span of an array is the range of bytes between its first and last
element, so a strided view is copied together with the gaps between its
elements. Its element strides are therefore identical on host and device,
which is what lets the layer describe device data with the host strides.
Negative strides are rejected with `InputError`.

Errors while staging free whatever was already allocated before propagating.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np

from ...domain._errors import CudnnLayerError, InputError
from ...domain._memory_coordinator import ActionContext

logger = logging.getLogger(__name__)


def host_span(a: np.ndarray) -> Tuple[int, int]:
    """
    Return `(host_address, nbytes)` of the memory covered by `a`.

    Raises
    ------
    InputError
        If `a` has a negative stride.
    """
    if a.size == 0:
        return 0, 0
    if any(s < 0 for s in a.strides):
        raise InputError(f"arrays with negative strides are not supported: {a.strides}")
    extent = sum((d - 1) * s for d, s in zip(a.shape, a.strides))
    return int(a.__array_interface__["data"][0]), int(extent + a.dtype.itemsize)


class HostMirroredMemoryCoordinator:
    """
    Stages host arrays on the device around each prepared action.

    Parameters
    ----------
    runtime : CudaRuntime
        CUDA runtime bindings used for allocation and copies.
    """

    def __init__(self, runtime: Any) -> None:
        self.runtime = runtime

    def prepare_action(
        self, *, reads: Sequence[Any] = (), writes: Sequence[Any] = ()
    ) -> ActionContext:
        ctx = ActionContext(reads=tuple(reads), writes=tuple(writes))
        staged: Dict[int, Tuple[np.ndarray, int, int, int]] = {}
        try:
            for a in ctx.tensors():
                if not isinstance(a, np.ndarray):
                    raise InputError(f"expected a numpy array, got {type(a)!r}")
                host_addr, nbytes = host_span(a)
                dev = self.runtime.malloc(nbytes) if nbytes else 0
                staged[id(a)] = (a, dev, host_addr, nbytes)
                self.runtime.memcpy_htod(dev, host_addr, nbytes)
        except CudnnLayerError:
            self._free(staged.values())
            raise
        ctx.state["staged"] = staged
        return ctx

    def get_pointer(self, tensor: Any, ctx: ActionContext) -> int:
        if ctx.closed:
            raise InputError("action has already been registered")
        try:
            return ctx.state["staged"][id(tensor)][1]
        except KeyError:
            raise InputError("tensor was not prepared in this action") from None

    def register_action(self, ctx: ActionContext, *modified: Any) -> None:
        if ctx.closed:
            return
        staged = ctx.state.get("staged", {})
        try:
            for a in modified:
                if not ctx.is_write(a):
                    continue
                _, dev, host_addr, nbytes = staged[id(a)]
                self.runtime.memcpy_dtoh(host_addr, dev, nbytes)
        finally:
            ctx.closed = True
            self._free(staged.values())

    def _free(self, entries) -> None:
        buffers: List[int] = [dev for _, dev, _, _ in entries if dev]
        for dev in buffers:
            self.runtime.free(dev)
        logger.debug("released %d staged device buffers", len(buffers))
