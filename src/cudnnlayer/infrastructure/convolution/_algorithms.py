"""
Algorithm selection and scratch workspace management.

Algorithm selection
-------------------
cuDNN ranks candidate algorithms by measured/estimated speed. The layer always
takes the fastest usable entry with no memory cap; the workspace allocator then
sizes scratch memory for whatever was chosen.

On the backward pass a single backward-filter selection is made per call and,
unless the layer is configured otherwise, that same id is used for the
backward-data workspace query and execution as well. Filter and data
algorithms are separate enumerations in cuDNN, so the reused id may name a
different (or unsupported) data algorithm. The layer keeps this behavior by
default and logs it; `separate_backward_data_algorithm=True` queries a
dedicated backward-data algorithm instead.

Workspace
---------
`acquire_workspace` is a context manager: the buffer is released on every exit
path, including when an operation that uses it fails.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Sequence

from ...domain._errors import ConfigurationError
from ..native_cuda.python.cudnn_ctypes import CUDNN_STATUS_SUCCESS, AlgorithmPerf
from ._cudnn_context import CudnnContext

logger = logging.getLogger(__name__)


def _fastest(perfs: Sequence[AlgorithmPerf], what: str) -> int:
    for perf in perfs:
        if perf.status == CUDNN_STATUS_SUCCESS:
            return int(perf.algo)
    raise ConfigurationError(
        f"no usable {what} algorithm for the configured descriptors",
        call=what,
    )


def select_forward_algorithm(ctx: CudnnContext) -> int:
    """Fastest forward algorithm for the src/filter/conv/dst descriptors."""
    perfs = ctx.lib.get_convolution_forward_algorithm_v7(
        ctx.handle, ctx.src.handle, ctx.filter.handle, ctx.conv.handle, ctx.dst.handle
    )
    algo = _fastest(perfs, "cudnnGetConvolutionForwardAlgorithm_v7")
    logger.debug("forward algorithm: %d", algo)
    return algo


def select_backward_filter_algorithm(ctx: CudnnContext) -> int:
    """Fastest backward-filter algorithm for the src/delta/conv/filter descriptors."""
    perfs = ctx.lib.get_convolution_backward_filter_algorithm_v7(
        ctx.handle, ctx.src.handle, ctx.delta.handle, ctx.conv.handle, ctx.filter.handle
    )
    algo = _fastest(perfs, "cudnnGetConvolutionBackwardFilterAlgorithm_v7")
    logger.debug("backward filter algorithm: %d", algo)
    return algo


def select_backward_data_algorithm(ctx: CudnnContext) -> int:
    """Fastest backward-data algorithm for the filter/delta/conv/dst descriptors."""
    perfs = ctx.lib.get_convolution_backward_data_algorithm_v7(
        ctx.handle, ctx.filter.handle, ctx.delta.handle, ctx.conv.handle, ctx.dst.handle
    )
    algo = _fastest(perfs, "cudnnGetConvolutionBackwardDataAlgorithm_v7")
    logger.debug("backward data algorithm: %d", algo)
    return algo


@dataclass(frozen=True)
class BackwardAlgorithms:
    """
    Algorithm ids used by one backward call.

    Attributes
    ----------
    filter_algo : int
        Backward-filter algorithm.
    data_algo : int
        Backward-data algorithm.
    reused : bool
        True when `data_algo` is the backward-filter id reused as-is.
    """

    filter_algo: int
    data_algo: int
    reused: bool


def select_backward_algorithms(
    ctx: CudnnContext, *, separate_data_algorithm: bool = False
) -> BackwardAlgorithms:
    """
    Select the backward-filter algorithm, and the backward-data one.

    The backward-data query needs the destination descriptor configured, so
    call this after `describe_destination` when `separate_data_algorithm` is
    set.
    """
    filter_algo = select_backward_filter_algorithm(ctx)
    if separate_data_algorithm:
        return BackwardAlgorithms(
            filter_algo=filter_algo,
            data_algo=select_backward_data_algorithm(ctx),
            reused=False,
        )
    logger.debug(
        "reusing backward filter algorithm %d for backward data", filter_algo
    )
    return BackwardAlgorithms(filter_algo=filter_algo, data_algo=filter_algo, reused=True)


def forward_workspace_size(ctx: CudnnContext, algo: int) -> int:
    return int(
        ctx.lib.get_convolution_forward_workspace_size(
            ctx.handle, ctx.src.handle, ctx.filter.handle, ctx.conv.handle,
            ctx.dst.handle, algo,
        )
    )


def backward_filter_workspace_size(ctx: CudnnContext, algo: int) -> int:
    return int(
        ctx.lib.get_convolution_backward_filter_workspace_size(
            ctx.handle, ctx.src.handle, ctx.delta.handle, ctx.conv.handle,
            ctx.filter.handle, algo,
        )
    )


def backward_data_workspace_size(ctx: CudnnContext, algo: int) -> int:
    return int(
        ctx.lib.get_convolution_backward_data_workspace_size(
            ctx.handle, ctx.filter.handle, ctx.delta.handle, ctx.conv.handle,
            ctx.dst.handle, algo,
        )
    )


@dataclass(frozen=True)
class Workspace:
    """Device scratch buffer; `ptr == 0` when no workspace is needed."""

    ptr: int
    nbytes: int


@contextmanager
def acquire_workspace(runtime, nbytes: int) -> Iterator[Workspace]:
    """
    Allocate `nbytes` of device scratch memory for the duration of a block.

    No allocation happens when `nbytes` is zero. The buffer is freed when the
    block exits, normally or by exception.

    Raises
    ------
    AllocationError
        If the device cannot provide the memory.
    """
    nbytes = int(nbytes)
    if nbytes <= 0:
        yield Workspace(ptr=0, nbytes=0)
        return

    ptr = runtime.malloc(nbytes)
    logger.debug("allocated %d byte workspace at 0x%x", nbytes, ptr)
    try:
        yield Workspace(ptr=ptr, nbytes=nbytes)
    finally:
        runtime.free(ptr)
