"""
Per-call descriptor configuration for the cuDNN convolution layer.

A call first derives a `ConvGeometry` value from the input, the weights and
the layer configuration. The value is validated as a whole (positive sizes,
non-empty output) before any native call is issued, and only then applied
to the context's descriptors through `DescriptorConfigurator`.

Tensor descriptors for existing arrays always carry explicit per-dimension
strides, so non-contiguous inputs and deltas are described exactly as they
are laid out in memory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from ...domain._conv_config import ConvolutionLayerConfig
from ...domain._errors import ConfigurationError, InputError
from ..native_cuda.python.cudnn_ctypes import (
    CUDNN_CROSS_CORRELATION,
    CUDNN_TENSOR_NCHW,
)
from ..ops.layout import element_strides, out_size
from ._cudnn_context import CudnnContext, _Descriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConvGeometry:
    """
    Shapes and hyperparameters of one convolution call.

    Attributes
    ----------
    batch, in_depth, in_h, in_w : int
        Input dimensions (NCHW).
    out_depth : int
        Number of output channels.
    kernel, stride, padding : (int, int)
        Per-axis (height, width) hyperparameters.
    """

    batch: int
    in_depth: int
    in_h: int
    in_w: int
    out_depth: int
    kernel: Tuple[int, int]
    stride: Tuple[int, int]
    padding: Tuple[int, int]

    def __post_init__(self) -> None:
        dims = (self.batch, self.in_depth, self.in_h, self.in_w, self.out_depth)
        if min(dims) <= 0:
            raise ConfigurationError(
                f"convolution dimensions must be positive, got "
                f"batch={self.batch}, in_depth={self.in_depth}, "
                f"in=({self.in_h}, {self.in_w}), out_depth={self.out_depth}"
            )
        if self.out_h <= 0 or self.out_w <= 0:
            raise ConfigurationError(
                f"kernel {self.kernel} with padding {self.padding} does not fit "
                f"input ({self.in_h}, {self.in_w}): output would be "
                f"({self.out_h}, {self.out_w})"
            )

    @property
    def out_h(self) -> int:
        return out_size(self.in_h, self.kernel[0], self.stride[0], self.padding[0])

    @property
    def out_w(self) -> int:
        return out_size(self.in_w, self.kernel[1], self.stride[1], self.padding[1])

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        return (self.batch, self.in_depth, self.in_h, self.in_w)

    @property
    def output_shape(self) -> Tuple[int, int, int, int]:
        return (self.batch, self.out_depth, self.out_h, self.out_w)

    @property
    def filter_shape(self) -> Tuple[int, int, int, int]:
        return (self.out_depth, self.in_depth, self.kernel[0], self.kernel[1])

    @classmethod
    def from_arrays(
        cls, x: np.ndarray, weights: np.ndarray, config: ConvolutionLayerConfig
    ) -> "ConvGeometry":
        """
        Derive the geometry of a call from its input and weights.

        Raises
        ------
        InputError
            If `x`/`weights` are not 4D, or the weight kernel disagrees with
            the configured kernel size, or input depths do not match.
        """
        if x.ndim != 4:
            raise InputError(f"input must be 4D NCHW, got shape {x.shape}")
        if weights.ndim != 4:
            raise InputError(f"weights must be 4D OIHW, got shape {weights.shape}")
        n, c_in, h, w = (int(d) for d in x.shape)
        c_out, c_in_w, k_h, k_w = (int(d) for d in weights.shape)
        if c_in != c_in_w:
            raise InputError(
                f"in_depth mismatch: input has {c_in}, weights have {c_in_w}"
            )
        if (k_h, k_w) != tuple(config.kernel_size):
            raise InputError(
                f"weights kernel ({k_h}, {k_w}) does not match configured "
                f"kernel_size {config.kernel_size}"
            )
        return cls(
            batch=n,
            in_depth=c_in,
            in_h=h,
            in_w=w,
            out_depth=c_out,
            kernel=(k_h, k_w),
            stride=tuple(config.stride),
            padding=tuple(config.padding),
        )


class DescriptorConfigurator:
    """
    Applies per-call shapes to the descriptors of a `CudnnContext`.

    Parameters
    ----------
    context : CudnnContext
        Context whose descriptors are re-configured in place.
    """

    def __init__(self, context: CudnnContext) -> None:
        self.context = context

    def _describe_array(self, desc: _Descriptor, a: np.ndarray) -> None:
        if a.ndim != 4:
            raise InputError(f"expected a 4D NCHW array, got shape {a.shape}")
        n, c, h, w = (int(d) for d in a.shape)
        ns, cs, hs, ws = element_strides(a)
        desc.apply(
            "set_tensor4d_descriptor_ex",
            self.context.data_type,
            n, c, h, w,
            ns, cs, hs, ws,
        )

    def describe_source(self, x: np.ndarray) -> None:
        """Source tensor descriptor from an existing input array."""
        self._describe_array(self.context.src, x)

    def describe_delta(self, delta: np.ndarray, geometry: ConvGeometry) -> None:
        """Delta tensor descriptor; `delta` must have the forward output shape."""
        if tuple(delta.shape) != geometry.output_shape:
            raise InputError(
                f"error tensor shape {tuple(delta.shape)} does not match the "
                f"forward output shape {geometry.output_shape}"
            )
        self._describe_array(self.context.delta, delta)

    def describe_destination(self, a: np.ndarray) -> None:
        """Destination tensor descriptor from an already-allocated buffer."""
        self._describe_array(self.context.dst, a)

    def describe_filter(self, geometry: ConvGeometry) -> None:
        k, c, h, w = geometry.filter_shape
        self.context.filter.apply(
            "set_filter4d_descriptor",
            self.context.data_type,
            CUDNN_TENSOR_NCHW,
            k, c, h, w,
        )

    def describe_convolution(self, geometry: ConvGeometry) -> None:
        """Padding and stride from the geometry, dilation (1, 1), cross-correlation."""
        p_h, p_w = geometry.padding
        s_h, s_w = geometry.stride
        self.context.conv.apply(
            "set_convolution2d_descriptor",
            p_h, p_w,
            s_h, s_w,
            1, 1,
            CUDNN_CROSS_CORRELATION,
            self.context.data_type,
        )

    def describe_bias(self, out_depth: int) -> None:
        """Bias descriptor [1, out_depth, 1, 1], broadcast over batch and space."""
        self.context.bias.apply(
            "set_tensor4d_descriptor",
            CUDNN_TENSOR_NCHW,
            self.context.data_type,
            1, int(out_depth), 1, 1,
        )

    def query_forward_output_dims(self) -> Tuple[int, int, int, int]:
        """
        Ask the backend for the forward output shape of the configured
        source/filter/convolution descriptors. The result is authoritative
        for sizing the output buffer.
        """
        ctx = self.context
        dims = ctx.lib.get_convolution2d_forward_output_dim(
            ctx.conv.handle, ctx.src.handle, ctx.filter.handle
        )
        logger.debug("backend forward output dims: %s", dims)
        return tuple(int(d) for d in dims)

    def configure_forward(self, x: np.ndarray, geometry: ConvGeometry) -> None:
        """Source, filter and convolution descriptors for a forward call."""
        self.context.require_alive()
        self.describe_source(x)
        self.describe_filter(geometry)
        self.describe_convolution(geometry)

    def configure_backward(
        self, x: np.ndarray, delta: np.ndarray, geometry: ConvGeometry
    ) -> None:
        """Source, delta, convolution and filter descriptors for a backward call."""
        self.context.require_alive()
        self.describe_source(x)
        self.describe_delta(delta, geometry)
        self.describe_convolution(geometry)
        self.describe_filter(geometry)
