"""
cuDNN-backed 2D convolution layer.

`CudnnConvolutionLayer` executes the forward and backward passes of a
convolution layer through cuDNN. It owns one `CudnnContext` for its whole
lifetime and re-configures that context's descriptors on every call.

Forward (`pre_output` / `activate`)
-----------------------------------
1. Describe source, filter and convolution; ask cuDNN for the output dims.
2. Allocate an uninitialized C-order output buffer of those dims and describe
   it as the destination.
3. Select the fastest forward algorithm; size and scope its workspace.
4. Convolution forward (alpha 1, beta 0: overwrite), then bias add
   (alpha 1, beta 1: add onto the result).
5. `activate` additionally runs the activation post-processor.

Backward (`backprop_gradient`)
------------------------------
1. identity activation: `delta` IS `epsilon`. Otherwise the pre-activation is
   recomputed, replaced in place by the activation derivative and multiplied
   in place by `epsilon`.
2. A delta whose strides are neither C- nor F-ordered is densely copied.
3. Bias, filter and data gradients are computed unconditionally, all with
   overwrite semantics, sharing one workspace sized for the larger of the
   filter/data requirements.

Device access
-------------
Every group of native calls touching host arrays runs inside one
`device_action` (one prepare, one register on the memory coordinator).

Thread Safety
-------------
Calls on one instance are serialized by a re-entrant lock; the descriptor
context is shared mutable state. Use one instance per execution lane for
parallelism.

Notes
-----
- The backward-filter algorithm id is reused for the backward-data pass unless
  `separate_backward_data_algorithm` is configured.
- Dropout/drop-connect are not applied here.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional, Tuple

import numpy as np

from ...domain._conv_config import ConvolutionLayerConfig
from ...domain._errors import InputError
from ...domain._memory_coordinator import IDeviceMemoryCoordinator
from ...domain._parameter_store import BIAS_KEY, WEIGHT_KEY, IParameterStore
from .._parameter_store import Gradient
from ..native_cuda.python.cudnn_ctypes import data_type_for, scaling_factor
from ..ops.layout import with_supported_layout
from ._activation import ActivationPostProcessor, derivative_in_place
from ._algorithms import (
    acquire_workspace,
    backward_data_workspace_size,
    backward_filter_workspace_size,
    forward_workspace_size,
    select_backward_algorithms,
    select_forward_algorithm,
)
from ._cudnn_context import CudnnContext
from ._descriptors import ConvGeometry, DescriptorConfigurator
from ._device_action import device_action

logger = logging.getLogger(__name__)


class CudnnConvolutionLayer:
    """
    Two-dimensional convolution layer (NCHW) executed by cuDNN.

    Parameters
    ----------
    config : ConvolutionLayerConfig
        Kernel size, stride, padding, activation and dtype.
    params : IParameterStore
        Source of the weights ("W", shape [outDepth, inDepth, kH, kW], C order)
        and bias ("b", shape [outDepth]) and of their gradient views.
    coordinator : IDeviceMemoryCoordinator, optional
        Provides device pointers for host arrays. Defaults to a
        `HostMirroredMemoryCoordinator` over `runtime`.
    cudnn : CudnnLib, optional
        cuDNN bindings. Loaded from the system when omitted.
    runtime : CudaRuntime, optional
        CUDA runtime bindings (workspace allocation). Loaded when omitted.

    Raises
    ------
    ConfigurationError
        If the activation name has no implementation.
    InitializationError
        If the cuDNN handle or descriptors cannot be created.
    """

    def __init__(
        self,
        config: ConvolutionLayerConfig,
        params: IParameterStore,
        coordinator: Optional[IDeviceMemoryCoordinator] = None,
        *,
        cudnn: Any = None,
        runtime: Any = None,
        _context: Optional[CudnnContext] = None,
    ) -> None:
        self.config = config
        self.params = params
        self.dtype = np.dtype(config.dtype)
        self._activation = ActivationPostProcessor(config.parsed_activation)

        if cudnn is None:
            from ..native_cuda.python.cudnn_ctypes import CudnnLib

            cudnn = CudnnLib()
        if runtime is None:
            from ..native_cuda.python.cudart_ctypes import CudaRuntime

            runtime = CudaRuntime()
        if coordinator is None:
            from ..memory._host_mirrored_coordinator import (
                HostMirroredMemoryCoordinator,
            )

            coordinator = HostMirroredMemoryCoordinator(runtime)

        self.cudnn = cudnn
        self.runtime = runtime
        self.coordinator = coordinator
        self.context = (
            _context
            if _context is not None
            else CudnnContext(cudnn, data_type_for(config.dtype))
        )
        self._descriptors = DescriptorConfigurator(self.context)
        self._lock = threading.RLock()

    # -----------------------------------------------------------------
    # input and parameter access
    # -----------------------------------------------------------------

    def _as_input(self, a: Any, name: str) -> np.ndarray:
        if a is None:
            raise InputError(f"No null {name} allowed")
        if not isinstance(a, np.ndarray):
            raise InputError(f"{name} must be a numpy array, got {type(a)!r}")
        return a.astype(self.dtype, copy=False)

    def _checked_param(self, a: Any, key: str, what: str) -> np.ndarray:
        if not isinstance(a, np.ndarray):
            raise InputError(f"{what} {key!r} must be a numpy array, got {type(a)!r}")
        if a.dtype != self.dtype:
            raise InputError(f"{what} {key!r} has dtype {a.dtype}, layer uses {self.dtype}")
        if not a.flags.c_contiguous:
            raise InputError(f"{what} {key!r} must be C-contiguous")
        return a

    def _weights_and_bias(self) -> Tuple[np.ndarray, np.ndarray]:
        w = self._checked_param(self.params.get_param(WEIGHT_KEY), WEIGHT_KEY, "parameter")
        b = self._checked_param(self.params.get_param(BIAS_KEY), BIAS_KEY, "parameter")
        return w, b

    def _gradient_views(self, geometry: ConvGeometry) -> Tuple[np.ndarray, np.ndarray]:
        w_grad = self._checked_param(
            self.params.get_gradient_view(WEIGHT_KEY), WEIGHT_KEY, "gradient view"
        )
        b_grad = self._checked_param(
            self.params.get_gradient_view(BIAS_KEY), BIAS_KEY, "gradient view"
        )
        if tuple(w_grad.shape) != geometry.filter_shape:
            raise InputError(
                f"weight gradient view shape {w_grad.shape} != {geometry.filter_shape}"
            )
        if tuple(b_grad.shape) != (geometry.out_depth,):
            raise InputError(
                f"bias gradient view shape {b_grad.shape} != ({geometry.out_depth},)"
            )
        return w_grad, b_grad

    @staticmethod
    def _check_bias(bias: np.ndarray, geometry: ConvGeometry) -> None:
        if tuple(bias.shape) != (geometry.out_depth,):
            raise InputError(
                f"bias shape {bias.shape} does not match out_depth {geometry.out_depth}"
            )

    def _geometry(self, x: np.ndarray, weights: np.ndarray) -> ConvGeometry:
        return ConvGeometry.from_arrays(x, weights, self.config)

    # -----------------------------------------------------------------
    # forward
    # -----------------------------------------------------------------

    def pre_output(self, x: np.ndarray, training: bool = False) -> np.ndarray:
        """
        Convolution plus bias, before activation.

        Parameters
        ----------
        x : np.ndarray
            Input of shape (N, inDepth, H, W), any non-negative strides.
        training : bool, optional
            Accepted for interface parity; has no effect.

        Returns
        -------
        np.ndarray
            New C-order array of shape (N, outDepth, outH, outW).
        """
        with self._lock:
            x = self._as_input(x, "input")
            weights, bias = self._weights_and_bias()
            geometry = self._geometry(x, weights)
            self._check_bias(bias, geometry)

            ctx = self.context
            self._descriptors.configure_forward(x, geometry)
            dims = self._descriptors.query_forward_output_dims()
            if dims != geometry.output_shape:
                logger.debug(
                    "backend output dims %s differ from computed %s; using backend dims",
                    dims,
                    geometry.output_shape,
                )
            z = np.empty(dims, dtype=self.dtype, order="C")
            self._descriptors.describe_destination(z)
            algo = select_forward_algorithm(ctx)

            one = scaling_factor(1.0, ctx.data_type)
            zero = scaling_factor(0.0, ctx.data_type)
            lib = ctx.lib
            with device_action(
                self.coordinator, reads=(x, weights, bias), writes=(z,)
            ) as action:
                x_ptr = self.coordinator.get_pointer(x, action.context)
                w_ptr = self.coordinator.get_pointer(weights, action.context)
                b_ptr = self.coordinator.get_pointer(bias, action.context)
                z_ptr = self.coordinator.get_pointer(z, action.context)

                ws_bytes = forward_workspace_size(ctx, algo)
                logger.debug("forward workspace: %d bytes", ws_bytes)
                with acquire_workspace(self.runtime, ws_bytes) as ws:
                    lib.convolution_forward(
                        ctx.handle, one,
                        ctx.src.handle, x_ptr,
                        ctx.filter.handle, w_ptr,
                        ctx.conv.handle, algo, ws.ptr, ws.nbytes,
                        zero, ctx.dst.handle, z_ptr,
                    )
                    self._descriptors.describe_bias(dims[1])
                    lib.add_tensor(
                        ctx.handle, one,
                        ctx.bias.handle, b_ptr,
                        one, ctx.dst.handle, z_ptr,
                    )
                action.modified(z)
            return z

    def activate(self, x: Optional[np.ndarray], training: bool = False) -> np.ndarray:
        """
        Forward pass including the activation.

        Raises
        ------
        InputError
            If `x` is None.

        Notes
        -----
        For host (non-fused) activations the result is a new array, not the
        pre-activation buffer.
        """
        if x is None:
            raise InputError("No null input allowed")
        with self._lock:
            z = self.pre_output(x, training)
            return self._activation.apply(self.context, self.coordinator, z)

    forward = activate

    # -----------------------------------------------------------------
    # backward
    # -----------------------------------------------------------------

    def backprop_gradient(
        self, x: np.ndarray, epsilon: np.ndarray
    ) -> Tuple[Gradient, np.ndarray]:
        """
        Compute bias, weight and input gradients.

        Parameters
        ----------
        x : np.ndarray
            Forward input, shape (N, inDepth, H, W).
        epsilon : np.ndarray
            Error w.r.t. the layer output, shape (N, outDepth, outH, outW).

        Returns
        -------
        (Gradient, np.ndarray)
            The gradient bundle ("b" -> bias gradient view, "W" -> weight
            gradient view) and the error propagated to the input, a new
            C-order array of the input's shape.
        """
        with self._lock:
            x = self._as_input(x, "input")
            epsilon = self._as_input(epsilon, "epsilon")
            weights, _ = self._weights_and_bias()
            geometry = self._geometry(x, weights)
            if tuple(epsilon.shape) != geometry.output_shape:
                raise InputError(
                    f"epsilon shape {tuple(epsilon.shape)} does not match the "
                    f"forward output shape {geometry.output_shape}"
                )
            weight_grad, bias_grad = self._gradient_views(geometry)

            activation = self.config.parsed_activation
            if activation.is_identity:
                delta = epsilon
            else:
                z = self.pre_output(x, training=True)
                derivative_in_place(activation, z)
                z *= epsilon
                delta = z

            delta = with_supported_layout(delta)

            ctx = self.context
            self._descriptors.configure_backward(x, delta, geometry)
            eps_next = np.empty(geometry.input_shape, dtype=self.dtype, order="C")
            self._descriptors.describe_destination(eps_next)
            algos = select_backward_algorithms(
                ctx,
                separate_data_algorithm=self.config.separate_backward_data_algorithm,
            )

            one = scaling_factor(1.0, ctx.data_type)
            zero = scaling_factor(0.0, ctx.data_type)
            lib = ctx.lib
            with device_action(
                self.coordinator,
                reads=(x, weights, delta),
                writes=(weight_grad, bias_grad, eps_next),
            ) as action:
                x_ptr = self.coordinator.get_pointer(x, action.context)
                w_ptr = self.coordinator.get_pointer(weights, action.context)
                w_grad_ptr = self.coordinator.get_pointer(weight_grad, action.context)
                b_grad_ptr = self.coordinator.get_pointer(bias_grad, action.context)
                delta_ptr = self.coordinator.get_pointer(delta, action.context)
                eps_next_ptr = self.coordinator.get_pointer(eps_next, action.context)

                filter_bytes = backward_filter_workspace_size(ctx, algos.filter_algo)
                data_bytes = backward_data_workspace_size(ctx, algos.data_algo)
                logger.debug(
                    "backward workspace: filter=%d bytes, data=%d bytes",
                    filter_bytes,
                    data_bytes,
                )
                with acquire_workspace(self.runtime, max(filter_bytes, data_bytes)) as ws:
                    self._descriptors.describe_bias(geometry.out_depth)
                    lib.convolution_backward_bias(
                        ctx.handle, one,
                        ctx.delta.handle, delta_ptr,
                        zero, ctx.bias.handle, b_grad_ptr,
                    )
                    lib.convolution_backward_filter(
                        ctx.handle, one,
                        ctx.src.handle, x_ptr,
                        ctx.delta.handle, delta_ptr,
                        ctx.conv.handle, algos.filter_algo, ws.ptr, filter_bytes,
                        zero, ctx.filter.handle, w_grad_ptr,
                    )
                    lib.convolution_backward_data(
                        ctx.handle, one,
                        ctx.filter.handle, w_ptr,
                        ctx.delta.handle, delta_ptr,
                        ctx.conv.handle, algos.data_algo, ws.ptr, data_bytes,
                        zero, ctx.dst.handle, eps_next_ptr,
                    )
                action.modified(weight_grad, bias_grad, eps_next)

            gradient = Gradient()
            gradient.set_gradient_for(BIAS_KEY, bias_grad)
            gradient.set_gradient_for(WEIGHT_KEY, weight_grad, "c")
            return gradient, eps_next

    # -----------------------------------------------------------------
    # lifecycle
    # -----------------------------------------------------------------

    def copy(self) -> "CudnnConvolutionLayer":
        """
        Return a layer sharing configuration and collaborators but owning an
        independent, deep-copied descriptor context.
        """
        with self._lock:
            return CudnnConvolutionLayer(
                self.config,
                self.params,
                self.coordinator,
                cudnn=self.cudnn,
                runtime=self.runtime,
                _context=self.context.copy(),
            )

    def close(self) -> None:
        """Destroy the descriptor context. Safe to call more than once."""
        with self._lock:
            self.context.destroy()

    def __enter__(self) -> "CudnnConvolutionLayer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get_config(self) -> Dict[str, Any]:
        return self.config.get_config()

    def __repr__(self) -> str:
        k_h, k_w = self.config.kernel_size
        return (
            f"CudnnConvolutionLayer(kernel_size=({k_h}, {k_w}), "
            f"stride={self.config.stride}, padding={self.config.padding}, "
            f"activation={self.config.activation!r}, dtype={self.config.dtype})"
        )
