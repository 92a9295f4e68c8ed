"""
Activation post-processing for the forward pass.

Runs after bias addition on the pre-activation buffer `z`:

- identity: no-op, `z` is returned.
- sigmoid / relu / tanh: fused cuDNN activation, in place on `z`.
- softmax / logsoftmax: cuDNN channel-mode softmax (accurate / log), in place.
- anything else: host transform by name, returning a NEW array.

Callers must not assume the returned array is `z`.
"""

from __future__ import annotations

from typing import Any

import numpy as np

from ...domain._activation import Activation, ActivationKind
from ...domain._memory_coordinator import IDeviceMemoryCoordinator
from ..native_cuda.python.cudnn_ctypes import (
    CUDNN_ACTIVATION_RELU,
    CUDNN_ACTIVATION_SIGMOID,
    CUDNN_ACTIVATION_TANH,
    CUDNN_PROPAGATE_NAN,
    CUDNN_SOFTMAX_ACCURATE,
    CUDNN_SOFTMAX_LOG,
    CUDNN_SOFTMAX_MODE_CHANNEL,
    scaling_factor,
)
from ..ops.host_transforms import get_transform
from ._cudnn_context import CudnnContext
from ._device_action import device_action

_ACTIVATION_MODES = {
    ActivationKind.SIGMOID: CUDNN_ACTIVATION_SIGMOID,
    ActivationKind.RELU: CUDNN_ACTIVATION_RELU,
    ActivationKind.TANH: CUDNN_ACTIVATION_TANH,
}

_SOFTMAX_ALGOS = {
    ActivationKind.SOFTMAX: CUDNN_SOFTMAX_ACCURATE,
    ActivationKind.LOGSOFTMAX: CUDNN_SOFTMAX_LOG,
}


class ActivationPostProcessor:
    """
    Applies one configured activation to forward outputs.

    Parameters
    ----------
    activation : Activation
        Parsed activation. Host activations are resolved eagerly so an unknown
        name fails at construction with `ConfigurationError`.
    """

    def __init__(self, activation: Activation) -> None:
        self.activation = activation
        self._host = (
            get_transform(activation.name)
            if activation.kind is ActivationKind.HOST
            else None
        )

    def apply(
        self,
        ctx: CudnnContext,
        coordinator: IDeviceMemoryCoordinator,
        z: np.ndarray,
    ) -> np.ndarray:
        """
        Apply the activation to `z`.

        `ctx.dst` must describe `z` (it does right after `pre_output`).

        Returns
        -------
        np.ndarray
            `z` itself for identity and fused kinds, a new array for host kinds.
        """
        kind = self.activation.kind

        if kind is ActivationKind.IDENTITY:
            return z

        if kind is ActivationKind.HOST:
            return self._host.forward(z)

        one = scaling_factor(1.0, ctx.data_type)
        zero = scaling_factor(0.0, ctx.data_type)
        with device_action(coordinator, reads=(z,), writes=(z,)) as action:
            z_ptr = coordinator.get_pointer(z, action.context)
            if kind in _ACTIVATION_MODES:
                ctx.activation.apply(
                    "set_activation_descriptor",
                    _ACTIVATION_MODES[kind],
                    CUDNN_PROPAGATE_NAN,
                    0.0,
                )
                ctx.lib.activation_forward(
                    ctx.handle, ctx.activation.handle,
                    one, ctx.dst.handle, z_ptr,
                    zero, ctx.dst.handle, z_ptr,
                )
            else:
                ctx.lib.softmax_forward(
                    ctx.handle, _SOFTMAX_ALGOS[kind], CUDNN_SOFTMAX_MODE_CHANNEL,
                    one, ctx.dst.handle, z_ptr,
                    zero, ctx.dst.handle, z_ptr,
                )
            action.modified(z)
        return z

    def __repr__(self) -> str:
        return f"ActivationPostProcessor({self.activation.name!r})"


def derivative_in_place(activation: Activation, z: Any) -> Any:
    """Overwrite `z` with the activation's local derivative evaluated at `z`."""
    return get_transform(activation.name).derivative(z, out=z)
