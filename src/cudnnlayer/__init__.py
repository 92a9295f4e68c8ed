"""
cudnnlayer: a cuDNN-backed 2D convolution layer.

Public entry points
-------------------
- `CudnnConvolutionLayer`: forward/backward execution through cuDNN.
- `ConvolutionLayerConfig`: kernel, stride, padding, activation and dtype.
- `DictParameterStore` / `Gradient`: parameter storage and gradient bundles.
- `HostMirroredMemoryCoordinator`: default device memory coordinator.
- The `CudnnLayerError` hierarchy.
"""

import logging

from .domain import (
    BIAS_KEY,
    WEIGHT_KEY,
    Activation,
    ActivationKind,
    AllocationError,
    ConfigurationError,
    ConvolutionLayerConfig,
    CudnnLayerError,
    ExecutionError,
    IDeviceMemoryCoordinator,
    InitializationError,
    InputError,
    IParameterStore,
)
from .infrastructure import (
    CudnnContext,
    CudnnConvolutionLayer,
    DictParameterStore,
    Gradient,
    HostMirroredMemoryCoordinator,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "CudnnConvolutionLayer",
    "CudnnContext",
    "ConvolutionLayerConfig",
    "DictParameterStore",
    "Gradient",
    "HostMirroredMemoryCoordinator",
    "IDeviceMemoryCoordinator",
    "IParameterStore",
    "Activation",
    "ActivationKind",
    "WEIGHT_KEY",
    "BIAS_KEY",
    "CudnnLayerError",
    "InitializationError",
    "ConfigurationError",
    "AllocationError",
    "ExecutionError",
    "InputError",
]
