from ._activation import Activation, ActivationKind
from ._conv_config import ConvolutionLayerConfig
from ._errors import (
    AllocationError,
    ConfigurationError,
    CudnnLayerError,
    ExecutionError,
    InitializationError,
    InputError,
)
from ._memory_coordinator import ActionContext, IDeviceMemoryCoordinator
from ._parameter_store import BIAS_KEY, WEIGHT_KEY, IParameterStore

__all__ = [
    "Activation",
    "ActivationKind",
    "ConvolutionLayerConfig",
    "CudnnLayerError",
    "InitializationError",
    "ConfigurationError",
    "AllocationError",
    "ExecutionError",
    "InputError",
    "ActionContext",
    "IDeviceMemoryCoordinator",
    "IParameterStore",
    "WEIGHT_KEY",
    "BIAS_KEY",
]
