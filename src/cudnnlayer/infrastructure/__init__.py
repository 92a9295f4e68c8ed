from ._parameter_store import DictParameterStore, Gradient
from .convolution import CudnnContext, CudnnConvolutionLayer
from .memory import HostMirroredMemoryCoordinator

__all__ = [
    "CudnnConvolutionLayer",
    "CudnnContext",
    "DictParameterStore",
    "Gradient",
    "HostMirroredMemoryCoordinator",
]
