from ._cudnn_context import CudnnContext
from ._cudnn_conv2d_layer import CudnnConvolutionLayer
from ._descriptors import ConvGeometry, DescriptorConfigurator

__all__ = [
    "CudnnConvolutionLayer",
    "CudnnContext",
    "ConvGeometry",
    "DescriptorConfigurator",
]
