"""
infrastructure/native_cuda/python/cudnn_ctypes.py

ctypes bindings for the cuDNN legacy convolution API.

This module wraps the descriptor-based cuDNN entry points used by the
convolution layer: handle/descriptor lifecycle, descriptor configuration,
algorithm and workspace queries, and the forward/backward compute calls.

Design goals
------------
- Keep Python overhead low: handles, descriptors and device pointers are plain
  ints; no data is marshaled beyond pointer casts and scalar arguments.
- Fail fast with a categorized error: every call checks its
  `cudnnStatus_t` and raises the error class of its category
  (creation -> InitializationError, set/query -> ConfigurationError,
  compute/destroy -> ExecutionError), including `cudnnGetErrorString`.
- Use the `_v7` algorithm queries; the preference-based
  `cudnnGet*Algorithm` calls were removed in cuDNN 8.

Notes
-----
- Scaling factors (alpha/beta) are host scalars passed by address. cuDNN
  expects `float` scalars for float/half data and `double` scalars for double
  data; `scaling_factor` builds the right ctypes object.
- The caller owns every handle and descriptor it creates.
"""

from __future__ import annotations

import ctypes
from ctypes import c_char_p, c_double, c_float, c_int, c_size_t, c_void_p
from typing import List, NamedTuple, Optional, Tuple

from ....domain._errors import (
    ConfigurationError,
    ExecutionError,
    InitializationError,
)
from ._native_loader import load_cudnn

# ---------------------------------------------------------------------
# Enumerations (cudnn.h)
# ---------------------------------------------------------------------

CUDNN_STATUS_SUCCESS = 0

CUDNN_DATA_FLOAT = 0
CUDNN_DATA_DOUBLE = 1

CUDNN_TENSOR_NCHW = 0

CUDNN_CONVOLUTION = 0
CUDNN_CROSS_CORRELATION = 1

CUDNN_ACTIVATION_SIGMOID = 0
CUDNN_ACTIVATION_RELU = 1
CUDNN_ACTIVATION_TANH = 2

CUDNN_NOT_PROPAGATE_NAN = 0
CUDNN_PROPAGATE_NAN = 1

CUDNN_SOFTMAX_FAST = 0
CUDNN_SOFTMAX_ACCURATE = 1
CUDNN_SOFTMAX_LOG = 2

CUDNN_SOFTMAX_MODE_INSTANCE = 0
CUDNN_SOFTMAX_MODE_CHANNEL = 1

_DATA_TYPE_BY_NAME = {"float32": CUDNN_DATA_FLOAT, "float64": CUDNN_DATA_DOUBLE}


def data_type_for(dtype_name: str) -> int:
    """Map "float32"/"float64" to the cuDNN data type enum."""
    try:
        return _DATA_TYPE_BY_NAME[str(dtype_name)]
    except KeyError:
        raise ConfigurationError(f"unsupported dtype for cuDNN: {dtype_name!r}") from None


def scaling_factor(value: float, data_type: int):
    """
    Build the host scalar cuDNN expects for alpha/beta arguments.

    Returns a `c_double` for double data and a `c_float` otherwise.
    """
    if data_type == CUDNN_DATA_DOUBLE:
        return c_double(float(value))
    return c_float(float(value))


class _AlgoPerfStruct(ctypes.Structure):
    # layout shared by cudnnConvolution{Fwd,BwdFilter,BwdData}AlgoPerf_t
    _fields_ = [
        ("algo", c_int),
        ("status", c_int),
        ("time", c_float),
        ("memory", c_size_t),
        ("determinism", c_int),
        ("mathType", c_int),
        ("reserved", c_int * 3),
    ]


class AlgorithmPerf(NamedTuple):
    """One entry of a cuDNN algorithm performance query, fastest first."""

    algo: int
    status: int
    time: float
    memory: int


def _ptr(v: int) -> c_void_p:
    return c_void_p(int(v) if v else None)


def _addr(scalar) -> c_void_p:
    return c_void_p(ctypes.addressof(scalar))


_P = c_void_p
_I = c_int
_PI = ctypes.POINTER(c_int)
_PS = ctypes.POINTER(c_size_t)
_PP = ctypes.POINTER(c_void_p)

# symbol -> argtypes; every symbol returns cudnnStatus_t
_SIGNATURES = {
    "cudnnCreate": [_PP],
    "cudnnDestroy": [_P],
    "cudnnCreateTensorDescriptor": [_PP],
    "cudnnDestroyTensorDescriptor": [_P],
    "cudnnCreateFilterDescriptor": [_PP],
    "cudnnDestroyFilterDescriptor": [_P],
    "cudnnCreateConvolutionDescriptor": [_PP],
    "cudnnDestroyConvolutionDescriptor": [_P],
    "cudnnCreateActivationDescriptor": [_PP],
    "cudnnDestroyActivationDescriptor": [_P],
    "cudnnSetTensor4dDescriptor": [_P, _I, _I, _I, _I, _I, _I],
    "cudnnSetTensor4dDescriptorEx": [_P, _I, _I, _I, _I, _I, _I, _I, _I, _I],
    "cudnnSetFilter4dDescriptor": [_P, _I, _I, _I, _I, _I, _I],
    "cudnnSetConvolution2dDescriptor": [_P, _I, _I, _I, _I, _I, _I, _I, _I],
    "cudnnSetActivationDescriptor": [_P, _I, _I, c_double],
    "cudnnGetConvolution2dForwardOutputDim": [_P, _P, _P, _PI, _PI, _PI, _PI],
    "cudnnGetConvolutionForwardAlgorithmMaxCount": [_P, _PI],
    "cudnnGetConvolutionBackwardFilterAlgorithmMaxCount": [_P, _PI],
    "cudnnGetConvolutionBackwardDataAlgorithmMaxCount": [_P, _PI],
    "cudnnGetConvolutionForwardAlgorithm_v7": [_P, _P, _P, _P, _P, _I, _PI, _P],
    "cudnnGetConvolutionBackwardFilterAlgorithm_v7": [_P, _P, _P, _P, _P, _I, _PI, _P],
    "cudnnGetConvolutionBackwardDataAlgorithm_v7": [_P, _P, _P, _P, _P, _I, _PI, _P],
    "cudnnGetConvolutionForwardWorkspaceSize": [_P, _P, _P, _P, _P, _I, _PS],
    "cudnnGetConvolutionBackwardFilterWorkspaceSize": [_P, _P, _P, _P, _P, _I, _PS],
    "cudnnGetConvolutionBackwardDataWorkspaceSize": [_P, _P, _P, _P, _P, _I, _PS],
    "cudnnConvolutionForward": [_P, _P, _P, _P, _P, _P, _P, _I, _P, c_size_t, _P, _P, _P],
    "cudnnAddTensor": [_P, _P, _P, _P, _P, _P, _P],
    "cudnnConvolutionBackwardBias": [_P, _P, _P, _P, _P, _P, _P],
    "cudnnConvolutionBackwardFilter": [_P, _P, _P, _P, _P, _P, _P, _I, _P, c_size_t, _P, _P, _P],
    "cudnnConvolutionBackwardData": [_P, _P, _P, _P, _P, _P, _P, _I, _P, c_size_t, _P, _P, _P],
    "cudnnActivationForward": [_P, _P, _P, _P, _P, _P, _P, _P],
    "cudnnSoftmaxForward": [_P, _I, _I, _P, _P, _P, _P, _P, _P],
}


class CudnnLib:
    """
    Checked Python surface over the cuDNN shared library.

    Every method maps one-to-one onto a cuDNN export, converts Python ints to
    pointer arguments, reads output parameters back, and raises a categorized
    error when the returned status is not `CUDNN_STATUS_SUCCESS`.

    Parameters
    ----------
    lib : Optional[ctypes.CDLL]
        Already-loaded cuDNN library. Loaded with `load_cudnn()` when None.
    """

    def __init__(self, lib: Optional[ctypes.CDLL] = None) -> None:
        self.lib = lib if lib is not None else load_cudnn()
        self._bound = False
        self._bind()

    def _bind(self) -> None:
        """Bind argtypes/restype for every export used (idempotent)."""
        if self._bound:
            return
        for sym, argtypes in _SIGNATURES.items():
            fn = getattr(self.lib, sym)
            fn.argtypes = argtypes
            fn.restype = c_int
        self.lib.cudnnGetErrorString.argtypes = [c_int]
        self.lib.cudnnGetErrorString.restype = c_char_p
        self._bound = True

    def error_string(self, status: int) -> str:
        raw = self.lib.cudnnGetErrorString(int(status))
        return raw.decode("ascii", errors="replace") if raw else ""

    def _call(self, sym: str, error_cls, *args) -> None:
        st = int(getattr(self.lib, sym)(*args))
        if st != CUDNN_STATUS_SUCCESS:
            raise error_cls.from_status(sym, st, self.error_string(st))

    def _create(self, sym: str) -> int:
        out = c_void_p()
        self._call(sym, InitializationError, ctypes.byref(out))
        return int(out.value or 0)

    # -----------------------------------------------------------------
    # lifecycle
    # -----------------------------------------------------------------

    def create(self) -> int:
        return self._create("cudnnCreate")

    def destroy(self, handle: int) -> None:
        self._call("cudnnDestroy", ExecutionError, _ptr(handle))

    def create_tensor_descriptor(self) -> int:
        return self._create("cudnnCreateTensorDescriptor")

    def destroy_tensor_descriptor(self, desc: int) -> None:
        self._call("cudnnDestroyTensorDescriptor", ExecutionError, _ptr(desc))

    def create_filter_descriptor(self) -> int:
        return self._create("cudnnCreateFilterDescriptor")

    def destroy_filter_descriptor(self, desc: int) -> None:
        self._call("cudnnDestroyFilterDescriptor", ExecutionError, _ptr(desc))

    def create_convolution_descriptor(self) -> int:
        return self._create("cudnnCreateConvolutionDescriptor")

    def destroy_convolution_descriptor(self, desc: int) -> None:
        self._call("cudnnDestroyConvolutionDescriptor", ExecutionError, _ptr(desc))

    def create_activation_descriptor(self) -> int:
        return self._create("cudnnCreateActivationDescriptor")

    def destroy_activation_descriptor(self, desc: int) -> None:
        self._call("cudnnDestroyActivationDescriptor", ExecutionError, _ptr(desc))

    # -----------------------------------------------------------------
    # descriptor configuration
    # -----------------------------------------------------------------

    def set_tensor4d_descriptor(
        self, desc: int, fmt: int, data_type: int, n: int, c: int, h: int, w: int
    ) -> None:
        self._call(
            "cudnnSetTensor4dDescriptor",
            ConfigurationError,
            _ptr(desc), fmt, data_type, n, c, h, w,
        )

    def set_tensor4d_descriptor_ex(
        self,
        desc: int,
        data_type: int,
        n: int,
        c: int,
        h: int,
        w: int,
        n_stride: int,
        c_stride: int,
        h_stride: int,
        w_stride: int,
    ) -> None:
        self._call(
            "cudnnSetTensor4dDescriptorEx",
            ConfigurationError,
            _ptr(desc), data_type, n, c, h, w, n_stride, c_stride, h_stride, w_stride,
        )

    def set_filter4d_descriptor(
        self, desc: int, data_type: int, fmt: int, k: int, c: int, h: int, w: int
    ) -> None:
        self._call(
            "cudnnSetFilter4dDescriptor",
            ConfigurationError,
            _ptr(desc), data_type, fmt, k, c, h, w,
        )

    def set_convolution2d_descriptor(
        self,
        desc: int,
        pad_h: int,
        pad_w: int,
        stride_h: int,
        stride_w: int,
        dilation_h: int,
        dilation_w: int,
        mode: int,
        compute_type: int,
    ) -> None:
        self._call(
            "cudnnSetConvolution2dDescriptor",
            ConfigurationError,
            _ptr(desc), pad_h, pad_w, stride_h, stride_w, dilation_h, dilation_w,
            mode, compute_type,
        )

    def set_activation_descriptor(
        self, desc: int, mode: int, nan_opt: int, coef: float
    ) -> None:
        self._call(
            "cudnnSetActivationDescriptor",
            ConfigurationError,
            _ptr(desc), mode, nan_opt, c_double(float(coef)),
        )

    def get_convolution2d_forward_output_dim(
        self, conv_desc: int, x_desc: int, w_desc: int
    ) -> Tuple[int, int, int, int]:
        n, c, h, w = c_int(), c_int(), c_int(), c_int()
        self._call(
            "cudnnGetConvolution2dForwardOutputDim",
            ConfigurationError,
            _ptr(conv_desc), _ptr(x_desc), _ptr(w_desc),
            ctypes.byref(n), ctypes.byref(c), ctypes.byref(h), ctypes.byref(w),
        )
        return int(n.value), int(c.value), int(h.value), int(w.value)

    # -----------------------------------------------------------------
    # algorithm and workspace queries
    # -----------------------------------------------------------------

    def _max_count(self, sym: str, handle: int) -> int:
        count = c_int(0)
        self._call(sym, ConfigurationError, _ptr(handle), ctypes.byref(count))
        return max(int(count.value), 1)

    def _perf_query(
        self, sym: str, count_sym: str, handle: int, d0: int, d1: int, d2: int, d3: int
    ) -> List[AlgorithmPerf]:
        requested = self._max_count(count_sym, handle)
        results = (_AlgoPerfStruct * requested)()
        returned = c_int(0)
        self._call(
            sym,
            ConfigurationError,
            _ptr(handle), _ptr(d0), _ptr(d1), _ptr(d2), _ptr(d3),
            requested, ctypes.byref(returned), ctypes.cast(results, c_void_p),
        )
        return [
            AlgorithmPerf(
                algo=int(r.algo),
                status=int(r.status),
                time=float(r.time),
                memory=int(r.memory),
            )
            for r in results[: int(returned.value)]
        ]

    def get_convolution_forward_algorithm_v7(
        self, handle: int, x_desc: int, w_desc: int, conv_desc: int, y_desc: int
    ) -> List[AlgorithmPerf]:
        return self._perf_query(
            "cudnnGetConvolutionForwardAlgorithm_v7",
            "cudnnGetConvolutionForwardAlgorithmMaxCount",
            handle, x_desc, w_desc, conv_desc, y_desc,
        )

    def get_convolution_backward_filter_algorithm_v7(
        self, handle: int, x_desc: int, dy_desc: int, conv_desc: int, dw_desc: int
    ) -> List[AlgorithmPerf]:
        return self._perf_query(
            "cudnnGetConvolutionBackwardFilterAlgorithm_v7",
            "cudnnGetConvolutionBackwardFilterAlgorithmMaxCount",
            handle, x_desc, dy_desc, conv_desc, dw_desc,
        )

    def get_convolution_backward_data_algorithm_v7(
        self, handle: int, w_desc: int, dy_desc: int, conv_desc: int, dx_desc: int
    ) -> List[AlgorithmPerf]:
        return self._perf_query(
            "cudnnGetConvolutionBackwardDataAlgorithm_v7",
            "cudnnGetConvolutionBackwardDataAlgorithmMaxCount",
            handle, w_desc, dy_desc, conv_desc, dx_desc,
        )

    def _workspace_size(
        self, sym: str, handle: int, d0: int, d1: int, d2: int, d3: int, algo: int
    ) -> int:
        size = c_size_t(0)
        self._call(
            sym,
            ConfigurationError,
            _ptr(handle), _ptr(d0), _ptr(d1), _ptr(d2), _ptr(d3), int(algo),
            ctypes.byref(size),
        )
        return int(size.value)

    def get_convolution_forward_workspace_size(
        self, handle: int, x_desc: int, w_desc: int, conv_desc: int, y_desc: int, algo: int
    ) -> int:
        return self._workspace_size(
            "cudnnGetConvolutionForwardWorkspaceSize",
            handle, x_desc, w_desc, conv_desc, y_desc, algo,
        )

    def get_convolution_backward_filter_workspace_size(
        self, handle: int, x_desc: int, dy_desc: int, conv_desc: int, dw_desc: int, algo: int
    ) -> int:
        return self._workspace_size(
            "cudnnGetConvolutionBackwardFilterWorkspaceSize",
            handle, x_desc, dy_desc, conv_desc, dw_desc, algo,
        )

    def get_convolution_backward_data_workspace_size(
        self, handle: int, w_desc: int, dy_desc: int, conv_desc: int, dx_desc: int, algo: int
    ) -> int:
        return self._workspace_size(
            "cudnnGetConvolutionBackwardDataWorkspaceSize",
            handle, w_desc, dy_desc, conv_desc, dx_desc, algo,
        )

    # -----------------------------------------------------------------
    # compute
    # -----------------------------------------------------------------

    def convolution_forward(
        self,
        handle: int,
        alpha,
        x_desc: int,
        x: int,
        w_desc: int,
        w: int,
        conv_desc: int,
        algo: int,
        workspace: int,
        workspace_size: int,
        beta,
        y_desc: int,
        y: int,
    ) -> None:
        self._call(
            "cudnnConvolutionForward",
            ExecutionError,
            _ptr(handle), _addr(alpha), _ptr(x_desc), _ptr(x), _ptr(w_desc), _ptr(w),
            _ptr(conv_desc), int(algo), _ptr(workspace), c_size_t(int(workspace_size)),
            _addr(beta), _ptr(y_desc), _ptr(y),
        )

    def add_tensor(
        self, handle: int, alpha, a_desc: int, a: int, beta, c_desc: int, c: int
    ) -> None:
        self._call(
            "cudnnAddTensor",
            ExecutionError,
            _ptr(handle), _addr(alpha), _ptr(a_desc), _ptr(a), _addr(beta),
            _ptr(c_desc), _ptr(c),
        )

    def convolution_backward_bias(
        self, handle: int, alpha, dy_desc: int, dy: int, beta, db_desc: int, db: int
    ) -> None:
        self._call(
            "cudnnConvolutionBackwardBias",
            ExecutionError,
            _ptr(handle), _addr(alpha), _ptr(dy_desc), _ptr(dy), _addr(beta),
            _ptr(db_desc), _ptr(db),
        )

    def convolution_backward_filter(
        self,
        handle: int,
        alpha,
        x_desc: int,
        x: int,
        dy_desc: int,
        dy: int,
        conv_desc: int,
        algo: int,
        workspace: int,
        workspace_size: int,
        beta,
        dw_desc: int,
        dw: int,
    ) -> None:
        self._call(
            "cudnnConvolutionBackwardFilter",
            ExecutionError,
            _ptr(handle), _addr(alpha), _ptr(x_desc), _ptr(x), _ptr(dy_desc), _ptr(dy),
            _ptr(conv_desc), int(algo), _ptr(workspace), c_size_t(int(workspace_size)),
            _addr(beta), _ptr(dw_desc), _ptr(dw),
        )

    def convolution_backward_data(
        self,
        handle: int,
        alpha,
        w_desc: int,
        w: int,
        dy_desc: int,
        dy: int,
        conv_desc: int,
        algo: int,
        workspace: int,
        workspace_size: int,
        beta,
        dx_desc: int,
        dx: int,
    ) -> None:
        self._call(
            "cudnnConvolutionBackwardData",
            ExecutionError,
            _ptr(handle), _addr(alpha), _ptr(w_desc), _ptr(w), _ptr(dy_desc), _ptr(dy),
            _ptr(conv_desc), int(algo), _ptr(workspace), c_size_t(int(workspace_size)),
            _addr(beta), _ptr(dx_desc), _ptr(dx),
        )

    def activation_forward(
        self, handle: int, act_desc: int, alpha, x_desc: int, x: int, beta, y_desc: int, y: int
    ) -> None:
        self._call(
            "cudnnActivationForward",
            ExecutionError,
            _ptr(handle), _ptr(act_desc), _addr(alpha), _ptr(x_desc), _ptr(x),
            _addr(beta), _ptr(y_desc), _ptr(y),
        )

    def softmax_forward(
        self, handle: int, algo: int, mode: int, alpha, x_desc: int, x: int, beta, y_desc: int, y: int
    ) -> None:
        self._call(
            "cudnnSoftmaxForward",
            ExecutionError,
            _ptr(handle), int(algo), int(mode), _addr(alpha), _ptr(x_desc), _ptr(x),
            _addr(beta), _ptr(y_desc), _ptr(y),
        )
