"""
ctypes bindings for the subset of the CUDA runtime used by the layer.

Exports bound
-------------
- cudaMalloc / cudaFree
- cudaMemcpy (host-to-device and device-to-host)
- cudaDeviceSynchronize
- cudaSetDevice / cudaGetDeviceCount
- cudaGetErrorString

Device pointers are plain Python ints. Every call is synchronous from the
caller's perspective and any non-zero `cudaError_t` raises: `cudaMalloc`
failures raise `AllocationError`, everything else raises `ExecutionError`.
"""

from __future__ import annotations

import ctypes
from ctypes import c_char_p, c_int, c_size_t, c_void_p
from typing import Optional

from ....domain._errors import AllocationError, ExecutionError
from ._native_loader import load_cudart

DevPtr = int

CUDA_SUCCESS = 0
CUDA_MEMCPY_HOST_TO_DEVICE = 1
CUDA_MEMCPY_DEVICE_TO_HOST = 2


class CudaRuntime:
    """
    Thin binding layer around the CUDA runtime library.

    This class performs one-time `argtypes`/`restype` binding for the exports
    it uses and exposes small helpers that check every returned status.

    Notes
    -----
    This class does not track allocations; callers free what they allocate
    (see `acquire_workspace` for the scoped form).
    """

    def __init__(self, lib: Optional[ctypes.CDLL] = None) -> None:
        self.lib = lib if lib is not None else load_cudart()
        self._bound = False
        self._bind()

    def _bind(self) -> None:
        """Bind argtypes/restype for the runtime exports (idempotent)."""
        if self._bound:
            return
        lib = self.lib

        lib.cudaMalloc.argtypes = [ctypes.POINTER(c_void_p), c_size_t]
        lib.cudaMalloc.restype = c_int

        lib.cudaFree.argtypes = [c_void_p]
        lib.cudaFree.restype = c_int

        lib.cudaMemcpy.argtypes = [c_void_p, c_void_p, c_size_t, c_int]
        lib.cudaMemcpy.restype = c_int

        lib.cudaDeviceSynchronize.argtypes = []
        lib.cudaDeviceSynchronize.restype = c_int

        lib.cudaSetDevice.argtypes = [c_int]
        lib.cudaSetDevice.restype = c_int

        lib.cudaGetDeviceCount.argtypes = [ctypes.POINTER(c_int)]
        lib.cudaGetDeviceCount.restype = c_int

        lib.cudaGetErrorString.argtypes = [c_int]
        lib.cudaGetErrorString.restype = c_char_p

        self._bound = True

    def error_string(self, status: int) -> str:
        raw = self.lib.cudaGetErrorString(int(status))
        return raw.decode("ascii", errors="replace") if raw else ""

    def _check(self, call: str, status: int, error_cls=ExecutionError) -> None:
        if int(status) != CUDA_SUCCESS:
            raise error_cls.from_status(call, status, self.error_string(status))

    def malloc(self, nbytes: int) -> DevPtr:
        """
        Allocate `nbytes` of device memory.

        Raises
        ------
        AllocationError
            If the runtime cannot satisfy the request.
        """
        ptr = c_void_p()
        self._check(
            "cudaMalloc",
            self.lib.cudaMalloc(ctypes.byref(ptr), c_size_t(int(nbytes))),
            AllocationError,
        )
        return int(ptr.value or 0)

    def free(self, dev_ptr: DevPtr) -> None:
        if not dev_ptr:
            return
        self._check("cudaFree", self.lib.cudaFree(c_void_p(int(dev_ptr))))

    def memcpy_htod(self, dst_dev: DevPtr, src_host: int, nbytes: int) -> None:
        if nbytes <= 0:
            return
        self._check(
            "cudaMemcpy",
            self.lib.cudaMemcpy(
                c_void_p(int(dst_dev)),
                c_void_p(int(src_host)),
                c_size_t(int(nbytes)),
                CUDA_MEMCPY_HOST_TO_DEVICE,
            ),
        )

    def memcpy_dtoh(self, dst_host: int, src_dev: DevPtr, nbytes: int) -> None:
        if nbytes <= 0:
            return
        self._check(
            "cudaMemcpy",
            self.lib.cudaMemcpy(
                c_void_p(int(dst_host)),
                c_void_p(int(src_dev)),
                c_size_t(int(nbytes)),
                CUDA_MEMCPY_DEVICE_TO_HOST,
            ),
        )

    def synchronize(self) -> None:
        self._check("cudaDeviceSynchronize", self.lib.cudaDeviceSynchronize())

    def set_device(self, index: int) -> None:
        self._check("cudaSetDevice", self.lib.cudaSetDevice(int(index)))

    def device_count(self) -> int:
        n = c_int(0)
        self._check("cudaGetDeviceCount", self.lib.cudaGetDeviceCount(ctypes.byref(n)))
        return int(n.value)
