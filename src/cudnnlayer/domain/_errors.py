"""
Error taxonomy for the cuDNN convolution layer.

Every failure raised by this package belongs to exactly one category, so the
surrounding training/inference loop can decide whether to abort a run based on
*what* went wrong rather than on string matching:

- `InitializationError`: handle or descriptor creation failed, or the native
  libraries could not be loaded.
- `ConfigurationError`: a descriptor-set call (or a query that depends on the
  configured descriptors) was rejected by the backend.
- `AllocationError`: device memory was exhausted.
- `ExecutionError`: a compute call was rejected at invocation time.
- `InputError`: a required input is missing or invalid for the operation.

All errors are fatal to the enclosing forward/backward call; nothing in this
package retries or returns partial results.
"""

from __future__ import annotations

from typing import Optional


class CudnnLayerError(RuntimeError):
    """
    Base class for all errors raised by the cuDNN convolution layer.

    Attributes
    ----------
    call : Optional[str]
        Native symbol or logical operation that failed (e.g.
        "cudnnConvolutionForward").
    status : Optional[int]
        Native status code reported by the backend, when available.
    detail : Optional[str]
        Backend-provided description of `status`, when available.
    """

    category = "CudnnLayerError"

    def __init__(
        self,
        message: str,
        *,
        call: Optional[str] = None,
        status: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> None:
        self.call = call
        self.status = status
        self.detail = detail
        super().__init__(f"{self.category}: {message}")

    @classmethod
    def from_status(
        cls, call: str, status: int, detail: Optional[str] = None
    ):
        """
        Build an error from a failed native call.

        Parameters
        ----------
        call : str
            Native symbol name.
        status : int
            Non-success status code returned by the symbol.
        detail : Optional[str]
            Human-readable status string (e.g. from `cudnnGetErrorString`).
        """
        msg = f"{call} failed with status={int(status)}"
        if detail:
            msg += f" ({detail})"
        return cls(msg, call=call, status=int(status), detail=detail)


class InitializationError(CudnnLayerError):
    """Raised when the native handle or a descriptor cannot be created."""

    category = "InitializationError"


class ConfigurationError(CudnnLayerError):
    """Raised when the backend rejects a descriptor configuration."""

    category = "ConfigurationError"


class AllocationError(CudnnLayerError):
    """Raised when device memory for workspace or buffers is exhausted."""

    category = "AllocationError"


class ExecutionError(CudnnLayerError):
    """Raised when a compute operation is rejected by the backend."""

    category = "ExecutionError"


class InputError(CudnnLayerError, ValueError):
    """
    Raised when a required input tensor is missing or unusable.

    Also a `ValueError`, so callers that validate arguments generically keep
    working.
    """

    category = "InputError"
