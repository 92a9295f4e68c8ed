"""
cuDNN handle and descriptor lifetime management.

This module defines `CudnnContext`, which owns one cuDNN handle plus the seven
descriptors a convolution layer needs (source, destination, bias and delta
tensors, the filter, the convolution and the activation). The context is
created once per layer, its descriptors are re-configured in place on every
call, and it is destroyed exactly once.

Core Concepts
-------------
- **Atomic creation**:
    If any native creation call is rejected, everything created so far is
    destroyed in reverse order before `InitializationError` propagates. A
    half-built context is never observable.

- **Exactly-once release**:
    `destroy()` is idempotent. A `weakref.finalize` callback acts as a safety
    net when a context is garbage-collected without an explicit `destroy()`;
    that path never raises and logs a warning instead.

- **Deep copies**:
    cuDNN has no descriptor clone call. Each `_Descriptor` therefore records
    the last settings applied to it, and copying a context creates fresh native
    descriptors and re-applies those settings. Two contexts never share native
    state, so destroying one can never double-free the other.

Thread Safety
-------------
A context is mutated in place on every call and is not safe for concurrent
use; the owning layer serializes access.
"""

from __future__ import annotations

import logging
import weakref
from typing import Any, List, Optional, Tuple

from ...domain._errors import CudnnLayerError, InitializationError
from ..native_cuda.python.cudnn_ctypes import CUDNN_DATA_FLOAT

logger = logging.getLogger(__name__)

# (attribute, descriptor kind) in creation order
_DESCRIPTOR_LAYOUT: Tuple[Tuple[str, str], ...] = (
    ("src", "tensor"),
    ("dst", "tensor"),
    ("bias", "tensor"),
    ("delta", "tensor"),
    ("filter", "filter"),
    ("conv", "convolution"),
    ("activation", "activation"),
)

# activation, convolution, filter, then the tensors
_DESTROY_ORDER: Tuple[str, ...] = (
    "activation",
    "conv",
    "filter",
    "src",
    "dst",
    "bias",
    "delta",
)


class _Descriptor:
    """
    One native cuDNN descriptor plus the last settings applied to it.

    Parameters
    ----------
    lib : CudnnLib
        Binding surface used to create, configure and destroy the descriptor.
    kind : str
        "tensor", "filter", "convolution" or "activation".
    """

    def __init__(self, lib: Any, kind: str) -> None:
        self.lib = lib
        self.kind = kind
        self.handle: int = getattr(lib, f"create_{kind}_descriptor")()
        self.settings: Optional[Tuple[str, Tuple[Any, ...]]] = None

    def apply(self, setter: str, *args: Any) -> None:
        """
        Call `lib.<setter>(handle, *args)` and record the settings on success.
        """
        getattr(self.lib, setter)(self.handle, *args)
        self.settings = (setter, tuple(args))

    def copy(self) -> "_Descriptor":
        """Create an independent descriptor configured like this one."""
        dup = _Descriptor(self.lib, self.kind)
        if self.settings is not None:
            try:
                dup.apply(self.settings[0], *self.settings[1])
            except CudnnLayerError:
                dup.destroy()
                raise
        return dup

    def destroy(self) -> None:
        getattr(self.lib, f"destroy_{self.kind}_descriptor")(self.handle)

    def __repr__(self) -> str:
        return f"_Descriptor(kind={self.kind!r}, handle=0x{self.handle:x})"


def _release(lib: Any, handle: int, descriptors: List[_Descriptor], *, strict: bool) -> None:
    """
    Destroy `descriptors` in order, then `handle`.

    Every release is attempted even if an earlier one fails. With `strict`, the
    first failure is re-raised after all releases were attempted.
    """
    first_error: Optional[CudnnLayerError] = None
    for desc in descriptors:
        try:
            desc.destroy()
        except CudnnLayerError as e:
            first_error = first_error or e
    if handle:
        try:
            lib.destroy(handle)
        except CudnnLayerError as e:
            first_error = first_error or e
    if first_error is not None:
        if strict:
            raise first_error
        logger.warning("cuDNN context release reported an error: %s", first_error)


def _release_on_gc(lib: Any, handle: int, descriptors: List[_Descriptor]) -> None:
    logger.warning(
        "CudnnContext(handle=0x%x) released by the garbage collector; call destroy()",
        handle,
    )
    _release(lib, handle, descriptors, strict=False)


class CudnnContext:
    """
    cuDNN handle plus the descriptor set of one convolution layer.

    Parameters
    ----------
    lib : CudnnLib
        cuDNN binding surface.
    data_type : int, optional
        cuDNN data type of every tensor described through this context.
        Defaults to `CUDNN_DATA_FLOAT`.

    Attributes
    ----------
    handle : int
        Native cuDNN handle.
    src, dst, bias, delta : _Descriptor
        Tensor descriptors.
    filter : _Descriptor
        Filter descriptor.
    conv : _Descriptor
        Convolution descriptor.
    activation : _Descriptor
        Activation descriptor.

    Raises
    ------
    InitializationError
        If the handle or any descriptor cannot be created.
    """

    def __init__(
        self,
        lib: Any,
        data_type: int = CUDNN_DATA_FLOAT,
        *,
        _source: Optional["CudnnContext"] = None,
    ) -> None:
        self.lib = lib
        self.data_type = int(data_type)

        handle = 0
        created: List[Tuple[str, _Descriptor]] = []
        try:
            handle = lib.create()
            for name, kind in _DESCRIPTOR_LAYOUT:
                if _source is not None:
                    desc = getattr(_source, name).copy()
                else:
                    desc = _Descriptor(lib, kind)
                created.append((name, desc))
        except CudnnLayerError as e:
            by_name = dict(created)
            _release(
                lib,
                handle,
                [by_name[n] for n in _DESTROY_ORDER if n in by_name],
                strict=False,
            )
            if isinstance(e, InitializationError):
                raise
            raise InitializationError(
                f"copying descriptor state failed: {e}", call=e.call, status=e.status
            ) from e

        self.handle = handle
        for name, desc in created:
            setattr(self, name, desc)

        by_name = dict(created)
        self._finalizer = weakref.finalize(
            self,
            _release_on_gc,
            lib,
            handle,
            [by_name[n] for n in _DESTROY_ORDER],
        )
        logger.debug("created cuDNN context handle=0x%x", handle)

    @property
    def alive(self) -> bool:
        return self._finalizer.alive

    def require_alive(self) -> None:
        """Raise `InitializationError` if the context was destroyed."""
        if not self._finalizer.alive:
            raise InitializationError("cuDNN context has already been destroyed")

    def destroy(self) -> None:
        """
        Release all descriptors, then the handle. Safe to call more than once.
        """
        detached = self._finalizer.detach()
        if detached is None:
            return
        _, _, args, _ = detached
        lib, handle, descriptors = args
        _release(lib, handle, descriptors, strict=True)
        logger.debug("destroyed cuDNN context handle=0x%x", handle)

    def copy(self) -> "CudnnContext":
        """
        Return an independent context whose descriptors mirror this one's.
        """
        self.require_alive()
        return CudnnContext(self.lib, self.data_type, _source=self)

    def __copy__(self) -> "CudnnContext":
        return self.copy()

    def __deepcopy__(self, memo) -> "CudnnContext":
        dup = self.copy()
        memo[id(self)] = dup
        return dup

    def __enter__(self) -> "CudnnContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy()

    def __repr__(self) -> str:
        state = "alive" if self.alive else "destroyed"
        return f"CudnnContext(handle=0x{self.handle:x}, {state})"
