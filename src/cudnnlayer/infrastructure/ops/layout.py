"""
Shape and memory-layout helpers for NCHW host arrays.

These helpers translate NumPy's byte-strided view of an array into the
element-strided view cuDNN descriptors expect, and decide whether an array's
layout can be handed to the backward filter/data kernels as-is.
"""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np

from ...domain._errors import InputError

logger = logging.getLogger(__name__)


def out_size(size: int, kernel: int, stride: int, padding: int) -> int:
    """
    Output extent of a non-ceiling convolution along one spatial axis.

    Computes `floor((size + 2 * padding - kernel) / stride) + 1`.

    Examples
    --------
    >>> out_size(5, 3, 1, 0)
    3
    >>> out_size(28, 5, 1, 2)
    28
    """
    return (int(size) + 2 * int(padding) - int(kernel)) // int(stride) + 1


def element_strides(a: np.ndarray) -> Tuple[int, ...]:
    """
    Return the strides of `a` in elements instead of bytes.

    Raises
    ------
    InputError
        If a stride is not a multiple of the item size.
    """
    itemsize = a.dtype.itemsize
    out = []
    for s in a.strides:
        if s % itemsize:
            raise InputError(
                f"stride {s} is not a multiple of the item size {itemsize}"
            )
        out.append(s // itemsize)
    return tuple(out)


def stride_descending_c_ascending_f(a: np.ndarray) -> bool:
    """
    True if `a` is laid out in descending-stride (C) or ascending-stride (F)
    order over its non-unit dimensions.

    Unit dimensions are ignored because their stride is meaningless. Zero or
    negative strides (broadcast or reversed views) never qualify.
    """
    strides = [s for s, d in zip(a.strides, a.shape) if d != 1]
    if any(s <= 0 for s in strides):
        return False
    if len(strides) <= 1:
        return True
    pairs = list(zip(strides, strides[1:]))
    return all(x > y for x, y in pairs) or all(x < y for x, y in pairs)


def with_supported_layout(a: np.ndarray) -> np.ndarray:
    """
    Return `a` unchanged if its layout is usable by the backward kernels,
    otherwise a dense C-order copy.
    """
    if stride_descending_c_ascending_f(a):
        return a
    logger.debug(
        "copying delta with strides %s to a dense C-order buffer", a.strides
    )
    return np.ascontiguousarray(a)
