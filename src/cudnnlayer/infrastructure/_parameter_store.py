"""
In-memory parameter store and gradient bundle.

`DictParameterStore` is a minimal implementation of `IParameterStore`: it keeps
parameter arrays and their pre-allocated gradient views in dictionaries. The
convolution layer only reads parameters and overwrites gradient views; it
never allocates either.

`Gradient` is the bundle returned by a backward pass, mapping parameter keys
to the gradient views that were written.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, Optional, Tuple

import numpy as np

from ..domain._errors import InputError
from ..domain._parameter_store import BIAS_KEY, WEIGHT_KEY


def _normalize_dtype(dtype: Any) -> np.dtype:
    """
    Normalize dtype inputs to a NumPy dtype.

    Accepts numpy dtype objects, strings ("float32") or None (float32).
    """
    return np.dtype(np.float32) if dtype is None else np.dtype(dtype)


class DictParameterStore:
    """
    Dictionary-backed parameter store.

    Parameters
    ----------
    params : dict[str, np.ndarray]
        Parameter arrays by key.
    gradient_views : dict[str, np.ndarray], optional
        Gradient views by key. Any key without a view gets a zero-initialized
        C-order array of the parameter's shape and dtype.
    """

    def __init__(
        self,
        params: Dict[str, np.ndarray],
        gradient_views: Optional[Dict[str, np.ndarray]] = None,
    ) -> None:
        self._params: Dict[str, np.ndarray] = dict(params)
        views = dict(gradient_views or {})
        for key, p in self._params.items():
            if key not in views:
                views[key] = np.zeros(p.shape, dtype=p.dtype, order="C")
            elif tuple(views[key].shape) != tuple(p.shape):
                raise InputError(
                    f"gradient view for {key!r} has shape {views[key].shape}, "
                    f"parameter has {p.shape}"
                )
        self._views = views

    @classmethod
    def for_convolution(
        cls,
        in_depth: int,
        out_depth: int,
        kernel_size: Tuple[int, int],
        *,
        dtype: Any = None,
        rng: Optional[np.random.Generator] = None,
    ) -> "DictParameterStore":
        """
        Create a store with He/Kaiming-normal weights and zero bias.

        weight shape: (out_depth, in_depth, k_h, k_w), bias shape: (out_depth,)
        """
        dt = _normalize_dtype(dtype)
        rng = rng if rng is not None else np.random.default_rng()
        k_h, k_w = (int(k) for k in kernel_size)

        fan_in = int(in_depth) * k_h * k_w
        scale = float(np.sqrt(2.0 / float(fan_in)))
        w = (rng.standard_normal((int(out_depth), int(in_depth), k_h, k_w)) * scale).astype(dt)
        b = np.zeros((int(out_depth),), dtype=dt)
        return cls({WEIGHT_KEY: w, BIAS_KEY: b})

    def get_param(self, key: str) -> np.ndarray:
        try:
            return self._params[key]
        except KeyError:
            raise InputError(f"no parameter stored under {key!r}") from None

    def set_param(self, key: str, value: np.ndarray) -> None:
        """Replace a parameter; its gradient view must keep the same shape."""
        if key in self._views and tuple(self._views[key].shape) != tuple(value.shape):
            raise InputError(
                f"parameter {key!r} shape {value.shape} does not match its "
                f"gradient view {self._views[key].shape}"
            )
        self._params[key] = value

    def get_gradient_view(self, key: str) -> np.ndarray:
        try:
            return self._views[key]
        except KeyError:
            raise InputError(f"no gradient view stored under {key!r}") from None

    def keys(self):
        return self._params.keys()


class Gradient:
    """
    Ordered mapping of parameter key -> gradient array.

    A flattening order ('c' or 'f') may be recorded per key for consumers that
    flatten gradients into a single vector.
    """

    def __init__(self) -> None:
        self._grads: Dict[str, np.ndarray] = {}
        self._orders: Dict[str, Optional[str]] = {}

    def set_gradient_for(self, key: str, grad: np.ndarray, order: Optional[str] = None) -> None:
        self._grads[key] = grad
        self._orders[key] = order

    def get_gradient_for(self, key: str) -> np.ndarray:
        return self._grads[key]

    def flattening_order_for(self, key: str) -> Optional[str]:
        return self._orders.get(key)

    def gradient_for_variable(self) -> Dict[str, np.ndarray]:
        return dict(self._grads)

    def __getitem__(self, key: str) -> np.ndarray:
        return self._grads[key]

    def __contains__(self, key: object) -> bool:
        return key in self._grads

    def __iter__(self) -> Iterator[str]:
        return iter(self._grads)

    def __len__(self) -> int:
        return len(self._grads)

    def __repr__(self) -> str:
        shapes = {k: tuple(v.shape) for k, v in self._grads.items()}
        return f"Gradient({shapes})"
