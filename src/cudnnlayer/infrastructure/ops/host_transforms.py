"""
Host-side elementwise transforms, looked up by activation name.

The convolution layer uses these in two places:

- the activation fallback path, for names the backend cannot execute fused
  (`forward` returns a NEW array), and
- the backward pass for every non-identity activation, where the derivative
  at the pre-activation `z` is written in place (`derivative(z, out=z)`).

Softmax variants normalize over the channel axis (axis 1 for NCHW data), the
same axis the backend's channel-mode softmax uses.

Derivative conventions
----------------------
All derivatives are the elementwise local derivative evaluated at `z`. For
softmax/logsoftmax this is the diagonal of the Jacobian, which is what the
layer multiplies into the upstream error elementwise.
"""

from __future__ import annotations

from typing import Callable, Dict, Optional, Type

import numpy as np

from ...domain._errors import ConfigurationError


def _channel_axis(x: np.ndarray) -> int:
    return 1 if x.ndim >= 2 else 0


class HostTransform:
    """
    Base class of a named elementwise transform.

    Subclasses implement `forward` (pure, returns a new array) and
    `derivative` (writes d(forward)/dz at `z` into `out`, which may be `z`).
    """

    name: str = ""

    @staticmethod
    def forward(z: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    @classmethod
    def derivative(cls, z: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        raise NotImplementedError


_REGISTRY: Dict[str, Type[HostTransform]] = {}


def register_transform(name: str) -> Callable[[Type[HostTransform]], Type[HostTransform]]:
    """Class decorator registering a transform under `name`."""

    def deco(cls: Type[HostTransform]) -> Type[HostTransform]:
        key = name.lower()
        if key in _REGISTRY:
            raise ValueError(f"host transform {key!r} registered twice")
        cls.name = key
        _REGISTRY[key] = cls
        return cls

    return deco


def get_transform(name: str) -> Type[HostTransform]:
    """
    Look up a transform by (case-insensitive) name.

    Raises
    ------
    ConfigurationError
        If no transform is registered under `name`.
    """
    try:
        return _REGISTRY[str(name).lower()]
    except KeyError:
        known = ", ".join(sorted(_REGISTRY))
        raise ConfigurationError(
            f"unknown activation function {name!r} (known: {known})"
        ) from None


def has_transform(name: str) -> bool:
    return str(name).lower() in _REGISTRY


def _into(out: Optional[np.ndarray], value: np.ndarray) -> np.ndarray:
    if out is None:
        return value
    out[...] = value
    return out


@register_transform("identity")
class Identity(HostTransform):
    @staticmethod
    def forward(z):
        return z.copy()

    @classmethod
    def derivative(cls, z, out=None):
        return _into(out, np.ones_like(z))


@register_transform("sigmoid")
class Sigmoid(HostTransform):
    """sigmoid(z) = 1 / (1 + exp(-z)); derivative s * (1 - s)."""

    @staticmethod
    def forward(z):
        return 1.0 / (1.0 + np.exp(-z))

    @classmethod
    def derivative(cls, z, out=None):
        s = cls.forward(z)
        return _into(out, s * (1.0 - s))


@register_transform("relu")
class ReLU(HostTransform):
    @staticmethod
    def forward(z):
        return np.maximum(z, 0)

    @classmethod
    def derivative(cls, z, out=None):
        return _into(out, (z > 0).astype(z.dtype))


@register_transform("tanh")
class Tanh(HostTransform):
    @staticmethod
    def forward(z):
        return np.tanh(z)

    @classmethod
    def derivative(cls, z, out=None):
        t = np.tanh(z)
        return _into(out, 1.0 - t * t)


@register_transform("leakyrelu")
class LeakyReLU(HostTransform):
    """Leaky ReLU with a fixed negative slope of 0.01."""

    alpha = 0.01

    @staticmethod
    def forward(z):
        return np.where(z > 0, z, LeakyReLU.alpha * z).astype(z.dtype, copy=False)

    @classmethod
    def derivative(cls, z, out=None):
        return _into(out, np.where(z > 0, 1.0, cls.alpha).astype(z.dtype, copy=False))


@register_transform("elu")
class ELU(HostTransform):
    @staticmethod
    def forward(z):
        return np.where(z > 0, z, np.expm1(np.minimum(z, 0))).astype(z.dtype, copy=False)

    @classmethod
    def derivative(cls, z, out=None):
        return _into(out, np.where(z > 0, 1.0, np.exp(np.minimum(z, 0))).astype(z.dtype, copy=False))


@register_transform("softplus")
class Softplus(HostTransform):
    @staticmethod
    def forward(z):
        return np.logaddexp(0, z).astype(z.dtype, copy=False)

    @classmethod
    def derivative(cls, z, out=None):
        return _into(out, Sigmoid.forward(z))


@register_transform("softsign")
class Softsign(HostTransform):
    @staticmethod
    def forward(z):
        return z / (1.0 + np.abs(z))

    @classmethod
    def derivative(cls, z, out=None):
        d = 1.0 + np.abs(z)
        return _into(out, 1.0 / (d * d))


@register_transform("hardtanh")
class HardTanh(HostTransform):
    @staticmethod
    def forward(z):
        return np.clip(z, -1.0, 1.0)

    @classmethod
    def derivative(cls, z, out=None):
        return _into(out, ((z > -1.0) & (z < 1.0)).astype(z.dtype))


@register_transform("hardsigmoid")
class HardSigmoid(HostTransform):
    """clip(0.2 * z + 0.5, 0, 1)."""

    @staticmethod
    def forward(z):
        return np.clip(0.2 * z + 0.5, 0.0, 1.0)

    @classmethod
    def derivative(cls, z, out=None):
        inside = (z > -2.5) & (z < 2.5)
        return _into(out, np.where(inside, 0.2, 0.0).astype(z.dtype, copy=False))


@register_transform("cube")
class Cube(HostTransform):
    @staticmethod
    def forward(z):
        return z * z * z

    @classmethod
    def derivative(cls, z, out=None):
        return _into(out, 3.0 * z * z)


@register_transform("softmax")
class Softmax(HostTransform):
    """Numerically stable softmax over the channel axis."""

    @staticmethod
    def forward(z):
        axis = _channel_axis(z)
        shifted = z - np.max(z, axis=axis, keepdims=True)
        e = np.exp(shifted)
        return e / np.sum(e, axis=axis, keepdims=True)

    @classmethod
    def derivative(cls, z, out=None):
        s = cls.forward(z)
        return _into(out, s * (1.0 - s))


@register_transform("logsoftmax")
class LogSoftmax(HostTransform):
    """log(softmax(z)) over the channel axis."""

    @staticmethod
    def forward(z):
        axis = _channel_axis(z)
        shifted = z - np.max(z, axis=axis, keepdims=True)
        return shifted - np.log(np.sum(np.exp(shifted), axis=axis, keepdims=True))

    @classmethod
    def derivative(cls, z, out=None):
        return _into(out, 1.0 - Softmax.forward(z))
