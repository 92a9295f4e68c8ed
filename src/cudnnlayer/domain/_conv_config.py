"""
Immutable configuration of a cuDNN convolution layer.

`ConvolutionLayerConfig` captures constructor-level hyperparameters only:
kernel size, stride, padding, activation, data type, and the backward
algorithm policy. Parameters (weights/bias) live in the parameter store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from typing_extensions import Self

from ._activation import Activation
from ._errors import ConfigurationError

_SUPPORTED_DTYPES = ("float32", "float64")


def _pair(v: int | Tuple[int, int] | list) -> Tuple[int, int]:
    """
    Normalize an int-or-pair into a (h, w) tuple of ints.

    Parameters
    ----------
    v : int | (int, int)
        Scalar or pair value.

    Returns
    -------
    (int, int)
        A 2-tuple of ints.
    """
    if isinstance(v, (tuple, list)):
        if len(v) != 2:
            raise ConfigurationError(f"expected an (h, w) pair, got {v!r}")
        return int(v[0]), int(v[1])
    return int(v), int(v)


@dataclass(frozen=True)
class ConvolutionLayerConfig:
    """
    Hyperparameters of a 2D convolution layer (NCHW, cross-correlation).

    Parameters
    ----------
    kernel_size : int or tuple[int, int]
        Kernel height/width. Must be positive.
    stride : int or tuple[int, int], optional
        Stride along height/width. Must be positive. Defaults to 1.
    padding : int or tuple[int, int], optional
        Symmetric zero padding. Must be non-negative. Defaults to 0.
    activation : str, optional
        Activation name applied after bias addition. Defaults to "identity".
    dtype : str, optional
        "float32" (default) or "float64".
    separate_backward_data_algorithm : bool, optional
        When False (default) the algorithm selected for the backward-filter
        pass is also used for the backward-data pass. When True, a dedicated
        backward-data algorithm is queried.

    Raises
    ------
    ConfigurationError
        For non-positive kernel/stride, negative padding, or an unsupported
        dtype.
    """

    kernel_size: Tuple[int, int]
    stride: Tuple[int, int] = (1, 1)
    padding: Tuple[int, int] = (0, 0)
    activation: str = "identity"
    dtype: str = "float32"
    separate_backward_data_algorithm: bool = False
    parsed_activation: Activation = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        kernel = _pair(self.kernel_size)
        stride = _pair(self.stride)
        padding = _pair(self.padding)
        if min(kernel) <= 0:
            raise ConfigurationError(f"kernel_size must be positive, got {kernel}")
        if min(stride) <= 0:
            raise ConfigurationError(f"stride must be positive, got {stride}")
        if min(padding) < 0:
            raise ConfigurationError(f"padding must be non-negative, got {padding}")

        dtype = str(self.dtype)
        if dtype not in _SUPPORTED_DTYPES:
            raise ConfigurationError(
                f"dtype must be one of {_SUPPORTED_DTYPES}, got {self.dtype!r}"
            )

        try:
            activation = Activation.parse(self.activation)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(str(e)) from e

        # frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, "kernel_size", kernel)
        object.__setattr__(self, "stride", stride)
        object.__setattr__(self, "padding", padding)
        object.__setattr__(self, "dtype", dtype)
        object.__setattr__(self, "activation", activation.name)
        object.__setattr__(self, "parsed_activation", activation)
        object.__setattr__(
            self,
            "separate_backward_data_algorithm",
            bool(self.separate_backward_data_algorithm),
        )

    def get_config(self) -> Dict[str, Any]:
        """Return a JSON-serializable configuration dictionary."""
        return {
            "kernel_size": list(self.kernel_size),
            "stride": list(self.stride),
            "padding": list(self.padding),
            "activation": self.activation,
            "dtype": self.dtype,
            "separate_backward_data_algorithm": self.separate_backward_data_algorithm,
        }

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> Self:
        """Construct a configuration from a `get_config()` dictionary."""
        return cls(
            kernel_size=tuple(cfg["kernel_size"]),
            stride=tuple(cfg.get("stride", (1, 1))),
            padding=tuple(cfg.get("padding", (0, 0))),
            activation=cfg.get("activation", "identity"),
            dtype=cfg.get("dtype", "float32"),
            separate_backward_data_algorithm=bool(
                cfg.get("separate_backward_data_algorithm", False)
            ),
        )
