"""
Closed activation variant used by the convolution layer.

Activation functions are configured by name (as they are in layer configs),
but dispatch happens on `ActivationKind`: one member per activation that the
backend can execute fused and in place, plus `HOST` for every other name,
which is executed by the host numeric library and yields a new buffer.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ActivationKind(Enum):
    """Activation dispatch variants."""

    IDENTITY = "identity"
    SIGMOID = "sigmoid"
    RELU = "relu"
    TANH = "tanh"
    SOFTMAX = "softmax"
    LOGSOFTMAX = "logsoftmax"
    HOST = "host"

    @property
    def is_fused(self) -> bool:
        """True for kinds executed in place by the backend."""
        return self not in (ActivationKind.IDENTITY, ActivationKind.HOST)


_FUSED_BY_NAME = {
    kind.value: kind for kind in ActivationKind if kind is not ActivationKind.HOST
}


@dataclass(frozen=True)
class Activation:
    """
    A parsed activation: its dispatch kind and its canonical name.

    Attributes
    ----------
    kind : ActivationKind
        Dispatch variant.
    name : str
        Lower-case activation name. For `HOST` activations this is the key
        used to look up the host transform.
    """

    kind: ActivationKind
    name: str

    @classmethod
    def parse(cls, name: str) -> "Activation":
        """
        Parse an activation name (case-insensitive, surrounding blanks ignored).

        Parameters
        ----------
        name : str
            Activation name, e.g. "relu" or "leakyrelu".

        Returns
        -------
        Activation
            Fused kind for names the backend executes, `HOST` otherwise.

        Raises
        ------
        TypeError
            If `name` is not a string.
        ValueError
            If `name` is empty.
        """
        if not isinstance(name, str):
            raise TypeError(f"activation name must be a str, got {type(name)!r}")
        key = name.strip().lower()
        if not key:
            raise ValueError("activation name must not be empty")
        return cls(kind=_FUSED_BY_NAME.get(key, ActivationKind.HOST), name=key)

    @property
    def is_identity(self) -> bool:
        return self.kind is ActivationKind.IDENTITY

    def __str__(self) -> str:
        return self.name
