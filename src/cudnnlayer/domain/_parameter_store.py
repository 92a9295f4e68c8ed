"""
Parameter store contract.

The layer reads its weights and bias from an external store and writes its
gradients into pre-allocated views owned by that store. Keys follow the
convolution parameter naming: `WEIGHT_KEY` for the `[outDepth, inDepth, kH, kW]`
kernel and `BIAS_KEY` for the `[outDepth]` bias.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

WEIGHT_KEY = "W"
BIAS_KEY = "b"


@runtime_checkable
class IParameterStore(Protocol):
    """Structural contract for parameter and gradient-view lookup."""

    def get_param(self, key: str) -> Any:
        """Return the current parameter tensor stored under `key`."""
        ...

    def get_gradient_view(self, key: str) -> Any:
        """Return the pre-allocated gradient view matching parameter `key`."""
        ...
