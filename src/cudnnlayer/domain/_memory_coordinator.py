"""
Device memory coordinator contract.

The convolution layer never owns the device memory behind its inputs, weights,
gradient views or outputs. Instead, every group of native operations touching
a set of tensors is bracketed by exactly one `prepare_action` (acquire
synchronized device pointers, declaring read/write intent) and exactly one
`register_action` (mark tensors used/modified and release the token), even
when several native calls happen in between.

Pointers returned by `get_pointer` are valid only between those two calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Protocol, Sequence, Tuple, runtime_checkable


@dataclass
class ActionContext:
    """
    Synchronization token for one prepared group of device operations.

    Attributes
    ----------
    reads : tuple
        Tensors the action reads.
    writes : tuple
        Tensors the action may modify.
    state : dict
        Coordinator-private bookkeeping (e.g. device buffers keyed by tensor id).
    closed : bool
        Set once the action has been registered.
    """

    reads: Tuple[Any, ...] = ()
    writes: Tuple[Any, ...] = ()
    state: Dict[Any, Any] = field(default_factory=dict, repr=False)
    closed: bool = False

    def tensors(self) -> Tuple[Any, ...]:
        """All tensors taking part in the action, reads first, no duplicates."""
        seen = set()
        out = []
        for t in (*self.reads, *self.writes):
            if id(t) not in seen:
                seen.add(id(t))
                out.append(t)
        return tuple(out)

    def is_write(self, tensor: Any) -> bool:
        return any(t is tensor for t in self.writes)


@runtime_checkable
class IDeviceMemoryCoordinator(Protocol):
    """
    Structural contract for the external device memory coordinator.

    Notes
    -----
    - `register_action(ctx)` with no tensors closes the action without marking
      anything modified; the layer does this when an operation failed.
    - Implementations must keep pointers valid until `register_action`.
    """

    def prepare_action(
        self, *, reads: Sequence[Any] = (), writes: Sequence[Any] = ()
    ) -> ActionContext: ...

    def get_pointer(self, tensor: Any, ctx: ActionContext) -> int: ...

    def register_action(self, ctx: ActionContext, *modified: Any) -> None: ...
