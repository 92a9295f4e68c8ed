"""
Scoped bracketing of device operations with the memory coordinator.

`device_action` issues exactly one `prepare_action` on entry and exactly one
`register_action` on exit. Tensors are reported as modified only when the
block completes; if it raises, the action is closed with nothing marked
modified and the exception propagates.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, List, Sequence

from ...domain._memory_coordinator import ActionContext, IDeviceMemoryCoordinator


class _Action:
    def __init__(self, context: ActionContext) -> None:
        self.context = context
        self._modified: List[Any] = []

    def modified(self, *tensors: Any) -> None:
        """Mark `tensors` as written by the action."""
        self._modified.extend(tensors)


@contextmanager
def device_action(
    coordinator: IDeviceMemoryCoordinator,
    *,
    reads: Sequence[Any] = (),
    writes: Sequence[Any] = (),
) -> Iterator[_Action]:
    action = _Action(coordinator.prepare_action(reads=tuple(reads), writes=tuple(writes)))
    try:
        yield action
    except BaseException:
        coordinator.register_action(action.context)
        raise
    coordinator.register_action(action.context, *action._modified)
