"""Lifecycle state machine — enforces valid agent process transitions."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Awaitable

from aksmcp.types import LifecycleState
from aksmcp.exceptions import LifecycleStateError

_logger = logging.getLogger(__name__)

TransitionCallback = Callable[[LifecycleState, LifecycleState], Awaitable[None]]

VALID_TRANSITIONS: dict[LifecycleState, set[LifecycleState]] = {
    LifecycleState.STOPPED: {LifecycleState.STARTING},
    LifecycleState.STARTING: {LifecycleState.RUNNING, LifecycleState.FAILED},
    LifecycleState.RUNNING: {
        LifecycleState.STOPPING,
        LifecycleState.STOPPED,  # unexpected exit
    },
    LifecycleState.STOPPING: {LifecycleState.STOPPED},
    LifecycleState.FAILED: {LifecycleState.STARTING},  # retry
}


class LifecycleStateMachine:
    """Holds the single active lifecycle state of the agent process.

    Only valid transitions occur; entering FAILED records the reason,
    leaving it clears the reason. Listeners are notified on every change.
    """

    def __init__(self) -> None:
        self._state = LifecycleState.STOPPED
        self._failure_reason: str | None = None
        self._listeners: list[TransitionCallback] = []
        self._lock = asyncio.Lock()

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def failure_reason(self) -> str | None:
        return self._failure_reason

    async def transition(self, target: LifecycleState, reason: str | None = None) -> None:
        async with self._lock:
            valid = VALID_TRANSITIONS.get(self._state, set())
            if target not in valid:
                raise LifecycleStateError(
                    f"Cannot transition agent process "
                    f"from {self._state.value} to {target.value}"
                )
            old = self._state
            self._state = target
            self._failure_reason = reason if target == LifecycleState.FAILED else None
        # Notify listeners outside the lock; the new state is already committed
        for listener in self._listeners:
            try:
                await listener(old, target)
            except Exception:
                _logger.exception(
                    "Transition listener %r failed on %s -> %s",
                    listener, old.value, target.value,
                )

    def on_transition(self, callback: TransitionCallback) -> None:
        self._listeners.append(callback)
