"""Immutable agent state snapshots and the transitions that produce them."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

from taskpilot.agent.models import ChatMessage, ErrorInfo, MessageRole

LOGGER = logging.getLogger(__name__)

StateListener = Callable[["AgentState"], None]


@dataclass(frozen=True, slots=True)
class AgentState:
    """Full UI-observable status of one orchestrator."""

    is_running: bool = False
    current_task: str | None = None
    current_step: int | None = None
    total_steps: int | None = None
    messages: tuple[ChatMessage, ...] = ()
    errors: tuple[ErrorInfo, ...] = ()


def start_task(state: AgentState, task: str) -> AgentState:
    return replace(state, is_running=True, current_task=task, current_step=0, total_steps=None)


def set_total_steps(state: AgentState, total_steps: int) -> AgentState:
    return replace(state, total_steps=total_steps)


def set_current_step(state: AgentState, current_step: int) -> AgentState:
    return replace(state, current_step=current_step)


def append_message(
    state: AgentState,
    role: MessageRole,
    content: str,
    *,
    timestamp: float | None = None,
) -> AgentState:
    message = ChatMessage(
        role=role,
        content=content,
        timestamp=time.time() if timestamp is None else timestamp,
    )
    return replace(state, messages=(*state.messages, message))


def record_error(state: AgentState, error: ErrorInfo) -> AgentState:
    return replace(state, errors=(*state.errors, error))


def finish_task(state: AgentState) -> AgentState:
    """Return to idle, dropping every per-task field."""
    return replace(
        state,
        is_running=False,
        current_task=None,
        current_step=None,
        total_steps=None,
    )


def clear_history(state: AgentState) -> AgentState:
    return replace(state, messages=(), errors=())


class StatePublisher:
    """Holds the current snapshot and pushes every new one to a single listener.

    Transitions are applied under a lock so a listener never observes a
    snapshot older than one it has already received.
    """

    def __init__(self, listener: StateListener | None = None) -> None:
        self._state = AgentState()
        self._listener = listener
        self._lock = threading.RLock()

    @property
    def state(self) -> AgentState:
        return self._state

    def subscribe(self, listener: StateListener | None) -> None:
        """Replace the listener; the current snapshot is delivered at once."""
        with self._lock:
            self._listener = listener
            self._notify()

    def apply(
        self,
        transition: Callable[..., AgentState],
        *args: object,
        **kwargs: object,
    ) -> AgentState:
        with self._lock:
            self._state = transition(self._state, *args, **kwargs)
            self._notify()
            return self._state

    def _notify(self) -> None:
        if self._listener is None:
            return
        try:
            self._listener(self._state)
        except Exception:
            LOGGER.exception("state_listener_failed")
