"""Per-scope consolidation state, write locks and background task tracking."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class ConsolidationState(str, Enum):
    IDLE = "idle"
    TRIGGERED = "triggered"
    GENERATING = "generating"
    PARSING = "parsing"
    COMMITTED = "committed"
    FAILED = "failed"


def lock_is_free(lock: asyncio.Lock) -> bool:
    """Neither held nor awaited; only then may its dict entry go."""
    return not lock.locked() and not lock._waiters


_ALLOWED_TRANSITIONS: dict[ConsolidationState, frozenset[ConsolidationState]] = {
    ConsolidationState.IDLE: frozenset({ConsolidationState.TRIGGERED}),
    ConsolidationState.TRIGGERED: frozenset({
        ConsolidationState.GENERATING,
        ConsolidationState.COMMITTED,
        ConsolidationState.FAILED,
    }),
    ConsolidationState.GENERATING: frozenset({ConsolidationState.PARSING, ConsolidationState.FAILED}),
    ConsolidationState.PARSING: frozenset({ConsolidationState.COMMITTED, ConsolidationState.FAILED}),
    ConsolidationState.COMMITTED: frozenset({ConsolidationState.IDLE}),
    ConsolidationState.FAILED: frozenset({ConsolidationState.IDLE}),
}


class ConsolidationCoordinator:
    """Tracks per-scope state machines, in-flight tasks and write locks.

    ``try_begin`` is a synchronous check-and-set, so two triggers for the same
    scope can never both leave IDLE within one event loop.
    """

    def __init__(self) -> None:
        self.states: dict[str, ConsolidationState] = {}
        self.tasks: dict[str, asyncio.Task[Any]] = {}
        self.locks: dict[str, asyncio.Lock] = {}
        self.epochs: dict[str, int] = {}

    def state(self, scope_id: str) -> ConsolidationState:
        return self.states.get(scope_id, ConsolidationState.IDLE)

    def is_idle(self, scope_id: str) -> bool:
        return self.state(scope_id) is ConsolidationState.IDLE

    def try_begin(self, scope_id: str) -> bool:
        """Move IDLE -> TRIGGERED; False if the scope is already busy."""
        if not self.is_idle(scope_id):
            return False
        self.states[scope_id] = ConsolidationState.TRIGGERED
        return True

    def transition(self, scope_id: str, new_state: ConsolidationState) -> None:
        current = self.state(scope_id)
        if new_state not in _ALLOWED_TRANSITIONS[current]:
            raise RuntimeError(f"Illegal consolidation transition {current.value} -> {new_state.value}")
        self.states[scope_id] = new_state

    def finish(self, scope_id: str) -> None:
        """Terminal transition back to IDLE; the only way a scope becomes idle again."""
        self.states.pop(scope_id, None)

    def epoch(self, scope_id: str) -> int:
        return self.epochs.get(scope_id, 0)

    def bump_epoch(self, scope_id: str) -> int:
        self.epochs[scope_id] = self.epoch(scope_id) + 1
        return self.epochs[scope_id]

    def get_lock(self, scope_id: str) -> asyncio.Lock:
        lock = self.locks.get(scope_id)
        if lock is None:
            lock = asyncio.Lock()
            self.locks[scope_id] = lock
        return lock

    def prune_lock(self, scope_id: str, lock: asyncio.Lock) -> None:
        """Drop lock entry if no longer in use; batch-clean when dict grows large."""
        if lock_is_free(lock):
            self.locks.pop(scope_id, None)
        if len(self.locks) > 100:
            stale = [k for k, v in self.locks.items() if lock_is_free(v)]
            for key in stale:
                del self.locks[key]

    async def run_locked(self, scope_id: str, work: Callable[[], Awaitable[T]]) -> T:
        """Run *work* under the per-scope write lock."""
        lock = self.get_lock(scope_id)
        try:
            async with lock:
                return await work()
        finally:
            self.prune_lock(scope_id, lock)

    async def cancel_inflight(self, scope_id: str) -> None:
        running = self.tasks.pop(scope_id, None)
        if running and not running.done():
            running.cancel()
            try:
                await running
            except (asyncio.CancelledError, Exception):
                pass

    def start_background(
        self,
        scope_id: str,
        work: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task[Any] | None:
        """Schedule *work* unless a task for this scope is still running."""
        running = self.tasks.get(scope_id)
        if running is not None and not running.done():
            return None

        async def _runner() -> Any:
            try:
                return await work()
            finally:
                self.tasks.pop(scope_id, None)

        task = asyncio.create_task(_runner())
        self.tasks[scope_id] = task
        return task
