"""Tests for consolidation concurrency guarantees.

Covers:
1. at most one in-flight consolidation per scope
2. independent scopes consolidate concurrently
3. lock dict batch cleanup when exceeding 100 entries
4. wipe discards or cancels in-flight consolidation
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from chatmemory.config.schema import ConsolidationConfig, MemoryConfig
from chatmemory.memory.consolidation import ConsolidationEngine
from chatmemory.memory.coordinator import ConsolidationCoordinator, ConsolidationState
from chatmemory.memory.io import InMemoryKeyValueStore
from chatmemory.memory.store import MemoryStore
from chatmemory.memory.types import Message
from chatmemory.service import MemoryService


def _messages(n: int) -> list[Message]:
    return [Message(index=i, speaker="Player", text=f"msg{i}", role="user") for i in range(n)]


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_triggers_produce_one_generation(self) -> None:
        release = asyncio.Event()
        calls = 0

        async def _gen(prompt, options):
            nonlocal calls
            calls += 1
            await release.wait()
            return "summary"

        store = MemoryStore(InMemoryKeyValueStore())
        engine = ConsolidationEngine(store, _gen, ConsolidationConfig(threshold=5))
        messages = _messages(5)

        tasks = [asyncio.create_task(engine.run("chat:1", messages)) for _ in range(10)]
        await asyncio.sleep(0)
        assert engine.state("chat:1") is ConsolidationState.GENERATING
        release.set()
        outcomes = await asyncio.gather(*tasks)

        assert calls == 1
        assert sum(o.committed for o in outcomes) == 1
        assert sum(o.status == "busy" for o in outcomes) == 9
        assert store.get("chat:1").consolidated_cursor == 5
        assert engine.state("chat:1") is ConsolidationState.IDLE

    @pytest.mark.asyncio
    async def test_scopes_consolidate_independently(self) -> None:
        entered: list[str] = []
        both_in = asyncio.Event()

        async def _gen(prompt, options):
            entered.append(prompt)
            if len(entered) == 2:
                both_in.set()
            await asyncio.wait_for(both_in.wait(), timeout=1)
            return "summary"

        store = MemoryStore(InMemoryKeyValueStore())
        engine = ConsolidationEngine(store, _gen, ConsolidationConfig(threshold=2))

        first, second = await asyncio.gather(
            engine.run("chat:a", _messages(2)),
            engine.run("chat:b", _messages(3)),
        )

        assert first.committed and second.committed
        assert store.get("chat:a").consolidated_cursor == 2
        assert store.get("chat:b").consolidated_cursor == 3


class TestCoordinator:
    def test_try_begin_is_check_and_set(self) -> None:
        coordinator = ConsolidationCoordinator()
        assert coordinator.try_begin("chat:1")
        assert not coordinator.try_begin("chat:1")
        assert coordinator.try_begin("chat:2")
        coordinator.finish("chat:1")
        assert coordinator.is_idle("chat:1")

    def test_illegal_transition_raises(self) -> None:
        coordinator = ConsolidationCoordinator()
        with pytest.raises(RuntimeError):
            coordinator.transition("chat:1", ConsolidationState.PARSING)
        coordinator.try_begin("chat:1")
        coordinator.transition("chat:1", ConsolidationState.GENERATING)
        with pytest.raises(RuntimeError):
            coordinator.transition("chat:1", ConsolidationState.COMMITTED)

    def test_epoch_bumps_per_scope(self) -> None:
        coordinator = ConsolidationCoordinator()
        assert coordinator.epoch("chat:1") == 0
        assert coordinator.bump_epoch("chat:1") == 1
        assert coordinator.epoch("chat:2") == 0


class TestLockBatchCleanup:
    """Verify prune_lock batch cleanup when dict > 100."""

    @pytest.mark.asyncio
    async def test_batch_cleanup_over_100(self) -> None:
        coordinator = ConsolidationCoordinator()
        for i in range(110):
            coordinator.locks[f"chat:{i}"] = asyncio.Lock()

        assert len(coordinator.locks) == 110

        dummy_lock = coordinator.locks["chat:0"]
        coordinator.prune_lock("chat:0", dummy_lock)

        assert len(coordinator.locks) == 0

    @pytest.mark.asyncio
    async def test_batch_cleanup_preserves_locked(self) -> None:
        coordinator = ConsolidationCoordinator()
        for i in range(105):
            coordinator.locks[f"chat:{i}"] = asyncio.Lock()

        await coordinator.locks["chat:50"].acquire()
        await coordinator.locks["chat:99"].acquire()

        dummy_lock = coordinator.locks["chat:0"]
        coordinator.prune_lock("chat:0", dummy_lock)

        assert "chat:50" in coordinator.locks
        assert "chat:99" in coordinator.locks
        assert len(coordinator.locks) == 2

        coordinator.locks["chat:50"].release()
        coordinator.locks["chat:99"].release()

    @pytest.mark.asyncio
    async def test_run_locked_prunes_its_lock_afterwards(self) -> None:
        coordinator = ConsolidationCoordinator()
        result = await coordinator.run_locked("chat:1", AsyncMock(return_value=7))
        assert result == 7
        assert "chat:1" not in coordinator.locks

    @pytest.mark.asyncio
    async def test_lock_with_waiters_is_not_pruned(self) -> None:
        coordinator = ConsolidationCoordinator()
        lock = coordinator.get_lock("chat:1")
        await lock.acquire()
        waiter = asyncio.create_task(lock.acquire())
        await asyncio.sleep(0)
        lock.release()

        coordinator.prune_lock("chat:1", lock)

        assert coordinator.locks["chat:1"] is lock
        await waiter
        lock.release()
        coordinator.prune_lock("chat:1", lock)
        assert "chat:1" not in coordinator.locks


class TestWipeDuringConsolidation:
    @pytest.mark.asyncio
    async def test_wipe_discards_inline_result(self) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        async def _gen(prompt, options):
            started.set()
            await release.wait()
            return "stale summary"

        service = MemoryService(_gen, InMemoryKeyValueStore(), MemoryConfig())
        messages = _messages(5)

        task = asyncio.create_task(service.on_new_message("chat:1", messages))
        await asyncio.wait_for(started.wait(), timeout=1)
        await service.wipe("chat:1")
        release.set()
        outcome = await task

        assert outcome is not None
        assert outcome.status == "discarded"
        record = service.get_memory_snapshot("chat:1")
        assert record.rolling_summary == ""
        assert record.consolidated_cursor == 0
        assert service.state("chat:1") is ConsolidationState.IDLE

    @pytest.mark.asyncio
    async def test_wipe_cancels_background_task(self) -> None:
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def _gen(prompt, options):
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise
            return "never"

        config = MemoryConfig(consolidation=ConsolidationConfig(background=True))
        service = MemoryService(_gen, InMemoryKeyValueStore(), config)

        outcome = await service.on_new_message("chat:1", _messages(5))
        assert outcome is None
        await asyncio.wait_for(started.wait(), timeout=1)

        await service.wipe("chat:1")

        assert cancelled.is_set()
        assert "chat:1" not in service.coordinator.tasks
        assert service.state("chat:1") is ConsolidationState.IDLE
        assert service.get_memory_snapshot("chat:1").consolidated_cursor == 0
