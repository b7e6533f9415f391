from unittest.mock import AsyncMock, MagicMock

import pytest

from chatmemory.config.schema import (
    AnnotationConfig,
    ArchiveConfig,
    ConsolidationConfig,
    MemoryConfig,
    RetentionConfig,
)
from chatmemory.errors import StoreError
from chatmemory.memory.coordinator import ConsolidationState
from chatmemory.memory.io import InMemoryKeyValueStore
from chatmemory.memory.types import Message
from chatmemory.service import MemoryService

SCOPE = "chat:1"


def _msg(i: int, chars: int = 20) -> Message:
    role = "user" if i % 2 == 0 else "character"
    return Message(index=i, speaker="Player" if role == "user" else "Alice", text=f"m{i} " + "w" * chars, role=role)


class TestMessageFlow:
    @pytest.mark.asyncio
    async def test_fifth_message_triggers_consolidation(self) -> None:
        generate = AsyncMock(return_value="Alice and the player met.")
        service = MemoryService(generate, InMemoryKeyValueStore())
        chat: list[Message] = []

        outcomes = []
        for i in range(5):
            chat.append(_msg(i))
            outcomes.append(await service.on_new_message(SCOPE, chat))

        assert [o.status for o in outcomes] == ["skipped"] * 4 + ["committed"]
        assert generate.await_count == 1
        snapshot = service.get_memory_snapshot(SCOPE)
        assert snapshot.consolidated_cursor == 5
        assert snapshot.rolling_summary == "Alice and the player met."

        text = await service.get_injection_text(SCOPE)
        assert text == "[Story so far]\nAlice and the player met."

    @pytest.mark.asyncio
    async def test_messages_are_pulled_from_host_source(self) -> None:
        chat = [_msg(i) for i in range(5)]
        source = MagicMock(return_value=chat)
        service = MemoryService(AsyncMock(return_value="summary"), InMemoryKeyValueStore(), get_messages=source)

        outcome = await service.on_new_message(SCOPE)

        source.assert_called_once_with(SCOPE)
        assert outcome.committed

    @pytest.mark.asyncio
    async def test_missing_message_source_is_a_caller_error(self) -> None:
        service = MemoryService(AsyncMock(), InMemoryKeyValueStore())
        with pytest.raises(ValueError):
            await service.on_new_message(SCOPE)

    @pytest.mark.asyncio
    async def test_retention_runs_after_consolidation(self) -> None:
        config = MemoryConfig(
            consolidation=ConsolidationConfig(threshold=10),
            retention=RetentionConfig(token_budget=10, buffer=2),
        )
        service = MemoryService(AsyncMock(return_value="summary"), InMemoryKeyValueStore(), config)
        chat = [_msg(i, chars=36) for i in range(10)]

        await service.on_new_message(SCOPE, chat)

        assert service.get_memory_snapshot(SCOPE).consolidated_cursor == 10
        assert [m.excluded_from_context for m in chat] == [True] * 8 + [False] * 2

    @pytest.mark.asyncio
    async def test_generation_failure_keeps_retention_running(self) -> None:
        config = MemoryConfig(retention=RetentionConfig(token_budget=1, buffer=0))
        service = MemoryService(AsyncMock(side_effect=RuntimeError("down")), InMemoryKeyValueStore(), config)
        chat = [_msg(i) for i in range(5)]

        outcome = await service.on_new_message(SCOPE, chat)

        assert outcome.status == "failed"
        assert service.state(SCOPE) is ConsolidationState.IDLE
        # Nothing consolidated, so nothing may be excluded.
        assert not any(m.excluded_from_context for m in chat)

    @pytest.mark.asyncio
    async def test_force_consolidate_ignores_threshold(self) -> None:
        service = MemoryService(AsyncMock(return_value="forced"), InMemoryKeyValueStore())

        outcome = await service.force_consolidate(SCOPE, [_msg(0)])

        assert outcome.committed
        assert service.get_memory_snapshot(SCOPE).consolidated_cursor == 1

    @pytest.mark.asyncio
    async def test_background_mode_schedules_task(self) -> None:
        config = MemoryConfig(consolidation=ConsolidationConfig(background=True, threshold=2))
        service = MemoryService(AsyncMock(return_value="bg summary"), InMemoryKeyValueStore(), config)

        assert await service.on_new_message(SCOPE, [_msg(0)]) is None
        assert SCOPE not in service.coordinator.tasks

        assert await service.on_new_message(SCOPE, [_msg(0), _msg(1)]) is None
        await service.wait_idle(SCOPE)

        assert service.get_memory_snapshot(SCOPE).rolling_summary == "bg summary"
        assert service.state(SCOPE) is ConsolidationState.IDLE

    @pytest.mark.asyncio
    async def test_annotations_run_when_enabled(self) -> None:
        config = MemoryConfig(annotations=AnnotationConfig(enabled=True))
        generate = AsyncMock(return_value="short note")
        service = MemoryService(generate, InMemoryKeyValueStore(), config)

        await service.on_new_message(SCOPE, [_msg(0), _msg(1)])

        assert service.get_memory_snapshot(SCOPE).message_summaries == {1: "short note"}
        text = await service.get_injection_text(SCOPE)
        assert text == "[Earlier messages]\n- short note"


class TestWipeAndSnapshot:
    @pytest.mark.asyncio
    async def test_wipe_resets_everything(self) -> None:
        kv = InMemoryKeyValueStore()
        config = MemoryConfig(archive=ArchiveConfig(enabled=True))
        service = MemoryService(AsyncMock(return_value="summary"), kv, config, embed=AsyncMock(return_value=[1.0]))
        await service.on_new_message(SCOPE, [_msg(i) for i in range(5)])
        await service.archive.archive(SCOPE, "old text")
        events = []
        service.subscribe(events.append)

        await service.wipe(SCOPE)

        snapshot = service.get_memory_snapshot(SCOPE)
        assert snapshot.rolling_summary == ""
        assert snapshot.entities == {}
        assert snapshot.consolidated_cursor == 0
        assert snapshot.history == []
        assert service.archive.entries(SCOPE) == []
        assert [e["type"] for e in events] == ["memory_wiped"]

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self) -> None:
        service = MemoryService(AsyncMock(return_value="summary"), InMemoryKeyValueStore())
        await service.force_consolidate(SCOPE, [_msg(0)])

        snapshot = service.get_memory_snapshot(SCOPE)
        snapshot.rolling_summary = "mutated"

        assert service.get_memory_snapshot(SCOPE).rolling_summary == "summary"

    def test_store_errors_propagate_from_snapshot(self) -> None:
        kv = MagicMock()
        kv.get.side_effect = OSError("backend offline")
        service = MemoryService(AsyncMock(), kv)
        with pytest.raises(StoreError):
            service.get_memory_snapshot(SCOPE)


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self) -> None:
        service = MemoryService(AsyncMock(return_value="summary"), InMemoryKeyValueStore())
        events = []
        service.subscribe(events.append)

        await service.force_consolidate(SCOPE, [_msg(0)])
        assert [e["type"] for e in events] == ["consolidation_started", "memory_updated"]

        service.unsubscribe(events.append)
        await service.force_consolidate(SCOPE, [_msg(0), _msg(1)])
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_failure_event_carries_user_message(self) -> None:
        service = MemoryService(AsyncMock(side_effect=TimeoutError()), InMemoryKeyValueStore())
        events = []
        service.subscribe(events.append)

        await service.force_consolidate(SCOPE, [_msg(0)])

        assert events[-1]["type"] == "consolidation_failed"
        assert events[-1]["error_kind"] == "generation"
        assert events[-1]["user_message"]


@pytest.mark.asyncio
async def test_archive_maintenance_backfills_vectors() -> None:
    embed = AsyncMock(side_effect=RuntimeError("offline"))
    config = MemoryConfig(archive=ArchiveConfig(enabled=True))
    service = MemoryService(AsyncMock(), InMemoryKeyValueStore(), config, embed=embed)
    await service.archive.archive(SCOPE, "something happened")

    embed.side_effect = None
    embed.return_value = [0.1, 0.2]

    assert await service.archive_maintenance(SCOPE) == 1
