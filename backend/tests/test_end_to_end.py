import pytest

from conftest import build_config
from db.models import MemoryFilters, MemoryType
from db.service import MemoryService
from runtime_state import NotificationQueue, drain_background_tasks


@pytest.mark.asyncio
async def test_ingested_preference_is_found_and_injected(service, notifications) -> None:
    result = await service.ingest(
        [
            {"type": "preference", "content": "User prefers dark themes", "confidence": 0.9},
            {"type": "fact", "content": "The office closes at 6pm", "confidence": 0.9},
        ],
        agent_id="agent-1",
    )
    preference = result["committed"][0]
    assert notifications.list_pending() == []

    payload = await service.search(
        "theme preference",
        filters=MemoryFilters(types=[MemoryType.PREFERENCE]),
        limit=5,
    )
    assert payload["results"][0].id == preference.id

    context = await service.assemble_context({"description": "pick a colour scheme"})
    assert "### User Preferences\n- User prefers dark themes" in context
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_state_survives_a_restart(tmp_path) -> None:
    config = build_config(tmp_path / "memory")
    first = MemoryService(config, notifier=NotificationQueue())
    memory = await first.create({"type": "decision", "content": "Use Postgres for analytics", "tags": ["db"]})
    await first.update(memory.id, {"importance": 0.8})
    await drain_background_tasks()
    await first.close()

    second = MemoryService(config, notifier=NotificationQueue())
    startup = await second.initialize()
    assert startup == {"memories": 1, "lexical_rebuilt": False}

    reloaded = await second.get(memory.id)
    assert reloaded.importance == pytest.approx(0.8)
    assert reloaded.embedding == memory.embedding
    hits = await second.search("postgres analytics", use_vector=False)
    assert [hit.id for hit in hits["results"]] == [memory.id]
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_missing_lexical_artifact_is_rebuilt_on_startup(tmp_path) -> None:
    config = build_config(tmp_path / "memory")
    first = MemoryService(config)
    memory = await first.create({"type": "fact", "content": "Backups run at midnight"})
    await drain_background_tasks()
    (config.data_dir / "lexical-index.json").unlink()

    second = MemoryService(config)
    startup = await second.initialize()
    assert startup["lexical_rebuilt"] is True

    hits = await second.search("backups midnight", use_vector=False)
    assert [hit.id for hit in hits["results"]] == [memory.id]
    await drain_background_tasks()
