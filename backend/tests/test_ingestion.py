import pytest

from db.ingestion import APPROVAL_LINK, dedup_key, extract_candidates, is_implementation_detail
from db.models import MemoryStatus, MemoryType
from runtime_state import drain_background_tasks


@pytest.mark.asyncio
async def test_high_confidence_candidate_is_committed_without_notification(service, notifications) -> None:
    result = await service.ingest(
        [{"type": "preference", "content": "User prefers dark themes", "confidence": 0.9}],
        agent_id="agent-1",
        task_id="task-1",
        app_id="console",
    )

    assert len(result["committed"]) == 1
    assert result["pending_approval"] == []
    memory = result["committed"][0]
    assert memory.status == MemoryStatus.ACTIVE
    assert memory.source_agent_id == "agent-1"
    assert memory.source_task_id == "task-1"
    assert memory.source_app_id == "console"
    assert memory.embedding is not None
    assert notifications.list_pending() == []
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_mid_confidence_candidate_waits_for_approval(service, notifications) -> None:
    result = await service.ingest(
        [{"type": "fact", "content": "The billing service is owned by the payments team", "confidence": 0.75}]
    )

    assert result["committed"] == []
    pending = result["pending_approval"]
    assert len(pending) == 1
    assert pending[0].status == MemoryStatus.PENDING_APPROVAL

    queued = notifications.list_pending()
    assert len(queued) == 1
    assert queued[0]["memory_id"] == pending[0].id
    assert queued[0]["link"] == APPROVAL_LINK
    assert queued[0]["metadata"]["confidence"] == pytest.approx(0.75)

    # Pending records stay out of retrieval until approved.
    hits = await service.search("billing payments", use_vector=False)
    assert hits["results"] == []
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_low_confidence_candidate_is_dropped_without_write(service, notifications) -> None:
    result = await service.ingest([{"type": "fact", "content": "Probably nothing", "confidence": 0.3}])

    assert result["dropped"] == 1
    assert result["committed"] == []
    assert result["pending_approval"] == []
    assert await service.store.index_entries() == []
    assert notifications.list_pending() == []


@pytest.mark.asyncio
async def test_confidence_thresholds_are_inclusive(service) -> None:
    assert service.gate.classify(0.85) == MemoryStatus.ACTIVE
    assert service.gate.classify(0.8499) == MemoryStatus.PENDING_APPROVAL
    assert service.gate.classify(0.70) == MemoryStatus.PENDING_APPROVAL
    assert service.gate.classify(0.6999) is None


@pytest.mark.asyncio
async def test_batch_duplicates_and_invalid_candidates_are_counted(service) -> None:
    result = await service.ingest(
        [
            {"type": "learning", "content": "Retry flaky uploads once", "confidence": 0.95},
            {"type": "learning", "content": "retry   flaky UPLOADS once", "confidence": 0.95},
            {"type": "fact", "content": "Retry flaky uploads once", "confidence": 0.95},
            {"type": "unknown", "content": "bad type", "confidence": 0.95},
            {"type": "fact", "content": "", "confidence": 0.95},
        ]
    )

    assert len(result["committed"]) == 2
    assert result["duplicates"] == 1
    assert result["rejected"] == 2
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_approve_twice_reports_not_pending(service, notifications) -> None:
    result = await service.ingest([{"type": "fact", "content": "Staging resets every Monday", "confidence": 0.75}])
    memory_id = result["pending_approval"][0].id

    first = await service.approve(memory_id)
    second = await service.approve(memory_id)

    assert first["success"] is True
    assert first["memory"].status == MemoryStatus.ACTIVE
    assert second["success"] is False
    assert second["error"] == "memory_not_pending"
    assert notifications.exists(memory_id) is False

    hits = await service.search("staging resets", use_vector=False)
    assert [hit.id for hit in hits["results"]] == [memory_id]
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_reject_removes_record_and_notification(service, notifications) -> None:
    result = await service.ingest([{"type": "fact", "content": "Questionable claim about quotas", "confidence": 0.72}])
    memory_id = result["pending_approval"][0].id
    assert notifications.exists(memory_id)

    outcome = await service.reject(memory_id)

    assert outcome == {"success": True, "id": memory_id}
    assert await service.store.peek(memory_id) is None
    assert await service.store.get_entry(memory_id) is None
    assert notifications.exists(memory_id) is False
    assert (await service.reject(memory_id))["error"] == "memory_not_found"
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_updating_pending_record_to_active_dismisses_notification(service, notifications) -> None:
    result = await service.ingest([{"type": "fact", "content": "Releases are cut on Thursdays", "confidence": 0.8}])
    memory_id = result["pending_approval"][0].id

    updated = await service.update(memory_id, {"status": "active"})

    assert updated.status == MemoryStatus.ACTIVE
    assert notifications.exists(memory_id) is False
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_ingest_output_extracts_blocks_and_preferences(service) -> None:
    output = """
Finished the migration.

<MEMORY type="learning" category="workflow" confidence="0.9">
Schema changes need a maintenance window announced a day ahead.
Tags: database, process
</MEMORY>

The user prefers short status updates at the end of each day.
"""
    result = await service.ingest_output(output, agent_id="agent-7")

    contents = sorted(memory.content for memory in result["committed"] + result["pending_approval"])
    assert contents == [
        "Schema changes need a maintenance window announced a day ahead.",
        "User prefers short status updates at the end of each day",
    ]
    learning = next(m for m in result["committed"] if m.type == MemoryType.LEARNING)
    assert learning.tags == ["database", "process"]
    assert learning.category == "workflow"
    await drain_background_tasks()


def test_extract_candidates_skips_implementation_details() -> None:
    output = (
        "The user prefers React function components for every new screen.\n"
        "User pushed back on verbose weekly reports that bury the lede.\n"
    )
    candidates = extract_candidates(output)

    assert [c["content"] for c in candidates] == [
        "User pushed back on: verbose weekly reports that bury the lede"
    ]
    assert candidates[0]["category"] == "values"
    assert extract_candidates("") == []


def test_is_implementation_detail_and_dedup_key() -> None:
    assert is_implementation_detail("see line 42 of the parser")
    assert is_implementation_detail("run npm install first")
    assert not is_implementation_detail("prefers concise answers")
    assert dedup_key(MemoryType.FACT, "  Hello   World ") == "fact:hello world"
    assert dedup_key("fact", "x" * 200) == "fact:" + "x" * 100
