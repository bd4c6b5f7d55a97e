import pytest

from conftest import build_config
from db.lexical import LexicalScorer
from db.memory_store import MemoryStore
from db.models import MemoryFilters, MemoryType
from db.retrieval import HybridRetriever, reciprocal_rank_fusion
from db.service import MemoryService
from runtime_state import drain_background_tasks


def test_rrf_rewards_documents_found_by_both_sources() -> None:
    fused = reciprocal_rank_fusion(
        {"lexical": ["A", "X"], "vector": ["Y", "B", "A"]},
        {"lexical": 0.4, "vector": 0.6},
        k=60,
    )
    order = [item["id"] for item in fused]

    assert order.index("A") < order.index("B")
    assert order[0] == "A"
    assert fused[0]["ranks"] == {"lexical": 1, "vector": 3}
    assert fused[0]["score"] == pytest.approx(0.4 / 61 + 0.6 / 63)


def test_rrf_breaks_score_ties_by_rank_then_id() -> None:
    fused = reciprocal_rank_fusion({"a": ["n2", "m1"], "b": ["m1", "n2"]}, {"a": 1.0, "b": 1.0})
    assert [item["id"] for item in fused] == ["m1", "n2"]
    assert fused[0]["score"] == pytest.approx(fused[1]["score"])


def test_rrf_counts_duplicate_ids_once_per_source() -> None:
    fused = reciprocal_rank_fusion({"lexical": ["A", "A"]}, {"lexical": 1.0}, k=60)
    assert fused == [{"id": "A", "score": pytest.approx(1.0 / 61), "ranks": {"lexical": 1}}]


async def _seed(memory_config):
    lexical = LexicalScorer()
    store = MemoryStore(memory_config, lexical)
    seeded = {
        "A": await store.create(
            {"type": "fact", "content": "Nightly build pipeline failed on the release branch"},
            embedding=[0.5, 0.8660254, 0.0],
        ),
        "X": await store.create(
            {"type": "fact", "content": "Nightly build cache warmed before standup"},
            embedding=[0.0, 0.0, 1.0],
        ),
        "Y": await store.create(
            {"type": "preference", "content": "Coffee is preferred black"},
            embedding=[1.0, 0.0, 0.0],
        ),
        "B": await store.create(
            {"type": "observation", "content": "Team calendar shifted by an hour"},
            embedding=[0.9, 0.43588989, 0.0],
        ),
    }
    return store, lexical, {name: memory.id for name, memory in seeded.items()}


@pytest.mark.asyncio
async def test_hybrid_search_fuses_lexical_and_vector_lists(memory_config) -> None:
    store, lexical, ids = await _seed(memory_config)
    retriever = HybridRetriever(store, lexical, memory_config)

    payload = await retriever.search(
        query="nightly build",
        query_embedding=[1.0, 0.0, 0.0],
        limit=10,
        min_similarity=0.1,
    )
    order = [hit.id for hit in payload["results"]]

    assert payload["mode"] == "hybrid"
    assert payload["degrade_reasons"] == []
    assert order.index(ids["A"]) < order.index(ids["B"])
    top = payload["results"][order.index(ids["A"])]
    assert set(top.ranks) == {"lexical", "vector"}
    assert top.lexical_score is not None
    assert top.similarity == pytest.approx(0.5, abs=1e-6)
    scores = [hit.score for hit in payload["results"]]
    assert scores == sorted(scores, reverse=True)
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_min_similarity_only_prunes_the_vector_list(memory_config) -> None:
    store, lexical, ids = await _seed(memory_config)
    retriever = HybridRetriever(store, lexical, memory_config)

    payload = await retriever.search(
        query="nightly build",
        query_embedding=[1.0, 0.0, 0.0],
        min_similarity=0.99,
    )
    found = {hit.id for hit in payload["results"]}

    assert found == {ids["A"], ids["X"], ids["Y"]}
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_single_source_modes_use_native_scores(memory_config) -> None:
    store, lexical, ids = await _seed(memory_config)
    retriever = HybridRetriever(store, lexical, memory_config)

    vector_only = await retriever.search(query_embedding=[1.0, 0.0, 0.0], limit=2)
    assert vector_only["mode"] == "vector"
    assert [hit.id for hit in vector_only["results"]] == [ids["Y"], ids["B"]]
    assert vector_only["results"][0].score == pytest.approx(1.0)

    lexical_only = await retriever.search(query="calendar", limit=5)
    assert lexical_only["mode"] == "lexical"
    assert [hit.id for hit in lexical_only["results"]] == [ids["B"]]
    assert lexical_only["results"][0].score == lexical_only["results"][0].lexical_score

    nothing = await retriever.search(query="   ")
    assert nothing == {"mode": "none", "results": [], "degrade_reasons": []}
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_search_only_returns_active_records_matching_filters(memory_config) -> None:
    store, lexical, ids = await _seed(memory_config)
    retriever = HybridRetriever(store, lexical, memory_config)
    await store.delete(ids["A"])

    payload = await retriever.search(query="nightly build", query_embedding=[1.0, 0.0, 0.0])
    found = [hit.id for hit in payload["results"]]
    assert ids["A"] not in found
    assert ids["X"] in found

    typed = await retriever.search(
        query="nightly build",
        query_embedding=[1.0, 0.0, 0.0],
        filters=MemoryFilters(types=[MemoryType.PREFERENCE]),
    )
    assert [hit.id for hit in typed["results"]] == [ids["Y"]]
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_missing_lexical_scorer_degrades_to_vector(memory_config) -> None:
    store, _, ids = await _seed(memory_config)
    retriever = HybridRetriever(store, None, memory_config)

    payload = await retriever.search(query="nightly build", query_embedding=[1.0, 0.0, 0.0], limit=1)

    assert payload["mode"] == "vector"
    assert payload["degrade_reasons"] == ["lexical_unavailable"]
    assert [hit.id for hit in payload["results"]] == [ids["Y"]]
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_service_search_reports_embedding_failures(service, embedder) -> None:
    memory = await service.create({"type": "preference", "content": "User prefers dark themes"})
    embedder.fail = True

    payload = await service.search("dark themes")

    assert payload["mode"] == "lexical"
    assert payload["degraded"] is True
    assert payload["degrade_reasons"] == ["embedding_unavailable"]
    assert [hit.id for hit in payload["results"]] == [memory.id]

    lexical_only = await service.search("dark themes", use_vector=False)
    assert lexical_only["degraded"] is False
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_service_search_with_disabled_embeddings(tmp_path) -> None:
    service = MemoryService(build_config(tmp_path / "memory", embedding_backend="none"))
    memory = await service.create({"type": "fact", "content": "The staging database is read only"})
    assert memory.embedding is None

    payload = await service.search("staging database")

    assert payload["degrade_reasons"] == ["embedding_disabled"]
    assert [hit.id for hit in payload["results"]] == [memory.id]
    await drain_background_tasks()


@pytest.mark.asyncio
async def test_service_search_hybrid_with_hash_embeddings(service) -> None:
    dark = await service.create({"type": "preference", "content": "User prefers dark themes"})
    await service.create({"type": "fact", "content": "Deploys happen on Tuesdays"})

    payload = await service.search("dark themes", limit=1)

    assert payload["mode"] == "hybrid"
    assert payload["degraded"] is False
    assert payload["results"][0].id == dark.id
    assert payload["results"][0].to_dict()["id"] == dark.id
    await drain_background_tasks()
