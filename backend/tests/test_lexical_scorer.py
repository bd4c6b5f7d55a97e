import json

import pytest

from db.lexical import LexicalScorer, tokenize


def _docs():
    return [
        {"id": "m1", "type": "preference", "content": "User prefers dark themes in every editor", "tags": ["ui"]},
        {"id": "m2", "type": "fact", "content": "The deploy pipeline runs nightly builds", "tags": ["ci"]},
        {"id": "m3", "type": "learning", "content": "Dark mode screenshots need a light background theme", "tags": []},
        {"id": "m4", "type": "fact", "content": "Nightly builds publish artifacts to the registry", "tags": ["ci"]},
    ]


def test_tokenize_lowercases_drops_stopwords_and_stems_plurals() -> None:
    assert tokenize("The Themes of the Builds") == ["theme", "build"]
    assert tokenize("class glass") == ["class", "glass"]
    assert tokenize("a I x") == []


def test_search_ranks_matching_documents_with_non_increasing_scores() -> None:
    scorer = LexicalScorer()
    scorer.rebuild(_docs())

    results = scorer.search("nightly builds", limit=10, min_score=0.0)
    ids = [item["id"] for item in results]
    assert set(ids) == {"m2", "m4"}
    scores = [item["score"] for item in results]
    assert scores == sorted(scores, reverse=True)


def test_search_is_deterministic_for_identical_inputs() -> None:
    first = LexicalScorer()
    second = LexicalScorer()
    first.rebuild(_docs())
    second.rebuild(list(reversed(_docs())))

    assert first.search("dark theme", limit=5) == second.search("dark theme", limit=5)
    assert first.search("dark theme", limit=5) == first.search("dark theme", limit=5)


def test_type_and_tags_are_searchable() -> None:
    scorer = LexicalScorer()
    scorer.rebuild(_docs())
    results = scorer.search("theme preference", limit=3)
    assert results[0]["id"] == "m1"
    assert [item["id"] for item in scorer.search("ci", limit=5, min_score=0.0)] == ["m2", "m4"]


def test_remove_makes_document_unreachable_without_rebuild() -> None:
    scorer = LexicalScorer()
    for doc in _docs():
        scorer.index(doc)

    assert "m1" in {item["id"] for item in scorer.search("dark", limit=10, min_score=0.0)}
    assert scorer.remove("m1") is True
    assert "m1" not in {item["id"] for item in scorer.search("dark", limit=10, min_score=0.0)}
    assert scorer.remove("m1") is False
    assert scorer.has("m1") is False
    assert scorer.total_docs == 3


def test_index_overwrites_existing_document() -> None:
    scorer = LexicalScorer()
    scorer.index({"id": "m1", "type": "fact", "content": "alpha bravo"})
    scorer.index({"id": "m1", "type": "fact", "content": "charlie delta"})

    assert scorer.search("alpha", min_score=0.0) == []
    assert [item["id"] for item in scorer.search("charlie", min_score=0.0)] == ["m1"]
    assert scorer.total_docs == 1


def test_min_score_and_limit_are_respected() -> None:
    scorer = LexicalScorer()
    scorer.rebuild(_docs())
    assert scorer.search("dark", limit=1, min_score=0.0)[0]["id"] in {"m1", "m3"}
    assert len(scorer.search("dark", limit=1, min_score=0.0)) == 1
    assert scorer.search("dark", limit=10, min_score=1000.0) == []
    assert scorer.search("", limit=10) == []


def test_index_requires_id() -> None:
    scorer = LexicalScorer()
    with pytest.raises(ValueError):
        scorer.index({"content": "no id"})


@pytest.mark.asyncio
async def test_flush_persists_and_reload_restores_index(tmp_path) -> None:
    path = tmp_path / "lexical-index.json"
    scorer = LexicalScorer(path)
    scorer.rebuild(_docs())

    assert await scorer.flush() is True
    assert await scorer.flush() is False
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert set(payload["docs"]) == {"m1", "m2", "m3", "m4"}

    reloaded = LexicalScorer(path)
    assert reloaded.search("nightly builds", limit=5) == scorer.search("nightly builds", limit=5)


def test_corrupt_index_file_loads_as_empty(tmp_path) -> None:
    path = tmp_path / "lexical-index.json"
    path.write_text("{not json", encoding="utf-8")
    scorer = LexicalScorer(path)
    assert scorer.total_docs == 0
    assert scorer.search("anything") == []
