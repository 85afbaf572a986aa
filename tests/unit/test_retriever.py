"""Tests for semantic retrieval."""
import pytest

from clinrag.errors import DimensionMismatch, IngestionFailed, InvalidParameter
from clinrag.rag.retriever import Retriever, SearchResult, format_context


CORPUS = {
    "vitamin-d.txt": "Vitamin D deficiency protocol with cholecalciferol and retesting.",
    "iron.txt": "Iron deficiency anemia treated with ferrous bisglycinate and vitamin C.",
    "sleep.txt": "Sleep hygiene guidance: magnesium glycinate and consistent bedtime.",
}


@pytest.fixture
async def corpus(ingest):
    return {name: await ingest(text, file_name=name) for name, text in CORPUS.items()}


async def test_results_sorted_and_limited(knowledge_base, corpus):
    results = await knowledge_base.search("vitamin deficiency", "clinic-a", limit=2, threshold=0.0)

    assert len(results) == 2
    assert results[0].score >= results[1].score
    assert {r.document_id for r in results} == {corpus["vitamin-d.txt"], corpus["iron.txt"]}


async def test_threshold_is_monotonic(knowledge_base, corpus):
    counts = []
    for threshold in (0.0, 0.1, 0.3, 0.5, 0.7, 0.9, 0.99):
        results = await knowledge_base.search(
            "vitamin D deficiency", "clinic-a", limit=10, threshold=threshold
        )
        assert all(r.score >= threshold for r in results)
        counts.append(len(results))

    assert counts == sorted(counts, reverse=True)


async def test_unrelated_query_scores_zero(knowledge_base, corpus):
    results = await knowledge_base.search("acupuncture", "clinic-a", threshold=0.0)
    assert all(r.score == 0.0 for r in results)

    assert await knowledge_base.search("acupuncture", "clinic-a", threshold=0.01) == []


async def test_category_filter(knowledge_base, ingest):
    await ingest("Vitamin D dosing in pregnancy.", file_name="a.txt", category="nutrition")
    tcm = await ingest("Vitamin D and the kidney meridian.", file_name="b.txt", category="tcm")

    results = await knowledge_base.search("vitamin D", "clinic-a", category="tcm", threshold=0.0)

    assert [r.document_id for r in results] == [tcm]
    assert results[0].category == "tcm"


async def test_empty_tenant_returns_nothing(knowledge_base, provider):
    assert await knowledge_base.search("vitamin D", "clinic-a") == []
    # No candidates means no embedding call either
    assert provider.requests == []


async def test_blank_query_returns_nothing(knowledge_base, corpus):
    assert await knowledge_base.search("   ", "clinic-a") == []


async def test_tenant_isolation(knowledge_base, ingest):
    await ingest(CORPUS["vitamin-d.txt"], tenant_id="clinic-a")

    assert await knowledge_base.search("vitamin D", "clinic-b", threshold=-1.0) == []
    page = await knowledge_base.list_documents("clinic-b")
    assert page.total == 0


async def test_global_documents_are_searchable_by_every_tenant(knowledge_base, ingest):
    shared = await ingest(CORPUS["vitamin-d.txt"], tenant_id="global")
    own = await ingest(CORPUS["iron.txt"], tenant_id="clinic-b")

    results = await knowledge_base.search("vitamin deficiency", "clinic-b", threshold=0.0)
    assert {r.document_id for r in results} == {shared, own}

    results = await knowledge_base.search("vitamin deficiency", "clinic-a", threshold=0.0)
    assert {r.document_id for r in results} == {shared}


@pytest.mark.parametrize("limit", [0, -3, 2.5, True, "5"])
async def test_invalid_limit(knowledge_base, limit):
    with pytest.raises(InvalidParameter):
        await knowledge_base.search("vitamin", "clinic-a", limit=limit)


@pytest.mark.parametrize("threshold", [1.5, -1.01, float("nan"), "0.5", False])
async def test_invalid_threshold(knowledge_base, threshold):
    with pytest.raises(InvalidParameter):
        await knowledge_base.search("vitamin", "clinic-a", threshold=threshold)


async def test_invalid_tenant(knowledge_base):
    with pytest.raises(InvalidParameter):
        await knowledge_base.search("vitamin", "")


async def test_dimension_mismatch_is_raised(store, ingest, make_provider, make_embedder):
    await ingest(CORPUS["vitamin-d.txt"])

    # Same model name, different vector size: stale index after a model swap
    retriever = Retriever(store, make_embedder(make_provider(dimension=32)))

    with pytest.raises(DimensionMismatch):
        await retriever.search("vitamin D", "clinic-a", threshold=0.0)


async def test_chunks_from_another_model_are_not_scored(store, ingest, provider, make_embedder):
    await ingest(CORPUS["vitamin-d.txt"])
    requests_after_ingest = len(provider.requests)

    retriever = Retriever(store, make_embedder(provider, model="next-embedding"))

    assert await retriever.search("vitamin D", "clinic-a", threshold=0.0) == []
    assert len(provider.requests) == requests_after_ingest


async def test_search_many_deduplicates(knowledge_base, corpus):
    results = await knowledge_base.retriever.search_many(
        ["vitamin D", "vitamin deficiency", "iron anemia"],
        "clinic-a",
        threshold=0.0,
        max_results=10,
    )

    keys = [(r.document_id, r.chunk_index) for r in results]
    assert len(keys) == len(set(keys))
    assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)
    assert {corpus["vitamin-d.txt"], corpus["iron.txt"]} <= {r.document_id for r in results}


async def test_search_many_across_categories(knowledge_base, ingest):
    a = await ingest("Vitamin D dosing.", file_name="a.txt", category="nutrition")
    b = await ingest("Vitamin D and yang deficiency.", file_name="b.txt", category="tcm")
    await ingest("Vitamin D case.", file_name="c.txt", category="case-studies")

    results = await knowledge_base.retriever.search_many(
        ["vitamin D"], "clinic-a", categories=["nutrition", "tcm"], threshold=0.0
    )

    assert {r.document_id for r in results} == {a, b}


async def test_retrieve_context(knowledge_base, corpus):
    context = await knowledge_base.retriever.retrieve_context(
        "vitamin D deficiency", "clinic-a", threshold=0.0
    )

    assert context.startswith("[Source 1: vitamin-d.txt]")
    assert "cholecalciferol" in context


async def test_retrieve_context_empty(knowledge_base):
    assert await knowledge_base.retriever.retrieve_context("vitamin D", "clinic-a") == ""


async def test_check_availability(knowledge_base, ingest):
    availability = await knowledge_base.retriever.check_availability("clinic-a")
    assert not availability["available"]

    await ingest("Phytotherapy monograph: ashwagandha.", category="phytotherapy")

    availability = await knowledge_base.retriever.check_availability("clinic-a", ["phytotherapy"])
    assert availability["available"]
    assert availability["document_count"] == 1

    availability = await knowledge_base.retriever.check_availability("clinic-a", ["tcm"])
    assert not availability["available"]


async def test_check_availability_ignores_failed_documents(knowledge_base, provider, ingest):
    await ingest("Phytotherapy monograph: ashwagandha.", category="phytotherapy")
    provider.failures = [400]
    with pytest.raises(IngestionFailed):
        await ingest("Acupuncture points for insomnia.", category="tcm")

    availability = await knowledge_base.retriever.check_availability("clinic-a", ["tcm"])

    assert not availability["available"]
    assert availability["document_count"] == 0

    availability = await knowledge_base.retriever.check_availability(
        "clinic-a", ["tcm", "phytotherapy"]
    )
    assert availability["document_count"] == 1


async def test_retriever_stats_include_global(knowledge_base, ingest):
    await ingest("Shared guideline.", tenant_id="global")
    await ingest("Own protocol.")

    stats = await knowledge_base.retriever.get_stats("clinic-a")
    assert stats["total_documents"] == 2

    stats = await knowledge_base.get_stats("clinic-a")
    assert stats["total_documents"] == 1


def _result(content, **metadata):
    return SearchResult(
        content=content,
        document_id="d1",
        chunk_index=0,
        score=0.9,
        file_name="guide.md",
        category="medical-guidelines",
        metadata=metadata,
    )


def test_result_source_uses_heading_then_page():
    assert _result("x", heading_context="# Iron").source == "guide.md > # Iron"
    assert _result("x", page_number=3).source == "guide.md (p. 3)"
    assert _result("x").source == "guide.md"


def test_format_context_respects_budget():
    results = [_result("a" * 300), _result("b" * 300), _result("c" * 300)]

    context = format_context(results, max_chars=700)

    assert "[Source 1: guide.md]" in context
    assert "[Source 2: guide.md]" in context
    assert "c" * 10 not in context


def test_format_context_empty():
    assert format_context([], max_chars=1000) == ""
