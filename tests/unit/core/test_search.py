"""Tests for dense retrieval, result merging and the hybrid search service."""

import math

import pytest

from conftest import FakeChunker, FakeProvider, make_chunk, unit_vector
from ctx_index.core.exceptions import (
    DimensionMismatchError,
    InputValidationError,
    ModelMismatchError,
    SearchError,
)
from ctx_index.core.filters import format_search_result
from ctx_index.core.models import EmbeddedChunk, SearchQueryOptions
from ctx_index.core.search import (
    DenseRetriever,
    FusionStrategy,
    HybridSearchService,
    SearchMode,
    merge_max,
    merge_rrf,
)
from ctx_index.core.session import IndexingSession, IndexPipelineOptions
from ctx_index.core.store import InMemoryChunkStore

DIMS = 384


def _result(chunk_id, score):
    return format_search_result(chunk_id, score, f"content {chunk_id}", {})


def _mix(a: float, b: float) -> list[float]:
    vector = [0.0] * DIMS
    vector[0] = a
    vector[1] = b
    return vector


@pytest.fixture
def project_chunks():
    return [
        make_chunk("alpha", "alpha handler for incoming requests", "src/alpha.py"),
        make_chunk("beta", "beta handler close to alpha", "src/beta.py"),
        make_chunk("gamma", "gamma unrelated rendering code", "src/gamma.ts", language="typescript", file_type="ts"),
    ]


@pytest.fixture
def provider(project_chunks):
    """384-dimensional provider with hand-placed vectors.

    Against the query "alpha request handling": alpha scores 1.0, beta 0.95
    and gamma 0.0.
    """
    return FakeProvider(
        dimensions=DIMS,
        vectors={
            project_chunks[0].content: unit_vector(0, DIMS),
            project_chunks[1].content: _mix(0.95, math.sqrt(1 - 0.95**2)),
            project_chunks[2].content: unit_vector(1, DIMS),
            "alpha request handling": unit_vector(0, DIMS),
        },
    )


@pytest.fixture
async def indexed_store(tmp_path, project_chunks, provider):
    """Store populated by a real indexing session."""
    store = InMemoryChunkStore()
    session = IndexingSession(
        IndexPipelineOptions(
            project_path=tmp_path,
            project_name="demo",
            chunker=FakeChunker(project_chunks),
            store=store,
            provider=provider,
            project_id="p1",
        )
    )
    await session.run()
    return store


class TestMergeMax:
    def test_keeps_higher_score(self):
        merged = merge_max(
            [_result("a", 0.9), _result("b", 0.5)],
            [_result("b", 0.8), _result("c", 0.5)],
        )
        assert [(r.id, r.score) for r in merged] == [("a", 0.9), ("b", 0.8), ("c", 0.5)]

    def test_ties_keep_dense_before_keyword(self):
        merged = merge_max(
            [_result("d1", 0.5), _result("d2", 0.5)],
            [_result("k1", 0.5), _result("d1", 0.4)],
        )
        assert [r.id for r in merged] == ["d1", "d2", "k1"]

    def test_empty(self):
        assert merge_max([], []) == []


class TestMergeRRF:
    def test_chunk_in_both_lists_ranks_first(self):
        merged = merge_rrf(
            [_result("a", 0.9), _result("b", 0.8)],
            [_result("b", 0.3), _result("c", 0.2)],
        )
        assert merged[0].id == "b"
        assert merged[0].score == 1.0
        assert merged[0].metadata["retrieval_score"] == 0.8
        assert all(0.0 < r.score <= 1.0 for r in merged)

    def test_empty(self):
        assert merge_rrf([], []) == []


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_min_score_floor(self, indexed_store, provider):
        service = HybridSearchService(indexed_store, provider)

        results = await service.search(
            "alpha request handling", SearchQueryOptions(min_score=0.9)
        )

        assert [r.id for r in results] == ["alpha", "beta"]
        assert all(r.score >= 0.9 for r in results)
        assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)
        assert results[0].metadata["project_id"] == "p1"

    @pytest.mark.asyncio
    async def test_filters_apply_to_both_paths(self, indexed_store, provider):
        service = HybridSearchService(indexed_store, provider)

        results = await service.search("gamma rendering", {"language": "typescript"})

        assert [r.id for r in results] == ["gamma"]

    @pytest.mark.asyncio
    async def test_limit_and_top_k(self, indexed_store, provider):
        service = HybridSearchService(indexed_store, provider, top_k=2)

        assert len(await service.search("alpha request handling")) == 2
        assert len(await service.search("alpha request handling", {"top_k": 1})) == 1
        assert len(await service.search("alpha request handling", limit=3)) == 3

    @pytest.mark.asyncio
    async def test_vector_mode(self, indexed_store, provider):
        service = HybridSearchService(indexed_store, provider, mode="vector")
        results = await service.search("alpha request handling", limit=1)
        assert results[0].id == "alpha"
        assert results[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_bm25_mode_does_not_embed(self, indexed_store, provider):
        calls_before = len(provider.calls)
        service = HybridSearchService(indexed_store, provider, mode=SearchMode.BM25)

        results = await service.search("rendering")

        assert [r.id for r in results] == ["gamma"]
        assert len(provider.calls) == calls_before

    @pytest.mark.asyncio
    async def test_rrf_fusion(self, indexed_store, provider):
        service = HybridSearchService(
            indexed_store, provider, fusion=FusionStrategy.RRF
        )
        results = await service.search("alpha request handling")

        assert results[0].id == "alpha"
        assert results[0].score == 1.0
        assert "retrieval_score" in results[0].metadata

    @pytest.mark.asyncio
    async def test_rrf_fusion_respects_min_score(self, tmp_path):
        """Fused scores below the floor are dropped even when retrieval passed."""
        near = [0.999, 0.998, 0.997]
        chunks = [make_chunk(f"doc{i}", f"document number {i}") for i in range(4)]
        vectors = {chunks[0].content: unit_vector(0, DIMS), "needle": unit_vector(0, DIMS)}
        for chunk, cosine in zip(chunks[1:], near):
            vectors[chunk.content] = _mix(cosine, math.sqrt(1 - cosine**2))
        provider = FakeProvider(dimensions=DIMS, vectors=vectors)
        store = InMemoryChunkStore()
        await IndexingSession(
            IndexPipelineOptions(
                project_path=tmp_path,
                project_name="demo",
                chunker=FakeChunker(chunks),
                store=store,
                provider=provider,
            )
        ).run()
        service = HybridSearchService(store, provider, fusion="rrf")

        floored = await service.search("needle", SearchQueryOptions(min_score=0.99), limit=10)
        everything = await service.search("needle", limit=10)

        assert [r.id for r in floored] == ["doc0"]
        assert all(r.score >= 0.99 for r in floored)
        assert floored[0].metadata["retrieval_score"] == pytest.approx(1.0)
        assert len(everything) == 4

    @pytest.mark.asyncio
    async def test_blank_query(self, indexed_store, provider):
        service = HybridSearchService(indexed_store, provider)
        assert await service.search("") == []
        assert await service.search("   ") == []

    @pytest.mark.asyncio
    async def test_malformed_options(self, indexed_store, provider):
        service = HybridSearchService(indexed_store, provider)
        with pytest.raises(InputValidationError):
            await service.search("alpha", {"min_score": "high"})
        with pytest.raises(InputValidationError):
            await service.search("alpha", {"colour": "red"})

    @pytest.mark.asyncio
    async def test_query_model_must_match_index(self, indexed_store):
        other = FakeProvider(model="other-model", dimensions=DIMS)
        service = HybridSearchService(indexed_store, other)

        with pytest.raises(ModelMismatchError) as exc_info:
            await service.search("alpha request handling")
        assert exc_info.value.context["index_model"] == "fake-model"

    @pytest.mark.asyncio
    async def test_fallback_model_batches_are_searchable(self, indexed_store):
        await indexed_store.add(
            [
                EmbeddedChunk.from_chunk(
                    make_chunk("delta", "delta"), unit_vector(2, DIMS), "backup", "backup-model", DIMS
                )
            ]
        )
        backup = FakeProvider(model="backup-model", dimensions=DIMS)
        results = await HybridSearchService(indexed_store, backup, mode="vector").search("delta")
        assert results

    @pytest.mark.asyncio
    async def test_empty_store(self, provider):
        service = HybridSearchService(InMemoryChunkStore(), provider)
        assert await service.search("alpha") == []


class TestDenseRetriever:
    @pytest.mark.asyncio
    async def test_dimension_mismatch(self):
        store = InMemoryChunkStore(dimensions=8)
        retriever = DenseRetriever(store, FakeProvider(dimensions=16))

        with pytest.raises(DimensionMismatchError):
            await retriever.search("anything")

    @pytest.mark.asyncio
    async def test_post_filter_fills_limit(self, indexed_store, provider):
        retriever = DenseRetriever(indexed_store, provider)

        results = await retriever.search(
            "alpha request handling", limit=1, options=SearchQueryOptions(file_type="ts")
        )

        assert [r.id for r in results] == ["gamma"]


class FixedReranker:
    """Scores documents by a fixed lookup, best first."""

    def __init__(self, scores):
        self.scores = scores
        self.calls = []

    def rerank(self, query, documents, top_k=None):
        self.calls.append((query, list(documents)))
        ranked = [(i, self.scores[doc]) for i, doc in enumerate(documents)]
        return sorted(ranked, key=lambda item: item[1], reverse=True)


class TestReranking:
    @pytest.mark.asyncio
    async def test_reranker_order_is_authoritative(self, indexed_store, provider, project_chunks):
        reranker = FixedReranker(
            {
                project_chunks[0].content: -2.0,
                project_chunks[1].content: 5.0,
                project_chunks[2].content: 1.0,
            }
        )
        service = HybridSearchService(indexed_store, provider, mode="vector", reranker=reranker)

        results = await service.search("alpha request handling")

        assert [r.id for r in results] == ["beta", "gamma", "alpha"]
        assert results[0].score == 5.0
        assert results[2].metadata["retrieval_score"] == pytest.approx(1.0)
        assert len(reranker.calls) == 1

    @pytest.mark.asyncio
    async def test_reranker_failure_is_a_search_error(self, indexed_store, provider):
        class BrokenReranker:
            def rerank(self, query, documents, top_k=None):
                raise RuntimeError("model exploded")

        service = HybridSearchService(indexed_store, provider, reranker=BrokenReranker())

        with pytest.raises(SearchError, match="model exploded"):
            await service.search("alpha request handling")

    @pytest.mark.asyncio
    async def test_min_score_applies_before_reranking(self, indexed_store, provider, project_chunks):
        reranker = FixedReranker(
            {
                project_chunks[0].content: 0.2,
                project_chunks[1].content: 0.8,
                project_chunks[2].content: 9.0,
            }
        )
        service = HybridSearchService(indexed_store, provider, mode="vector", reranker=reranker)

        results = await service.search(
            "alpha request handling", SearchQueryOptions(min_score=0.9)
        )

        # gamma never reaches the reranker despite its high rerank score
        assert [r.id for r in results] == ["beta", "alpha"]
        assert reranker.calls[0][1] == [project_chunks[0].content, project_chunks[1].content]
        assert all(r.metadata["retrieval_score"] >= 0.9 for r in results)
