"""Hybrid search: dense vectors plus BM25 keywords.

Both retrievers produce ``SearchResultWithContext`` through the shared
formatter and honour the same ``SearchQueryOptions``. The service merges
their lists by chunk id, optionally reranks the top candidates with a
cross-encoder, and returns results best first.
"""

import asyncio
from collections.abc import Mapping
from enum import Enum
from typing import Any

from loguru import logger

from ..config.defaults import (
    DEFAULT_BM25_WEIGHT,
    DEFAULT_DENSE_WEIGHT,
    DEFAULT_EMBEDDING_TIMEOUT,
    DEFAULT_RERANK_CANDIDATES,
    DEFAULT_TOP_K,
    RRF_K,
)
from .bm25_backend import BM25Retriever
from .embeddings import embed_query
from .exceptions import (
    CtxIndexError,
    DimensionMismatchError,
    ModelMismatchError,
    SearchError,
)
from .filters import format_search_result, matches_filters
from .models import SearchQueryOptions, SearchResultWithContext
from .providers import EmbeddingProvider
from .reranker import Reranker
from .store import ChunkStore
from .tracing import NoopTracer, Tracer


class SearchMode(str, Enum):
    """Which retrievers a search runs."""

    VECTOR = "vector"  # Pure vector similarity search
    BM25 = "bm25"  # Pure BM25 keyword search
    HYBRID = "hybrid"  # Both, merged by chunk id


class FusionStrategy(str, Enum):
    """How dense and keyword lists are merged in hybrid mode."""

    MAX = "max"  # Keep the higher score per chunk
    RRF = "rrf"  # Weighted reciprocal rank fusion, normalized to 0..1


def _coerce_options(
    options: SearchQueryOptions | Mapping[str, Any] | None,
) -> SearchQueryOptions:
    if options is None:
        return SearchQueryOptions()
    if isinstance(options, SearchQueryOptions):
        return options
    return SearchQueryOptions.from_dict(options)


class DenseRetriever:
    """Semantic retriever over a chunk store.

    Uses the store's native filtering when it has it and
    ``matches_filters`` otherwise.
    """

    def __init__(
        self,
        store: ChunkStore,
        provider: EmbeddingProvider,
        timeout: float = DEFAULT_EMBEDDING_TIMEOUT,
    ) -> None:
        self.store = store
        self.provider = provider
        self.timeout = timeout

    def check_compatible(self) -> None:
        """Ensure queries are embedded in the index's vector space.

        Raises:
            ModelMismatchError: If the query model did not build the index
            DimensionMismatchError: If dimensionalities differ
        """
        index_models = self.store.models
        if index_models and self.provider.model not in index_models:
            raise ModelMismatchError(
                f"Query model {self.provider.model} does not match index model "
                f"{self.store.model}. Re-index or configure the same model.",
                {
                    "query_model": self.provider.model,
                    "index_model": self.store.model,
                    "index_models": sorted(index_models),
                },
            )
        index_dims = self.store.dimensions
        if index_dims is not None:
            query_dims = self.provider.model_dimensions(self.provider.model)
            if query_dims != index_dims:
                raise DimensionMismatchError(
                    f"Query model produces {query_dims}D vectors, index has {index_dims}D",
                    {"expected": index_dims, "actual": query_dims},
                )

    async def search(
        self,
        query: str,
        limit: int = DEFAULT_TOP_K,
        options: SearchQueryOptions | None = None,
    ) -> list[SearchResultWithContext]:
        if not query.strip() or self.store.dimensions is None:
            return []
        self.check_compatible()

        vector = await embed_query(query, self.provider, self.timeout)
        if len(vector) != self.store.dimensions:
            raise DimensionMismatchError(
                f"{self.provider.name} returned a {len(vector)}D query vector, "
                f"index has {self.store.dimensions}D",
                {"expected": self.store.dimensions, "actual": len(vector)},
            )

        if self.store.supports_native_filters:
            hits = await self.store.search_vectors(vector, limit, options)
            return [
                format_search_result(chunk.id, score, chunk.content, chunk.metadata)
                for chunk, score in hits
            ]

        hits = await self.store.search_vectors(vector, None, options)
        results = []
        for chunk, score in hits:
            result = format_search_result(chunk.id, score, chunk.content, chunk.metadata)
            if matches_filters(result, options):
                results.append(result)
                if len(results) >= limit:
                    break
        return results


def merge_max(
    *result_lists: list[SearchResultWithContext],
) -> list[SearchResultWithContext]:
    """Merge by id keeping the higher score, best first.

    Equal scores keep first-seen order: earlier lists win, then list order.
    """
    merged: dict[str, SearchResultWithContext] = {}
    for results in result_lists:
        for result in results:
            existing = merged.get(result.id)
            if existing is None:
                merged[result.id] = result
            elif result.score > existing.score:
                existing.score = result.score
    # sorted() is stable, so ties stay in first-seen order
    return sorted(merged.values(), key=lambda r: r.score, reverse=True)


def merge_rrf(
    dense: list[SearchResultWithContext],
    keyword: list[SearchResultWithContext],
    dense_weight: float = DEFAULT_DENSE_WEIGHT,
    bm25_weight: float = DEFAULT_BM25_WEIGHT,
    k: int = RRF_K,
) -> list[SearchResultWithContext]:
    """Weighted reciprocal rank fusion, scores normalized to 0..1.

    The pre-fusion score is kept in ``metadata["retrieval_score"]``.
    """
    fused: dict[str, float] = {}
    by_id: dict[str, SearchResultWithContext] = {}
    for weight, results in ((dense_weight, dense), (bm25_weight, keyword)):
        for rank, result in enumerate(results, start=1):
            fused[result.id] = fused.get(result.id, 0.0) + weight / (k + rank)
            if result.id not in by_id:
                by_id[result.id] = result
            elif result.score > by_id[result.id].score:
                by_id[result.id].score = result.score

    if not fused:
        return []
    max_score = max(fused.values())
    for chunk_id, result in by_id.items():
        result.metadata["retrieval_score"] = result.score
        result.score = fused[chunk_id] / max_score if max_score > 0 else 0.0
    return sorted(by_id.values(), key=lambda r: r.score, reverse=True)


class HybridSearchService:
    """Search over an index with dense, keyword or hybrid retrieval.

    Example:
        service = HybridSearchService(store, provider)
        results = await service.search(
            "parse file chunks", SearchQueryOptions(language="python", min_score=0.3)
        )
    """

    def __init__(
        self,
        store: ChunkStore,
        provider: EmbeddingProvider,
        mode: SearchMode | str = SearchMode.HYBRID,
        fusion: FusionStrategy | str = FusionStrategy.MAX,
        reranker: Reranker | None = None,
        rerank_candidates: int = DEFAULT_RERANK_CANDIDATES,
        tracer: Tracer | None = None,
        top_k: int = DEFAULT_TOP_K,
        dense_weight: float = DEFAULT_DENSE_WEIGHT,
        bm25_weight: float = DEFAULT_BM25_WEIGHT,
        timeout: float = DEFAULT_EMBEDDING_TIMEOUT,
    ) -> None:
        self.store = store
        self.mode = SearchMode(mode)
        self.fusion = FusionStrategy(fusion)
        self.reranker = reranker
        self.rerank_candidates = rerank_candidates
        self.tracer = tracer or NoopTracer()
        self.top_k = top_k
        self.dense_weight = dense_weight
        self.bm25_weight = bm25_weight
        self.dense = DenseRetriever(store, provider, timeout=timeout)
        self.keyword = BM25Retriever(store)

    async def search(
        self,
        query: str,
        options: SearchQueryOptions | Mapping[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[SearchResultWithContext]:
        """Run a search.

        Args:
            query: Free-text query
            options: Filters and score floor (a plain mapping is validated)
            limit: Maximum results (defaults to ``options.top_k`` then the
                service's ``top_k``)

        Returns:
            Results sorted by score descending

        Raises:
            InputValidationError: If options are malformed
            ModelMismatchError: If the query model differs from the index model
            DimensionMismatchError: If query and index dimensionality differ
            SearchError: If retrieval or reranking fails unexpectedly
        """
        options = _coerce_options(options)
        if not query or not query.strip():
            return []

        limit = limit or options.top_k or self.top_k
        candidate_limit = max(limit, self.rerank_candidates) if self.reranker else limit

        span = self.tracer.trace(
            "search",
            input=query,
            metadata={"mode": self.mode.value, "limit": limit},
        )
        try:
            results = await self._retrieve(query, options, candidate_limit)
            if self.reranker is not None and results:
                results = await self._rerank(query, results[: self.rerank_candidates])
        except CtxIndexError as e:
            span.update(level="ERROR", status_message=str(e))
            span.end()
            raise
        except Exception as e:
            logger.error(f"Search failed for '{query}': {e}")
            span.update(level="ERROR", status_message=str(e))
            span.end()
            raise SearchError(f"Search failed: {e}", {"query": query}) from e

        results = results[:limit]
        span.update(output={"results": len(results)})
        span.end()
        logger.debug(f"Search '{query}' ({self.mode.value}) returned {len(results)} results")
        return results

    async def _retrieve(
        self, query: str, options: SearchQueryOptions, limit: int
    ) -> list[SearchResultWithContext]:
        if self.mode == SearchMode.VECTOR:
            return await self.dense.search(query, limit, options)
        if self.mode == SearchMode.BM25:
            return await self.keyword.search(query, limit, options)

        dense, keyword = await asyncio.gather(
            self.dense.search(query, limit, options),
            self.keyword.search(query, limit, options),
        )
        if self.fusion == FusionStrategy.RRF:
            fused = merge_rrf(dense, keyword, self.dense_weight, self.bm25_weight)
            # RRF replaces retrieval scores, so the floor applies again
            if options.min_score is not None:
                fused = [r for r in fused if r.score >= options.min_score]
            return fused
        return merge_max(dense, keyword)

    async def _rerank(
        self, query: str, candidates: list[SearchResultWithContext]
    ) -> list[SearchResultWithContext]:
        ranked = await asyncio.to_thread(
            self.reranker.rerank, query, [c.content for c in candidates], None
        )
        reranked = []
        for idx, score in ranked:
            result = candidates[idx]
            result.metadata.setdefault("retrieval_score", result.score)
            result.score = score
            reranked.append(result)
        return reranked
