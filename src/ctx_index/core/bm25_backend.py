"""BM25 keyword retrieval using rank_bm25.

Complements vector search with exact term matching (identifiers, API names,
path fragments). The index is built from chunk text plus file path and is
rebuilt whenever the backing store's write version moves.

Scores are raw BM25 relevance divided by ``BM25_SCORE_SCALE`` and capped at
1.0, so they share the 0..1 range of cosine similarity.
"""

import asyncio
import re
from collections.abc import Callable, Sequence

from loguru import logger
from rank_bm25 import BM25Okapi

from ..config.defaults import BM25_SCORE_SCALE
from .exceptions import SearchError
from .filters import format_search_result, matches_filters
from .models import Chunk, SearchQueryOptions, SearchResultWithContext
from .store import ChunkStore

_TOKEN = re.compile(r"\w+")


class BM25Backend:
    """BM25 index over a fixed set of chunks.

    Example:
        backend = BM25Backend()
        backend.build_index(chunks)
        results = backend.search("parse file chunks", limit=10)
        # Returns: [(chunk, score), ...]
    """

    def __init__(self) -> None:
        self._bm25: BM25Okapi | None = None
        self._chunks: list[Chunk] = []

    def build_index(
        self,
        chunks: Sequence[Chunk],
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> None:
        """Build the index from chunk content and file paths.

        Args:
            chunks: Chunks to index
            progress_callback: Called with (current, total) every 500 chunks
                and once at completion
        """
        if not chunks:
            self._bm25 = None
            self._chunks = []
            return

        corpus = []
        for idx, chunk in enumerate(chunks):
            text_parts = [chunk.content]
            file_path = chunk.metadata.get("file_path")
            if isinstance(file_path, str) and file_path:
                # Path components make "retriever.py" style queries work
                text_parts.append(file_path)
            corpus.append(self._tokenize(" ".join(text_parts)))

            if progress_callback and (idx + 1) % 500 == 0:
                progress_callback(idx + 1, len(chunks))

        if progress_callback:
            progress_callback(len(chunks), len(chunks))

        # BM25Okapi divides by the average document length
        if not any(corpus):
            self._bm25 = None
            self._chunks = list(chunks)
            return

        self._bm25 = BM25Okapi(corpus)
        self._chunks = list(chunks)
        logger.debug(
            f"Built BM25 index with {len(corpus)} chunks "
            f"(avg {sum(len(c) for c in corpus) // len(corpus)} tokens per chunk)"
        )

    def search(self, query: str, limit: int | None = 10) -> list[tuple[Chunk, float]]:
        """Rank chunks by BM25 relevance.

        Returns:
            ``(chunk, raw_score)`` pairs with positive scores, best first.
            Equal scores keep index order.
        """
        if self._bm25 is None or not query.strip():
            return []

        query_tokens = self._tokenize(query)
        if not query_tokens:
            return []

        scores = self._bm25.get_scores(query_tokens)
        ranked = sorted(range(len(scores)), key=lambda i: scores[i], reverse=True)
        results = [
            (self._chunks[idx], float(scores[idx]))
            for idx in ranked
            if scores[idx] > 0.0
        ]
        if limit is not None:
            results = results[:limit]

        logger.debug(
            f"BM25 search for '{query}' returned {len(results)} results "
            f"(top score: {results[0][1]:.3f})"
            if results
            else "BM25 search returned no results"
        )
        return results

    def is_built(self) -> bool:
        return self._bm25 is not None and len(self._chunks) > 0

    @staticmethod
    def _tokenize(text: str) -> list[str]:
        """Lowercase and keep alphanumeric/underscore runs."""
        return _TOKEN.findall(text.lower())


def normalize_bm25_score(score: float) -> float:
    return min(1.0, score / BM25_SCORE_SCALE)


class BM25Retriever:
    """Keyword retriever over a chunk store.

    BM25 has no native filtering, so every hit goes through
    ``matches_filters`` before the limit is applied.
    """

    def __init__(self, store: ChunkStore) -> None:
        self.store = store
        self._backend = BM25Backend()
        self._indexed_version = -1
        self._rebuild_lock = asyncio.Lock()

    async def _ensure_index(self) -> None:
        if self._indexed_version == self.store.version:
            return
        async with self._rebuild_lock:
            version = self.store.version
            if self._indexed_version == version:
                return
            chunks = await self.store.get_chunks()
            self._backend.build_index(chunks)
            self._indexed_version = version

    async def search(
        self,
        query: str,
        limit: int = 10,
        options: SearchQueryOptions | None = None,
    ) -> list[SearchResultWithContext]:
        """Keyword search with post-filtering.

        Raises:
            SearchError: If the index cannot be built or queried
        """
        if not query.strip():
            return []
        try:
            await self._ensure_index()
            hits = self._backend.search(query, limit=None)
        except Exception as e:
            logger.error(f"BM25 search failed: {e}")
            raise SearchError(f"BM25 search failed: {e}") from e

        results = []
        for chunk, raw_score in hits:
            result = format_search_result(
                chunk.id, normalize_bm25_score(raw_score), chunk.content, chunk.metadata
            )
            if matches_filters(result, options):
                results.append(result)
                if len(results) >= limit:
                    break
        return results
