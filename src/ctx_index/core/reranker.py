"""Cross-encoder reranking of retrieved candidates.

Cross-encoders score (query, document) pairs jointly. The hybrid search
service hands them its top candidates; the reranker's order replaces the
retrieval order.
"""

from typing import Any, Protocol

from loguru import logger

from ..config.defaults import DEFAULT_RERANK_MODEL
from .exceptions import SearchError


class Reranker(Protocol):
    def rerank(
        self, query: str, documents: list[str], top_k: int | None = None
    ) -> list[tuple[int, float]]: ...


class CrossEncoderReranker:
    """Reranks documents with a sentence-transformers ``CrossEncoder``.

    Usage:
        reranker = CrossEncoderReranker()
        reranker.rerank("parse file into chunks", ["def parse_file(path):", "import os"])
        # [(0, 7.1), (1, -9.8)] - (original index, score), best first
    """

    def __init__(self, model_name: str | None = None, device: str | None = None) -> None:
        self._model_name = model_name or DEFAULT_RERANK_MODEL
        self._device = device
        self._model: Any = None

    def _ensure_model(self) -> Any:
        if self._model is None:
            from sentence_transformers import CrossEncoder

            from .providers import _detect_device, suppress_stdout_stderr

            device = self._device or _detect_device()
            logger.debug(f"Loading cross-encoder model: {self._model_name} on {device}")
            try:
                with suppress_stdout_stderr():
                    self._model = CrossEncoder(self._model_name, device=device)
            except Exception as e:
                raise SearchError(
                    f"Failed to load cross-encoder {self._model_name}: {e}",
                    {"model": self._model_name},
                ) from e
        return self._model

    def rerank(
        self,
        query: str,
        documents: list[str],
        top_k: int | None = None,
    ) -> list[tuple[int, float]]:
        """Score documents against the query.

        Args:
            query: Search query
            documents: Candidate texts
            top_k: Keep only the best ``top_k`` (None keeps all)

        Returns:
            ``(original_index, score)`` pairs sorted by score descending
        """
        if not documents:
            return []

        model = self._ensure_model()
        scores = model.predict([(query, doc) for doc in documents])

        indexed_scores = [(i, float(score)) for i, score in enumerate(scores)]
        indexed_scores.sort(key=lambda x: x[1], reverse=True)
        if top_k:
            indexed_scores = indexed_scores[:top_k]

        logger.debug(
            f"Cross-encoder reranked {len(documents)} documents, "
            f"top score: {indexed_scores[0][1]:.3f}"
        )
        return indexed_scores

    @property
    def model_name(self) -> str:
        return self._model_name
