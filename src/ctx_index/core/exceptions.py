"""Typed exception hierarchy for ctx-index.

Hierarchy
---------
CtxIndexError (base)
├── InputValidationError     – empty chunk content, malformed query options
├── ConfigError              – configuration / validation errors
│   ├── DimensionMismatchError
│   └── ModelMismatchError
├── EmbeddingError           – embedding generation errors
│   ├── ProviderError        – provider failed or returned a malformed response
│   └── EmbeddingTimeoutError
├── SearchError              – search-time failures (retrieval, reranking)
├── DatabaseError            – chunk / vector store errors
└── IndexingError            – indexing-time failures
    ├── IndexingInProgressError
    └── IndexingCancelledError

``EmbeddingTimeoutError`` is a sibling of ``ProviderError``, not a subclass.
Both trigger the single fallback retry in the embedding pipeline.

``IndexingCancelledError`` is control flow. The indexing session reports it
as a ``cancelled`` event, never as an ``error`` event.
"""

from typing import Any


class CtxIndexError(Exception):
    """Base exception for ctx-index."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


# ── Input validation ────────────────────────────────────────────────────


class InputValidationError(CtxIndexError):
    """Caller supplied invalid input (empty chunk, malformed options)."""

    pass


# ── Configuration layer ─────────────────────────────────────────────────


class ConfigError(CtxIndexError):
    """Configuration / validation errors."""

    pass


class DimensionMismatchError(ConfigError):
    """Vector length disagrees with the declared model or index dimensionality.

    Fatal: the index and the embedding model are not compatible.
    """

    pass


class ModelMismatchError(ConfigError):
    """Query embedding model differs from the model the index was built with."""

    pass


# ── Embedding layer ─────────────────────────────────────────────────────


class EmbeddingError(CtxIndexError):
    """Embedding generation errors."""

    pass


class ProviderError(EmbeddingError):
    """Embedding provider failed or returned a malformed response.

    ``context`` carries ``provider``, ``model`` and, when raised from the
    pipeline, the ``batch_start`` / ``batch_end`` range.
    """

    pass


class EmbeddingTimeoutError(EmbeddingError):
    """Embedding provider call exceeded its timeout."""

    pass


# ── Search layer ────────────────────────────────────────────────────────


class SearchError(CtxIndexError):
    """Search operation failed."""

    pass


# ── Storage layer ───────────────────────────────────────────────────────


class DatabaseError(CtxIndexError):
    """Chunk / vector store errors."""

    pass


# ── Indexing layer ──────────────────────────────────────────────────────


class IndexingError(CtxIndexError):
    """Indexing operation failed.

    Named ``IndexingError`` (not ``IndexError``) to avoid shadowing
    the Python built-in ``IndexError``.
    """

    pass


class IndexingInProgressError(IndexingError):
    """A background indexing run is already active."""

    pass


class IndexingCancelledError(IndexingError):
    """Indexing was cancelled cooperatively."""

    def __init__(
        self, message: str = "Indexing cancelled", context: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, context)
