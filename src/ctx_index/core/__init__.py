"""Core functionality for ctx-index."""

from .exceptions import (
    ConfigError,
    CtxIndexError,
    DatabaseError,
    DimensionMismatchError,
    EmbeddingError,
    EmbeddingTimeoutError,
    IndexingCancelledError,
    IndexingError,
    IndexingInProgressError,
    InputValidationError,
    ModelMismatchError,
    ProviderError,
    SearchError,
)

__all__ = [
    "ConfigError",
    "CtxIndexError",
    "DatabaseError",
    "DimensionMismatchError",
    "EmbeddingError",
    "EmbeddingTimeoutError",
    "IndexingCancelledError",
    "IndexingError",
    "IndexingInProgressError",
    "InputValidationError",
    "ModelMismatchError",
    "ProviderError",
    "SearchError",
]
