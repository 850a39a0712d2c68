"""Data models for ctx-index."""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .exceptions import InputValidationError


@dataclass(frozen=True)
class Chunk:
    """A unit of source content produced by the external chunker.

    ``metadata`` is an open mapping. The engine reads ``file_path``,
    ``file_type``, ``language``, ``start_line``, ``end_line`` and
    ``project_id`` from it; any other keys are carried through untouched.
    """

    id: str
    content: str
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EmbeddedChunk:
    """A chunk paired with its vector and the provider that produced it."""

    id: str
    content: str
    metadata: Mapping[str, Any]
    vector: list[float]
    provider: str
    model: str
    dimensions: int

    @classmethod
    def from_chunk(
        cls,
        chunk: Chunk,
        vector: list[float],
        provider: str,
        model: str,
        dimensions: int,
    ) -> "EmbeddedChunk":
        return cls(
            id=chunk.id,
            content=chunk.content,
            metadata=chunk.metadata,
            vector=vector,
            provider=provider,
            model=model,
            dimensions=dimensions,
        )

    def to_chunk(self) -> Chunk:
        return Chunk(id=self.id, content=self.content, metadata=self.metadata)


@dataclass(frozen=True)
class LineRange:
    start: int = 0
    end: int = 0


@dataclass
class SearchResultWithContext:
    """The single result shape every retriever hands to its consumers."""

    id: str
    score: float
    content: str
    file_path: str = ""
    file_type: str = "unknown"
    language: str | None = None
    line_range: LineRange = field(default_factory=LineRange)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def project_id(self) -> str | None:
        value = self.metadata.get("project_id")
        return value if isinstance(value, str) else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "id": self.id,
            "score": self.score,
            "content": self.content,
            "file_path": self.file_path,
            "file_type": self.file_type,
            "language": self.language,
            "line_range": {"start": self.line_range.start, "end": self.line_range.end},
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class SearchQueryOptions:
    """Optional constraints applied to every retriever.

    Absent (``None``) or empty fields are unconstrained.

    Raises:
        InputValidationError: On construction, if a field is malformed
    """

    file_type: str | None = None
    language: str | None = None
    project_ids: tuple[str, ...] | None = None
    min_score: float | None = None
    top_k: int | None = None

    def __post_init__(self) -> None:
        for name in ("file_type", "language"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise InputValidationError(
                    f"{name} must be a string, got {type(value).__name__}",
                    {"field": name},
                )

        if self.project_ids is not None:
            if isinstance(self.project_ids, str) or not isinstance(
                self.project_ids, list | tuple | set | frozenset
            ):
                raise InputValidationError(
                    "project_ids must be a list of strings", {"field": "project_ids"}
                )
            if not all(isinstance(pid, str) for pid in self.project_ids):
                raise InputValidationError(
                    "project_ids must be a list of strings", {"field": "project_ids"}
                )
            # Normalise to a tuple so options stay hashable
            object.__setattr__(self, "project_ids", tuple(self.project_ids))

        if self.min_score is not None:
            if isinstance(self.min_score, bool) or not isinstance(
                self.min_score, int | float
            ):
                raise InputValidationError(
                    "min_score must be a number", {"field": "min_score"}
                )
            if math.isnan(self.min_score):
                raise InputValidationError(
                    "min_score must not be NaN", {"field": "min_score"}
                )

        if self.top_k is not None:
            if isinstance(self.top_k, bool) or not isinstance(self.top_k, int):
                raise InputValidationError("top_k must be an integer", {"field": "top_k"})
            if self.top_k < 1:
                raise InputValidationError("top_k must be >= 1", {"field": "top_k"})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "SearchQueryOptions":
        """Build options from a loose mapping (e.g. decoded JSON)."""
        if not data:
            return cls()
        known = {"file_type", "language", "project_ids", "min_score", "top_k"}
        unknown = set(data) - known
        if unknown:
            raise InputValidationError(
                f"Unknown search options: {', '.join(sorted(unknown))}",
                {"fields": sorted(unknown)},
            )
        return cls(**dict(data))


@dataclass
class ProgressData:
    """Snapshot of indexing progress."""

    stage: str
    processed: int
    total: int
    rate: float | None = None  # items per second (EMA)
    eta: float | None = None  # seconds remaining

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(100.0, self.processed / self.total * 100.0)


@dataclass
class IndexingRunStatus:
    """Coordinator status snapshot."""

    running: bool = False
    project_name: str | None = None
    started_at: datetime | None = None
    stage: str | None = None
    progress: ProgressData | None = None
    cancel_requested: bool = False


@dataclass
class IndexingResult:
    """Summary of a completed indexing run."""

    project_id: str
    project_name: str
    chunks_embedded: int
    chunks_stored: int
    provider: str | None
    model: str | None
    dimensions: int | None
    duration_seconds: float
    used_fallback: bool = False
    models_used: list[str] = field(default_factory=list)
