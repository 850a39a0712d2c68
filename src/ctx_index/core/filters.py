"""Result formatting and filtering shared by every retriever.

``format_search_result`` is the one place raw retriever hits (dense or BM25)
become ``SearchResultWithContext``. ``matches_filters`` is the post-filter for
retrievers without native filtering, and ``build_where_clause`` expresses the
same predicates for stores that can push them down. The two must accept
exactly the same results for the same options.
"""

from collections.abc import Mapping
from typing import Any

from .models import LineRange, SearchQueryOptions, SearchResultWithContext


def _str_or(value: Any, default: str) -> str:
    return value if isinstance(value, str) else default


def _int_or(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


def format_search_result(
    id: str,
    score: float,
    content: str,
    metadata: Mapping[str, Any] | None,
) -> SearchResultWithContext:
    """Format a raw retriever hit into the standard result shape.

    Never raises: missing or wrongly typed metadata fields fall back to
    defaults (``file_path=""``, ``file_type="unknown"``, ``language=None``,
    ``line_range=(0, 0)``, ``metadata={}``).

    Args:
        id: Chunk identifier
        score: Relevance score (cosine similarity or normalized BM25)
        content: Chunk text
        metadata: Chunk metadata as stored

    Returns:
        Formatted result
    """
    meta = dict(metadata) if isinstance(metadata, Mapping) else {}

    language = meta.get("language")
    if not isinstance(language, str):
        language = None

    return SearchResultWithContext(
        id=id,
        score=score,
        content=content if isinstance(content, str) else "",
        file_path=_str_or(meta.get("file_path"), ""),
        file_type=_str_or(meta.get("file_type"), "unknown"),
        language=language,
        line_range=LineRange(
            start=_int_or(meta.get("start_line"), 0),
            end=_int_or(meta.get("end_line"), 0),
        ),
        metadata=meta,
    )


def matches_filters(
    result: SearchResultWithContext, options: SearchQueryOptions | None
) -> bool:
    """Check a formatted result against query options.

    Each present, non-empty option is a conjunct: file type equality,
    language equality, project membership (the result must carry a non-empty
    ``project_id`` in ``project_ids``) and the inclusive score floor.
    """
    if options is None:
        return True

    if options.file_type and result.file_type != options.file_type:
        return False

    if options.language and result.language != options.language:
        return False

    if options.project_ids:
        project_id = result.project_id
        if not project_id or project_id not in options.project_ids:
            return False

    if options.min_score is not None and result.score < options.min_score:
        return False

    return True


def _quote(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def build_where_clause(options: SearchQueryOptions | None) -> str | None:
    """Translate query options into a LanceDB SQL filter.

    The score floor is not expressible before scoring, so stores apply
    ``min_score`` after converting distances. Columns referenced here are the
    normalized ``file_type``, ``language`` and ``project_id`` columns written
    by ``LanceChunkStore``.

    Returns:
        A SQL predicate, or ``None`` when nothing constrains the query
    """
    if options is None:
        return None

    clauses = []
    if options.file_type:
        clauses.append(f"file_type = {_quote(options.file_type)}")
    if options.language:
        clauses.append(f"language = {_quote(options.language)}")
    if options.project_ids:
        id_list = ", ".join(_quote(pid) for pid in options.project_ids)
        # Blank ids never match, even if a caller lists ""
        clauses.append(f"project_id IN ({id_list}) AND project_id != ''")

    if not clauses:
        return None
    return " AND ".join(clauses)
