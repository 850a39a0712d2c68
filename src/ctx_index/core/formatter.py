"""Search result formatting for terminal and JSON output."""

import re
from typing import Any

import orjson

from .models import SearchResultWithContext

DEFAULT_SNIPPET_LENGTH = 200
SNIPPET_INDENT = "  "

_WHITESPACE = re.compile(r"\s+")


def format_score(score: float) -> str:
    """Format a score with two decimals (``0.9234`` -> ``"0.92"``)."""
    return f"{score:.2f}"


def truncate_snippet(content: str, max_length: int = DEFAULT_SNIPPET_LENGTH) -> str:
    """Collapse whitespace and truncate with an ellipsis.

    Args:
        content: Text to shorten
        max_length: Maximum length before the ``...`` suffix

    Returns:
        Single-line snippet
    """
    normalized = _WHITESPACE.sub(" ", content).strip()
    if len(normalized) <= max_length:
        return normalized
    return normalized[:max_length] + "..."


def _format_line_range(start: int, end: int) -> str:
    if start == end:
        return str(start)
    return f"{start}-{end}"


def _project_label(result: SearchResultWithContext) -> str | None:
    label = result.metadata.get("project_name") or result.metadata.get("project_id")
    return label if isinstance(label, str) and label else None


def format_result(
    result: SearchResultWithContext,
    snippet_length: int = DEFAULT_SNIPPET_LENGTH,
    show_project: bool = False,
    show_score: bool = True,
    show_line_numbers: bool = True,
) -> str:
    """Format a single result for display.

    Example output::

        [0.92] src/search/retriever.py:45-67
          Implements the hybrid search pipeline using dense vectors...
    """
    parts = []
    if show_score:
        parts.append(f"[{format_score(result.score)}]")

    label = _project_label(result)
    if show_project and label:
        parts.append(f"[{label}]")

    location = result.file_path
    if show_line_numbers and result.line_range.start > 0:
        location += (
            f":{_format_line_range(result.line_range.start, result.line_range.end)}"
        )
    parts.append(location)

    snippet = truncate_snippet(result.content, snippet_length)
    return f"{' '.join(parts)}\n{SNIPPET_INDENT}{snippet}"


def format_results(results: list[SearchResultWithContext], **kwargs: Any) -> str:
    """Format results separated by blank lines."""
    return "\n\n".join(format_result(result, **kwargs) for result in results)


def format_result_json(
    result: SearchResultWithContext, show_project: bool = False
) -> dict[str, Any]:
    """Flatten a result into a JSON-friendly dict."""
    formatted: dict[str, Any] = {
        "score": result.score,
        "file_path": result.file_path,
        "line_start": result.line_range.start,
        "line_end": result.line_range.end,
        "content": result.content,
        "language": result.language,
        "file_type": result.file_type,
    }
    if show_project:
        project_id = result.metadata.get("project_id")
        if project_id:
            formatted["project_id"] = project_id
        project_name = result.metadata.get("project_name")
        if project_name:
            formatted["project_name"] = project_name
    return formatted


def dumps_results(
    results: list[SearchResultWithContext], show_project: bool = False
) -> bytes:
    """Serialize results to JSON bytes."""
    return orjson.dumps(
        [format_result_json(r, show_project=show_project) for r in results],
        option=orjson.OPT_INDENT_2,
    )
