"""Embedding pipeline: chunks to vectors.

Chunks are validated up front, split into batches and sent to the primary
provider. A batch that fails or times out is retried once on the fallback
provider, if one is configured. Progress is reported after every batch and a
cancel signal is honoured between batches.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger

from ..config.defaults import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_EMBEDDING_TIMEOUT,
    DEFAULT_MEMORY_ESTIMATE_DIMENSIONS,
    EMBEDDING_OVERHEAD_BYTES,
)
from .exceptions import (
    CtxIndexError,
    DimensionMismatchError,
    EmbeddingTimeoutError,
    IndexingCancelledError,
    InputValidationError,
    ProviderError,
)
from .memory_monitor import MemoryMonitor
from .models import Chunk, EmbeddedChunk
from .providers import EmbeddingProvider
from .tracing import NoopTracer, Tracer


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...


@dataclass
class EmbedderOptions:
    """Options for ``embed_chunks`` and ``iter_embedded_batches``.

    Attributes:
        batch_size: Chunks per provider call
        timeout: Seconds allowed per provider call
        fallback_provider: Provider retried once when a batch fails
        on_progress: Called with ``(completed, total)`` after each batch
        cancel_event: Checked between batches (``asyncio.Event`` works)
        memory_monitor: Shrinks batches under memory pressure
        tracer: Receives one span per batch
    """

    batch_size: int = DEFAULT_BATCH_SIZE
    timeout: float = DEFAULT_EMBEDDING_TIMEOUT
    fallback_provider: EmbeddingProvider | None = None
    on_progress: Callable[[int, int], None] | None = None
    cancel_event: CancelSignal | None = None
    memory_monitor: MemoryMonitor | None = None
    tracer: Tracer | None = None


@dataclass
class EmbeddedBatch:
    """One completed batch. All vectors come from the same provider."""

    batch_start: int
    batch_end: int
    chunks: list[EmbeddedChunk] = field(default_factory=list)
    provider: str = ""
    model: str = ""
    dimensions: int = 0
    used_fallback: bool = False


def validate_chunks(chunks: Sequence[Chunk]) -> None:
    """Reject chunks without embeddable content.

    Raises:
        InputValidationError: Naming the first chunk whose content is empty,
            whitespace-only or not a string
    """
    for position, chunk in enumerate(chunks):
        content = chunk.content
        if not isinstance(content, str) or not content.strip():
            raise InputValidationError(
                f"Chunk {chunk.id!r} has empty content",
                {"chunk_id": chunk.id, "position": position},
            )


def estimate_embedding_memory(
    chunks_or_count: Sequence[Any] | int,
    dimensions: int = DEFAULT_MEMORY_ESTIMATE_DIMENSIONS,
) -> int:
    """Estimate bytes needed to hold embeddings (float32 plus overhead).

    Advisory only; nothing enforces it.
    """
    count = chunks_or_count if isinstance(chunks_or_count, int) else len(chunks_or_count)
    return count * (dimensions * 4 + EMBEDDING_OVERHEAD_BYTES)


def _check_options(options: EmbedderOptions) -> None:
    if options.batch_size < 1:
        raise InputValidationError(
            f"batch_size must be >= 1, got {options.batch_size}",
            {"field": "batch_size"},
        )
    if options.timeout <= 0:
        raise InputValidationError(
            f"timeout must be > 0, got {options.timeout}", {"field": "timeout"}
        )


def _is_cancelled(options: EmbedderOptions) -> bool:
    return options.cancel_event is not None and options.cancel_event.is_set()


async def _call_provider(
    provider: EmbeddingProvider, texts: list[str], timeout: float
) -> list[list[float]]:
    try:
        vectors = await asyncio.wait_for(provider.embed(texts), timeout)
    except asyncio.TimeoutError as e:
        raise EmbeddingTimeoutError(
            f"{provider.name} did not answer within {timeout}s",
            {"provider": provider.name, "model": provider.model, "timeout": timeout},
        ) from e
    except CtxIndexError:
        raise
    except Exception as e:
        raise ProviderError(
            f"{provider.name} failed: {e}",
            {"provider": provider.name, "model": provider.model},
        ) from e

    if not isinstance(vectors, list) or len(vectors) != len(texts):
        got = len(vectors) if isinstance(vectors, list) else type(vectors).__name__
        raise ProviderError(
            f"{provider.name} returned {got} embeddings for {len(texts)} inputs",
            {"provider": provider.name, "model": provider.model},
        )
    return vectors


def _annotate(
    error: CtxIndexError,
    provider: EmbeddingProvider,
    batch_start: int,
    batch_end: int,
) -> None:
    error.context.setdefault("provider", provider.name)
    error.context.setdefault("model", provider.model)
    error.context.setdefault("batch_start", batch_start)
    error.context.setdefault("batch_end", batch_end)
    if error.__cause__ is not None:
        error.context.setdefault("cause", repr(error.__cause__))


async def _embed_with_fallback(
    texts: list[str],
    provider: EmbeddingProvider,
    options: EmbedderOptions,
    batch_start: int,
    batch_end: int,
) -> tuple[list[list[float]], EmbeddingProvider, bool]:
    try:
        vectors = await _call_provider(provider, texts, options.timeout)
        return vectors, provider, False
    except (ProviderError, EmbeddingTimeoutError) as primary_error:
        _annotate(primary_error, provider, batch_start, batch_end)
        fallback = options.fallback_provider
        if fallback is None:
            logger.error(
                f"Embedding batch {batch_start}-{batch_end} failed on "
                f"{provider.name}: {primary_error}"
            )
            raise

        logger.warning(
            f"Embedding batch {batch_start}-{batch_end} failed on {provider.name} "
            f"({type(primary_error).__name__}: {primary_error}), "
            f"retrying on fallback {fallback.name}"
        )
        try:
            vectors = await _call_provider(fallback, texts, options.timeout)
        except (ProviderError, EmbeddingTimeoutError) as fallback_error:
            _annotate(fallback_error, fallback, batch_start, batch_end)
            fallback_error.context["primary_error"] = str(primary_error)
            fallback_error.context["primary_provider"] = provider.name
            logger.error(
                f"Fallback {fallback.name} also failed for batch "
                f"{batch_start}-{batch_end}: {fallback_error}"
            )
            raise
        return vectors, fallback, True


async def iter_embedded_batches(
    chunks: Sequence[Chunk],
    provider: EmbeddingProvider,
    options: EmbedderOptions | None = None,
) -> AsyncIterator[EmbeddedBatch]:
    """Embed chunks batch by batch, yielding each batch as it completes.

    Args:
        chunks: Chunks to embed (all are validated before any provider call)
        provider: Primary embedding provider
        options: Batching, fallback, progress and cancellation options

    Yields:
        ``EmbeddedBatch`` per provider call, in input order

    Raises:
        InputValidationError: If any chunk has empty content
        DimensionMismatchError: If a vector length differs from the declared
            dimensionality of the provider that produced it, or the fallback
            declares a different dimensionality than the primary
        ProviderError: If a batch fails and no fallback recovers it
        EmbeddingTimeoutError: If a batch times out and no fallback recovers it
        IndexingCancelledError: If the cancel signal is set between batches
    """
    options = options or EmbedderOptions()
    _check_options(options)
    validate_chunks(chunks)

    expected_dims = provider.model_dimensions(provider.model)
    fallback = options.fallback_provider
    if fallback is not None:
        fallback_dims = fallback.model_dimensions(fallback.model)
        if fallback_dims != expected_dims:
            raise DimensionMismatchError(
                f"Fallback {fallback.name}/{fallback.model} produces {fallback_dims} "
                f"dimensions, primary {provider.name}/{provider.model} produces "
                f"{expected_dims}",
                {
                    "primary_dimensions": expected_dims,
                    "fallback_dimensions": fallback_dims,
                },
            )

    tracer = options.tracer or NoopTracer()
    total = len(chunks)
    completed = 0

    if total == 0:
        if options.on_progress:
            options.on_progress(0, 0)
        return

    started = time.perf_counter()
    start = 0
    while start < total:
        if _is_cancelled(options):
            logger.info(f"Embedding cancelled at {completed}/{total} chunks")
            raise IndexingCancelledError(context={"completed": completed, "total": total})

        size = options.batch_size
        if options.memory_monitor is not None:
            size = options.memory_monitor.get_adjusted_batch_size(size)

        batch = list(chunks[start : start + size])
        end = start + len(batch)
        span = tracer.trace(
            "embed_batch",
            input={"batch_start": start, "batch_end": end},
            metadata={"provider": provider.name, "model": provider.model},
        )

        try:
            vectors, used, used_fallback = await _embed_with_fallback(
                [chunk.content for chunk in batch], provider, options, start, end
            )
        except CtxIndexError as e:
            span.update(level="ERROR", status_message=str(e))
            span.end()
            raise

        dims = used.model_dimensions(used.model)
        for chunk, vector in zip(batch, vectors, strict=True):
            if len(vector) != dims:
                span.end()
                raise DimensionMismatchError(
                    f"{used.name}/{used.model} returned a {len(vector)}-dimensional "
                    f"vector for chunk {chunk.id!r}, expected {dims}",
                    {
                        "chunk_id": chunk.id,
                        "provider": used.name,
                        "model": used.model,
                        "expected": dims,
                        "actual": len(vector),
                        "batch_start": start,
                        "batch_end": end,
                    },
                )

        span.update(output={"vectors": len(vectors), "provider": used.name})
        span.end()

        if _is_cancelled(options):
            logger.info(
                f"Embedding cancelled, discarding in-flight batch {start}-{end}"
            )
            raise IndexingCancelledError(context={"completed": completed, "total": total})

        completed = end
        logger.debug(
            f"Embedded batch {start}-{end} of {total} with {used.name}"
            + (" (fallback)" if used_fallback else "")
        )
        if options.on_progress:
            options.on_progress(completed, total)

        yield EmbeddedBatch(
            batch_start=start,
            batch_end=end,
            chunks=[
                EmbeddedChunk.from_chunk(chunk, vector, used.name, used.model, dims)
                for chunk, vector in zip(batch, vectors, strict=True)
            ],
            provider=used.name,
            model=used.model,
            dimensions=dims,
            used_fallback=used_fallback,
        )
        start = end

    elapsed = time.perf_counter() - started
    throughput = total / elapsed if elapsed > 0 else 0.0
    logger.info(
        f"Generated {total} embeddings in {elapsed:.2f}s ({throughput:.1f} chunks/sec)"
    )


async def embed_chunks(
    chunks: Sequence[Chunk],
    provider: EmbeddingProvider,
    options: EmbedderOptions | None = None,
) -> list[EmbeddedChunk]:
    """Embed all chunks, returning them in input order.

    See ``iter_embedded_batches`` for the errors raised.
    """
    embedded: list[EmbeddedChunk] = []
    async for batch in iter_embedded_batches(chunks, provider, options):
        embedded.extend(batch.chunks)
    return embedded


async def embed_query(
    query: str,
    provider: EmbeddingProvider,
    timeout: float = DEFAULT_EMBEDDING_TIMEOUT,
) -> list[float]:
    """Embed a search query with the same timeout handling as batches.

    Raises:
        ProviderError: If the provider fails
        EmbeddingTimeoutError: If the provider does not answer in time
    """
    vectors = await _call_provider(provider, [query], timeout)
    return [float(x) for x in vectors[0]]


async def embed_chunk(
    chunk: Chunk,
    provider: EmbeddingProvider,
    options: EmbedderOptions | None = None,
) -> EmbeddedChunk:
    """Embed a single chunk."""
    embedded = await embed_chunks([chunk], provider, options)
    return embedded[0]
