"""Indexing session: chunk, embed and store one project.

A session runs the pipeline once and reports everything it does as
``SessionEvent`` values on its ``events`` queue, in the order things happen.
Every run ends with exactly one terminal event (``completed``, ``cancelled``
or ``error``) and emits nothing after it.

Cancellation is cooperative. ``cancel()`` sets a flag that the embedding
pipeline checks between batches; the batch in flight when the flag is seen
is discarded and batches already stored stay in the index.
"""

import asyncio
import math
import time
import uuid
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from loguru import logger

from ..config.defaults import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_EMBEDDING_TIMEOUT,
    RATE_EMA_ALPHA,
    RATE_HISTORY_SIZE,
)
from .embeddings import EmbedderOptions, iter_embedded_batches
from .exceptions import CtxIndexError, IndexingCancelledError, IndexingError
from .memory_monitor import MemoryMonitor
from .models import Chunk, IndexingResult, ProgressData
from .providers import EmbeddingProvider
from .store import ChunkStore
from .tracing import NoopTracer, Tracer


class Chunker(Protocol):
    """Splits a project into chunks. Supplied by the caller."""

    async def chunk_project(
        self, project_path: Path, project_id: str
    ) -> Sequence[Chunk]: ...


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    ERROR = "error"


class SessionEventKind(str, Enum):
    STAGE = "stage"
    PROGRESS = "progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_EVENTS = frozenset(
    {SessionEventKind.COMPLETED, SessionEventKind.CANCELLED, SessionEventKind.ERROR}
)


@dataclass(frozen=True)
class SessionEvent:
    kind: SessionEventKind
    stage: str | None = None
    progress: ProgressData | None = None
    result: IndexingResult | None = None
    error: IndexingError | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_EVENTS


@dataclass
class IndexPipelineOptions:
    """Everything one indexing run needs."""

    project_path: Path
    project_name: str
    chunker: Chunker
    store: ChunkStore
    provider: EmbeddingProvider
    fallback_provider: EmbeddingProvider | None = None
    project_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    batch_size: int = DEFAULT_BATCH_SIZE
    timeout: float = DEFAULT_EMBEDDING_TIMEOUT
    memory_monitor: MemoryMonitor | None = None
    tracer: Tracer | None = None


class RateTracker:
    """Items/second as an exponential moving average over recent updates."""

    def __init__(
        self, alpha: float = RATE_EMA_ALPHA, history_size: int = RATE_HISTORY_SIZE
    ) -> None:
        self.alpha = alpha
        self._history: deque[float] = deque(maxlen=history_size)
        self._last_time: float | None = None
        self._last_processed = 0

    def update(self, processed: int, now: float | None = None) -> float:
        now = time.perf_counter() if now is None else now
        if self._last_time is not None:
            elapsed = now - self._last_time
            delta = processed - self._last_processed
            if elapsed > 0 and delta > 0:
                self._history.append(delta / elapsed)
        self._last_time = now
        self._last_processed = processed

        if not self._history:
            return 0.0
        rates = iter(self._history)
        ema = next(rates)
        for rate in rates:
            ema = self.alpha * rate + (1 - self.alpha) * ema
        return ema

    @staticmethod
    def eta(remaining: int, rate: float) -> float | None:
        if rate <= 0 or remaining <= 0:
            return None
        return float(math.ceil(remaining / rate))


class IndexingSession:
    """One run of the index pipeline with an ordered event channel.

    Example:
        session = IndexingSession(options)
        task = asyncio.create_task(session.run())
        while True:
            event = await session.events.get()
            if event.is_terminal:
                break
    """

    def __init__(self, options: IndexPipelineOptions) -> None:
        self.options = options
        self.events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._status = SessionStatus.IDLE
        self._cancel_event = asyncio.Event()
        self._rates: dict[str, RateTracker] = {}
        self._tracer = options.tracer or NoopTracer()

    def get_status(self) -> SessionStatus:
        return self._status

    def is_running(self) -> bool:
        return self._status in (SessionStatus.RUNNING, SessionStatus.CANCELLING)

    def cancel(self) -> None:
        """Ask the run to stop at the next batch boundary.

        May be called before ``run()`` starts; the run then stops before
        embedding anything.
        """
        if self._status in (SessionStatus.IDLE, SessionStatus.RUNNING):
            if self._status == SessionStatus.RUNNING:
                self._status = SessionStatus.CANCELLING
            self._cancel_event.set()
            logger.info(f"Cancellation requested for {self.options.project_name}")

    def _emit(self, event: SessionEvent) -> None:
        self.events.put_nowait(event)

    def _set_stage(self, stage: str) -> None:
        self._rates[stage] = RateTracker()
        self._emit(SessionEvent(SessionEventKind.STAGE, stage=stage))

    def _report(self, stage: str, processed: int, total: int) -> None:
        tracker = self._rates.setdefault(stage, RateTracker())
        rate = tracker.update(processed)
        progress = ProgressData(
            stage=stage,
            processed=processed,
            total=total,
            rate=rate if rate > 0 else None,
            eta=RateTracker.eta(total - processed, rate),
        )
        self._emit(SessionEvent(SessionEventKind.PROGRESS, stage=stage, progress=progress))

    def _check_cancelled(self, completed: int = 0, total: int = 0) -> None:
        if self._cancel_event.is_set():
            raise IndexingCancelledError(context={"completed": completed, "total": total})

    def _with_project(self, chunk: Chunk) -> Chunk:
        if chunk.metadata.get("project_id"):
            return chunk
        metadata = dict(chunk.metadata)
        metadata["project_id"] = self.options.project_id
        metadata.setdefault("project_name", self.options.project_name)
        return Chunk(id=chunk.id, content=chunk.content, metadata=metadata)

    async def run(self) -> IndexingResult | None:
        """Run the pipeline to completion, cancellation or failure.

        Returns:
            The result on success, ``None`` when cancelled

        Raises:
            IndexingError: If the session is already running, or the run
                failed (after the ``error`` event has been emitted)
        """
        if self.is_running():
            raise IndexingError("Indexing session is already running")
        if self._status != SessionStatus.IDLE:
            # Re-run after a previous terminal state
            self._cancel_event.clear()
        self._status = SessionStatus.RUNNING

        opts = self.options
        started = time.perf_counter()
        span = self._tracer.trace(
            "index_project",
            input={"project": opts.project_name, "path": str(opts.project_path)},
            metadata={"provider": opts.provider.name, "model": opts.provider.model},
        )
        embedded_count = 0
        stored = 0
        used_fallback = False
        # model -> provider name, in the order batches were stored
        batch_models: dict[str, str] = {}
        last_batch: tuple[int, int] | None = None
        logger.info(f"Indexing {opts.project_name} ({opts.project_path})")

        try:
            self._set_stage("chunking")
            raw_chunks = await opts.chunker.chunk_project(
                opts.project_path, opts.project_id
            )
            chunks = [self._with_project(chunk) for chunk in raw_chunks]
            self._report("chunking", len(chunks), len(chunks))
            self._check_cancelled(0, len(chunks))

            total = len(chunks)
            self._set_stage("embedding")
            self._report("embedding", 0, total)

            def on_embedded(done: int, count: int) -> None:
                if done:
                    self._report("embedding", done, count)

            embedder_options = EmbedderOptions(
                batch_size=opts.batch_size,
                timeout=opts.timeout,
                fallback_provider=opts.fallback_provider,
                on_progress=on_embedded,
                cancel_event=self._cancel_event,
                memory_monitor=opts.memory_monitor,
                tracer=self._tracer,
            )
            async for batch in iter_embedded_batches(chunks, opts.provider, embedder_options):
                embedded_count = batch.batch_end
                used_fallback = used_fallback or batch.used_fallback
                self._check_cancelled(stored, total)
                stored += await opts.store.add(batch.chunks)
                batch_models.setdefault(batch.model, batch.provider)
                last_batch = (batch.batch_start, batch.batch_end)
                self._report("storing", stored, total)

            provider_name, model = opts.provider.name, opts.provider.model
            if batch_models and model not in batch_models:
                # Every batch came from the fallback
                model, provider_name = next(iter(batch_models.items()))
            result = IndexingResult(
                project_id=opts.project_id,
                project_name=opts.project_name,
                chunks_embedded=embedded_count,
                chunks_stored=stored,
                provider=provider_name,
                model=model,
                models_used=list(batch_models),
                dimensions=opts.store.dimensions,
                duration_seconds=time.perf_counter() - started,
                used_fallback=used_fallback,
            )
            if opts.memory_monitor is not None:
                opts.memory_monitor.log_memory_summary()

        except IndexingCancelledError:
            self._status = SessionStatus.CANCELLED
            logger.info(
                f"Indexing {opts.project_name} cancelled after storing {stored} chunks"
            )
            span.update(output={"status": "cancelled", "stored": stored})
            span.end()
            self._emit(SessionEvent(SessionEventKind.CANCELLED))
            return None

        except asyncio.CancelledError:
            # Task cancellation still ends the run with a terminal event
            self._status = SessionStatus.CANCELLED
            span.end()
            self._emit(SessionEvent(SessionEventKind.CANCELLED))
            raise

        except Exception as e:
            error = self._wrap_error(e, last_batch)
            self._status = SessionStatus.ERROR
            logger.error(f"Indexing {opts.project_name} failed: {error}")
            span.update(level="ERROR", status_message=str(error))
            span.end()
            self._emit(SessionEvent(SessionEventKind.ERROR, error=error))
            if error is e:
                raise
            raise error from e

        self._status = SessionStatus.COMPLETED
        logger.info(
            f"Indexed {stored} chunks for {opts.project_name} "
            f"in {result.duration_seconds:.1f}s"
        )
        span.update(output={"status": "completed", "stored": stored})
        span.end()
        self._emit(SessionEvent(SessionEventKind.COMPLETED, result=result))
        return result

    def _wrap_error(
        self, error: Exception, last_batch: tuple[int, int] | None
    ) -> IndexingError:
        context = dict(error.context) if isinstance(error, CtxIndexError) else {}
        context.setdefault("provider", self.options.provider.name)
        context.setdefault("model", self.options.provider.model)
        if last_batch is not None:
            context.setdefault("last_stored_batch", list(last_batch))
        context["cause"] = repr(error)
        context["error_type"] = type(error).__name__
        if isinstance(error, IndexingError):
            error.context.update(context)
            return error
        return IndexingError(f"Indexing failed: {error}", context)
