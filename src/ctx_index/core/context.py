"""Engine context: the process-wide components, created once and passed around.

The context owns the background indexing coordinator. Commands receive the
context instead of reaching for module globals, and tests build a fresh
context (or call ``reset_coordinator``) for isolation.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from ..config.settings import Settings, load_settings
from .coordinator import BackgroundIndexingCoordinator, BackgroundIndexingOptions
from .memory_monitor import MemoryMonitor
from .providers import EmbeddingProvider, create_embedding_provider
from .reranker import CrossEncoderReranker
from .resource_manager import get_batch_size_for_memory
from .search import HybridSearchService
from .session import Chunker
from .status_display import StatusDisplay
from .store import ChunkStore, InMemoryChunkStore, LanceChunkStore
from .tracing import Tracer, create_tracer


@dataclass
class EngineContext:
    """Settings, tracer and coordinator for one engine instance."""

    settings: Settings
    tracer: Tracer
    coordinator: BackgroundIndexingCoordinator
    display: StatusDisplay | None = None
    _providers: dict[bool, EmbeddingProvider] = field(default_factory=dict, repr=False)

    def reset_coordinator(self) -> BackgroundIndexingCoordinator:
        """Replace the coordinator with a fresh, idle one.

        A run owned by the old coordinator is not stopped; it finishes
        against the old instance, which nothing references any more.
        """
        if self.coordinator.is_running():
            logger.warning("Resetting coordinator while a run is active")
        self.coordinator = BackgroundIndexingCoordinator(display=self.display)
        return self.coordinator

    def get_provider(self, fallback: bool = False) -> EmbeddingProvider | None:
        """Primary (or fallback) provider from settings, created once."""
        if fallback and self.settings.embedding.fallback_provider is None:
            return None
        if fallback not in self._providers:
            self._providers[fallback] = create_embedding_provider(
                self.settings.embedding, fallback=fallback
            )
        return self._providers[fallback]

    async def create_store(self, index_path: Path | None = None) -> ChunkStore:
        """LanceDB store when an index path is configured, in-memory otherwise."""
        path = index_path or self.settings.index.index_path
        dimensions = self.settings.embedding.resolved_dimensions()
        if path is None:
            return InMemoryChunkStore(dimensions=dimensions)
        store = LanceChunkStore(path, dimensions=dimensions)
        await store.initialize()
        return store

    def create_memory_monitor(self) -> MemoryMonitor | None:
        if self.settings.index.max_memory_gb is None:
            return None
        return MemoryMonitor(max_memory_gb=self.settings.index.max_memory_gb)

    def create_index_options(
        self,
        project_path: Path,
        project_name: str,
        chunker: Chunker,
        store: ChunkStore,
        **callbacks,
    ) -> BackgroundIndexingOptions:
        """Build run options from settings (callbacks pass straight through)."""
        embedding = self.settings.embedding
        batch_size = get_batch_size_for_memory(
            embedding.resolved_dimensions(), requested=embedding.batch_size
        )
        return BackgroundIndexingOptions(
            project_path=project_path,
            project_name=project_name,
            chunker=chunker,
            store=store,
            provider=self.get_provider(),
            fallback_provider=self.get_provider(fallback=True),
            batch_size=batch_size,
            timeout=embedding.timeout,
            memory_monitor=self.create_memory_monitor(),
            tracer=self.tracer,
            **callbacks,
        )

    def create_search_service(
        self,
        store: ChunkStore,
        provider: EmbeddingProvider | None = None,
    ) -> HybridSearchService:
        search = self.settings.search
        reranker = CrossEncoderReranker(search.rerank_model) if search.rerank else None
        return HybridSearchService(
            store,
            provider or self.get_provider(),
            mode=search.mode,
            fusion=search.fusion,
            reranker=reranker,
            rerank_candidates=search.rerank_candidates,
            tracer=self.tracer,
            top_k=search.top_k,
            dense_weight=search.dense_weight,
            bm25_weight=search.bm25_weight,
            timeout=self.settings.embedding.timeout,
        )

    async def shutdown(self, providers: Sequence[EmbeddingProvider] = ()) -> None:
        """Close providers and flush traces."""
        for provider in (*self._providers.values(), *providers):
            await provider.close()
        self._providers.clear()
        self.tracer.flush()
        self.tracer.shutdown()


def create_engine_context(
    settings: Settings | None = None,
    display: StatusDisplay | None = None,
) -> EngineContext:
    """Create the engine context for this process."""
    settings = settings or load_settings()
    from ..utils.logging import configure_logging

    configure_logging(settings.index.log_level)
    tracer = create_tracer(settings.observability)
    return EngineContext(
        settings=settings,
        tracer=tracer,
        coordinator=BackgroundIndexingCoordinator(display=display),
        display=display,
    )
