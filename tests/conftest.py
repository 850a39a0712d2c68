"""Shared fixtures: in-process fakes for providers, chunkers and displays."""

import asyncio
import zlib
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from ctx_index.core.models import Chunk, ProgressData
from ctx_index.core.providers import EmbeddingProvider


class FakeProvider(EmbeddingProvider):
    """Deterministic provider.

    Texts listed in ``vectors`` get that vector; anything else is hashed
    token by token into a bag-of-words vector of the declared size.
    """

    name = "fake"

    def __init__(
        self,
        model: str = "fake-model",
        dimensions: int = 8,
        vectors: dict[str, list[float]] | None = None,
        fail: Exception | None = None,
        delay: float = 0.0,
        on_embed: Callable[[int, list[str]], None] | None = None,
        name: str | None = None,
    ) -> None:
        super().__init__(model, dimensions)
        self.vectors = vectors or {}
        self.fail = fail
        self.delay = delay
        self.on_embed = on_embed
        self.calls: list[list[str]] = []
        self.closed = False
        if name is not None:
            self.name = name

    def vector_for(self, text: str) -> list[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        dims = self._dimensions
        vector = [0.0] * dims
        for token in text.lower().split():
            vector[zlib.crc32(token.encode()) % dims] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.on_embed is not None:
            self.on_embed(len(self.calls), list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        return [self.vector_for(text) for text in texts]

    async def close(self) -> None:
        self.closed = True


class FakeChunker:
    """Returns a fixed chunk list, optionally after a gate opens."""

    def __init__(
        self,
        chunks: Sequence[Chunk],
        gate: asyncio.Event | None = None,
        fail: Exception | None = None,
    ) -> None:
        self.chunks = list(chunks)
        self.gate = gate
        self.fail = fail
        self.calls: list[tuple[Path, str]] = []

    async def chunk_project(self, project_path: Path, project_id: str) -> list[Chunk]:
        self.calls.append((project_path, project_id))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        return list(self.chunks)


class RecordingDisplay:
    """Status display that records every call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self._active = False

    def show(self) -> None:
        self._active = True
        self.calls.append(("show",))

    def hide(self) -> None:
        self._active = False
        self.calls.append(("hide",))

    def set_stage(self, stage: str) -> None:
        self.calls.append(("stage", stage))

    def update(self, progress: ProgressData) -> None:
        self.calls.append(("update", progress.stage, progress.processed, progress.total))

    def show_success(self, message: str) -> None:
        self.calls.append(("success", message))

    def show_error(self, error: Exception) -> None:
        self.calls.append(("error", error))

    def show_cancelled(self) -> None:
        self.calls.append(("cancelled",))

    def is_active(self) -> bool:
        return self._active

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


def make_chunk(
    chunk_id: str,
    content: str,
    file_path: str = "src/app.py",
    language: str | None = "python",
    file_type: str = "py",
    start_line: int = 1,
    end_line: int = 10,
    **extra,
) -> Chunk:
    metadata = {
        "file_path": file_path,
        "file_type": file_type,
        "start_line": start_line,
        "end_line": end_line,
        **extra,
    }
    if language is not None:
        metadata["language"] = language
    return Chunk(id=chunk_id, content=content, metadata=metadata)


def unit_vector(index: int, dims: int, scale: float = 1.0) -> list[float]:
    vector = [0.0] * dims
    vector[index] = scale
    return vector


def drain_events(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture
def fake_provider_cls():
    return FakeProvider


@pytest.fixture
def chunker_cls():
    return FakeChunker


@pytest.fixture
def chunk_factory():
    return make_chunk


@pytest.fixture
def sample_chunks():
    """Five small python chunks with distinct vocabulary."""
    return [
        make_chunk("c1", "def parse_file(path): return open(path).read()", "src/parser.py"),
        make_chunk("c2", "class TokenCache: holds cached tokens", "src/cache.py"),
        make_chunk("c3", "async def fetch_remote(url): await client.get(url)", "src/net.py"),
        make_chunk("c4", "def render_table(rows): print(rows)", "src/render.py"),
        make_chunk("c5", "CONFIG_DEFAULTS = {'timeout': 30}", "src/config.py"),
    ]


@pytest.fixture
def display():
    return RecordingDisplay()
