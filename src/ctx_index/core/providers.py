"""Embedding provider adapters.

Every provider answers ``embed(texts)`` with one vector per text, reports
whether it is reachable, and declares the dimensionality of its model. The
embedding pipeline only talks to this interface.
"""

import asyncio
import contextlib
import hashlib
import logging
import multiprocessing
import os
import sys
import warnings
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import aiofiles
import httpx
import orjson
from loguru import logger

from ..config.defaults import DEFAULT_PROVIDER_URLS, get_model_dimensions
from .exceptions import ConfigError, EmbeddingTimeoutError, ProviderError

# Only errors from transformers/sentence-transformers reach the logs
logging.getLogger("transformers").setLevel(logging.ERROR)
logging.getLogger("sentence_transformers").setLevel(logging.ERROR)
logging.getLogger("torch").setLevel(logging.ERROR)
logging.getLogger("huggingface_hub").setLevel(logging.ERROR)
logging.getLogger("httpx").setLevel(logging.WARNING)

os.environ.setdefault("TQDM_DISABLE", "1")

warnings.filterwarnings("ignore", message=".*position_ids.*")
warnings.filterwarnings("ignore", category=FutureWarning, module="transformers")


@contextlib.contextmanager
def suppress_stdout_stderr():
    """Context manager to suppress stdout and stderr at OS level.

    Used to hide verbose model loading output printed directly to file
    descriptors by native code, which bypasses ``sys.stdout`` redirection.
    """
    try:
        stdout_fd = sys.stdout.fileno()
        stderr_fd = sys.stderr.fileno()
    except (AttributeError, OSError, ValueError):
        # Streams without real descriptors (captured output)
        yield
        return

    stdout_dup = os.dup(stdout_fd)
    stderr_dup = os.dup(stderr_fd)
    devnull = os.open(os.devnull, os.O_RDWR)

    try:
        os.dup2(devnull, stdout_fd)
        os.dup2(devnull, stderr_fd)
        yield
    finally:
        os.dup2(stdout_dup, stdout_fd)
        os.dup2(stderr_dup, stderr_fd)
        os.close(stdout_dup)
        os.close(stderr_dup)
        os.close(devnull)


def _configure_tokenizers_parallelism() -> None:
    """Enable tokenizer threads in the main process only (forks deadlock)."""
    is_main_process = multiprocessing.current_process().name == "MainProcess"
    os.environ["TOKENIZERS_PARALLELISM"] = "true" if is_main_process else "false"


_configure_tokenizers_parallelism()


def _detect_device() -> str:
    """Detect optimal compute device (MPS > CUDA > CPU).

    Returns:
        Device string: "mps", "cuda", or "cpu"

    Environment Variables:
        CTX_INDEX_DEVICE: Override device selection ("cpu", "cuda", or "mps")
    """
    env_device = os.environ.get("CTX_INDEX_DEVICE", "").lower()
    if env_device in ("cpu", "cuda", "mps"):
        logger.info(f"Using device from environment override: {env_device}")
        return env_device

    import torch

    if torch.backends.mps.is_available() and torch.backends.mps.is_built():
        logger.info("Apple Silicon detected. Using MPS for GPU-accelerated inference.")
        return "mps"

    if torch.cuda.is_available():
        gpu_count = torch.cuda.device_count()
        gpu_name = torch.cuda.get_device_name(0) if gpu_count > 0 else "unknown"
        logger.info(
            f"Using CUDA backend for GPU acceleration ({gpu_count} GPU(s): {gpu_name})"
        )
        return "cuda"

    logger.info("Using CPU backend (no GPU acceleration)")
    return "cpu"


class EmbeddingProvider(ABC):
    """Base class for embedding providers.

    Subclasses set ``name`` and implement ``embed``. ``dimensions`` overrides
    the built-in model table for models it does not know.
    """

    name: str = "provider"

    def __init__(self, model: str, dimensions: int | None = None) -> None:
        self._model = model
        self._dimensions = dimensions

    @property
    def model(self) -> str:
        return self._model

    def model_dimensions(self, model: str | None = None) -> int:
        """Declared dimensionality of ``model`` (defaults to this provider's).

        Raises:
            ConfigError: If the model is unknown and no explicit
                dimensionality was configured
        """
        model = model or self._model
        if model == self._model and self._dimensions is not None:
            return self._dimensions
        try:
            return get_model_dimensions(model)
        except ValueError as e:
            raise ConfigError(str(e), {"provider": self.name, "model": model}) from e

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts, returning one vector per text in order."""

    async def is_available(self) -> bool:
        return True

    async def close(self) -> None:
        """Release network clients or model memory."""

    def _check_response(self, texts: list[str], vectors: Any) -> list[list[float]]:
        if not isinstance(vectors, list) or len(vectors) != len(texts):
            got = len(vectors) if isinstance(vectors, list) else type(vectors).__name__
            raise ProviderError(
                f"{self.name} returned {got} embeddings for {len(texts)} inputs",
                {"provider": self.name, "model": self._model},
            )
        return [[float(x) for x in vector] for vector in vectors]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self._model!r})"


class SentenceTransformerProvider(EmbeddingProvider):
    """Local embeddings through sentence-transformers.

    The model loads lazily on first use and encodes in a worker thread so the
    event loop keeps serving status and search requests.
    """

    name = "sentence-transformers"

    def __init__(
        self,
        model: str = "sentence-transformers/all-MiniLM-L6-v2",
        dimensions: int | None = None,
        device: str | None = None,
    ) -> None:
        super().__init__(model, dimensions)
        self._device = device
        self._encoder: Any = None
        self._load_lock = asyncio.Lock()

    def _load(self) -> Any:
        from sentence_transformers import SentenceTransformer

        device = self._device or _detect_device()
        try:
            with suppress_stdout_stderr():
                encoder = SentenceTransformer(
                    self._model, device=device, trust_remote_code=True
                )
        except Exception as e:
            logger.error(f"Failed to load embedding model {self._model}: {e}")
            raise ProviderError(
                f"Failed to load embedding model: {e}",
                {"provider": self.name, "model": self._model},
            ) from e

        actual_dims = encoder.get_sentence_embedding_dimension()
        logger.info(
            f"Loaded embedding model {self._model} on {device} "
            f"with {actual_dims} dimensions"
        )
        self._device = device
        return encoder

    async def _ensure_model(self) -> Any:
        async with self._load_lock:
            if self._encoder is None:
                self._encoder = await asyncio.to_thread(self._load)
        return self._encoder

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        encoder = await self._ensure_model()
        try:
            embeddings = await asyncio.to_thread(
                encoder.encode,
                texts,
                convert_to_numpy=True,
                show_progress_bar=False,
                device=self._device,
            )
        except Exception as e:
            logger.error(f"Failed to generate embeddings: {e}")
            raise ProviderError(
                f"Failed to generate embeddings: {e}",
                {"provider": self.name, "model": self._model},
            ) from e
        return self._check_response(texts, embeddings.tolist())

    async def is_available(self) -> bool:
        try:
            import sentence_transformers  # noqa: F401
        except ImportError:
            return False
        return True

    async def close(self) -> None:
        self._encoder = None


class _HTTPProvider(EmbeddingProvider):
    """Shared request handling for HTTP embedding APIs."""

    def __init__(
        self,
        model: str,
        base_url: str,
        dimensions: int | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(model, dimensions)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(
                path, json=payload, headers=self._headers()
            )
            response.raise_for_status()
            return response.json()

        except httpx.TimeoutException as e:
            logger.error(f"{self.name} embedding request timed out after {self.timeout}s")
            raise EmbeddingTimeoutError(
                f"{self.name} embedding request timed out after {self.timeout}s",
                {"provider": self.name, "model": self._model, "timeout": self.timeout},
            ) from e

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            error_msg = f"{self.name} API error (HTTP {status_code})"
            if status_code == 401:
                error_msg = f"Invalid {self.name} API key"
            elif status_code == 404:
                error_msg = f"{self.name} model not found: {self._model}"
            elif status_code == 429:
                error_msg = f"{self.name} API rate limit exceeded"
            logger.error(error_msg)
            raise ProviderError(
                error_msg,
                {"provider": self.name, "model": self._model, "status": status_code},
            ) from e

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{self.name} embedding request failed: {e}")
            raise ProviderError(
                f"{self.name} embedding request failed: {e}",
                {"provider": self.name, "model": self._model},
            ) from e

    async def close(self) -> None:
        await self._client.aclose()


class OllamaProvider(_HTTPProvider):
    """Embeddings from a local Ollama server (``POST /api/embed``)."""

    name = "ollama"

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str = DEFAULT_PROVIDER_URLS["ollama"],
        dimensions: int | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(model, base_url, dimensions, timeout, transport)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        data = await self._post("/api/embed", {"model": self._model, "input": texts})
        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        return self._check_response(texts, embeddings)

    async def is_available(self) -> bool:
        try:
            response = await self._client.get("/api/tags")
        except httpx.HTTPError as e:
            logger.debug(f"Ollama not reachable at {self.base_url}: {e}")
            return False
        return response.status_code == 200


class OpenAIProvider(_HTTPProvider):
    """Embeddings from the OpenAI embeddings endpoint."""

    name = "openai"

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        base_url: str = DEFAULT_PROVIDER_URLS["openai"],
        dimensions: int | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(model, base_url, dimensions, timeout, transport)
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        data = await self._post("/embeddings", {"model": self._model, "input": texts})
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise ProviderError(
                "openai response is missing 'data'",
                {"provider": self.name, "model": self._model},
            )
        # The API may return items out of order; ``index`` is authoritative
        try:
            ordered = sorted(items, key=lambda item: item["index"])
            vectors = [item["embedding"] for item in ordered]
        except (KeyError, TypeError) as e:
            raise ProviderError(
                f"Malformed openai embedding item: {e}",
                {"provider": self.name, "model": self._model},
            ) from e
        return self._check_response(texts, vectors)

    async def is_available(self) -> bool:
        return bool(self.api_key)


class EmbeddingCache:
    """LRU cache for embeddings with optional disk persistence."""

    def __init__(self, cache_dir: Path | None = None, max_size: int = 1000) -> None:
        """Initialize embedding cache.

        Args:
            cache_dir: Directory to store cached embeddings (memory only if None)
            max_size: Maximum number of embeddings to keep in memory
        """
        self.cache_dir = cache_dir
        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.max_size = max_size
        self._memory_cache: dict[str, list[float]] = {}
        self._access_order: list[str] = []
        self._cache_hits = 0
        self._cache_misses = 0

    @staticmethod
    def cache_key(model: str, content: str) -> str:
        return hashlib.sha256(f"{model}\0{content}".encode()).hexdigest()[:24]

    async def get(self, key: str) -> list[float] | None:
        if key in self._memory_cache:
            self._cache_hits += 1
            self._access_order.remove(key)
            self._access_order.append(key)
            return self._memory_cache[key]

        if self.cache_dir is not None:
            cache_file = self.cache_dir / f"{key}.json"
            if cache_file.exists():
                try:
                    async with aiofiles.open(cache_file, "rb") as f:
                        embedding = orjson.loads(await f.read())
                except (OSError, orjson.JSONDecodeError) as e:
                    logger.warning(f"Failed to load cached embedding: {e}")
                else:
                    self._add_to_memory_cache(key, embedding)
                    self._cache_hits += 1
                    return embedding

        self._cache_misses += 1
        return None

    async def put(self, key: str, embedding: list[float]) -> None:
        self._add_to_memory_cache(key, embedding)
        if self.cache_dir is None:
            return
        cache_file = self.cache_dir / f"{key}.json"
        try:
            async with aiofiles.open(cache_file, "wb") as f:
                await f.write(orjson.dumps(embedding))
        except OSError as e:
            logger.warning(f"Failed to cache embedding: {e}")

    def _add_to_memory_cache(self, key: str, embedding: list[float]) -> None:
        if self.max_size <= 0:
            return
        if key in self._memory_cache:
            self._access_order.remove(key)
        elif len(self._memory_cache) >= self.max_size:
            lru_key = self._access_order.pop(0)
            del self._memory_cache[lru_key]
        self._memory_cache[key] = embedding
        self._access_order.append(key)

    def get_cache_stats(self) -> dict[str, Any]:
        total_requests = self._cache_hits + self._cache_misses
        hit_rate = self._cache_hits / total_requests if total_requests > 0 else 0.0
        return {
            "memory_cache_size": len(self._memory_cache),
            "max_cache_size": self.max_size,
            "cache_hits": self._cache_hits,
            "cache_misses": self._cache_misses,
            "hit_rate": round(hit_rate, 3),
        }


class CachedEmbeddingProvider(EmbeddingProvider):
    """Wraps a provider so repeated texts are embedded once per model."""

    def __init__(self, inner: EmbeddingProvider, cache: EmbeddingCache) -> None:
        super().__init__(inner.model)
        self.inner = inner
        self.cache = cache
        self.name = inner.name

    def model_dimensions(self, model: str | None = None) -> int:
        return self.inner.model_dimensions(model)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        keys = [EmbeddingCache.cache_key(self.model, text) for text in texts]
        results: list[list[float] | None] = []
        missing: dict[str, str] = {}
        for key, text in zip(keys, texts, strict=True):
            cached = await self.cache.get(key)
            results.append(cached)
            if cached is None:
                missing.setdefault(key, text)

        if missing:
            logger.debug(
                f"Embedding cache: {len(texts) - len(missing)} hits, "
                f"{len(missing)} to embed"
            )
            fresh = await self.inner.embed(list(missing.values()))
            by_key = dict(zip(missing.keys(), fresh, strict=True))
            for key, vector in by_key.items():
                await self.cache.put(key, vector)
            results = [
                vector if vector is not None else by_key[key]
                for key, vector in zip(keys, results, strict=True)
            ]

        return results  # type: ignore[return-value]

    async def is_available(self) -> bool:
        return await self.inner.is_available()

    async def close(self) -> None:
        await self.inner.close()


def create_embedding_provider(settings: Any, fallback: bool = False) -> EmbeddingProvider:
    """Build the primary (or fallback) provider from ``EmbeddingSettings``.

    Args:
        settings: ``EmbeddingSettings`` instance
        fallback: Build the fallback provider instead of the primary

    Returns:
        Configured provider, wrapped in a cache when caching is enabled

    Raises:
        ConfigError: If the provider name is unknown or no fallback is set
    """
    if fallback:
        if settings.fallback_provider is None:
            raise ConfigError("No fallback embedding provider configured")
        kind = settings.fallback_provider
        model = settings.fallback_model
        base_url = settings.fallback_base_url
        dimensions = None
    else:
        kind = settings.provider
        model = settings.model
        base_url = settings.base_url
        dimensions = settings.dimensions

    provider: EmbeddingProvider
    if kind == "sentence-transformers":
        provider = SentenceTransformerProvider(model=model, dimensions=dimensions)
    elif kind == "ollama":
        provider = OllamaProvider(
            model=model,
            base_url=base_url or DEFAULT_PROVIDER_URLS["ollama"],
            dimensions=dimensions,
            timeout=settings.timeout,
        )
    elif kind == "openai":
        provider = OpenAIProvider(
            model=model,
            api_key=settings.api_key,
            base_url=base_url or DEFAULT_PROVIDER_URLS["openai"],
            dimensions=dimensions,
            timeout=settings.timeout,
        )
    else:
        raise ConfigError(f"Unknown embedding provider: {kind}", {"provider": kind})

    logger.debug(f"Created {'fallback' if fallback else 'primary'} provider {provider!r}")

    if settings.cache_size > 0 or settings.cache_dir is not None:
        cache = EmbeddingCache(settings.cache_dir, settings.cache_size)
        return CachedEmbeddingProvider(provider, cache)
    return provider
