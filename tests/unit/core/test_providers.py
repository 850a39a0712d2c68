"""Tests for embedding provider adapters, the cache and the factory."""

import httpx
import orjson
import pytest

from conftest import FakeProvider
from ctx_index.config.settings import EmbeddingSettings
from ctx_index.core.exceptions import ConfigError, EmbeddingTimeoutError, ProviderError
from ctx_index.core.providers import (
    CachedEmbeddingProvider,
    EmbeddingCache,
    OllamaProvider,
    OpenAIProvider,
    SentenceTransformerProvider,
    create_embedding_provider,
)


def _transport(handler):
    return httpx.MockTransport(handler)


class TestModelDimensions:
    def test_known_model(self):
        provider = OllamaProvider(model="nomic-embed-text", transport=_transport(None))
        assert provider.model_dimensions() == 768
        assert provider.model_dimensions("text-embedding-3-large") == 3072

    def test_explicit_dimensions_win(self):
        provider = FakeProvider(model="custom-model", dimensions=12)
        assert provider.model_dimensions() == 12
        assert provider.model_dimensions("custom-model") == 12

    def test_unknown_model(self):
        provider = SentenceTransformerProvider(model="acme/unknown-encoder")
        with pytest.raises(ConfigError, match="Unknown embedding model"):
            provider.model_dimensions()


class TestOllamaProvider:
    @pytest.mark.asyncio
    async def test_embed(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"embeddings": [[0.1, 0.2], [0.3, 0.4]]})

        provider = OllamaProvider(model="nomic-embed-text", dimensions=2, transport=_transport(handler))
        vectors = await provider.embed(["a", "b"])
        await provider.close()

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]
        assert requests[0].url.path == "/api/embed"
        assert orjson.loads(requests[0].content) == {
            "model": "nomic-embed-text",
            "input": ["a", "b"],
        }

    @pytest.mark.asyncio
    async def test_empty_input_skips_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        provider = OllamaProvider(transport=_transport(handler))
        assert await provider.embed([]) == []
        await provider.close()

    @pytest.mark.asyncio
    async def test_missing_model(self):
        provider = OllamaProvider(
            model="nomic-embed-text",
            transport=_transport(lambda request: httpx.Response(404, json={"error": "nope"})),
        )
        with pytest.raises(ProviderError, match="model not found") as exc_info:
            await provider.embed(["a"])
        await provider.close()
        assert exc_info.value.context["status"] == 404

    @pytest.mark.asyncio
    async def test_timeout_maps_to_timeout_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        provider = OllamaProvider(timeout=5.0, transport=_transport(handler))
        with pytest.raises(EmbeddingTimeoutError) as exc_info:
            await provider.embed(["a"])
        await provider.close()
        assert exc_info.value.context["timeout"] == 5.0

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = OllamaProvider(transport=_transport(handler))
        with pytest.raises(ProviderError, match="request failed"):
            await provider.embed(["a"])
        await provider.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [{"unexpected": True}, {"embeddings": [[0.1]]}, ["not", "a", "dict"]],
    )
    async def test_malformed_response(self, payload):
        provider = OllamaProvider(
            transport=_transport(lambda request: httpx.Response(200, json=payload))
        )
        with pytest.raises(ProviderError):
            await provider.embed(["a", "b"])
        await provider.close()

    @pytest.mark.asyncio
    async def test_is_available(self):
        up = OllamaProvider(transport=_transport(lambda request: httpx.Response(200, json={})))

        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        down = OllamaProvider(transport=_transport(refuse))

        assert await up.is_available() is True
        assert await down.is_available() is False
        await up.close()
        await down.close()


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_embed_orders_by_index(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["path"] = request.url.path
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"index": 1, "embedding": [0.0, 1.0]},
                        {"index": 0, "embedding": [1.0, 0.0]},
                    ]
                },
            )

        provider = OpenAIProvider(api_key="sk-test", dimensions=2, transport=_transport(handler))
        vectors = await provider.embed(["first", "second"])
        await provider.close()

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        assert seen["auth"] == "Bearer sk-test"
        assert seen["path"].endswith("/embeddings")

    @pytest.mark.asyncio
    async def test_invalid_key(self):
        provider = OpenAIProvider(
            api_key="bad", transport=_transport(lambda request: httpx.Response(401))
        )
        with pytest.raises(ProviderError, match="Invalid openai API key"):
            await provider.embed(["a"])
        await provider.close()

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        provider = OpenAIProvider(
            api_key="k", transport=_transport(lambda request: httpx.Response(429))
        )
        with pytest.raises(ProviderError, match="rate limit"):
            await provider.embed(["a"])
        await provider.close()

    @pytest.mark.asyncio
    async def test_malformed_item(self):
        provider = OpenAIProvider(
            api_key="k",
            transport=_transport(
                lambda request: httpx.Response(200, json={"data": [{"embedding": [1.0]}]})
            ),
        )
        with pytest.raises(ProviderError, match="Malformed"):
            await provider.embed(["a"])
        await provider.close()

    @pytest.mark.asyncio
    async def test_availability_depends_on_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        keyless = OpenAIProvider(transport=_transport(None))
        keyed = OpenAIProvider(api_key="k", transport=_transport(None))

        assert await keyless.is_available() is False
        assert await keyed.is_available() is True
        await keyless.close()
        await keyed.close()


class TestEmbeddingCache:
    @pytest.mark.asyncio
    async def test_memory_lru_eviction(self):
        cache = EmbeddingCache(max_size=2)
        await cache.put("a", [1.0])
        await cache.put("b", [2.0])
        assert await cache.get("a") == [1.0]  # "b" is now least recent
        await cache.put("c", [3.0])

        assert await cache.get("b") is None
        assert await cache.get("a") == [1.0]
        assert await cache.get("c") == [3.0]

    @pytest.mark.asyncio
    async def test_disk_persistence(self, tmp_path):
        key = EmbeddingCache.cache_key("m", "hello")
        await EmbeddingCache(tmp_path, max_size=10).put(key, [0.5, 0.25])

        fresh = EmbeddingCache(tmp_path, max_size=10)
        assert await fresh.get(key) == [0.5, 0.25]
        assert fresh.get_cache_stats()["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_stats(self):
        cache = EmbeddingCache(max_size=5)
        await cache.get("missing")
        await cache.put("k", [1.0])
        await cache.get("k")

        stats = cache.get_cache_stats()
        assert stats["cache_hits"] == 1
        assert stats["cache_misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["memory_cache_size"] == 1

    def test_cache_key_depends_on_model(self):
        assert EmbeddingCache.cache_key("a", "text") != EmbeddingCache.cache_key("b", "text")
        assert len(EmbeddingCache.cache_key("a", "text")) == 24


class TestCachedEmbeddingProvider:
    @pytest.mark.asyncio
    async def test_repeated_texts_embedded_once(self):
        inner = FakeProvider(dimensions=4)
        provider = CachedEmbeddingProvider(inner, EmbeddingCache(max_size=100))

        first = await provider.embed(["a", "b", "a"])
        second = await provider.embed(["b"])

        assert inner.calls == [["a", "b"]]
        assert first[0] == first[2]
        assert second == [first[1]]

    def test_delegates_identity(self):
        inner = FakeProvider(model="m1", dimensions=6, name="custom")
        provider = CachedEmbeddingProvider(inner, EmbeddingCache())

        assert provider.name == "custom"
        assert provider.model == "m1"
        assert provider.model_dimensions() == 6

    @pytest.mark.asyncio
    async def test_close_closes_inner(self):
        inner = FakeProvider()
        await CachedEmbeddingProvider(inner, EmbeddingCache()).close()
        assert inner.closed


class TestCreateEmbeddingProvider:
    @pytest.mark.asyncio
    async def test_ollama_without_cache(self):
        settings = EmbeddingSettings(
            provider="ollama", model="nomic-embed-text", cache_size=0, base_url="http://gpu:11434"
        )
        provider = create_embedding_provider(settings)

        assert isinstance(provider, OllamaProvider)
        assert provider.base_url == "http://gpu:11434"
        await provider.close()

    def test_default_is_cached_sentence_transformers(self):
        provider = create_embedding_provider(EmbeddingSettings())

        assert isinstance(provider, CachedEmbeddingProvider)
        assert isinstance(provider.inner, SentenceTransformerProvider)
        assert provider.model_dimensions() == 384

    @pytest.mark.asyncio
    async def test_fallback(self):
        settings = EmbeddingSettings(
            provider="ollama",
            model="nomic-embed-text",
            fallback_provider="sentence-transformers",
            fallback_model="sentence-transformers/all-mpnet-base-v2",
            cache_size=0,
        )
        fallback = create_embedding_provider(settings, fallback=True)

        assert isinstance(fallback, SentenceTransformerProvider)
        assert fallback.model == "sentence-transformers/all-mpnet-base-v2"
        assert fallback.model_dimensions() == 768

    def test_fallback_not_configured(self):
        with pytest.raises(ConfigError):
            create_embedding_provider(EmbeddingSettings(cache_size=0), fallback=True)
