"""Tests for the Embedder and its backends."""
import asyncio
import threading
import time

import httpx
import numpy as np
import pytest

from polirag.config import RagSettings
from polirag.exceptions import ConfigurationError, EmbeddingUnavailable
from polirag.ollama_client import OllamaClient
from polirag.rag.embedder import (
    Embedder,
    OllamaBackend,
    SentenceTransformerBackend,
    create_embedder,
    normalize_rows,
)

from conftest import HashingBackend


class TestEmbedder:
    @pytest.mark.asyncio
    async def test_embed_is_normalized(self, embedder):
        vector = await embedder.embed("linear algebra exam")

        assert vector.dtype == np.float32
        assert vector.shape == (32,)
        assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-6)

    @pytest.mark.asyncio
    async def test_embed_is_deterministic(self, embedder):
        first = await embedder.embed("same text")
        embedder._cache.clear()
        second = await embedder.embed("same text")

        np.testing.assert_array_equal(first, second)

    @pytest.mark.asyncio
    async def test_batch_matches_single(self, embedder):
        texts = ["alpha beta", "gamma", "delta epsilon zeta"]

        batch = await embedder.embed_batch(texts)

        assert len(batch) == 3
        for text, vector in zip(texts, batch):
            np.testing.assert_allclose(vector, await embedder.embed(text), atol=1e-6)

    @pytest.mark.asyncio
    async def test_batches_respect_batch_size(self, embedder, backend):
        await embedder.embed_batch([f"text {i}" for i in range(10)])

        assert [len(call) for call in backend.encode_calls] == [4, 4, 2]

    @pytest.mark.asyncio
    async def test_empty_batch(self, embedder, backend):
        assert await embedder.embed_batch([]) == []
        assert backend.encode_calls == []

    @pytest.mark.asyncio
    async def test_newlines_flattened(self, embedder, backend):
        await embedder.embed("first line\nsecond line")

        assert backend.encode_calls == [["first line second line"]]

    @pytest.mark.asyncio
    async def test_single_text_cache(self, embedder, backend):
        await embedder.embed("cached query")
        await embedder.embed("cached query")

        assert len(backend.encode_calls) == 1

    @pytest.mark.asyncio
    async def test_cached_vector_cannot_be_altered_by_callers(self, embedder, backend):
        first = await embedder.embed("cached query")
        expected = first.copy()
        first[:] = 0.0

        second = await embedder.embed("cached query")
        second[:] = 0.0
        third = await embedder.embed("cached query")

        np.testing.assert_array_equal(third, expected)
        assert len(backend.encode_calls) == 1

    @pytest.mark.asyncio
    async def test_text_without_words_gives_zero_vector(self, embedder):
        vector = await embedder.embed("   ")
        assert not vector.any()

    @pytest.mark.asyncio
    async def test_load_is_idempotent(self, embedder, backend):
        assert await embedder.load() == 32
        assert await embedder.load() == 32

        assert backend.load_calls == 1
        assert embedder.is_loaded
        assert embedder.dimension == 32

    @pytest.mark.asyncio
    async def test_failed_load_is_remembered(self):
        backend = HashingBackend(fail_load=True)
        embedder = Embedder(backend)

        with pytest.raises(EmbeddingUnavailable):
            await embedder.embed("anything")
        with pytest.raises(EmbeddingUnavailable):
            await embedder.embed_batch(["anything"])

        assert backend.load_calls == 1

    @pytest.mark.asyncio
    async def test_unexpected_load_error_wrapped(self):
        class Broken(HashingBackend):
            async def load(self):
                raise RuntimeError("CUDA out of memory")

        embedder = Embedder(Broken())

        with pytest.raises(EmbeddingUnavailable, match="CUDA out of memory"):
            await embedder.load()

    @pytest.mark.asyncio
    async def test_context_manager_releases_model(self, backend):
        async with Embedder(backend) as embedder:
            assert embedder.is_loaded

        assert backend.closed
        assert not embedder.is_loaded

    def test_invalid_batch_size(self, backend):
        with pytest.raises(ConfigurationError):
            Embedder(backend, batch_size=0)


class OverlapTrackingBackend(HashingBackend):
    """Yields to the event loop inside encode and counts overlapping calls."""

    def __init__(self):
        super().__init__()
        self.active = 0
        self.max_active = 0

    async def encode(self, texts):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            return await super().encode(texts)
        finally:
            self.active -= 1


class TestConcurrentUse:
    @pytest.mark.asyncio
    async def test_interleaved_calls_keep_results_in_order(self):
        texts = [f"topic {i} lecture {i * 7}" for i in range(12)]
        batches = [texts[i : i + 5] for i in range(0, len(texts), 3)]
        reference = Embedder(HashingBackend(), batch_size=2, cache_size=0)
        expected = {t: await reference.embed(t) for t in texts}

        backend = OverlapTrackingBackend()
        embedder = Embedder(backend, batch_size=2, cache_size=4)
        singles, grouped = await asyncio.gather(
            asyncio.gather(*(embedder.embed(t) for t in texts)),
            asyncio.gather(*(embedder.embed_batch(b) for b in batches)),
        )

        assert backend.max_active > 1
        for text, vector in zip(texts, singles):
            np.testing.assert_allclose(vector, expected[text], atol=1e-6)
        for batch, vectors in zip(batches, grouped):
            assert len(vectors) == len(batch)
            for text, vector in zip(batch, vectors):
                np.testing.assert_allclose(vector, expected[text], atol=1e-6)
        assert backend.load_calls == 1


class TestNormalizeRows:
    def test_zero_rows_stay_zero(self):
        out = normalize_rows(np.array([[3.0, 4.0], [0.0, 0.0]], dtype=np.float32))

        np.testing.assert_allclose(out, [[0.6, 0.8], [0.0, 0.0]])


class FakeOllamaClient(OllamaClient):
    def __init__(self, models, embedding):
        super().__init__(base_url="http://ollama.test")
        self.models = models
        self.embedding = embedding
        self.prompts = []

    async def list_models(self):
        if self.models is None:
            raise httpx.ConnectError("connection refused")
        return self.models

    async def embed(self, text, model):
        self.prompts.append(text)
        return list(self.embedding)


class TestOllamaBackend:
    @pytest.mark.asyncio
    async def test_load_detects_dimension(self):
        client = FakeOllamaClient(["embeddinggemma:300m"], [0.1, 0.2, 0.3])
        embedder = Embedder(OllamaBackend(client, "embeddinggemma:300m"))

        assert await embedder.load() == 3

    @pytest.mark.asyncio
    async def test_latest_tag_accepted(self):
        client = FakeOllamaClient(["nomic-embed-text:latest"], [1.0, 0.0])
        backend = OllamaBackend(client, "nomic-embed-text")

        assert await backend.load() == 2

    @pytest.mark.asyncio
    async def test_missing_model(self):
        client = FakeOllamaClient(["llama3:8b"], [1.0])
        embedder = Embedder(OllamaBackend(client, "embeddinggemma:300m"))

        with pytest.raises(EmbeddingUnavailable, match="not available"):
            await embedder.load()

    @pytest.mark.asyncio
    async def test_server_unreachable(self):
        client = FakeOllamaClient(None, [1.0])
        embedder = Embedder(OllamaBackend(client, "embeddinggemma:300m"))

        with pytest.raises(EmbeddingUnavailable, match="not reachable"):
            await embedder.load()

    @pytest.mark.asyncio
    async def test_encode_returns_normalized_vectors(self):
        client = FakeOllamaClient(["m"], [3.0, 4.0])
        embedder = Embedder(OllamaBackend(client, "m"))

        vectors = await embedder.embed_batch(["a", "b"])

        np.testing.assert_allclose(vectors[0], [0.6, 0.8], atol=1e-6)
        assert client.prompts == ["test", "a", "b"]


class SlowModel:
    """Stands in for a SentenceTransformer; records overlapping encode calls."""

    def __init__(self, delay=0.02):
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.encoding = threading.Event()
        self._counter = threading.Lock()

    def encode(self, texts, batch_size, show_progress_bar, convert_to_numpy):
        with self._counter:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.encoding.set()
        time.sleep(self.delay)
        rows = [[float(len(t)), float(sum(map(ord, t)) % 97), 1.0] for t in texts]
        with self._counter:
            self.active -= 1
        return np.asarray(rows, dtype=np.float32)


class InstalledModelBackend(SentenceTransformerBackend):
    def __init__(self, model):
        super().__init__("slow-model")
        self.installed = model

    def _load_sync(self):
        with self._lock:
            self._model = self.installed
        return 3


class TestSentenceTransformerBackend:
    @pytest.mark.asyncio
    async def test_missing_weights_path(self, tmp_path):
        backend = SentenceTransformerBackend(str(tmp_path / "no-such-model"))
        embedder = Embedder(backend)

        with pytest.raises(EmbeddingUnavailable, match="Model weights not found"):
            await embedder.load()


    @pytest.mark.asyncio
    async def test_model_is_never_entered_concurrently(self):
        model = SlowModel()
        embedder = Embedder(InstalledModelBackend(model), batch_size=3, cache_size=0)
        texts = [f"chapter {i}" * (i + 1) for i in range(8)]

        singles, batch = await asyncio.gather(
            asyncio.gather(*(embedder.embed(t) for t in texts)),
            embedder.embed_batch(texts),
        )

        assert model.max_active == 1
        expected = normalize_rows(np.asarray(
            [[float(len(t)), float(sum(map(ord, t)) % 97), 1.0] for t in texts],
            dtype=np.float32,
        ))
        np.testing.assert_allclose(np.vstack(singles), expected, atol=1e-6)
        np.testing.assert_allclose(np.vstack(batch), expected, atol=1e-6)

    @pytest.mark.asyncio
    async def test_close_waits_for_encode_without_blocking_loop(self):
        model = SlowModel(delay=0.3)
        backend = InstalledModelBackend(model)
        embedder = Embedder(backend, cache_size=0)
        await embedder.load()

        pending = asyncio.create_task(embedder.embed("graph theory"))
        while not model.encoding.is_set():
            await asyncio.sleep(0.01)

        closing = asyncio.create_task(backend.close())
        ticks = 0
        while not closing.done():
            await asyncio.sleep(0.01)
            ticks += 1

        assert ticks > 5
        assert (await pending).shape == (3,)
        assert backend._model is None


class TestCreateEmbedder:
    def test_ollama_default(self):
        embedder = create_embedder(RagSettings(embedding_backend="ollama", embedding_model="m"))

        assert isinstance(embedder.backend, OllamaBackend)
        assert embedder.model_id == "m"

    def test_local_backend(self):
        embedder = create_embedder(RagSettings(embedding_backend="local", embedding_model="all-MiniLM-L6-v2"))

        assert isinstance(embedder.backend, SentenceTransformerBackend)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            create_embedder(RagSettings(embedding_backend="openai"))
