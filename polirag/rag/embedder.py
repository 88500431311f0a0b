"""Embedding generation for the RAG pipeline.

The Embedder owns an expensive model resource behind a small backend
interface:
- OllamaBackend: a local Ollama server reached over HTTP
- SentenceTransformerBackend: weights loaded in-process

Vectors are L2-normalized float32 arrays. The model is loaded once, lazily or
explicitly via load(), and a failed load is remembered: every later call
raises the same EmbeddingUnavailable until the process is restarted.
"""
import asyncio
import threading
from collections import OrderedDict
from pathlib import Path
from typing import List, Optional, Protocol

import httpx
import numpy as np
import structlog

from polirag.config import RagSettings
from polirag.exceptions import ConfigurationError, EmbeddingUnavailable
from polirag.ollama_client import OllamaClient

logger = structlog.get_logger()


class EmbeddingBackend(Protocol):
    """A model that turns a batch of texts into a (n, dim) matrix."""

    model_id: str

    async def load(self) -> int:
        """Acquire the model and return its output dimension."""
        ...

    async def encode(self, texts: List[str]) -> np.ndarray:
        ...

    async def close(self) -> None:
        ...


class OllamaBackend:
    """Embeddings served by a local Ollama instance."""

    def __init__(self, client: OllamaClient, model: str):
        self.client = client
        self.model_id = model

    async def load(self) -> int:
        """Check the model is installed and detect its dimension.

        Returns:
            Length of the vectors the model produces

        Raises:
            EmbeddingUnavailable: If Ollama is unreachable or lacks the model
        """
        try:
            available = await self.client.has_model(self.model_id)
        except httpx.HTTPError as e:
            raise EmbeddingUnavailable(
                f"Ollama is not reachable at {self.client.base_url}: {e}"
            ) from e

        if not available:
            raise EmbeddingUnavailable(
                f"Embedding model {self.model_id} is not available in Ollama"
            )

        # Detect dimension by embedding a test string
        try:
            probe = await self.client.embed("test", self.model_id)
        except httpx.HTTPError as e:
            raise EmbeddingUnavailable(f"Failed to detect embedding dimension: {e}") from e

        if not probe:
            raise EmbeddingUnavailable("Empty embedding returned from Ollama")
        return len(probe)

    async def encode(self, texts: List[str]) -> np.ndarray:
        """Embed texts one request at a time.

        Args:
            texts: Texts to embed

        Returns:
            Matrix with one row per text, in input order
        """
        vectors = []
        for text in texts:
            vector = await self.client.embed(text, self.model_id)
            if not vector:
                raise RuntimeError("Empty embedding returned for text")
            vectors.append(vector)
        return np.asarray(vectors, dtype=np.float32)

    async def close(self) -> None:
        """Nothing to release; each request opens its own HTTP client."""
        return None


class SentenceTransformerBackend:
    """In-process sentence-transformers model.

    The model object is not safe for concurrent use, so every call into it
    holds a lock; callers only ever see an awaitable.
    """

    def __init__(self, model_name_or_path: str, device: str = "cpu"):
        self.model_id = model_name_or_path
        self.device = device
        self._model = None
        self._lock = threading.Lock()

    def _looks_like_path(self) -> bool:
        return self.model_id.startswith((".", "/", "~")) or "\\" in self.model_id

    def _load_sync(self) -> int:
        if self._looks_like_path():
            weights = Path(self.model_id).expanduser()
            if not weights.exists():
                raise EmbeddingUnavailable(f"Model weights not found: {weights}")

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise EmbeddingUnavailable(
                "sentence-transformers is not installed (pip install polirag[local])"
            ) from e

        try:
            with self._lock:
                self._model = SentenceTransformer(self.model_id, device=self.device)
                return int(self._model.get_sentence_embedding_dimension())
        except Exception as e:
            raise EmbeddingUnavailable(f"Failed to load {self.model_id}: {e}") from e

    def _encode_sync(self, texts: List[str]) -> np.ndarray:
        with self._lock:
            return self._model.encode(
                texts,
                batch_size=len(texts),
                show_progress_bar=False,
                convert_to_numpy=True,
            )

    def _release_sync(self) -> None:
        with self._lock:
            self._model = None

    async def load(self) -> int:
        """Load the weights in a worker thread and return the dimension.

        Raises:
            EmbeddingUnavailable: If the weights or the library are missing
        """
        return await asyncio.to_thread(self._load_sync)

    async def encode(self, texts: List[str]) -> np.ndarray:
        """Encode texts in a worker thread, one call into the model at a time."""
        return await asyncio.to_thread(self._encode_sync, texts)

    async def close(self) -> None:
        """Drop the model once any running encode has finished.

        The wait happens in a worker thread so the event loop keeps running.
        """
        await asyncio.to_thread(self._release_sync)


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize each row; zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    return np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)


class Embedder:
    """Converts text into fixed-length vectors using a loaded model."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        batch_size: int = 16,
        cache_size: int = 256,
    ):
        """Initialize the embedder.

        Args:
            backend: Model backend to use
            batch_size: Maximum number of texts sent to the model at once
            cache_size: Number of single-text embeddings kept in an LRU cache
        """
        if batch_size <= 0:
            raise ConfigurationError(f"Batch size must be positive, got {batch_size}")

        self.backend = backend
        self.batch_size = batch_size
        self.cache_size = cache_size

        self._dimension: Optional[int] = None
        self._load_error: Optional[EmbeddingUnavailable] = None
        self._load_lock = asyncio.Lock()
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()

    @property
    def model_id(self) -> str:
        return self.backend.model_id

    @property
    def dimension(self) -> Optional[int]:
        """Output dimension, known once the model is loaded."""
        return self._dimension

    @property
    def is_loaded(self) -> bool:
        return self._dimension is not None

    async def load(self) -> int:
        """Load the model if needed and return its dimension.

        Raises:
            EmbeddingUnavailable: If the model cannot be loaded (now or earlier)
        """
        if self._dimension is not None:
            return self._dimension
        if self._load_error is not None:
            raise self._load_error

        async with self._load_lock:
            if self._dimension is not None:
                return self._dimension
            if self._load_error is not None:
                raise self._load_error

            logger.info("embedding_model_loading", model=self.model_id)
            try:
                dimension = await self.backend.load()
            except EmbeddingUnavailable as e:
                self._load_error = e
                logger.error("embedding_model_unavailable", model=self.model_id, error=str(e))
                raise
            except Exception as e:
                self._load_error = EmbeddingUnavailable(
                    f"Failed to load {self.model_id}: {e}"
                )
                logger.error("embedding_model_unavailable", model=self.model_id, error=str(e))
                raise self._load_error from e

            self._dimension = dimension
            logger.info("embedding_model_loaded", model=self.model_id, dimension=dimension)
            return dimension

    async def _encode(self, texts: List[str]) -> np.ndarray:
        await self.load()
        cleaned = [t.replace("\n", " ") for t in texts]
        matrix = np.asarray(await self.backend.encode(cleaned), dtype=np.float32)

        if matrix.ndim != 2 or matrix.shape != (len(texts), self._dimension):
            raise RuntimeError(
                f"Model returned shape {matrix.shape} for {len(texts)} texts "
                f"(expected dimension {self._dimension})"
            )
        return normalize_rows(matrix)

    async def embed(self, text: str) -> np.ndarray:
        """Embed a single text, serving repeats from the cache."""
        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return cached.copy()

        vector = (await self._encode([text]))[0]

        if self.cache_size > 0:
            self._cache[text] = vector.copy()
            if len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return vector

    async def embed_batch(self, texts: List[str]) -> List[np.ndarray]:
        """Embed many texts, one vector per input, in input order."""
        if not texts:
            return []

        vectors: List[np.ndarray] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]
            vectors.extend(await self._encode(batch))

            logger.debug(
                "embeddings_batch_generated",
                batch_size=len(batch),
                total_so_far=len(vectors),
            )
        return vectors

    async def close(self) -> None:
        """Release the model resource."""
        await self.backend.close()
        self._dimension = None
        self._cache.clear()
        logger.info("embedding_model_released", model=self.model_id)

    async def __aenter__(self) -> "Embedder":
        await self.load()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def create_embedder(settings: RagSettings) -> Embedder:
    """Build the embedder selected by the settings."""
    if settings.embedding_backend == "ollama":
        backend = OllamaBackend(
            OllamaClient(base_url=settings.ollama_base_url),
            model=settings.embedding_model,
        )
    elif settings.embedding_backend in ("sentence-transformers", "local"):
        backend = SentenceTransformerBackend(
            settings.embedding_model, device=settings.embedding_device
        )
    else:
        raise ConfigurationError(
            f"Unknown embedding backend: {settings.embedding_backend}"
        )

    return Embedder(
        backend,
        batch_size=settings.embed_batch_size,
        cache_size=settings.embedding_cache_size,
    )
