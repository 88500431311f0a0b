"""Application configuration with sensible defaults."""
import os
from dataclasses import dataclass
from pathlib import Path

# Paths
DATA_DIR = Path(
    os.getenv("POLIRAG_DATA_DIR", str(Path.home() / ".local" / "share" / "polirag"))
)
SCRAPED_DATA_DIR = Path(os.getenv("POLIRAG_SCRAPED_DIR", str(DATA_DIR / "data")))
SNAPSHOT_PATH = Path(os.getenv("POLIRAG_SNAPSHOT", str(DATA_DIR / "polirag.index.npz")))

# Embedding configuration
EMBEDDING_BACKEND = os.getenv("EMBEDDING_BACKEND", "ollama")  # ollama | sentence-transformers
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "embeddinggemma:300m")
EMBEDDING_DEVICE = os.getenv("EMBEDDING_DEVICE", "cpu")
EMBEDDING_CACHE_SIZE = int(os.getenv("EMBEDDING_CACHE_SIZE", "256"))
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "16"))
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")

# RAG parameters (word-based)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "200"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "40"))
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
RETRIEVAL_MIN_SCORE = float(os.getenv("RETRIEVAL_MIN_SCORE", "0.0"))
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "4000"))

# Vector store
STORE_BACKEND = os.getenv("STORE_BACKEND", "linear")  # linear | hnsw
HNSW_M = int(os.getenv("HNSW_M", "24"))
HNSW_EF_CONSTRUCTION = int(os.getenv("HNSW_EF_CONSTRUCTION", "200"))
HNSW_EF_SEARCH = int(os.getenv("HNSW_EF_SEARCH", "64"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE") or None


@dataclass(frozen=True)
class RagSettings:
    """Explicit configuration handed to the indexing components."""

    data_dir: Path = DATA_DIR
    scraped_data_dir: Path = SCRAPED_DATA_DIR
    snapshot_path: Path = SNAPSHOT_PATH
    embedding_backend: str = EMBEDDING_BACKEND
    embedding_model: str = EMBEDDING_MODEL
    embedding_device: str = EMBEDDING_DEVICE
    embedding_cache_size: int = EMBEDDING_CACHE_SIZE
    embed_batch_size: int = EMBED_BATCH_SIZE
    ollama_base_url: str = OLLAMA_BASE_URL
    chunk_size: int = CHUNK_SIZE
    chunk_overlap: int = CHUNK_OVERLAP
    top_k: int = RETRIEVAL_TOP_K
    min_score: float = RETRIEVAL_MIN_SCORE
    max_context_chars: int = MAX_CONTEXT_CHARS
    store_backend: str = STORE_BACKEND
    hnsw_m: int = HNSW_M
    hnsw_ef_construction: int = HNSW_EF_CONSTRUCTION
    hnsw_ef_search: int = HNSW_EF_SEARCH

    @classmethod
    def from_env(cls) -> "RagSettings":
        """Build settings from the environment as read at import time."""
        return cls()
