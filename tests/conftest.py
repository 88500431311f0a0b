"""
Shared test fixtures.

Provides: a deterministic embedding backend, an in-memory ingestion source,
stores in temporary directories
"""
import zlib
from typing import Awaitable, Callable, Dict, List, Optional, Union

import numpy as np
import pytest

from polirag.credentials import Credentials
from polirag.exceptions import EmbeddingUnavailable
from polirag.rag.chunker import TextChunker
from polirag.rag.embedder import Embedder
from polirag.rag.models import Document, SourceKind, Subject
from polirag.rag.store import LinearScanStore

FAKE_MODEL = "fake-hash-model"


class HashingBackend:
    """Bag-of-words embeddings: each word bumps one hashed coordinate."""

    def __init__(self, model_id: str = FAKE_MODEL, dimension: int = 32, fail_load: bool = False):
        self.model_id = model_id
        self.dimension = dimension
        self.fail_load = fail_load
        self.load_calls = 0
        self.encode_calls: List[List[str]] = []
        self.closed = False

    async def load(self) -> int:
        self.load_calls += 1
        if self.fail_load:
            raise EmbeddingUnavailable("Model weights not found: /models/missing")
        return self.dimension

    async def encode(self, texts: List[str]) -> np.ndarray:
        self.encode_calls.append(list(texts))
        out = np.zeros((len(texts), self.dimension), dtype=np.float32)
        for i, text in enumerate(texts):
            for word in text.lower().split():
                out[i, zlib.crc32(word.encode("utf-8")) % self.dimension] += 1.0
        return out

    async def close(self) -> None:
        self.closed = True


class FakeSource:
    """In-memory ingestion source.

    documents maps subject id to its documents, or to an exception raised
    when that subject is fetched.
    """

    def __init__(
        self,
        documents: Dict[str, Union[List[Document], Exception]],
        connected: bool = True,
        valid_credentials: Optional[Credentials] = None,
        before_fetch: Optional[Callable[[Subject], Awaitable[None]]] = None,
    ):
        self.documents = documents
        self.connected = connected
        self.valid_credentials = valid_credentials
        self.before_fetch = before_fetch
        self.login_attempts: List[Credentials] = []

    async def check_connection(self) -> bool:
        return self.connected

    async def authenticate(self, credentials: Credentials) -> bool:
        self.login_attempts.append(credentials)
        if self.valid_credentials is not None and credentials == self.valid_credentials:
            self.connected = True
        return self.connected

    async def list_subjects(self) -> List[Subject]:
        return [Subject(id=sid, name=sid.title()) for sid in self.documents]

    async def fetch_documents(self, subject: Subject) -> List[Document]:
        if self.before_fetch is not None:
            await self.before_fetch(subject)
        result = self.documents[subject.id]
        if isinstance(result, Exception):
            raise result
        return result


class StaticCredentials:
    """Credential provider with fixed cached and external values."""

    def __init__(self, cached: Optional[Credentials] = None, external: Optional[Credentials] = None):
        self._cached = cached
        self._external = external
        self.remembered: List[Credentials] = []
        self.forgotten = 0

    def cached(self) -> Optional[Credentials]:
        return self._cached

    def external(self) -> Optional[Credentials]:
        return self._external

    def remember(self, credentials: Credentials) -> None:
        self._cached = credentials
        self.remembered.append(credentials)

    def forget(self) -> None:
        self._cached = None
        self.forgotten += 1


def make_document(
    subject_id: str,
    title: str,
    text: str,
    kind: SourceKind = SourceKind.LESSON,
) -> Document:
    return Document(
        subject=Subject(id=subject_id, name=subject_id.title()),
        title=title,
        kind=kind,
        text=text,
    )


@pytest.fixture
def backend():
    return HashingBackend()


@pytest.fixture
def embedder(backend):
    return Embedder(backend, batch_size=4, cache_size=8)


@pytest.fixture
def chunker():
    return TextChunker(chunk_size=20, chunk_overlap=5)


@pytest.fixture
def snapshot_path(tmp_path):
    return tmp_path / "data" / "polirag.index.npz"


@pytest.fixture
def store(snapshot_path):
    return LinearScanStore(snapshot_path, FAKE_MODEL)
