"""Persistent vector store with cosine-similarity search.

Handles:
- Record insertion with dimensionality locking
- Nearest-neighbor search (exact linear scan here, HNSW in store_faiss)
- Atomic snapshot persistence and model-compatibility checks on load
- Build-then-swap so readers never observe a partially rebuilt index
"""
import json
import os
import tempfile
import threading
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import structlog

from polirag.config import RagSettings
from polirag.exceptions import (
    ConfigurationError,
    DimensionMismatch,
    IncompatibleSnapshot,
    PersistenceFailure,
)
from polirag.rag.models import Record, SearchHit

logger = structlog.get_logger()

SNAPSHOT_FORMAT = "polirag-snapshot"
SNAPSHOT_VERSION = 1


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors; 0.0 if either has zero magnitude."""
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        raise DimensionMismatch(a.size, b.size)

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


@dataclass
class _Entry:
    record: Record
    seq: int


@dataclass
class _IndexState:
    """Everything a search reads. Swapped wholesale by adopt()."""

    entries: Dict[str, _Entry] = field(default_factory=dict)
    dimension: Optional[int] = None
    next_seq: int = 0
    # Derived, backend-specific data (matrices, ANN index); dropped on mutation
    cache: Dict[str, Any] = field(default_factory=dict)

    def ordered(self) -> List[_Entry]:
        return sorted(self.entries.values(), key=lambda e: e.seq)


@dataclass
class SnapshotContents:
    """Raw content of a snapshot file."""

    header: Dict[str, Any]
    records: List[Record]
    arrays: Dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def model_id(self) -> str:
        return self.header.get("model_id", "")

    @property
    def dimension(self) -> Optional[int]:
        return self.header.get("dimension")


@dataclass
class StoreStats:
    """Statistics about the vector store."""

    record_count: int
    records_by_kind: Dict[str, int]
    total_content_bytes: int
    embedding_dimension: Optional[int]
    file_size_bytes: int
    storage_path: str
    store_type: str
    model_id: str

    def format_file_size(self) -> str:
        return _format_bytes(self.file_size_bytes)

    def format_content_size(self) -> str:
        return _format_bytes(self.total_content_bytes)


def _format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.2f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.2f} MB"
    return f"{size / (1024 * 1024 * 1024):.2f} GB"


def read_snapshot(path: Path) -> SnapshotContents:
    """Read a snapshot file without checking model compatibility.

    Raises:
        FileNotFoundError: If no snapshot exists at path
        IncompatibleSnapshot: If the file is not a readable snapshot
    """
    if not path.exists():
        raise FileNotFoundError(f"Snapshot not found: {path}")

    try:
        with np.load(path, allow_pickle=False) as data:
            header = json.loads(data["header"].item())
            vectors = data["vectors"]
            arrays = {k: data[k] for k in data.files if k not in ("header", "vectors")}
    except (OSError, ValueError, KeyError, zipfile.BadZipFile) as e:
        raise IncompatibleSnapshot(f"Unreadable snapshot {path}: {e}") from e

    if header.get("format") != SNAPSHOT_FORMAT:
        raise IncompatibleSnapshot(f"{path} is not a {SNAPSHOT_FORMAT} file")
    if header.get("version") != SNAPSHOT_VERSION:
        raise IncompatibleSnapshot(
            f"Snapshot version {header.get('version')} is not supported "
            f"(expected {SNAPSHOT_VERSION})"
        )

    items = header.get("records", [])
    if len(items) != len(vectors):
        raise IncompatibleSnapshot(
            f"Snapshot holds {len(items)} records but {len(vectors)} vectors"
        )

    records = [
        Record(id=item["id"], text=item["text"], metadata=item["metadata"], vector=vector)
        for item, vector in zip(items, vectors)
    ]
    return SnapshotContents(header=header, records=records, arrays=arrays)


class VectorStore(ABC):
    """In-memory record collection mirrored to one snapshot file.

    All public methods are thread-safe. Mutations and searches hold a
    re-entrant lock; adopt() replaces the whole state in one step.
    """

    store_type = "abstract"

    def __init__(self, path: Path, model_id: str):
        """Initialize an empty store.

        Args:
            path: Snapshot file location
            model_id: Identifier of the embedding model populating this store
        """
        self.path = Path(path)
        self.model_id = model_id
        self._lock = threading.RLock()
        self._state = _IndexState()

    # --- backend hooks -----------------------------------------------------

    @abstractmethod
    def _rank(self, state: _IndexState, query: np.ndarray, k: int) -> List[Tuple[_Entry, float]]:
        """Return up to k (entry, score) pairs ordered by score, then seq."""

    def _spawn_kwargs(self) -> Dict[str, Any]:
        return {}

    def _extra_arrays(self, state: _IndexState) -> Dict[str, np.ndarray]:
        return {}

    def _restore_extra(self, state: _IndexState, arrays: Dict[str, np.ndarray]) -> None:
        return None

    # --- records -----------------------------------------------------------

    @property
    def dimension(self) -> Optional[int]:
        return self._state.dimension

    def insert(self, record: Record) -> None:
        """Add or overwrite a record by id.

        Raises:
            DimensionMismatch: If the vector length differs from the store's
        """
        with self._lock:
            self._insert_locked(self._state, record)

    def insert_many(self, records: List[Record]) -> None:
        """Insert records in order."""
        with self._lock:
            for record in records:
                self._insert_locked(self._state, record)

    def _insert_locked(self, state: _IndexState, record: Record) -> None:
        size = int(record.vector.size)
        if size == 0:
            raise DimensionMismatch(state.dimension or 0, 0)
        if state.dimension is None:
            state.dimension = size
            logger.debug("store_dimension_locked", dimension=size)
        elif size != state.dimension:
            raise DimensionMismatch(state.dimension, size)

        # Overwriting moves the record to the end of the insertion order
        state.entries.pop(record.id, None)
        state.entries[record.id] = _Entry(record=record, seq=state.next_seq)
        state.next_seq += 1
        state.cache.clear()

    def remove(self, record_id: str) -> bool:
        """Remove a record; returns whether it existed."""
        with self._lock:
            state = self._state
            removed = state.entries.pop(record_id, None) is not None
            if removed:
                state.cache.clear()
            return removed

    def contains(self, record_id: str) -> bool:
        return record_id in self._state.entries

    def get(self, record_id: str) -> Optional[Record]:
        entry = self._state.entries.get(record_id)
        return entry.record if entry else None

    def count(self) -> int:
        return len(self._state.entries)

    def __len__(self) -> int:
        return self.count()

    def records(self) -> List[Record]:
        """All records in insertion order."""
        with self._lock:
            return [e.record for e in self._state.ordered()]

    def find_by_metadata(self, key: str, value: str) -> List[Record]:
        with self._lock:
            return [
                e.record
                for e in self._state.ordered()
                if e.record.metadata.get(key) == value
            ]

    def clear(self, model_id: Optional[str] = None) -> None:
        """Remove all records and release the dimensionality lock.

        Args:
            model_id: Embedding model for the records inserted from now on
        """
        with self._lock:
            self._state = _IndexState()
            if model_id is not None:
                self.model_id = model_id
        logger.info("store_cleared", store_type=self.store_type, model=self.model_id)

    # --- search ------------------------------------------------------------

    def search(self, query_vector, k: int) -> List[SearchHit]:
        """Return up to k records ranked by descending cosine similarity.

        Ties are broken by insertion order, earlier first.

        Raises:
            DimensionMismatch: If the query length differs from the store's
        """
        if k <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32).ravel()

        with self._lock:
            state = self._state
            if not state.entries:
                return []
            if query.size != state.dimension:
                raise DimensionMismatch(state.dimension, query.size)

            ranked = self._rank(state, query, min(k, len(state.entries)))

        hits = [SearchHit(record=entry.record, score=score) for entry, score in ranked]
        logger.debug("vector_search_completed", top_k=k, results_found=len(hits))
        return hits

    # --- build-then-swap ---------------------------------------------------

    def spawn_empty(self, model_id: Optional[str] = None) -> "VectorStore":
        """A new empty store of the same kind writing to the same snapshot."""
        return type(self)(self.path, model_id or self.model_id, **self._spawn_kwargs())

    def adopt(self, other: "VectorStore") -> None:
        """Take over another store's records in one atomic step."""
        if type(other) is not type(self):
            raise TypeError(
                f"Cannot adopt a {type(other).__name__} into a {type(self).__name__}"
            )
        with other._lock:
            state = other._state
            model_id = other.model_id
        with self._lock:
            self._state = state
            self.model_id = model_id
        logger.info("store_swapped", record_count=len(state.entries), model=model_id)

    # --- persistence -------------------------------------------------------

    def persist(self) -> None:
        """Write the full state to the snapshot file atomically.

        Writes to a temporary file next to the snapshot and renames it over
        the previous one, so a failed write leaves the old snapshot intact.

        Raises:
            PersistenceFailure: If the snapshot could not be written
        """
        with self._lock:
            state = self._state
            ordered = state.ordered()
            dimension = state.dimension or 0
            vectors = (
                np.stack([e.record.vector for e in ordered])
                if ordered
                else np.zeros((0, dimension), dtype=np.float32)
            )
            header = {
                "format": SNAPSHOT_FORMAT,
                "version": SNAPSHOT_VERSION,
                "model_id": self.model_id,
                "dimension": state.dimension,
                "store_type": self.store_type,
                "records": [
                    {"id": e.record.id, "text": e.record.text, "metadata": e.record.metadata}
                    for e in ordered
                ],
            }
            extra = self._extra_arrays(state)

        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as fh:
                tmp_name = fh.name
                np.savez(fh, header=np.array(json.dumps(header)), vectors=vectors, **extra)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            logger.error("snapshot_persist_failed", path=str(self.path), error=str(e))
            raise PersistenceFailure(f"Failed to write snapshot {self.path}: {e}") from e

        logger.info(
            "snapshot_persisted",
            path=str(self.path),
            record_count=len(ordered),
            model=self.model_id,
        )

    def load(self, expected_dimension: Optional[int] = None) -> None:
        """Replace the in-memory state with the snapshot on disk.

        Args:
            expected_dimension: Output size of the active embedder, if known

        Raises:
            FileNotFoundError: If no snapshot exists
            IncompatibleSnapshot: On format, model or dimension mismatch
        """
        contents = read_snapshot(self.path)

        if contents.model_id != self.model_id:
            raise IncompatibleSnapshot(
                f"Snapshot was built with {contents.model_id!r} but the active "
                f"model is {self.model_id!r}. A full re-embed is required."
            )
        if (
            expected_dimension is not None
            and contents.records
            and contents.dimension != expected_dimension
        ):
            raise IncompatibleSnapshot(
                f"Snapshot dimension {contents.dimension} does not match the "
                f"active model dimension {expected_dimension}"
            )

        state = _IndexState()
        try:
            for record in contents.records:
                self._insert_locked(state, record)
        except DimensionMismatch as e:
            raise IncompatibleSnapshot(f"Snapshot holds mixed dimensions: {e}") from e
        self._restore_extra(state, contents.arrays)

        with self._lock:
            self._state = state

        logger.info(
            "snapshot_loaded",
            path=str(self.path),
            record_count=len(state.entries),
            dimension=state.dimension,
            model=self.model_id,
        )

    def load_or_init(self, expected_dimension: Optional[int] = None) -> bool:
        """Load the snapshot if one exists; returns whether it did."""
        if not self.path.exists():
            logger.info("no_snapshot_found_starting_empty", path=str(self.path))
            return False
        self.load(expected_dimension=expected_dimension)
        return True

    # --- stats -------------------------------------------------------------

    def get_stats(self) -> StoreStats:
        with self._lock:
            state = self._state
            by_kind: Dict[str, int] = {}
            content_bytes = 0
            for entry in state.entries.values():
                content_bytes += len(entry.record.text.encode("utf-8"))
                kind = entry.record.metadata.get("kind", "unknown")
                by_kind[kind] = by_kind.get(kind, 0) + 1

        file_size = self.path.stat().st_size if self.path.exists() else 0

        return StoreStats(
            record_count=len(state.entries),
            records_by_kind=by_kind,
            total_content_bytes=content_bytes,
            embedding_dimension=state.dimension,
            file_size_bytes=file_size,
            storage_path=str(self.path),
            store_type=self.store_type,
            model_id=self.model_id,
        )


class LinearScanStore(VectorStore):
    """Exact search by scoring every record against the query."""

    store_type = "linear"

    def _matrix(self, state: _IndexState) -> Tuple[List[_Entry], np.ndarray, np.ndarray]:
        cached = state.cache.get("matrix")
        if cached is None:
            ordered = state.ordered()
            matrix = np.stack([e.record.vector for e in ordered]).astype(np.float64)
            norms = np.linalg.norm(matrix, axis=1)
            cached = (ordered, matrix, norms)
            state.cache["matrix"] = cached
        return cached

    def _rank(self, state: _IndexState, query: np.ndarray, k: int) -> List[Tuple[_Entry, float]]:
        ordered, matrix, norms = self._matrix(state)

        q = query.astype(np.float64)
        q_norm = np.linalg.norm(q)
        denom = norms * q_norm
        dots = matrix @ q
        scores = np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)

        # ordered is in insertion order, so a stable sort keeps earlier records first on ties
        order = np.argsort(-scores, kind="stable")[:k]
        return [(ordered[i], float(scores[i])) for i in order]


def create_store(settings: RagSettings, model_id: str) -> VectorStore:
    """Build the store backend selected by the settings."""
    if settings.store_backend == "linear":
        return LinearScanStore(settings.snapshot_path, model_id)
    if settings.store_backend == "hnsw":
        from polirag.rag.store_faiss import ApproximateIndexStore

        return ApproximateIndexStore(
            settings.snapshot_path,
            model_id,
            m=settings.hnsw_m,
            ef_construction=settings.hnsw_ef_construction,
            ef_search=settings.hnsw_ef_search,
        )
    raise ConfigurationError(f"Unknown store backend: {settings.store_backend}")
