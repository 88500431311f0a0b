"""FAISS HNSW backend for the vector store.

Same contract as LinearScanStore, backed by an approximate nearest-neighbor
graph (IndexHNSWFlat over inner product on L2-normalized vectors, which
equals cosine similarity). The only observable difference: on large stores
recall may drop below 100%, i.e. a true top-k record can be missed. Results
that are returned are re-sorted by score, then insertion order.

The graph is built lazily on the first search after a mutation and stored in
the snapshot file alongside the vectors.
"""
from typing import Any, Dict, List, Tuple

import faiss
import numpy as np
import structlog

from polirag.rag.embedder import normalize_rows
from polirag.rag.store import VectorStore, _Entry, _IndexState

logger = structlog.get_logger()


class ApproximateIndexStore(VectorStore):
    """HNSW-accelerated vector store."""

    store_type = "hnsw"

    def __init__(
        self,
        path,
        model_id: str,
        m: int = 24,
        ef_construction: int = 200,
        ef_search: int = 64,
    ):
        """Initialize the HNSW store.

        Args:
            path: Snapshot file location
            model_id: Identifier of the embedding model populating this store
            m: Graph neighbours per node
            ef_construction: Candidate list size while building
            ef_search: Minimum candidate list size while searching
        """
        super().__init__(path, model_id)
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search = ef_search

    def _spawn_kwargs(self) -> Dict[str, Any]:
        return {
            "m": self.m,
            "ef_construction": self.ef_construction,
            "ef_search": self.ef_search,
        }

    def _build(self, state: _IndexState) -> Tuple[List[_Entry], "faiss.Index"]:
        cached = state.cache.get("ann")
        if cached is None:
            ordered = state.ordered()
            vectors = normalize_rows(
                np.stack([e.record.vector for e in ordered]).astype(np.float32)
            )

            index = faiss.IndexHNSWFlat(state.dimension, self.m, faiss.METRIC_INNER_PRODUCT)
            index.hnsw.efConstruction = self.ef_construction
            index.add(vectors)

            cached = (ordered, index)
            state.cache["ann"] = cached
            logger.info(
                "hnsw_index_built",
                vector_count=index.ntotal,
                dimension=state.dimension,
                m=self.m,
            )
        return cached

    def _rank(self, state: _IndexState, query: np.ndarray, k: int) -> List[Tuple[_Entry, float]]:
        ordered, index = self._build(state)
        index.hnsw.efSearch = max(self.ef_search, k)

        q = normalize_rows(query.reshape(1, -1).astype(np.float32))
        scores, labels = index.search(q, k)

        ranked = [
            (ordered[label], float(score))
            for score, label in zip(scores[0], labels[0])
            if label >= 0
        ]
        ranked.sort(key=lambda pair: (-pair[1], pair[0].seq))
        return ranked

    def _extra_arrays(self, state: _IndexState) -> Dict[str, np.ndarray]:
        if not state.entries:
            return {}
        _, index = self._build(state)
        return {"ann_index": faiss.serialize_index(index)}

    def _restore_extra(self, state: _IndexState, arrays: Dict[str, np.ndarray]) -> None:
        blob = arrays.get("ann_index")
        if blob is None or not state.entries:
            return

        index = faiss.deserialize_index(blob)
        if index.ntotal != len(state.entries) or index.d != state.dimension:
            # Snapshot written by another backend or out of sync: rebuild on demand
            logger.warning(
                "hnsw_index_stale",
                index_vectors=index.ntotal,
                record_count=len(state.entries),
            )
            return

        state.cache["ann"] = (state.ordered(), index)
        logger.info("hnsw_index_restored", vector_count=index.ntotal)
