"""Tests for the FAISS HNSW store backend."""
import numpy as np
import pytest

pytest.importorskip("faiss")

from polirag.config import RagSettings
from polirag.exceptions import DimensionMismatch, IncompatibleSnapshot
from polirag.rag.models import Record
from polirag.rag.store import LinearScanStore, create_store, read_snapshot
from polirag.rag.store_faiss import ApproximateIndexStore

from conftest import FAKE_MODEL


def rec(record_id, vector):
    return Record(id=record_id, text=f"text of {record_id}", vector=vector, metadata={"kind": "pdf"})


@pytest.fixture
def hnsw_store(snapshot_path):
    return ApproximateIndexStore(snapshot_path, FAKE_MODEL, m=8, ef_construction=40, ef_search=16)


class TestApproximateIndexStore:
    def test_three_record_ranking(self, hnsw_store):
        hnsw_store.insert(rec("a", [1, 0, 0, 0]))
        hnsw_store.insert(rec("b", [0, 1, 0, 0]))
        hnsw_store.insert(rec("c", [0.9, 0.1, 0, 0]))

        hits = hnsw_store.search([1, 0, 0, 0], k=2)

        assert [h.record.id for h in hits] == ["a", "c"]
        assert hits[0].score == pytest.approx(1.0, abs=1e-5)

    def test_edge_cases(self, hnsw_store):
        assert hnsw_store.search([1, 0], k=3) == []

        hnsw_store.insert(rec("a", [1, 0]))
        assert hnsw_store.search([1, 0], k=0) == []
        with pytest.raises(DimensionMismatch):
            hnsw_store.search([1, 0, 0], k=1)

        hnsw_store.clear()
        assert hnsw_store.search([1, 0], k=3) == []

    def test_ties_broken_by_insertion_order(self, hnsw_store):
        for name in ("first", "second", "third"):
            hnsw_store.insert(rec(name, [0, 3, 0]))

        hits = hnsw_store.search([0, 1, 0], k=3)

        assert [h.record.id for h in hits] == ["first", "second", "third"]

    def test_matches_linear_scan_on_small_store(self, snapshot_path):
        rng = np.random.default_rng(7)
        hnsw_store = ApproximateIndexStore(snapshot_path, FAKE_MODEL, ef_search=100)
        linear = LinearScanStore(snapshot_path, FAKE_MODEL)
        for i in range(50):
            vector = rng.normal(size=16)
            hnsw_store.insert(rec(f"r{i}", vector))
            linear.insert(rec(f"r{i}", vector))

        query = rng.normal(size=16)
        expected = [h.record.id for h in linear.search(query, k=5)]
        actual = [h.record.id for h in hnsw_store.search(query, k=5)]

        assert actual == expected

    def test_index_rebuilt_after_mutation(self, hnsw_store):
        hnsw_store.insert(rec("a", [1, 0]))
        assert [h.record.id for h in hnsw_store.search([0, 1], k=1)] == ["a"]

        hnsw_store.insert(rec("b", [0, 1]))
        assert [h.record.id for h in hnsw_store.search([0, 1], k=1)] == ["b"]

    def test_round_trip_with_serialized_index(self, hnsw_store, snapshot_path):
        hnsw_store.insert(rec("a", [1, 0, 0]))
        hnsw_store.insert(rec("b", [0, 1, 0]))
        hnsw_store.persist()

        assert "ann_index" in read_snapshot(snapshot_path).arrays

        loaded = ApproximateIndexStore(snapshot_path, FAKE_MODEL)
        loaded.load()

        assert [h.record.id for h in loaded.search([0, 1, 0], k=2)] == ["b", "a"]

    def test_loads_linear_snapshot(self, snapshot_path):
        linear = LinearScanStore(snapshot_path, FAKE_MODEL)
        linear.insert(rec("a", [1, 0]))
        linear.insert(rec("b", [0, 1]))
        linear.persist()

        loaded = ApproximateIndexStore(snapshot_path, FAKE_MODEL)
        loaded.load()

        assert [h.record.id for h in loaded.search([1, 0], k=1)] == ["a"]

    def test_model_mismatch_refused(self, hnsw_store, snapshot_path):
        hnsw_store.insert(rec("a", [1, 0]))
        hnsw_store.persist()

        with pytest.raises(IncompatibleSnapshot):
            ApproximateIndexStore(snapshot_path, "other-model").load()

    def test_spawn_empty_keeps_parameters(self, hnsw_store):
        staging = hnsw_store.spawn_empty()

        assert isinstance(staging, ApproximateIndexStore)
        assert staging.m == 8
        assert staging.ef_search == 16

    def test_adopt_rejects_other_backend(self, hnsw_store, snapshot_path):
        with pytest.raises(TypeError):
            hnsw_store.adopt(LinearScanStore(snapshot_path, FAKE_MODEL))

    def test_create_store_hnsw(self, snapshot_path):
        store = create_store(RagSettings(snapshot_path=snapshot_path, store_backend="hnsw"), "m")
        assert isinstance(store, ApproximateIndexStore)
