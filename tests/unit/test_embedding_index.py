# Unit tests for:
#   - rank / as_vector / l2_normalise / cosine_similarity helpers
#   - FlatIndex and MatrixIndex partitions (same ordering rule)
#   - AccountIndex (accounts, dimensions, promotion, pop/restore)
#
# Pure numpy, no models.

from __future__ import annotations

import threading

import numpy as np
import pytest

from conftest import DIM, axis, rand_vec, unit
from core.catalog.errors import DimensionMismatch, InvalidInputError
from core.index import (
    AccountIndex,
    EmbeddingIndex,
    FlatIndex,
    IndexEntry,
    MatrixIndex,
    VectorPartition,
)
from core.index.base_index import as_vector, cosine_similarity, l2_normalise, rank


def _entry(face_id: str, vector: np.ndarray, seq: int, account: str = "a") -> IndexEntry:
    return IndexEntry(account_id=account, face_id=face_id, vector=l2_normalise(vector), seq=seq)


# ============================================================
# Helpers
# ============================================================

class TestHelpers:

    def test_as_vector_flattens(self):
        assert as_vector([[1.0, 2.0], [3.0, 4.0]]).shape == (4,)

    def test_as_vector_rejects_empty(self):
        with pytest.raises(InvalidInputError):
            as_vector([])

    def test_as_vector_rejects_nan(self):
        with pytest.raises(InvalidInputError):
            as_vector([1.0, float("nan")])

    def test_l2_normalise_unit_length(self):
        v = l2_normalise(np.array([3.0, 4.0], dtype=np.float32))
        assert np.linalg.norm(v) == pytest.approx(1.0)

    def test_l2_normalise_zero_vector_unchanged(self):
        v = l2_normalise(np.zeros(3, dtype=np.float32))
        assert not v.any()

    def test_cosine_similarity_bounds(self):
        assert cosine_similarity(axis(0), axis(0)) == pytest.approx(1.0)
        assert cosine_similarity(axis(0), -axis(0)) == pytest.approx(-1.0)
        assert cosine_similarity(axis(0), np.zeros(DIM)) == 0.0

    def test_rank_ties_broken_by_sequence(self):
        hits = rank(["late", "early"], np.array([5, 1]), np.array([0.7, 0.7]), 2, 0.0)
        assert [h.face_id for h in hits] == ["early", "late"]

    def test_rank_threshold_is_inclusive(self):
        hits = rank(["x"], np.array([1]), np.array([0.5]), 1, 0.5)
        assert len(hits) == 1

    def test_rank_zero_k(self):
        assert rank(["x"], np.array([1]), np.array([0.9]), 0, 0.0) == []


# ============================================================
# Partitions
# ============================================================

@pytest.fixture(params=["flat", "matrix"])
def partition(request):
    if request.param == "flat":
        return FlatIndex()
    return MatrixIndex(DIM, initial_capacity=2)


class TestPartitions:

    def test_satisfies_protocol(self, partition):
        assert isinstance(partition, VectorPartition)

    def test_insert_and_query(self, partition):
        partition.insert(_entry("f1", axis(0), 1))
        partition.insert(_entry("f2", axis(1), 2))
        hits = partition.query_knn(axis(0), 5, -1.0)
        assert hits[0].face_id == "f1"
        assert hits[0].similarity == pytest.approx(1.0)
        assert len(hits) == 2

    def test_results_sorted_desc(self, partition):
        for i in range(6):
            partition.insert(_entry(f"f{i}", rand_vec(i), i + 1))
        sims = [h.similarity for h in partition.query_knn(rand_vec(0), 6, -1.0)]
        assert sims == sorted(sims, reverse=True)

    def test_equal_vectors_returned_in_insertion_order(self, partition):
        for i in range(4):
            partition.insert(_entry(f"f{i}", axis(2), i + 1))
        hits = partition.query_knn(axis(2), 4, 0.0)
        assert [h.face_id for h in hits] == ["f0", "f1", "f2", "f3"]

    def test_threshold_filters(self, partition):
        partition.insert(_entry("near", unit(1, 0.1), 1))
        partition.insert(_entry("far", axis(3), 2))
        hits = partition.query_knn(axis(0), 5, 0.9)
        assert [h.face_id for h in hits] == ["near"]

    def test_remove_returns_entry(self, partition):
        partition.insert(_entry("f1", axis(0), 7))
        removed = partition.remove("f1")
        assert removed.face_id == "f1"
        assert removed.seq == 7
        assert "f1" not in partition
        assert partition.query_knn(axis(0), 5, -1.0) == []

    def test_remove_unknown_returns_none(self, partition):
        assert partition.remove("missing") is None

    def test_reinsert_replaces(self, partition):
        partition.insert(_entry("f1", axis(0), 1))
        partition.insert(_entry("f1", axis(1), 2))
        assert len(partition) == 1
        assert partition.query_knn(axis(1), 1, 0.9)[0].face_id == "f1"

    def test_entries_in_sequence_order(self, partition):
        partition.insert(_entry("b", axis(1), 2))
        partition.insert(_entry("a", axis(0), 1))
        assert [e.face_id for e in partition.entries()] == ["a", "b"]


class TestBackendParity:

    def test_same_results_for_random_data(self):
        flat, matrix = FlatIndex(), MatrixIndex(DIM, initial_capacity=4)
        for i in range(40):
            entry = _entry(f"f{i}", rand_vec(i), i + 1)
            flat.insert(entry)
            matrix.insert(entry)
        for i in range(0, 40, 3):
            flat.remove(f"f{i}")
            matrix.remove(f"f{i}")

        for q in range(5):
            query = rand_vec(100 + q)
            a = flat.query_knn(query, 10, 0.0)
            b = matrix.query_knn(query, 10, 0.0)
            assert [h.face_id for h in a] == [h.face_id for h in b]
            np.testing.assert_allclose(
                [h.similarity for h in a], [h.similarity for h in b], atol=1e-5
            )


class TestMatrixIndexBuffers:

    def test_grows_past_initial_capacity(self):
        index = MatrixIndex(DIM, initial_capacity=2)
        for i in range(10):
            index.insert(_entry(f"f{i}", rand_vec(i), i + 1))
        assert len(index) == 10
        assert index.capacity >= 10

    def test_compaction_drops_dead_rows(self):
        index = MatrixIndex(DIM, initial_capacity=8)
        for i in range(200):
            index.insert(_entry(f"f{i}", rand_vec(i), i + 1))
        for i in range(150):
            index.remove(f"f{i}")
        assert len(index) == 50
        hits = index.query_knn(rand_vec(199), 100, -1.0)
        assert len(hits) == 50
        assert hits[0].face_id == "f199"


# ============================================================
# AccountIndex
# ============================================================

class TestAccountIndex:

    @pytest.fixture
    def index(self) -> AccountIndex:
        return AccountIndex(dim=DIM, matrix_threshold=4)

    def test_satisfies_protocol(self, index):
        assert isinstance(index, EmbeddingIndex)

    def test_rejects_bad_dim(self):
        with pytest.raises(ValueError):
            AccountIndex(dim=0)

    def test_accounts_are_isolated(self, index):
        index.insert("a", "fa", axis(0))
        index.insert("b", "fb", axis(0))
        assert [h.face_id for h in index.query_knn("a", axis(0), 10)] == ["fa"]
        assert [h.face_id for h in index.query_knn("b", axis(0), 10)] == ["fb"]

    def test_unknown_account_returns_empty(self, index):
        assert index.query_knn("nobody", axis(0), 3) == []

    def test_insert_wrong_dimension(self, index):
        with pytest.raises(DimensionMismatch):
            index.insert("a", "f", np.ones(DIM + 1))

    def test_query_wrong_dimension(self, index):
        index.insert("a", "f", axis(0))
        with pytest.raises(DimensionMismatch):
            index.query_knn("a", np.ones(3), 1)

    def test_query_k_must_be_positive(self, index):
        with pytest.raises(InvalidInputError):
            index.query_knn("a", axis(0), 0)

    def test_stored_vectors_are_normalised(self, index):
        index.insert("a", "f", axis(0) * 5.0)
        assert np.linalg.norm(index.get_vector("f")) == pytest.approx(1.0)
        assert index.query_knn("a", axis(0), 1)[0].similarity == pytest.approx(1.0)

    def test_remove_shrinks_by_one(self, index):
        index.insert("a", "f1", axis(0))
        index.insert("a", "f2", axis(1))
        index.remove("f1")
        assert index.size("a") == 1
        assert not index.contains("f1")
        index.remove("f1")
        assert index.size("a") == 1

    def test_promotes_to_matrix_above_threshold(self, index):
        for i in range(4):
            index.insert("a", f"f{i}", rand_vec(i))
        assert index.backend_for("a") == "flat"
        index.insert("a", "f4", rand_vec(4))
        assert index.backend_for("a") == "matrix"
        assert index.size("a") == 5
        assert index.query_knn("a", rand_vec(2), 1)[0].face_id == "f2"

    def test_pop_restore_keeps_order(self, index):
        index.insert("a", "first", axis(0))
        index.insert("a", "second", axis(0))
        entry = index.pop("first")
        assert [h.face_id for h in index.query_knn("a", axis(0), 5)] == ["second"]
        index.restore(entry)
        assert [h.face_id for h in index.query_knn("a", axis(0), 5)] == ["first", "second"]

    def test_face_moves_between_accounts(self, index):
        index.insert("a", "f", axis(0))
        index.insert("b", "f", axis(0))
        assert index.size("a") == 0
        assert index.size("b") == 1

    def test_configure_account_dimension(self, index):
        index.configure_account("wide", DIM * 2)
        index.insert("wide", "f", np.ones(DIM * 2))
        with pytest.raises(InvalidInputError):
            index.configure_account("wide", DIM)

    def test_stats(self, index):
        index.insert("a", "f", axis(0))
        stats = index.stats()
        assert stats["total_vectors"] == 1
        assert stats["partitions"]["a"]["backend"] == "flat"

    def test_concurrent_inserts_and_queries(self, index):
        errors = []

        def writer(offset: int) -> None:
            for i in range(50):
                index.insert("a", f"w{offset}-{i}", rand_vec(offset * 100 + i))

        def reader() -> None:
            for i in range(100):
                try:
                    hits = index.query_knn("a", rand_vec(i), 5)
                    sims = [h.similarity for h in hits]
                    assert sims == sorted(sims, reverse=True)
                except Exception as exc:  # noqa: BLE001
                    errors.append(exc)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(3)]
        threads += [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert index.size("a") == 150
