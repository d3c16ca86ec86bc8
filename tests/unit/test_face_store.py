# Unit tests for FaceStore:
#   - asset registration
#   - face creation validation (bbox, dimension, model version)
#   - face <-> index entry correspondence on create / delete
#   - orphan guard policies
#   - rollback of create / delete

from __future__ import annotations

import numpy as np
import pytest

from conftest import ACCOUNT, DIM, OTHER_ACCOUNT, axis
from core.catalog.errors import (
    AssetNotFound,
    DimensionMismatch,
    FaceNotFound,
    InvalidBoundingBox,
    InvalidInputError,
    ModelMismatch,
    PersonWouldBeOrphaned,
)
from core.catalog.face_store import FaceStore
from core.catalog.models import BoundingBox, EmbeddingModel, FaceSource
from core.catalog.person_manager import PersonClusterManager
from core.catalog.tables import CatalogTables
from core.catalog.transaction import UnitOfWork
from core.index import AccountIndex


def _store(orphan_guard: str = "named") -> FaceStore:
    tables = CatalogTables(EmbeddingModel("test-model", DIM))
    persons = PersonClusterManager(tables)
    store = FaceStore(tables, AccountIndex(dim=DIM), persons, orphan_guard=orphan_guard)
    store.register_asset(ACCOUNT, 200, 100, asset_id="asset-1")
    return store


@pytest.fixture
def store() -> FaceStore:
    return _store()


BOX = BoundingBox(10, 10, 50, 50)


class TestAssets:

    def test_register_generates_id(self, store):
        asset = store.register_asset(ACCOUNT, 10, 10)
        assert asset.id
        assert store.get_asset(asset.id, ACCOUNT).width == 10

    def test_register_is_idempotent_per_account(self, store):
        again = store.register_asset(ACCOUNT, 999, 999, asset_id="asset-1")
        assert (again.width, again.height) == (200, 100)

    def test_register_foreign_id_refused(self, store):
        with pytest.raises(InvalidInputError):
            store.register_asset(OTHER_ACCOUNT, 10, 10, asset_id="asset-1")

    @pytest.mark.parametrize("w,h", [(0, 10), (10, 0), (-1, -1)])
    def test_register_rejects_bad_dimensions(self, store, w, h):
        with pytest.raises(InvalidInputError):
            store.register_asset(ACCOUNT, w, h)

    def test_asset_of_other_account_not_found(self, store):
        with pytest.raises(AssetNotFound):
            store.get_asset("asset-1", OTHER_ACCOUNT)


class TestCreate:

    def test_create_indexes_embedding(self, store):
        face = store.create(ACCOUNT, "asset-1", BOX, embedding=axis(0))
        assert face.person_id is None
        assert face.model_name == "test-model"
        assert store.index.contains(face.id)
        assert np.linalg.norm(face.embedding) == pytest.approx(1.0)

    def test_manual_face_is_not_indexed(self, store):
        face = store.create(ACCOUNT, "asset-1", BOX, source=FaceSource.MANUAL)
        assert not face.has_embedding
        assert face.model_name is None
        assert not store.index.contains(face.id)

    def test_faces_get_increasing_sequence(self, store):
        a = store.create(ACCOUNT, "asset-1", BOX, embedding=axis(0))
        b = store.create(ACCOUNT, "asset-1", BOX, embedding=axis(1))
        assert b.seq > a.seq
        assert [f.id for f in store.get_by_asset("asset-1", ACCOUNT)] == [a.id, b.id]

    @pytest.mark.parametrize(
        "box",
        [
            BoundingBox(50, 10, 10, 50),        # x1 > x2
            BoundingBox(10, 10, 10, 50),        # zero width
            BoundingBox(-1, 0, 10, 10),         # negative
            BoundingBox(10, 10, 201, 50),       # wider than asset
            BoundingBox(10, 10, 50, 101),       # taller than asset
            BoundingBox(float("nan"), 0, 1, 1),
        ],
    )
    def test_invalid_bbox(self, store, box):
        with pytest.raises(InvalidBoundingBox):
            store.create(ACCOUNT, "asset-1", box, embedding=axis(0))
        assert store.count() == 0
        assert store.index.size() == 0

    def test_box_touching_edges_is_valid(self, store):
        store.create(ACCOUNT, "asset-1", BoundingBox(0, 0, 200, 100))

    def test_wrong_dimension(self, store):
        with pytest.raises(DimensionMismatch):
            store.create(ACCOUNT, "asset-1", BOX, embedding=np.ones(DIM + 2))
        assert store.count() == 0

    def test_wrong_model(self, store):
        with pytest.raises(ModelMismatch):
            store.create(ACCOUNT, "asset-1", BOX, embedding=axis(0), model_name="other-model")

    def test_unknown_asset(self, store):
        with pytest.raises(AssetNotFound):
            store.create(ACCOUNT, "missing", BOX)

    def test_foreign_asset(self, store):
        with pytest.raises(AssetNotFound):
            store.create(OTHER_ACCOUNT, "asset-1", BOX)

    def test_rollback_removes_row_and_entry(self, store):
        with pytest.raises(RuntimeError):
            with UnitOfWork("test") as uow:
                face = store.create(ACCOUNT, "asset-1", BOX, embedding=axis(0), uow=uow)
                raise RuntimeError("boom")
        assert store.tables.face(face.id) is None
        assert not store.index.contains(face.id)


class TestAccountModel:

    def test_set_model_changes_dimension(self, store):
        store.set_account_model(ACCOUNT, "wide", DIM * 2)
        face = store.create(ACCOUNT, "asset-1", BOX, embedding=np.ones(DIM * 2))
        assert face.model_name == "wide"

    def test_cannot_switch_model_with_embedded_faces(self, store):
        store.create(ACCOUNT, "asset-1", BOX, embedding=axis(0))
        with pytest.raises(InvalidInputError):
            store.set_account_model(ACCOUNT, "wide", DIM * 2)


class TestDelete:

    def test_delete_removes_row_and_entry(self, store):
        keep = store.create(ACCOUNT, "asset-1", BOX, embedding=axis(0))
        gone = store.create(ACCOUNT, "asset-1", BOX, embedding=axis(1))
        before = store.index.size(ACCOUNT)

        store.delete(gone.id)

        assert store.index.size(ACCOUNT) == before - 1
        assert store.index.contains(keep.id)
        with pytest.raises(FaceNotFound):
            store.get(gone.id)

    def test_delete_unknown(self, store):
        with pytest.raises(FaceNotFound):
            store.delete("missing")

    def test_last_face_of_named_person_is_guarded(self, store):
        face = store.create(ACCOUNT, "asset-1", BOX, embedding=axis(0))
        person = store.persons.create_person_from_face(face.id, ACCOUNT, name="Alice")

        with pytest.raises(PersonWouldBeOrphaned):
            store.delete(face.id)
        assert store.get(face.id).person_id == person.id
        assert store.index.contains(face.id)

        store.delete(face.id, force=True)
        assert store.persons.get(person.id).face_count == 0

    def test_unnamed_person_not_guarded_by_default(self, store):
        face = store.create(ACCOUNT, "asset-1", BOX, embedding=axis(0))
        store.persons.create_person_from_face(face.id, ACCOUNT)
        store.delete(face.id)
        assert store.count() == 0

    def test_guard_any_protects_unnamed(self):
        store = _store(orphan_guard="any")
        face = store.create(ACCOUNT, "asset-1", BOX, embedding=axis(0))
        store.persons.create_person_from_face(face.id, ACCOUNT)
        with pytest.raises(PersonWouldBeOrphaned):
            store.delete(face.id)

    def test_rollback_restores_everything(self, store):
        face = store.create(ACCOUNT, "asset-1", BOX, embedding=axis(0))
        person = store.persons.create_person_from_face(face.id, ACCOUNT)

        with pytest.raises(RuntimeError):
            with UnitOfWork("test") as uow:
                store.delete(face.id, uow=uow)
                raise RuntimeError("boom")

        assert store.get(face.id).person_id == person.id
        assert store.persons.get(person.id).face_count == 1
        assert store.index.contains(face.id)
        store.persons.check_all()

    def test_rejects_unknown_guard(self):
        tables = CatalogTables(EmbeddingModel("m", DIM))
        with pytest.raises(ValueError):
            FaceStore(tables, AccountIndex(dim=DIM), PersonClusterManager(tables), orphan_guard="x")
