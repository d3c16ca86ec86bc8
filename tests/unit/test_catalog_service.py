# Unit tests for the FaceCatalog service:
#   - create / list / reassign / delete faces
#   - account isolation
#   - orphan-protection scenario
#   - detect, recognize and detach
#   - people operations
#   - invariants, stats and snapshot persistence

from __future__ import annotations

import pytest

from conftest import ACCOUNT, OTHER_ACCOUNT, FakeAnalyzer, axis, observation, unit
from core.catalog.errors import (
    AssetNotFound,
    CrossAccountAssignment,
    FaceNotFound,
    InvalidInputError,
    InvariantViolation,
    ModelUnavailable,
    PersonNotFound,
    PersonWouldBeOrphaned,
)
from core.catalog.models import BoundingBox, FaceSource
from core.catalog.service import FaceCatalog


def _face(catalog, vector=None, asset_id="asset-1", account=ACCOUNT, person_id=None):
    return catalog.create_face(
        account, asset_id, BoundingBox(10, 10, 60, 70), embedding=vector, person_id=person_id
    )


def _person_state(person):
    return (person.id, person.account_id, person.name, person.face_count, person.representative_face_id)


def _face_state(face):
    return (face.id, face.account_id, face.person_id, face.bbox.as_tuple())


class TestFaces:

    def test_create_and_get(self, catalog, asset):
        face = _face(catalog, axis(0))
        assert catalog.get_face(ACCOUNT, face.id).asset_id == asset.id
        assert catalog.index.contains(face.id)

    def test_create_with_person(self, catalog, asset):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        face = _face(catalog, axis(0), person_id=alice.id)
        assert face.person_id == alice.id
        assert catalog.get_person(ACCOUNT, alice.id).face_count == 1

    def test_create_with_unknown_person_leaves_nothing(self, catalog, asset):
        with pytest.raises(PersonNotFound):
            _face(catalog, axis(0), person_id="nobody")
        assert catalog.store.count() == 0
        assert catalog.index.size() == 0

    def test_create_with_foreign_person(self, catalog, asset):
        foreign = catalog.create_person(OTHER_ACCOUNT, name="Mallory")
        with pytest.raises(CrossAccountAssignment):
            _face(catalog, axis(0), person_id=foreign.id)
        assert catalog.store.count() == 0

    def test_get_faces_by_asset_filters(self, catalog, asset):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        a = _face(catalog, axis(0), person_id=alice.id)
        b = _face(catalog, axis(1))
        assert [f.id for f in catalog.get_faces_by_id(ACCOUNT, asset.id)] == [a.id, b.id]
        assert [f.id for f in catalog.get_faces_by_id(ACCOUNT, asset.id, assigned=False)] == [b.id]
        assert [f.id for f in catalog.get_faces_by_id(ACCOUNT, asset.id, person_id=alice.id)] == [a.id]
        assert catalog.get_faces_by_id(ACCOUNT, asset.id, source=FaceSource.DETECTED) == []

    def test_get_faces_of_foreign_asset(self, catalog, asset):
        with pytest.raises(AssetNotFound):
            catalog.get_faces_by_id(OTHER_ACCOUNT, asset.id)

    def test_foreign_face_is_not_found(self, catalog, asset):
        face = _face(catalog, axis(0))
        with pytest.raises(FaceNotFound):
            catalog.get_face(OTHER_ACCOUNT, face.id)
        with pytest.raises(FaceNotFound):
            catalog.delete_face(OTHER_ACCOUNT, face.id)

    def test_delete_shrinks_index_by_one(self, catalog, asset):
        faces = [_face(catalog, axis(i)) for i in range(3)]
        catalog.delete_face(ACCOUNT, faces[1].id)
        assert catalog.index.size(ACCOUNT) == 2
        assert not catalog.index.contains(faces[1].id)
        catalog.check_invariants()


class TestReassign:

    def test_reassign_between_people(self, catalog, asset):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        bob = catalog.create_person(ACCOUNT, name="Bob")
        face = _face(catalog, axis(0), person_id=alice.id)
        _face(catalog, axis(1), person_id=alice.id)

        updated = catalog.reassign_faces_by_id(ACCOUNT, bob.id, face.id)

        assert updated.id == bob.id
        assert updated.face_count == 1
        assert catalog.get_person(ACCOUNT, alice.id).face_count == 1
        catalog.check_invariants()

    def test_reassign_to_foreign_person_changes_nothing(self, catalog, asset):
        catalog.register_asset(OTHER_ACCOUNT, 640, 480, asset_id="asset-2")
        foreign = catalog.create_person(OTHER_ACCOUNT, name="Mallory")
        foreign_face = _face(catalog, axis(2), asset_id="asset-2", account=OTHER_ACCOUNT, person_id=foreign.id)
        alice = catalog.create_person(ACCOUNT, name="Alice")
        owned = _face(catalog, axis(0), person_id=alice.id)
        loose = _face(catalog, axis(1))

        def snapshot():
            people = [
                _person_state(catalog.get_person(OTHER_ACCOUNT, foreign.id)),
                _person_state(catalog.get_person(ACCOUNT, alice.id)),
            ]
            faces = [
                _face_state(catalog.get_face(OTHER_ACCOUNT, foreign_face.id)),
                _face_state(catalog.get_face(ACCOUNT, owned.id)),
                _face_state(catalog.get_face(ACCOUNT, loose.id)),
            ]
            return people, faces

        before = snapshot()
        for face in (loose, owned):
            with pytest.raises(CrossAccountAssignment):
                catalog.reassign_faces_by_id(ACCOUNT, foreign.id, face.id)

        assert snapshot() == before
        assert [f.id for f in catalog.get_person_faces(OTHER_ACCOUNT, foreign.id)] == [foreign_face.id]
        catalog.check_invariants()

    def test_reassign_last_face_of_unnamed_person_collects_it(self, catalog, asset):
        face = _face(catalog, axis(0))
        cluster = catalog.recognize_face(ACCOUNT, face.id)
        alice = catalog.create_person(ACCOUNT, name="Alice")

        catalog.reassign_faces_by_id(ACCOUNT, alice.id, face.id)

        with pytest.raises(PersonNotFound):
            catalog.get_person(ACCOUNT, cluster.id)


class TestOrphanScenario:

    def test_named_person_protected_until_forced(self, catalog, asset):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        face = _face(catalog, axis(0), person_id=alice.id)

        with pytest.raises(PersonWouldBeOrphaned):
            catalog.delete_face(ACCOUNT, face.id)
        assert catalog.get_face(ACCOUNT, face.id).person_id == alice.id

        catalog.delete_face(ACCOUNT, face.id, force=True)
        person = catalog.get_person(ACCOUNT, alice.id)
        assert person.face_count == 0
        assert person.name == "Alice"
        catalog.check_invariants()

    def test_second_to_last_face_needs_no_force(self, catalog, asset):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        first = _face(catalog, axis(0), person_id=alice.id)
        _face(catalog, axis(1), person_id=alice.id)
        catalog.delete_face(ACCOUNT, first.id)
        assert catalog.get_person(ACCOUNT, alice.id).face_count == 1


class TestDetectRecognize:

    def test_detect_stores_detected_faces(self, catalog, analyzer, asset):
        analyzer.observations = [
            observation(axis(0), score=0.6),
            observation(axis(1), score=0.95),
        ]
        faces = catalog.detect_faces(ACCOUNT, asset.id, b"image")
        assert len(faces) == 2
        assert faces[0].score == pytest.approx(0.95)
        assert all(f.source == FaceSource.DETECTED for f in faces)
        assert catalog.index.size(ACCOUNT) == 2

    def test_detect_clips_and_skips_outside_boxes(self, catalog, analyzer, asset):
        analyzer.observations = [
            observation(axis(0), box=(600, 400, 700, 500)),   # partly outside
            observation(axis(1), box=(700, 500, 800, 600)),   # fully outside
        ]
        faces = catalog.detect_faces(ACCOUNT, asset.id, b"image")
        assert len(faces) == 1
        assert faces[0].bbox.as_tuple() == (600, 400, 640, 480)

    def test_detect_without_analyzer(self, catalog, asset):
        catalog.analyzer = None
        with pytest.raises(ModelUnavailable):
            catalog.detect_faces(ACCOUNT, asset.id, b"image")

    def test_recognize_starts_new_person(self, catalog, asset):
        face = _face(catalog, axis(0))
        person = catalog.recognize_face(ACCOUNT, face.id)
        assert person.face_count == 1
        assert person.name == ""
        assert person.representative_face_id == face.id

    def test_recognize_joins_similar_person(self, catalog, asset):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        _face(catalog, unit(1, 0.05), person_id=alice.id)
        face = _face(catalog, axis(0))
        assert catalog.recognize_face(ACCOUNT, face.id).id == alice.id

    def test_recognize_ignores_dissimilar_person(self, catalog, asset):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        _face(catalog, axis(1), person_id=alice.id)
        face = _face(catalog, axis(0))
        assert catalog.recognize_face(ACCOUNT, face.id).id != alice.id

    def test_recognize_assigned_face_keeps_person(self, catalog, asset):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        face = _face(catalog, axis(0), person_id=alice.id)
        assert catalog.recognize_face(ACCOUNT, face.id).id == alice.id

    def test_recognize_manual_face_refused(self, catalog, asset):
        face = _face(catalog, None)
        with pytest.raises(InvalidInputError):
            catalog.recognize_face(ACCOUNT, face.id)

    def test_detach(self, catalog, asset):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        face = _face(catalog, axis(0), person_id=alice.id)
        assert catalog.detach_face(ACCOUNT, face.id).person_id is None
        assert catalog.get_person(ACCOUNT, alice.id).face_count == 0


class TestPeople:

    def test_create_person_with_faces(self, catalog, asset):
        a, b = _face(catalog, axis(0)), _face(catalog, axis(1))
        person = catalog.create_person(ACCOUNT, name="Alice", face_ids=[a.id, b.id])
        assert person.face_count == 2
        assert [f.id for f in catalog.get_person_faces(ACCOUNT, person.id)] == [a.id, b.id]

    def test_person_faces_skip_face_deleted_while_listing(self, catalog, asset, monkeypatch):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        kept = _face(catalog, axis(0), person_id=alice.id)
        gone = _face(catalog, axis(1), person_id=alice.id)
        listed = catalog.tables.member_ids
        deleted = []

        def listed_then_deleted(person_id):
            ids = listed(person_id)
            if not deleted:
                deleted.append(gone.id)
                catalog.delete_face(ACCOUNT, gone.id)
            return ids

        monkeypatch.setattr(catalog.tables, "member_ids", listed_then_deleted)
        faces = catalog.get_person_faces(ACCOUNT, alice.id)

        assert deleted == [gone.id]
        assert [f.id for f in faces] == [kept.id]

    def test_create_person_with_foreign_face_creates_nothing(self, catalog, asset):
        catalog.register_asset(OTHER_ACCOUNT, 640, 480, asset_id="asset-2")
        foreign = _face(catalog, axis(0), asset_id="asset-2", account=OTHER_ACCOUNT)
        with pytest.raises(FaceNotFound):
            catalog.create_person(ACCOUNT, name="Alice", face_ids=[foreign.id])
        assert catalog.list_people(ACCOUNT) == []

    def test_list_people_filters(self, catalog, asset):
        catalog.create_person(ACCOUNT, name="Alice")
        hidden = catalog.create_person(ACCOUNT, name="Bob")
        catalog.update_person(ACCOUNT, hidden.id, is_hidden=True)
        catalog.recognize_face(ACCOUNT, _face(catalog, axis(0)).id)

        assert len(catalog.list_people(ACCOUNT)) == 3
        assert len(catalog.list_people(ACCOUNT, include_hidden=False)) == 2
        assert [p.name for p in catalog.list_people(ACCOUNT, named=True)] == ["Alice", "Bob"]
        assert catalog.list_people(OTHER_ACCOUNT) == []

    def test_update_person_in_other_account(self, catalog, asset):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        with pytest.raises(PersonNotFound):
            catalog.update_person(OTHER_ACCOUNT, alice.id, name="Eve")

    def test_merge_people(self, catalog, asset):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        _face(catalog, axis(0), person_id=alice.id)
        dup = catalog.recognize_face(ACCOUNT, _face(catalog, axis(1)).id)
        merged = catalog.merge_people(ACCOUNT, alice.id, [dup.id])
        assert merged.face_count == 2
        catalog.check_invariants()

    def test_delete_person(self, catalog, asset):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        face = _face(catalog, axis(0), person_id=alice.id)
        assert catalog.delete_person(ACCOUNT, alice.id) == [face.id]
        assert catalog.get_face(ACCOUNT, face.id).person_id is None


class TestDiagnosticsAndPersistence:

    def test_check_invariants_detects_stray_index_entry(self, catalog, asset):
        face = _face(catalog, axis(0))
        catalog.tables.faces.pop(face.id)
        with pytest.raises(InvariantViolation):
            catalog.check_invariants()

    def test_stats(self, catalog, asset):
        _face(catalog, axis(0))
        stats = catalog.stats()
        assert stats["faces"] == 1
        assert stats["index"]["total_vectors"] == 1
        assert stats["breaker"] == "closed"
        assert stats["analyzer_loaded"] is True

    def test_save_and_load(self, catalog, asset, tmp_path):
        alice = catalog.create_person(ACCOUNT, name="Alice")
        face = _face(catalog, axis(0), person_id=alice.id)
        manual = _face(catalog, None)
        path = catalog.save(tmp_path / "catalog.pkl")

        restored = FaceCatalog(default_model=catalog.tables.default_model, analyzer=FakeAnalyzer())
        restored.load(path)

        assert restored.get_person(ACCOUNT, alice.id).face_count == 1
        assert restored.get_face(ACCOUNT, face.id).person_id == alice.id
        assert restored.index.contains(face.id)
        assert not restored.index.contains(manual.id)
        restored.check_invariants()

        newer = restored.create_face(ACCOUNT, "asset-1", BoundingBox(0, 0, 5, 5))
        assert newer.seq > manual.seq

    def test_load_missing_file(self, catalog, tmp_path):
        with pytest.raises(FileNotFoundError):
            catalog.load(tmp_path / "missing.pkl")

    def test_load_garbage(self, catalog, tmp_path):
        import pickle

        path = tmp_path / "bad.pkl"
        path.write_bytes(pickle.dumps(["not", "a", "snapshot"]))
        with pytest.raises(ValueError):
            catalog.load(path)
