# Unit tests for the identification pipeline:
#   - candidate ranking, thresholds and per-person dedupe
#   - account isolation
#   - state machine transitions and error states
#   - analyzer failures and the circuit breaker

from __future__ import annotations

import pytest

from conftest import ACCOUNT, OTHER_ACCOUNT, DIM, FakeAnalyzer, axis, observation, unit
from core.catalog.errors import (
    DimensionMismatch,
    EmptyUpload,
    InvalidImage,
    ModelUnavailable,
)
from core.catalog.models import BoundingBox, EmbeddingModel
from core.catalog.service import FaceCatalog
from core.identification import IdentifyState
from utils.circuit_breaker import CircuitBreaker


def _named_face(catalog, name, vector, account=ACCOUNT, asset_id="asset-1"):
    person = catalog.create_person(account, name=name)
    catalog.create_face(
        account, asset_id, BoundingBox(0, 0, 10, 10), embedding=vector, person_id=person.id
    )
    return person


class TestIdentify:

    def test_two_faces_one_known(self, catalog, analyzer, asset):
        alice = _named_face(catalog, "Alice", axis(0))
        _named_face(catalog, "Bob", axis(1))
        analyzer.observations = [
            observation(unit(1, 0.1), score=0.99),
            observation(axis(5), score=0.80),
        ]

        result = catalog.identify_faces(ACCOUNT, b"image")

        assert result.num_faces == 2
        first, second = result.faces
        assert first.is_known
        assert first.best.person_id == alice.id
        assert first.best.name == "Alice"
        assert first.best.similarity == pytest.approx(0.995, abs=1e-3)
        assert not second.is_known
        assert second.candidates == []

    def test_faces_ordered_by_detector_score(self, catalog, analyzer, asset):
        analyzer.observations = [observation(axis(0), score=0.2), observation(axis(1), score=0.9)]
        result = catalog.identify_faces(ACCOUNT, b"image")
        assert [f.score for f in result.faces] == [0.9, 0.2]

    def test_candidates_deduplicated_per_person(self, catalog, analyzer, asset):
        alice = _named_face(catalog, "Alice", unit(1, 0.2))
        catalog.create_face(
            ACCOUNT, "asset-1", BoundingBox(0, 0, 10, 10), embedding=axis(0), person_id=alice.id
        )
        analyzer.observations = [observation(axis(0))]

        candidates = catalog.identify_faces(ACCOUNT, b"image").faces[0].candidates

        assert len(candidates) == 1
        assert candidates[0].similarity == pytest.approx(1.0)

    def test_candidates_ranked_by_similarity(self, catalog, analyzer, asset):
        close = _named_face(catalog, "Close", unit(1, 0.1))
        closer = _named_face(catalog, "Closer", unit(1, 0.01))
        analyzer.observations = [observation(axis(0))]

        candidates = catalog.identify_faces(ACCOUNT, b"image", min_similarity=0.0).faces[0].candidates

        assert [c.person_id for c in candidates] == [closer.id, close.id]

    def test_threshold_and_k(self, catalog, analyzer, asset):
        for i in range(4):
            _named_face(catalog, f"P{i}", unit(1, 0.1 * (i + 1)))
        analyzer.observations = [observation(axis(0))]

        assert len(catalog.identify_faces(ACCOUNT, b"img", k=2).faces[0].candidates) == 2
        assert catalog.identify_faces(ACCOUNT, b"img", min_similarity=0.9999).faces[0].candidates == []

    def test_unassigned_faces_are_not_candidates(self, catalog, analyzer, asset):
        catalog.create_face(ACCOUNT, "asset-1", BoundingBox(0, 0, 10, 10), embedding=axis(0))
        analyzer.observations = [observation(axis(0))]
        assert not catalog.identify_faces(ACCOUNT, b"image").faces[0].is_known

    def test_other_accounts_never_match(self, catalog, analyzer, asset):
        catalog.register_asset(OTHER_ACCOUNT, 100, 100, asset_id="asset-2")
        _named_face(catalog, "Mallory", axis(0), account=OTHER_ACCOUNT, asset_id="asset-2")
        analyzer.observations = [observation(axis(0))]
        assert not catalog.identify_faces(ACCOUNT, b"image").faces[0].is_known

    def test_no_faces_in_image(self, catalog, analyzer):
        result = catalog.identify_faces(ACCOUNT, b"image")
        assert result.num_faces == 0
        assert result.state == IdentifyState.RESPONDED

    def test_identify_is_read_only(self, catalog, analyzer, asset):
        _named_face(catalog, "Alice", axis(0))
        analyzer.observations = [observation(axis(0))]
        before = catalog.stats()
        catalog.identify_faces(ACCOUNT, b"image")
        after = catalog.stats()
        assert (before["faces"], before["persons"]) == (after["faces"], after["persons"])


class TestStates:

    def test_transitions_in_order(self, catalog, analyzer):
        seen = []
        catalog.engine.on_transition = seen.append
        catalog.identify_faces(ACCOUNT, b"image")
        assert seen == [
            IdentifyState.RECEIVED,
            IdentifyState.DETECTING,
            IdentifyState.EMBEDDING,
            IdentifyState.MATCHING,
            IdentifyState.RANKED,
            IdentifyState.RESPONDED,
        ]

    def test_empty_upload_fails_in_received(self, catalog, analyzer):
        with pytest.raises(EmptyUpload) as info:
            catalog.identify_faces(ACCOUNT, b"")
        assert info.value.details["state"] == "received"
        assert analyzer.calls == 0

    def test_dimension_mismatch_fails_in_embedding(self, catalog, analyzer):
        analyzer.observations = [observation(axis(0).tolist() + [0.0])]
        with pytest.raises(DimensionMismatch) as info:
            catalog.identify_faces(ACCOUNT, b"image")
        assert info.value.details["state"] == "embedding"

    def test_invalid_image_fails_in_detecting(self, catalog, analyzer):
        analyzer.error = InvalidImage("not an image")
        with pytest.raises(InvalidImage) as info:
            catalog.identify_faces(ACCOUNT, b"garbage")
        assert info.value.details["state"] == "detecting"
        assert catalog.engine.breaker.failure_count == 0


class TestAnalyzerFailures:

    def test_no_analyzer(self):
        catalog = FaceCatalog(default_model=EmbeddingModel("m", DIM))
        with pytest.raises(ModelUnavailable):
            catalog.identify_faces(ACCOUNT, b"image")

    def test_analyzer_crash_is_unavailable(self, catalog, analyzer):
        analyzer.error = RuntimeError("CUDA out of memory")
        with pytest.raises(ModelUnavailable):
            catalog.identify_faces(ACCOUNT, b"image")

    def test_open_breaker_short_circuits(self):
        fake = FakeAnalyzer(error=RuntimeError("down"))
        catalog = FaceCatalog(
            default_model=EmbeddingModel("m", DIM),
            analyzer=fake,
            breaker=CircuitBreaker("analyzer", failure_threshold=2, recovery_timeout=60.0),
        )
        for _ in range(2):
            with pytest.raises(ModelUnavailable):
                catalog.identify_faces(ACCOUNT, b"image")

        with pytest.raises(ModelUnavailable) as info:
            catalog.identify_faces(ACCOUNT, b"image")

        assert fake.calls == 2
        assert info.value.retry_after > 0
        assert info.value.details["state"] == "detecting"
