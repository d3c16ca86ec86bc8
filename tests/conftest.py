"""Shared pytest fixtures for all test modules."""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np
import pytest

from core.analyzer.base_analyzer import AnalysisResult, BaseAnalyzer, FaceObservation
from core.catalog.models import BoundingBox, EmbeddingModel
from core.catalog.service import FaceCatalog

DIM = 8
ACCOUNT = "acct-a"
OTHER_ACCOUNT = "acct-b"


def unit(*values: float) -> np.ndarray:
    """Pad *values* with zeros to DIM and L2-normalise."""
    v = np.zeros(DIM, dtype=np.float32)
    v[: len(values)] = values
    return v / np.linalg.norm(v)


def axis(i: int) -> np.ndarray:
    """Unit vector along axis *i*."""
    return unit(*([0.0] * i + [1.0]))


def rand_vec(seed: int = 0, dim: int = DIM) -> np.ndarray:
    rng = np.random.default_rng(seed)
    v = rng.standard_normal(dim).astype(np.float32)
    return v / np.linalg.norm(v)


class FakeAnalyzer(BaseAnalyzer):
    """Returns preset observations for any non-empty upload."""

    def __init__(
        self,
        observations: Optional[Sequence[FaceObservation]] = None,
        error: Optional[BaseException] = None,
        embedding_dim: int = DIM,
    ) -> None:
        super().__init__(model_name="fake", embedding_dim=embedding_dim)
        self.observations: List[FaceObservation] = list(observations or [])
        self.error = error
        self.calls = 0

    def load_model(self) -> None:
        self._is_loaded = True

    def analyze(self, image_bytes: bytes) -> AnalysisResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return AnalysisResult(
            observations=list(self.observations),
            image_width=640,
            image_height=480,
        )


def observation(vector: np.ndarray, score: float = 0.9, box=(10, 10, 60, 70)) -> FaceObservation:
    return FaceObservation(bbox=BoundingBox(*box), embedding=vector, score=score)


@pytest.fixture
def box() -> BoundingBox:
    return BoundingBox(10, 10, 60, 70)


@pytest.fixture
def analyzer() -> FakeAnalyzer:
    fake = FakeAnalyzer()
    fake.load_model()
    return fake


@pytest.fixture
def catalog(analyzer: FakeAnalyzer) -> FaceCatalog:
    """Small-dimension catalog with the fake analyzer attached."""
    return FaceCatalog(
        default_model=EmbeddingModel(name="test-model", dim=DIM),
        analyzer=analyzer,
        matrix_threshold=16,
        identify_min_similarity=0.5,
        cluster_min_similarity=0.8,
        lock_timeout=2.0,
    )


@pytest.fixture
def asset(catalog: FaceCatalog):
    return catalog.register_asset(ACCOUNT, width=640, height=480, asset_id="asset-1")
