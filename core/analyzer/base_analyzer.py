# ============================================================
# Face Catalog
# core/analyzer/base_analyzer.py
# ============================================================
# Detector + embedder seam.
#
# The catalog only ever calls ``detect_and_embed(image_bytes)``;
# anything that returns FaceObservation objects in detector
# confidence order can stand behind it (InsightFace in
# production, fakes in tests).
# ============================================================

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from core.catalog.models import BoundingBox


@dataclass
class FaceObservation:
    """
    One face found by an analyzer.

    Attributes:
        bbox:      Box in pixel coordinates of the analysed image.
        embedding: Embedding vector (unnormalised is fine).
        score:     Detector confidence in [0, 1].
    """

    bbox: BoundingBox
    embedding: np.ndarray = field(repr=False)
    score: float = 1.0

    @property
    def dim(self) -> int:
        return int(np.asarray(self.embedding).reshape(-1).shape[0])


@dataclass
class AnalysisResult:
    """Observations of one image plus the image size they refer to."""

    observations: List[FaceObservation]
    image_width: int
    image_height: int
    inference_time_ms: float = 0.0

    @property
    def num_faces(self) -> int:
        return len(self.observations)


class BaseAnalyzer(ABC):
    """
    Abstract face analyzer.

    Subclasses must implement:
        - ``load_model()``
        - ``analyze(image_bytes)``  - observations + image size

    Context-manager usage (auto load + release)::

        with InsightFaceAnalyzer(...) as analyzer:
            observations = analyzer.detect_and_embed(image_bytes)
    """

    def __init__(self, model_name: str = "buffalo_l", embedding_dim: int = 512) -> None:
        self._model_name = model_name
        self.embedding_dim = int(embedding_dim)
        self._model = None
        self._is_loaded: bool = False

    @abstractmethod
    def load_model(self) -> None:
        """Load weights; raise ``RuntimeError`` on failure."""

    @abstractmethod
    def analyze(self, image_bytes: bytes) -> AnalysisResult:
        """
        Detect and embed every face in an encoded image.

        Raises:
            InvalidImage:  bytes that do not decode to an image.
            RuntimeError:  model not loaded or inference failure.
        """

    def detect_and_embed(self, image_bytes: bytes) -> List[FaceObservation]:
        """Observations sorted by detector confidence, highest first."""
        result = self.analyze(image_bytes)
        return sorted(result.observations, key=lambda o: o.score, reverse=True)

    def release(self) -> None:
        self._model = None
        self._is_loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._is_loaded

    @property
    def model_name(self) -> str:
        return self._model_name

    def get_model_info(self) -> dict:
        return {
            "model_name": self.model_name,
            "embedding_dim": self.embedding_dim,
            "is_loaded": self._is_loaded,
        }

    def __enter__(self) -> "BaseAnalyzer":
        if not self._is_loaded:
            self.load_model()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def _require_loaded(self) -> None:
        if not self._is_loaded:
            raise RuntimeError(
                f"{self.__class__.__name__} model is not loaded. "
                "Call load_model() first or use as a context manager."
            )

    @staticmethod
    def _timer() -> float:
        """Return current time in milliseconds."""
        return time.perf_counter() * 1000.0

    def __repr__(self) -> str:
        status = "loaded" if self._is_loaded else "not loaded"
        return f"{self.__class__.__name__}(model={self.model_name!r}, status={status})"


def bbox_from_array(raw, image_size: Optional[Tuple[int, int]] = None) -> BoundingBox:
    """Build a BoundingBox from an ``[x1, y1, x2, y2]`` array, clipped to the image."""
    b = np.asarray(raw, dtype=np.float64).reshape(-1)
    box = BoundingBox(float(b[0]), float(b[1]), float(b[2]), float(b[3]))
    if image_size is not None:
        box = box.clip(*image_size)
    return box
