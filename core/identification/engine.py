# ============================================================
# Face Catalog
# core/identification/engine.py
# ============================================================
# Read-only "who is in this picture?" pipeline.
#
#   RECEIVED → DETECTING → EMBEDDING → MATCHING → RANKED → RESPONDED
#
# No retries.  A failure in any state aborts the request with an
# error whose ``details["state"]`` names the state it failed in.
# Nothing in this module writes to the catalog.
# ============================================================

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

import numpy as np

from core.analyzer.base_analyzer import FaceObservation
from core.catalog.errors import (
    CatalogError,
    DimensionMismatch,
    EmptyUpload,
    InvalidInputError,
    ModelUnavailable,
)
from core.catalog.models import BoundingBox, EmbeddingModel
from core.catalog.tables import CatalogTables
from core.index.account_index import AccountIndex
from core.index.base_index import as_vector
from utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from utils.logger import get_logger

logger = get_logger(__name__)


class FaceAnalyzer(Protocol):
    def detect_and_embed(self, image_bytes: bytes) -> List[FaceObservation]: ...


class IdentifyState(str, Enum):
    RECEIVED = "received"
    DETECTING = "detecting"
    EMBEDDING = "embedding"
    MATCHING = "matching"
    RANKED = "ranked"
    RESPONDED = "responded"


@dataclass
class PersonCandidate:
    """A known person that matches an observed face."""

    person_id: str
    name: str
    similarity: float
    face_id: str          # best-matching stored face of this person

    def to_dict(self) -> dict:
        return {
            "person_id": self.person_id,
            "name": self.name,
            "similarity": round(self.similarity, 6),
            "face_id": self.face_id,
        }


@dataclass
class IdentifiedFace:
    """One observed face with its ranked candidate people."""

    bbox: BoundingBox
    score: float
    candidates: List[PersonCandidate] = field(default_factory=list)

    @property
    def best(self) -> Optional[PersonCandidate]:
        return self.candidates[0] if self.candidates else None

    @property
    def is_known(self) -> bool:
        return bool(self.candidates)


@dataclass
class IdentificationResult:
    faces: List[IdentifiedFace]
    state: IdentifyState = IdentifyState.RESPONDED
    inference_time_ms: float = 0.0

    @property
    def num_faces(self) -> int:
        return len(self.faces)


class IdentificationEngine:
    """
    Detects faces in an upload and ranks the known people they match.

    Args:
        index:     Embedding index shared with the face store.
        tables:    Catalog rows (read only).
        analyzer:  Any object with ``detect_and_embed(image_bytes)``;
                   None means no model is loaded.
        breaker:   Circuit breaker around the analyzer.
        default_k: Neighbours fetched per observed face.
        default_min_similarity: Candidate similarity threshold.
    """

    def __init__(
        self,
        index: AccountIndex,
        tables: CatalogTables,
        analyzer: Optional[FaceAnalyzer] = None,
        breaker: Optional[CircuitBreaker] = None,
        default_k: int = 10,
        default_min_similarity: float = 0.45,
    ) -> None:
        self.index = index
        self.tables = tables
        self.analyzer = analyzer
        self.breaker = breaker or CircuitBreaker("analyzer")
        self.default_k = default_k
        self.default_min_similarity = default_min_similarity
        self.on_transition: Optional[Callable[[IdentifyState], None]] = None

    def identify(
        self,
        account_id: str,
        image_bytes: bytes,
        k: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ) -> IdentificationResult:
        """
        Run the full pipeline on *image_bytes* for *account_id*.

        Raises:
            EmptyUpload:       no image bytes.
            ModelUnavailable:  no analyzer, breaker open or analyzer failure.
            DimensionMismatch: analyzer produced vectors of the wrong size.
        """
        k = self.default_k if k is None else int(k)
        threshold = self.default_min_similarity if min_similarity is None else float(min_similarity)
        t0 = time.perf_counter()

        state = self._enter(IdentifyState.RECEIVED)
        try:
            if not image_bytes:
                raise EmptyUpload()
            if k < 1:
                raise InvalidInputError(f"k must be >= 1, got {k}.")

            state = self._enter(IdentifyState.DETECTING)
            observations = self.detect(image_bytes)

            state = self._enter(IdentifyState.EMBEDDING)
            model = self.tables.model_for(account_id)
            vectors = [self._validated(obs, model) for obs in observations]

            state = self._enter(IdentifyState.MATCHING)
            faces = [
                IdentifiedFace(
                    bbox=obs.bbox,
                    score=float(obs.score),
                    candidates=self._match(account_id, vec, k, threshold),
                )
                for obs, vec in zip(observations, vectors)
            ]

            state = self._enter(IdentifyState.RANKED)
        except CatalogError as exc:
            exc.details.setdefault("state", state.value)
            logger.warning(f"Identification failed in state {state.value}: {exc.message}")
            raise

        elapsed = (time.perf_counter() - t0) * 1000.0
        self._enter(IdentifyState.RESPONDED)
        known = sum(1 for f in faces if f.is_known)
        logger.info(
            f"Identified {len(faces)} face(s), {known} known | account={account_id} | "
            f"{elapsed:.0f} ms"
        )
        return IdentificationResult(faces=faces, inference_time_ms=elapsed)

    # ------------------------------------------------------------------

    def _enter(self, state: IdentifyState) -> IdentifyState:
        if self.on_transition is not None:
            self.on_transition(state)
        return state

    def detect(self, image_bytes: bytes) -> List[FaceObservation]:
        """Run the analyzer through the circuit breaker, best face first."""
        if self.analyzer is None:
            raise ModelUnavailable("No face analyzer is loaded.")
        try:
            observations = self.breaker.call(
                self.analyzer.detect_and_embed, image_bytes, ignore=(CatalogError,)
            )
        except CircuitOpenError as exc:
            raise ModelUnavailable(
                f"Face analyzer temporarily unavailable; retry after {exc.retry_after:.0f}s.",
                retry_after=exc.retry_after,
            ) from exc
        except CatalogError:
            raise
        except Exception as exc:
            logger.exception("Face analyzer failed")
            raise ModelUnavailable("Face analyzer failed.") from exc
        return sorted(observations, key=lambda o: o.score, reverse=True)

    def _validated(self, obs: FaceObservation, model: EmbeddingModel) -> np.ndarray:
        vec = as_vector(obs.embedding)
        if vec.shape[0] != model.dim:
            raise DimensionMismatch(expected=model.dim, got=int(vec.shape[0]))
        return vec

    def _match(self, account_id: str, vector: np.ndarray, k: int, threshold: float) -> List[PersonCandidate]:
        hits = self.index.query_knn(account_id, vector, k, threshold)
        best: Dict[str, PersonCandidate] = {}
        for face_id, similarity in hits:
            face = self.tables.face(face_id)
            if face is None or face.account_id != account_id or face.person_id is None:
                continue
            person = self.tables.person(face.person_id)
            if person is None or person.account_id != account_id:
                continue
            seen = best.get(person.id)
            if seen is None or similarity > seen.similarity:
                best[person.id] = PersonCandidate(
                    person_id=person.id,
                    name=person.name,
                    similarity=float(similarity),
                    face_id=face_id,
                )
        # hits are already similarity-ordered; stable sort keeps tie order
        return sorted(best.values(), key=lambda c: c.similarity, reverse=True)
