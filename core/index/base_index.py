# ============================================================
# Face Catalog
# core/index/base_index.py
# ============================================================
# Capability interfaces and shared types for the embedding index.
#
#   EmbeddingIndex   - account-scoped contract used by the stores
#                      and the identification engine
#   VectorPartition  - one account's vectors; FlatIndex and
#                      MatrixIndex are interchangeable backends
#
# Both are typing.Protocol classes: backends satisfy them
# structurally, nothing inherits from them.
#
# Ranking rule shared by every backend:
#   similarity descending, ties by insertion sequence ascending.
# ============================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, NamedTuple, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from core.catalog.errors import InvalidInputError


@dataclass(frozen=True)
class IndexEntry:
    """
    One stored vector.

    Attributes:
        account_id: Owning account (partition key).
        face_id:    Owning face.
        vector:     L2-normalised (D,) float32 array, read-only.
        seq:        Insertion sequence used to break similarity ties.
    """

    account_id: str
    face_id: str
    vector: np.ndarray = field(repr=False, compare=False)
    seq: int = 0


class IndexHit(NamedTuple):
    """A single nearest-neighbour result."""

    face_id: str
    similarity: float


@runtime_checkable
class VectorPartition(Protocol):
    """Storage for the vectors of one account."""

    backend: str

    def insert(self, entry: IndexEntry) -> None: ...

    def remove(self, face_id: str) -> Optional[IndexEntry]: ...

    def query_knn(self, vector: np.ndarray, k: int, min_similarity: float) -> List[IndexHit]: ...

    def entries(self) -> List[IndexEntry]: ...

    def __contains__(self, face_id: object) -> bool: ...

    def __len__(self) -> int: ...


@runtime_checkable
class EmbeddingIndex(Protocol):
    """Account-scoped nearest-neighbour index over face embeddings."""

    def insert(self, account_id: str, face_id: str, vector: np.ndarray) -> IndexEntry: ...

    def remove(self, face_id: str) -> None: ...

    def query_knn(
        self,
        account_id: str,
        vector: np.ndarray,
        k: int,
        min_similarity: float = -1.0,
    ) -> List[IndexHit]: ...


# ============================================================
# Vector helpers
# ============================================================

def as_vector(vector: Iterable[float] | np.ndarray) -> np.ndarray:
    """
    Convert *vector* to a flat float32 array and reject garbage.

    Raises:
        InvalidInputError: empty vectors or NaN / Inf values.
    """
    arr = np.asarray(vector, dtype=np.float32).reshape(-1)
    if arr.size == 0:
        raise InvalidInputError("Embedding vector is empty.")
    if not np.isfinite(arr).all():
        raise InvalidInputError("Embedding vector contains NaN or Inf values.")
    return arr


def l2_normalise(vector: np.ndarray) -> np.ndarray:
    """Unit-normalise *vector*; zero vectors are returned unchanged."""
    norm = float(np.linalg.norm(vector))
    if norm < 1e-10:
        return vector.astype(np.float32)
    return (vector / norm).astype(np.float32)


def frozen(vector: np.ndarray) -> np.ndarray:
    """Return a read-only copy, safe to share between snapshots."""
    out = np.array(vector, dtype=np.float32, copy=True)
    out.setflags(write=False)
    return out


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity between two 1-D vectors, clipped to [-1, 1].

    Zero vectors have similarity 0.0 with everything.
    """
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a < 1e-10 or norm_b < 1e-10:
        return 0.0
    return float(np.clip(np.dot(a, b) / (norm_a * norm_b), -1.0, 1.0))


def rank(
    face_ids: Sequence[str],
    seqs: np.ndarray,
    sims: np.ndarray,
    k: int,
    min_similarity: float,
) -> List[IndexHit]:
    """
    Apply the threshold and the shared ordering rule.

    Args:
        face_ids: Candidate face ids, aligned with *seqs* / *sims*.
        seqs:     Insertion sequence of each candidate.
        sims:     Cosine similarity of each candidate.
        k:        Maximum number of hits.
        min_similarity: Inclusive lower bound.
    """
    if k <= 0 or len(face_ids) == 0:
        return []

    sims = np.clip(np.asarray(sims, dtype=np.float64), -1.0, 1.0)
    seqs = np.asarray(seqs, dtype=np.int64)

    keep = np.flatnonzero(sims >= min_similarity)
    if keep.size == 0:
        return []

    # lexsort: last key is primary
    order = keep[np.lexsort((seqs[keep], -sims[keep]))][:k]
    return [IndexHit(face_ids[i], float(sims[i])) for i in order]
