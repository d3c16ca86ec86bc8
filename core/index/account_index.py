# ============================================================
# Face Catalog
# core/index/account_index.py
# ============================================================
# Account-partitioned embedding index.
#
# Each account owns one VectorPartition.  Small accounts use the
# FlatIndex scan; once a partition grows past
# ``matrix_threshold`` entries it is rebuilt as a MatrixIndex.
# Selection is by account scale, the contract is the same.
#
# Locking:
#   - one write lock per account partition
#   - a registry lock guards only the partition / owner maps
#   - queries take no lock at all (partitions are snapshot-based)
# ============================================================

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from core.catalog.errors import DimensionMismatch, InvalidInputError
from core.index.base_index import (
    IndexEntry,
    IndexHit,
    VectorPartition,
    as_vector,
    frozen,
    l2_normalise,
)
from core.index.flat_index import FlatIndex
from core.index.matrix_index import MatrixIndex
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class _Partition:
    dim: int
    backend: VectorPartition
    lock: threading.Lock = field(default_factory=threading.Lock)


class AccountIndex:
    """
    Per-account nearest-neighbour search over face embeddings.

    Quick usage::

        index = AccountIndex(dim=512)
        index.insert("acct-1", face_id, vector)
        hits = index.query_knn("acct-1", query, k=10, min_similarity=0.45)
        for face_id, similarity in hits:
            ...
    """

    def __init__(self, dim: int = 512, matrix_threshold: int = 2048) -> None:
        if dim < 1:
            raise ValueError(f"dim must be >= 1, got {dim}.")
        self.default_dim = int(dim)
        self.matrix_threshold = int(matrix_threshold)

        self._partitions: Dict[str, _Partition] = {}
        self._owners: Dict[str, str] = {}          # face_id → account_id
        self._dims: Dict[str, int] = {}            # per-account overrides
        self._registry_lock = threading.Lock()
        self._seq = itertools.count(1)

        logger.debug(
            f"AccountIndex created | dim={self.default_dim} | "
            f"matrix_threshold={self.matrix_threshold}"
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure_account(self, account_id: str, dim: int) -> None:
        """
        Set the embedding dimension for *account_id*.

        Raises:
            InvalidInputError: if the account already stores vectors of
                               another dimension.
        """
        with self._registry_lock:
            part = self._partitions.get(account_id)
            if part is not None and len(part.backend) and part.dim != dim:
                raise InvalidInputError(
                    f"Account {account_id} already indexes {part.dim}-dim vectors."
                )
            self._dims[account_id] = int(dim)
            if part is not None:
                part.dim = int(dim)

    def dim_for(self, account_id: str) -> int:
        return self._dims.get(account_id, self.default_dim)

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def insert(self, account_id: str, face_id: str, vector: np.ndarray) -> IndexEntry:
        """
        Add (or replace) the vector of *face_id* in *account_id*.

        Raises:
            DimensionMismatch: if ``len(vector)`` differs from the
                               account's configured dimension.
        """
        vec = as_vector(vector)
        dim = self.dim_for(account_id)
        if vec.shape[0] != dim:
            raise DimensionMismatch(expected=dim, got=int(vec.shape[0]))

        entry = IndexEntry(
            account_id=account_id,
            face_id=face_id,
            vector=frozen(l2_normalise(vec)),
            seq=next(self._seq),
        )
        previous = self._owner_of(face_id)
        if previous is not None and previous != account_id:
            self.remove(face_id)
        self._write(entry)
        return entry

    def remove(self, face_id: str) -> None:
        """Remove the vector of *face_id*; absent ids are ignored."""
        self.pop(face_id)

    def query_knn(
        self,
        account_id: str,
        vector: np.ndarray,
        k: int,
        min_similarity: float = -1.0,
    ) -> List[IndexHit]:
        """
        Return up to *k* ``(face_id, similarity)`` hits in *account_id*.

        Hits have ``similarity >= min_similarity`` and are ordered by
        similarity descending, ties by insertion order.

        Raises:
            DimensionMismatch: for a query of the wrong dimension.
            InvalidInputError: for ``k < 1`` or a malformed vector.
        """
        if k < 1:
            raise InvalidInputError(f"k must be >= 1, got {k}.")
        vec = as_vector(vector)
        dim = self.dim_for(account_id)
        if vec.shape[0] != dim:
            raise DimensionMismatch(expected=dim, got=int(vec.shape[0]))

        part = self._partitions.get(account_id)
        if part is None:
            return []
        return part.backend.query_knn(l2_normalise(vec), k, float(min_similarity))

    # ------------------------------------------------------------------
    # Rollback support
    # ------------------------------------------------------------------

    def pop(self, face_id: str) -> Optional[IndexEntry]:
        """Remove and return the entry of *face_id*, or None."""
        account_id = self._owner_of(face_id)
        if account_id is None:
            return None
        part = self._partitions.get(account_id)
        if part is None:
            return None
        with part.lock:
            removed = part.backend.remove(face_id)
        with self._registry_lock:
            if self._owners.get(face_id) == account_id:
                del self._owners[face_id]
        return removed

    def restore(self, entry: IndexEntry) -> None:
        """Put back an entry returned by ``pop``, keeping its sequence."""
        self._write(entry)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def contains(self, face_id: str) -> bool:
        return self._owner_of(face_id) is not None

    def get_vector(self, face_id: str) -> Optional[np.ndarray]:
        account_id = self._owner_of(face_id)
        if account_id is None:
            return None
        for entry in self._partitions[account_id].backend.entries():
            if entry.face_id == face_id:
                return entry.vector
        return None

    def size(self, account_id: Optional[str] = None) -> int:
        if account_id is not None:
            part = self._partitions.get(account_id)
            return len(part.backend) if part else 0
        return sum(len(p.backend) for p in list(self._partitions.values()))

    def backend_for(self, account_id: str) -> Optional[str]:
        part = self._partitions.get(account_id)
        return part.backend.backend if part else None

    def stats(self) -> dict:
        parts = dict(self._partitions)
        return {
            "accounts": len(parts),
            "total_vectors": sum(len(p.backend) for p in parts.values()),
            "partitions": {
                account: {"backend": p.backend.backend, "size": len(p.backend), "dim": p.dim}
                for account, p in parts.items()
            },
        }

    def clear(self, account_id: Optional[str] = None) -> None:
        with self._registry_lock:
            if account_id is None:
                self._partitions.clear()
                self._owners.clear()
            else:
                self._partitions.pop(account_id, None)
                self._owners = {f: a for f, a in self._owners.items() if a != account_id}

    def __len__(self) -> int:
        return self.size()

    def __repr__(self) -> str:
        return f"AccountIndex(accounts={len(self._partitions)}, vectors={self.size()})"

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _owner_of(self, face_id: str) -> Optional[str]:
        return self._owners.get(face_id)

    def _partition(self, account_id: str) -> _Partition:
        part = self._partitions.get(account_id)
        if part is not None:
            return part
        with self._registry_lock:
            part = self._partitions.get(account_id)
            if part is None:
                part = _Partition(dim=self.dim_for(account_id), backend=FlatIndex())
                self._partitions[account_id] = part
            return part

    def _write(self, entry: IndexEntry) -> None:
        part = self._partition(entry.account_id)
        with part.lock:
            part.backend.insert(entry)
            if part.backend.backend == "flat" and len(part.backend) > self.matrix_threshold:
                part.backend = MatrixIndex(part.dim, entries=part.backend.entries())
                logger.info(
                    f"Index partition for account {entry.account_id} promoted to "
                    f"matrix backend ({len(part.backend)} vectors)"
                )
        with self._registry_lock:
            self._owners[entry.face_id] = entry.account_id
