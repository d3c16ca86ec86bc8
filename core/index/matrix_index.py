# ============================================================
# Face Catalog
# core/index/matrix_index.py
# ============================================================
# Vectorised exact-search backend for large accounts.
#
# Vectors live in a contiguous (capacity, D) float32 buffer; a
# query is a single matrix-vector product over the used rows.
#
# Concurrency model (single writer, lock-free readers):
#   - Appends write row n, then publish a snapshot with n + 1
#     rows, so readers never see a half-written row.
#   - Removals clear the row's ``alive`` flag; the row is never
#     reused until a compaction copies live rows into fresh
#     buffers and publishes them as a new snapshot.
#   - Growth also copies into fresh buffers.
# ============================================================

from __future__ import annotations

from typing import Dict, List, NamedTuple, Optional

import numpy as np

from core.index.base_index import IndexEntry, IndexHit, rank


class _Snapshot(NamedTuple):
    matrix: np.ndarray      # (capacity, D) float32
    seqs: np.ndarray        # (capacity,) int64
    alive: np.ndarray       # (capacity,) bool
    face_ids: List[str]     # row → face id, append-only per buffer
    accounts: List[str]
    n: int                  # rows in use (live + dead)


class MatrixIndex:
    """
    Exact nearest-neighbour search with numpy matrix operations.

    Args:
        dim:              Embedding dimension.
        entries:          Optional initial entries (any order).
        initial_capacity: Rows allocated up front.
    """

    backend = "matrix"

    def __init__(
        self,
        dim: int,
        entries: Optional[List[IndexEntry]] = None,
        initial_capacity: int = 1024,
    ) -> None:
        self.dim = int(dim)
        entries = sorted(entries or [], key=lambda e: e.seq)
        capacity = max(initial_capacity, 2 * len(entries), 1)
        self._rows: Dict[str, int] = {}
        self._dead = 0
        self._snap = self._allocate(capacity)
        for entry in entries:
            self._append(entry)

    # ------------------------------------------------------------------
    # Writes (callers serialise)
    # ------------------------------------------------------------------

    def insert(self, entry: IndexEntry) -> None:
        if entry.face_id in self._rows:
            self._kill(entry.face_id)
        self._append(entry)
        self._maybe_compact()

    def remove(self, face_id: str) -> Optional[IndexEntry]:
        if face_id not in self._rows:
            return None
        snap = self._snap
        row = self._rows[face_id]
        removed = IndexEntry(
            account_id=snap.accounts[row],
            face_id=face_id,
            vector=snap.matrix[row].copy(),
            seq=int(snap.seqs[row]),
        )
        self._kill(face_id)
        self._maybe_compact()
        return removed

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    def query_knn(self, vector: np.ndarray, k: int, min_similarity: float) -> List[IndexHit]:
        snap = self._snap
        n = snap.n
        if n == 0:
            return []
        live = np.flatnonzero(snap.alive[:n].copy())
        if live.size == 0:
            return []
        sims = snap.matrix[live] @ vector.astype(np.float32)
        ids = [snap.face_ids[i] for i in live]
        return rank(ids, snap.seqs[live], sims, k, min_similarity)

    def entries(self) -> List[IndexEntry]:
        snap = self._snap
        out = [
            IndexEntry(
                account_id=snap.accounts[row],
                face_id=snap.face_ids[row],
                vector=snap.matrix[row].copy(),
                seq=int(snap.seqs[row]),
            )
            for row in np.flatnonzero(snap.alive[: snap.n])
        ]
        return sorted(out, key=lambda e: e.seq)

    def __contains__(self, face_id: object) -> bool:
        return face_id in self._rows

    def __len__(self) -> int:
        return len(self._rows)

    @property
    def capacity(self) -> int:
        return self._snap.matrix.shape[0]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _allocate(self, capacity: int) -> _Snapshot:
        return _Snapshot(
            matrix=np.zeros((capacity, self.dim), dtype=np.float32),
            seqs=np.zeros(capacity, dtype=np.int64),
            alive=np.zeros(capacity, dtype=bool),
            face_ids=[],
            accounts=[],
            n=0,
        )

    def _append(self, entry: IndexEntry) -> None:
        snap = self._snap
        if snap.n == snap.matrix.shape[0]:
            snap = self._rebuild(max(2 * snap.matrix.shape[0], 1))
        row = snap.n
        snap.matrix[row] = entry.vector
        snap.seqs[row] = entry.seq
        snap.face_ids.append(entry.face_id)
        snap.accounts.append(entry.account_id)
        snap.alive[row] = True
        self._rows[entry.face_id] = row
        self._snap = snap._replace(n=row + 1)

    def _kill(self, face_id: str) -> None:
        row = self._rows.pop(face_id)
        self._snap.alive[row] = False
        self._dead += 1

    def _maybe_compact(self) -> None:
        if self._dead > max(64, len(self._rows)):
            self._snap = self._rebuild(max(2 * len(self._rows), 1024))

    def _rebuild(self, capacity: int) -> _Snapshot:
        """Copy live rows, in row order, into fresh buffers."""
        old = self._snap
        fresh = self._allocate(capacity)
        live = np.flatnonzero(old.alive[: old.n])
        count = live.size
        fresh.matrix[:count] = old.matrix[live]
        fresh.seqs[:count] = old.seqs[live]
        fresh.alive[:count] = True
        fresh.face_ids.extend(old.face_ids[i] for i in live)
        fresh.accounts.extend(old.accounts[i] for i in live)
        self._rows = {face_id: row for row, face_id in enumerate(fresh.face_ids)}
        self._dead = 0
        return fresh._replace(n=count)

    def __repr__(self) -> str:
        return f"MatrixIndex(size={len(self)}, capacity={self.capacity}, dim={self.dim})"
