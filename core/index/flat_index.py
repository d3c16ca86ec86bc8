"""Flat (per-entry) scan backend for small accounts."""

from __future__ import annotations

from typing import Dict, List, Optional

import numpy as np

from core.index.base_index import IndexEntry, IndexHit, rank


class FlatIndex:
    """
    Exact nearest-neighbour search by scanning every entry.

    Writes replace the entry map with a new dict, so a query iterates
    an immutable snapshot and never blocks on, or sees half of, a
    concurrent write.  Callers serialise writes.
    """

    backend = "flat"

    def __init__(self, entries: Optional[List[IndexEntry]] = None) -> None:
        self._entries: Dict[str, IndexEntry] = {e.face_id: e for e in (entries or [])}

    def insert(self, entry: IndexEntry) -> None:
        entries = dict(self._entries)
        entries[entry.face_id] = entry
        self._entries = entries

    def remove(self, face_id: str) -> Optional[IndexEntry]:
        if face_id not in self._entries:
            return None
        entries = dict(self._entries)
        removed = entries.pop(face_id)
        self._entries = entries
        return removed

    def query_knn(self, vector: np.ndarray, k: int, min_similarity: float) -> List[IndexHit]:
        snapshot = list(self._entries.values())
        if not snapshot:
            return []
        ids = [e.face_id for e in snapshot]
        seqs = np.fromiter((e.seq for e in snapshot), dtype=np.int64, count=len(snapshot))
        sims = np.fromiter(
            (float(np.dot(e.vector, vector)) for e in snapshot),
            dtype=np.float64,
            count=len(snapshot),
        )
        return rank(ids, seqs, sims, k, min_similarity)

    def entries(self) -> List[IndexEntry]:
        return sorted(self._entries.values(), key=lambda e: e.seq)

    def __contains__(self, face_id: object) -> bool:
        return face_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"FlatIndex(size={len(self)})"
