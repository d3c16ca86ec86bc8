# ============================================================
# Face Catalog
# core/catalog/tables.py
# ============================================================
# In-memory row storage shared by FaceStore and
# PersonClusterManager.
#
#   assets   asset_id  → Asset
#   faces    face_id   → Face
#   persons  person_id → Person
#   members  person_id → {face_id}   (non-owning back-references)
#   models   account_id → EmbeddingModel
#
# A single re-entrant lock makes each row-level read or write
# atomic.  Cross-row consistency for a mutation is the caller's
# job (MutationCoordinator + UnitOfWork).
# ============================================================

from __future__ import annotations

import itertools
import threading
from typing import Dict, Iterator, List, Optional, Set

from core.catalog.models import Asset, EmbeddingModel, Face, Person


class CatalogTables:
    """Row storage with copy-out reads."""

    def __init__(self, default_model: EmbeddingModel) -> None:
        self.default_model = default_model
        self.lock = threading.RLock()

        self.assets: Dict[str, Asset] = {}
        self.faces: Dict[str, Face] = {}
        self.persons: Dict[str, Person] = {}
        self.members: Dict[str, Set[str]] = {}
        self.models: Dict[str, EmbeddingModel] = {}

        self._face_seq = itertools.count(1)

    # ------------------------------------------------------------------

    def next_face_seq(self) -> int:
        with self.lock:
            return next(self._face_seq)

    def model_for(self, account_id: str) -> EmbeddingModel:
        return self.models.get(account_id, self.default_model)

    def face(self, face_id: str) -> Optional[Face]:
        with self.lock:
            row = self.faces.get(face_id)
            return row.copy() if row is not None else None

    def person(self, person_id: str) -> Optional[Person]:
        with self.lock:
            row = self.persons.get(person_id)
            return row.copy() if row is not None else None

    def member_ids(self, person_id: str) -> List[str]:
        """Face ids of *person_id* in creation order."""
        with self.lock:
            ids = self.members.get(person_id, set())
            return sorted(ids, key=lambda f: self.faces[f].seq if f in self.faces else 0)

    def iter_faces(self, account_id: Optional[str] = None) -> Iterator[Face]:
        with self.lock:
            rows = [f.copy() for f in self.faces.values()
                    if account_id is None or f.account_id == account_id]
        yield from sorted(rows, key=lambda f: f.seq)

    def iter_persons(self, account_id: Optional[str] = None) -> Iterator[Person]:
        with self.lock:
            rows = [p.copy() for p in self.persons.values()
                    if account_id is None or p.account_id == account_id]
        yield from sorted(rows, key=lambda p: p.created_at)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        """Plain-data copy of every table (picklable)."""
        with self.lock:
            return {
                "assets": {k: v for k, v in self.assets.items()},
                "faces": {k: v.copy() for k, v in self.faces.items()},
                "persons": {k: v.copy() for k, v in self.persons.items()},
                "models": dict(self.models),
            }

    def load_snapshot(self, data: dict) -> None:
        """Replace every table with *data*; back-references are rebuilt."""
        with self.lock:
            self.assets = dict(data.get("assets", {}))
            self.faces = dict(data.get("faces", {}))
            self.persons = dict(data.get("persons", {}))
            self.models = dict(data.get("models", {}))
            self.members = {pid: set() for pid in self.persons}
            for face in self.faces.values():
                if face.person_id is not None:
                    self.members.setdefault(face.person_id, set()).add(face.id)
            top = max((f.seq for f in self.faces.values()), default=0)
            self._face_seq = itertools.count(top + 1)

    def counts(self) -> dict:
        with self.lock:
            return {
                "assets": len(self.assets),
                "faces": len(self.faces),
                "persons": len(self.persons),
                "accounts": len({a.account_id for a in self.assets.values()}
                                | {p.account_id for p in self.persons.values()}),
            }
