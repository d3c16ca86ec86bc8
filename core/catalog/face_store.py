# ============================================================
# Face Catalog
# core/catalog/face_store.py
# ============================================================
# Face rows, their assets and their embedding index entries.
#
# A face row and its index entry are created and deleted in the
# same unit of work; the index never holds a vector whose face
# row is gone, and vice versa.
# ============================================================

from __future__ import annotations

from typing import List, Optional

import numpy as np

from core.catalog.errors import (
    AssetNotFound,
    DimensionMismatch,
    FaceNotFound,
    InvalidInputError,
    ModelMismatch,
    PersonWouldBeOrphaned,
)
from core.catalog.models import (
    Asset,
    BoundingBox,
    EmbeddingModel,
    Face,
    FaceSource,
    new_id,
)
from core.catalog.person_manager import PersonClusterManager
from core.catalog.tables import CatalogTables
from core.catalog.transaction import UnitOfWork, maybe_transaction
from core.index.account_index import AccountIndex
from core.index.base_index import as_vector, frozen, l2_normalise
from utils.logger import get_logger

logger = get_logger(__name__)


class FaceStore:
    """
    Repository of faces.

    Args:
        tables:       Shared row storage.
        index:        Account-partitioned embedding index.
        persons:      Cluster manager used to detach faces on delete.
        orphan_guard: ``"named"`` blocks a non-forced delete of the last
                      face of a named person; ``"any"`` blocks it for
                      every person.
    """

    def __init__(
        self,
        tables: CatalogTables,
        index: AccountIndex,
        persons: PersonClusterManager,
        orphan_guard: str = "named",
    ) -> None:
        if orphan_guard not in ("named", "any"):
            raise ValueError(f"orphan_guard must be 'named' or 'any', got {orphan_guard!r}.")
        self.tables = tables
        self.index = index
        self.persons = persons
        self.orphan_guard = orphan_guard

    # ------------------------------------------------------------------
    # Accounts / assets
    # ------------------------------------------------------------------

    def set_account_model(self, account_id: str, model_name: str, dim: int) -> EmbeddingModel:
        """
        Configure the embedding model of *account_id*.

        Raises:
            InvalidInputError: if the account already stores faces
                               embedded with another model.
        """
        model = EmbeddingModel(name=model_name, dim=int(dim))
        with self.tables.lock:
            current = self.tables.model_for(account_id)
            if current != model and any(
                f.account_id == account_id and f.has_embedding
                for f in self.tables.faces.values()
            ):
                raise InvalidInputError(
                    f"Account {account_id} already has faces embedded with {current.name!r}."
                )
            self.index.configure_account(account_id, model.dim)
            self.tables.models[account_id] = model
        logger.info(f"Account {account_id} uses embedding model {model.name} (dim={model.dim})")
        return model

    def model_for(self, account_id: str) -> EmbeddingModel:
        return self.tables.model_for(account_id)

    def register_asset(
        self,
        account_id: str,
        width: int,
        height: int,
        asset_id: Optional[str] = None,
    ) -> Asset:
        if width <= 0 or height <= 0:
            raise InvalidInputError(f"Asset dimensions must be positive, got {width}x{height}.")
        asset = Asset(id=asset_id or new_id(), account_id=account_id, width=int(width), height=int(height))
        with self.tables.lock:
            existing = self.tables.assets.get(asset.id)
            if existing is not None:
                if existing.account_id != account_id:
                    raise InvalidInputError(f"Asset id {asset.id} is already in use.")
                return existing
            self.tables.assets[asset.id] = asset
        logger.debug(f"Asset registered: {asset.id} ({width}x{height}) account={account_id}")
        return asset

    def get_asset(self, asset_id: str, account_id: Optional[str] = None) -> Asset:
        asset = self.tables.assets.get(asset_id)
        if asset is None or (account_id is not None and asset.account_id != account_id):
            raise AssetNotFound(asset_id)
        return asset

    # ------------------------------------------------------------------
    # Faces
    # ------------------------------------------------------------------

    def create(
        self,
        account_id: str,
        asset_id: str,
        bbox: BoundingBox,
        embedding: Optional[np.ndarray] = None,
        source: FaceSource = FaceSource.DETECTED,
        score: Optional[float] = None,
        model_name: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> Face:
        """
        Create an unassigned face and index its embedding.

        Raises:
            AssetNotFound:      unknown asset or asset of another account.
            InvalidBoundingBox: box outside the asset image.
            DimensionMismatch:  embedding of the wrong length.
            ModelMismatch:      embedding from another model version.
        """
        asset = self.get_asset(asset_id, account_id)
        bbox.validate(asset.width, asset.height)

        model = self.model_for(account_id)
        vector = None
        if embedding is not None:
            if model_name is not None and model_name != model.name:
                raise ModelMismatch(expected=model.name, got=model_name)
            vector = as_vector(embedding)
            if vector.shape[0] != model.dim:
                raise DimensionMismatch(expected=model.dim, got=int(vector.shape[0]))
            vector = frozen(l2_normalise(vector))

        face = Face(
            id=new_id(),
            account_id=account_id,
            asset_id=asset_id,
            bbox=bbox,
            embedding=vector,
            model_name=model.name if vector is not None else None,
            source=FaceSource(source),
            score=score,
            seq=self.tables.next_face_seq(),
        )

        with maybe_transaction(uow, "create_face") as tx:
            with self.tables.lock:
                self.tables.faces[face.id] = face
            tx.on_rollback(f"remove face row {face.id}", lambda: self._drop_row(face.id))
            if vector is not None:
                self.index.insert(account_id, face.id, vector)
                tx.on_rollback(f"remove index entry {face.id}", lambda: self.index.remove(face.id))

        logger.debug(
            f"Face created: {face.id} asset={asset_id} source={face.source.value} "
            f"indexed={vector is not None}"
        )
        return face.copy()

    def get(self, face_id: str, account_id: Optional[str] = None) -> Face:
        """A face of another account is reported as not found."""
        face = self.tables.face(face_id)
        if face is None or (account_id is not None and face.account_id != account_id):
            raise FaceNotFound(face_id)
        return face

    def get_by_asset(self, asset_id: str, account_id: Optional[str] = None) -> List[Face]:
        """Faces of *asset_id* in creation order."""
        asset = self.get_asset(asset_id, account_id)
        with self.tables.lock:
            rows = [f.copy() for f in self.tables.faces.values() if f.asset_id == asset.id]
        return sorted(rows, key=lambda f: f.seq)

    def delete(self, face_id: str, force: bool = False, uow: Optional[UnitOfWork] = None) -> None:
        """
        Delete a face, its index entry and its person membership.

        Raises:
            FaceNotFound:           unknown face.
            PersonWouldBeOrphaned:  *force* is false and the face is the
                                    last face of a protected person.
        """
        face = self.get(face_id)
        if not force and face.person_id is not None:
            person = self.tables.person(face.person_id)
            if person is not None and person.face_count == 1 and self._guarded(person.is_named):
                raise PersonWouldBeOrphaned(face_id, person.id)

        with maybe_transaction(uow, "delete_face") as tx:
            self.persons.detach(face_id, uow=tx)

            entry = self.index.pop(face_id)
            if entry is not None:
                tx.on_rollback(f"restore index entry {face_id}", lambda: self.index.restore(entry))

            with self.tables.lock:
                row = self.tables.faces.pop(face_id)
            tx.on_rollback(f"restore face row {face_id}", lambda: self._put_row(row))

        logger.debug(f"Face deleted: {face_id} (force={force})")

    def count(self, account_id: Optional[str] = None) -> int:
        with self.tables.lock:
            if account_id is None:
                return len(self.tables.faces)
            return sum(1 for f in self.tables.faces.values() if f.account_id == account_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _guarded(self, is_named: bool) -> bool:
        return self.orphan_guard == "any" or is_named

    def _drop_row(self, face_id: str) -> None:
        with self.tables.lock:
            self.tables.faces.pop(face_id, None)

    def _put_row(self, row: Face) -> None:
        with self.tables.lock:
            self.tables.faces[row.id] = row
