# ============================================================
# Face Catalog
# core/catalog/service.py
# ============================================================
# FaceCatalog: the single entry point used by the HTTP layer.
#
# Wires together:
#   AccountIndex          - per-account kNN over embeddings
#   FaceStore             - faces, assets, index entries
#   PersonClusterManager  - people and face membership
#   IdentificationEngine  - read-only detect → match → rank
#   MutationCoordinator   - per-person / per-face locks
#
# Every mutation runs under the locks of the people and faces it
# touches and inside one UnitOfWork, so rows, clusters and the
# index commit or roll back together.
# ============================================================

from __future__ import annotations

import pickle
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional, TypeVar

import numpy as np

from core.analyzer.base_analyzer import FaceObservation
from core.catalog.coordinator import MutationCoordinator, face_key, person_key
from core.catalog.errors import (
    CrossAccountAssignment,
    FaceNotFound,
    InvalidInputError,
    InvariantViolation,
    LockTimeout,
    PersonNotFound,
)
from core.catalog.face_store import FaceStore
from core.catalog.models import (
    Asset,
    BoundingBox,
    EmbeddingModel,
    Face,
    FaceSource,
    Person,
)
from core.catalog.person_manager import PersonClusterManager
from core.catalog.tables import CatalogTables
from core.catalog.transaction import UnitOfWork
from core.identification.engine import FaceAnalyzer, IdentificationEngine, IdentificationResult
from core.index.account_index import AccountIndex
from utils.circuit_breaker import CircuitBreaker
from utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

SNAPSHOT_VERSION = "1.0"


class FaceCatalog:
    """
    Face catalog service.

    Quick usage::

        catalog = FaceCatalog.from_settings(analyzer=analyzer)
        asset = catalog.register_asset("acct", width=1920, height=1080)
        faces = catalog.detect_faces("acct", asset.id, image_bytes)
        person = catalog.recognize_face("acct", faces[0].id)
        result = catalog.identify_faces("acct", other_image_bytes)
    """

    def __init__(
        self,
        default_model: EmbeddingModel = EmbeddingModel(name="buffalo_l", dim=512),
        analyzer: Optional[FaceAnalyzer] = None,
        *,
        matrix_threshold: int = 2048,
        identify_k: int = 10,
        identify_min_similarity: float = 0.45,
        cluster_k: int = 20,
        cluster_min_similarity: float = 0.55,
        person_gc: str = "eager",
        orphan_guard: str = "named",
        lock_timeout: float = 10.0,
        max_retries: int = 8,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.tables = CatalogTables(default_model)
        self.index = AccountIndex(dim=default_model.dim, matrix_threshold=matrix_threshold)
        self.persons = PersonClusterManager(self.tables, gc_policy=person_gc)
        self.store = FaceStore(self.tables, self.index, self.persons, orphan_guard=orphan_guard)
        self.coordinator = MutationCoordinator(lock_timeout=lock_timeout, max_retries=max_retries)
        self.engine = IdentificationEngine(
            self.index,
            self.tables,
            analyzer=analyzer,
            breaker=breaker,
            default_k=identify_k,
            default_min_similarity=identify_min_similarity,
        )
        self.cluster_k = cluster_k
        self.cluster_min_similarity = cluster_min_similarity

        logger.info(
            f"FaceCatalog ready | model={default_model.name} dim={default_model.dim} | "
            f"gc={person_gc} | orphan_guard={orphan_guard}"
        )

    @classmethod
    def from_settings(cls, cfg=None, analyzer: Optional[FaceAnalyzer] = None) -> "FaceCatalog":
        """Build a catalog from the application settings."""
        if cfg is None:
            from config.settings import settings as cfg  # noqa: PLC0415

        return cls(
            default_model=EmbeddingModel(name=cfg.embedding.model_name, dim=cfg.embedding.dim),
            analyzer=analyzer,
            matrix_threshold=cfg.index.matrix_threshold,
            identify_k=cfg.identify.k,
            identify_min_similarity=cfg.identify.min_similarity,
            cluster_k=cfg.clustering.k,
            cluster_min_similarity=cfg.clustering.min_similarity,
            person_gc=cfg.clustering.person_gc,
            orphan_guard=cfg.clustering.orphan_guard,
            lock_timeout=cfg.coordinator.lock_timeout,
            max_retries=cfg.coordinator.max_retries,
            breaker=CircuitBreaker(
                "analyzer",
                failure_threshold=cfg.breaker.failure_threshold,
                recovery_timeout=cfg.breaker.recovery_timeout,
            ),
        )

    # ------------------------------------------------------------------
    # Analyzer
    # ------------------------------------------------------------------

    @property
    def analyzer(self) -> Optional[FaceAnalyzer]:
        return self.engine.analyzer

    @analyzer.setter
    def analyzer(self, analyzer: Optional[FaceAnalyzer]) -> None:
        self.engine.analyzer = analyzer

    # ------------------------------------------------------------------
    # Accounts & assets
    # ------------------------------------------------------------------

    def configure_account(self, account_id: str, model_name: str, dim: int) -> EmbeddingModel:
        return self.store.set_account_model(account_id, model_name, dim)

    def register_asset(
        self,
        account_id: str,
        width: int,
        height: int,
        asset_id: Optional[str] = None,
    ) -> Asset:
        return self.store.register_asset(account_id, width, height, asset_id=asset_id)

    def get_asset(self, account_id: str, asset_id: str) -> Asset:
        return self.store.get_asset(asset_id, account_id)

    # ------------------------------------------------------------------
    # Faces
    # ------------------------------------------------------------------

    def create_face(
        self,
        account_id: str,
        asset_id: str,
        bbox: BoundingBox,
        embedding: Optional[np.ndarray] = None,
        person_id: Optional[str] = None,
        model_name: Optional[str] = None,
        source: FaceSource = FaceSource.MANUAL,
        score: Optional[float] = None,
    ) -> Face:
        """
        Create a face on *asset_id*, optionally assigned to *person_id*.

        Raises:
            AssetNotFound, InvalidBoundingBox, DimensionMismatch,
            ModelMismatch, PersonNotFound, CrossAccountAssignment
        """
        subject = f"(new face on asset {asset_id})"
        if person_id is not None:
            self._person_in_account(account_id, person_id, subject)

        with self.coordinator.locked(person_key(person_id) if person_id else None):
            if person_id is not None:
                self._person_in_account(account_id, person_id, subject)
            with UnitOfWork("create_face") as uow:
                face = self.store.create(
                    account_id, asset_id, bbox,
                    embedding=embedding,
                    source=source,
                    score=score,
                    model_name=model_name,
                    uow=uow,
                )
                if person_id is not None:
                    self.persons.assign(face.id, person_id, uow=uow)

        logger.info(f"Face {face.id} created on asset {asset_id} | account={account_id}")
        return self.store.get(face.id)

    def get_face(self, account_id: str, face_id: str) -> Face:
        return self.store.get(face_id, account_id)

    def get_faces_by_id(
        self,
        account_id: str,
        asset_id: str,
        person_id: Optional[str] = None,
        source: Optional[FaceSource] = None,
        assigned: Optional[bool] = None,
    ) -> List[Face]:
        """Faces of *asset_id* in creation order, optionally filtered."""
        faces = self.store.get_by_asset(asset_id, account_id)
        if person_id is not None:
            faces = [f for f in faces if f.person_id == person_id]
        if source is not None:
            faces = [f for f in faces if f.source == FaceSource(source)]
        if assigned is not None:
            faces = [f for f in faces if f.is_assigned == assigned]
        return faces

    def detect_faces(self, account_id: str, asset_id: str, image_bytes: bytes) -> List[Face]:
        """
        Run the analyzer on the image of *asset_id* and store every
        observation as an unassigned detected face.
        """
        asset = self.store.get_asset(asset_id, account_id)
        observations = self.engine.detect(image_bytes)

        created: List[Face] = []
        with UnitOfWork("detect_faces") as uow:
            for obs in observations:
                face = self._store_observation(asset, obs, uow)
                if face is not None:
                    created.append(face)

        logger.info(
            f"Detected {len(created)} face(s) on asset {asset_id} | account={account_id}"
        )
        return created

    def identify_faces(
        self,
        account_id: str,
        image_bytes: bytes,
        k: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ) -> IdentificationResult:
        return self.engine.identify(account_id, image_bytes, k=k, min_similarity=min_similarity)

    def reassign_faces_by_id(self, account_id: str, person_id: str, face_id: str) -> Person:
        """
        Move *face_id* to *person_id*.

        Returns:
            The updated target person.

        Raises:
            FaceNotFound, PersonNotFound, CrossAccountAssignment
        """
        self.store.get(face_id, account_id)
        target = self.tables.person(person_id)
        if target is None:
            raise PersonNotFound(person_id)
        if target.account_id != account_id:
            raise CrossAccountAssignment(face_id, person_id)

        def _reassign(face: Face) -> Person:
            with UnitOfWork("reassign_face") as uow:
                return self.persons.reassign(face.id, person_id, uow=uow)

        person = self._with_face_locks(account_id, face_id, [person_id], _reassign)
        logger.info(f"Face {face_id} reassigned to person {person_id} | account={account_id}")
        return person

    def delete_face(self, account_id: str, face_id: str, force: bool = False) -> None:
        """
        Delete *face_id*.

        Raises:
            FaceNotFound, PersonWouldBeOrphaned
        """
        self.store.get(face_id, account_id)

        def _delete(face: Face) -> None:
            with UnitOfWork("delete_face") as uow:
                self.store.delete(face.id, force=force, uow=uow)

        self._with_face_locks(account_id, face_id, [], _delete)
        logger.info(f"Face {face_id} deleted (force={force}) | account={account_id}")

    def detach_face(self, account_id: str, face_id: str) -> Face:
        """Unassign *face_id* from its person."""
        self.store.get(face_id, account_id)

        def _detach(face: Face) -> None:
            with UnitOfWork("detach_face") as uow:
                self.persons.detach(face.id, uow=uow)

        self._with_face_locks(account_id, face_id, [], _detach)
        return self.store.get(face_id)

    def recognize_face(self, account_id: str, face_id: str) -> Person:
        """
        Cluster an unassigned face.

        The face joins the person of its most similar assigned
        neighbour (similarity >= ``cluster_min_similarity``); without
        one, a new unnamed person is started from it.  An already
        assigned face keeps its person.
        """
        face = self.store.get(face_id, account_id)
        if face.person_id is not None:
            return self.persons.get(face.person_id)
        if face.embedding is None:
            raise InvalidInputError(f"Face {face_id} has no embedding to recognize.", face_id=face_id)

        match = self._best_person(account_id, face)

        def _recognize(current: Face) -> Person:
            if current.person_id is not None:
                return self.persons.get(current.person_id)
            with UnitOfWork("recognize_face") as uow:
                if match is not None and self.tables.person(match) is not None:
                    return self.persons.assign(current.id, match, uow=uow)
                return self.persons.create_person_from_face(current.id, account_id, uow=uow)

        person = self._with_face_locks(account_id, face_id, [match] if match else [], _recognize)
        logger.info(
            f"Face {face_id} recognized as person {person.id} "
            f"({'existing' if person.id == match else 'new'}) | account={account_id}"
        )
        return person

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    def create_person(self, account_id: str, name: str = "", face_ids: Iterable[str] = ()) -> Person:
        """
        Create a person, optionally seeded with existing faces.

        The seed faces leave their current people; the whole operation
        commits or rolls back as one.
        """
        face_ids = list(dict.fromkeys(face_ids))

        def _create(faces: List[Face]) -> Person:
            with UnitOfWork("create_person") as uow:
                created = self.persons.create_person(account_id, name=name, uow=uow)
                for face in faces:
                    self.persons.assign(face.id, created.id, uow=uow)
            return created

        person = self._with_faces_locked(account_id, face_ids, [], _create)

        logger.info(f"Person {person.id} created with {len(face_ids)} face(s) | account={account_id}")
        return self.persons.get(person.id)

    def get_person(self, account_id: str, person_id: str) -> Person:
        return self.persons.get(person_id, account_id)

    def list_people(
        self,
        account_id: str,
        include_hidden: bool = True,
        named: Optional[bool] = None,
    ) -> List[Person]:
        return self.persons.list_people(account_id, include_hidden=include_hidden, named=named)

    def get_person_faces(self, account_id: str, person_id: str) -> List[Face]:
        """Faces of *person_id*; a face deleted while listing is skipped."""
        self.persons.get(person_id, account_id)
        faces = (self.tables.face(fid) for fid in self.tables.member_ids(person_id))
        return [face for face in faces if face is not None]

    def update_person(
        self,
        account_id: str,
        person_id: str,
        name: Optional[str] = None,
        is_hidden: Optional[bool] = None,
        representative_face_id: Optional[str] = None,
    ) -> Optional[Person]:
        self.persons.get(person_id, account_id)
        return self.coordinator.with_person_lock(
            person_id,
            lambda: self.persons.update_person(
                person_id,
                name=name,
                is_hidden=is_hidden,
                representative_face_id=representative_face_id,
            ),
        )

    def merge_people(self, account_id: str, target_id: str, source_ids: Iterable[str]) -> Person:
        sources = list(source_ids)
        self.persons.get(target_id, account_id)
        for sid in sources:
            self.persons.get(sid, account_id)
        with self.coordinator.locked(person_key(target_id), *[person_key(s) for s in sources]):
            return self.persons.merge(target_id, sources)

    def delete_person(self, account_id: str, person_id: str) -> List[str]:
        self.persons.get(person_id, account_id)
        return self.coordinator.with_person_lock(person_id, lambda: self.persons.delete_person(person_id))

    def collect_garbage(self, account_id: Optional[str] = None) -> List[str]:
        """
        Remove empty unnamed people while holding their person locks,
        so no concurrent assignment can target a person being dropped.
        """
        candidates = self.persons.garbage_candidates(account_id)
        if not candidates:
            return []
        with self.coordinator.locked(*[person_key(pid) for pid in candidates]):
            return self.persons.collect_garbage(account_id, person_ids=candidates)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def check_invariants(self, account_id: Optional[str] = None) -> None:
        """
        Verify cluster bookkeeping and the face ↔ index correspondence.

        Raises:
            InvariantViolation
        """
        self.persons.check_all(account_id)
        problems = []
        for face in self.tables.iter_faces(account_id):
            if face.has_embedding and not self.index.contains(face.id):
                problems.append(f"face {face.id} has an embedding but no index entry")
            if not face.has_embedding and self.index.contains(face.id):
                problems.append(f"face {face.id} has no embedding but is indexed")
        indexed = self.index.size(account_id) if account_id else self.index.size()
        embedded = sum(1 for f in self.tables.iter_faces(account_id) if f.has_embedding)
        if indexed != embedded:
            problems.append(f"index holds {indexed} vector(s) for {embedded} embedded face(s)")
        if problems:
            logger.error(f"Catalog invariant violated: {problems}")
            raise InvariantViolation("; ".join(problems), problems=problems)

    def stats(self) -> dict:
        counts = self.tables.counts()
        counts["index"] = self.index.stats()
        counts["breaker"] = self.engine.breaker.state.value
        counts["analyzer_loaded"] = self.analyzer is not None
        return counts

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str | Path) -> Path:
        """
        Serialize every table to a pickle file.

        Index vectors are not written; ``load`` rebuilds the index from
        the face embeddings.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        payload = {
            "version":  SNAPSHOT_VERSION,
            "saved_at": time.time(),
            "tables":   self.tables.snapshot(),
        }
        with open(path, "wb") as f:
            pickle.dump(payload, f, protocol=pickle.HIGHEST_PROTOCOL)

        counts = self.tables.counts()
        logger.info(
            f"FaceCatalog saved → {path} ({counts['faces']} faces, {counts['persons']} people)"
        )
        return path

    def load(self, path: str | Path) -> "FaceCatalog":
        """
        Replace the catalog contents with the snapshot at *path*.

        Raises:
            FileNotFoundError: If *path* does not exist.
            ValueError:        If the file format is unrecognised.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"FaceCatalog snapshot not found: {path}")

        with open(path, "rb") as f:
            payload = pickle.load(f)

        if not isinstance(payload, dict) or "tables" not in payload:
            raise ValueError(f"Unrecognised FaceCatalog snapshot format in: {path}")

        self.tables.load_snapshot(payload["tables"])
        self.index.clear()
        for account_id, model in self.tables.models.items():
            self.index.configure_account(account_id, model.dim)
        for face in self.tables.iter_faces():
            if face.embedding is not None:
                self.index.insert(face.account_id, face.id, face.embedding)

        counts = self.tables.counts()
        logger.info(
            f"FaceCatalog loaded ← {path} ({counts['faces']} faces, "
            f"{counts['persons']} people, {self.index.size()} vectors)"
        )
        return self

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _person_in_account(self, account_id: str, person_id: str, subject: str) -> Person:
        person = self.tables.person(person_id)
        if person is None:
            raise PersonNotFound(person_id)
        if person.account_id != account_id:
            raise CrossAccountAssignment(subject, person_id)
        return person

    def _with_face_locks(
        self,
        account_id: str,
        face_id: str,
        extra_people: List[str],
        fn: Callable[[Face], T],
    ) -> T:
        """Run ``fn(face)`` holding the locks of the face, its current person and *extra_people*."""
        return self._with_faces_locked(account_id, [face_id], extra_people, lambda faces: fn(faces[0]))

    def _with_faces_locked(
        self,
        account_id: str,
        face_ids: List[str],
        extra_people: List[str],
        fn: Callable[[List[Face]], T],
    ) -> T:
        """
        Run ``fn(faces)`` holding the locks of *face_ids*, the people
        that currently own them and *extra_people*.

        Owners are read before locking; if any face changed owner by the
        time the locks are held, the attempt is retried.
        """
        for attempt in range(1, self.coordinator.max_retries + 1):
            owners = {fid: self.store.get(fid, account_id).person_id for fid in face_ids}
            keys = [face_key(fid) for fid in face_ids]
            keys.extend(person_key(pid) for pid in owners.values() if pid is not None)
            keys.extend(person_key(p) for p in extra_people)
            with self.coordinator.locked(*keys):
                faces = []
                for fid in face_ids:
                    face = self.tables.face(fid)
                    if face is None or face.account_id != account_id:
                        raise FaceNotFound(fid)
                    faces.append(face)
                if all(face.person_id == owners[face.id] for face in faces):
                    return fn(faces)
            logger.debug(f"Faces {face_ids} moved while locking (attempt {attempt}); retrying")

        raise LockTimeout(
            f"Face(s) {', '.join(face_ids)} kept changing owner; gave up after "
            f"{self.coordinator.max_retries} attempt(s).",
            face_id=face_ids[0] if face_ids else None,
        )

    def _best_person(self, account_id: str, face: Face) -> Optional[str]:
        hits = self.index.query_knn(
            account_id, face.embedding, self.cluster_k + 1, self.cluster_min_similarity
        )
        for hit_id, _similarity in hits:
            if hit_id == face.id:
                continue
            other = self.tables.face(hit_id)
            if other is not None and other.person_id is not None:
                return other.person_id
        return None

    def _store_observation(self, asset: Asset, obs: FaceObservation, uow: UnitOfWork) -> Optional[Face]:
        bbox = obs.bbox.clip(asset.width, asset.height)
        if bbox.width <= 0 or bbox.height <= 0:
            logger.debug(f"Skipping observation outside asset {asset.id}: {obs.bbox.as_tuple()}")
            return None
        return self.store.create(
            asset.account_id,
            asset.id,
            bbox,
            embedding=obs.embedding,
            source=FaceSource.DETECTED,
            score=float(obs.score),
            uow=uow,
        )
