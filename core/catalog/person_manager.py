# ============================================================
# Face Catalog
# core/catalog/person_manager.py
# ============================================================
# Person records and the person → faces relation.
#
# Every mutating method:
#   1. validates its inputs (no side effects before this point)
#   2. checkpoints the rows it is about to touch into the unit
#      of work, so a rollback restores them verbatim
#   3. mutates rows under the table lock
#   4. re-verifies the cluster invariants of the touched people
#
# Callers serialise mutations per person via MutationCoordinator.
# ============================================================

from __future__ import annotations

from typing import Iterable, List, Optional

from core.catalog.errors import (
    CrossAccountAssignment,
    FaceNotFound,
    InvalidInputError,
    InvalidMerge,
    InvariantViolation,
    PersonNotFound,
)
from core.catalog.models import Face, Person, new_id, utcnow
from core.catalog.tables import CatalogTables
from core.catalog.transaction import UnitOfWork, maybe_transaction
from utils.logger import get_logger

logger = get_logger(__name__)


class PersonClusterManager:
    """
    Maintains people and their face membership.

    Args:
        tables:    Shared row storage.
        gc_policy: ``"eager"`` removes an unnamed person the moment it
                   loses its last face; ``"lazy"`` leaves it for
                   ``collect_garbage``.
    """

    def __init__(self, tables: CatalogTables, gc_policy: str = "eager") -> None:
        if gc_policy not in ("eager", "lazy"):
            raise ValueError(f"gc_policy must be 'eager' or 'lazy', got {gc_policy!r}.")
        self.tables = tables
        self.gc_policy = gc_policy

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, person_id: str, account_id: Optional[str] = None) -> Person:
        """
        Return a copy of *person_id*.

        A person of another account is reported as not found.
        """
        person = self.tables.person(person_id)
        if person is None or (account_id is not None and person.account_id != account_id):
            raise PersonNotFound(person_id)
        return person

    def face_ids(self, person_id: str) -> List[str]:
        self.get(person_id)
        return self.tables.member_ids(person_id)

    def list_people(
        self,
        account_id: str,
        include_hidden: bool = True,
        named: Optional[bool] = None,
    ) -> List[Person]:
        people = []
        for person in self.tables.iter_persons(account_id):
            if person.is_hidden and not include_hidden:
                continue
            if named is not None and person.is_named != named:
                continue
            people.append(person)
        return people

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def assign(self, face_id: str, person_id: str, uow: Optional[UnitOfWork] = None) -> Person:
        """
        Point *face_id* at *person_id*.

        The previous person (if any) loses the face and is
        garbage-collected when it ends up empty and unnamed.

        Raises:
            FaceNotFound, PersonNotFound, CrossAccountAssignment
        """
        face = self._require_face(face_id)
        target = self._require_person(person_id)
        if face.account_id != target.account_id:
            raise CrossAccountAssignment(face_id, person_id)
        if face.person_id == person_id:
            return target

        previous = face.person_id
        touched = [person_id] + ([previous] if previous else [])
        with maybe_transaction(uow, "assign") as tx:
            self._checkpoint(tx, "assign", [face_id], touched)
            with self.tables.lock:
                self._move(face_id, previous, person_id)
                if previous is not None:
                    self._maybe_collect(previous)
            self.verify(touched)

        logger.debug(f"Face {face_id} assigned to person {person_id} (was {previous})")
        return self.get(person_id)

    def reassign(self, face_id: str, target_person_id: str, uow: Optional[UnitOfWork] = None) -> Person:
        """
        Move *face_id* to an existing person of the same account.

        Returns:
            The updated target person.
        """
        face = self._require_face(face_id)
        target = self.tables.person(target_person_id)
        if target is None:
            raise PersonNotFound(target_person_id)
        if target.account_id != face.account_id:
            raise CrossAccountAssignment(face_id, target_person_id)
        return self.assign(face_id, target_person_id, uow=uow)

    def create_person_from_face(
        self,
        face_id: str,
        account_id: str,
        name: str = "",
        uow: Optional[UnitOfWork] = None,
    ) -> Person:
        """Start a new person whose first (and representative) face is *face_id*."""
        face = self._require_face(face_id)
        if face.account_id != account_id:
            raise FaceNotFound(face_id)
        with maybe_transaction(uow, "create_person_from_face") as tx:
            person = self.create_person(account_id, name=name, uow=tx)
            return self.assign(face_id, person.id, uow=tx)

    def detach(self, face_id: str, uow: Optional[UnitOfWork] = None) -> Optional[Person]:
        """
        Clear the person of *face_id*.

        Returns:
            The previous person after the change, or None when the face
            was unassigned or the person was garbage-collected.
        """
        face = self._require_face(face_id)
        previous = face.person_id
        if previous is None:
            return None

        with maybe_transaction(uow, "detach") as tx:
            self._checkpoint(tx, "detach", [face_id], [previous])
            with self.tables.lock:
                self._move(face_id, previous, None)
                collected = self._maybe_collect(previous)
            self.verify([previous])

        logger.debug(f"Face {face_id} detached from person {previous}")
        return None if collected else self.tables.person(previous)

    # ------------------------------------------------------------------
    # Person lifecycle
    # ------------------------------------------------------------------

    def create_person(self, account_id: str, name: str = "", uow: Optional[UnitOfWork] = None) -> Person:
        person = Person(id=new_id(), account_id=account_id, name=(name or "").strip())
        with maybe_transaction(uow, "create_person") as tx:
            self._checkpoint(tx, "create_person", [], [person.id])
            with self.tables.lock:
                self.tables.persons[person.id] = person
                self.tables.members[person.id] = set()
        logger.debug(f"Person created: {person!r}")
        return person.copy()

    def update_person(
        self,
        person_id: str,
        name: Optional[str] = None,
        is_hidden: Optional[bool] = None,
        representative_face_id: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> Optional[Person]:
        """
        Rename, hide/unhide or change the thumbnail face of a person.

        Clearing the name of an empty person makes it eligible for
        garbage collection; under the eager policy it is removed at once
        and None is returned.
        """
        self._require_person(person_id)
        if representative_face_id is not None:
            face = self.tables.face(representative_face_id)
            if face is None or face.person_id != person_id:
                raise InvalidInputError(
                    f"Face {representative_face_id} does not belong to person {person_id}.",
                    face_id=representative_face_id,
                )

        with maybe_transaction(uow, "update_person") as tx:
            self._checkpoint(tx, "update_person", [], [person_id])
            with self.tables.lock:
                row = self.tables.persons[person_id]
                if name is not None:
                    row.name = name.strip()
                if is_hidden is not None:
                    row.is_hidden = bool(is_hidden)
                if representative_face_id is not None:
                    row.representative_face_id = representative_face_id
                row.updated_at = utcnow()
                collected = self._maybe_collect(person_id)
            if not collected:
                self.verify([person_id])
        return None if collected else self.get(person_id)

    def merge(self, target_id: str, source_ids: Iterable[str], uow: Optional[UnitOfWork] = None) -> Person:
        """
        Move every face of *source_ids* into *target_id* and delete the
        source people.

        Raises:
            InvalidMerge: empty sources, target listed as a source, or
                          people from different accounts.
        """
        sources = list(dict.fromkeys(source_ids))
        if not sources:
            raise InvalidMerge("At least one source person is required.")
        if target_id in sources:
            raise InvalidMerge(f"Person {target_id} cannot be merged into itself.")
        target = self._require_person(target_id)
        for sid in sources:
            if self._require_person(sid).account_id != target.account_id:
                raise InvalidMerge(f"Person {sid} belongs to a different account.")

        moved: List[str] = []
        for sid in sources:
            moved.extend(self.tables.member_ids(sid))

        with maybe_transaction(uow, "merge") as tx:
            self._checkpoint(tx, "merge", moved, [target_id] + sources)
            with self.tables.lock:
                for sid in sources:
                    for fid in self.tables.member_ids(sid):
                        self._move(fid, sid, target_id)
                    self._drop(sid)
            self.verify([target_id])

        logger.info(f"Merged {len(sources)} person(s) into {target_id} ({len(moved)} face(s) moved)")
        return self.get(target_id)

    def delete_person(self, person_id: str, uow: Optional[UnitOfWork] = None) -> List[str]:
        """
        Delete *person_id*, leaving its faces unassigned.

        Returns:
            The ids of the faces that were detached.
        """
        self._require_person(person_id)
        detached = self.tables.member_ids(person_id)
        with maybe_transaction(uow, "delete_person") as tx:
            self._checkpoint(tx, "delete_person", detached, [person_id])
            with self.tables.lock:
                for fid in detached:
                    self._move(fid, person_id, None)
                self._drop(person_id)
        logger.info(f"Person {person_id} deleted ({len(detached)} face(s) detached)")
        return detached

    def garbage_candidates(self, account_id: Optional[str] = None) -> List[str]:
        """Ids of the empty unnamed people of *account_id* (or all) right now."""
        with self.tables.lock:
            return [pid for pid in self.tables.persons if self._is_garbage(pid, account_id)]

    def collect_garbage(
        self,
        account_id: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
        person_ids: Optional[Iterable[str]] = None,
    ) -> List[str]:
        """
        Remove empty unnamed people; returns the removed ids.

        With *person_ids* only those people are considered.  Each one is
        checked again in the same critical section that drops it, so a
        person that gained a face or a name in the meantime survives.
        """
        with maybe_transaction(uow, "collect_garbage") as tx:
            with self.tables.lock:
                candidates = self.garbage_candidates(account_id) if person_ids is None else list(person_ids)
                doomed = [pid for pid in candidates if self._is_garbage(pid, account_id)]
                if doomed:
                    self._checkpoint(tx, "collect_garbage", [], doomed)
                    for pid in doomed:
                        self._drop(pid)
            self.verify(doomed)
        if doomed:
            logger.info(f"Garbage-collected {len(doomed)} empty unnamed person(s)")
        return doomed

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    def verify(self, person_ids: Iterable[str]) -> None:
        """
        Check the cluster invariants of *person_ids*.

        Raises:
            InvariantViolation: on the first inconsistent person.
        """
        problems: List[str] = []
        with self.tables.lock:
            for pid in person_ids:
                problems.extend(self._problems(pid))
        if problems:
            logger.error(f"Cluster invariant violated: {problems}")
            raise InvariantViolation("; ".join(problems), problems=problems)

    def check_all(self, account_id: Optional[str] = None) -> None:
        """Verify every person and every face of *account_id* (or all)."""
        problems: List[str] = []
        with self.tables.lock:
            for pid, person in self.tables.persons.items():
                if account_id is None or person.account_id == account_id:
                    problems.extend(self._problems(pid))
            for face in self.tables.faces.values():
                if account_id is not None and face.account_id != account_id:
                    continue
                if face.person_id is not None and face.person_id not in self.tables.persons:
                    problems.append(f"face {face.id} references missing person {face.person_id}")
        if problems:
            logger.error(f"Cluster invariant violated: {problems}")
            raise InvariantViolation("; ".join(problems), problems=problems)

    def _problems(self, person_id: str) -> List[str]:
        t = self.tables
        person = t.persons.get(person_id)
        if person is None:
            if t.members.get(person_id):
                return [f"missing person {person_id} still has members"]
            return []
        members = t.members.get(person_id, set())
        out = []
        if person.face_count != len(members):
            out.append(
                f"person {person_id} face_count={person.face_count} "
                f"but has {len(members)} member(s)"
            )
        for fid in members:
            face = t.faces.get(fid)
            if face is None:
                out.append(f"person {person_id} references missing face {fid}")
            elif face.person_id != person_id:
                out.append(f"face {fid} does not point back to person {person_id}")
            elif face.account_id != person.account_id:
                out.append(f"face {fid} and person {person_id} are in different accounts")
        rep = person.representative_face_id
        if rep is not None and rep not in members:
            out.append(f"person {person_id} representative {rep} is not a member")
        if rep is None and members:
            out.append(f"person {person_id} has faces but no representative")
        return out

    # ------------------------------------------------------------------
    # Internals (callers hold tables.lock)
    # ------------------------------------------------------------------

    def _require_face(self, face_id: str) -> Face:
        face = self.tables.face(face_id)
        if face is None:
            raise FaceNotFound(face_id)
        return face

    def _require_person(self, person_id: str) -> Person:
        person = self.tables.person(person_id)
        if person is None:
            raise PersonNotFound(person_id)
        return person

    def _move(self, face_id: str, old: Optional[str], new: Optional[str]) -> None:
        t = self.tables
        now = utcnow()
        t.faces[face_id].person_id = new

        if old is not None and old in t.persons:
            t.members.setdefault(old, set()).discard(face_id)
            row = t.persons[old]
            row.face_count = len(t.members[old])
            row.updated_at = now
            if row.representative_face_id == face_id:
                remaining = t.member_ids(old)
                row.representative_face_id = remaining[0] if remaining else None

        if new is not None:
            t.members.setdefault(new, set()).add(face_id)
            row = t.persons[new]
            row.face_count = len(t.members[new])
            row.updated_at = now
            if row.representative_face_id is None:
                row.representative_face_id = face_id

    def _maybe_collect(self, person_id: str) -> bool:
        if self.gc_policy != "eager":
            return False
        row = self.tables.persons.get(person_id)
        if row is None or row.face_count or row.is_named:
            return False
        self._drop(person_id)
        logger.debug(f"Person {person_id} garbage-collected (empty, unnamed)")
        return True

    def _is_garbage(self, person_id: str, account_id: Optional[str]) -> bool:
        row = self.tables.persons.get(person_id)
        if row is None or (account_id is not None and row.account_id != account_id):
            return False
        return row.face_count == 0 and not row.is_named and not self.tables.members.get(person_id)

    def _drop(self, person_id: str) -> None:
        self.tables.persons.pop(person_id, None)
        self.tables.members.pop(person_id, None)

    def _checkpoint(
        self,
        uow: UnitOfWork,
        description: str,
        face_ids: Iterable[str],
        person_ids: Iterable[str],
    ) -> None:
        """Register an undo that puts the given rows back as they are now."""
        t = self.tables
        with t.lock:
            faces = {fid: t.faces[fid].copy() for fid in face_ids if fid in t.faces}
            people = {
                pid: (
                    t.persons[pid].copy() if pid in t.persons else None,
                    set(t.members.get(pid, ())),
                )
                for pid in set(person_ids)
            }

        def undo() -> None:
            with t.lock:
                for fid, row in faces.items():
                    t.faces[fid] = row.copy()
                for pid, (row, members) in people.items():
                    if row is None:
                        t.persons.pop(pid, None)
                        t.members.pop(pid, None)
                    else:
                        t.persons[pid] = row.copy()
                        t.members[pid] = set(members)

        uow.on_rollback(f"{description}: restore {len(faces)} face(s), {len(people)} person(s)", undo)

