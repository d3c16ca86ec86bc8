# ============================================================
# Face Catalog
# core/catalog/errors.py
# ============================================================
# Error taxonomy shared by the index, stores, cluster manager,
# identification engine and the HTTP layer.
#
#   CatalogError
#       ├── NotFoundError      - face / person / asset missing
#       ├── InvalidInputError  - bad bbox, empty upload, bad vector
#       ├── ConflictError      - cross-account, orphaning delete
#       ├── UnavailableError   - analyzer down, lock timeout, cancelled
#       └── InternalError      - invariant violated at runtime
#
# Every error carries a stable ``kind`` and ``code`` plus a
# human-readable message that is safe to return to clients.
# ============================================================

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    INTERNAL = "internal"


class CatalogError(Exception):
    """Base class for every error raised by the catalog engine."""

    kind: ErrorKind = ErrorKind.INTERNAL
    code: str = "catalog_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "code": self.code, "message": self.message}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# ── Not found ────────────────────────────────────────────────

class NotFoundError(CatalogError):
    kind = ErrorKind.NOT_FOUND
    code = "not_found"


class FaceNotFound(NotFoundError):
    code = "face_not_found"

    def __init__(self, face_id: str) -> None:
        super().__init__(f"Face {face_id} not found.", face_id=face_id)


class PersonNotFound(NotFoundError):
    code = "person_not_found"

    def __init__(self, person_id: str) -> None:
        super().__init__(f"Person {person_id} not found.", person_id=person_id)


class AssetNotFound(NotFoundError):
    code = "asset_not_found"

    def __init__(self, asset_id: str) -> None:
        super().__init__(f"Asset {asset_id} not found.", asset_id=asset_id)


# ── Invalid input ────────────────────────────────────────────

class InvalidInputError(CatalogError):
    kind = ErrorKind.INVALID_INPUT
    code = "invalid_input"


class InvalidBoundingBox(InvalidInputError):
    code = "invalid_bounding_box"


class EmptyUpload(InvalidInputError):
    code = "empty_upload"

    def __init__(self, message: str = "Uploaded file is missing or empty.") -> None:
        super().__init__(message)


class InvalidImage(InvalidInputError):
    code = "invalid_image"


class DimensionMismatch(InvalidInputError):
    code = "dimension_mismatch"

    def __init__(self, expected: int, got: int) -> None:
        super().__init__(
            f"Embedding has dimension {got}, expected {expected}.",
            expected=expected,
            got=got,
        )


class ModelMismatch(InvalidInputError):
    code = "model_mismatch"

    def __init__(self, expected: str, got: str) -> None:
        super().__init__(
            f"Embedding was produced by model {got!r}; this account uses {expected!r}.",
            expected=expected,
            got=got,
        )


# ── Conflict ─────────────────────────────────────────────────

class ConflictError(CatalogError):
    kind = ErrorKind.CONFLICT
    code = "conflict"


class CrossAccountAssignment(ConflictError):
    code = "cross_account_assignment"

    def __init__(self, face_id: str, person_id: str) -> None:
        super().__init__(
            f"Face {face_id} and person {person_id} belong to different accounts.",
            face_id=face_id,
            person_id=person_id,
        )


class PersonWouldBeOrphaned(ConflictError):
    code = "person_would_be_orphaned"

    def __init__(self, face_id: str, person_id: str) -> None:
        super().__init__(
            f"Face {face_id} is the last face of person {person_id}; "
            "use force to delete it anyway.",
            face_id=face_id,
            person_id=person_id,
        )


class InvalidMerge(ConflictError):
    code = "invalid_merge"


# ── Unavailable ──────────────────────────────────────────────

class UnavailableError(CatalogError):
    kind = ErrorKind.UNAVAILABLE
    code = "unavailable"


class ModelUnavailable(UnavailableError):
    code = "model_unavailable"

    def __init__(self, message: str = "Face analyzer is unavailable.", retry_after: Optional[float] = None) -> None:
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after


class LockTimeout(UnavailableError):
    code = "lock_timeout"


class RequestCancelled(UnavailableError):
    code = "request_cancelled"

    def __init__(self, message: str = "The caller gave up before the change was committed.") -> None:
        super().__init__(message)


# ── Internal ─────────────────────────────────────────────────

class InternalError(CatalogError):
    kind = ErrorKind.INTERNAL
    code = "internal"


class InvariantViolation(InternalError):
    code = "invariant_violation"
