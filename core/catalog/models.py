# ============================================================
# Face Catalog
# core/catalog/models.py
# ============================================================
# Arena-style records shared by the face store and the person
# cluster manager.  Records reference each other only through
# stable string identifiers:
#
#   Asset   - an image with known pixel dimensions
#   Face    - a bounding region of an asset + embedding
#   Person  - a cluster of faces (non-owning back-references)
#
# Stores hand out copies; callers never mutate stored rows.
# ============================================================

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from core.catalog.errors import InvalidBoundingBox


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FaceSource(str, Enum):
    """How a face entered the catalog."""

    MANUAL = "manual"
    DETECTED = "detected"


@dataclass(frozen=True)
class EmbeddingModel:
    """Embedding model configured for an account."""

    name: str
    dim: int


# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BoundingBox:
    """
    Axis-aligned face box in pixel coordinates of the asset image.

    Attributes:
        x1, y1: Top-left corner.
        x2, y2: Bottom-right corner (exclusive edge).
    """

    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def area(self) -> float:
        return self.width * self.height

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.x1, self.y1, self.x2, self.y2)

    def validate(self, image_width: Optional[int] = None, image_height: Optional[int] = None) -> "BoundingBox":
        """
        Check the box is well formed and lies inside the image.

        Raises:
            InvalidBoundingBox: for non-finite, degenerate or
                                out-of-bounds coordinates.
        """
        coords = self.as_tuple()
        if not all(math.isfinite(c) for c in coords):
            raise InvalidBoundingBox("Bounding box coordinates must be finite numbers.")
        if self.x1 >= self.x2 or self.y1 >= self.y2:
            raise InvalidBoundingBox(
                f"Degenerate bounding box {coords}: require x1 < x2 and y1 < y2."
            )
        if self.x1 < 0 or self.y1 < 0:
            raise InvalidBoundingBox(f"Bounding box {coords} has negative coordinates.")
        if image_width is not None and self.x2 > image_width:
            raise InvalidBoundingBox(
                f"Bounding box {coords} exceeds image width {image_width}."
            )
        if image_height is not None and self.y2 > image_height:
            raise InvalidBoundingBox(
                f"Bounding box {coords} exceeds image height {image_height}."
            )
        return self

    def clip(self, image_width: int, image_height: int) -> "BoundingBox":
        """Clamp the box to ``[0, width] x [0, height]``."""
        return BoundingBox(
            x1=min(max(self.x1, 0.0), float(image_width)),
            y1=min(max(self.y1, 0.0), float(image_height)),
            x2=min(max(self.x2, 0.0), float(image_width)),
            y2=min(max(self.y2, 0.0), float(image_height)),
        )

    @classmethod
    def from_xywh(cls, x: float, y: float, width: float, height: float) -> "BoundingBox":
        return cls(x1=x, y1=y, x2=x + width, y2=y + height)


# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class Asset:
    """An image registered in an account, known by its pixel size."""

    id: str
    account_id: str
    width: int
    height: int
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Face:
    """
    A detected (or manually drawn) face.

    Attributes:
        id:          Unique face identifier.
        account_id:  Owning account (copied from the asset).
        asset_id:    Asset the face was found in.
        bbox:        Bounding box in asset pixel coordinates.
        embedding:   L2-normalised float32 vector, or None for manual
                     faces that were never embedded.
        model_name:  Embedding model that produced ``embedding``.
        person_id:   Assigned person, None when unassigned.
        source:      'manual' | 'detected'.
        score:       Detector confidence for detected faces.
        created_at:  UTC creation timestamp.
        seq:         Store-wide creation sequence (total order).
    """

    id: str
    account_id: str
    asset_id: str
    bbox: BoundingBox
    embedding: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    model_name: Optional[str] = None
    person_id: Optional[str] = None
    source: FaceSource = FaceSource.DETECTED
    score: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)
    seq: int = 0

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None

    @property
    def is_assigned(self) -> bool:
        return self.person_id is not None

    def copy(self) -> "Face":
        return replace(self)


@dataclass
class Person:
    """
    A cluster of faces believed to show the same individual.

    ``face_count`` is maintained by the cluster manager and always
    equals the number of faces whose ``person_id`` is this person.
    """

    id: str
    account_id: str
    name: str = ""
    representative_face_id: Optional[str] = None
    face_count: int = 0
    is_hidden: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_named(self) -> bool:
        """Named people were labelled by a user and survive becoming empty."""
        return bool(self.name and self.name.strip())

    @property
    def is_empty(self) -> bool:
        return self.face_count == 0

    def copy(self) -> "Person":
        return replace(self)

    def __repr__(self) -> str:
        return (
            f"Person(id={self.id[:8]}..., name={self.name!r}, "
            f"faces={self.face_count}, account={self.account_id!r})"
        )
