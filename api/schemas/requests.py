# ============================================================
# Face Catalog
# api/schemas/requests.py
# ============================================================
# Pydantic v2 request models for all FastAPI endpoints.
#
# Schemas:
#   CreateFaceRequest     - POST   /api/v1/faces
#   ReassignFaceRequest   - PUT    /api/v1/faces/{person_id}
#   DeleteFaceRequest     - DELETE /api/v1/faces/{face_id}
#   RegisterAssetRequest  - POST   /api/v1/assets
#   CreatePersonRequest   - POST   /api/v1/people
#   UpdatePersonRequest   - PATCH  /api/v1/people/{person_id}
#   MergePeopleRequest    - POST   /api/v1/people/{person_id}/merge
#
# The account is never part of a request body; it comes from
# the authentication context.
# ============================================================

from __future__ import annotations

import math
from typing import Annotated, List, Optional

from pydantic import BaseModel, Field, field_validator


# ============================================================
# Shared base
# ============================================================

class BaseAPIRequest(BaseModel):
    """Common fields shared across all requests."""

    model_config = {"str_strip_whitespace": True, "extra": "forbid"}


class BoundingBoxIn(BaseAPIRequest):
    """Face box in pixel coordinates of the asset image (checked against the asset)."""

    x1: float = Field(..., description="Left edge (pixels).")
    y1: float = Field(..., description="Top edge (pixels).")
    x2: float = Field(..., description="Right edge (pixels).")
    y2: float = Field(..., description="Bottom edge (pixels).")


# ============================================================
# Faces
# ============================================================

class CreateFaceRequest(BaseAPIRequest):
    """
    POST /api/v1/faces

    Add a face to an asset, optionally with an embedding and an
    initial person.
    """

    asset_id: Annotated[str, Field(min_length=1, max_length=128)] = Field(
        description="Asset the face belongs to.",
    )
    bbox: BoundingBoxIn = Field(..., description="Face bounding box.")
    embedding: Optional[List[float]] = Field(
        default=None,
        description="Embedding vector; omitted for manual faces that are never matched.",
    )
    model_name: Optional[str] = Field(
        default=None,
        description="Embedding model version that produced the vector.",
    )
    person_id: Optional[str] = Field(default=None, description="Assign the new face to this person.")

    @field_validator("embedding")
    @classmethod
    def finite_embedding(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        if v is not None:
            if not v:
                raise ValueError("embedding must not be empty.")
            if not all(math.isfinite(x) for x in v):
                raise ValueError("embedding must contain only finite numbers.")
        return v


class ReassignFaceRequest(BaseAPIRequest):
    """
    PUT /api/v1/faces/{person_id}

    Fields:
        id: Face to move to the person in the path.
    """

    id: Annotated[str, Field(min_length=1)] = Field(description="Face id to reassign.")


class DeleteFaceRequest(BaseAPIRequest):
    """
    DELETE /api/v1/faces/{face_id}

    Fields:
        force: Delete even when the face is the last face of its person.
    """

    force: bool = Field(default=False, description="Allow orphaning the face's person.")


# ============================================================
# Assets
# ============================================================

class RegisterAssetRequest(BaseAPIRequest):
    """POST /api/v1/assets"""

    asset_id: Optional[str] = Field(default=None, description="Client-chosen asset id (optional).")
    width: int = Field(..., ge=1, le=100_000, description="Image width in pixels.")
    height: int = Field(..., ge=1, le=100_000, description="Image height in pixels.")


# ============================================================
# People
# ============================================================

class CreatePersonRequest(BaseAPIRequest):
    """
    POST /api/v1/people

    Fields:
        name:     Optional display name; empty = unnamed cluster.
        face_ids: Faces to move into the new person.
    """

    name: Annotated[str, Field(max_length=128)] = Field(default="", description="Person name.")
    face_ids: List[str] = Field(default_factory=list, description="Initial faces.")


class UpdatePersonRequest(BaseAPIRequest):
    """PATCH /api/v1/people/{person_id}"""

    name: Optional[Annotated[str, Field(max_length=128)]] = Field(
        default=None, description="New name; empty string clears it."
    )
    is_hidden: Optional[bool] = Field(default=None, description="Hide or unhide the person.")
    representative_face_id: Optional[str] = Field(
        default=None, description="Face to use as the person's thumbnail."
    )

    @field_validator("name")
    @classmethod
    def name_no_slashes(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and ("/" in v or "\\" in v):
            raise ValueError("name must not contain path separators.")
        return v


class MergePeopleRequest(BaseAPIRequest):
    """
    POST /api/v1/people/{person_id}/merge

    Fields:
        ids: People whose faces move into the path person; they are deleted.
    """

    ids: Annotated[List[str], Field(min_length=1)] = Field(description="Source person ids.")


__all__ = [
    "BaseAPIRequest",
    "BoundingBoxIn",
    "CreateFaceRequest",
    "ReassignFaceRequest",
    "DeleteFaceRequest",
    "RegisterAssetRequest",
    "CreatePersonRequest",
    "UpdatePersonRequest",
    "MergePeopleRequest",
]
