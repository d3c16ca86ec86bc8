# Pydantic v2 response models for all FastAPI endpoints.
#
# These models define the exact JSON structure returned by:
#   GET  /api/v1/health
#   /api/v1/faces     (create, list, identify, reassign, delete)
#   /api/v1/assets
#   /api/v1/people
#
# Each model knows how to build itself from the matching core
# record via ``from_record``.

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from core.catalog.models import Asset, BoundingBox as CoreBoundingBox, Face, Person
from core.identification.engine import IdentifiedFace, PersonCandidate


class BoundingBox(BaseModel):
    """Axis-aligned face bounding box in pixel coordinates."""

    x1: float = Field(..., description="Left edge (pixels).")
    y1: float = Field(..., description="Top edge (pixels).")
    x2: float = Field(..., description="Right edge (pixels).")
    y2: float = Field(..., description="Bottom edge (pixels).")

    model_config = {"frozen": True}

    @classmethod
    def from_record(cls, box: CoreBoundingBox) -> "BoundingBox":
        return cls(x1=box.x1, y1=box.y1, x2=box.x2, y2=box.y2)


# ============================================================
# Faces
# ============================================================

class FaceResponse(BaseModel):
    """A stored face."""

    id: str = Field(..., description="Face id.")
    asset_id: str = Field(..., description="Asset the face was found in.")
    bbox: BoundingBox = Field(..., description="Bounding box in asset pixel coordinates.")
    person_id: Optional[str] = Field(None, description="Assigned person, null when unassigned.")
    source: str = Field(..., description="'manual' or 'detected'.")
    score: Optional[float] = Field(None, description="Detector confidence for detected faces.")
    model_name: Optional[str] = Field(None, description="Embedding model version, null if not embedded.")
    has_embedding: bool = Field(..., description="True when the face takes part in matching.")
    created_at: datetime = Field(..., description="UTC creation time.")

    @classmethod
    def from_record(cls, face: Face) -> "FaceResponse":
        return cls(
            id=face.id,
            asset_id=face.asset_id,
            bbox=BoundingBox.from_record(face.bbox),
            person_id=face.person_id,
            source=face.source.value,
            score=face.score,
            model_name=face.model_name,
            has_embedding=face.has_embedding,
            created_at=face.created_at,
        )


class FaceListResponse(BaseModel):
    """Faces of one asset, in creation order."""

    faces: List[FaceResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class CandidateResponse(BaseModel):
    """A known person matching an observed face."""

    person_id: str = Field(..., description="Matched person id.")
    name: str = Field(..., description="Person name (empty for unnamed clusters).")
    similarity: float = Field(..., ge=-1.0, le=1.0, description="Cosine similarity [-1, 1].")
    face_id: str = Field(..., description="Stored face that produced the best similarity.")

    @classmethod
    def from_record(cls, candidate: PersonCandidate) -> "CandidateResponse":
        return cls(**candidate.to_dict())


class IdentifiedFaceResponse(BaseModel):
    """One face observed in the uploaded image."""

    face_index: int = Field(..., description="Zero-based index, by detector confidence.")
    bbox: BoundingBox = Field(..., description="Bounding box in upload pixel coordinates.")
    score: float = Field(..., description="Detector confidence.")
    candidates: List[CandidateResponse] = Field(
        default_factory=list,
        description="Candidate people, most similar first; empty when none clear the threshold.",
    )

    @classmethod
    def from_record(cls, index: int, face: IdentifiedFace) -> "IdentifiedFaceResponse":
        return cls(
            face_index=index,
            bbox=BoundingBox.from_record(face.bbox),
            score=face.score,
            candidates=[CandidateResponse.from_record(c) for c in face.candidates],
        )


class IdentifyResponse(BaseModel):
    """Response for POST /api/v1/faces/identify."""

    faces: List[IdentifiedFaceResponse] = Field(default_factory=list)
    num_faces: int = Field(..., ge=0)
    inference_time_ms: float = Field(..., ge=0.0)

    model_config = {
        "json_schema_extra": {
            "example": {
                "faces": [
                    {
                        "face_index": 0,
                        "bbox": {"x1": 120, "y1": 80, "x2": 260, "y2": 250},
                        "score": 0.98,
                        "candidates": [
                            {
                                "person_id": "2f1e…",
                                "name": "Alice",
                                "similarity": 0.83,
                                "face_id": "9c0d…",
                            }
                        ],
                    }
                ],
                "num_faces": 1,
                "inference_time_ms": 41.7,
            }
        }
    }


# ============================================================
# Assets / people
# ============================================================

class AssetResponse(BaseModel):
    id: str
    width: int
    height: int
    created_at: datetime

    @classmethod
    def from_record(cls, asset: Asset) -> "AssetResponse":
        return cls(id=asset.id, width=asset.width, height=asset.height, created_at=asset.created_at)


class PersonResponse(BaseModel):
    """A person (cluster of faces)."""

    id: str = Field(..., description="Person id.")
    name: str = Field(..., description="Display name; empty for unnamed clusters.")
    face_count: int = Field(..., ge=0, description="Number of faces assigned to the person.")
    representative_face_id: Optional[str] = Field(None, description="Thumbnail face.")
    is_hidden: bool = Field(False)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, person: Person) -> "PersonResponse":
        return cls(
            id=person.id,
            name=person.name,
            face_count=person.face_count,
            representative_face_id=person.representative_face_id,
            is_hidden=person.is_hidden,
            created_at=person.created_at,
            updated_at=person.updated_at,
        )


class PersonListResponse(BaseModel):
    people: List[PersonResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class DeletePersonResponse(BaseModel):
    id: str
    detached_face_ids: List[str] = Field(default_factory=list)


class GarbageCollectResponse(BaseModel):
    removed: List[str] = Field(default_factory=list)


# ============================================================
# Health
# ============================================================

class ComponentStatus(str, Enum):
    """Status of an individual system component."""

    OK = "ok"
    DEGRADED = "degraded"
    DOWN = "down"
    UNKNOWN = "unknown"


class ComponentHealth(BaseModel):
    """Health status for a single component."""

    status: ComponentStatus = Field(..., description="Component health status.")
    loaded: bool = Field(..., description="Whether the model/component is loaded.")
    detail: Optional[str] = Field(None, description="Extra info or error message.")


class HealthResponse(BaseModel):
    """
    Response for GET /api/v1/health.

    Overall API status plus per-component checks (catalog, analyzer).
    """

    status: ComponentStatus = Field(
        ..., description="Overall API health: 'ok' | 'degraded' | 'down'."
    )
    version: str = Field(..., description="Application version string.")
    environment: str = Field(..., description="Deployment environment (development / production).")
    uptime_seconds: float = Field(..., description="Seconds since the API process started.")
    components: Dict[str, ComponentHealth] = Field(
        default_factory=dict,
        description="Per-component health map keyed by component name.",
    )


# ============================================================
# Errors
# ============================================================

class ErrorDetail(BaseModel):
    """A single structured error detail."""

    field: Optional[str] = Field(None, description="Field name the error relates to (if any).")
    message: str = Field(..., description="Human-readable error description.")
    code: Optional[str] = Field(None, description="Machine-readable error code.")


class ErrorResponse(BaseModel):
    """
    Standardised error envelope returned for all 4xx / 5xx responses.

    All API errors use this shape so clients can handle them uniformly.
    """

    error: str = Field(..., description="Error kind (e.g. 'not_found', 'conflict').")
    message: str = Field(..., description="Human-readable description of the error.")
    details: List[ErrorDetail] = Field(
        default_factory=list,
        description="Optional list of per-field or per-item error details.",
    )
    request_id: Optional[str] = Field(
        None, description="Unique request ID for tracing (from X-Request-ID header)."
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "error": "conflict",
                "message": "Face 9c0d… is the last face of person 2f1e…; use force to delete it anyway.",
                "details": [{"field": None, "message": "…", "code": "person_would_be_orphaned"}],
                "request_id": "req_abc123",
            }
        }
    }


__all__ = [
    "BoundingBox",
    "FaceResponse",
    "FaceListResponse",
    "CandidateResponse",
    "IdentifiedFaceResponse",
    "IdentifyResponse",
    "AssetResponse",
    "PersonResponse",
    "PersonListResponse",
    "DeletePersonResponse",
    "GarbageCollectResponse",
    "ComponentStatus",
    "ComponentHealth",
    "HealthResponse",
    "ErrorDetail",
    "ErrorResponse",
]
