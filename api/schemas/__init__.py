# ============================================================
# api/schemas/__init__.py
# API Schema Package - re-exports all request/response models
# ============================================================

from api.schemas.requests import (
    BaseAPIRequest,
    BoundingBoxIn,
    CreateFaceRequest,
    ReassignFaceRequest,
    DeleteFaceRequest,
    RegisterAssetRequest,
    CreatePersonRequest,
    UpdatePersonRequest,
    MergePeopleRequest,
)

from api.schemas.responses import (
    BoundingBox,
    FaceResponse,
    FaceListResponse,
    CandidateResponse,
    IdentifiedFaceResponse,
    IdentifyResponse,
    AssetResponse,
    PersonResponse,
    PersonListResponse,
    DeletePersonResponse,
    GarbageCollectResponse,
    ComponentStatus,
    ComponentHealth,
    HealthResponse,
    ErrorDetail,
    ErrorResponse,
)

__all__ = [
    # Requests
    "BaseAPIRequest",
    "BoundingBoxIn",
    "CreateFaceRequest",
    "ReassignFaceRequest",
    "DeleteFaceRequest",
    "RegisterAssetRequest",
    "CreatePersonRequest",
    "UpdatePersonRequest",
    "MergePeopleRequest",
    # Responses
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
