# ============================================================
# Face Catalog
# api/routers/faces.py
# ============================================================
# Face endpoints.
#
#   POST   /faces                  create a face on an asset
#   GET    /faces?id=<asset_id>    faces of an asset
#   GET    /faces/{face_id}        one face
#   POST   /faces/identify         who is in this image? (read-only)
#   POST   /faces/detect           detect + store faces of an asset
#   POST   /faces/{face_id}/recognize  cluster an unassigned face
#   POST   /faces/{face_id}/detach     unassign a face
#   PUT    /faces/{person_id}      move face {id} to the person
#   DELETE /faces/{face_id}        delete a face ({force})
#
# Catalog errors propagate to the handlers in api.main.
# ============================================================

from __future__ import annotations

from typing import Optional

from fastapi import (
    APIRouter,
    Body,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    status,
)

from api.dependencies import get_account_id, get_catalog, run_blocking
from api.metrics import IDENTIFIED_FACES, IDENTIFY_COUNT, MUTATION_COUNT
from api.schemas.requests import CreateFaceRequest, DeleteFaceRequest, ReassignFaceRequest
from api.schemas.responses import (
    ErrorResponse,
    FaceListResponse,
    FaceResponse,
    IdentifiedFaceResponse,
    IdentifyResponse,
    PersonResponse,
)
from core.catalog.errors import EmptyUpload
from core.catalog.models import BoundingBox, FaceSource
from core.catalog.service import FaceCatalog
from utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/faces", tags=["Faces"])

_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid input."},
    404: {"model": ErrorResponse, "description": "Face, person or asset not found."},
    409: {"model": ErrorResponse, "description": "Conflict."},
    503: {"model": ErrorResponse, "description": "Analyzer or lock unavailable."},
}


def _max_upload_bytes() -> int:
    from config.settings import settings  # noqa: PLC0415
    return settings.identify.max_upload_bytes


async def _read_upload(upload: Optional[UploadFile]) -> bytes:
    """Read an uploaded image, enforcing the size limit."""
    if upload is None:
        raise EmptyUpload()

    max_bytes = _max_upload_bytes()
    claimed_size = upload.size
    if claimed_size is not None and claimed_size > max_bytes:
        mb = max_bytes / (1024 * 1024)
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large ({claimed_size} bytes). Maximum: {mb:.0f} MB.",
        )

    raw = await upload.read()
    if not raw:
        raise EmptyUpload()
    if len(raw) > max_bytes:
        mb = max_bytes / (1024 * 1024)
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large ({len(raw)} bytes). Maximum: {mb:.0f} MB.",
        )
    return raw


# ============================================================
# Create / read
# ============================================================

@router.post(
    "",
    response_model=FaceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a face",
    responses=_ERRORS,
)
async def create_face(
    request: Request,
    body: CreateFaceRequest,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> FaceResponse:
    bbox = BoundingBox(body.bbox.x1, body.bbox.y1, body.bbox.x2, body.bbox.y2)
    face = await run_blocking(
        request,
        catalog.create_face,
        account_id,
        body.asset_id,
        bbox,
        embedding=body.embedding,
        person_id=body.person_id,
        model_name=body.model_name,
    )
    MUTATION_COUNT.labels(operation="create_face", status="ok").inc()
    return FaceResponse.from_record(face)


@router.get(
    "",
    response_model=FaceListResponse,
    summary="List the faces of an asset",
    responses=_ERRORS,
)
async def get_faces_by_id(
    request: Request,
    id: str = Query(..., min_length=1, description="Asset id."),
    person_id: Optional[str] = Query(None, description="Only faces of this person."),
    source: Optional[FaceSource] = Query(None, description="'manual' or 'detected'."),
    assigned: Optional[bool] = Query(None, description="Only (un)assigned faces."),
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> FaceListResponse:
    faces = await run_blocking(
        request, catalog.get_faces_by_id, account_id, id,
        person_id=person_id, source=source, assigned=assigned,
    )
    return FaceListResponse(faces=[FaceResponse.from_record(f) for f in faces], total=len(faces))


@router.get(
    "/{face_id}",
    response_model=FaceResponse,
    summary="Get one face",
    responses=_ERRORS,
)
async def get_face(
    request: Request,
    face_id: str,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> FaceResponse:
    face = await run_blocking(request, catalog.get_face, account_id, face_id)
    return FaceResponse.from_record(face)


# ============================================================
# Identification / detection
# ============================================================

@router.post(
    "/identify",
    response_model=IdentifyResponse,
    summary="Identify the people in an image",
    description=(
        "Detect every face in the uploaded image and rank the known "
        "people of the caller's account that each face matches. "
        "Read-only: nothing is stored."
    ),
    responses=_ERRORS,
)
async def identify_faces(
    request: Request,
    image: Optional[UploadFile] = File(None, description="Image file (JPEG / PNG / WebP / BMP)."),
    k: Optional[int] = Query(None, ge=1, le=100, description="Neighbours per face."),
    min_similarity: Optional[float] = Query(None, ge=-1.0, le=1.0, description="Similarity threshold."),
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> IdentifyResponse:
    try:
        raw = await _read_upload(image)
        result = await run_blocking(
            request, catalog.identify_faces, account_id, raw, k=k, min_similarity=min_similarity
        )
    except Exception:
        IDENTIFY_COUNT.labels(status="error").inc()
        raise

    IDENTIFY_COUNT.labels(status="ok").inc()
    for face in result.faces:
        IDENTIFIED_FACES.labels(known=str(face.is_known).lower()).inc()

    return IdentifyResponse(
        faces=[IdentifiedFaceResponse.from_record(i, f) for i, f in enumerate(result.faces)],
        num_faces=result.num_faces,
        inference_time_ms=result.inference_time_ms,
    )


@router.post(
    "/detect",
    response_model=FaceListResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Detect and store the faces of an asset",
    responses=_ERRORS,
)
async def detect_faces(
    request: Request,
    asset_id: str = Form(..., min_length=1, description="Registered asset the image belongs to."),
    image: Optional[UploadFile] = File(None, description="The asset image."),
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> FaceListResponse:
    raw = await _read_upload(image)
    faces = await run_blocking(request, catalog.detect_faces, account_id, asset_id, raw)
    MUTATION_COUNT.labels(operation="detect_faces", status="ok").inc()
    return FaceListResponse(faces=[FaceResponse.from_record(f) for f in faces], total=len(faces))


# ============================================================
# Membership
# ============================================================

@router.post(
    "/{face_id}/recognize",
    response_model=PersonResponse,
    summary="Assign a face to its best-matching person (or a new one)",
    responses=_ERRORS,
)
async def recognize_face(
    request: Request,
    face_id: str,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> PersonResponse:
    person = await run_blocking(request, catalog.recognize_face, account_id, face_id)
    MUTATION_COUNT.labels(operation="recognize_face", status="ok").inc()
    return PersonResponse.from_record(person)


@router.post(
    "/{face_id}/detach",
    response_model=FaceResponse,
    summary="Remove a face from its person",
    responses=_ERRORS,
)
async def detach_face(
    request: Request,
    face_id: str,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> FaceResponse:
    face = await run_blocking(request, catalog.detach_face, account_id, face_id)
    MUTATION_COUNT.labels(operation="detach_face", status="ok").inc()
    return FaceResponse.from_record(face)


@router.put(
    "/{person_id}",
    response_model=PersonResponse,
    summary="Reassign a face to a person",
    responses=_ERRORS,
)
async def reassign_faces_by_id(
    request: Request,
    person_id: str,
    body: ReassignFaceRequest,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> PersonResponse:
    person = await run_blocking(request, catalog.reassign_faces_by_id, account_id, person_id, body.id)
    MUTATION_COUNT.labels(operation="reassign_face", status="ok").inc()
    return PersonResponse.from_record(person)


@router.delete(
    "/{face_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Delete a face",
    description=(
        "Deleting the last face of a named person is refused with 409 "
        "unless `force` is true."
    ),
    responses=_ERRORS,
)
async def delete_face(
    request: Request,
    face_id: str,
    body: Optional[DeleteFaceRequest] = Body(None),
    force: bool = Query(False, description="Same as the body field."),
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> Response:
    force = force or (body.force if body is not None else False)
    await run_blocking(request, catalog.delete_face, account_id, face_id, force=force)
    MUTATION_COUNT.labels(operation="delete_face", status="ok").inc()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
