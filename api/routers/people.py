# ============================================================
# Face Catalog
# api/routers/people.py
# ============================================================
# Person (cluster) endpoints.
#
#   GET    /people                      list people of the account
#   POST   /people                      create a person from faces
#   POST   /people/gc                   collect empty unnamed people
#   GET    /people/{person_id}          one person
#   GET    /people/{person_id}/faces    faces of a person
#   PATCH  /people/{person_id}          rename / hide / thumbnail
#   POST   /people/{person_id}/merge    merge other people into it
#   DELETE /people/{person_id}          delete, detaching its faces
# ============================================================

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status

from api.dependencies import get_account_id, get_catalog, run_blocking
from api.metrics import MUTATION_COUNT
from api.schemas.requests import CreatePersonRequest, MergePeopleRequest, UpdatePersonRequest
from api.schemas.responses import (
    DeletePersonResponse,
    ErrorResponse,
    FaceListResponse,
    FaceResponse,
    GarbageCollectResponse,
    PersonListResponse,
    PersonResponse,
)
from core.catalog.service import FaceCatalog

router = APIRouter(prefix="/people", tags=["People"])

_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid input."},
    404: {"model": ErrorResponse, "description": "Person or face not found."},
    409: {"model": ErrorResponse, "description": "Conflict."},
    503: {"model": ErrorResponse, "description": "Lock timeout."},
}


@router.get("", response_model=PersonListResponse, summary="List people")
async def list_people(
    request: Request,
    include_hidden: bool = Query(True, description="Include hidden people."),
    named: Optional[bool] = Query(None, description="Only named (true) or unnamed (false) people."),
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> PersonListResponse:
    people = await run_blocking(
        request, catalog.list_people, account_id, include_hidden=include_hidden, named=named
    )
    return PersonListResponse(people=[PersonResponse.from_record(p) for p in people], total=len(people))


@router.post(
    "",
    response_model=PersonResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a person",
    responses=_ERRORS,
)
async def create_person(
    request: Request,
    body: CreatePersonRequest,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> PersonResponse:
    person = await run_blocking(
        request, catalog.create_person, account_id, name=body.name, face_ids=body.face_ids
    )
    MUTATION_COUNT.labels(operation="create_person", status="ok").inc()
    return PersonResponse.from_record(person)


@router.post("/gc", response_model=GarbageCollectResponse, summary="Remove empty unnamed people")
async def collect_garbage(
    request: Request,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> GarbageCollectResponse:
    removed = await run_blocking(request, catalog.collect_garbage, account_id)
    return GarbageCollectResponse(removed=removed)


@router.get("/{person_id}", response_model=PersonResponse, summary="Get a person", responses=_ERRORS)
async def get_person(
    request: Request,
    person_id: str,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> PersonResponse:
    person = await run_blocking(request, catalog.get_person, account_id, person_id)
    return PersonResponse.from_record(person)


@router.get(
    "/{person_id}/faces",
    response_model=FaceListResponse,
    summary="Faces of a person",
    responses=_ERRORS,
)
async def get_person_faces(
    request: Request,
    person_id: str,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> FaceListResponse:
    faces = await run_blocking(request, catalog.get_person_faces, account_id, person_id)
    return FaceListResponse(faces=[FaceResponse.from_record(f) for f in faces], total=len(faces))


@router.patch(
    "/{person_id}",
    response_model=PersonResponse,
    summary="Update a person",
    description=(
        "Clearing the name of a person without faces removes it; "
        "the response is then 204 No Content."
    ),
    responses={**_ERRORS, 204: {"description": "Person was removed."}},
)
async def update_person(
    request: Request,
    person_id: str,
    body: UpdatePersonRequest,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
):
    person = await run_blocking(
        request,
        catalog.update_person,
        account_id,
        person_id,
        name=body.name,
        is_hidden=body.is_hidden,
        representative_face_id=body.representative_face_id,
    )
    MUTATION_COUNT.labels(operation="update_person", status="ok").inc()
    if person is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return PersonResponse.from_record(person)


@router.post(
    "/{person_id}/merge",
    response_model=PersonResponse,
    summary="Merge people into this one",
    responses=_ERRORS,
)
async def merge_people(
    request: Request,
    person_id: str,
    body: MergePeopleRequest,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> PersonResponse:
    person = await run_blocking(request, catalog.merge_people, account_id, person_id, body.ids)
    MUTATION_COUNT.labels(operation="merge_people", status="ok").inc()
    return PersonResponse.from_record(person)


@router.delete(
    "/{person_id}",
    response_model=DeletePersonResponse,
    summary="Delete a person",
    description="The person's faces are kept and become unassigned.",
    responses=_ERRORS,
)
async def delete_person(
    request: Request,
    person_id: str,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> DeletePersonResponse:
    detached = await run_blocking(request, catalog.delete_person, account_id, person_id)
    MUTATION_COUNT.labels(operation="delete_person", status="ok").inc()
    return DeletePersonResponse(id=person_id, detached_face_ids=detached)
