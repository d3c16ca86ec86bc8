# ============================================================
# Face Catalog
# api/routers/assets.py
# ============================================================
# POST /assets            register an asset (image dimensions)
# GET  /assets/{asset_id} fetch a registered asset
# ============================================================

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status

from api.dependencies import get_account_id, get_catalog, run_blocking
from api.schemas.requests import RegisterAssetRequest
from api.schemas.responses import AssetResponse, ErrorResponse
from core.catalog.service import FaceCatalog

router = APIRouter(prefix="/assets", tags=["Assets"])


@router.post(
    "",
    response_model=AssetResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register an asset",
    responses={400: {"model": ErrorResponse, "description": "Invalid dimensions or id."}},
)
async def register_asset(
    request: Request,
    body: RegisterAssetRequest,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> AssetResponse:
    asset = await run_blocking(
        request, catalog.register_asset, account_id, body.width, body.height, asset_id=body.asset_id
    )
    return AssetResponse.from_record(asset)


@router.get(
    "/{asset_id}",
    response_model=AssetResponse,
    summary="Get an asset",
    responses={404: {"model": ErrorResponse, "description": "Asset not found."}},
)
async def get_asset(
    request: Request,
    asset_id: str,
    catalog: FaceCatalog = Depends(get_catalog),
    account_id: str = Depends(get_account_id),
) -> AssetResponse:
    asset = await run_blocking(request, catalog.get_asset, account_id, asset_id)
    return AssetResponse.from_record(asset)
