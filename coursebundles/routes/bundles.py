from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from pydantic import BaseModel
from starlette import status

from coursebundles.bundles.models import Bundle, ContentUnitKind, ContentUnitRef
from coursebundles.bundles.service import BundleService, get_bundle_service
from coursebundles.config import coerce_boolish, get_settings
from coursebundles.errors import BundleError
from coursebundles.jobs import BundleWorkerPool, PoolSaturated, get_worker_pool
from coursebundles.metrics import BUNDLE_UPLOAD_BYTES
from coursebundles.security import require_api_key
from coursebundles.storage import is_zip_archive

router = APIRouter(tags=["bundles"], dependencies=[Depends(require_api_key)])

logger = logging.getLogger(__name__)


class BundleOut(BaseModel):
    id: str
    contentUnitId: str
    kind: ContentUnitKind
    version: int
    entrypoint: str
    storagePath: str
    bundleUrl: str
    sizeBytes: int
    manifestJson: Dict[str, Any] | None = None
    isActive: bool
    createdAt: datetime


class BundleDeletedOut(BaseModel):
    deleted: str


def _to_out(service: BundleService, bundle: Bundle) -> BundleOut:
    return BundleOut(
        id=bundle.id,
        contentUnitId=bundle.content_unit.id,
        kind=bundle.content_unit.kind,
        version=bundle.version,
        entrypoint=bundle.entrypoint,
        storagePath=bundle.storage_path,
        bundleUrl=service.bundle_url(bundle),
        sizeBytes=bundle.size_bytes,
        manifestJson=bundle.manifest.to_json() if bundle.manifest else None,
        isActive=bundle.is_active,
        createdAt=bundle.created_at,
    )


def _http_error(exc: BundleError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def _content_unit(unit_id: str, kind: ContentUnitKind) -> ContentUnitRef:
    try:
        return ContentUnitRef.of(unit_id, kind)
    except BundleError as exc:
        raise _http_error(exc) from exc


@router.post("/bundles", response_model=BundleOut, status_code=status.HTTP_201_CREATED)
async def upload_bundle(
    file: UploadFile = File(..., description="ZIP with the bundle's HTML/CSS/JS"),
    content_unit_id: str = Form(..., alias="contentUnitId"),
    kind: ContentUnitKind = Form(default=ContentUnitKind.LESSON),
    entrypoint: str | None = Form(default=None),
    activate_immediately: str | None = Form(default=None, alias="activateImmediately"),
    service: BundleService = Depends(get_bundle_service),
    pool: BundleWorkerPool = Depends(get_worker_pool),
) -> BundleOut:
    max_bytes = get_settings().max_bundle_bytes
    data = await file.read(max_bytes + 1)
    await file.close()
    if len(data) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail="bundle too large",
        )
    if data and not is_zip_archive(data):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="file is not a valid ZIP archive",
        )

    unit = _content_unit(content_unit_id, kind)
    activate = coerce_boolish(activate_immediately) or False
    try:
        bundle = await pool.run(
            service.create_bundle, unit, data, entrypoint or None, activate
        )
    except PoolSaturated as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    except BundleError as exc:
        logger.info("bundle upload for %s rejected: %s", unit.key, exc)
        raise _http_error(exc) from exc

    BUNDLE_UPLOAD_BYTES.observe(len(data))
    return _to_out(service, bundle)


@router.post("/bundles/{bundle_id}/activate", response_model=BundleOut)
def activate_bundle(
    bundle_id: str, service: BundleService = Depends(get_bundle_service)
) -> BundleOut:
    try:
        bundle = service.activate_bundle(bundle_id)
    except BundleError as exc:
        raise _http_error(exc) from exc
    return _to_out(service, bundle)


@router.delete("/bundles/{bundle_id}", response_model=BundleDeletedOut)
def delete_bundle(
    bundle_id: str, service: BundleService = Depends(get_bundle_service)
) -> BundleDeletedOut:
    try:
        service.delete_bundle(bundle_id)
    except BundleError as exc:
        raise _http_error(exc) from exc
    return BundleDeletedOut(deleted=bundle_id)


@router.get("/bundles/{bundle_id}", response_model=BundleOut)
def get_bundle(
    bundle_id: str, service: BundleService = Depends(get_bundle_service)
) -> BundleOut:
    try:
        bundle = service.get_bundle(bundle_id)
    except BundleError as exc:
        raise _http_error(exc) from exc
    return _to_out(service, bundle)


@router.get("/content-units/{content_unit_id}/bundles", response_model=List[BundleOut])
def list_bundles(
    content_unit_id: str,
    kind: ContentUnitKind = Query(default=ContentUnitKind.LESSON),
    service: BundleService = Depends(get_bundle_service),
) -> List[BundleOut]:
    unit = _content_unit(content_unit_id, kind)
    return [_to_out(service, b) for b in service.list_bundles(unit)]


@router.get("/content-units/{content_unit_id}/bundles/active", response_model=BundleOut)
def get_active_bundle(
    content_unit_id: str,
    kind: ContentUnitKind = Query(default=ContentUnitKind.LESSON),
    service: BundleService = Depends(get_bundle_service),
) -> BundleOut:
    unit = _content_unit(content_unit_id, kind)
    bundle = service.get_active_bundle(unit)
    if bundle is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="No active bundle found"
        )
    return _to_out(service, bundle)
