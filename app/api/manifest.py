"""Device-facing endpoints: manifest resolution and blob downloads."""

from __future__ import annotations

from pathlib import PurePosixPath

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from starlette.responses import Response

from app.api.deps import get_base_url, get_db, get_storage
from app.services.content_types import JAVASCRIPT, content_type_for
from app.services.manifest_builder import render_manifest
from app.services.storage import BlobStorage
from app.services.update_service import UpdateService

router = APIRouter(tags=["manifest"])

MANIFEST_HEADERS = {
    "expo-protocol-version": "0",
    "cache-control": "private, max-age=0",
}


@router.get("/manifest/{app_slug}")
def get_manifest(
    app_slug: str,
    channel: str | None = Query(None),
    platform: str | None = Query(None),
    runtime_version: str | None = Query(None, alias="runtimeVersion"),
    app_version: str | None = Query(None, alias="appVersion"),
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
    base_url: str = Depends(get_base_url),
):
    document = UpdateService(db, storage).serve_manifest(
        app_slug,
        channel=channel,
        platform=platform,
        runtime_version=runtime_version,
        app_version=app_version,
        base_url=base_url,
    )
    return _manifest_response(document)


@router.get("/manifest/key/{app_key}")
@router.get("/manifest/key/{app_key}/{channel}")
def get_manifest_by_key(
    app_key: str,
    channel: str | None = None,
    platform: str | None = Query(None),
    runtime_version: str | None = Query(None, alias="runtimeVersion"),
    app_version: str | None = Query(None, alias="appVersion"),
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
    base_url: str = Depends(get_base_url),
):
    document = UpdateService(db, storage).serve_manifest_by_key(
        app_key,
        channel=channel,
        platform=platform,
        runtime_version=runtime_version,
        app_version=app_version,
        base_url=base_url,
    )
    return _manifest_response(document)


def _manifest_response(document: dict) -> Response:
    return Response(content=render_manifest(document), media_type="application/json", headers=MANIFEST_HEADERS)


def _attachment_headers(filename: str, size: int | None) -> dict[str, str]:
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    if size is not None:
        headers["Content-Length"] = str(size)
    return headers


@router.get("/bundle/{app_slug}/{bundle_id}")
def get_bundle(
    app_slug: str,
    bundle_id: int,
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
):
    bundle, chunks = UpdateService(db, storage).open_bundle(app_slug, bundle_id)
    return StreamingResponse(
        chunks,
        media_type=JAVASCRIPT,
        headers=_attachment_headers(f"bundle-{bundle.id}.js", bundle.size),
    )


@router.get("/assets/{app_slug}/{asset_id}")
def get_asset(
    app_slug: str,
    asset_id: int,
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
):
    asset, chunks = UpdateService(db, storage).open_asset(app_slug, asset_id)
    return StreamingResponse(
        chunks,
        media_type=content_type_for(asset.name),
        headers=_attachment_headers(PurePosixPath(asset.name).name, asset.size),
    )


@router.get("/manifests/{manifest_id}")
def get_stored_manifest(
    manifest_id: int,
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
):
    manifest = UpdateService(db, storage).get_manifest(manifest_id)
    return Response(content=render_manifest(manifest.content), media_type="application/json")
