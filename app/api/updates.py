"""Updates API: publish update packages and browse an app's history."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from sqlalchemy.orm import Session

from app.api.deps import get_base_url, get_db, get_storage, require_publisher
from app.config import settings
from app.services.app_service import AppService
from app.services.package_extractor import spool_upload
from app.services.storage import BlobStorage
from app.services.update_service import PublishFields, UpdateService, parse_channel, parse_platform

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/apps/{app_id}/updates", tags=["updates"])


@router.post("", status_code=status.HTTP_201_CREATED)
def publish_update(
    app_id: int,
    package: UploadFile = File(...),
    version: str | None = Form(None),
    channel: str | None = Form(None),
    runtime_version: str | None = Form(None, alias="runtimeVersion"),
    platforms: str | None = Form(None),
    target_version_range: str | None = Form(None, alias="targetVersionRange"),
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
    base_url: str = Depends(get_base_url),
    publisher_id: int = Depends(require_publisher),
):
    AppService(db).get_app(app_id)
    archive_path = spool_upload(package.file, settings.upload_tmp_dir, settings.max_upload_bytes)
    logger.info("Received package %s (%s) for app %s", package.filename, archive_path.name, app_id)
    form = PublishFields(
        version=version,
        channel=channel,
        runtime_version=runtime_version,
        platforms=platforms,
        target_version_range=target_version_range,
    )
    service = UpdateService(db, storage)
    update = service.publish_archive(
        app_id,
        archive_path,
        form,
        publisher_id=publisher_id,
        base_url=base_url,
        tmp_root=settings.upload_tmp_dir,
        max_bytes=settings.max_upload_bytes,
    )
    return service.serialize_update(update)


@router.get("")
def list_updates(
    app_id: int,
    channel: str | None = Query(None),
    platform: str | None = Query(None),
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
    publisher_id: int = Depends(require_publisher),
):
    AppService(db).get_app(app_id)
    service = UpdateService(db, storage)
    updates = service.list_updates(
        app_id,
        channel=parse_channel(channel, None),
        platform=parse_platform(platform, None),
    )
    return [service.serialize_update(u, detailed=False) for u in updates]


@router.get("/{update_id}")
def get_update(
    app_id: int,
    update_id: int,
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
    publisher_id: int = Depends(require_publisher),
):
    service = UpdateService(db, storage)
    return service.serialize_update(service.get_update(app_id, update_id))
