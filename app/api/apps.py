"""Apps API: register apps and manage their keys."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_storage, require_publisher
from app.schemas.apps import AppCreate, AppUpdate
from app.services.app_service import AppService
from app.services.storage import BlobStorage

router = APIRouter(prefix="/apps", tags=["apps"])


@router.post("", status_code=status.HTTP_201_CREATED)
def create_app(
    payload: AppCreate,
    db: Session = Depends(get_db),
    publisher_id: int = Depends(require_publisher),
):
    app = AppService(db).create_app(payload.name, payload.slug, owner_id=publisher_id, description=payload.description)
    db.commit()
    return AppService.serialize_app(app)


@router.get("")
def list_apps(
    mine: bool = False,
    db: Session = Depends(get_db),
    publisher_id: int = Depends(require_publisher),
):
    apps = AppService(db).list_apps(owner_id=publisher_id if mine else None)
    return [AppService.serialize_app(a, include_key=False) for a in apps]


@router.get("/{slug}/public")
def get_public_app(slug: str, db: Session = Depends(get_db)):
    return AppService.serialize_public(AppService(db).get_by_slug(slug))


@router.get("/{app_id}")
def get_app(
    app_id: int,
    db: Session = Depends(get_db),
    publisher_id: int = Depends(require_publisher),
):
    return AppService.serialize_app(AppService(db).get_app(app_id))


@router.patch("/{app_id}")
def update_app(
    app_id: int,
    payload: AppUpdate,
    db: Session = Depends(get_db),
    publisher_id: int = Depends(require_publisher),
):
    app = AppService(db).update_app(app_id, name=payload.name, description=payload.description)
    db.commit()
    return AppService.serialize_app(app)


@router.post("/{app_id}/regenerate-key")
def regenerate_key(
    app_id: int,
    db: Session = Depends(get_db),
    publisher_id: int = Depends(require_publisher),
):
    app = AppService(db).regenerate_key(app_id)
    db.commit()
    return {"app_key": app.app_key}


@router.delete("/{app_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_app(
    app_id: int,
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
    publisher_id: int = Depends(require_publisher),
):
    AppService(db).delete_app(app_id, storage)
