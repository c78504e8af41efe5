"""App Service: register apps and manage their lifecycle."""

from __future__ import annotations

import logging
import re

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import InvalidParameter, MissingRequiredField, NotFound, SlugTaken
from app.models.app import App, generate_app_key
from app.models.asset import Asset
from app.models.bundle import Bundle
from app.models.update import Update
from app.services.storage import BlobStorage

logger = logging.getLogger(__name__)

SLUG_RE = re.compile(r"^[a-z0-9-]+$")


class AppService:
    def __init__(self, db: Session):
        self.db = db

    def create_app(
        self,
        name: str,
        slug: str,
        owner_id: int,
        description: str | None = None,
    ) -> App:
        if not name or not name.strip():
            raise MissingRequiredField("Name is required")
        if not slug or not slug.strip():
            raise MissingRequiredField("Slug is required")
        slug = slug.strip()
        if not SLUG_RE.match(slug):
            raise InvalidParameter("Slug must contain only lowercase letters, numbers, and hyphens")
        if self.db.scalar(select(App.id).where(App.slug == slug)) is not None:
            raise SlugTaken(f"Slug {slug!r} is already taken", details={"slug": slug})
        app = App(name=name.strip(), slug=slug, description=description, owner_id=owner_id)
        self.db.add(app)
        self.db.flush()
        logger.info("Registered app %s (%s) for owner %s", app.slug, app.id, owner_id)
        return app

    def list_apps(self, owner_id: int | None = None) -> list[App]:
        stmt = select(App)
        if owner_id is not None:
            stmt = stmt.where(App.owner_id == owner_id)
        stmt = stmt.order_by(App.created_at.desc(), App.id.desc())
        return list(self.db.scalars(stmt).all())

    def get_app(self, app_id: int) -> App:
        app = self.db.get(App, app_id)
        if app is None:
            raise NotFound("App not found")
        return app

    def get_by_slug(self, slug: str) -> App:
        app = self.db.scalar(select(App).where(App.slug == slug))
        if app is None:
            raise NotFound("App not found")
        return app

    def update_app(self, app_id: int, name: str | None = None, description: str | None = None) -> App:
        app = self.get_app(app_id)
        if name is not None:
            if not name.strip():
                raise MissingRequiredField("Name cannot be empty")
            app.name = name.strip()
        if description is not None:
            app.description = description
        self.db.flush()
        return app

    def regenerate_key(self, app_id: int) -> App:
        app = self.get_app(app_id)
        app.app_key = generate_app_key()
        self.db.flush()
        logger.info("Regenerated key for app %s", app.slug)
        return app

    def delete_app(self, app_id: int, storage: BlobStorage) -> None:
        """Delete the app with its updates, then drop blobs nothing references.

        Commits before touching storage so a failed commit never loses bytes
        that surviving rows still point at.
        """
        app = self.get_app(app_id)
        bundle_ids = set(self.db.scalars(select(Update.bundle_id).where(Update.app_id == app.id)).all())
        bundle_ids.update(self.db.scalars(select(Bundle.id).where(Bundle.app_id == app.id)).all())
        asset_keys = set(
            self.db.scalars(
                select(Asset.storage_key).join(Update, Asset.update_id == Update.id).where(Update.app_id == app.id)
            ).all()
        )
        slug = app.slug

        self.db.delete(app)
        self.db.flush()

        orphan_keys: list[str] = []
        for bundle_id in sorted(bundle_ids):
            bundle = self.db.get(Bundle, bundle_id)
            if bundle is None:
                continue
            still_used = self.db.scalar(select(Update.id).where(Update.bundle_id == bundle_id).limit(1))
            if still_used is not None:
                # Shared with another app's updates
                if bundle.app_id == app_id:
                    bundle.app_id = None
                continue
            orphan_keys.append(bundle.storage_key)
            self.db.delete(bundle)
        for key in sorted(asset_keys):
            if self.db.scalar(select(Asset.id).where(Asset.storage_key == key).limit(1)) is None:
                orphan_keys.append(key)
        self.db.commit()

        for key in orphan_keys:
            try:
                storage.delete(key)
            except Exception:
                logger.warning("Could not delete blob %s for removed app %s", key, slug, exc_info=True)
        logger.info("Deleted app %s and %d unreferenced blob(s)", slug, len(orphan_keys))

    @staticmethod
    def serialize_app(app: App, include_key: bool = True) -> dict:
        data = {
            "id": app.id,
            "name": app.name,
            "slug": app.slug,
            "description": app.description,
            "owner_id": app.owner_id,
            "created_at": app.created_at.isoformat() if app.created_at else None,
            "updated_at": app.updated_at.isoformat() if app.updated_at else None,
        }
        if include_key:
            data["app_key"] = app.app_key
        return data

    @staticmethod
    def serialize_public(app: App) -> dict:
        return {"name": app.name, "slug": app.slug, "description": app.description}
