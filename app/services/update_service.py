"""Update Service: publish update packages and serve manifests to devices."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.errors import (
    DuplicateUpdate,
    InvalidParameter,
    InvalidRangeFormat,
    MissingRequiredField,
    NotFound,
    OtaError,
    TransactionAborted,
)
from app.metrics import (
    BUNDLE_DEDUP_HITS,
    MANIFEST_CACHE_REFRESHES,
    MANIFEST_MISSES,
    MANIFESTS_SERVED,
    PUBLISH_FAILURES,
    UPDATES_PUBLISHED,
)
from app.models.app import App
from app.models.asset import Asset
from app.models.bundle import Bundle
from app.models.manifest import Manifest
from app.models.update import DEFAULT_PLATFORMS, RANGE_MAX_LENGTH, VERSION_MAX_LENGTH, Channel, Platform, Update
from app.services.content_types import JAVASCRIPT, content_type_for
from app.services.hashing import asset_storage_key, bundle_storage_key, sha256_hex
from app.services.manifest_builder import UrlContext, build_manifest, content_signature, manifest_hash
from app.services.package_extractor import PackageAsset, PackageContents, extracted_package
from app.services.resolver import require_version, resolve, supports_platform
from app.services.semver import is_valid_range
from app.services.storage import BlobNotFound, BlobStorage, StorageLocation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishFields:
    """Values sent alongside the archive; used only when metadata.json omits them."""

    version: str | None = None
    channel: str | None = None
    runtime_version: str | None = None
    platforms: list[str] | str | None = None
    target_version_range: str | None = None


@dataclass(frozen=True)
class _BlobWrite:
    key: str
    data: bytes
    content_type: str


@dataclass(frozen=True)
class EffectiveMetadata:
    version: str
    channel: Channel
    runtime_version: str
    platforms: list[str]
    target_version_range: str | None


def parse_channel(value: str | Channel | None, default: Channel | None) -> Channel | None:
    if value is None or value == "":
        return default
    try:
        return Channel(str(getattr(value, "value", value)).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(c.value for c in Channel)
        raise InvalidParameter(f"Invalid channel {value!r}. Allowed: {allowed}") from exc


def parse_platform(value: str | Platform | None, default: Platform | None) -> Platform | None:
    if value is None or value == "":
        return default
    try:
        return Platform(str(getattr(value, "value", value)).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(p.value for p in Platform)
        raise InvalidParameter(f"Invalid platform {value!r}. Allowed: {allowed}") from exc


def _split_platforms(raw: list[str] | str | None) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                decoded = json.loads(text)
            except json.JSONDecodeError as exc:
                raise InvalidParameter(f"Invalid platforms value: {raw!r}") from exc
            if not isinstance(decoded, list):
                raise InvalidParameter(f"Invalid platforms value: {raw!r}")
            return [str(item) for item in decoded]
        return [part for part in text.split(",")]
    if isinstance(raw, list):
        return [str(item) for item in raw]
    raise InvalidParameter(f"Invalid platforms value: {raw!r}")


def normalize_platforms(raw: list[str] | str | None) -> list[str]:
    platforms: list[str] = []
    for item in _split_platforms(raw):
        if not item.strip():
            continue
        value = parse_platform(item, Platform.ios).value
        if value not in platforms:
            platforms.append(value)
    return platforms


def _check_length(field_name: str, value: str, limit: int) -> None:
    if len(value) > limit:
        raise InvalidParameter(
            f"{field_name} must be at most {limit} characters",
            details={"field": field_name, "max_length": limit},
        )


def _first_present(*values):
    for value in values:
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def resolve_metadata(declared: dict, form: PublishFields) -> EffectiveMetadata:
    """Merge archive metadata over form fields and validate the result."""
    version = _first_present(declared.get("version"), form.version)
    runtime_version = _first_present(declared.get("runtimeVersion"), form.runtime_version)
    channel = parse_channel(_first_present(declared.get("channel"), form.channel), Channel.development)
    target_range = _first_present(
        declared.get("targetVersionRange"), declared.get("target_version_range"), form.target_version_range
    )

    platforms = normalize_platforms(declared.get("platforms")) or normalize_platforms(form.platforms)
    if not platforms:
        platforms = list(DEFAULT_PLATFORMS)

    if target_range is not None:
        target_range = str(target_range).strip()
        _check_length("targetVersionRange", target_range, RANGE_MAX_LENGTH)
        if not is_valid_range(target_range):
            raise InvalidRangeFormat(
                f"Invalid targetVersionRange format: {target_range!r}",
                details={"targetVersionRange": target_range},
            )
    if version is None or runtime_version is None:
        missing = [name for name, value in (("version", version), ("runtimeVersion", runtime_version)) if value is None]
        raise MissingRequiredField(
            "Version and runtimeVersion are required",
            details={"missing": missing},
        )
    version = str(version).strip()
    runtime_version = str(runtime_version).strip()
    _check_length("version", version, VERSION_MAX_LENGTH)
    _check_length("runtimeVersion", runtime_version, VERSION_MAX_LENGTH)
    require_version(version, "version")
    return EffectiveMetadata(
        version=version,
        channel=channel,
        runtime_version=runtime_version,
        platforms=platforms,
        target_version_range=target_range,
    )


class UpdateService:
    def __init__(self, db: Session, storage: BlobStorage):
        self.db = db
        self.storage = storage

    # Publishing
    def publish_archive(
        self,
        app_id: int,
        archive_path: Path,
        form: PublishFields,
        publisher_id: int,
        base_url: str,
        tmp_root: str | Path,
        max_bytes: int,
    ) -> Update:
        with extracted_package(archive_path, tmp_root, max_bytes) as contents:
            return self.publish(app_id, contents, form, publisher_id, base_url)

    def publish(
        self,
        app_id: int,
        package: PackageContents,
        form: PublishFields,
        publisher_id: int,
        base_url: str,
    ) -> Update:
        try:
            return self._publish(app_id, package, form, publisher_id, base_url)
        except OtaError as exc:
            PUBLISH_FAILURES.labels(reason=exc.code).inc()
            raise

    def _publish(
        self,
        app_id: int,
        package: PackageContents,
        form: PublishFields,
        publisher_id: int,
        base_url: str,
    ) -> Update:
        app = self.db.get(App, app_id)
        if app is None:
            raise NotFound("App not found")
        meta = resolve_metadata(package.metadata, form)
        self._ensure_not_duplicate(app.id, meta)
        logger.info(
            "Publishing %s %s (%s, runtime %s) for app %s",
            app.slug,
            meta.version,
            meta.channel.value,
            meta.runtime_version,
            app.id,
        )

        written: list[str] = []
        reused: list[_BlobWrite] = []
        try:
            bundle = self._store_bundle(app, package.bundle, written, reused)
            update = Update(
                app_id=app.id,
                version=meta.version,
                channel=meta.channel,
                runtime_version=meta.runtime_version,
                target_version_range=meta.target_version_range,
                platforms=meta.platforms,
                is_rollback=False,
                bundle_id=bundle.id,
                manifest_id=None,
                published_by=publisher_id,
                created_at=datetime.now(UTC),
            )
            self._insert_update(update, meta)
            assets = [self._store_asset(update, item, written, reused) for item in package.assets]
            self.db.flush()
            manifest = self._create_manifest(app, update, bundle, assets, UrlContext(base_url, app.slug))
            update.manifest_id = manifest.id
            self.db.flush()
            self._restore_missing_blobs(reused, written)
            self.db.commit()
        except SQLAlchemyError as exc:
            self._abort(written)
            raise TransactionAborted(
                "Failed to publish update; no changes were saved",
                details={"version": meta.version, "channel": meta.channel.value},
            ) from exc
        except Exception:
            self._abort(written)
            raise

        UPDATES_PUBLISHED.labels(channel=meta.channel.value).inc()
        logger.info("Published update %s (%s %s) for app %s", update.id, meta.version, meta.channel.value, app.slug)
        return update

    def _ensure_not_duplicate(self, app_id: int, meta: EffectiveMetadata) -> None:
        if self._find_update_id(app_id, meta.version, meta.channel) is not None:
            raise DuplicateUpdate(meta.version, meta.channel.value)

    def _find_update_id(self, app_id: int, version: str, channel: Channel) -> int | None:
        stmt = select(Update.id).where(
            Update.app_id == app_id,
            Update.version == version,
            Update.channel == channel,
        )
        return self.db.scalar(stmt)

    def _insert_update(self, update: Update, meta: EffectiveMetadata) -> None:
        try:
            with self.db.begin_nested():
                self.db.add(update)
                self.db.flush()
        except IntegrityError:
            # A concurrent publish of the same version may have committed first
            if self._find_update_id(update.app_id, meta.version, meta.channel) is not None:
                raise DuplicateUpdate(meta.version, meta.channel.value) from None
            raise

    def _put_blob(
        self,
        data: bytes,
        key: str,
        content_type: str,
        written: list[str],
        reused: list[_BlobWrite],
    ) -> StorageLocation:
        if self.storage.exists(key):
            reused.append(_BlobWrite(key, data, content_type))
            return StorageLocation(self.storage.kind, key, len(data))
        location = self.storage.put(data, key, content_type)
        written.append(key)
        return location

    def _find_bundle(self, digest: str) -> Bundle | None:
        return self.db.scalar(select(Bundle).where(Bundle.hash == digest))

    def _store_bundle(self, app: App, data: bytes, written: list[str], reused: list[_BlobWrite]) -> Bundle:
        digest = sha256_hex(data)
        existing = self._find_bundle(digest)
        if existing is not None:
            BUNDLE_DEDUP_HITS.inc()
            logger.info("Reusing bundle %s for app %s", existing.id, app.slug)
            return existing

        location = self._put_blob(data, bundle_storage_key(digest), JAVASCRIPT, written, reused)
        bundle = Bundle(
            app_id=app.id,
            hash=digest,
            storage_type=location.storage_type,
            storage_key=location.key,
            size=location.size,
        )
        try:
            with self.db.begin_nested():
                self.db.add(bundle)
                self.db.flush()
        except IntegrityError:
            winner = self._find_bundle(digest)
            if winner is None:
                raise
            # The winner's row points at the same content-addressed key
            if location.key in written:
                written.remove(location.key)
            BUNDLE_DEDUP_HITS.inc()
            logger.info("Bundle %s was created concurrently; reusing row %s", digest[:12], winner.id)
            return winner
        return bundle

    def _store_asset(self, update: Update, item: PackageAsset, written: list[str], reused: list[_BlobWrite]) -> Asset:
        digest = sha256_hex(item.data)
        key = asset_storage_key(digest, item.name)
        location = self._put_blob(item.data, key, content_type_for(item.name), written, reused)
        asset = Asset(
            update_id=update.id,
            name=item.name,
            hash=digest,
            storage_type=location.storage_type,
            storage_key=location.key,
            size=location.size,
        )
        self.db.add(asset)
        return asset

    def _create_manifest(
        self,
        app: App,
        update: Update,
        bundle: Bundle,
        assets: list[Asset],
        url_context: UrlContext,
    ) -> Manifest:
        content = build_manifest(update, bundle, assets, url_context)
        manifest = Manifest(
            app_id=app.id,
            version=update.version,
            channel=update.channel,
            runtime_version=update.runtime_version,
            platforms=list(update.platforms),
            content=content,
            hash=manifest_hash(content),
        )
        self.db.add(manifest)
        self.db.flush()
        return manifest

    def _restore_missing_blobs(self, reused: list[_BlobWrite], written: list[str]) -> None:
        # A failing concurrent publish may have removed a blob we found in place
        for blob in reused:
            if blob.key in written or self.storage.exists(blob.key):
                continue
            logger.warning("Blob %s disappeared during publish; writing it again", blob.key)
            self.storage.put(blob.data, blob.key, blob.content_type)
            written.append(blob.key)

    def _blob_referenced(self, key: str) -> bool:
        if self.db.scalar(select(Bundle.id).where(Bundle.storage_key == key).limit(1)) is not None:
            return True
        return self.db.scalar(select(Asset.id).where(Asset.storage_key == key).limit(1)) is not None

    def _abort(self, written: list[str]) -> None:
        self.db.rollback()
        removed = 0
        for key in reversed(written):
            try:
                # Keys are content-addressed, so another publish may have committed rows on them
                if self._blob_referenced(key):
                    logger.info("Keeping blob %s; a committed update references it", key)
                    continue
                self.storage.delete(key)
                removed += 1
            except Exception:
                logger.warning("Could not clean up blob %s after failed publish", key, exc_info=True)
        self.db.rollback()
        logger.warning("Publish rolled back; removed %d stored blob(s)", removed, exc_info=True)

    # Reads
    def list_updates(
        self,
        app_id: int,
        channel: Channel | None = None,
        platform: Platform | None = None,
    ) -> list[Update]:
        stmt = (
            select(Update)
            .where(Update.app_id == app_id)
            .options(selectinload(Update.bundle), selectinload(Update.assets), selectinload(Update.manifest))
            .order_by(Update.created_at.desc(), Update.id.desc())
        )
        if channel is not None:
            stmt = stmt.where(Update.channel == channel)
        updates = list(self.db.scalars(stmt).all())
        if platform is not None:
            updates = [u for u in updates if supports_platform(u, platform.value)]
        return updates

    def get_update(self, app_id: int, update_id: int) -> Update:
        update = self.db.get(Update, update_id)
        if update is None or update.app_id != app_id:
            raise NotFound("Update not found")
        return update

    def get_manifest(self, manifest_id: int) -> Manifest:
        manifest = self.db.get(Manifest, manifest_id)
        if manifest is None:
            raise NotFound("Manifest not found")
        return manifest

    # Device-facing
    def serve_manifest(
        self,
        app_slug: str,
        channel: str | None,
        platform: str | None,
        runtime_version: str | None,
        app_version: str | None,
        base_url: str,
    ) -> dict:
        return self._serve_manifest(App.slug == app_slug, channel, platform, runtime_version, app_version, base_url)

    def serve_manifest_by_key(
        self,
        app_key: str,
        channel: str | None,
        platform: str | None,
        runtime_version: str | None,
        app_version: str | None,
        base_url: str,
    ) -> dict:
        """Same as ``serve_manifest`` but addresses the app by its device key."""
        return self._serve_manifest(App.app_key == app_key, channel, platform, runtime_version, app_version, base_url)

    def _serve_manifest(
        self,
        app_filter,
        channel: str | None,
        platform: str | None,
        runtime_version: str | None,
        app_version: str | None,
        base_url: str,
    ) -> dict:
        channel_value = parse_channel(channel, Channel.production)
        platform_value = parse_platform(platform, Platform.ios)
        require_version(runtime_version, "runtimeVersion")
        if app_version:
            require_version(app_version, "appVersion")

        app = self.db.scalar(select(App).where(app_filter))
        if app is None:
            MANIFEST_MISSES.labels(reason="unknown_app").inc()
            raise NotFound("App not found")

        candidates = self.list_updates(app.id, channel=channel_value)
        if not candidates:
            MANIFEST_MISSES.labels(reason="no_updates").inc()
            raise NotFound("No updates available for this app and channel")

        chosen = resolve(candidates, platform_value, runtime_version, app_version)
        if chosen is None:
            MANIFEST_MISSES.labels(reason="incompatible").inc()
            raise NotFound("No compatible updates available for your app version")

        logger.info(
            "Serving update %s (%s) to %s/%s runtime %s app %s",
            chosen.id,
            chosen.version,
            app.slug,
            platform_value.value,
            runtime_version,
            app_version,
        )
        document = build_manifest(chosen, chosen.bundle, chosen.assets, UrlContext(base_url, app.slug))
        self._refresh_manifest_cache(app, chosen, document)
        MANIFESTS_SERVED.labels(channel=channel_value.value, platform=platform_value.value).inc()
        return document

    def _refresh_manifest_cache(self, app: App, update: Update, document: dict) -> None:
        digest = manifest_hash(document)
        manifest = update.manifest
        if manifest is not None and content_signature(manifest.content) == content_signature(document):
            return
        try:
            if manifest is None:
                manifest = Manifest(
                    app_id=app.id,
                    version=update.version,
                    channel=update.channel,
                    runtime_version=update.runtime_version,
                    platforms=list(update.platforms or []),
                    content=document,
                    hash=digest,
                )
                self.db.add(manifest)
                self.db.flush()
                update.manifest_id = manifest.id
            else:
                manifest.content = document
                manifest.hash = digest
            self.db.commit()
            MANIFEST_CACHE_REFRESHES.inc()
            logger.info("Refreshed stored manifest for update %s", update.id)
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Could not refresh stored manifest for update %s", update.id, exc_info=True)

    def open_bundle(self, app_slug: str, bundle_id: int) -> tuple[Bundle, Iterator[bytes]]:
        app = self.db.scalar(select(App).where(App.slug == app_slug))
        if app is None:
            raise NotFound("App not found")
        bundle = self.db.get(Bundle, bundle_id)
        # Bundles are shared across apps, so ownership is "some update of this app uses it"
        if bundle is None or (bundle.app_id != app.id and not self._app_uses_bundle(app.id, bundle.id)):
            raise NotFound("Bundle not found")
        try:
            return bundle, self.storage.open_stream(bundle.storage_key)
        except BlobNotFound as exc:
            logger.error("Bundle %s row exists but blob %s is missing", bundle.id, bundle.storage_key)
            raise NotFound("Bundle file not found") from exc

    def _app_uses_bundle(self, app_id: int, bundle_id: int) -> bool:
        stmt = select(Update.id).where(Update.app_id == app_id, Update.bundle_id == bundle_id).limit(1)
        return self.db.scalar(stmt) is not None

    def open_asset(self, app_slug: str, asset_id: int) -> tuple[Asset, Iterator[bytes]]:
        stmt = (
            select(Asset)
            .join(Update, Asset.update_id == Update.id)
            .join(App, Update.app_id == App.id)
            .where(Asset.id == asset_id, App.slug == app_slug)
        )
        asset = self.db.scalar(stmt)
        if asset is None:
            if self.db.scalar(select(App.id).where(App.slug == app_slug)) is None:
                raise NotFound("App not found")
            raise NotFound("Asset not found")
        try:
            return asset, self.storage.open_stream(asset.storage_key)
        except BlobNotFound as exc:
            logger.error("Asset %s row exists but blob %s is missing", asset.id, asset.storage_key)
            raise NotFound("Asset file not found") from exc

    # Serialization
    def serialize_bundle(self, bundle: Bundle) -> dict:
        return {
            "id": bundle.id,
            "hash": bundle.hash,
            "size": bundle.size,
            "storage_type": bundle.storage_type,
            "storage_key": bundle.storage_key,
        }

    @staticmethod
    def serialize_asset(asset: Asset) -> dict:
        return {
            "id": asset.id,
            "name": asset.name,
            "hash": asset.hash,
            "size": asset.size,
            "content_type": content_type_for(asset.name),
        }

    @staticmethod
    def serialize_manifest(manifest: Manifest) -> dict:
        return {
            "id": manifest.id,
            "hash": manifest.hash,
            "content": manifest.content,
        }

    def serialize_update(self, update: Update, detailed: bool = True) -> dict:
        data = {
            "id": update.id,
            "app_id": update.app_id,
            "version": update.version,
            "channel": update.channel.value,
            "runtime_version": update.runtime_version,
            "target_version_range": update.target_version_range,
            "platforms": list(update.platforms or []),
            "is_rollback": update.is_rollback,
            "bundle_id": update.bundle_id,
            "manifest_id": update.manifest_id,
            "published_by": update.published_by,
            "created_at": update.created_at.isoformat() if update.created_at else None,
            "bundle": self.serialize_bundle(update.bundle) if update.bundle else None,
            "assets": [self.serialize_asset(a) for a in update.assets],
        }
        if detailed:
            data["manifest"] = self.serialize_manifest(update.manifest) if update.manifest else None
        return data
