"""Build the manifest document a device downloads for an update.

``build_manifest`` is a projection of its inputs: no clock reads, no
lookups. Rendering through ``render_manifest`` gives canonical bytes, so the
same inputs always produce the same body and the same ``manifest_hash``.
That is what lets the serving path regenerate the document on every request
and treat the stored ``Manifest`` row as a cache.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from app.models.asset import Asset
from app.models.bundle import Bundle
from app.models.update import Update
from app.services.content_types import JAVASCRIPT, content_type_for
from app.services.hashing import canonical_json, sha256_hex


@dataclass(frozen=True)
class UrlContext:
    base_url: str
    app_slug: str

    @property
    def root(self) -> str:
        return self.base_url.rstrip("/")

    def bundle_url(self, bundle_id: int) -> str:
        return f"{self.root}/bundle/{self.app_slug}/{bundle_id}"

    def asset_url(self, asset_id: int) -> str:
        return f"{self.root}/assets/{self.app_slug}/{asset_id}"


def format_timestamp(value: datetime) -> str:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _enum_value(value) -> str:
    return getattr(value, "value", value)


def build_manifest(update: Update, bundle: Bundle, assets: Iterable[Asset], url_context: UrlContext) -> dict:
    document = {
        "id": bundle.hash,
        "createdAt": format_timestamp(update.created_at),
        "runtimeVersion": update.runtime_version,
        "launchAsset": {
            "hash": bundle.hash,
            "key": f"bundle-{bundle.id}.js",
            "contentType": JAVASCRIPT,
            "url": url_context.bundle_url(bundle.id),
        },
        "assets": [
            {
                "hash": asset.hash,
                "key": asset.name,
                "contentType": content_type_for(asset.name),
                "url": url_context.asset_url(asset.id),
            }
            for asset in sorted(assets, key=lambda a: a.id)
        ],
        "metadata": {
            "version": update.version,
            "channel": _enum_value(update.channel),
            "platforms": list(update.platforms or []),
        },
    }
    if update.target_version_range:
        document["targetVersion"] = update.target_version_range
    return document


def render_manifest(document: dict) -> bytes:
    return canonical_json(document)


def manifest_hash(document: dict) -> str:
    return sha256_hex(render_manifest(document))


def _strip_url(entry: dict) -> dict:
    return {key: value for key, value in entry.items() if key != "url"}


def content_signature(document: dict) -> str:
    """Hash of the document with download URLs left out.

    Two requests reaching the server under different hosts get different URLs
    but the same signature.
    """
    stripped = dict(document)
    if isinstance(stripped.get("launchAsset"), dict):
        stripped["launchAsset"] = _strip_url(stripped["launchAsset"])
    stripped["assets"] = [_strip_url(asset) for asset in stripped.get("assets") or []]
    return manifest_hash(stripped)
