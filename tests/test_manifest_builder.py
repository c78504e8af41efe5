"""Tests for manifest document construction."""

import json
from datetime import UTC, datetime, timedelta, timezone

from app.models.asset import Asset
from app.models.bundle import Bundle
from app.models.update import Channel, Update
from app.services.content_types import content_type_for
from app.services.manifest_builder import (
    UrlContext,
    build_manifest,
    content_signature,
    format_timestamp,
    manifest_hash,
    render_manifest,
)

BUNDLE_HASH = "ab" * 32


def _fixtures(target_version_range=None):
    update = Update(
        id=11,
        app_id=1,
        version="1.4.0",
        channel=Channel.staging,
        runtime_version="1.0.0",
        target_version_range=target_version_range,
        platforms=["ios", "android"],
        bundle_id=3,
        published_by=7,
        created_at=datetime(2024, 5, 1, 12, 30, 45, 123456, tzinfo=UTC),
    )
    bundle = Bundle(id=3, hash=BUNDLE_HASH, storage_type="local", storage_key="bundles/ab/x.js", size=10)
    assets = [
        Asset(id=22, update_id=11, name="fonts/Inter.ttf", hash="f" * 64, storage_type="local", storage_key="k2", size=1),
        Asset(id=21, update_id=11, name="images/logo.PNG", hash="e" * 64, storage_type="local", storage_key="k1", size=1),
    ]
    return update, bundle, assets


def test_manifest_shape():
    update, bundle, assets = _fixtures()
    document = build_manifest(update, bundle, assets, UrlContext("https://ota.example.com/", "demo"))

    assert document["id"] == BUNDLE_HASH
    assert document["createdAt"] == "2024-05-01T12:30:45.123Z"
    assert document["runtimeVersion"] == "1.0.0"
    assert document["launchAsset"] == {
        "hash": BUNDLE_HASH,
        "key": "bundle-3.js",
        "contentType": "application/javascript",
        "url": "https://ota.example.com/bundle/demo/3",
    }
    assert document["metadata"] == {"version": "1.4.0", "channel": "staging", "platforms": ["ios", "android"]}
    assert "targetVersion" not in document


def test_assets_sorted_by_id_with_urls_and_content_types():
    update, bundle, assets = _fixtures()
    document = build_manifest(update, bundle, assets, UrlContext("https://ota.example.com", "demo"))

    assert [a["key"] for a in document["assets"]] == ["images/logo.PNG", "fonts/Inter.ttf"]
    assert document["assets"][0] == {
        "hash": "e" * 64,
        "key": "images/logo.PNG",
        "contentType": "image/png",
        "url": "https://ota.example.com/assets/demo/21",
    }
    assert document["assets"][1]["contentType"] == "font/ttf"


def test_target_version_included_when_range_present():
    update, bundle, assets = _fixtures(target_version_range="^1.0.0")
    document = build_manifest(update, bundle, assets, UrlContext("http://h", "demo"))

    assert document["targetVersion"] == "^1.0.0"


def test_build_is_pure():
    update, bundle, assets = _fixtures()
    ctx = UrlContext("http://h", "demo")

    first = render_manifest(build_manifest(update, bundle, assets, ctx))
    second = render_manifest(build_manifest(update, bundle, list(reversed(assets)), ctx))

    assert first == second
    assert manifest_hash(json.loads(first)) == manifest_hash(build_manifest(update, bundle, assets, ctx))


def test_rendering_is_canonical():
    body = render_manifest({"b": 1, "a": {"d": "é", "c": [1, 2]}})

    assert body == '{"a":{"c":[1,2],"d":"é"},"b":1}'.encode()


def test_format_timestamp_normalizes_to_utc():
    naive = datetime(2024, 1, 2, 3, 4, 5)
    offset = datetime(2024, 1, 2, 5, 4, 5, tzinfo=timezone(timedelta(hours=2)))

    assert format_timestamp(naive) == "2024-01-02T03:04:05.000Z"
    assert format_timestamp(offset) == "2024-01-02T03:04:05.000Z"


def test_content_type_for_unknown_extension():
    assert content_type_for("data.bin") == "application/octet-stream"
    assert content_type_for("noext") == "application/octet-stream"
    assert content_type_for("main.jsbundle") == "application/octet-stream"
    assert content_type_for("index.android.bundle") == "application/javascript"


def test_content_signature_ignores_download_urls():
    update, bundle, assets = _fixtures()
    internal = build_manifest(update, bundle, assets, UrlContext("http://10.0.0.5:8000", "demo"))
    public = build_manifest(update, bundle, assets, UrlContext("https://ota.example.com", "demo"))

    assert manifest_hash(internal) != manifest_hash(public)
    assert content_signature(internal) == content_signature(public)

    update.runtime_version = "2.0.0"
    changed = build_manifest(update, bundle, assets, UrlContext("https://ota.example.com", "demo"))
    assert content_signature(changed) != content_signature(public)
