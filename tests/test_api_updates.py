"""API tests for publishing and browsing updates."""

from datetime import UTC, datetime, timedelta

import jwt


def _upload(client, app_id, archive, headers, **form):
    return client.post(
        f"/apps/{app_id}/updates",
        files={"package": ("update.zip", archive, "application/zip")},
        data=form,
        headers=headers,
    )


def test_publish_returns_nested_update(client, ota_app, publisher_headers, archive_factory, settings, tmp_path):
    archive = archive_factory(
        bundle=b"bundle-bytes",
        assets={"images/logo.png": b"png"},
        metadata={"version": "1.0.0", "runtimeVersion": "1.0.0", "channel": "production"},
    )

    response = _upload(client, ota_app.id, archive, publisher_headers)

    assert response.status_code == 201
    body = response.json()
    assert body["version"] == "1.0.0"
    assert body["channel"] == "production"
    assert body["platforms"] == ["ios", "android"]
    assert body["published_by"] == 7
    assert body["bundle"]["size"] == len(b"bundle-bytes")
    assert [a["name"] for a in body["assets"]] == ["images/logo.png"]
    assert body["manifest"]["content"]["launchAsset"]["url"] == (
        f"http://testserver/bundle/{ota_app.slug}/{body['bundle']['id']}"
    )
    assert list((tmp_path / "temp").iterdir()) == []


def test_publish_uses_form_fields(client, ota_app, publisher_headers, archive_factory):
    response = _upload(
        client,
        ota_app.id,
        archive_factory(),
        publisher_headers,
        version="1.1.0",
        runtimeVersion="1.0.0",
        channel="staging",
        platforms='["android"]',
        targetVersionRange=">=1.0.0 <2.0.0",
    )

    assert response.status_code == 201
    body = response.json()
    assert body["channel"] == "staging"
    assert body["platforms"] == ["android"]
    assert body["target_version_range"] == ">=1.0.0 <2.0.0"


def test_publish_uses_public_base_url(client, ota_app, publisher_headers, archive_factory, settings, monkeypatch):
    monkeypatch.setattr(settings, "public_base_url", "https://updates.example.com/")

    response = _upload(client, ota_app.id, archive_factory(), publisher_headers, version="1.0.0", runtimeVersion="1.0.0")

    assert response.json()["manifest"]["content"]["launchAsset"]["url"].startswith(
        "https://updates.example.com/bundle/"
    )


def test_duplicate_publish_conflicts(client, ota_app, publisher_headers, archive_factory):
    form = {"version": "1.0.0", "runtimeVersion": "1.0.0"}
    assert _upload(client, ota_app.id, archive_factory(), publisher_headers, **form).status_code == 201

    response = _upload(client, ota_app.id, archive_factory(bundle=b"changed"), publisher_headers, **form)

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "duplicate_update"
    assert body["details"] == {"version": "1.0.0", "channel": "development"}
    assert "Increment the version" in body["message"]


def test_invalid_package_is_rejected(client, ota_app, publisher_headers, archive_factory, tmp_path):
    response = _upload(client, ota_app.id, archive_factory(bundle=None), publisher_headers, version="1.0.0")

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_package"
    assert list((tmp_path / "temp").iterdir()) == []


def test_invalid_range_is_rejected(client, ota_app, publisher_headers, archive_factory):
    response = _upload(
        client,
        ota_app.id,
        archive_factory(),
        publisher_headers,
        version="1.0.0",
        runtimeVersion="1.0.0",
        targetVersionRange="~>nope",
    )

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_range_format"


def test_missing_fields_are_rejected(client, ota_app, publisher_headers, archive_factory):
    response = _upload(client, ota_app.id, archive_factory(), publisher_headers)

    assert response.status_code == 400
    assert response.json()["code"] == "missing_required_field"


def test_publish_to_unknown_app(client, publisher_headers, archive_factory):
    response = _upload(client, 4040, archive_factory(), publisher_headers, version="1.0.0", runtimeVersion="1.0.0")

    assert response.status_code == 404
    assert response.json() == {"code": "not_found", "message": "App not found", "details": None}


def test_publish_requires_token(client, ota_app, archive_factory):
    response = _upload(client, ota_app.id, archive_factory(), {}, version="1.0.0", runtimeVersion="1.0.0")

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"


def test_publish_rejects_expired_token(client, ota_app, archive_factory):
    token = jwt.encode(
        {"sub": "7", "exp": int((datetime.now(UTC) - timedelta(minutes=1)).timestamp())},
        "test-secret",
        algorithm="HS256",
    )

    response = _upload(
        client, ota_app.id, archive_factory(), {"Authorization": f"Bearer {token}"}, version="1.0.0"
    )

    assert response.status_code == 401


def test_publish_rejects_non_numeric_subject(client, ota_app, archive_factory):
    token = jwt.encode({"sub": "someone"}, "test-secret", algorithm="HS256")

    response = _upload(client, ota_app.id, archive_factory(), {"Authorization": f"Bearer {token}"}, version="1.0.0")

    assert response.status_code == 401


def test_list_and_detail(client, ota_app, publisher_headers, archive_factory):
    for version, bundle in (("1.0.0", b"a"), ("1.0.1", b"b")):
        _upload(
            client,
            ota_app.id,
            archive_factory(bundle=bundle),
            publisher_headers,
            version=version,
            runtimeVersion="1.0.0",
            channel="production",
        )

    listing = client.get(f"/api/v1/apps/{ota_app.id}/updates?channel=production", headers=publisher_headers)

    assert listing.status_code == 200
    versions = [u["version"] for u in listing.json()]
    assert versions == ["1.0.1", "1.0.0"]
    assert "manifest" not in listing.json()[0]

    update_id = listing.json()[0]["id"]
    detail = client.get(f"/apps/{ota_app.id}/updates/{update_id}", headers=publisher_headers)
    assert detail.status_code == 200
    assert detail.json()["manifest"]["content"]["metadata"]["version"] == "1.0.1"


def test_list_rejects_unknown_channel(client, ota_app, publisher_headers):
    response = client.get(f"/apps/{ota_app.id}/updates?channel=nightly", headers=publisher_headers)

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_parameter"


def test_publish_rejects_overlong_runtime_version(client, ota_app, publisher_headers, archive_factory, tmp_path):
    response = _upload(
        client, ota_app.id, archive_factory(), publisher_headers, version="1.0.0", runtimeVersion="1." * 30
    )

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_parameter"
    assert response.json()["details"] == {"field": "runtimeVersion", "max_length": 50}
    assert list((tmp_path / "temp").iterdir()) == []
