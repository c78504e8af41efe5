"""Tests for picking the update a device receives."""

import pytest

from app.errors import InvalidVersionFormat, MissingRequiredField
from app.models.manifest import Manifest
from app.models.update import Channel, Platform, Update
from app.services.resolver import rank_compatible, resolve, supports_platform


def _update(update_id, version, runtime_version="1.0.0", target_version_range=None, platforms=None):
    return Update(
        id=update_id,
        app_id=1,
        version=version,
        channel=Channel.production,
        runtime_version=runtime_version,
        target_version_range=target_version_range,
        platforms=["ios", "android"] if platforms is None else platforms,
        bundle_id=1,
        published_by=1,
    )


def test_exact_runtime_match_without_range():
    wanted = _update(1, "1.0.1", runtime_version="1.0.0")
    other = _update(2, "2.0.1", runtime_version="2.0.0")

    assert resolve([wanted, other], Platform.ios, "1.0.0") is wanted
    assert resolve([wanted, other], Platform.ios, "3.0.0") is None


def test_range_is_matched_against_app_version():
    ranged = _update(1, "1.0.5", runtime_version="0.0.1", target_version_range=">=1.0.0 <2.0.0")

    assert resolve([ranged], "ios", "9.9.9", app_version="1.5.0") is ranged
    assert resolve([ranged], "ios", "9.9.9", app_version="2.0.0") is None


def test_runtime_version_stands_in_for_missing_app_version():
    ranged = _update(1, "1.2.1", target_version_range="^1.0.0")

    assert resolve([ranged], "ios", "1.2.0") is ranged
    assert resolve([ranged], "ios", "2.0.0") is None


def test_range_wins_over_runtime_equality():
    # A ranged update whose runtime matches but whose range excludes the app is skipped
    ranged = _update(1, "1.0.1", runtime_version="1.0.0", target_version_range="^2.0.0")

    assert resolve([ranged], "ios", "1.0.0", app_version="1.0.0") is None


def test_highest_semantic_version_wins():
    candidates = [_update(1, "1.0.2"), _update(2, "1.0.10"), _update(3, "1.0.9")]

    assert resolve(candidates, "ios", "1.0.0").version == "1.0.10"
    assert [u.version for u in rank_compatible(candidates, "ios", "1.0.0")] == ["1.0.10", "1.0.9", "1.0.2"]


def test_release_outranks_its_prerelease():
    candidates = [_update(1, "1.1.0"), _update(2, "1.1.0-beta.3")]

    assert resolve(candidates, "ios", "1.0.0").id == 1


def test_equal_precedence_breaks_ties_by_id():
    candidates = [_update(1, "1.0.0+build.1"), _update(2, "1.0.0+build.2")]

    assert resolve(candidates, "ios", "1.0.0").id == 2


def test_malformed_stored_version_ranks_lowest():
    candidates = [_update(1, "legacy"), _update(2, "0.0.1")]

    assert resolve(candidates, "ios", "1.0.0").id == 2


def test_platform_filter_excludes_other_platforms():
    android_only = _update(1, "2.0.0", platforms=["android"])
    both = _update(2, "1.0.0")

    assert resolve([android_only, both], Platform.ios, "1.0.0") is both
    assert resolve([android_only, both], Platform.android, "1.0.0") is android_only


def test_empty_platform_list_serves_every_platform():
    legacy = _update(1, "1.0.0", platforms=[])

    assert supports_platform(legacy, "web") is True
    assert resolve([legacy], "web", "1.0.0") is legacy


def test_manifest_platforms_take_precedence():
    update = _update(1, "1.0.0", platforms=["ios"])
    update.manifest = Manifest(platforms=["android"], content={}, hash="x", version="1.0.0", runtime_version="1.0.0")

    assert resolve([update], "ios", "1.0.0") is None
    assert resolve([update], "android", "1.0.0") is update


def test_no_candidates_resolves_to_none():
    assert resolve([], "ios", "1.0.0") is None


def test_missing_runtime_version_is_rejected():
    with pytest.raises(MissingRequiredField):
        resolve([_update(1, "1.0.0")], "ios", "")


@pytest.mark.parametrize("runtime_version,app_version", [("1.0", None), ("1.0.0", "banana")])
def test_malformed_versions_are_rejected(runtime_version, app_version):
    with pytest.raises(InvalidVersionFormat):
        resolve([_update(1, "1.0.0")], "ios", runtime_version, app_version=app_version)
