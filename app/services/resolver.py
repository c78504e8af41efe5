"""Pick the update a device should receive.

Pure functions over already-loaded ``Update`` rows; nothing here touches the
database or storage.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from app.errors import InvalidVersionFormat, MissingRequiredField
from app.models.update import Platform, Update
from app.services.semver import Version, parse_version, satisfies

logger = logging.getLogger(__name__)


def require_version(value: str | None, label: str) -> Version:
    if value is None or not str(value).strip():
        raise MissingRequiredField(f"{label} is required")
    try:
        return parse_version(value)
    except ValueError as exc:
        raise InvalidVersionFormat(f"Invalid {label} format: {value!r}") from exc


def declared_platforms(update: Update) -> list[str]:
    manifest = update.manifest
    if manifest is not None and manifest.platforms:
        return list(manifest.platforms)
    return list(update.platforms or [])


def supports_platform(update: Update, platform: str) -> bool:
    platforms = declared_platforms(update)
    # Legacy rows without platforms serve every platform
    return not platforms or platform in platforms


def is_version_compatible(update: Update, runtime_version: str, app_version: Version) -> bool:
    if update.target_version_range:
        return satisfies(app_version, update.target_version_range)
    return update.runtime_version == runtime_version


def _precedence(update: Update) -> tuple:
    try:
        key = (1, parse_version(update.version).sort_key())
    except ValueError:
        key = (0, ())
    return (key, update.id or 0)


def rank_compatible(
    candidates: Sequence[Update],
    platform: Platform | str,
    runtime_version: str,
    app_version: str | None = None,
) -> list[Update]:
    """Compatible candidates, highest semantic version first."""
    require_version(runtime_version, "runtimeVersion")
    client_app = require_version(app_version, "appVersion") if app_version else parse_version(runtime_version)
    if not candidates:
        return []
    platform_value = platform.value if isinstance(platform, Platform) else str(platform)

    compatible = []
    for update in candidates:
        if not supports_platform(update, platform_value):
            logger.debug("Update %s skipped: %s not in %s", update.id, platform_value, declared_platforms(update))
            continue
        if not is_version_compatible(update, runtime_version, client_app):
            logger.debug(
                "Update %s skipped: runtime %s / range %r incompatible with runtime %s app %s",
                update.id,
                update.runtime_version,
                update.target_version_range,
                runtime_version,
                client_app,
            )
            continue
        compatible.append(update)
    return sorted(compatible, key=_precedence, reverse=True)


def resolve(
    candidates: Sequence[Update],
    platform: Platform | str,
    runtime_version: str,
    app_version: str | None = None,
) -> Update | None:
    ranked = rank_compatible(candidates, platform, runtime_version, app_version)
    return ranked[0] if ranked else None
