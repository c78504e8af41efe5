"""Unpack uploaded update archives.

An archive holds ``bundle.js``, an optional ``assets/`` tree and an optional
``metadata.json``. Uploads are spooled to disk first; both the spooled file
and the extraction directory are removed when ``extracted_package`` exits,
whatever the outcome.
"""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
import zipfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from app.errors import InvalidPackage

logger = logging.getLogger(__name__)

BUNDLE_NAME = "bundle.js"
METADATA_NAME = "metadata.json"
ASSETS_DIR = "assets"

_COPY_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class PackageAsset:
    name: str
    data: bytes


@dataclass
class PackageContents:
    bundle: bytes
    assets: list[PackageAsset] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)


def spool_upload(source: BinaryIO, tmp_root: str | Path, max_bytes: int) -> Path:
    root = Path(tmp_root)
    root.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix="upload-", suffix=".zip", dir=root)
    path = Path(name)
    written = 0
    try:
        with open(fd, "wb") as out:
            while chunk := source.read(_COPY_CHUNK):
                written += len(chunk)
                if written > max_bytes:
                    raise InvalidPackage(f"Update package exceeds {max_bytes // 1024 // 1024}MB limit")
                out.write(chunk)
    except BaseException:
        path.unlink(missing_ok=True)
        raise
    if written == 0:
        path.unlink(missing_ok=True)
        raise InvalidPackage("Received empty update package")
    return path


def _check_member(info: zipfile.ZipInfo) -> None:
    member = PurePosixPath(info.filename)
    if member.is_absolute() or ".." in member.parts:
        raise InvalidPackage(f"Unsafe path in update package: {info.filename}")


def _extract(archive_path: Path, target: Path, max_bytes: int) -> None:
    try:
        with zipfile.ZipFile(archive_path) as archive:
            members = archive.infolist()
            if not members:
                raise InvalidPackage("Update package is empty")
            total = 0
            for info in members:
                _check_member(info)
                total += info.file_size
            if total > max_bytes:
                raise InvalidPackage("Update package expands beyond the allowed size")
            archive.extractall(target)
    except zipfile.BadZipFile as exc:
        raise InvalidPackage(f"Invalid or corrupted ZIP file: {exc}") from exc


def _read_metadata(root: Path) -> dict:
    path = root / METADATA_NAME
    if not path.is_file():
        return {}
    try:
        metadata = json.loads(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidPackage(f"metadata.json is not valid JSON: {exc}") from exc
    if not isinstance(metadata, dict):
        raise InvalidPackage("metadata.json must contain a JSON object")
    return metadata


def _read_assets(root: Path) -> list[PackageAsset]:
    assets_dir = root / ASSETS_DIR
    if not assets_dir.is_dir():
        return []
    assets = []
    for path in sorted(p for p in assets_dir.rglob("*") if p.is_file()):
        relative = path.relative_to(assets_dir)
        if any(part.startswith(".") for part in relative.parts):
            continue
        assets.append(PackageAsset(name=relative.as_posix(), data=path.read_bytes()))
    return assets


def read_package(archive_path: Path, extract_dir: Path, max_bytes: int) -> PackageContents:
    _extract(archive_path, extract_dir, max_bytes)
    bundle_path = extract_dir / BUNDLE_NAME
    if not bundle_path.is_file():
        raise InvalidPackage("Missing bundle.js in update package")
    return PackageContents(
        bundle=bundle_path.read_bytes(),
        assets=_read_assets(extract_dir),
        metadata=_read_metadata(extract_dir),
    )


def _remove(path: Path) -> None:
    try:
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
    except OSError:
        logger.warning("Could not remove temporary upload path %s", path, exc_info=True)


@contextmanager
def extracted_package(archive_path: Path, tmp_root: str | Path, max_bytes: int) -> Iterator[PackageContents]:
    extract_dir: Path | None = None
    try:
        extract_dir = Path(tempfile.mkdtemp(prefix="extract-", dir=tmp_root))
        yield read_package(archive_path, extract_dir, max_bytes)
    finally:
        if extract_dir is not None:
            _remove(extract_dir)
        _remove(archive_path)
