"""SHA-256 helpers and content-addressed storage keys."""

from __future__ import annotations

import hashlib
import json
import re
from pathlib import PurePosixPath

_SAFE_SUFFIX_RE = re.compile(r"^\.[a-z0-9]{1,10}$")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_json(document: dict) -> bytes:
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def bundle_storage_key(digest: str) -> str:
    return f"bundles/{digest[:2]}/{digest}.js"


def asset_storage_key(digest: str, name: str) -> str:
    suffix = PurePosixPath(name).suffix.lower()
    if not _SAFE_SUFFIX_RE.match(suffix):
        suffix = ""
    return f"assets/{digest[:2]}/{digest}{suffix}"
