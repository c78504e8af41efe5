"""Content types for bundle and asset downloads, keyed by file extension."""

from pathlib import PurePosixPath

DEFAULT_CONTENT_TYPE = "application/octet-stream"
JAVASCRIPT = "application/javascript"

_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".js": JAVASCRIPT,
    ".hbc": JAVASCRIPT,
    ".bundle": JAVASCRIPT,
    ".json": "application/json",
    ".css": "text/css",
    ".html": "text/html",
    ".txt": "text/plain",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".mp4": "video/mp4",
}


def content_type_for(name: str) -> str:
    suffix = PurePosixPath(name).suffix.lower()
    return _CONTENT_TYPES.get(suffix, DEFAULT_CONTENT_TYPE)
