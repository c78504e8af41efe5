import logging

import jwt
from fastapi import Header, HTTPException, Request
from jwt.exceptions import PyJWTError as JWTError

from app.config import settings
from app.db import SessionLocal
from app.services.storage import BlobStorage

logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_storage(request: Request) -> BlobStorage:
    return request.app.state.storage


def get_base_url(request: Request) -> str:
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")
    return str(request.base_url).rstrip("/")


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def require_publisher(authorization: str | None = Header(default=None)) -> int:
    """Return the publisher id carried in the bearer token's ``sub`` claim."""
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"})
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        logger.info("Rejected publisher token", exc_info=True)
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"})
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"})


__all__ = ["get_base_url", "get_db", "get_storage", "require_publisher"]
