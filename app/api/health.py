import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.pool import Pool, QueuePool
from starlette.responses import JSONResponse

from app.api.deps import get_storage
from app.db import SessionLocal, get_engine
from app.services.storage import BlobStorage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


def _database_reachable() -> bool:
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return True
    except Exception:
        logger.warning("Database health check failed", exc_info=True)
        return False
    finally:
        db.close()


@router.get("")
def health_check():
    checks = {"db": _database_reachable()}
    return {
        "status": "ok" if all(checks.values()) else "degraded",
        "checks": checks,
    }


@router.get("/ready")
def readiness(storage: BlobStorage = Depends(get_storage)):
    db_ok = _database_reachable()
    payload = {
        "status": "ready" if db_ok else "unavailable",
        "storage": storage.kind,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    if not db_ok:
        return JSONResponse(status_code=503, content=payload)
    return payload


def _pool_metrics(pool: Pool) -> dict[str, int | str]:
    # SQLite engines run on pools without sizing counters
    if not isinstance(pool, QueuePool):
        return {"pool_class": type(pool).__name__}
    return {
        "pool_class": "QueuePool",
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }


@router.get("/db-pool")
def db_pool_status() -> dict[str, int | str]:
    return _pool_metrics(get_engine().pool)
