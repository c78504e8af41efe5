from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.apps import router as apps_router
from app.api.health import router as health_router
from app.api.manifest import router as manifest_router
from app.api.updates import router as updates_router
from app.config import settings
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.observability import ObservabilityMiddleware
from app.services.storage import build_storage


@asynccontextmanager
async def lifespan(app: FastAPI):
    Path(settings.upload_tmp_dir).mkdir(parents=True, exist_ok=True)
    app.state.storage = build_storage(settings)
    yield


app = FastAPI(title="OTA Updates API", lifespan=lifespan)

configure_logging()
app.add_middleware(ObservabilityMiddleware)
register_error_handlers(app)


def _include_api_router(router, dependencies=None):
    app.include_router(router, dependencies=dependencies)
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(manifest_router)
_include_api_router(apps_router)
_include_api_router(updates_router)
_include_api_router(health_router)


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
