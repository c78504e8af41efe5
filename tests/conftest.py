import asyncio
import io
import json
import os
import sys
import uuid
import zipfile
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from types import ModuleType

import fastapi.dependencies.utils as fastapi_deps_utils
import fastapi.routing as fastapi_routing
import httpx
import jwt
import pytest
import starlette.concurrency as starlette_concurrency
import starlette.routing as starlette_routing
from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker


async def _patched_run_in_threadpool(func, *args, **kwargs):
    """Run inline in tests to avoid cross-thread sqlite/session deadlocks."""
    return func(*args, **kwargs)


starlette_concurrency.run_in_threadpool = _patched_run_in_threadpool
starlette_routing.run_in_threadpool = _patched_run_in_threadpool
fastapi_routing.run_in_threadpool = _patched_run_in_threadpool
fastapi_deps_utils.run_in_threadpool = _patched_run_in_threadpool


class SyncASGIClient:
    def __init__(self, app):
        self._app = app

    async def _request(self, method: str, url: str, **kwargs):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self._app, raise_app_exceptions=False),
            base_url="http://testserver",
            follow_redirects=True,
        ) as client:
            return await client.request(method, url, **kwargs)

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)

    def close(self) -> None:
        return None


# Create a test engine BEFORE any app imports
_test_engine = create_engine(
    "sqlite+pysqlite:///file:ota_test?mode=memory&cache=shared",
    connect_args={"check_same_thread": False, "uri": True},
)


# pysqlite only nests SAVEPOINTs correctly when SQLAlchemy emits BEGIN itself
@event.listens_for(_test_engine, "connect")
def _disable_driver_transactions(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(_test_engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


# Create a mock for the app.db module that uses our test engine
class TestBase(DeclarativeBase):
    __test__ = False


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


# Create a mock db module
mock_db_module = ModuleType("app.db")
mock_db_module.Base = TestBase  # type: ignore[attr-defined]
mock_db_module.SessionLocal = _TestSessionLocal  # type: ignore[attr-defined]
mock_db_module.get_engine = lambda: _test_engine  # type: ignore[attr-defined]

# Also mock app.config to prevent .env loading
mock_config_module = ModuleType("app.config")


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    storage_backend = "local"
    storage_path = "./uploads"
    s3_bucket = None
    s3_endpoint_url = None
    s3_region = "auto"
    s3_access_key = None
    s3_secret_key = None
    public_base_url = None
    upload_tmp_dir = "./temp"
    max_upload_bytes = 10 * 1024 * 1024
    upload_tmp_max_age_seconds = 3600
    jwt_secret = "test-secret"
    jwt_algorithm = "HS256"
    log_level = "INFO"
    log_json = False
    celery_broker_url = "memory://"
    celery_result_backend = "cache+memory://"
    testing = True


mock_config_module.settings = MockSettings()  # type: ignore[attr-defined]
mock_config_module.Settings = MockSettings  # type: ignore[attr-defined]

# Insert mocks before any app imports
sys.modules["app.config"] = mock_config_module
sys.modules["app.db"] = mock_db_module

# Set environment variables
os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"

# Now import the models - they'll use our mocked db module
from app.models import App, Asset, Bundle, Manifest, Update  # noqa: E402,F401
from app.services.app_service import AppService  # noqa: E402
from app.services.package_extractor import PackageAsset, PackageContents  # noqa: E402
from app.services.storage import LocalStorage  # noqa: E402

# Create all tables
TestBase.metadata.create_all(_test_engine)

# Re-export Base for compatibility
Base = TestBase

PUBLISHER_ID = 7


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture(autouse=True)
def _clean_tables(engine):
    yield
    with engine.begin() as conn:
        for table in reversed(TestBase.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing."""
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def settings(monkeypatch, tmp_path):
    from app.config import settings as current

    monkeypatch.setattr(current, "storage_path", str(tmp_path / "blobs"))
    monkeypatch.setattr(current, "upload_tmp_dir", str(tmp_path / "temp"))
    monkeypatch.setattr(current, "public_base_url", None)
    (tmp_path / "temp").mkdir(exist_ok=True)
    return current


@pytest.fixture()
def storage(tmp_path):
    return LocalStorage(tmp_path / "blobs")


@pytest.fixture()
def ota_app(db_session):
    app = AppService(db_session).create_app(
        "Demo App",
        f"demo-{uuid.uuid4().hex[:8]}",
        owner_id=PUBLISHER_ID,
        description="Test app",
    )
    db_session.commit()
    return app


def make_package(
    bundle: bytes = b"console.log('v1');",
    assets: dict[str, bytes] | None = None,
    **metadata,
) -> PackageContents:
    return PackageContents(
        bundle=bundle,
        assets=[PackageAsset(name=name, data=data) for name, data in sorted((assets or {}).items())],
        metadata=metadata,
    )


def make_archive(
    bundle: bytes | None = b"console.log('v1');",
    assets: dict[str, bytes] | None = None,
    metadata: dict | None = None,
    extra: dict[str, bytes] | None = None,
) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        if bundle is not None:
            archive.writestr("bundle.js", bundle)
        for name, data in (assets or {}).items():
            archive.writestr(f"assets/{name}", data)
        if metadata is not None:
            archive.writestr("metadata.json", json.dumps(metadata))
        for name, data in (extra or {}).items():
            archive.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture()
def package_factory():
    return make_package


@pytest.fixture()
def archive_factory():
    return make_archive


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session, storage, settings):
    """Create a test client with database and storage dependency overrides."""
    from app.api.deps import get_db, get_storage
    from app.main import app

    def override_get_db():
        return db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage

    @asynccontextmanager
    async def _test_lifespan(_app):
        yield

    original_lifespan = app.router.lifespan_context
    app.router.lifespan_context = _test_lifespan
    test_client = SyncASGIClient(app)
    try:
        yield test_client
    finally:
        test_client.close()
        app.router.lifespan_context = original_lifespan
        app.dependency_overrides.clear()


def _create_access_token(publisher_id: int, secret: str = "test-secret", expires_in: int = 15) -> str:
    """Create a JWT publisher token for testing."""
    now = datetime.now(UTC)
    payload = {
        "sub": str(publisher_id),
        "typ": "access",
        "exp": int((now + timedelta(minutes=expires_in)).timestamp()),
        "iat": int(now.timestamp()),
    }
    return str(jwt.encode(payload, secret, algorithm="HS256"))


@pytest.fixture()
def publisher_token():
    return _create_access_token(PUBLISHER_ID)


@pytest.fixture()
def publisher_headers(publisher_token):
    """Return authorization headers for authenticated requests."""
    return {"Authorization": f"Bearer {publisher_token}"}
