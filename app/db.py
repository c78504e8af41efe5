from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import settings


class Base(DeclarativeBase):
    pass


def enable_sqlite_savepoints(engine: Engine) -> Engine:
    """Let SQLAlchemy own BEGIN so SAVEPOINTs nest inside the outer transaction on pysqlite."""

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def _build_engine() -> Engine:
    url = settings.database_url or "sqlite+pysqlite:///./ota.db"
    if url.startswith("sqlite"):
        return enable_sqlite_savepoints(create_engine(url, connect_args={"check_same_thread": False}))
    return create_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
    )


_engine = _build_engine()

SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False)


def get_engine() -> Engine:
    return _engine
