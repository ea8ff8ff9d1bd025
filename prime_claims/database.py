import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker

from prime_claims.config import settings

LOGGER = logging.getLogger(__name__)


class StoreUnavailable(RuntimeError):
    pass


def _build_database_url(raw_url: str) -> str:
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
    if raw_url.startswith("postgres://"):
        return raw_url.replace("postgres://", "postgresql+psycopg://", 1)
    return raw_url


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Worker threads share the pool; sqlite serializes writers itself.
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "pool_timeout": settings.db_connect_timeout_seconds,
        "connect_args": {"connect_timeout": settings.db_connect_timeout_seconds},
    }


engine: Engine | None = None
SessionLocal = sessionmaker(autoflush=False, autocommit=False, expire_on_commit=False)
Base = declarative_base()


def configure_engine(database_url: str | None = None) -> Engine:
    global engine
    url = _build_database_url(database_url or settings.database_url)
    if not url:
        raise RuntimeError("DATABASE_URL is not configured")
    if engine is not None:
        engine.dispose()
    engine = create_engine(url, **_engine_options(url))
    if engine.dialect.name == "sqlite":
        _serialize_sqlite_writers(engine)
    SessionLocal.configure(bind=engine)
    return engine


def _serialize_sqlite_writers(sqlite_engine: Engine) -> None:
    # Take the write lock at BEGIN so concurrent upserts wait on the busy
    # timeout instead of failing a SHARED -> RESERVED lock upgrade.
    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _begin_immediate(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def get_engine() -> Engine:
    if engine is None:
        return configure_engine()
    return engine


def init_db() -> None:
    from prime_claims.models import claim as _claim  # noqa: F401

    Base.metadata.create_all(bind=get_engine())


def ping() -> bool:
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
    except (OperationalError, InterfaceError) as exc:
        LOGGER.error("Database ping failed: %s", exc)
        return False
    return True


@contextmanager
def session_scope():
    get_engine()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except (OperationalError, InterfaceError) as exc:
        session.rollback()
        LOGGER.error("Claim store unavailable: %s", exc)
        raise StoreUnavailable("Claim store is unavailable") from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
