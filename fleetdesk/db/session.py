"""
Database session management with SQLAlchemy.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Generator
from contextlib import contextmanager

from fleetdesk.core.config import settings
from fleetdesk.core.logging import get_logger

logger = get_logger(__name__)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }


def _enable_sqlite_savepoints(sqlite_engine):
    """pysqlite manages transactions itself; take over so SAVEPOINT works."""

    @event.listens_for(sqlite_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

if engine.dialect.name == "sqlite":
    _enable_sqlite_savepoints(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Dependency for getting database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database session."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """
    Initialize database connection and run startup tasks.

    Schema is managed by Alembic migrations (`alembic upgrade head`).
    In DEBUG mode missing tables are created directly so local runs on
    SQLite work without a migration step.
    """
    from sqlalchemy import inspect

    from fleetdesk.db.preflight import run_db_preflight
    run_db_preflight()

    from fleetdesk.db import models  # noqa

    inspector = inspect(engine)
    existing_tables = inspector.get_table_names()
    required_tables = ['organizations', 'users', 'rfqs']

    missing = [t for t in required_tables if t not in existing_tables]
    if missing:
        logger.warning(f"Database schema missing tables: {missing}")
        if settings.DEBUG:
            logger.warning("DEBUG=true: creating tables directly (NOT for production)")
            Base.metadata.create_all(bind=engine)
        else:
            logger.error("Run 'alembic upgrade head' before serving traffic")
            return
    else:
        logger.info(f"Database schema verified: {len(existing_tables)} tables found")

    if settings.SEED_DEMO:
        from fleetdesk.db.seed import seed_demo_data
        with get_db_context() as db:
            seed_demo_data(db)
