from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, text
import structlog

from bookproxy.internal.env_settings import Settings

logger = structlog.stdlib.get_logger()


def create_db_engine(settings: Settings) -> Engine:
    db = settings.db
    if db.use_postgres:
        engine = create_engine(
            settings.get_database_url(),
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
            pool_pre_ping=db.pool_pre_ping,
        )
    else:
        # SQLite doesn't support connection pooling same way, but we configure defaults
        engine = create_engine(
            settings.get_database_url(),
            connect_args={"check_same_thread": False},
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_pre_ping=db.pool_pre_ping,
        )

        @event.listens_for(engine, "connect")
        def receive_connect(dbapi_conn, connection_record):
            """Counters are hammered from concurrent requests; WAL keeps readers off the writer"""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()
            if settings.app.debug:
                logger.debug("Database connection established")

    logger.info(
        "Database connection pool configured",
        database_type="PostgreSQL" if db.use_postgres else "SQLite",
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        pool_pre_ping=db.pool_pre_ping,
    )
    return engine


def create_memory_engine() -> Engine:
    """Single shared in-memory SQLite database, used by tests and ephemeral runs."""
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def init_db(engine: Engine) -> None:
    # Import registers the table classes on SQLModel.metadata
    from bookproxy.internal import models  # noqa: F401  # pyright: ignore[reportUnusedImport]

    SQLModel.metadata.create_all(engine)


def open_session(engine: Engine) -> Session:
    session = Session(engine)
    if engine.dialect.name == "sqlite":
        session.execute(text("PRAGMA foreign_keys=ON"))
    return session


def upsert(session: Session, model: Any) -> Any:
    """Dialect specific ``INSERT`` supporting ``on_conflict_do_update``.

    Counters rely on it to update in a single statement instead of a
    read-modify-write across two round trips.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Atomic upserts are not supported on {dialect}")
