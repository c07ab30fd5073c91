"""Database configuration for the routines backend."""
from functools import lru_cache
import logging

from sqlmodel import create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine

from taskwatch.config import get_settings

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str) -> Engine:
    """Create a SQLModel engine, with SQLite pragmas for local development."""
    if database_url.startswith("postgresql"):
        logger.info("[DB CONFIG] Using PostgreSQL database")
    else:
        logger.info(f"[DB CONFIG] Using SQLite database: {database_url}")

    # SQLite connections are shared with the threadpool FastAPI runs sync code in
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    engine = create_engine(database_url, echo=False, connect_args=connect_args)

    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if ":memory:" not in database_url:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return engine


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Process-wide engine built from DATABASE_URL."""
    return create_db_engine(get_settings().database_url)

