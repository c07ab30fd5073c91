"""Initialize database tables."""
from typing import Optional
import logging

from sqlmodel import SQLModel
from sqlalchemy.engine import Engine

# imported for table registration on SQLModel.metadata
from taskwatch.models import RepeatingExceptionRecord, RepeatingSession, SessionHistory, SyncLock  # noqa: F401
from taskwatch.db.config import get_engine

logger = logging.getLogger(__name__)


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables in the database."""
    target = engine if engine is not None else get_engine()
    logger.info("[DB INIT] Creating all tables...")
    SQLModel.metadata.create_all(target)
    logger.info("[DB INIT] Tables created successfully.")


if __name__ == "__main__":
    init_db()
