"""Database engine, sessions and schema setup."""

import logging
import os
from typing import List, Optional

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from rangesync.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """Create an engine, preparing the directory of a file-backed SQLite database.

    SQLite connections are shared between the request threads and the
    scheduler's event loop, so same-thread checking is disabled.
    """
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True)

    if url.database and url.database != ":memory:":
        directory = os.path.dirname(url.database)
        if directory:
            os.makedirs(directory, exist_ok=True)
    return create_engine(database_url, connect_args={"check_same_thread": False})


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """Get database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None) -> List[str]:
    """Create missing tables and bring existing ones up to date.

    Safe to call on every startup.

    Args:
        bind: Engine to initialize (defaults to the application engine).

    Returns:
        Names of the tables present afterwards.
    """
    # Registers every model on Base.metadata
    import rangesync.models  # noqa: F401
    from rangesync.database.migrations import migrate_database

    bind = bind or engine
    existing_tables = set(inspect(bind).get_table_names())
    Base.metadata.create_all(bind=bind)

    if existing_tables:
        logger.info(f"Upgrading existing database ({len(existing_tables)} tables)")
        db = sessionmaker(bind=bind)()
        try:
            migrate_database(db)
        finally:
            db.close()

    tables = inspect(bind).get_table_names()
    created = sorted(set(tables) - existing_tables)
    if created:
        logger.info(f"Created tables: {', '.join(created)}")
    return tables
