"""In-place column upgrades for databases created by older releases."""

import logging
from typing import Dict, List
from sqlalchemy import inspect, text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# (table, column, DDL type) for each column added to a model after a release.
# create_all never alters existing tables, so such columns are added here.
COLUMN_MIGRATIONS: List[tuple] = []


def _missing_columns(db: Session) -> List[tuple]:
    inspector = inspect(db.get_bind())
    tables = set(inspector.get_table_names())

    missing = []
    for table, column, ddl_type in COLUMN_MIGRATIONS:
        if table not in tables:
            continue
        if column not in {col["name"] for col in inspector.get_columns(table)}:
            missing.append((table, column, ddl_type))
    return missing


def migrate_database(db: Session) -> List[str]:
    """Add every registered column an existing table lacks.

    Idempotent. A column that cannot be added is logged and skipped.

    Returns:
        "table.column" names that were added.
    """
    added = []
    for table, column, ddl_type in _missing_columns(db):
        try:
            db.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}"))
            db.commit()
            added.append(f"{table}.{column}")
            logger.info(f"Added column {table}.{column}")
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to add column {table}.{column}: {e}")

    if added:
        logger.info(f"Database migrations applied: {', '.join(added)}")
    return added


def get_migration_status(db: Session) -> Dict[str, List[str]]:
    """Report which registered column migrations are present or pending."""
    missing = {(table, column) for table, column, _ in _missing_columns(db)}
    tables = set(inspect(db.get_bind()).get_table_names())

    status = {"applied": [], "pending": []}
    for table, column, _ in COLUMN_MIGRATIONS:
        if table not in tables:
            continue
        key = "pending" if (table, column) in missing else "applied"
        status[key].append(f"{table}.{column}")
    return status
