"""
Catalog schema management for dbkeep.

Simple migration system to handle schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import text, inspect
from sqlalchemy.exc import SQLAlchemyError
from dbkeep import db

logger = logging.getLogger(__name__)


# Columns added after the first catalog schema: (table, column, DDL type)
ADDED_COLUMNS = [
    ('backup_records', 'checksum_algorithm', "VARCHAR(20) NOT NULL DEFAULT 'sha256'"),
    ('backup_records', 'job_id', 'VARCHAR(32)'),
    ('backup_records', 'schema_version', 'INTEGER NOT NULL DEFAULT 1'),
    ('upload_markers', 'job_id', 'VARCHAR(32)'),
]


def init_database_schema(app):
    """
    Initialize catalog schema and run migrations.

    Creates tables if they don't exist, then upgrades tables written by older
    versions so existing catalogs stay readable.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if not existing_tables:
            logger.info("No tables found - creating catalog schema")
        db.create_all()

        if existing_tables:
            run_migrations(inspect(db.engine))


def run_migrations(inspector=None):
    """
    Add any missing columns to existing catalog tables.

    Returns:
        List of "table.column" names that were added
    """
    if inspector is None:
        inspector = inspect(db.engine)

    tables = inspector.get_table_names()
    added = []

    for table, column, ddl in ADDED_COLUMNS:
        if table not in tables:
            continue

        columns = [col['name'] for col in inspector.get_columns(table)]
        if column in columns:
            continue

        logger.info(f"Running migration: Adding {column} column to {table} table")
        try:
            db.session.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            db.session.commit()
            added.append(f"{table}.{column}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to add {column} column to {table}: {e}")
            db.session.rollback()
            raise

    return added
