"""
Database migrations for Sitekeeper.

Simple migration system to handle schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import text, inspect
from sitekeeper import db

logger = logging.getLogger(__name__)

# Columns added to backup_runs after the first schema version
BACKUP_RUN_COLUMNS = {
    'upload_method': 'VARCHAR(20)',
    'part_count': 'INTEGER',
    'error_kind': 'VARCHAR(50)',
}


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    Creates missing tables and runs any necessary migrations. Safe to call
    from multiple gunicorn workers.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = set(inspector.get_table_names())
        expected_tables = set(db.metadata.tables.keys())

        if not expected_tables.issubset(existing_tables):
            logger.info("Creating missing tables: %s", sorted(expected_tables - existing_tables))
            try:
                db.create_all()
                logger.info("Database schema created successfully")
            except Exception as e:
                # If another worker beat us to it, that's okay
                logger.error(f"Failed to create database schema: {e}")

        run_migrations(app, inspect(db.engine))


def run_migrations(app, inspector=None):
    """
    Run all necessary database migrations.

    Checks the database schema and applies any missing changes.
    """
    if inspector is None:
        inspector = inspect(db.engine)

    if 'backup_runs' not in inspector.get_table_names():
        return

    columns = [col['name'] for col in inspector.get_columns('backup_runs')]

    for column, column_type in BACKUP_RUN_COLUMNS.items():
        if column in columns:
            continue

        logger.info(f"Running migration: Adding {column} column to backup_runs table")
        try:
            db.session.execute(text(
                f"ALTER TABLE backup_runs ADD COLUMN {column} {column_type}"
            ))
            db.session.commit()
            logger.info(f"Successfully added {column} column")
        except Exception as e:
            logger.error(f"Failed to add {column} column: {e}")
            db.session.rollback()
