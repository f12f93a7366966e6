"""
Database schema setup for vaultsync.

Creates missing tables without requiring Alembic. Safe to call from
several Gunicorn workers at once.
"""

import logging
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError
from vaultsync import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Create any tables that do not exist yet.

    If another worker creates a table concurrently, the resulting
    "already exists" error is ignored.
    """
    with app.app_context():
        existing_tables = set(inspect(db.engine).get_table_names())
        expected_tables = set(db.metadata.tables)
        missing = expected_tables - existing_tables

        if not missing:
            return

        logger.info(f"Creating database tables: {', '.join(sorted(missing))}")
        try:
            db.create_all()
            logger.info("Database schema created successfully")
        except OperationalError as e:
            if 'already exists' not in str(e):
                raise
            # Another worker beat us to it
            logger.info("Database schema created by another worker")
