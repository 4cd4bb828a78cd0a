"""Database migrations for scheduler and analytics queries."""

from sqlalchemy import inspect, text
from . import database
from ..core.logging import get_logger

logger = get_logger(__name__)


def add_enrollment_context_revision():
    """Add the context revision column to enrollments tables created before it existed."""
    try:
        columns = {column["name"] for column in inspect(database.engine).get_columns("enrollments")}
        if "context_revision" in columns:
            return

        with database.engine.connect() as connection:
            connection.execute(text(
                "ALTER TABLE enrollments ADD COLUMN context_revision INTEGER NOT NULL DEFAULT 0"
            ))
            connection.commit()
            logger.info("Added context_revision column to enrollments")

    except Exception as e:
        logger.error(f"Failed to add context revision column: {str(e)}")
        raise


def create_indexes_for_scheduler_queries():
    """Create indexes used by sweeps, event routing and analytics."""
    try:
        with database.engine.connect() as connection:
            # Sweep: due active enrollments ordered by due time
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_enrollments_due
                ON enrollments(status, next_action_at)
            """))

            # Crash recovery: expired leases
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_enrollments_lease
                ON enrollments(lease_holder, lease_expires_at)
            """))

            # Event routing: live enrollments of a contact
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_enrollments_contact
                ON enrollments(contact_id, status)
            """))

            # Analytics: per-node outcome counts
            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_execution_log_workflow_node
                ON execution_log(workflow_id, node_id, outcome)
            """))

            connection.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_conversions_workflow_achieved
                ON conversions(workflow_id, achieved_at)
            """))

            connection.commit()
            logger.info("Successfully created database indexes for scheduler queries")

    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def optimize_database_for_concurrent_workers():
    """Apply settings that let several scheduler workers share the database."""
    try:
        with database.engine.connect() as connection:
            if database.engine.url.get_backend_name() == "sqlite" and database.engine.url.database not in (None, "", ":memory:"):
                # WAL lets readers proceed while a worker commits
                connection.execute(text("PRAGMA journal_mode=WAL"))
                connection.execute(text("PRAGMA busy_timeout=30000"))
                logger.info("Applied SQLite settings for concurrent workers")

            connection.commit()

    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations():
    """Run all migrations."""
    try:
        logger.info("Starting database migrations")

        add_enrollment_context_revision()
        create_indexes_for_scheduler_queries()
        optimize_database_for_concurrent_workers()

        logger.info("Database migrations completed successfully")

    except Exception as e:
        logger.error(f"Database migrations failed: {str(e)}")
        raise


if __name__ == "__main__":
    run_migrations()
