"""Index migrations for the execution tables."""

from typing import Optional

from sqlalchemy import text, Engine

from .database import get_database_engine
from ..core.logging import get_logger

logger = get_logger(__name__)


INDEX_STATEMENTS = [
    # Resumption sweep: waiting executions ordered by wake time
    """CREATE INDEX IF NOT EXISTS idx_executions_status_wake
       ON workflow_executions(status, wake_at)""",
    # Re-entry checks count executions per workflow and contact
    """CREATE INDEX IF NOT EXISTS idx_executions_workflow_contact_status
       ON workflow_executions(workflow_id, contact_id, status)""",
    """CREATE INDEX IF NOT EXISTS idx_execution_logs_execution_timestamp
       ON execution_logs(execution_id, timestamp)""",
    """CREATE INDEX IF NOT EXISTS idx_workflows_org_status
       ON workflows(organization_id, status)""",
    # Schedule sweep: active schedules ordered by next run
    """CREATE INDEX IF NOT EXISTS idx_schedules_active_next_run
       ON workflow_schedules(is_active, next_run_at)""",
]


def create_execution_indexes(engine: Optional[Engine] = None) -> None:
    """Create the composite indexes used by the scheduler and re-entry checks."""
    engine = engine or get_database_engine()
    try:
        with engine.connect() as connection:
            for statement in INDEX_STATEMENTS:
                connection.execute(text(statement))
            connection.commit()
            logger.info("Created execution indexes")
    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def optimize_sqlite(engine: Optional[Engine] = None) -> None:
    """Enable WAL mode on file-backed SQLite databases."""
    engine = engine or get_database_engine()
    if engine.url.get_backend_name() != "sqlite" or engine.url.database in (None, "", ":memory:"):
        return

    try:
        with engine.connect() as connection:
            connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.execute(text("PRAGMA optimize"))
            connection.commit()
            logger.info("Applied SQLite optimizations")
    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations(engine: Optional[Engine] = None) -> None:
    """Run all index migrations."""
    logger.info("Starting database migrations")
    create_execution_indexes(engine)
    optimize_sqlite(engine)
    logger.info("Database migrations completed successfully")


if __name__ == "__main__":
    run_migrations()
