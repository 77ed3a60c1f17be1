#!/usr/bin/env python3
"""Create the automation engine's tables and indexes."""

import sys

from autoflow.config import load_config
from autoflow.core.logging import setup_logging
from autoflow.storage.database import create_tables, get_database_engine
from autoflow.storage.migrations import run_migrations


def main():
    config = load_config()
    logger = setup_logging(level=config.log_level.value)

    try:
        logger.info(f"Initializing database at {config.database_url}")
        engine = get_database_engine(
            database_url=config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args(),
        )
        create_tables(engine)
        run_migrations(engine)
        logger.info("Database initialization completed")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
