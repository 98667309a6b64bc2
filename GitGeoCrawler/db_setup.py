#!/usr/bin/env python3
"""
Database setup script for GitGeoCrawler.
Creates the PostgreSQL schema that mirrors the developer collection and,
optionally, loads the current result file into it.
"""

import argparse
import logging
import sys

from core.use_cases import SyncDevelopersToDatabase
from infrastructure.config import CrawlerSettings
from infrastructure.db_client import DatabaseClient
from infrastructure.entity_store import EntityStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def main():
    """Initialize database schema."""
    parser = argparse.ArgumentParser(description="Create the developers table")
    parser.add_argument(
        "--load",
        action="store_true",
        help="Also load the developers from the result file",
    )
    parser.add_argument(
        "--results",
        type=str,
        default=None,
        help="Result file to load (default: developers.json)",
    )
    args = parser.parse_args()

    try:
        logger.info("Starting database setup...")

        with DatabaseClient() as db:
            db.create_schema()

            if args.load:
                results = args.results or CrawlerSettings.from_env().results_path
                count = SyncDevelopersToDatabase(EntityStore(results), db).execute()
                logger.info(f"Loaded {count:,} developers from {results}")

        logger.info("Database setup completed successfully!")
        return 0

    except Exception as e:
        logger.error(f"Database setup failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
