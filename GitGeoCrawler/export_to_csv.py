#!/usr/bin/env python3
"""
Export script for GitGeoCrawler.
Exports the developer mirror from PostgreSQL to CSV, ranked by score.
"""

import logging
import sys
import argparse

from infrastructure.db_client import DatabaseClient
from core.use_cases import ExportDeveloperData

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def main():
    """Main export entry point."""
    parser = argparse.ArgumentParser(
        description="Export developer data to CSV"
    )
    parser.add_argument(
        "--output",
        type=str,
        default="developers.csv",
        help="Output CSV file path (default: developers.csv)",
    )

    args = parser.parse_args()

    try:
        logger.info("=" * 60)
        logger.info("GitGeoCrawler - Data Export")
        logger.info("=" * 60)

        with DatabaseClient() as db:
            count = db.get_developer_count()
            if count == 0:
                logger.warning(
                    "No developers in the database. Run db_setup.py --load "
                    "or crawl_developers.py --sync-db first."
                )
                return 1

            logger.info(f"Exporting {count:,} developers to {args.output}...")
            ExportDeveloperData(db).execute(args.output)

        logger.info(f"Data saved to: {args.output}")
        return 0

    except Exception as e:
        logger.error(f"Export failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
