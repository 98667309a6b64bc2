#!/usr/bin/env python3
"""
Main crawler script for GitGeoCrawler.
Surveys GitHub developers by location, enriches them with project data and
reports on the collected set.
"""

import logging
import sys
import argparse
from datetime import timedelta

from core.entities import CrawlReport, CrawlStatus, format_wait
from core.errors import PersistenceError
from core.use_cases import (
    CrawlLocations,
    EnrichDevelopers,
    GetDeveloperStatistics,
    SyncDevelopersToDatabase,
)
from infrastructure.checkpoint_store import CheckpointStore
from infrastructure.config import CrawlerSettings, load_token
from infrastructure.db_client import DatabaseClient
from infrastructure.entity_store import EntityStore
from infrastructure.github_client import GitHubClient
from infrastructure.retry_utils import QuotaGovernor, RequestPacer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Survey GitHub developers by location with a per-run request budget"
    )
    parser.add_argument(
        "--mode",
        choices=["crawl", "enrich", "report"],
        default="crawl",
        help="crawl locations (default), enrich stored developers with projects, "
             "or report on existing data",
    )
    parser.add_argument(
        "--locations",
        type=str,
        default=None,
        help="Comma-separated locations to survey (default: Taiwan cities and counties)",
    )
    parser.add_argument(
        "--budget",
        type=int,
        default=None,
        help="Maximum API requests for this run (default: 50)",
    )
    parser.add_argument(
        "--min-followers",
        type=int,
        default=None,
        help="Minimum followers a developer needs to be kept (default: 10)",
    )
    parser.add_argument(
        "--checkpoint",
        type=str,
        default=None,
        help="Checkpoint file (default: run_progress.json)",
    )
    parser.add_argument(
        "--results",
        type=str,
        default=None,
        help="Result file (default: developers.json)",
    )
    parser.add_argument(
        "--token-file",
        type=str,
        default=None,
        help="File holding a GitHub token (GITHUB_TOKEN takes precedence)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Enrich mode: maximum developers to process",
    )
    parser.add_argument(
        "--max-age-days",
        type=int,
        default=None,
        help="Enrich mode: re-enrich developers whose projects are older than this",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete the checkpoint and start the survey from scratch",
    )
    parser.add_argument(
        "--sync-db",
        action="store_true",
        help="Mirror the developer collection into PostgreSQL after the run",
    )
    return parser


def build_settings(args) -> CrawlerSettings:
    settings = CrawlerSettings.from_env()
    if args.locations:
        settings.locations = [loc.strip() for loc in args.locations.split(",") if loc.strip()]
    if args.budget is not None:
        settings.request_budget = args.budget
    if args.min_followers is not None:
        settings.min_followers = args.min_followers
    if args.checkpoint:
        settings.checkpoint_path = args.checkpoint
    if args.results:
        settings.results_path = args.results
    return settings


def log_summary(report: CrawlReport, mode: str):
    logger.info("=" * 60)
    logger.info(f"{mode.capitalize()} Summary:")
    logger.info(f"  Status: {report.status.value}")
    logger.info(f"  Completed this run: {len(report.completed)}")
    logger.info(f"  Failed this run: {len(report.failed)}")
    for item, reason in report.failed.items():
        logger.info(f"    {item}: {reason}")
    logger.info(f"  Remaining: {len(report.remaining)}")
    logger.info(
        f"  Requests used: {report.requests_made}/"
        f"{report.checkpoint.request_budget_per_run}"
    )
    if mode == "crawl":
        logger.info(f"  Developers found (all runs): {report.checkpoint.total_entities_found}")
    if report.status is CrawlStatus.RATE_LIMITED:
        logger.info(f"  Rate limit resets at: {report.reset_at}")
        logger.info(f"  Resume in {format_wait(report.wait)}")
    logger.info(f"  {report.message}")
    logger.info("=" * 60)


def log_statistics(stats: dict):
    logger.info("=" * 60)
    logger.info("Developer Statistics:")
    logger.info(f"  Developers: {stats['total_developers']:,}")
    logger.info(f"  Organizations: {stats['total_organizations']:,}")
    logger.info(f"  Enriched with projects: {stats['enriched']:,}")
    logger.info(f"  Total followers: {stats['total_followers']:,}")
    logger.info(f"  Total stars / forks: {stats['total_stars']:,} / {stats['total_forks']:,}")
    logger.info("")
    logger.info("  Locations:")
    for location, count in list(stats["location_distribution"].items())[:10]:
        logger.info(f"    {location:30s} {count:6,}")
    logger.info("")
    logger.info("  Top developers by score:")
    top_key = next(key for key in stats if key.startswith("top_"))
    for i, dev in enumerate(stats[top_key], 1):
        logger.info(
            f"    {i:2d}. {dev['login']:25s} "
            f"{dev['followers']:8,} followers, "
            f"{dev['stars']:8,} stars, "
            f"score {dev['score']:10,.0f}"
        )
    logger.info("=" * 60)


def main():
    """Main crawler entry point."""
    args = build_parser().parse_args()
    settings = build_settings(args)

    try:
        logger.info("=" * 60)
        logger.info("GitGeoCrawler - GitHub Developers by Location")
        logger.info("=" * 60)
        logger.info(f"Mode: {args.mode}")
        logger.info(f"Locations: {len(settings.locations)}")
        logger.info(f"Request budget: {settings.request_budget}")
        logger.info(f"Minimum followers: {settings.min_followers}")
        logger.info("=" * 60)

        checkpoint_store = CheckpointStore(settings.checkpoint_path)
        entity_store = EntityStore(settings.results_path)

        if args.reset:
            checkpoint_store.reset()

        if args.mode == "report":
            log_statistics(GetDeveloperStatistics(entity_store).execute())
        else:
            token = load_token(args.token_file)
            github = GitHubClient(
                governor=QuotaGovernor(settings.request_budget),
                token=token,
                pacer=RequestPacer(settings.request_delay),
                api_root=settings.api_root,
                per_page=settings.search_page_size,
                contributors_per_page=settings.top_contributors,
            )

            with github:
                if args.mode == "enrich":
                    max_age = (
                        timedelta(days=args.max_age_days)
                        if args.max_age_days is not None
                        else None
                    )
                    report = EnrichDevelopers(
                        github, checkpoint_store, entity_store, settings
                    ).execute(limit=args.limit, max_age=max_age)
                else:
                    report = CrawlLocations(
                        github, checkpoint_store, entity_store, settings
                    ).execute(settings.locations)

            log_summary(report, args.mode)

        if args.sync_db:
            with DatabaseClient() as db:
                SyncDevelopersToDatabase(entity_store, db).execute()

        return 0

    except KeyboardInterrupt:
        logger.info("\nCrawl interrupted by user. Progress up to the last location has been saved.")
        return 130  # Standard exit code for SIGINT

    except PersistenceError as e:
        logger.error(f"Could not persist crawl state, aborting: {e}", exc_info=True)
        return 1

    except Exception as e:
        logger.error(f"Run failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
