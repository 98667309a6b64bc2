"""
Business logic / use cases for surveying GitHub developers by location.
This layer orchestrates the interaction between the GitHub API and the stores.
"""

import logging
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from core.entities import (
    Checkpoint,
    CrawlReport,
    CrawlStatus,
    Developer,
    Project,
    SearchCandidate,
    format_wait,
)
from core.errors import (
    ContributorListTooLarge,
    DeserializationError,
    ItemError,
    PlatformRateLimited,
    QuotaExhausted,
    TransientNetworkError,
)
from infrastructure.checkpoint_store import CheckpointStore
from infrastructure.config import CrawlerSettings
from infrastructure.db_client import DatabaseClient
from infrastructure.entity_store import EntityStore, by_followers, by_score
from infrastructure.github_client import GitHubClient

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CrawlLocations:
    """
    Use case for surveying every location for well-followed developers.

    Runs are resumable: each invocation picks up the locations the checkpoint
    has not completed, stops cleanly when the request budget is spent or
    GitHub rate limits us, and persists progress after every transition.
    """

    def __init__(
        self,
        github_client: GitHubClient,
        checkpoint_store: CheckpointStore,
        entity_store: EntityStore,
        settings: Optional[CrawlerSettings] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the use case.

        Args:
            github_client: GitHub API client (owns the quota governor)
            checkpoint_store: Durable crawl progress
            entity_store: Durable developer collection
            settings: Crawl tunables
            now: Clock returning an aware UTC datetime
        """
        self.github = github_client
        self.checkpoints = checkpoint_store
        self.entities = entity_store
        self.settings = settings or CrawlerSettings()
        self._now = now

    def execute(self, locations: Optional[List[str]] = None) -> CrawlReport:
        """
        Execute one crawl invocation.

        Args:
            locations: Work items in canonical order (defaults to settings)

        Returns:
            CrawlReport describing how the invocation ended
        """
        # Preserve caller order, drop duplicates
        if locations is None:
            locations = self.settings.locations
        work_items = list(dict.fromkeys(locations))
        governor = self.github.governor

        now = self._now()
        checkpoint = (
            self.checkpoints.load()
            .start_run(now, governor.budget)
            .with_completion(work_items)
        )

        if checkpoint.is_rate_limited(now):
            self.checkpoints.save(checkpoint)
            wait = checkpoint.wait_remaining(now)
            logger.warning(
                f"GitHub rate limit active until {checkpoint.rate_limit_reset_at}, "
                f"resume in {format_wait(wait)}. No requests made."
            )
            return self._report(CrawlStatus.RATE_LIMITED, checkpoint, work_items)

        self.checkpoints.save(checkpoint)

        remaining = checkpoint.remaining_items(work_items)
        logger.info(
            f"{len(remaining)} of {len(work_items)} locations remaining, "
            f"request budget {governor.budget}"
        )

        # Detail follower counts fetched this run, keyed by developer id
        seen: Dict[int, int] = {}
        gathered: List[Developer] = []
        completed: List[str] = []
        failed: Dict[str, str] = {}

        for location in remaining:
            if governor.exhausted:
                checkpoint = checkpoint.with_requests(governor.requests_made)
                self.checkpoints.save(checkpoint)
                logger.info(f"Request budget exhausted before '{location}'")
                return self._report(
                    CrawlStatus.BUDGET_EXHAUSTED, checkpoint, work_items,
                    gathered, completed, failed,
                )

            found: Dict[int, Developer] = {}
            try:
                self._crawl_location(location, found, seen)

            except PlatformRateLimited as e:
                self._persist(found, gathered)
                checkpoint = checkpoint.mark_rate_limited(e.reset_at).with_requests(
                    governor.requests_made
                )
                self.checkpoints.save(checkpoint)
                logger.warning(
                    f"Rate limited while processing '{location}', "
                    f"progress saved. Resets at {e.reset_at}"
                )
                return self._report(
                    CrawlStatus.RATE_LIMITED, checkpoint, work_items,
                    gathered, completed, failed,
                )

            except QuotaExhausted:
                self._persist(found, gathered)
                checkpoint = checkpoint.with_requests(governor.requests_made)
                self.checkpoints.save(checkpoint)
                logger.info(
                    f"Request budget exhausted while processing '{location}', "
                    f"it will be retried next run"
                )
                return self._report(
                    CrawlStatus.BUDGET_EXHAUSTED, checkpoint, work_items,
                    gathered, completed, failed,
                )

            except (ItemError, TransientNetworkError) as e:
                self._persist(found, gathered)
                checkpoint = checkpoint.mark_failed(location, str(e)).with_requests(
                    governor.requests_made
                )
                self.checkpoints.save(checkpoint)
                failed[location] = str(e)
                logger.error(f"Location '{location}' failed: {e}")
                continue

            self._persist(found, gathered)
            checkpoint = checkpoint.mark_completed(location, len(found)).with_requests(
                governor.requests_made
            )
            self.checkpoints.save(checkpoint)
            completed.append(location)
            logger.info(
                f"Location '{location}' completed: {len(found)} developers with "
                f">= {self.settings.min_followers} followers"
            )

        checkpoint = checkpoint.mark_finished(work_items).with_requests(
            governor.requests_made
        )
        self.checkpoints.save(checkpoint)

        status = CrawlStatus.DONE if checkpoint.is_completed else CrawlStatus.IDLE
        if status is CrawlStatus.DONE:
            logger.info(
                f"All locations completed, {checkpoint.total_entities_found} "
                f"developers found in total"
            )
        return self._report(status, checkpoint, work_items, gathered, completed, failed)

    def _crawl_location(self, location: str, found: Dict[int, Developer], seen: Dict[int, int]):
        """
        Search one location and fetch the detail of every candidate.

        Results are requested most-followed first, so the first candidate
        below the follower threshold ends the location. That shortcut is only
        taken while the observed follower hints really are descending.
        """
        min_followers = self.settings.min_followers
        page_size = self.github.per_page
        processed = 0
        trust_order = True
        last_hint: Optional[int] = None

        for page in range(1, self.settings.max_search_pages + 1):
            candidates = self.github.search_by_location(location, page)

            if trust_order:
                trust_order, last_hint = self._hints_descending(candidates, last_hint)
                if not trust_order:
                    logger.warning(
                        f"Search results for '{location}' are not sorted by followers, "
                        f"early exit disabled"
                    )

            for candidate in candidates:
                if processed >= self.settings.max_candidates_per_location:
                    logger.info(
                        f"Reached {processed} candidates for '{location}', stopping"
                    )
                    return
                processed += 1

                if (
                    trust_order
                    and candidate.has_follower_hint
                    and candidate.followers_hint < min_followers
                ):
                    logger.info(
                        f"  {candidate.login}: {candidate.followers_hint} followers "
                        f"(below threshold, remaining candidates skipped)"
                    )
                    return

                followers = seen.get(candidate.developer_id)
                if followers is None:
                    developer = self.github.fetch_detail(candidate.login)
                    followers = developer.followers
                    seen[developer.developer_id] = followers
                    seen[candidate.developer_id] = followers
                    if followers >= min_followers:
                        found[developer.developer_id] = developer
                        logger.info(f"  {developer.login}: {followers} followers (kept)")

                if followers < min_followers:
                    if trust_order:
                        logger.info(
                            f"  {candidate.login}: {followers} followers "
                            f"(below threshold, stopping)"
                        )
                        return
                    continue

            if len(candidates) < page_size:
                return

    @staticmethod
    def _hints_descending(candidates: List[SearchCandidate], last_hint: Optional[int]):
        """Check that positive follower hints never increase, across pages too."""
        for candidate in candidates:
            if not candidate.has_follower_hint:
                continue
            if last_hint is not None and candidate.followers_hint > last_hint:
                return False, last_hint
            last_hint = candidate.followers_hint
        return True, last_hint

    def _persist(self, found: Dict[int, Developer], gathered: List[Developer]):
        if not found:
            return
        self.entities.merge_and_save(list(found.values()))
        gathered.extend(found.values())

    def _report(
        self,
        status: CrawlStatus,
        checkpoint: Checkpoint,
        work_items: List[str],
        gathered: Optional[List[Developer]] = None,
        completed: Optional[List[str]] = None,
        failed: Optional[Dict[str, str]] = None,
    ) -> CrawlReport:
        now = self._now()
        return CrawlReport(
            status=status,
            checkpoint=checkpoint,
            developers=sorted(gathered or [], key=by_followers),
            completed=list(completed or []),
            failed=dict(failed or {}),
            remaining=checkpoint.remaining_items(work_items),
            requests_made=checkpoint.requests_this_run,
            reset_at=checkpoint.rate_limit_reset_at if checkpoint.rate_limit_encountered else None,
            wait=checkpoint.wait_remaining(now),
        )


class EnrichDevelopers:
    """
    Use case for attaching top projects to stored developers.

    Shares the crawl checkpoint so a rate limit hit here also blocks the next
    crawl (and vice versa) until GitHub's window resets.
    """

    def __init__(
        self,
        github_client: GitHubClient,
        checkpoint_store: CheckpointStore,
        entity_store: EntityStore,
        settings: Optional[CrawlerSettings] = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the use case.

        Args:
            github_client: GitHub API client (owns the quota governor)
            checkpoint_store: Shared checkpoint, used for its rate-limit marker
            entity_store: Developer collection to enrich
            settings: Project limits and page sizes
            now: Clock returning an aware UTC datetime
        """
        self.github = github_client
        self.checkpoints = checkpoint_store
        self.entities = entity_store
        self.settings = settings or CrawlerSettings()
        self._now = now

    def execute(
        self,
        limit: Optional[int] = None,
        max_age: Optional[timedelta] = None,
    ) -> CrawlReport:
        """
        Enrich developers that have no project data (or stale data).

        Args:
            limit: Maximum number of developers to process this run
            max_age: Re-enrich developers whose projects are older than this

        Returns:
            CrawlReport; `remaining` lists logins still waiting for enrichment
        """
        governor = self.github.governor
        now = self._now()
        checkpoint = self.checkpoints.load().start_run(now, governor.budget)

        if checkpoint.is_rate_limited(now):
            self.checkpoints.save(checkpoint)
            logger.warning(
                f"GitHub rate limit active, resume in "
                f"{format_wait(checkpoint.wait_remaining(now))}. No requests made."
            )
            return CrawlReport(
                status=CrawlStatus.RATE_LIMITED,
                checkpoint=checkpoint,
                reset_at=checkpoint.rate_limit_reset_at,
                wait=checkpoint.wait_remaining(now),
            )

        self.checkpoints.save(checkpoint)

        targets = [
            d for d in sorted(self.entities.load(), key=by_followers)
            if self._needs_enrichment(d, now, max_age)
        ]
        if limit is not None:
            targets = targets[:limit]
        logger.info(f"{len(targets)} developers to enrich, request budget {governor.budget}")

        enriched: List[Developer] = []
        completed: List[str] = []
        failed: Dict[str, str] = {}
        status = CrawlStatus.DONE

        for developer in targets:
            if governor.exhausted:
                status = CrawlStatus.BUDGET_EXHAUSTED
                break
            try:
                projects = self._collect_projects(developer)
            except PlatformRateLimited as e:
                checkpoint = checkpoint.mark_rate_limited(e.reset_at)
                status = CrawlStatus.RATE_LIMITED
                logger.warning(f"Rate limited while enriching {developer.login}")
                break
            except QuotaExhausted:
                status = CrawlStatus.BUDGET_EXHAUSTED
                break
            except (ItemError, TransientNetworkError) as e:
                failed[developer.login] = str(e)
                logger.error(f"Could not enrich {developer.login}: {e}")
                continue

            updated = replace(developer)
            updated.apply_projects(projects, enriched_at=self._now())
            enriched.append(updated)
            completed.append(developer.login)
            logger.info(
                f"  {developer.login}: {len(projects)} projects, "
                f"{updated.total_stars} stars, {updated.total_forks} forks"
            )

        if enriched:
            self.entities.merge_and_save(enriched)

        checkpoint = checkpoint.with_requests(governor.requests_made)
        self.checkpoints.save(checkpoint)

        if status is CrawlStatus.DONE and failed:
            status = CrawlStatus.IDLE

        done = set(completed)
        return CrawlReport(
            status=status,
            checkpoint=checkpoint,
            developers=enriched,
            completed=completed,
            failed=failed,
            remaining=[d.login for d in targets if d.login not in done],
            requests_made=governor.requests_made,
            reset_at=checkpoint.rate_limit_reset_at if checkpoint.rate_limit_encountered else None,
            wait=checkpoint.wait_remaining(self._now()),
        )

    @staticmethod
    def _needs_enrichment(developer: Developer, now: datetime, max_age: Optional[timedelta]) -> bool:
        if not developer.is_enriched:
            return True
        if max_age is None:
            return False
        return developer.enriched_at is None or now - developer.enriched_at > max_age

    def _collect_projects(self, developer: Developer) -> List[Project]:
        owned = self._owned_projects(developer.login)
        contributed = []
        if not developer.is_organization:
            contributed = self._contributed_projects(developer.login)
        return owned + contributed

    def _owned_projects(self, login: str) -> List[Project]:
        projects = []
        page_size = self.github.page_size("repos")
        for page in range(1, self.settings.max_repo_pages + 1):
            items = self.github.list_sub_resource(login, "repos", page)
            for item in items:
                if not isinstance(item, dict):
                    raise DeserializationError(f"Repository entry for {login} is not an object")
                if item.get("fork") or str(item.get("name", "")).startswith("."):
                    continue
                project = Project.from_api(item, is_owner=True)
                if project.impact > 0:
                    projects.append(project)
            if len(items) < page_size:
                break

        projects.sort(key=lambda p: p.impact, reverse=True)
        return projects[:self.settings.top_owned_projects]

    def _contributed_projects(self, login: str) -> List[Project]:
        orgs = self.github.list_sub_resource(login, "orgs", 1)
        projects = []

        for org in orgs[:self.settings.max_orgs]:
            org_login = org.get("login") if isinstance(org, dict) else None
            if not isinstance(org_login, str) or not org_login:
                raise DeserializationError(f"Organization entry for {login} has no login")

            repos = self.github.list_sub_resource(org_login, "repos", 1)
            candidates = [
                Project.from_api(repo, is_owner=False, organization=org_login)
                for repo in repos
                if isinstance(repo, dict) and not repo.get("fork")
            ]
            candidates.sort(key=lambda p: p.impact, reverse=True)

            for project in candidates[:self.settings.org_repos_per_org]:
                try:
                    contributors = self.github.list_sub_resource(
                        project.full_name, "contributors", 1
                    )
                except ContributorListTooLarge:
                    logger.info(f"Skipping {project.full_name}: contributor list too large")
                    continue

                rank = self._contributor_rank(contributors, login)
                if rank is not None:
                    projects.append(replace(project, contributor_rank=rank))

        projects.sort(key=lambda p: p.impact, reverse=True)
        return projects[:self.settings.top_contributed_projects]

    def _contributor_rank(self, contributors: List[dict], login: str) -> Optional[int]:
        window = contributors[:self.settings.top_contributors]
        for position, contributor in enumerate(window, 1):
            if not isinstance(contributor, dict):
                continue
            name = contributor.get("login")
            if isinstance(name, str) and name.lower() == login.lower():
                return position
        return None


class GetDeveloperStatistics:
    """
    Use case for summarizing the stored developer collection.
    """

    def __init__(self, entity_store: EntityStore):
        """
        Initialize the use case.

        Args:
            entity_store: Developer collection
        """
        self.entities = entity_store

    def execute(self, top: int = 10) -> dict:
        """
        Get developer statistics.

        Returns:
            Dictionary with statistics
        """
        developers = self.entities.load()
        organizations = [d for d in developers if d.is_organization]

        locations = Counter()
        display = {}
        for developer in developers:
            if not developer.location:
                continue
            key = developer.location.strip().lower()
            display.setdefault(key, developer.location.strip())
            locations[key] += 1

        languages = Counter(
            project.language
            for developer in developers
            for project in (developer.projects or [])
            if project.language
        )

        ranked = sorted(developers, key=by_score)[:top]

        stats = {
            "total_developers": len(developers) - len(organizations),
            "total_organizations": len(organizations),
            "total_followers": sum(d.followers for d in developers),
            "total_public_repos": sum(d.public_repos for d in developers),
            "total_stars": sum(d.total_stars for d in developers),
            "total_forks": sum(d.total_forks for d in developers),
            "enriched": sum(1 for d in developers if d.is_enriched),
            "location_distribution": {
                display[key]: count for key, count in locations.most_common()
            },
            "language_distribution": dict(languages.most_common()),
            f"top_{top}_by_score": [
                {
                    "login": d.login,
                    "name": d.name or d.login,
                    "followers": d.followers,
                    "stars": d.total_stars,
                    "forks": d.total_forks,
                    "score": d.score,
                }
                for d in ranked
            ],
        }

        return stats


class SyncDevelopersToDatabase:
    """
    Use case for mirroring the developer collection into PostgreSQL.
    """

    def __init__(self, entity_store: EntityStore, db_client: DatabaseClient):
        self.entities = entity_store
        self.db = db_client

    def execute(self) -> int:
        developers = self.entities.load()
        logger.info(f"Syncing {len(developers)} developers to the database")
        return self.db.upsert_developers(developers)


class ExportDeveloperData:
    """
    Use case for exporting developer data.
    """

    def __init__(self, db_client: DatabaseClient):
        """
        Initialize the use case.

        Args:
            db_client: Database client
        """
        self.db = db_client

    def execute(self, output_path: str = "developers.csv"):
        """
        Export developer data to CSV.

        Args:
            output_path: Path to output file
        """
        logger.info(f"Exporting data to {output_path}")
        self.db.export_to_csv(output_path)
        logger.info("Export completed")
