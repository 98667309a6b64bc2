"""
GitHub REST API client with per-run quota, rate-limit detection and pagination.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from core.entities import Developer, SearchCandidate
from core.errors import (
    ContributorListTooLarge,
    DeserializationError,
    ItemError,
    PlatformRateLimited,
    QuotaExhausted,
    TransientNetworkError,
)
from infrastructure.rate_limit_sentinel import (
    RateLimitSentinel,
    Verdict,
    parse_remaining,
    parse_reset,
)
from infrastructure.retry_utils import (
    exponential_backoff,
    QuotaGovernor,
    RequestPacer,
)

logger = logging.getLogger(__name__)


class GitHubClient:
    """
    Client for the three lookups the crawl needs: user search by location,
    single user detail and paged sub-resource listings.

    Every physical request is gated by the QuotaGovernor and classified by the
    RateLimitSentinel before its payload is decoded.
    """

    API_ROOT = "https://api.github.com"

    SUB_RESOURCES = {
        "repos": "/users/{owner}/repos",
        "orgs": "/users/{owner}/orgs",
        "contributors": "/repos/{owner}/contributors",
    }

    def __init__(
        self,
        governor: QuotaGovernor,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        sentinel: Optional[RateLimitSentinel] = None,
        pacer: Optional[RequestPacer] = None,
        api_root: str = API_ROOT,
        per_page: int = 100,
        contributors_per_page: int = 5,
        timeout: float = 30,
        now: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize GitHub client.

        Args:
            governor: Per-run request budget shared by every call
            token: GitHub personal access token; None runs unauthenticated
            session: HTTP session (injectable for tests)
            sentinel: Response classifier
            pacer: Spacing between consecutive requests
            api_root: Base URL of the REST API
            per_page: Page size for search, repos and orgs listings (max 100)
            contributors_per_page: Page size for contributor listings
            timeout: Per-request timeout in seconds
            now: Clock returning an aware UTC datetime
        """
        self.governor = governor
        self.session = session or requests.Session()
        self.sentinel = sentinel or RateLimitSentinel()
        self.pacer = pacer or RequestPacer()
        self.api_root = api_root.rstrip("/")
        self.per_page = min(per_page, 100)  # GitHub max is 100
        self.contributors_per_page = contributors_per_page
        self.timeout = timeout
        self._now = now or (lambda: datetime.now(timezone.utc))

        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "GitGeoCrawler",
        }
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        else:
            logger.warning(
                "No GitHub token configured, running unauthenticated "
                "(much lower rate limit)"
            )

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @exponential_backoff(max_retries=3, base_delay=2.0, max_delay=30.0)
    def _make_request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make one GET request and return the decoded JSON body.

        Raises:
            QuotaExhausted: If the per-run budget denies the call
            PlatformRateLimited: If GitHub rejected the call for rate limiting
            ContributorListTooLarge: If GitHub refuses to list contributors
            TransientNetworkError: For connection problems and 5xx responses
            ItemError: For any other non-success response
            DeserializationError: If the body is not valid JSON
        """
        if not self.governor.try_consume():
            raise QuotaExhausted(self.governor.budget)

        self.pacer.wait()

        url = f"{self.api_root}{path}"
        try:
            response = self.session.get(
                url,
                params=params,
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransientNetworkError(f"GET {path} failed: {e}") from e

        self.pacer.update_from_headers(
            parse_remaining(response.headers),
            parse_reset(response.headers),
        )

        if response.status_code >= 500:
            raise TransientNetworkError(
                f"GET {path} returned HTTP {response.status_code}"
            )

        verdict = self.sentinel.classify(
            response.status_code, response.headers, response.text
        )

        if verdict.kind is Verdict.PLATFORM_RATE_LIMITED:
            logger.warning(f"GET {path} rate limited until {verdict.reset_at}")
            raise PlatformRateLimited(verdict.reset_at)

        if verdict.kind is Verdict.CONTRIBUTOR_LIST_TOO_LARGE:
            raise ContributorListTooLarge(path)

        if verdict.kind is Verdict.OTHER_ERROR:
            logger.error(f"GET {path} failed: {verdict.message}")
            raise ItemError(verdict.message)

        # 204 No Content, e.g. contributors of an empty repository
        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise DeserializationError(f"GET {path} returned invalid JSON: {e}") from e

    def search_by_location(self, location: str, page: int = 1) -> List[SearchCandidate]:
        """
        Fetch one page of users whose profile location matches, most followed first.

        Args:
            location: Location qualifier, e.g. "Taipei" or "New Taipei"
            page: 1-based page number

        Returns:
            Search candidates in the order GitHub returned them
        """
        qualifier = f'"{location}"' if " " in location else location
        params = {
            "q": f"location:{qualifier}",
            "sort": "followers",
            "order": "desc",
            "per_page": self.per_page,
            "page": page,
        }

        logger.info(f"Searching location '{location}' (page {page})")
        data = self._make_request("/search/users", params)

        if not isinstance(data, dict) or not isinstance(data.get("items"), list):
            raise DeserializationError("Search response is missing an 'items' list")
        if data.get("incomplete_results"):
            logger.warning(f"GitHub returned incomplete search results for '{location}'")

        candidates = [SearchCandidate.from_api(item) for item in data["items"]]
        logger.info(
            f"Location '{location}' page {page}: {len(candidates)} candidates "
            f"({data.get('total_count', '?')} total)"
        )
        return candidates

    def fetch_detail(self, login: str) -> Developer:
        """
        Fetch the authoritative profile of a user or organization.

        Args:
            login: GitHub handle

        Returns:
            Developer stamped with last_fetched
        """
        data = self._make_request(f"/users/{login}")
        return Developer.from_api(data, fetched_at=self._now())

    def page_size(self, kind: str) -> int:
        return self.contributors_per_page if kind == "contributors" else self.per_page

    def list_sub_resource(self, owner: str, kind: str, page: int = 1) -> List[Dict[str, Any]]:
        """
        Fetch one page of a sub-resource listing.

        Args:
            owner: Login for "repos"/"orgs", "owner/name" for "contributors"
            kind: One of "repos", "orgs", "contributors"
            page: 1-based page number

        Returns:
            Raw items of the page; fewer than page_size(kind) means last page
        """
        if kind not in self.SUB_RESOURCES:
            raise ValueError(f"Unknown sub-resource kind: {kind}")

        params = {"per_page": self.page_size(kind), "page": page}
        if kind == "repos":
            params["type"] = "owner"

        data = self._make_request(self.SUB_RESOURCES[kind].format(owner=owner), params)

        if data is None:
            return []
        if not isinstance(data, list):
            raise DeserializationError(f"{kind} listing for {owner} is not a list")
        return data
