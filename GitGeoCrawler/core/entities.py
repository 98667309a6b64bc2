"""
Core domain entities for GitGeoCrawler.
These represent the business objects in our system.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from core.errors import DeserializationError


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse GitHub/ISO-8601 timestamps ("2011-01-25T18:44:36Z")."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Expected timestamp string, got {type(value).__name__}")
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def format_wait(wait: timedelta) -> str:
    """Human readable wait estimate, rounded up to whole minutes."""
    minutes = max(0, math.ceil(wait.total_seconds() / 60))
    if minutes < 1:
        return "less than a minute"
    hours, minutes = divmod(minutes, 60)
    parts = []
    if hours:
        parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
    if minutes:
        parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")
    return " ".join(parts)


def _require_int(payload: Mapping[str, Any], key: str, default: Optional[int] = None) -> int:
    value = payload.get(key, default)
    if value is None and default is not None:
        return default
    # bool is an int subclass; GitHub never sends booleans for counters
    if not isinstance(value, int) or isinstance(value, bool):
        raise DeserializationError(f"Field '{key}' must be an integer, got {value!r}")
    return value


def _optional_str(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise DeserializationError(f"Field '{key}' must be a string, got {value!r}")
    return value


@dataclass(frozen=True)
class Project:
    """
    A repository associated with a developer, either owned or contributed to.
    Superseded wholesale on re-enrichment.
    """
    name: str
    full_name: str
    stars: int = 0
    forks: int = 0
    description: Optional[str] = None
    language: Optional[str] = None
    is_owner: bool = True
    organization: Optional[str] = None
    contributor_rank: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def impact(self) -> int:
        return self.stars + self.forks

    @classmethod
    def from_api(
        cls,
        payload: Mapping[str, Any],
        is_owner: bool = True,
        organization: Optional[str] = None,
        contributor_rank: Optional[int] = None,
    ) -> "Project":
        """Decode a repository object from the REST API."""
        if not isinstance(payload, Mapping):
            raise DeserializationError(f"Repository payload must be an object, got {payload!r}")
        name = _optional_str(payload, "name")
        full_name = _optional_str(payload, "full_name")
        if not name or not full_name:
            raise DeserializationError("Repository payload is missing name/full_name")
        try:
            created_at = parse_timestamp(payload.get("created_at"))
            updated_at = parse_timestamp(payload.get("updated_at"))
        except ValueError as e:
            raise DeserializationError(str(e)) from e
        return cls(
            name=name,
            full_name=full_name,
            stars=_require_int(payload, "stargazers_count", 0),
            forks=_require_int(payload, "forks_count", 0),
            description=_optional_str(payload, "description"),
            language=_optional_str(payload, "language"),
            is_owner=is_owner,
            organization=organization,
            contributor_rank=contributor_rank,
            created_at=created_at,
            updated_at=updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "fullName": self.full_name,
            "description": self.description,
            "stars": self.stars,
            "forks": self.forks,
            "language": self.language,
            "isOwner": self.is_owner,
            "organization": self.organization,
            "contributorRank": self.contributor_rank,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Project":
        return cls(
            name=data["name"],
            full_name=data["fullName"],
            description=data.get("description"),
            stars=data.get("stars", 0),
            forks=data.get("forks", 0),
            language=data.get("language"),
            is_owner=data.get("isOwner", True),
            organization=data.get("organization"),
            contributor_rank=data.get("contributorRank"),
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )


@dataclass(frozen=True)
class SearchCandidate:
    """
    One row of a user search page.

    Search rows are not authoritative: follower counts are usually absent or
    zeroed, so the detail endpoint must be queried for every candidate.
    """
    developer_id: int
    login: str
    type: str = "User"
    followers_hint: Optional[int] = None

    @property
    def has_follower_hint(self) -> bool:
        # zero is what the search endpoint sends as a placeholder
        return self.followers_hint is not None and self.followers_hint > 0

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "SearchCandidate":
        if not isinstance(payload, Mapping):
            raise DeserializationError(f"Search item must be an object, got {payload!r}")
        login = _optional_str(payload, "login")
        if not login:
            raise DeserializationError("Search item is missing 'login'")
        followers = payload.get("followers")
        if followers is not None and (not isinstance(followers, int) or isinstance(followers, bool)):
            raise DeserializationError(f"Field 'followers' must be an integer, got {followers!r}")
        return cls(
            developer_id=_require_int(payload, "id"),
            login=login,
            type=_optional_str(payload, "type") or "User",
            followers_hint=followers,
        )


@dataclass
class Developer:
    """
    Developer (or organization) entity. Identity is the numeric GitHub id;
    the login may change over time.
    """
    developer_id: int
    login: str
    type: str = "User"
    name: Optional[str] = None
    followers: int = 0
    following: int = 0
    public_repos: int = 0
    location: Optional[str] = None
    company: Optional[str] = None
    blog: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    html_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_fetched: Optional[datetime] = None
    # None means "never enriched", [] means "enriched, nothing notable"
    projects: Optional[List[Project]] = None
    enriched_at: Optional[datetime] = None
    total_stars: int = 0
    total_forks: int = 0
    score: float = 0.0

    def __post_init__(self):
        """Validate developer data."""
        if self.developer_id <= 0:
            raise ValueError("developer_id must be positive")
        if not self.login:
            raise ValueError("login is required")
        if self.followers < 0 or self.following < 0 or self.public_repos < 0:
            raise ValueError("counts cannot be negative")

    @property
    def is_organization(self) -> bool:
        return self.type == "Organization"

    @property
    def is_enriched(self) -> bool:
        return self.projects is not None

    def _profile(self) -> Tuple:
        return (
            self.followers,
            self.following,
            self.public_repos,
            self.location,
            self.company,
            self.bio,
            self.blog,
            self.name,
        )

    def has_changed_from(self, other: "Developer") -> bool:
        """True if a tracked profile attribute differs; timestamps are ignored."""
        return self._profile() != other._profile()

    def apply_projects(self, projects: List[Project], enriched_at: Optional[datetime] = None):
        """Replace the derived project data and recompute the influence score."""
        self.projects = list(projects)
        self.enriched_at = enriched_at
        self.total_stars = sum(p.stars for p in self.projects)
        self.total_forks = sum(p.forks for p in self.projects)
        self.recompute_score()

    def recompute_score(self):
        self.score = float(self.followers + self.total_stars + self.total_forks)

    @classmethod
    def from_api(cls, payload: Mapping[str, Any], fetched_at: Optional[datetime] = None) -> "Developer":
        """
        Decode a /users/{login} response.

        Raises:
            DeserializationError: If identity fields are missing or ill-typed
        """
        if not isinstance(payload, Mapping):
            raise DeserializationError(f"User payload must be an object, got {payload!r}")
        login = _optional_str(payload, "login")
        if not login:
            raise DeserializationError("User payload is missing 'login'")
        developer_id = _require_int(payload, "id")
        if developer_id <= 0:
            raise DeserializationError(f"User payload has invalid id {developer_id}")
        try:
            created_at = parse_timestamp(payload.get("created_at"))
            updated_at = parse_timestamp(payload.get("updated_at"))
        except ValueError as e:
            raise DeserializationError(str(e)) from e

        try:
            developer = cls(
                developer_id=developer_id,
                login=login,
                type=_optional_str(payload, "type") or "User",
                name=_optional_str(payload, "name"),
                followers=_require_int(payload, "followers", 0),
                following=_require_int(payload, "following", 0),
                public_repos=_require_int(payload, "public_repos", 0),
                location=_optional_str(payload, "location"),
                company=_optional_str(payload, "company"),
                blog=_optional_str(payload, "blog"),
                bio=_optional_str(payload, "bio"),
                avatar_url=_optional_str(payload, "avatar_url"),
                html_url=_optional_str(payload, "html_url"),
                created_at=created_at,
                updated_at=updated_at,
                last_fetched=fetched_at,
            )
        except ValueError as e:
            raise DeserializationError(f"User payload for {login} is invalid: {e}") from e
        developer.recompute_score()
        return developer

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.developer_id,
            "login": self.login,
            "type": self.type,
            "name": self.name,
            "followers": self.followers,
            "following": self.following,
            "publicRepos": self.public_repos,
            "location": self.location,
            "company": self.company,
            "blog": self.blog,
            "bio": self.bio,
            "avatarUrl": self.avatar_url,
            "htmlUrl": self.html_url,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "lastFetched": format_timestamp(self.last_fetched),
            "projects": (
                [p.to_dict() for p in self.projects]
                if self.projects is not None
                else None
            ),
            "enrichedAt": format_timestamp(self.enriched_at),
            "totalStars": self.total_stars,
            "totalForks": self.total_forks,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Developer":
        projects = data.get("projects")
        return cls(
            developer_id=data["id"],
            login=data["login"],
            type=data.get("type", "User"),
            name=data.get("name"),
            followers=data.get("followers", 0),
            following=data.get("following", 0),
            public_repos=data.get("publicRepos", 0),
            location=data.get("location"),
            company=data.get("company"),
            blog=data.get("blog"),
            bio=data.get("bio"),
            avatar_url=data.get("avatarUrl"),
            html_url=data.get("htmlUrl"),
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
            last_fetched=parse_timestamp(data.get("lastFetched")),
            projects=(
                [Project.from_dict(p) for p in projects]
                if projects is not None
                else None
            ),
            enriched_at=parse_timestamp(data.get("enrichedAt")),
            total_stars=data.get("totalStars", 0),
            total_forks=data.get("totalForks", 0),
            score=data.get("score", 0.0),
        )


@dataclass(frozen=True)
class Checkpoint:
    """
    Durable progress record for one crawl lineage.

    Every transition returns a new Checkpoint; callers decide when to save.
    """
    last_run_time: Optional[datetime] = None
    completed_work_items: Tuple[str, ...] = ()
    failed_work_items: Mapping[str, str] = field(default_factory=dict)
    total_entities_found: int = 0
    is_completed: bool = False
    rate_limit_encountered: bool = False
    rate_limit_reset_at: Optional[datetime] = None
    requests_this_run: int = 0
    request_budget_per_run: int = 50
    last_error: Optional[str] = None

    def start_run(self, now: datetime, budget: int) -> "Checkpoint":
        """Reset per-run counters and drop an expired rate-limit marker."""
        state = replace(
            self,
            last_run_time=now,
            requests_this_run=0,
            request_budget_per_run=budget,
        )
        if state.rate_limit_encountered and not state.is_rate_limited(now):
            state = state.clear_rate_limit()
        return state

    def is_rate_limited(self, now: datetime) -> bool:
        if not self.rate_limit_encountered:
            return False
        if self.rate_limit_reset_at is None:
            return False
        return now < self.rate_limit_reset_at

    def wait_remaining(self, now: datetime) -> timedelta:
        if not self.is_rate_limited(now):
            return timedelta(0)
        return self.rate_limit_reset_at - now

    def remaining_items(self, work_items: List[str]) -> List[str]:
        """Pending work items, in the caller's canonical order."""
        done = set(self.completed_work_items)
        return [item for item in work_items if item not in done]

    def mark_completed(self, item: str, entities_found: int) -> "Checkpoint":
        failed = {k: v for k, v in self.failed_work_items.items() if k != item}
        if item in self.completed_work_items:
            return replace(self, failed_work_items=failed)
        return replace(
            self,
            completed_work_items=self.completed_work_items + (item,),
            failed_work_items=failed,
            total_entities_found=self.total_entities_found + entities_found,
        )

    def mark_failed(self, item: str, error: str) -> "Checkpoint":
        failed = dict(self.failed_work_items)
        failed[item] = error
        return replace(self, failed_work_items=failed, last_error=f"{item}: {error}")

    def mark_rate_limited(self, reset_at: datetime) -> "Checkpoint":
        return replace(
            self,
            rate_limit_encountered=True,
            rate_limit_reset_at=reset_at,
            last_error="GitHub API rate limit exceeded",
        )

    def clear_rate_limit(self) -> "Checkpoint":
        return replace(self, rate_limit_encountered=False, rate_limit_reset_at=None)

    def with_requests(self, requests_this_run: int) -> "Checkpoint":
        return replace(self, requests_this_run=requests_this_run)

    def with_completion(self, work_items: List[str]) -> "Checkpoint":
        """Recompute is_completed against the current work-item list."""
        return replace(self, is_completed=not self.remaining_items(work_items))

    def mark_finished(self, work_items: List[str]) -> "Checkpoint":
        """Set is_completed from the current work-item list."""
        if self.remaining_items(work_items):
            return replace(self, is_completed=False)
        return replace(self.clear_rate_limit(), is_completed=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastRunTime": format_timestamp(self.last_run_time),
            "completedWorkItems": list(self.completed_work_items),
            "failedWorkItems": dict(self.failed_work_items),
            "totalEntitiesFound": self.total_entities_found,
            "isCompleted": self.is_completed,
            "rateLimitEncountered": self.rate_limit_encountered,
            "rateLimitResetAt": format_timestamp(self.rate_limit_reset_at),
            "requestsThisRun": self.requests_this_run,
            "requestBudgetPerRun": self.request_budget_per_run,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Checkpoint":
        completed = []
        for item in data.get("completedWorkItems", []):
            if item not in completed:
                completed.append(item)
        return cls(
            last_run_time=parse_timestamp(data.get("lastRunTime")),
            completed_work_items=tuple(completed),
            failed_work_items=dict(data.get("failedWorkItems", {})),
            total_entities_found=data.get("totalEntitiesFound", 0),
            is_completed=data.get("isCompleted", False),
            rate_limit_encountered=data.get("rateLimitEncountered", False),
            rate_limit_reset_at=parse_timestamp(data.get("rateLimitResetAt")),
            requests_this_run=data.get("requestsThisRun", 0),
            request_budget_per_run=data.get("requestBudgetPerRun", 50),
            last_error=data.get("lastError"),
        )


class CrawlStatus(Enum):
    """Terminal state of one invocation."""
    DONE = "done"
    IDLE = "idle"
    BUDGET_EXHAUSTED = "budget_exhausted"
    RATE_LIMITED = "rate_limited"


@dataclass
class CrawlReport:
    """
    Result of a crawl (or enrichment) invocation.
    """
    status: CrawlStatus
    checkpoint: Checkpoint
    developers: List[Developer] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    remaining: List[str] = field(default_factory=list)
    requests_made: int = 0
    reset_at: Optional[datetime] = None
    wait: timedelta = timedelta(0)

    @property
    def message(self) -> str:
        if self.status is CrawlStatus.RATE_LIMITED:
            return f"GitHub rate limit reached, resume in {format_wait(self.wait)}"
        if self.status is CrawlStatus.BUDGET_EXHAUSTED:
            return (
                f"Request budget of {self.checkpoint.request_budget_per_run} "
                f"exhausted, re-run to continue"
            )
        if self.status is CrawlStatus.DONE:
            return "All work items completed"
        return f"{len(self.remaining)} work items remaining"


@dataclass
class MergeResult:
    """Outcome of merging fetched developers into the result store."""
    developers: List[Developer]
    inserted: int = 0
    updated: int = 0
