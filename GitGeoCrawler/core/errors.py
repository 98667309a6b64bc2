"""
Exception taxonomy for GitGeoCrawler.

Only PersistenceError is allowed to escape a use case; everything else is
turned into checkpoint state by the crawl orchestrator.
"""

from datetime import datetime


class GitGeoError(Exception):
    """Base class for crawler errors."""


class TransientNetworkError(GitGeoError):
    """Connection reset, timeout or 5xx response. Safe to retry."""


class ItemError(GitGeoError):
    """A work item (or enrichment target) failed; the run continues."""


class DeserializationError(ItemError):
    """A response body did not match the expected schema."""


class ContributorListTooLarge(GitGeoError):
    """GitHub refuses to list contributors for very large repositories."""

    def __init__(self, repository: str):
        self.repository = repository
        super().__init__(f"Contributor list too large for {repository}")


class PlatformRateLimited(GitGeoError):
    """GitHub rejected a request because its rate limit is exhausted."""

    def __init__(self, reset_at: datetime):
        self.reset_at = reset_at
        super().__init__(f"Rate limit exceeded. Resets at {reset_at}")


class QuotaExhausted(GitGeoError):
    """The per-run request budget has been spent."""

    def __init__(self, budget: int):
        self.budget = budget
        super().__init__(f"Request budget of {budget} calls reached for this run")


class PersistenceError(GitGeoError):
    """Checkpoint or result file could not be read or durably written."""
