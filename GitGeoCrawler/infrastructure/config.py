"""
Crawler settings and credential loading.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

# Minimum followers a developer needs to be kept in the result set
DEFAULT_MIN_FOLLOWERS = 10

# Conservative per-run ceiling, leaves headroom for other users of the token
DEFAULT_REQUEST_BUDGET = 50

# Projects kept per developer, ranked by stars + forks
TOP_OWNED_PROJECTS = 5
TOP_CONTRIBUTED_PROJECTS = 5

# Top-N contributor window used to attribute contributed projects
TOP_CONTRIBUTORS = 5

DEFAULT_LOCATIONS = [
    "Taiwan",
    "Taipei",
    "New Taipei",
    "Taoyuan",
    "Taichung",
    "Tainan",
    "Kaohsiung",
    "Hsinchu",
    "Keelung",
    "Chiayi",
    "Changhua",
    "Yunlin",
    "Nantou",
    "Pingtung",
    "Yilan",
    "Hualien",
    "Taitung",
    "Penghu",
    "Kinmen",
    "Matsu",
]


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


@dataclass
class CrawlerSettings:
    """
    Tunables for crawl and enrichment runs.
    """
    locations: List[str] = field(default_factory=lambda: list(DEFAULT_LOCATIONS))
    request_budget: int = DEFAULT_REQUEST_BUDGET
    min_followers: int = DEFAULT_MIN_FOLLOWERS
    request_delay: float = 0.5
    search_page_size: int = 100
    max_search_pages: int = 10  # GitHub search stops at 1000 results
    max_candidates_per_location: int = 30
    max_repo_pages: int = 3
    max_orgs: int = 5
    org_repos_per_org: int = 10
    top_owned_projects: int = TOP_OWNED_PROJECTS
    top_contributed_projects: int = TOP_CONTRIBUTED_PROJECTS
    top_contributors: int = TOP_CONTRIBUTORS
    checkpoint_path: Path = Path("run_progress.json")
    results_path: Path = Path("developers.json")
    api_root: str = "https://api.github.com"

    @classmethod
    def from_env(cls) -> "CrawlerSettings":
        """Build settings, allowing GITGEO_* environment variable overrides."""
        settings = cls()
        locations = os.environ.get("GITGEO_LOCATIONS")
        if locations:
            settings.locations = [loc.strip() for loc in locations.split(",") if loc.strip()]
        settings.request_budget = _env_int("GITGEO_REQUEST_BUDGET", settings.request_budget)
        settings.min_followers = _env_int("GITGEO_MIN_FOLLOWERS", settings.min_followers)
        settings.request_delay = _env_float("GITGEO_REQUEST_DELAY", settings.request_delay)
        settings.max_candidates_per_location = _env_int(
            "GITGEO_MAX_CANDIDATES", settings.max_candidates_per_location
        )
        settings.checkpoint_path = Path(
            os.environ.get("GITGEO_CHECKPOINT", settings.checkpoint_path)
        )
        settings.results_path = Path(
            os.environ.get("GITGEO_RESULTS", settings.results_path)
        )
        settings.api_root = os.environ.get("GITHUB_API_URL", settings.api_root)
        return settings


def load_token(token_file: Optional[str] = None) -> Optional[str]:
    """
    Read the GitHub token from GITHUB_TOKEN, falling back to a token file.

    Returns None (unauthenticated mode) when neither is available.
    """
    token = os.environ.get("GITHUB_TOKEN")
    if token and token.strip():
        return token.strip()

    path = Path(
        token_file
        or os.environ.get("GITHUB_TOKEN_FILE")
        or Path.home() / ".github_token"
    ).expanduser()
    try:
        token = path.read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.warning(f"Could not read GitHub token from {path}: {e}")
        return None

    if not token:
        logger.warning(f"GitHub token file {path} is empty")
        return None

    logger.info(f"GitHub token loaded from {path}")
    return token
