"""
Classification of GitHub responses into ok / skip / rate-limited / error.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Mapping, Optional

logger = logging.getLogger(__name__)

CONTRIBUTOR_LIST_TOO_LARGE_PHRASES = (
    "too large to list contributors",
    "contributor list is too large",
)


class Verdict(Enum):
    OK = "ok"
    CONTRIBUTOR_LIST_TOO_LARGE = "contributor_list_too_large"
    PLATFORM_RATE_LIMITED = "platform_rate_limited"
    OTHER_ERROR = "other_error"


@dataclass(frozen=True)
class SentinelVerdict:
    kind: Verdict
    reset_at: Optional[datetime] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind is Verdict.OK


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    # requests' CaseInsensitiveDict handles case itself; plain dicts in tests may not
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def parse_remaining(headers: Mapping[str, str]) -> Optional[int]:
    value = _header(headers, "X-RateLimit-Remaining")
    try:
        return int(value) if value is not None else None
    except ValueError:
        logger.warning(f"Ignoring malformed X-RateLimit-Remaining header: {value!r}")
        return None


def parse_reset(headers: Mapping[str, str]) -> Optional[datetime]:
    """Parse X-RateLimit-Reset (Unix seconds) into an aware UTC datetime."""
    value = _header(headers, "X-RateLimit-Reset")
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        logger.warning(f"Ignoring malformed X-RateLimit-Reset header: {value!r}")
        return None


class RateLimitSentinel:
    """
    Inspects every response before the caller touches the payload.
    """

    def __init__(
        self,
        default_backoff: timedelta = timedelta(hours=1),
        now: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            default_backoff: Wait assumed when a rate-limit response carries no reset time
            now: Clock returning an aware UTC datetime (injectable for tests)
        """
        self.default_backoff = default_backoff
        self._now = now or (lambda: datetime.now(timezone.utc))

    def classify(
        self,
        status_code: int,
        headers: Mapping[str, str],
        body: str = "",
    ) -> SentinelVerdict:
        if 200 <= status_code < 300:
            return SentinelVerdict(Verdict.OK)

        lowered = (body or "").lower()

        if status_code == 403 and any(
            phrase in lowered for phrase in CONTRIBUTOR_LIST_TOO_LARGE_PHRASES
        ):
            return SentinelVerdict(
                Verdict.CONTRIBUTOR_LIST_TOO_LARGE,
                message="Contributor list too large to list via the API",
            )

        if status_code in (403, 429):
            return SentinelVerdict(
                Verdict.PLATFORM_RATE_LIMITED,
                reset_at=self._reset_time(headers),
                message=f"HTTP {status_code}: rate limit exceeded",
            )

        if status_code == 401:
            return SentinelVerdict(
                Verdict.OTHER_ERROR,
                message=(
                    "HTTP 401: GitHub token rejected. Check that it is valid, "
                    "not expired and has public_repo scope"
                ),
            )

        snippet = (body or "").strip().replace("\n", " ")[:200]
        return SentinelVerdict(
            Verdict.OTHER_ERROR,
            message=f"HTTP {status_code}: {snippet}" if snippet else f"HTTP {status_code}",
        )

    def _reset_time(self, headers: Mapping[str, str]) -> datetime:
        reset_at = parse_reset(headers)
        if reset_at is not None:
            return reset_at

        retry_after = _header(headers, "Retry-After")
        if retry_after is not None:
            try:
                return self._now() + timedelta(seconds=int(retry_after))
            except ValueError:
                logger.warning(f"Ignoring malformed Retry-After header: {retry_after!r}")

        return self._now() + self.default_backoff
