"""
Shared fixtures: a fake requests session serving canned GitHub responses.
"""

import json
from datetime import datetime, timezone

import pytest
from requests.structures import CaseInsensitiveDict

from infrastructure.checkpoint_store import CheckpointStore
from infrastructure.config import CrawlerSettings
from infrastructure.entity_store import EntityStore
from infrastructure.github_client import GitHubClient
from infrastructure.rate_limit_sentinel import RateLimitSentinel
from infrastructure.retry_utils import QuotaGovernor, RequestPacer

API_ROOT = "https://api.github.test"
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None, headers=None):
        self.status_code = status_code
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode("utf-8")
        self.headers = CaseInsensitiveDict(headers or {})

    def json(self):
        return json.loads(self.text)


def json_response(payload, status=200, headers=None):
    return FakeResponse(status_code=status, payload=payload, headers=headers)


def rate_limited(reset_at: datetime, status=403):
    return FakeResponse(
        status_code=status,
        payload={"message": "API rate limit exceeded"},
        headers={
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(int(reset_at.timestamp())),
        },
    )


def user_payload(login, user_id, followers, **extra):
    payload = {
        "login": login,
        "id": user_id,
        "type": "User",
        "name": login.capitalize(),
        "followers": followers,
        "following": 1,
        "public_repos": 3,
        "location": "Taiwan",
        "company": None,
        "blog": "",
        "bio": None,
        "html_url": f"https://github.com/{login}",
        "created_at": "2015-01-01T00:00:00Z",
        "updated_at": "2026-01-01T00:00:00Z",
    }
    payload.update(extra)
    return payload


def search_payload(*items):
    """Items are (login, id) or (login, id, followers_hint)."""
    rows = []
    for item in items:
        row = {"login": item[0], "id": item[1], "type": "User"}
        if len(item) > 2:
            row["followers"] = item[2]
        rows.append(row)
    return {"total_count": len(rows), "incomplete_results": False, "items": rows}


def repo_payload(name, owner, stars, forks=0, **extra):
    payload = {
        "name": name,
        "full_name": f"{owner}/{name}",
        "description": None,
        "stargazers_count": stars,
        "forks_count": forks,
        "language": "Python",
        "fork": False,
        "created_at": "2020-01-01T00:00:00Z",
        "updated_at": "2026-01-01T00:00:00Z",
    }
    payload.update(extra)
    return payload


class FakeSession:
    """
    Routes GET requests by (path, page). The last queued response for a
    route is sticky; exceptions in the queue are raised.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.closed = False

    def add(self, path, response, page=None):
        self.routes.setdefault((path, page), []).append(response)
        return self

    def get(self, url, params=None, headers=None, timeout=None):
        assert url.startswith(API_ROOT)
        path = url[len(API_ROOT):]
        params = dict(params or {})
        self.calls.append((path, params))

        for key in ((path, params.get("page")), (path, None)):
            queue = self.routes.get(key)
            if queue:
                response = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(response, Exception):
                    raise response
                return response
        return json_response({"message": "Not Found"}, status=404)

    def paths(self):
        return [path for path, _ in self.calls]

    def close(self):
        self.closed = True


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def make_client(session):
    def _make(budget=50, token="test-token", **kwargs):
        return GitHubClient(
            governor=QuotaGovernor(budget),
            token=token,
            session=session,
            sentinel=RateLimitSentinel(now=lambda: NOW),
            pacer=RequestPacer(delay=0),
            api_root=API_ROOT,
            now=lambda: NOW,
            **kwargs,
        )
    return _make


@pytest.fixture
def settings(tmp_path):
    return CrawlerSettings(
        locations=["Taipei", "Kaohsiung"],
        request_delay=0,
        checkpoint_path=tmp_path / "run_progress.json",
        results_path=tmp_path / "developers.json",
    )


@pytest.fixture
def checkpoint_store(settings):
    return CheckpointStore(settings.checkpoint_path)


@pytest.fixture
def entity_store(settings):
    return EntityStore(settings.results_path)
