"""
Tests for the location crawl orchestration.
"""

import pytest
import requests
from datetime import timedelta
from unittest.mock import patch

from core.entities import Checkpoint, CrawlStatus, Developer
from core.errors import DeserializationError
from core.use_cases import CrawlLocations

from conftest import (
    NOW,
    json_response,
    rate_limited,
    search_payload,
    user_payload,
)


class TestDeveloper:
    """Test Developer entity."""

    def test_valid_developer(self):
        """Test creating a valid developer."""
        dev = Developer(developer_id=12345, login="octocat", followers=100)

        assert dev.developer_id == 12345
        assert dev.login == "octocat"
        assert dev.is_enriched is False

    def test_invalid_developer_id(self):
        """Test that invalid developer_id raises error."""
        with pytest.raises(ValueError, match="developer_id must be positive"):
            Developer(developer_id=-1, login="octocat")

    def test_negative_followers(self):
        """Test that negative counts raise error."""
        with pytest.raises(ValueError, match="counts cannot be negative"):
            Developer(developer_id=1, login="octocat", followers=-10)

    def test_empty_login(self):
        """Test that empty login raises error."""
        with pytest.raises(ValueError, match="login is required"):
            Developer(developer_id=1, login="")

    def test_from_api_rejects_negative_counts(self):
        """A malformed payload is a decoding error, not a crash."""
        payload = user_payload("a", 1, 50, public_repos=-1)

        with pytest.raises(DeserializationError, match="counts cannot be negative"):
            Developer.from_api(payload, fetched_at=NOW)

    def test_timestamp_refresh_is_not_a_change(self):
        """Only tracked profile fields count as a change."""
        old = Developer(developer_id=1, login="a", followers=10, last_fetched=NOW)
        new = Developer(
            developer_id=1, login="a", followers=10,
            last_fetched=NOW + timedelta(days=1),
        )
        assert new.has_changed_from(old) is False

        moved = Developer(developer_id=1, login="a", followers=10, location="Tainan")
        assert moved.has_changed_from(old) is True


class TestCheckpoint:
    """Test Checkpoint transitions."""

    def test_start_run_resets_counter_and_clears_expired_rate_limit(self):
        cp = Checkpoint(
            requests_this_run=42,
            rate_limit_encountered=True,
            rate_limit_reset_at=NOW - timedelta(minutes=1),
        )
        started = cp.start_run(NOW, budget=20)

        assert started.requests_this_run == 0
        assert started.request_budget_per_run == 20
        assert started.rate_limit_encountered is False
        assert started.rate_limit_reset_at is None
        assert started.last_run_time == NOW

    def test_start_run_keeps_active_rate_limit(self):
        reset_at = NOW + timedelta(minutes=5)
        cp = Checkpoint(rate_limit_encountered=True, rate_limit_reset_at=reset_at)
        started = cp.start_run(NOW, budget=20)

        assert started.is_rate_limited(NOW)
        assert started.wait_remaining(NOW) == timedelta(minutes=5)

    def test_completion_clears_failure_and_counts_once(self):
        cp = Checkpoint().mark_failed("Taipei", "HTTP 500")
        cp = cp.mark_completed("Taipei", 3)
        cp = cp.mark_completed("Taipei", 3)

        assert cp.completed_work_items == ("Taipei",)
        assert "Taipei" not in cp.failed_work_items
        assert cp.total_entities_found == 3

    def test_remaining_items_preserves_order(self):
        cp = Checkpoint(completed_work_items=("Tainan",))
        assert cp.remaining_items(["Taipei", "Tainan", "Hsinchu"]) == ["Taipei", "Hsinchu"]

    def test_mark_finished_depends_on_current_items(self):
        cp = Checkpoint(completed_work_items=("Taipei",))
        assert cp.mark_finished(["Taipei"]).is_completed is True
        assert cp.mark_finished(["Taipei", "Yilan"]).is_completed is False

    def test_with_completion_tracks_work_items(self):
        cp = Checkpoint(completed_work_items=("Taipei",), is_completed=True)

        assert cp.with_completion(["Taipei", "Yilan"]).is_completed is False
        assert cp.with_completion(["Taipei"]).is_completed is True


class TestCrawlLocations:
    """Test CrawlLocations use case."""

    def _use_case(self, make_client, checkpoint_store, entity_store, settings, budget=50):
        client = make_client(budget=budget)
        return CrawlLocations(
            client, checkpoint_store, entity_store, settings, now=lambda: NOW
        )

    def test_budget_bound_resume_completes_remaining_item(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        """Only Kaohsiung is crawled, within a budget of two calls."""
        checkpoint_store.save(Checkpoint(completed_work_items=("Taipei",)))
        session.add("/search/users", json_response(search_payload(("kao", 7))))
        session.add("/users/kao", json_response(user_payload("kao", 7, 200)))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings, budget=2)
        report = use_case.execute(["Taipei", "Kaohsiung"])

        assert len(session.calls) == 2
        assert session.calls[0][1]["q"] == "location:Kaohsiung"
        assert report.status is CrawlStatus.DONE

        saved = checkpoint_store.load()
        assert saved.is_completed is True
        assert saved.completed_work_items == ("Taipei", "Kaohsiung")
        assert saved.requests_this_run == 2
        assert [d.login for d in entity_store.load()] == ["kao"]

    def test_early_exit_on_follower_threshold(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        """Candidates sorted [500, 80, 5] with threshold 10: the third is never fetched."""
        session.add(
            "/search/users",
            json_response(search_payload(("big", 1, 500), ("mid", 2, 80), ("tiny", 3, 5))),
        )
        session.add("/users/big", json_response(user_payload("big", 1, 500)))
        session.add("/users/mid", json_response(user_payload("mid", 2, 80)))
        session.add("/users/tiny", json_response(user_payload("tiny", 3, 5)))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        report = use_case.execute(["Penghu"])

        assert session.paths() == ["/search/users", "/users/big", "/users/mid"]
        assert report.status is CrawlStatus.DONE
        assert [d.login for d in report.developers] == ["big", "mid"]
        assert checkpoint_store.load().total_entities_found == 2

    def test_detail_below_threshold_stops_without_hints(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        """Without follower hints the first low detail ends the location."""
        session.add(
            "/search/users",
            json_response(search_payload(("a", 1), ("b", 2), ("c", 3))),
        )
        session.add("/users/a", json_response(user_payload("a", 1, 50)))
        session.add("/users/b", json_response(user_payload("b", 2, 4)))
        session.add("/users/c", json_response(user_payload("c", 3, 90)))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        use_case.execute(["Yilan"])

        assert "/users/c" not in session.paths()
        assert [d.login for d in entity_store.load()] == ["a"]

    def test_unsorted_results_disable_early_exit(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        """If hints are not descending, every candidate is checked."""
        session.add(
            "/search/users",
            json_response(search_payload(("low", 1, 5), ("high", 2, 300))),
        )
        session.add("/users/low", json_response(user_payload("low", 1, 5)))
        session.add("/users/high", json_response(user_payload("high", 2, 300)))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        use_case.execute(["Hualien"])

        assert session.paths() == ["/search/users", "/users/low", "/users/high"]
        assert [d.login for d in entity_store.load()] == ["high"]

    def test_rate_limit_mid_item_halts_and_persists(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        """A 403 on alice's detail halts the run and reports the wait."""
        reset_at = NOW + timedelta(seconds=600)
        session.add(
            "/search/users",
            json_response(search_payload(("bob", 2), ("alice", 1))),
        )
        session.add("/users/bob", json_response(user_payload("bob", 2, 900)))
        session.add("/users/alice", rate_limited(reset_at))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        report = use_case.execute(["Taipei", "Kaohsiung"])

        assert report.status is CrawlStatus.RATE_LIMITED
        assert report.message == "GitHub rate limit reached, resume in 10 minutes"
        assert report.reset_at == reset_at

        saved = checkpoint_store.load()
        assert saved.rate_limit_encountered is True
        assert saved.rate_limit_reset_at == reset_at
        assert "Taipei" not in saved.completed_work_items
        assert saved.requests_this_run == 3
        # bob was fetched before the limit hit and must not be lost
        assert [d.login for d in entity_store.load()] == ["bob"]

        # A second invocation before the reset makes no calls at all
        calls_before = len(session.calls)
        second = self._use_case(make_client, checkpoint_store, entity_store, settings)
        again = second.execute(["Taipei", "Kaohsiung"])
        assert again.status is CrawlStatus.RATE_LIMITED
        assert len(session.calls) == calls_before

    def test_item_error_marks_failed_and_continues(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        """A 404 for one location does not stop the next one."""
        session.add("/search/users", json_response({"message": "Validation Failed"}, 422), page=1)

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        report = use_case.execute(["Taipei", "Kaohsiung"])

        assert report.status is CrawlStatus.IDLE
        assert set(report.failed) == {"Taipei", "Kaohsiung"}
        saved = checkpoint_store.load()
        assert set(saved.failed_work_items) == {"Taipei", "Kaohsiung"}
        assert "HTTP 422" in saved.failed_work_items["Taipei"]
        assert saved.completed_work_items == ()
        assert saved.is_completed is False

        # Next run the platform recovers; failures are cleared on completion
        session.routes.clear()
        session.add("/search/users", json_response(search_payload()))
        report = self._use_case(
            make_client, checkpoint_store, entity_store, settings
        ).execute(["Taipei", "Kaohsiung"])

        saved = checkpoint_store.load()
        assert report.status is CrawlStatus.DONE
        assert saved.failed_work_items == {}
        assert saved.completed_work_items == ("Taipei", "Kaohsiung")

    def test_malformed_search_response_fails_item(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        session.add("/search/users", json_response({"unexpected": True}))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        report = use_case.execute(["Taipei"])

        assert "Taipei" in report.failed
        assert "items" in checkpoint_store.load().failed_work_items["Taipei"]

    def test_budget_exhaustion_resumes_to_completion(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        """Repeated small-budget runs eventually complete, then make no calls."""
        session.add("/search/users", json_response(search_payload(("a", 1), ("b", 2))))
        session.add("/users/a", json_response(user_payload("a", 1, 300)))
        session.add("/users/b", json_response(user_payload("b", 2, 200)))

        # Each location costs three calls, so the first run stops inside Kaohsiung
        locations = ["Taipei", "Kaohsiung"]
        statuses = []
        for _ in range(10):
            report = self._use_case(
                make_client, checkpoint_store, entity_store, settings, budget=4
            ).execute(locations)
            assert report.requests_made <= 4
            statuses.append(report.status)
            if report.status is CrawlStatus.DONE:
                break

        assert statuses[0] is CrawlStatus.BUDGET_EXHAUSTED
        assert statuses[-1] is CrawlStatus.DONE
        saved = checkpoint_store.load()
        assert saved.completed_work_items == ("Taipei", "Kaohsiung")
        assert {d.login for d in entity_store.load()} == {"a", "b"}

        calls_before = len(session.calls)
        report = self._use_case(
            make_client, checkpoint_store, entity_store, settings, budget=2
        ).execute(locations)
        assert report.status is CrawlStatus.DONE
        assert len(session.calls) == calls_before

    def test_budget_exhausted_before_item_is_graceful(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        session.add("/search/users", json_response(search_payload(("a", 1))))
        session.add("/users/a", json_response(user_payload("a", 1, 300)))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings, budget=2)
        report = use_case.execute(["Taipei", "Kaohsiung"])

        assert report.status is CrawlStatus.BUDGET_EXHAUSTED
        assert report.completed == ["Taipei"]
        assert report.remaining == ["Kaohsiung"]
        assert "re-run to continue" in report.message
        assert len(session.calls) == 2

    def test_developer_seen_in_two_locations_fetched_once(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        session.add("/search/users", json_response(search_payload(("a", 1))))
        session.add("/users/a", json_response(user_payload("a", 1, 300)))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        report = use_case.execute(["Taiwan", "Taipei"])

        assert session.paths().count("/users/a") == 1
        assert report.status is CrawlStatus.DONE
        assert len(entity_store.load()) == 1
        assert checkpoint_store.load().total_entities_found == 1

    def test_candidate_cap_per_location(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        settings.max_candidates_per_location = 2
        session.add(
            "/search/users",
            json_response(search_payload(("a", 1), ("b", 2), ("c", 3))),
        )
        for login, user_id in (("a", 1), ("b", 2), ("c", 3)):
            session.add(f"/users/{login}", json_response(user_payload(login, user_id, 100)))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        use_case.execute(["Taipei"])

        assert "/users/c" not in session.paths()

    @patch("infrastructure.retry_utils.time.sleep")
    def test_broken_transfer_fails_item_without_escaping(
        self, mock_sleep, session, make_client, checkpoint_store, entity_store, settings
    ):
        """A connection dropped mid-body is retried, then recorded as a failure."""
        session.add("/search/users", requests.exceptions.ChunkedEncodingError("connection broken"))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        report = use_case.execute(["Taipei"])

        assert report.status is CrawlStatus.IDLE
        assert "Taipei" in report.failed
        assert "Taipei" in checkpoint_store.load().failed_work_items
        assert len(session.calls) == 4

    def test_negative_count_in_detail_fails_item(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        session.add("/search/users", json_response(search_payload(("a", 1))))
        session.add("/users/a", json_response(user_payload("a", 1, 50, public_repos=-1)))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        report = use_case.execute(["Taipei", "Kaohsiung"])

        assert set(report.failed) == {"Taipei", "Kaohsiung"}
        assert "counts cannot be negative" in report.failed["Taipei"]
        assert entity_store.load() == []

    def test_new_location_reopens_completed_crawl(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        """A finished checkpoint is not left complete when a location is added."""
        checkpoint_store.save(Checkpoint(completed_work_items=("Taipei",), is_completed=True))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings, budget=0)
        report = use_case.execute(["Taipei", "Yilan"])

        assert report.status is CrawlStatus.BUDGET_EXHAUSTED
        assert report.remaining == ["Yilan"]
        assert checkpoint_store.load().is_completed is False
        assert session.calls == []

    def test_new_location_reopens_completed_crawl_while_rate_limited(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        checkpoint_store.save(
            Checkpoint(completed_work_items=("Taipei",), is_completed=True)
            .mark_rate_limited(NOW + timedelta(minutes=5))
        )

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        report = use_case.execute(["Taipei", "Yilan"])

        assert report.status is CrawlStatus.RATE_LIMITED
        assert checkpoint_store.load().is_completed is False

    def test_empty_location_list_is_not_replaced_by_defaults(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        report = use_case.execute([])

        assert session.calls == []
        assert report.status is CrawlStatus.DONE
        assert report.remaining == []

    def test_default_locations_come_from_settings(
        self, session, make_client, checkpoint_store, entity_store, settings
    ):
        session.add("/search/users", json_response(search_payload()))

        use_case = self._use_case(make_client, checkpoint_store, entity_store, settings)
        use_case.execute()

        assert [params["q"] for _, params in session.calls] == [
            "location:Taipei",
            "location:Kaohsiung",
        ]
