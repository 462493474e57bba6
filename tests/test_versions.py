"""Tests for version history construction and persistence."""

import random
from datetime import datetime, timedelta

from iptracker.versions import DocumentState, RecordOutcome, build_version_history


def _state(sha, day, status, title=None, authors=None):
    return DocumentState(
        commit_sha=sha,
        commit_date=datetime(2023, 1, 1) + timedelta(days=day),
        status=status,
        title=title or f"title at {sha}",
        authors=authors or [],
    )


class TestBuildVersionHistory:
    def test_collapses_consecutive_statuses(self):
        states = [
            _state("a", 0, "Draft"),
            _state("b", 1, "Draft"),
            _state("c", 2, "Review"),
            _state("d", 3, "Review"),
            _state("e", 4, "Draft"),
        ]

        history = build_version_history(states)

        assert [v.status for v in history] == ["Draft", "Review", "Draft"]
        assert history[0].commit_sha == "a"
        assert history[0].last_commit_sha == "b"
        assert history[1].commit_sha == "c"
        assert history[1].last_commit_sha == "d"

    def test_collapsed_version_holds_newest_fields(self):
        """Status entry commit is kept; descriptive fields come from the newest state."""
        history = build_version_history(
            [_state("a", 0, "Draft", title="First"), _state("b", 5, "Draft", title="Renamed")]
        )

        assert len(history) == 1
        assert history[0].commit_date == datetime(2023, 1, 1)
        assert history[0].last_commit_date == datetime(2023, 1, 6)
        assert history[0].state.title == "Renamed"

    def test_keeps_listing_order_and_ignores_repeated_sha(self):
        """A later commit with an earlier date still comes after the one listed before it."""
        states = [_state("a", 5, "Draft"), _state("b", 0, "Review"), _state("a", 5, "Draft")]

        history = build_version_history(states)

        assert [(v.commit_sha, v.status) for v in history] == [("a", "Draft"), ("b", "Review")]

    def test_never_two_adjacent_equal_statuses(self):
        rng = random.Random(7)
        statuses = ["Draft", "Review", "Last Call", "Final", "Stagnant"]
        for _ in range(200):
            states = [
                _state(f"s{i}", i, rng.choice(statuses)) for i in range(rng.randint(0, 15))
            ]
            history = build_version_history(states)
            for earlier, later in zip(history, history[1:]):
                assert earlier.status != later.status


class TestVersionStoreBuilder:
    def test_create_collapse_and_new_version(self, db, record):
        assert record("ethereum", "1", "a", datetime(2023, 1, 1), "Draft") == RecordOutcome.CREATED
        assert (
            record("ethereum", "1", "b", datetime(2023, 1, 5), "Draft", title="Better title")
            == RecordOutcome.COLLAPSED
        )
        assert record("ethereum", "1", "c", datetime(2023, 2, 1), "Review") == RecordOutcome.CREATED

        proposal = db.get_proposal("ethereum", "1")
        versions = db.get_versions(proposal.id)

        assert [v.status for v in versions] == ["Draft", "Review"]
        assert versions[0].commit_sha == "a"
        assert versions[0].last_commit_sha == "b"
        assert versions[0].title == "Better title"
        assert proposal.status == "Review"
        assert proposal.github_path == "EIPS/eip-1.md"

    def test_known_commit_is_duplicate(self, db, record):
        record("ethereum", "1", "a", datetime(2023, 1, 1), "Draft")
        record("ethereum", "1", "b", datetime(2023, 1, 5), "Draft")

        assert record("ethereum", "1", "a", datetime(2023, 1, 1), "Draft") == RecordOutcome.DUPLICATE
        assert record("ethereum", "1", "b", datetime(2023, 1, 5), "Draft") == RecordOutcome.DUPLICATE
        assert db.count_versions() == 1

    def test_commit_folded_mid_version_is_duplicate(self, db, record):
        for sha, day in (("a", 1), ("b", 2), ("c", 3)):
            record("ethereum", "1", sha, datetime(2023, 1, day), "Draft")

        assert record("ethereum", "1", "b", datetime(2023, 1, 2), "Draft") == RecordOutcome.DUPLICATE

        (version,) = db.get_versions(db.get_proposal("ethereum", "1").id)
        assert version.recorded_commits == ["a", "b", "c"]
        assert version.last_commit_sha == "c"

    def test_earlier_dated_commit_is_recorded_in_listing_order(self, db, record):
        record("ethereum", "1", "a", datetime(2023, 1, 1), "Draft")
        record("ethereum", "1", "c", datetime(2023, 3, 1), "Final")

        outcome = record("ethereum", "1", "b", datetime(2023, 2, 1), "Review")

        assert outcome == RecordOutcome.CREATED
        assert db.get_proposal("ethereum", "1").status == "Review"
        assert db.count_versions() == 3

    def test_collapse_follows_last_ingested_version(self, db, record):
        record("ethereum", "1", "a", datetime(2023, 2, 1), "Draft")
        record("ethereum", "1", "b", datetime(2023, 1, 15), "Review")

        outcome = record("ethereum", "1", "c", datetime(2023, 1, 20), "Review")

        assert outcome == RecordOutcome.COLLAPSED
        versions = db.get_versions(db.get_proposal("ethereum", "1").id)
        assert [(v.commit_sha, v.last_commit_sha, v.status) for v in versions] == [
            ("b", "c", "Review"),
            ("a", "a", "Draft"),
        ]

    def test_authors_are_replaced_not_accumulated(self, db, record):
        record(
            "ethereum", "1", "a", datetime(2023, 1, 1), "Draft",
            authors="Alice (@alice), Bob (@bob)",
        )
        record("ethereum", "1", "b", datetime(2023, 1, 2), "Draft", authors="Alice (@alice)")

        proposal = db.get_proposal("ethereum", "1")
        (version,) = db.get_versions(proposal.id)

        assert [a.github_handle for a in version.authors] == ["alice"]

    def test_authors_are_deduplicated_across_versions(self, db, record):
        record("ethereum", "1", "a", datetime(2023, 1, 1), "Draft", authors="Alice <alice@example.org>")
        record(
            "ethereum", "2", "b", datetime(2023, 1, 2), "Draft",
            authors="Alice <alice@example.org> (@alice)",
        )

        first = db.get_versions(db.get_proposal("ethereum", "1").id)[0].authors[0]
        second = db.get_versions(db.get_proposal("ethereum", "2").id)[0].authors[0]

        assert first.id == second.id

