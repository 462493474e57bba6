"""Tests for the repository crawler against an in-memory GitHub."""

import asyncio
from datetime import datetime

import pytest

from iptracker.crawler import RepositoryCrawler, extract_moved_target, is_moved_notice
from iptracker.exceptions import GitHubAPIError
from iptracker.utils import content_hash

EIPS = "ethereum/EIPs"


@pytest.fixture
def crawler(db, fake_github):
    return RepositoryCrawler(db, fake_github)


@pytest.fixture
def eips_history(fake_github, eip_doc):
    """Add, collapse, finalize, rename and delete across four commits."""
    fake_github.add_commit(
        EIPS, "c1", datetime(2023, 1, 1),
        [
            ("added", "EIPS/eip-1.md", eip_doc("Draft", title="First title")),
            ("added", "README.md", "# Readme"),
            ("added", "EIPS/README.md", "# Index"),
            ("added", "EIPS/notes.txt", "notes"),
            ("added", "assets/eip-1/diagram.md", "diagram"),
        ],
    )
    fake_github.add_commit(
        EIPS, "c2", datetime(2023, 1, 5),
        [
            ("modified", "EIPS/eip-1.md", eip_doc("Draft", title="Second title")),
            ("added", "EIPS/eip-2.md", eip_doc("Review", author="Bob (@bob)")),
        ],
    )
    fake_github.add_commit(
        EIPS, "c3", datetime(2023, 2, 1),
        [
            ("modified", "EIPS/eip-1.md", eip_doc("Final", title="Second title")),
            ("renamed", "EIPS/eip-3.md", eip_doc("Review", author="Bob (@bob)"), "EIPS/eip-2.md"),
        ],
    )
    fake_github.add_commit(EIPS, "c4", datetime(2023, 3, 1), [("removed", "EIPS/eip-3.md", None)])


def crawl(crawler, config):
    return asyncio.run(crawler.crawl(config))


def _assert_final_state(db):
    first = db.get_proposal("ethereum", "1")
    first_versions = db.get_versions(first.id)
    assert [(v.commit_sha, v.last_commit_sha, v.status) for v in first_versions] == [
        ("c1", "c2", "Draft"),
        ("c3", "c3", "Final"),
    ]
    assert first_versions[0].title == "Second title"

    assert db.get_proposal("ethereum", "2") is None
    third = db.get_proposal("ethereum", "3")
    assert third.status == "Deleted"
    assert [(v.commit_sha, v.last_commit_sha, v.status) for v in db.get_versions(third.id)] == [
        ("c2", "c3", "Review"),
        ("c4", "c4", "Deleted"),
    ]
    assert db.count_versions() == 4


class TestCrawl:
    def test_full_history(self, db, crawler, repos, eips_history, fake_github):
        result = crawl(crawler, repos["ethereum"])

        assert result.succeeded
        assert result.commits_processed == 4
        assert result.documents_processed == 6
        assert result.versions_created == 4
        assert result.checkpoint == "c4"
        assert db.get_checkpoint(repos["ethereum"]) == "c4"
        _assert_final_state(db)

        fetched = {path for _ref, path in fake_github.content_requests}
        assert "README.md" not in fetched
        assert "EIPS/notes.txt" not in fetched
        assert "assets/eip-1/diagram.md" not in fetched

    def test_deletion_keeps_last_metadata(self, db, crawler, repos, eips_history):
        crawl(crawler, repos["ethereum"])

        deleted = db.get_versions(db.get_proposal("ethereum", "3").id)[-1]
        assert deleted.title == "Sample proposal"
        assert deleted.type == "Standards Track"
        assert deleted.authors == []
        assert deleted.content_hash == content_hash("deleted")
        assert "c4" in deleted.raw_markdown

    def test_rerun_is_a_no_op(self, db, crawler, repos, eips_history):
        crawl(crawler, repos["ethereum"])

        rerun = crawl(crawler, repos["ethereum"])

        assert rerun.succeeded
        assert rerun.commits_processed == 0
        _assert_final_state(db)

    def test_reset_and_recrawl_keeps_history(self, db, crawler, repos, eips_history):
        crawl(crawler, repos["ethereum"])
        db.reset_checkpoints()

        rerun = crawl(crawler, repos["ethereum"])

        assert rerun.succeeded
        assert rerun.commits_processed == 4
        _assert_final_state(db)

    def test_failure_resumes_at_unfinished_commit(self, db, crawler, repos, eips_history, fake_github):
        fake_github.fail_content_once("c2", "EIPS/eip-2.md")

        failed = crawl(crawler, repos["ethereum"])

        assert not failed.succeeded
        assert "simulated failure" in failed.error
        assert failed.commits_processed == 1
        assert db.get_checkpoint(repos["ethereum"]) == "c1"

        resumed = crawl(crawler, repos["ethereum"])

        assert resumed.succeeded
        assert resumed.commits_processed == 3
        _assert_final_state(db)

    def test_listing_failure_fails_only_this_repository(self, db, crawler, repos, fake_github):
        fake_github.list_failures[EIPS] = GitHubAPIError("listing failed", status_code=500)

        result = crawl(crawler, repos["ethereum"])

        assert result.error == "listing failed"
        assert result.commits_processed == 0
        assert db.get_checkpoint(repos["ethereum"]) is None

    def test_later_commit_with_earlier_date_is_kept(self, db, crawler, repos, fake_github, eip_doc):
        fake_github.add_commit(
            EIPS, "c1", datetime(2023, 2, 1), [("added", "EIPS/eip-7.md", eip_doc("Draft"))]
        )
        fake_github.add_commit(
            EIPS, "c2", datetime(2023, 1, 15), [("modified", "EIPS/eip-7.md", eip_doc("Review"))]
        )

        result = crawl(crawler, repos["ethereum"])

        assert result.versions_created == 2
        assert result.checkpoint == "c2"
        proposal = db.get_proposal("ethereum", "7")
        assert proposal.status == "Review"
        assert {(v.commit_sha, v.status) for v in db.get_versions(proposal.id)} == {
            ("c1", "Draft"),
            ("c2", "Review"),
        }

        db.reset_checkpoints()
        crawl(crawler, repos["ethereum"])

        assert db.count_versions() == 2

    def test_unknown_checkpoint_reprocesses_everything(self, db, crawler, repos, eips_history):
        db.advance_checkpoint(repos["ethereum"], "rewritten")

        result = crawl(crawler, repos["ethereum"])

        assert result.commits_processed == 4
        _assert_final_state(db)

    def test_unparseable_document_is_skipped(self, db, crawler, repos, fake_github):
        fake_github.add_commit(
            EIPS, "u1", datetime(2023, 1, 1), [("added", "EIPS/eip-8.md", "Just some prose.\n")]
        )

        result = crawl(crawler, repos["ethereum"])

        assert result.succeeded
        assert result.documents_processed == 0
        assert db.get_proposal("ethereum", "8") is None
        assert db.get_checkpoint(repos["ethereum"]) == "u1"

    def test_move_notice(self, db, crawler, repos, fake_github, eip_doc):
        fake_github.add_commit(
            EIPS, "m1", datetime(2023, 1, 1),
            [("added", "EIPS/eip-5.md", eip_doc("Review", title="Token standard"))],
        )
        fake_github.add_commit(
            EIPS, "m2", datetime(2023, 10, 27),
            [("modified", "EIPS/eip-5.md", "This EIP was moved to [ERC-5](../ERCS/erc-5.md).\n")],
        )

        crawl(crawler, repos["ethereum"])

        proposal = db.get_proposal("ethereum", "5")
        assert proposal.status == "Moved"
        assert proposal.moved_to_path == "../ERCS/erc-5.md"
        moved = db.get_versions(proposal.id)[-1]
        assert moved.status == "Moved"
        assert moved.title == "Token standard"

    def test_commit_authors_become_maintainers(self, db, crawler, repos, eips_history):
        crawl(crawler, repos["ethereum"])

        maintainers = db.get_maintainers(repos["ethereum"])

        assert [m.github_handle for m in maintainers] == ["alice"]


class TestMoveNotices:
    def test_detects_notice_and_destination(self):
        raw = "This file was moved to [ERC-20](https://github.com/ethereum/ERCs/blob/master/ERCS/erc-20.md)"

        assert is_moved_notice(raw)
        assert extract_moved_target(raw) == "https://github.com/ethereum/ERCs/blob/master/ERCS/erc-20.md"

    def test_plain_document(self):
        assert not is_moved_notice("## Abstract\n")
        assert extract_moved_target("No links here") is None
