"""Pytest fixtures for proposal tracker tests."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import pytest

from config import REPOSITORIES, RepositoryConfig
from iptracker.authors import parse_authors
from iptracker.database import Database
from iptracker.exceptions import GitHubAPIError
from iptracker.github_client import CommitFile, CommitInfo
from iptracker.utils import content_hash
from iptracker.versions import DocumentState, VersionStoreBuilder


def repo_config(protocol: str) -> RepositoryConfig:
    return next(repo for repo in REPOSITORIES if repo.protocol == protocol)


@dataclass
class FakeCommit:
    info: CommitInfo
    files: List[CommitFile] = field(default_factory=list)
    contents: Dict[str, str] = field(default_factory=dict)


class FakeGitHubClient:
    """In-memory stand-in for GitHubClient with the same coroutines."""

    def __init__(self):
        self.repos: Dict[str, List[FakeCommit]] = {}
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.list_failures: Dict[str, Exception] = {}
        self.content_requests: List[Tuple[str, str]] = []

    def add_commit(
        self,
        full_name: str,
        sha: str,
        date: datetime,
        files: List[tuple],
        author: Tuple[Optional[str], Optional[str], Optional[str]] = ("Alice", "alice@example.org", "alice"),
    ) -> None:
        """
        Append a commit; files are (status, path, content, previous_path) tuples.
        """
        name, email, login = author
        commit = FakeCommit(
            info=CommitInfo(sha=sha, date=date, author_name=name, author_email=email, author_login=login)
        )
        for entry in files:
            status, path, content = entry[:3]
            previous = entry[3] if len(entry) > 3 else None
            commit.files.append(CommitFile(filename=path, status=status, previous_filename=previous))
            if content is not None:
                commit.contents[path] = content
        self.repos.setdefault(full_name, []).append(commit)

    def fail_content_once(self, sha: str, path: str, error: Optional[Exception] = None) -> None:
        self.failures[(sha, path)] = error or GitHubAPIError("simulated failure", status_code=502)

    async def list_commits(self, owner, repo, branch, stop_at_sha=None):
        full_name = f"{owner}/{repo}"
        if full_name in self.list_failures:
            raise self.list_failures[full_name]

        newer = []
        found = False
        for commit in reversed(self.repos.get(full_name, [])):
            if stop_at_sha and commit.info.sha == stop_at_sha:
                found = True
                break
            newer.append(commit.info)
        newer.reverse()
        return newer, found

    async def get_commit_files(self, owner, repo, sha):
        for commit in self.repos.get(f"{owner}/{repo}", []):
            if commit.info.sha == sha:
                return list(commit.files)
        raise GitHubAPIError(f"Commit {sha} not found", status_code=404)

    async def get_content(self, owner, repo, path, ref):
        self.content_requests.append((ref, path))
        error = self.failures.pop((ref, path), None)
        if error is not None:
            raise error
        for commit in self.repos.get(f"{owner}/{repo}", []):
            if commit.info.sha == ref:
                return commit.contents.get(path)
        return None


def make_eip(
    status: str,
    title: str = "Sample proposal",
    author: str = "Alice <alice@example.org> (@alice)",
    proposal_type: str = "Standards Track",
    category: Optional[str] = "Core",
    created: str = "2023-01-01",
    body: str = "## Abstract\n\nThis proposal does something useful.\n",
) -> str:
    lines = [
        "---",
        f"title: {title}",
        f"author: {author}",
        f"status: {status}",
        f"type: {proposal_type}",
    ]
    if category:
        lines.append(f"category: {category}")
    lines.append(f"created: {created}")
    lines.append("---")
    return "\n".join(lines) + "\n" + body


@pytest.fixture
def db(tmp_path):
    """Temporary SQLite database with every tracked repository seeded."""
    database = Database(str(tmp_path / "test.db"))
    database.create_tables()
    database.seed_repositories(REPOSITORIES)
    yield database
    database.dispose()


@pytest.fixture
def fake_github():
    return FakeGitHubClient()


@pytest.fixture
def eip_doc():
    """Factory for frontmatter proposal documents."""
    return make_eip


@pytest.fixture
def builder(db):
    return VersionStoreBuilder(db)


@pytest.fixture
def record(builder):
    """Record one state for (protocol, number) directly through the version store."""

    def _record(
        protocol: str,
        number: str,
        sha: str,
        date: datetime,
        status: str,
        authors: str = "Alice <alice@example.org> (@alice)",
        moved_to_path: Optional[str] = None,
        **fields,
    ):
        body = fields.pop("raw_markdown", f"{status} body for {number}")
        state = DocumentState(
            commit_sha=sha,
            commit_date=date,
            status=status,
            title=fields.pop("title", f"Proposal {number}"),
            type=fields.pop("type", "Standards Track"),
            category=fields.pop("category", "Core"),
            created=fields.pop("created", datetime(2023, 1, 1)),
            raw_markdown=body,
            content_hash=content_hash(body),
            authors=parse_authors(authors),
            **fields,
        )
        config = repo_config(protocol)
        path = f"{config.proposals_folder}/{config.proposal_prefix.lower()}-{number}.md"
        return builder.record_state(config, number, path, state, moved_to_path=moved_to_path)

    return _record


@pytest.fixture
def repos():
    """Tracked repository configurations keyed by protocol."""
    return {repo.protocol: repo for repo in REPOSITORIES}
