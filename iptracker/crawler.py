"""
Repository crawler.

Walks a repository's commit history from its checkpoint, oldest-first, and
records the state of every proposal document each commit touches. The
checkpoint is advanced only after every document of a commit is persisted,
so an interrupted crawl resumes at the first unfinished commit.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from config import RepositoryConfig
from config.settings import DELETED_STATUS, MOVED_STATUS
from iptracker.database import Database
from iptracker.exceptions import TrackerError
from iptracker.github_client import CommitFile, CommitInfo, GitHubClient
from iptracker.parsers import document_body, parse_proposal
from iptracker.resolver import MovedProposalResolver
from iptracker.utils import content_hash, extract_proposal_number
from iptracker.versions import DocumentState, RecordOutcome, VersionStoreBuilder

logger = logging.getLogger(__name__)

MOVED_NOTICES = ("This file was moved to", "This EIP was moved to")
_MOVED_TARGET_RE = re.compile(r"\[.*?\]\((.*?/\S+\.md)\)")


@dataclass
class CrawlResult:
    """Outcome of crawling one repository."""

    repository: str
    commits_processed: int = 0
    documents_processed: int = 0
    versions_created: int = 0
    checkpoint: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def is_moved_notice(raw_markdown: str) -> bool:
    return any(notice in raw_markdown for notice in MOVED_NOTICES)


def extract_moved_target(raw_markdown: str) -> Optional[str]:
    """Destination path of a move notice (first markdown link to a .md file)."""
    match = _MOVED_TARGET_RE.search(raw_markdown)
    return match.group(1) if match else None


def deletion_notice(commit_sha: str) -> str:
    return f"# Proposal Deleted\n\nThis proposal was removed at commit {commit_sha}."


class RepositoryCrawler:
    """Crawls proposal repositories into the version store."""

    def __init__(
        self,
        database: Database,
        client: GitHubClient,
        builder: Optional[VersionStoreBuilder] = None,
        resolver: Optional[MovedProposalResolver] = None,
    ):
        """
        Initialize crawler.

        Args:
            database: Database instance
            client: GitHub client (or any object with the same coroutines)
            builder: Version store builder (created from database if omitted)
            resolver: Rename resolver (created from database if omitted)
        """
        self.database = database
        self.client = client
        self.builder = builder or VersionStoreBuilder(database)
        self.resolver = resolver or MovedProposalResolver(database)

    async def crawl(self, config: RepositoryConfig) -> CrawlResult:
        """
        Crawl one repository from its checkpoint.

        API failures fail only this repository: the error is logged and
        reported in the result, and the checkpoint stays at the last fully
        processed commit.

        Args:
            config: Repository to crawl

        Returns:
            CrawlResult with counts and the final checkpoint
        """
        result = CrawlResult(repository=config.full_name)
        checkpoint = self.database.get_checkpoint(config)
        result.checkpoint = checkpoint

        logger.info(
            f"Crawling {config.full_name} ({config.protocol}) from "
            f"{checkpoint[:8] if checkpoint else 'the beginning'}"
        )

        try:
            commits, found = await self.client.list_commits(
                config.owner, config.repo, config.branch, stop_at_sha=checkpoint
            )
            if checkpoint and not found:
                logger.warning(
                    f"Checkpoint {checkpoint[:8]} not found in {config.full_name} history, "
                    f"reprocessing all {len(commits)} commits"
                )

            for commit in commits:
                await self._process_commit(config, commit, result)
                self.database.advance_checkpoint(config, commit.sha)
                result.checkpoint = commit.sha
                result.commits_processed += 1

        except TrackerError as e:
            result.error = str(e)
            logger.error(f"Crawl of {config.full_name} failed: {e}")

        logger.info(
            f"Crawled {config.full_name}: {result.commits_processed} commits, "
            f"{result.documents_processed} documents, {result.versions_created} new versions"
        )
        return result

    async def _process_commit(
        self, config: RepositoryConfig, commit: CommitInfo, result: CrawlResult
    ) -> None:
        self._record_maintainer(config, commit)

        files = await self.client.get_commit_files(config.owner, config.repo, commit.sha)
        for file in files:
            outcome = await self._process_file(config, commit, file)
            if outcome is None:
                continue
            result.documents_processed += 1
            if outcome == RecordOutcome.CREATED:
                result.versions_created += 1

    def _record_maintainer(self, config: RepositoryConfig, commit: CommitInfo) -> None:
        if not (commit.author_login or commit.author_email):
            return
        try:
            self.database.record_maintainer(
                config,
                name=commit.author_name,
                email=commit.author_email,
                github_handle=commit.author_login,
            )
        except Exception as e:
            logger.error(f"Failed to record maintainer for commit {commit.sha[:8]}: {e}")

    def _is_proposal_path(self, config: RepositoryConfig, path: Optional[str]) -> bool:
        return bool(path) and path.startswith(f"{config.proposals_folder}/")

    async def _process_file(
        self, config: RepositoryConfig, commit: CommitInfo, file: CommitFile
    ) -> Optional[RecordOutcome]:
        if not file.filename.endswith(".md"):
            return None
        if not (
            self._is_proposal_path(config, file.filename)
            or self._is_proposal_path(config, file.previous_filename)
        ):
            return None

        if file.status in ("added", "modified"):
            return await self._process_document(config, file.filename, commit)
        if file.status == "renamed":
            return await self._handle_renamed(config, file, commit)
        if file.status == "removed":
            return self._handle_removed(config, file.filename, commit)

        logger.debug(f"Ignoring {file.filename} with status {file.status}")
        return None

    async def _handle_renamed(
        self, config: RepositoryConfig, file: CommitFile, commit: CommitInfo
    ) -> Optional[RecordOutcome]:
        logger.info(f"Renamed {file.previous_filename} -> {file.filename}")

        new_number = extract_proposal_number(file.filename)
        if new_number is None:
            logger.warning(f"No proposal number in renamed path {file.filename}, skipping")
            return None

        old_number = extract_proposal_number(file.previous_filename or "")
        if old_number is not None:
            self.resolver.rename(config, old_number, new_number, file.filename)
        return await self._process_document(config, file.filename, commit)

    def _handle_removed(
        self, config: RepositoryConfig, path: str, commit: CommitInfo
    ) -> Optional[RecordOutcome]:
        number = extract_proposal_number(path)
        if number is None:
            return None

        proposal = self.database.get_proposal(config.protocol, number)
        if proposal is None:
            logger.warning(f"Removed file {path} has no recorded proposal")
            return None

        logger.info(f"Marking {config.protocol}-{number} as {DELETED_STATUS}")
        state = self._carry_over_state(proposal, commit, DELETED_STATUS, deletion_notice(commit.sha))
        state.content_hash = content_hash("deleted")
        return self.builder.record_state(config, number, None, state)

    async def _process_document(
        self, config: RepositoryConfig, path: str, commit: CommitInfo
    ) -> Optional[RecordOutcome]:
        number = extract_proposal_number(path)
        if number is None:
            return None

        raw = await self.client.get_content(config.owner, config.repo, path, commit.sha)
        if raw is None:
            logger.warning(f"No content for {path} at {commit.sha[:8]}")
            return None
        body = document_body(raw)

        if is_moved_notice(raw):
            return self._record_moved(config, number, path, commit, raw, body)

        parsed = parse_proposal(config.protocol, raw, f"{config.proposal_prefix}-{number}")
        if parsed is None:
            logger.warning(f"Could not parse metadata for {path} at {commit.sha[:8]}")
            return None

        state = DocumentState(
            commit_sha=commit.sha,
            commit_date=commit.date,
            status=parsed.status,
            title=parsed.title,
            type=parsed.type,
            category=parsed.category,
            created=parsed.created,
            discussions_to=parsed.discussions_to,
            requires=parsed.requires,
            raw_markdown=body,
            content_hash=content_hash(body),
            authors=parsed.authors,
        )
        return self.builder.record_state(config, number, path, state)

    def _record_moved(
        self,
        config: RepositoryConfig,
        number: str,
        path: str,
        commit: CommitInfo,
        raw: str,
        body: str,
    ) -> Optional[RecordOutcome]:
        proposal = self.database.get_proposal(config.protocol, number)
        if proposal is None:
            logger.warning(f"Move notice for unknown proposal {config.protocol}-{number}, skipping")
            return None

        target = extract_moved_target(raw)
        if target:
            logger.info(f"{config.protocol}-{number} moved to {target}")
        else:
            logger.warning(f"Could not extract destination from move notice in {path}")

        state = self._carry_over_state(proposal, commit, MOVED_STATUS, body)
        state.content_hash = content_hash(body)
        return self.builder.record_state(config, number, path, state, moved_to_path=target)

    @staticmethod
    def _carry_over_state(proposal, commit: CommitInfo, status: str, raw_markdown: str) -> DocumentState:
        # Moved and Deleted notices carry no header; keep the last known metadata
        return DocumentState(
            commit_sha=commit.sha,
            commit_date=commit.date,
            status=status,
            title=proposal.title,
            type=proposal.type,
            category=proposal.category,
            created=proposal.created,
            discussions_to=proposal.discussions_to,
            requires=list(proposal.requires or []),
            raw_markdown=raw_markdown,
        )
